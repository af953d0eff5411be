"""Conversion request/response models."""
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePath
from typing import Optional

from imgconv.config import DEFAULT_BACKGROUND, DEFAULT_FORMAT, DEFAULT_QUALITY
from imgconv.conversion.errors import ConversionError, InvalidRequestError
from imgconv.conversion.resize import parse_color


class FormatKind(str, Enum):
    JPEG = "jpeg"
    PNG = "png"
    WEBP = "webp"
    TIFF = "tiff"
    BMP = "bmp"
    OTHER = "other"


_FORMAT_ALIASES = {
    "jpg": FormatKind.JPEG,
    "jpeg": FormatKind.JPEG,
    "png": FormatKind.PNG,
    "webp": FormatKind.WEBP,
    "tif": FormatKind.TIFF,
    "tiff": FormatKind.TIFF,
    "bmp": FormatKind.BMP,
}

# Encoders that cannot store an alpha channel
_NO_ALPHA = {FormatKind.JPEG, FormatKind.BMP}


@dataclass(frozen=True)
class OutputFormat:
    """Requested output format. ``name`` is what the caller asked for (e.g. "jpg")."""

    kind: FormatKind
    name: str

    @classmethod
    def parse(cls, value: Optional[str]) -> "OutputFormat":
        name = (value or DEFAULT_FORMAT).strip().lower().lstrip(".")
        if not name or not name.isalnum():
            raise InvalidRequestError(f"Invalid output format: {value!r}")
        return cls(_FORMAT_ALIASES.get(name, FormatKind.OTHER), name)

    @property
    def has_alpha(self) -> bool:
        return self.kind not in _NO_ALPHA

    @property
    def uses_quality(self) -> bool:
        return self.kind is not FormatKind.BMP

    @property
    def extension(self) -> str:
        return self.name

    @property
    def mime_type(self) -> str:
        return f"image/{'jpeg' if self.name == 'jpg' else self.name}"


class FitPolicy(str, Enum):
    INSIDE = "inside"
    FILL = "fill"


class SearchPhase(str, Enum):
    INITIAL = "initial"
    QUALITY = "quality"
    RESIZE = "resize"
    DONE = "done"


@dataclass(frozen=True)
class ConversionRequest:
    format: OutputFormat = field(default_factory=lambda: OutputFormat.parse(None))
    quality: int = DEFAULT_QUALITY
    width: Optional[int] = None
    height: Optional[int] = None
    fit: FitPolicy = FitPolicy.FILL
    target_size: Optional[int] = None
    keep_metadata: bool = False
    use_transparency: bool = False
    background: tuple[int, int, int] = (255, 255, 255)

    def __post_init__(self) -> None:
        if not 1 <= self.quality <= 100:
            raise InvalidRequestError(f"Quality must be between 1 and 100, got {self.quality}")
        for name in ("width", "height"):
            value = getattr(self, name)
            if value is not None and value < 1:
                raise InvalidRequestError(f"{name} must be a positive integer, got {value}")
        if self.target_size is not None and self.target_size <= 0:
            raise InvalidRequestError(f"targetSize must be a positive byte count, got {self.target_size}")

    @classmethod
    def from_fields(
        cls,
        format: Optional[str] = None,
        quality: Optional[int] = None,
        width: Optional[int] = None,
        height: Optional[int] = None,
        maintain_aspect: bool = False,
        target_size: Optional[int] = None,
        keep_metadata: bool = False,
        use_transparency: bool = False,
        background_color: Optional[str] = None,
    ) -> "ConversionRequest":
        """Build a request from transport-level fields, applying defaults for missing values."""
        return cls(
            format=OutputFormat.parse(format),
            quality=DEFAULT_QUALITY if quality is None else quality,
            width=width or None,
            height=height or None,
            fit=FitPolicy.INSIDE if maintain_aspect else FitPolicy.FILL,
            target_size=target_size or None,
            keep_metadata=keep_metadata,
            use_transparency=use_transparency,
            background=parse_color(background_color or DEFAULT_BACKGROUND),
        )

    @property
    def needs_resize(self) -> bool:
        return self.width is not None or self.height is not None

    @property
    def needs_flatten(self) -> bool:
        return not self.format.has_alpha or self.use_transparency


@dataclass(frozen=True)
class SourceImage:
    """One uploaded file. Never mutated."""

    data: bytes
    filename: str = "image"
    mime_type: Optional[str] = None

    @property
    def stem(self) -> str:
        return PurePath(self.filename or "image").stem or "image"

    @property
    def size(self) -> int:
        return len(self.data)


def output_filename(stem: str, fmt: OutputFormat) -> str:
    return f"{stem}_converted.{fmt.extension}"


class ConversionTask:
    """Mutable per-file search state. Quality and dimensions only ever decrease."""

    def __init__(self, source: SourceImage, request: ConversionRequest):
        self.filename = source.filename
        self.request = request
        self.buffer: bytes = source.data
        self.normalized = False
        self.quality: int = request.quality
        self.width: Optional[int] = request.width
        self.height: Optional[int] = request.height
        self.phase = SearchPhase.INITIAL
        self.quality_iterations = 0
        self.resize_iterations = 0
        self.codec_calls = 0
        self.tried: set[tuple[int, Optional[int], Optional[int]]] = set()
        self.output: Optional[bytes] = None

    def replace_buffer(self, data: bytes) -> None:
        """Swap in HEIC-normalized bytes. Happens at most once per task."""
        if self.normalized:
            raise RuntimeError("working buffer already normalized")
        self.buffer = data
        self.normalized = True

    @property
    def params(self) -> tuple[int, Optional[int], Optional[int]]:
        return (self.quality, self.width, self.height)

    @property
    def output_size(self) -> int:
        return len(self.output) if self.output is not None else 0


@dataclass
class ConversionResult:
    data: bytes
    mime_type: str
    filename: str
    source_filename: str
    source_bytes: int
    quality: int
    width: Optional[int] = None
    height: Optional[int] = None
    target_size: Optional[int] = None
    # None when no budget was requested
    met_budget: Optional[bool] = None

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class FileOutcome:
    filename: str
    result: Optional[ConversionResult] = None
    error: Optional[ConversionError] = None

    @property
    def ok(self) -> bool:
        return self.result is not None


@dataclass
class BatchOutcome:
    """Single result for one file, otherwise a ZIP archive plus every per-file outcome."""

    outcomes: list[FileOutcome] = field(default_factory=list)
    result: Optional[ConversionResult] = None
    archive: Optional[bytes] = None
    entry_names: list[str] = field(default_factory=list)

    @property
    def is_archive(self) -> bool:
        return self.archive is not None

    @property
    def succeeded(self) -> list[FileOutcome]:
        return [o for o in self.outcomes if o.ok]

    @property
    def failed(self) -> list[FileOutcome]:
        return [o for o in self.outcomes if not o.ok]
