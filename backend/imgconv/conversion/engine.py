"""Pillow-backed codec engine: decode, resize, flatten, encode, read metadata."""
import io
import logging
from dataclasses import dataclass, field, replace
from typing import Optional, Tuple

from PIL import Image

from imgconv.conversion.errors import DecodeError, EncodeError
from imgconv.conversion.models import FitPolicy, FormatKind, OutputFormat
from imgconv.conversion.resize import resize_fill, resize_keep_aspect

logger = logging.getLogger("converter.engine")

# Metadata carried over to the encoder when the caller keeps it
METADATA_KEYS = ("exif", "icc_profile")

_DECODE_ERRORS = (OSError, ValueError, SyntaxError, Image.DecompressionBombError)
_ENCODE_ERRORS = (OSError, ValueError, KeyError, TypeError)

# Modes each writer accepts as is; anything else goes through RGB or RGBA first
_PNG_MODES = ("1", "L", "LA", "I", "I;16", "P", "RGB", "RGBA")
_TIFF_JPEG_MODES = ("L", "RGB", "CMYK", "YCbCr")


@dataclass(frozen=True)
class ImageHandle:
    image: Image.Image
    info: dict = field(default_factory=dict)
    keep_metadata: bool = False


@dataclass(frozen=True)
class ImageMetadata:
    width: int
    height: int
    format: Optional[str] = None
    mode: Optional[str] = None


def has_alpha(img: Image.Image) -> bool:
    if img.mode in ("RGBA", "LA", "PA", "RGBa", "La"):
        return True
    if img.mode == "P" and "transparency" in img.info:
        return True
    return False


def _to_rgb(img: Image.Image) -> Image.Image:
    return img.convert("RGBA" if has_alpha(img) else "RGB")


def _palette_colors(quality: int) -> int:
    return max(2, min(256, round(256 * quality / 100)))


def _pil_format(fmt: OutputFormat) -> str:
    if fmt.kind is FormatKind.OTHER:
        return fmt.name.upper()
    return fmt.kind.value.upper()


class PillowEngine:
    """Stateless; safe to share across threads since every call works on its own image."""

    def decode(self, data: bytes) -> ImageHandle:
        try:
            img = Image.open(io.BytesIO(data))
            img.load()
        except _DECODE_ERRORS as e:
            raise DecodeError(f"Cannot decode image: {e}") from e
        info = {k: img.info[k] for k in METADATA_KEYS if img.info.get(k)}
        return ImageHandle(image=img, info=info)

    def read_metadata(self, data: bytes) -> ImageMetadata:
        try:
            with Image.open(io.BytesIO(data)) as img:
                return ImageMetadata(width=img.width, height=img.height, format=img.format, mode=img.mode)
        except _DECODE_ERRORS as e:
            raise DecodeError(f"Cannot read image metadata: {e}") from e

    def preserve_metadata(self, handle: ImageHandle) -> ImageHandle:
        return replace(handle, keep_metadata=True)

    def resize(
        self,
        handle: ImageHandle,
        width: Optional[int] = None,
        height: Optional[int] = None,
        fit: FitPolicy = FitPolicy.FILL,
    ) -> ImageHandle:
        try:
            if fit is FitPolicy.INSIDE:
                img = resize_keep_aspect(handle.image, width, height)
            else:
                img = resize_fill(handle.image, width, height)
        except _ENCODE_ERRORS as e:
            raise EncodeError(f"Resize to {width}x{height} failed: {e}") from e
        return replace(handle, image=img)

    def flatten(self, handle: ImageHandle, background: Tuple[int, int, int]) -> ImageHandle:
        img = handle.image
        try:
            if has_alpha(img):
                rgba = img.convert("RGBA")
                bg = Image.new("RGBA", rgba.size, tuple(background) + (255,))
                img = Image.alpha_composite(bg, rgba).convert("RGB")
            elif img.mode != "RGB":
                img = img.convert("RGB")
        except _ENCODE_ERRORS as e:
            raise EncodeError(f"Flatten failed: {e}") from e
        return replace(handle, image=img)

    def encode(self, handle: ImageHandle, fmt: OutputFormat, quality: int) -> bytes:
        img = handle.image
        kwargs: dict = {}
        if handle.keep_metadata:
            kwargs.update(handle.info)

        if fmt.kind is FormatKind.JPEG:
            kwargs.update(quality=quality, optimize=True)
        elif fmt.kind is FormatKind.PNG:
            # quality works as a palette size proxy; 100 keeps full color
            kwargs.update(compress_level=9)
            if img.mode not in _PNG_MODES:
                img = _to_rgb(img)
            if quality < 100:
                if img.mode not in ("RGB", "RGBA"):
                    img = _to_rgb(img)
                img = img.quantize(colors=_palette_colors(quality), method=Image.Quantize.FASTOCTREE)
        elif fmt.kind is FormatKind.WEBP:
            kwargs.update(quality=quality, method=4)
        elif fmt.kind is FormatKind.TIFF:
            if has_alpha(img):
                kwargs.update(compression="tiff_deflate")
            else:
                if img.mode not in _TIFF_JPEG_MODES:
                    img = img.convert("RGB")
                kwargs.update(compression="jpeg", quality=quality)
        elif fmt.kind is FormatKind.OTHER:
            kwargs.update(quality=quality)

        buf = io.BytesIO()
        try:
            img.save(buf, format=_pil_format(fmt), **kwargs)
        except _ENCODE_ERRORS as e:
            raise EncodeError(f"Cannot encode {fmt.name} at quality {quality}: {e}") from e
        return buf.getvalue()
