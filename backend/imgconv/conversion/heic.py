"""HEIC/HEIF ingestion: probe the codec engine, fall back to pillow-heif when it cannot read the file."""
import io
import logging
from typing import Callable, Optional

import pillow_heif

from imgconv.config import HEIC_EXTENSIONS, HEIC_MIME_TYPES, HEIC_PREVIEW_QUALITY
from imgconv.conversion.engine import PillowEngine
from imgconv.conversion.errors import ConversionError, DecodeError
from imgconv.conversion.models import FitPolicy, SourceImage

logger = logging.getLogger("converter.heic")

HeifDecoder = Callable[..., bytes]


def is_heic(mime_type: Optional[str], filename: Optional[str]) -> bool:
    """Either signal is enough: declared mime type or file extension."""
    if (mime_type or "").strip().lower() in HEIC_MIME_TYPES:
        return True
    return (filename or "").strip().lower().endswith(tuple(HEIC_EXTENSIONS))


def decode_heif(data: bytes, target: str = "PNG", quality: Optional[float] = None) -> bytes:
    """
    Decode HEIC/HEIF bytes with libheif and re-encode them as PNG or JPEG.
    quality is a 0-1 fraction and only applies to JPEG.
    """
    try:
        heif_file = pillow_heif.open_heif(io.BytesIO(data), convert_hdr_to_8bit=True)
        img = heif_file.to_pillow()
    except (ValueError, RuntimeError, OSError, EOFError) as e:
        raise DecodeError(f"HEIC decode failed: {e}") from e

    buf = io.BytesIO()
    if target.upper() == "JPEG":
        q = int(round((quality if quality is not None else HEIC_PREVIEW_QUALITY) * 100))
        img.convert("RGB").save(buf, format="JPEG", quality=max(1, min(100, q)))
    else:
        img.save(buf, format="PNG")
    return buf.getvalue()


class HeicAdapter:
    """Returns bytes the codec engine is guaranteed to read. Never mutates the source."""

    def __init__(self, engine: Optional[PillowEngine] = None, decoder: HeifDecoder = decode_heif):
        self.engine = engine or PillowEngine()
        self.decoder = decoder

    def _engine_can_decode(self, data: bytes) -> bool:
        try:
            handle = self.engine.decode(data)
            self.engine.resize(handle, 1, 1, FitPolicy.FILL)
        except ConversionError as e:
            logger.debug("Probe decode rejected input: %s", e)
            return False
        return True

    def normalize(self, source: SourceImage, preview: bool = False) -> bytes:
        if not is_heic(source.mime_type, source.filename):
            return source.data
        if self._engine_can_decode(source.data):
            logger.debug("Codec engine reads %s natively", source.filename)
            return source.data

        logger.info("Converting HEIC %s via secondary decoder", source.filename)
        if preview:
            return self.decoder(source.data, target="JPEG", quality=HEIC_PREVIEW_QUALITY)
        return self.decoder(source.data, target="PNG")
