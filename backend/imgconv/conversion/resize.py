"""Resize image to fit inside a box or fill it exactly."""
import logging
from typing import Optional, Tuple

from PIL import Image, ImageColor

logger = logging.getLogger("converter.resize")

WHITE = (255, 255, 255)


def _resample_ready(img: Image.Image) -> Image.Image:
    # Palette and bilevel images only resize with NEAREST; widen them first.
    if img.mode == "P":
        return img.convert("RGBA" if "transparency" in img.info else "RGB")
    if img.mode == "1":
        return img.convert("L")
    return img


def _scaled_size(w: int, h: int, scale: float) -> Tuple[int, int]:
    return max(1, int(round(w * scale))), max(1, int(round(h * scale)))


def resize_keep_aspect(
    img: Image.Image,
    target_width: Optional[int] = None,
    target_height: Optional[int] = None,
) -> Image.Image:
    """
    Scale image to fit within target width and/or height, maintaining aspect ratio.
    If only one dimension is set, the other is computed from the image ratio.
    """
    w, h = img.size
    if target_width is None and target_height is None:
        return img.copy()
    if target_width is not None and target_height is not None:
        scale = min(target_width / w, target_height / h)
    elif target_width is not None:
        scale = target_width / w
    else:
        scale = target_height / h
    new_size = _scaled_size(w, h, scale)
    if new_size == (w, h):
        return img.copy()
    return _resample_ready(img).resize(new_size, Image.Resampling.LANCZOS)


def resize_fill(
    img: Image.Image,
    target_width: Optional[int] = None,
    target_height: Optional[int] = None,
) -> Image.Image:
    """
    Stretch to exactly (target_width, target_height), ignoring the source ratio.
    With a single dimension there is no box to fill, so the ratio is kept.
    """
    if target_width is None or target_height is None:
        return resize_keep_aspect(img, target_width, target_height)
    if img.size == (target_width, target_height):
        return img.copy()
    return _resample_ready(img).resize((target_width, target_height), Image.Resampling.LANCZOS)


def parse_color(value: str) -> Tuple[int, int, int]:
    """Parse #RGB, #RRGGBB or a CSS color name to (r,g,b). Default white if invalid."""
    try:
        rgb = ImageColor.getrgb(value.strip())
    except (ValueError, AttributeError):
        logger.warning("Invalid background color %r, using white", value)
        return WHITE
    return rgb[0], rgb[1], rgb[2]
