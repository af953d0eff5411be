import io

import pytest
from PIL import Image

from imgconv.conversion.errors import DecodeError, EncodeError
from imgconv.conversion.models import ConversionRequest, OutputFormat


def _open(data):
    img = Image.open(io.BytesIO(data))
    img.load()
    return img


def test_fill_stretches_to_exact_box(service, make_image):
    src = make_image((200, 100))
    out = service.convert(src, ConversionRequest.from_fields(width=100, height=100), 80, 100, 100)
    assert _open(out).size == (100, 100)


def test_fit_inside_preserves_ratio(service, make_image):
    src = make_image((200, 100))
    req = ConversionRequest.from_fields(width=100, height=100, maintain_aspect=True)
    out = service.convert(src, req, 80, 100, 100)
    assert _open(out).size == (100, 50)


def test_single_dimension_infers_the_other(service, make_image):
    src = make_image((200, 100))
    out = service.convert(src, ConversionRequest.from_fields(width=50), 80, 50, None)
    assert _open(out).size == (50, 25)


def test_no_dimensions_skips_resize(service, engine, make_image):
    src = make_image((120, 80))
    out = service.convert(src, ConversionRequest.from_fields(), 80)
    assert engine.calls["resize"] == 0
    assert _open(out).size == (120, 80)


@pytest.mark.parametrize("fmt", ["jpg", "bmp"])
def test_formats_without_alpha_are_always_flattened(service, engine, make_image, fmt):
    src = make_image((20, 20), mode="RGBA", color=(0, 0, 255, 128))
    req = ConversionRequest.from_fields(format=fmt, use_transparency=False)
    out = service.convert(src, req, 80)
    assert engine.calls["flatten"] == 1
    assert _open(out).mode == "RGB"


def test_alpha_format_keeps_transparency_by_default(service, engine, make_image):
    src = make_image((20, 20), mode="RGBA", color=(0, 0, 255, 0))
    out = service.convert(src, ConversionRequest.from_fields(format="webp"), 80)
    assert engine.calls["flatten"] == 0
    assert "A" in _open(out).mode


def test_transparency_removal_uses_background(service, engine, make_image):
    src = make_image((20, 20), mode="RGBA", color=(0, 0, 0, 0))
    req = ConversionRequest.from_fields(format="png", quality=100, use_transparency=True, background_color="#ff0000")
    out = _open(service.convert(src, req, 100))
    assert engine.calls["flatten"] == 1
    assert out.mode == "RGB"
    assert out.getpixel((5, 5)) == (255, 0, 0)


def test_png_quality_below_100_uses_palette(service, make_image):
    src = make_image((50, 50))
    req = ConversionRequest.from_fields(format="png")
    assert _open(service.convert(src, req, 80)).mode == "P"
    assert _open(service.convert(src, req, 100)).mode == "RGB"


@pytest.mark.parametrize("mode, color", [("P", 3), ("1", 1)])
def test_palette_and_bilevel_sources_encode_as_tiff(service, make_image, mode, color):
    src = make_image((40, 40), mode=mode, color=color)
    out = _open(service.convert(src, ConversionRequest.from_fields(format="tiff"), 80))
    assert out.format == "TIFF"
    assert out.size == (40, 40)
    assert out.mode == "RGB"


def test_cmyk_jpeg_encodes_as_full_quality_png(service, make_image):
    src = make_image((30, 30), mode="CMYK", color=(0, 255, 255, 0), fmt="JPEG")
    out = _open(service.convert(src, ConversionRequest.from_fields(format="png", quality=100), 100))
    assert out.format == "PNG"
    assert out.mode == "RGB"


def test_metadata_stripped_unless_kept(service, make_image):
    exif = Image.Exif()
    exif[0x010F] = "TestCam"
    src = make_image((40, 40), fmt="JPEG", exif=exif.tobytes())

    stripped = service.convert(src, ConversionRequest.from_fields(format="jpg"), 80)
    assert 0x010F not in _open(stripped).getexif()

    kept = service.convert(src, ConversionRequest.from_fields(format="jpg", keep_metadata=True), 80)
    assert _open(kept).getexif()[0x010F] == "TestCam"


def test_lower_quality_gives_smaller_jpeg(service, make_noise):
    src = make_noise((200, 200))
    req = ConversionRequest.from_fields(format="jpg")
    assert len(service.convert(src, req, 20)) < len(service.convert(src, req, 90))


def test_decode_error_for_garbage(service):
    with pytest.raises(DecodeError):
        service.convert(b"definitely not an image", ConversionRequest.from_fields(), 80)


def test_encode_error_for_alpha_into_jpeg_without_flatten(engine, make_image):
    handle = engine.decode(make_image((10, 10), mode="RGBA", color=(1, 2, 3, 4)))
    with pytest.raises(EncodeError):
        engine.encode(handle, OutputFormat.parse("jpg"), 80)


def test_unknown_output_format_is_encode_error(service, make_image):
    with pytest.raises(EncodeError):
        service.convert(make_image(), ConversionRequest.from_fields(format="nosuchformat"), 80)


def test_read_metadata(engine, make_image):
    meta = engine.read_metadata(make_image((64, 32)))
    assert (meta.width, meta.height, meta.format) == (64, 32, "PNG")
