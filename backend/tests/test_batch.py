import io
import threading
import zipfile

import pytest
from PIL import Image

from imgconv.batch import convert_batch, unique_entry_name, write_archive
from imgconv.conversion.errors import BatchLimitError, ConversionCancelled, DecodeError, EmptyBatchError
from imgconv.conversion.models import ConversionRequest, SourceImage


def _zip(outcome):
    return zipfile.ZipFile(io.BytesIO(outcome.archive))


@pytest.fixture
def three_pngs(make_image):
    return [SourceImage(make_image(color=(i * 50, 0, 0)), f"test_img_{i}.png", "image/png") for i in range(3)]


def test_three_pngs_to_jpg_archive(service, three_pngs):
    outcome = convert_batch(three_pngs, ConversionRequest.from_fields(format="jpg", quality=80), svc=service)
    assert outcome.is_archive
    zf = _zip(outcome)
    assert zf.namelist() == ["test_img_0_converted.jpg", "test_img_1_converted.jpg", "test_img_2_converted.jpg"]
    assert all(info.compress_type == zipfile.ZIP_DEFLATED for info in zf.infolist())
    assert Image.open(io.BytesIO(zf.read("test_img_1_converted.jpg"))).format == "JPEG"


def test_failed_file_is_omitted_without_raising(service, three_pngs):
    sources = three_pngs[:1] + [SourceImage(b"garbage", "broken.png")] + three_pngs[1:]
    outcome = convert_batch(sources, ConversionRequest.from_fields(format="jpg"), svc=service)
    assert len(_zip(outcome).namelist()) == 3
    assert [o.filename for o in outcome.failed] == ["broken.png"]
    assert isinstance(outcome.failed[0].error, DecodeError)
    assert [o.filename for o in outcome.outcomes] == [s.filename for s in sources]


def test_all_files_failing_gives_empty_archive(service):
    sources = [SourceImage(b"nope", "a.png"), SourceImage(b"nope", "b.png")]
    outcome = convert_batch(sources, ConversionRequest.from_fields(), svc=service)
    assert outcome.is_archive
    assert _zip(outcome).namelist() == []
    assert len(outcome.failed) == 2


@pytest.mark.parametrize("fmt, mime", [("jpg", "image/jpeg"), ("webp", "image/webp"), ("png", "image/png")])
def test_single_file_returns_raw_buffer(service, make_image, fmt, mime):
    outcome = convert_batch([SourceImage(make_image(), "one.png")], ConversionRequest.from_fields(format=fmt), svc=service)
    assert not outcome.is_archive
    assert outcome.result.mime_type == mime
    assert outcome.result.filename == f"one_converted.{fmt}"


def test_single_file_error_propagates(service):
    with pytest.raises(DecodeError):
        convert_batch([SourceImage(b"garbage", "x.png")], ConversionRequest.from_fields(), svc=service)


def test_empty_batch_rejected(service):
    with pytest.raises(EmptyBatchError):
        convert_batch([], ConversionRequest.from_fields(), svc=service)


def test_too_many_files_rejected_before_converting(service, engine, make_image):
    sources = [SourceImage(make_image(), f"{i}.png") for i in range(11)]
    with pytest.raises(BatchLimitError):
        convert_batch(sources, ConversionRequest.from_fields(), svc=service)
    assert engine.calls["decode"] == 0


def test_duplicate_stems_get_unique_entries(service, make_image):
    sources = [SourceImage(make_image(), "same.png"), SourceImage(make_image(), "same.jpg")]
    outcome = convert_batch(sources, ConversionRequest.from_fields(format="webp"), svc=service)
    assert outcome.entry_names == ["same_converted.webp", "same_converted_1.webp"]


def test_worker_pool_keeps_entry_names(service, three_pngs):
    req = ConversionRequest.from_fields(format="jpg", target_size=500)
    outcome = convert_batch(three_pngs, req, svc=service, workers=3)
    assert sorted(_zip(outcome).namelist()) == [f"test_img_{i}_converted.jpg" for i in range(3)]
    assert all(o.ok for o in outcome.outcomes)


def test_cancelled_batch_raises(service, three_pngs):
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(ConversionCancelled):
        convert_batch(three_pngs, ConversionRequest.from_fields(), svc=service, cancel_event=cancel)


def test_unique_entry_name():
    seen = set()
    assert unique_entry_name("a.jpg", seen) == "a.jpg"
    assert unique_entry_name("a.jpg", seen) == "a_1.jpg"
    assert unique_entry_name("a.jpg", seen) == "a_2.jpg"


def test_write_archive_round_trip():
    data = write_archive([("x.txt", b"hello"), ("y.bin", b"\x00" * 10)])
    zf = zipfile.ZipFile(io.BytesIO(data))
    assert zf.read("x.txt") == b"hello"
    assert len(zf.read("y.bin")) == 10
