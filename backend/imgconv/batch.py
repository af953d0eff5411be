"""Batch conversion: one raw result for a single file, a ZIP archive for several."""
import io
import logging
import threading
import zipfile
from concurrent.futures import ThreadPoolExecutor
from pathlib import PurePath
from typing import Iterable, Optional, Sequence

from imgconv.config import BATCH_WORKERS, MAX_IMAGES_PER_UPLOAD
from imgconv.conversion.errors import (
    BatchLimitError,
    ConversionCancelled,
    DecodeError,
    EmptyBatchError,
    EncodeError,
)
from imgconv.conversion.models import BatchOutcome, ConversionRequest, FileOutcome, SourceImage
from imgconv.conversion.service import ConversionService, get_conversion_service

logger = logging.getLogger("converter.batch")

ARCHIVE_MIME_TYPE = "application/zip"
ARCHIVE_FILENAME = "converted_images.zip"


def validate_batch(sources: Sequence[SourceImage], limit: int = MAX_IMAGES_PER_UPLOAD) -> None:
    if not sources:
        raise EmptyBatchError("No image files submitted")
    if len(sources) > limit:
        raise BatchLimitError(len(sources), limit)


def unique_entry_name(name: str, seen: set[str]) -> str:
    """photo_converted.jpg -> photo_converted_1.jpg when the first is taken."""
    candidate = name
    path = PurePath(name)
    i = 1
    while candidate in seen:
        candidate = f"{path.stem}_{i}{path.suffix}"
        i += 1
    seen.add(candidate)
    return candidate


def write_archive(entries: Iterable[tuple[str, bytes]]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED, compresslevel=9) as zf:
        for name, data in entries:
            zf.writestr(name, data)
    return buf.getvalue()


def _convert_file(
    svc: ConversionService,
    source: SourceImage,
    request: ConversionRequest,
    cancel_event: Optional[threading.Event],
) -> FileOutcome:
    if cancel_event is not None and cancel_event.is_set():
        raise ConversionCancelled(f"Batch cancelled before {source.filename}")
    try:
        result = svc.convert_one(source, request, cancel_event=cancel_event)
    except (DecodeError, EncodeError) as e:
        logger.warning("Skipping %s: %s", source.filename, e)
        return FileOutcome(filename=source.filename, error=e)
    return FileOutcome(filename=source.filename, result=result)


def _convert_all(
    svc: ConversionService,
    sources: Sequence[SourceImage],
    request: ConversionRequest,
    workers: int,
    cancel_event: Optional[threading.Event],
) -> list[FileOutcome]:
    if workers <= 1:
        return [_convert_file(svc, s, request, cancel_event) for s in sources]

    # Pool size bounds in-flight codec work; outcomes are collected in input order
    executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="batch")
    try:
        futures = [executor.submit(_convert_file, svc, s, request, cancel_event) for s in sources]
        return [f.result() for f in futures]
    except ConversionCancelled:
        executor.shutdown(wait=True, cancel_futures=True)
        raise
    finally:
        executor.shutdown(wait=True)


def convert_batch(
    sources: Sequence[SourceImage],
    request: ConversionRequest,
    svc: Optional[ConversionService] = None,
    workers: int = BATCH_WORKERS,
    cancel_event: Optional[threading.Event] = None,
) -> BatchOutcome:
    """
    Convert 1..MAX_IMAGES_PER_UPLOAD images with the same request.

    A single file returns its ConversionResult directly and its errors propagate.
    Several files produce a ZIP with one `<stem>_converted.<format>` entry per success;
    failed files are logged and left out, they never abort the batch.
    """
    validate_batch(sources)
    svc = svc or get_conversion_service()

    if len(sources) == 1:
        result = svc.convert_one(sources[0], request, cancel_event=cancel_event)
        return BatchOutcome(outcomes=[FileOutcome(filename=sources[0].filename, result=result)], result=result)

    outcomes = _convert_all(svc, sources, request, workers, cancel_event)
    seen: set[str] = set()
    entries = [(unique_entry_name(o.result.filename, seen), o.result.data) for o in outcomes if o.ok]
    archive = write_archive(entries)

    outcome = BatchOutcome(outcomes=outcomes, archive=archive, entry_names=[name for name, _ in entries])
    if outcome.failed:
        logger.warning(
            "Batch finished with %s of %s files omitted: %s",
            len(outcome.failed), len(outcomes), ", ".join(o.filename for o in outcome.failed),
        )
    logger.info("Created zip with %s entries (%s bytes)", len(entries), len(archive))
    return outcome
