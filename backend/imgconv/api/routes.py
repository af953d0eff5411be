"""API routes for image conversion and previews."""
import asyncio
import logging
import time
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import Response

from imgconv.batch import ARCHIVE_FILENAME, ARCHIVE_MIME_TYPE, convert_batch
from imgconv.config import (
    DEFAULT_BACKGROUND,
    DEFAULT_FORMAT,
    DEFAULT_QUALITY,
    IMAGE_OUTPUT_FORMATS,
    MAX_IMAGE_SIZE_BYTES,
    MAX_IMAGES_PER_UPLOAD,
    PREVIEW_SIZE,
)
from imgconv.conversion.errors import (
    BatchError,
    ConversionError,
    DecodeError,
    EncodeError,
    InvalidRequestError,
)
from imgconv.conversion.models import BatchOutcome, ConversionRequest, SourceImage
from imgconv.conversion.service import get_conversion_service
from imgconv.db import (
    delete_session_data,
    get_session_activities,
    get_session_stats,
    record_activity,
)

logger = logging.getLogger("converter.api")
router = APIRouter(prefix="/api", tags=["converter"])


def get_or_create_session_id(request: Request) -> str:
    """Use X-Session-ID header or generate and attach to request for response header."""
    sid = (request.headers.get("X-Session-ID") or "").strip()
    if sid:
        return sid
    sid = str(uuid.uuid4())
    request.state.session_id = sid
    return sid


def error_status(e: ConversionError) -> int:
    """HTTP status for a conversion error: bad input 400, unreadable image 422, codec failure 500."""
    if isinstance(e, DecodeError):
        return 422
    if isinstance(e, (InvalidRequestError, BatchError)):
        return 400
    return 500


def _optional_int(value: Optional[str], name: str) -> Optional[int]:
    value = (value or "").strip()
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        raise HTTPException(400, f"{name} must be an integer")


async def _read_upload(file: UploadFile) -> SourceImage:
    max_mb = MAX_IMAGE_SIZE_BYTES // (1024 * 1024)
    chunks = []
    total = 0
    while chunk := await file.read(1024 * 1024):
        total += len(chunk)
        if total > MAX_IMAGE_SIZE_BYTES:
            raise HTTPException(413, f"File too large: {file.filename} (max {max_mb} MB)")
        chunks.append(chunk)
    return SourceImage(data=b"".join(chunks), filename=file.filename or "image", mime_type=file.content_type)


def _record_outcomes(
    session_id: str,
    outcome: BatchOutcome,
    conv: ConversionRequest,
    elapsed: float,
    batch_id: Optional[str] = None,
) -> None:
    # Per-file timing is not tracked inside a batch, so the elapsed time is split evenly
    per_file = elapsed / max(1, len(outcome.outcomes))
    try:
        for o in outcome.outcomes:
            r = o.result
            record_activity(
                session_id,
                o.filename,
                "completed" if o.ok else "failed",
                batch_id=batch_id,
                error=None if o.ok else str(o.error),
                input_bytes=r.source_bytes if r else None,
                output_bytes=r.size if r else None,
                target_bytes=conv.target_size,
                met_budget=r.met_budget if r else None,
                output_format=conv.format.name,
                final_quality=r.quality if r else None,
                duration_seconds=per_file,
            )
    except Exception as e:
        logger.exception("Could not record activity for session %s: %s", session_id, e)


def _record_failure(session_id: str, source: SourceImage, conv: ConversionRequest, e: Exception) -> None:
    try:
        record_activity(
            session_id,
            source.filename,
            "failed",
            error=str(e),
            input_bytes=source.size,
            target_bytes=conv.target_size,
            output_format=conv.format.name,
        )
    except Exception as db_err:
        logger.exception("Could not record failure for session %s: %s", session_id, db_err)


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/limits")
def get_limits():
    """Return upload limits for the client."""
    return {
        "max_images_per_upload": MAX_IMAGES_PER_UPLOAD,
        "max_image_size_mb": MAX_IMAGE_SIZE_BYTES // (1024 * 1024),
        "max_image_size_bytes": MAX_IMAGE_SIZE_BYTES,
    }


@router.get("/formats")
def get_formats():
    return {
        "output_image": IMAGE_OUTPUT_FORMATS,
        "default_format": DEFAULT_FORMAT,
        "default_quality": DEFAULT_QUALITY,
        "preview_size": PREVIEW_SIZE,
    }


@router.post("/convert")
async def convert(
    image: Optional[UploadFile] = File(None),
    images: Optional[list[UploadFile]] = File(None),
    format: str = Form(DEFAULT_FORMAT),
    quality: Optional[str] = Form(None),
    width: Optional[str] = Form(None),
    height: Optional[str] = Form(None),
    maintainAspect: bool = Form(False),
    targetSize: Optional[str] = Form(None),
    keepMetadata: bool = Form(False),
    useTransparency: bool = Form(False),
    backgroundColor: str = Form(DEFAULT_BACKGROUND),
    session_id: str = Depends(get_or_create_session_id),
):
    """
    Convert one image (field `image`) or up to MAX_IMAGES_PER_UPLOAD (field `images`).
    One file comes back as the converted image, several as a ZIP archive.
    """
    uploads = ([image] if image is not None else []) + list(images or [])
    if not uploads:
        raise HTTPException(400, "No image file uploaded")
    if len(uploads) > MAX_IMAGES_PER_UPLOAD:
        raise HTTPException(400, f"Max {MAX_IMAGES_PER_UPLOAD} images per upload")

    conv = ConversionRequest.from_fields(
        format=format,
        quality=_optional_int(quality, "quality"),
        width=_optional_int(width, "width"),
        height=_optional_int(height, "height"),
        maintain_aspect=maintainAspect,
        target_size=_optional_int(targetSize, "targetSize"),
        keep_metadata=keepMetadata,
        use_transparency=useTransparency,
        background_color=backgroundColor,
    )

    sources = [await _read_upload(f) for f in uploads]
    started = time.perf_counter()
    try:
        outcome = await asyncio.to_thread(convert_batch, sources, conv, get_conversion_service())
    except (DecodeError, EncodeError) as e:
        logger.error("Conversion failed for %s: %s", sources[0].filename, e)
        _record_failure(session_id, sources[0], conv, e)
        raise
    elapsed = time.perf_counter() - started

    if not outcome.is_archive:
        result = outcome.result
        _record_outcomes(session_id, outcome, conv, elapsed)
        headers = {
            "Content-Disposition": f'attachment; filename="{result.filename}"',
            "X-Output-Quality": str(result.quality),
        }
        if result.met_budget is not None:
            headers["X-Target-Met"] = "true" if result.met_budget else "false"
        return Response(content=result.data, media_type=result.mime_type, headers=headers)

    batch_id = str(uuid.uuid4())
    _record_outcomes(session_id, outcome, conv, elapsed, batch_id=batch_id)
    return Response(
        content=outcome.archive,
        media_type=ARCHIVE_MIME_TYPE,
        headers={
            "Content-Disposition": f'attachment; filename="{ARCHIVE_FILENAME}"',
            "X-Batch-ID": batch_id,
            "X-Converted-Count": str(len(outcome.succeeded)),
            "X-Failed-Count": str(len(outcome.failed)),
        },
    )


@router.post("/preview")
async def preview(image: UploadFile = File(...)):
    """Return a small JPEG thumbnail of the upload (HEIC included)."""
    source = await _read_upload(image)
    try:
        data = await asyncio.to_thread(get_conversion_service().preview, source)
    except ConversionError as e:
        logger.error("Preview failed for %s: %s", source.filename, e)
        raise
    return Response(content=data, media_type="image/jpeg")


@router.get("/session/stats")
def session_stats(session_id: str = Depends(get_or_create_session_id)):
    """Return aggregated stats for the current session."""
    return get_session_stats(session_id)


@router.get("/session/activities")
def session_activities(
    limit: int = Query(50, ge=1, le=200),
    session_id: str = Depends(get_or_create_session_id),
):
    """Return recent conversion activities for the current session, failed files included."""
    return {"activities": get_session_activities(session_id, limit=limit)}


@router.delete("/session/data")
def session_delete_data(session_id: str = Depends(get_or_create_session_id)):
    """Delete all recorded activity for the session."""
    removed = delete_session_data(session_id)
    return {"ok": True, "removed": removed, "message": "Session data cleared"}
