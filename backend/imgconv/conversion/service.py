"""Single-file image conversion, target-size driven conversion and previews."""
import logging
import threading
from typing import Optional

from imgconv.config import PREVIEW_QUALITY, PREVIEW_SIZE
from imgconv.conversion.engine import PillowEngine
from imgconv.conversion.heic import HeicAdapter
from imgconv.conversion.models import (
    ConversionRequest,
    ConversionResult,
    ConversionTask,
    FitPolicy,
    OutputFormat,
    SourceImage,
    output_filename,
)
from imgconv.conversion.resize import WHITE
from imgconv.conversion.search import SearchSettings, TargetSizeSearch

logger = logging.getLogger("converter.service")

PREVIEW_FORMAT = OutputFormat.parse("jpeg")


class ConversionService:
    """Runs the decode/resize/flatten/encode pipeline and the target-size search around it."""

    def __init__(
        self,
        engine: Optional[PillowEngine] = None,
        heic: Optional[HeicAdapter] = None,
        settings: Optional[SearchSettings] = None,
    ):
        self.engine = engine or PillowEngine()
        self.heic = heic or HeicAdapter(self.engine)
        self.settings = settings or SearchSettings()
        logger.info("ConversionService initialized (%s)", self.settings)

    def convert(
        self,
        data: bytes,
        request: ConversionRequest,
        quality: int,
        width: Optional[int] = None,
        height: Optional[int] = None,
    ) -> bytes:
        """One encode with fixed parameters. Decode/encode errors propagate; no retries."""
        handle = self.engine.decode(data)
        if request.keep_metadata:
            handle = self.engine.preserve_metadata(handle)
        if width is not None or height is not None:
            handle = self.engine.resize(handle, width, height, request.fit)
        # Formats without alpha must be flattened before encode or the encoder rejects RGBA
        if request.needs_flatten:
            handle = self.engine.flatten(handle, request.background)
        return self.engine.encode(handle, request.format, quality)

    def run(self, task: ConversionTask) -> bytes:
        """Encode the task's working buffer at its current quality and dimensions."""
        task.tried.add(task.params)
        task.codec_calls += 1
        return self.convert(task.buffer, task.request, task.quality, task.width, task.height)

    def _prepare_task(self, source: SourceImage, request: ConversionRequest) -> ConversionTask:
        task = ConversionTask(source, request)
        normalized = self.heic.normalize(source)
        if normalized is not source.data:
            task.replace_buffer(normalized)
        return task

    def convert_one(
        self,
        source: SourceImage,
        request: ConversionRequest,
        cancel_event: Optional[threading.Event] = None,
    ) -> ConversionResult:
        """Convert a single image, running the target-size search when a budget is set."""
        task = self._prepare_task(source, request)
        task.output = self.run(task)
        if request.target_size:
            search = TargetSizeSearch(self, self.settings, cancel_event=cancel_event)
            search.run(task, request.target_size)

        met_budget = None
        if request.target_size:
            met_budget = task.output_size <= request.target_size
        result = ConversionResult(
            data=task.output,
            mime_type=request.format.mime_type,
            filename=output_filename(source.stem, request.format),
            source_filename=source.filename,
            source_bytes=source.size,
            quality=task.quality,
            width=task.width,
            height=task.height,
            target_size=request.target_size,
            met_budget=met_budget,
        )
        logger.info(
            "Converted %s -> %s (%s -> %s bytes, %s codec calls)",
            source.filename, result.filename, source.size, result.size, task.codec_calls,
        )
        return result

    def preview(self, source: SourceImage) -> bytes:
        """Small JPEG thumbnail: fit inside PREVIEW_SIZE square, fixed quality, no search."""
        data = self.heic.normalize(source, preview=True)
        handle = self.engine.decode(data)
        handle = self.engine.resize(handle, PREVIEW_SIZE, PREVIEW_SIZE, FitPolicy.INSIDE)
        handle = self.engine.flatten(handle, WHITE)
        return self.engine.encode(handle, PREVIEW_FORMAT, PREVIEW_QUALITY)


# Singleton
_conversion_service: Optional[ConversionService] = None


def get_conversion_service() -> ConversionService:
    global _conversion_service
    if _conversion_service is None:
        _conversion_service = ConversionService()
    return _conversion_service
