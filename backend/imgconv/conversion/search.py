"""Target-size search: lower quality first, then shrink dimensions, until the output fits a byte budget.

Every iteration re-encodes from the task's normalized source buffer, never from the
previous output, so lossy generations do not compound. The search is best-effort:
when the caps or the dimension floor are hit the last buffer is returned as is.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from imgconv.config import (
    SEARCH_MAX_QUALITY_ITERATIONS,
    SEARCH_MAX_RESIZE_ITERATIONS,
    SEARCH_MIN_DIMENSION,
    SEARCH_MIN_QUALITY,
)
from imgconv.conversion.errors import ConversionCancelled
from imgconv.conversion.models import ConversionTask, SearchPhase

logger = logging.getLogger("converter.search")

# (ratio threshold, value): first row whose threshold the size/budget ratio exceeds wins
Staircase = Sequence[Tuple[float, float]]


def _staircase(ratio: float, steps: Staircase) -> float:
    for threshold, value in steps:
        if ratio > threshold:
            return value
    return steps[-1][1]


@dataclass(frozen=True)
class SearchSettings:
    min_quality: int = SEARCH_MIN_QUALITY
    max_quality_iterations: int = SEARCH_MAX_QUALITY_ITERATIONS
    max_resize_iterations: int = SEARCH_MAX_RESIZE_ITERATIONS
    min_dimension: int = SEARCH_MIN_DIMENSION
    quality_steps: Staircase = ((5.0, 30), (2.0, 20), (0.0, 10))
    scale_factors: Staircase = ((4.0, 0.50), (2.0, 0.70), (0.0, 0.85))

    def quality_step(self, ratio: float) -> int:
        return int(_staircase(ratio, self.quality_steps))

    def scale_factor(self, ratio: float) -> float:
        return float(_staircase(ratio, self.scale_factors))


class TargetSizeSearch:
    """Drives a converter (anything with ``run(task) -> bytes`` and an ``engine``) toward a byte budget."""

    def __init__(
        self,
        converter,
        settings: Optional[SearchSettings] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.converter = converter
        self.settings = settings or SearchSettings()
        self.cancel_event = cancel_event

    def _check_cancelled(self, task: ConversionTask) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise ConversionCancelled(f"Conversion of {task.filename} cancelled")

    def _attempt(self, task: ConversionTask) -> bool:
        """Encode at the task's current params. False if that tuple was already tried."""
        self._check_cancelled(task)
        if task.params in task.tried:
            logger.debug("Params %s already tried for %s, stopping", task.params, task.filename)
            return False
        task.output = self.converter.run(task)
        return True

    def _resolve_dimensions(self, task: ConversionTask) -> None:
        if task.width is not None and task.height is not None:
            return
        meta = self.converter.engine.read_metadata(task.buffer)
        if task.width is None and task.height is None:
            task.width, task.height = meta.width, meta.height
        elif task.width is None:
            task.width = max(1, int(round(meta.width * task.height / meta.height)))
        else:
            task.height = max(1, int(round(meta.height * task.width / meta.width)))
        logger.debug("Resolved %s dimensions to %sx%s", task.filename, task.width, task.height)

    def _descend_quality(self, task: ConversionTask, budget: int) -> None:
        s = self.settings
        task.phase = SearchPhase.QUALITY
        while (
            task.output_size > budget
            and task.quality > s.min_quality
            and task.quality_iterations < s.max_quality_iterations
        ):
            ratio = task.output_size / budget
            task.quality = max(s.min_quality, task.quality - s.quality_step(ratio))
            logger.debug(
                "Target: %s, Current: %s, New Quality: %s", budget, task.output_size, task.quality
            )
            if not self._attempt(task):
                break
            task.quality_iterations += 1

    def _downscale(self, task: ConversionTask, budget: int) -> None:
        s = self.settings
        task.phase = SearchPhase.RESIZE
        self._resolve_dimensions(task)
        while (
            task.output_size > budget
            and (task.width > s.min_dimension or task.height > s.min_dimension)
            and task.resize_iterations < s.max_resize_iterations
        ):
            factor = s.scale_factor(task.output_size / budget)
            task.width = max(1, int(round(task.width * factor)))
            task.height = max(1, int(round(task.height * factor)))
            logger.debug(
                "Target: %s, Current: %s, New Size: %sx%s (quality %s)",
                budget, task.output_size, task.width, task.height, task.quality,
            )
            if not self._attempt(task):
                break
            task.resize_iterations += 1

    def run(self, task: ConversionTask, budget: Optional[int]) -> bytes:
        """Return a buffer at or under budget when reachable, else the last one produced."""
        if task.output is None:
            self._attempt(task)
        if not budget or task.output_size <= budget:
            task.phase = SearchPhase.DONE
            return task.output

        self._descend_quality(task, budget)
        if task.output_size > budget:
            self._downscale(task, budget)
        task.phase = SearchPhase.DONE

        if task.output_size <= budget:
            logger.info(
                "%s fits budget %s: %s bytes at quality %s", task.filename, budget, task.output_size, task.quality
            )
        else:
            logger.info(
                "%s still over budget %s after %s quality and %s resize steps: %s bytes",
                task.filename, budget, task.quality_iterations, task.resize_iterations, task.output_size,
            )
        return task.output
