from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from common.schemas import ProgressStage, ProgressUpdate

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressUpdate], None]

TERMINAL_STAGES = (ProgressStage.complete, ProgressStage.error)


class ProgressTracker:
    """Monotonic, throttled progress reporting for one request.

    Percentages never go below the highest value already reported. Updates
    arriving within ``min_interval_s`` of the last emitted one are coalesced:
    only the newest is kept and it is emitted with the next allowed update or
    on :meth:`flush`. Terminal stages are emitted immediately.
    """

    def __init__(
        self,
        callback: Optional[ProgressCallback] = None,
        min_interval_s: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._callback = callback
        self._min_interval_s = min_interval_s
        self._clock = clock
        self._last_emit: float | None = None
        self._pending: ProgressUpdate | None = None
        self.percent = 0.0
        self.last: ProgressUpdate | None = None

    def report(
        self,
        stage: ProgressStage,
        percent: float,
        message: str = "",
        current_section: str | None = None,
    ) -> None:
        clamped = min(max(float(percent), 0.0), 100.0)
        self.percent = max(self.percent, clamped)
        update = ProgressUpdate(
            stage=stage,
            percent=self.percent,
            message=message,
            current_section=current_section,
        )

        now = self._clock()
        due = self._last_emit is None or now - self._last_emit >= self._min_interval_s
        if stage in TERMINAL_STAGES or due:
            self._pending = None
            self._emit(update, now)
        else:
            self._pending = update

    def flush(self) -> None:
        if self._pending is not None:
            pending, self._pending = self._pending, None
            self._emit(pending, self._clock())

    def _emit(self, update: ProgressUpdate, now: float) -> None:
        self._last_emit = now
        self.last = update
        if self._callback is None:
            return
        try:
            self._callback(update)
        except Exception:
            logger.exception("Progress callback failed")
