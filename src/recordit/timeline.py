"""Pause-aware elapsed time tracking for a single recording chunk."""
from __future__ import annotations

import time
from typing import Callable


class RecordingTimeline:
    """Accumulate active (unpaused) time between ticks.

    Only the active time is pause-aware. Absolute wall-clock deadlines, such
    as the overall recording duration, keep running while paused and are
    queried through :meth:`until`.
    """

    def __init__(
        self,
        started_at: float | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        now = clock() if started_at is None else float(started_at)
        self.started_at = now
        self.last_tick_at = now
        self.elapsed_active = 0.0
        self.paused_total = 0.0
        self.is_paused = False

    def now(self) -> float:
        return self._clock()

    def tick(self, now: float | None = None) -> float:
        """Advance the timeline to *now* and return the active time gained."""

        current = self._clock() if now is None else float(now)
        delta = max(0.0, current - self.last_tick_at)
        self.last_tick_at = max(self.last_tick_at, current)
        if self.is_paused:
            self.paused_total += delta
            return 0.0
        self.elapsed_active += delta
        return delta

    def pause(self, now: float | None = None) -> None:
        if self.is_paused:
            return
        self.tick(now)
        self.is_paused = True

    def resume(self, now: float | None = None) -> None:
        if not self.is_paused:
            return
        self.tick(now)
        self.is_paused = False

    def remaining(self, interval: float) -> float:
        """Return active time left before *interval* seconds have accrued."""

        return max(0.0, float(interval) - self.elapsed_active)

    @staticmethod
    def until(deadline: float, now: float) -> float:
        """Return wall-clock time left before the absolute *deadline*."""

        return max(0.0, float(deadline) - float(now))


__all__ = ["RecordingTimeline"]
