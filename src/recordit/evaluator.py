"""Stop-condition race for a recording chunk.

The evaluator runs a single cooperative polling loop that waits on the
keypress source for no longer than the nearest deadline, then re-checks the
overall duration deadline, the pause-aware split interval and the throttled
output size callable. Exactly one :class:`StopReason` is produced per call.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import time
from enum import Enum
from typing import Awaitable, Callable

from .config import RecordingConfiguration
from .keys import PauseResumeState
from .terminal import KeypressSource, NullKeypressSource
from .timeline import RecordingTimeline

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.25
DEFAULT_SIZE_CHECK_INTERVAL = 0.5
_MIN_WAIT = 0.001

SizeReader = Callable[[], "int | None"]
PauseCallback = Callable[[bool], "Awaitable[None] | None"]


class StopReason(str, Enum):
    """Why a chunk ended."""

    DURATION = "duration"
    SPLIT = "split"
    MAX_SIZE = "maxSize"
    KEY = "key"
    EXTERNAL_SIGNAL = "externalSignal"


class StopConditionEvaluator:
    """Wait until the first of the configured stop conditions fires."""

    def __init__(
        self,
        config: RecordingConfiguration,
        keys: KeypressSource | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        size_check_interval: float = DEFAULT_SIZE_CHECK_INTERVAL,
        on_pause_change: PauseCallback | None = None,
    ) -> None:
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if size_check_interval <= 0:
            raise ValueError("size_check_interval must be positive")
        self.config = config
        self._keys: KeypressSource = keys if keys is not None else NullKeypressSource()
        self._clock = clock
        self.poll_interval = float(poll_interval)
        self.size_check_interval = float(size_check_interval)
        self.on_pause_change = on_pause_change
        self.timeline: RecordingTimeline | None = None
        self._interrupt_requested = False
        self._interrupted: asyncio.Event | None = None

    # ------------------------------ properties -----------------------------
    @property
    def interrupted(self) -> bool:
        return self._interrupt_requested

    def now(self) -> float:
        return self._clock()

    # ------------------------------ operations -----------------------------
    def interrupt(self) -> None:
        """Request an orderly stop; safe to call from an event-loop signal handler."""

        self._interrupt_requested = True
        if self._interrupted is not None:
            self._interrupted.set()

    async def evaluate(
        self,
        chunk_started_at: float | None = None,
        output_size: SizeReader | None = None,
        *,
        deadline: float | None = None,
    ) -> StopReason:
        """Block until a stop condition fires and return it.

        ``deadline`` is the absolute overall duration deadline on the
        evaluator's clock and is not affected by pausing. The split interval
        counts active time from ``chunk_started_at`` only.
        """

        config = self.config
        timeline = RecordingTimeline(chunk_started_at, clock=self._clock)
        self.timeline = timeline
        pause_state = PauseResumeState(config.pause_keys, config.resume_keys)
        split = config.split_interval
        max_size = config.max_size_bytes if output_size is not None else None
        next_size_check = timeline.started_at

        interrupted = asyncio.Event()
        if self._interrupt_requested:
            interrupted.set()
        self._interrupted = interrupted
        try:
            with self._keys:
                while True:
                    now = self._clock()
                    timeline.tick(now)
                    if interrupted.is_set():
                        return self._finish(StopReason.EXTERNAL_SIGNAL)
                    if deadline is not None and now >= deadline:
                        return self._finish(StopReason.DURATION)
                    if (
                        split is not None
                        and not timeline.is_paused
                        and timeline.remaining(split) <= 0
                    ):
                        return self._finish(StopReason.SPLIT)
                    if max_size is not None and now >= next_size_check:
                        size = self._read_size(output_size)
                        next_size_check = now + self.size_check_interval
                        if size is not None and size >= max_size:
                            logger.debug("Output reached %d bytes (limit %d)", size, max_size)
                            return self._finish(StopReason.MAX_SIZE)

                    timeout = self.poll_interval
                    if deadline is not None:
                        timeout = min(timeout, RecordingTimeline.until(deadline, now))
                    if split is not None and not timeline.is_paused:
                        timeout = min(timeout, timeline.remaining(split))
                    if max_size is not None:
                        timeout = min(timeout, RecordingTimeline.until(next_size_check, now))

                    byte = await self._wait_for_key(max(timeout, _MIN_WAIT), interrupted)
                    while byte is not None:
                        if interrupted.is_set():
                            break
                        if byte in config.stop_keys:
                            return self._finish(StopReason.KEY)
                        if pause_state.matches(byte) and pause_state.handle(byte):
                            await self._apply_pause(timeline, pause_state.paused)
                        # Drain bytes already queued before deadlines are checked again.
                        byte = await self._keys.read(0)
                    if interrupted.is_set():
                        return self._finish(StopReason.EXTERNAL_SIGNAL)
        finally:
            self._interrupted = None

    # ----------------------------- implementation --------------------------
    async def _wait_for_key(self, timeout: float, interrupted: asyncio.Event) -> int | None:
        read_task = asyncio.ensure_future(self._keys.read(timeout))
        interrupt_task = asyncio.ensure_future(interrupted.wait())
        try:
            done, _ = await asyncio.wait(
                {read_task, interrupt_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (read_task, interrupt_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(read_task, interrupt_task, return_exceptions=True)
        if read_task in done and not read_task.cancelled():
            return read_task.result()
        return None

    async def _apply_pause(self, timeline: RecordingTimeline, paused: bool) -> None:
        now = self._clock()
        if paused:
            timeline.pause(now)
            logger.info("Recording paused")
        else:
            timeline.resume(now)
            logger.info("Recording resumed (paused %.1fs so far)", timeline.paused_total)
        callback = self.on_pause_change
        if callback is None:
            return
        result = callback(paused)
        if inspect.isawaitable(result):
            await result

    def _read_size(self, output_size: SizeReader | None) -> int | None:
        if output_size is None:
            return None
        try:
            size = output_size()
        except OSError as exc:
            logger.debug("Output size check failed: %s", exc)
            return None
        if size is None:
            return None
        return int(size)

    def _finish(self, reason: StopReason) -> StopReason:
        timeline = self.timeline
        if timeline is not None:
            logger.info(
                "Chunk stopping (%s) after %.2fs active",
                reason.value,
                timeline.elapsed_active,
            )
        return reason


__all__ = [
    "DEFAULT_POLL_INTERVAL",
    "DEFAULT_SIZE_CHECK_INTERVAL",
    "StopConditionEvaluator",
    "StopReason",
]
