"""Chunk loop orchestration for a recording run."""
from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Callable, Iterator

from .capture import CaptureSession, file_size
from .config import RecordingConfiguration
from .evaluator import StopConditionEvaluator, StopReason
from .keys import describe_key
from .paths import OutputPathResolver

logger = logging.getLogger(__name__)

_HANDLED_SIGNALS: tuple[signal.Signals, ...] = tuple(
    sig for sig in (getattr(signal, "SIGINT", None), getattr(signal, "SIGTERM", None)) if sig
)


@dataclass(frozen=True, slots=True)
class ChunkState:
    """The chunk currently being recorded."""

    index: int
    path: Path
    started_at: float

    def __post_init__(self) -> None:
        if self.index < 1:
            raise ValueError("Chunk index starts at 1")


@dataclass(frozen=True, slots=True)
class ChunkResult:
    """Outcome of a completed chunk, in the order chunks were recorded."""

    path: Path
    reason: StopReason
    chunk: int
    started_at: float
    stopped_at: float
    active_seconds: float
    size_bytes: int | None = None

    @property
    def elapsed_seconds(self) -> float:
        return max(0.0, self.stopped_at - self.started_at)


def _format_number(value: float) -> str:
    return f"{value:g}"


class RecordingLoopController:
    """Drive a capture session through one or more chunks until a stop condition.

    Each chunk resolves its destination, starts the session, waits on the
    evaluator and stops the session again. A ``split`` stop begins the next
    chunk; every other reason, or an overall deadline that has already
    passed, ends the run. Failing to start a chunk aborts the run.
    """

    def __init__(
        self,
        config: RecordingConfiguration,
        session: CaptureSession,
        resolver: OutputPathResolver,
        evaluator: StopConditionEvaluator | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        label: str = "Recording",
        handle_signals: bool = True,
    ) -> None:
        self.config = config
        self.session = session
        self.resolver = resolver
        self.clock = clock
        self.label = label
        self.handle_signals = handle_signals
        if evaluator is None:
            evaluator = StopConditionEvaluator(config, clock=clock)
        if evaluator.on_pause_change is None:
            evaluator.on_pause_change = self._forward_pause
        self.evaluator = evaluator
        self.chunk: ChunkState | None = None
        self._running = False

    # ------------------------------ operations -----------------------------
    def interrupt(self) -> None:
        """Ask the run to stop after finalising the current chunk."""

        logger.info("Interrupt received; finishing current chunk")
        self.evaluator.interrupt()

    def describe_chunk(self, index: int) -> str:
        """Return the operator message shown when chunk *index* starts."""

        config = self.config
        stop_message = f"press '{describe_key(config.stop_keys)}' to stop"
        if config.split_interval is not None:
            stop_message += f", split every {_format_number(config.split_interval)}s"
        if config.max_size_mb is not None:
            stop_message += f" or when file reaches {_format_number(config.max_size_mb)} MB"
        chunk_label = f" (chunk {index})" if config.splitting else ""
        if config.duration is not None:
            message = (
                f"{self.label}{chunk_label}... will stop automatically after "
                f"{_format_number(config.duration)} seconds or when you {stop_message}."
            )
        else:
            message = f"{self.label}{chunk_label}... {stop_message}."
        if config.pause_enabled:
            pause_label = describe_key(config.pause_keys)
            resume_label = describe_key(config.resume_keys)
            if pause_label == resume_label:
                message += f" Press '{pause_label}' to pause or resume."
            else:
                message += f" Press '{pause_label}' to pause and '{resume_label}' to resume."
        return message

    async def run(self) -> AsyncIterator[ChunkResult]:
        """Record chunks, yielding each result once its file is finalised."""

        if self._running:
            raise RuntimeError("Recording loop already running")
        self._running = True
        config = self.config
        splitting = config.splitting
        deadline = None
        if config.duration is not None:
            deadline = self.clock() + config.duration
        index = 1
        try:
            with self._signal_handlers():
                while True:
                    if deadline is not None and self.clock() >= deadline:
                        logger.debug("Overall duration elapsed before chunk %d", index)
                        break
                    if self.evaluator.interrupted:
                        break
                    result = await self._record_chunk(index, deadline, splitting)
                    yield result
                    if result.reason is not StopReason.SPLIT or self.evaluator.interrupted:
                        break
                    index += 1
        finally:
            self.chunk = None
            self._running = False

    async def run_to_completion(self) -> list[ChunkResult]:
        return [result async for result in self.run()]

    # ----------------------------- implementation --------------------------
    async def _record_chunk(
        self, index: int, deadline: float | None, splitting: bool
    ) -> ChunkResult:
        config = self.config
        path = await asyncio.to_thread(
            self.resolver.resolve_and_prepare,
            config.output,
            config.name_template,
            chunk_index=index if splitting else None,
            require_directory=splitting,
        )
        await self.session.start(path)
        chunk = ChunkState(index=index, path=path, started_at=self.clock())
        self.chunk = chunk
        logger.info("%s", self.describe_chunk(index))
        try:
            reason = await self.evaluator.evaluate(
                chunk.started_at,
                self.session.current_output_size_bytes,
                deadline=deadline,
            )
        except BaseException:
            await self._stop_after_failure()
            raise
        timeline = self.evaluator.timeline
        active = timeline.elapsed_active if timeline is not None else 0.0
        await self.session.stop()
        stopped_at = self.clock()
        self.chunk = None
        size = await asyncio.to_thread(file_size, path)
        return ChunkResult(
            path=path,
            reason=reason,
            chunk=index,
            started_at=chunk.started_at,
            stopped_at=stopped_at,
            active_seconds=active,
            size_bytes=size,
        )

    async def _stop_after_failure(self) -> None:
        try:
            await self.session.stop()
        except Exception as exc:
            logger.warning("Unable to stop capture session cleanly: %s", exc)
            logger.debug("Capture session stop failure", exc_info=True)

    async def _forward_pause(self, paused: bool) -> None:
        method = getattr(self.session, "pause" if paused else "resume", None)
        if method is None:
            return
        result = method()
        if inspect.isawaitable(result):
            await result

    @contextlib.contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        installed: list[signal.Signals] = []
        if self.handle_signals:
            loop = asyncio.get_running_loop()
            for sig in _HANDLED_SIGNALS:
                try:
                    loop.add_signal_handler(sig, self.interrupt)
                except (NotImplementedError, RuntimeError, ValueError):
                    # Not the main thread, or a platform without loop signal support.
                    logger.debug("Unable to install handler for %s", sig, exc_info=True)
                    continue
                installed.append(sig)
        try:
            yield
        finally:
            if installed:
                loop = asyncio.get_running_loop()
                for sig in installed:
                    with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
                        loop.remove_signal_handler(sig)


__all__ = ["ChunkResult", "ChunkState", "RecordingLoopController"]
