"""Tests for the chunk loop controller."""

from __future__ import annotations

import asyncio
import os
import signal
import sys
from datetime import datetime
from pathlib import Path

import pytest

from recordit.capture import CaptureError
from recordit.config import RecordingConfiguration
from recordit.controller import ChunkResult, ChunkState, RecordingLoopController
from recordit.evaluator import StopConditionEvaluator, StopReason
from recordit.paths import OutputExistsError, OutputPathResolver


class _Clock:
    def __init__(self, start: float = 100.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


class _Keys:
    def __init__(self, clock: _Clock, presses: list[tuple[float, str]] | None = None) -> None:
        self.clock = clock
        self.presses = sorted(presses or [])
        self.reads = 0
        self.on_read = None
        self.active = False

    def __enter__(self) -> "_Keys":
        self.active = True
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.active = False

    async def read(self, timeout: float) -> int | None:
        self.reads += 1
        await asyncio.sleep(0)
        if self.on_read is not None:
            self.on_read(self.reads)
        if self.presses and self.presses[0][0] <= self.clock.now + timeout:
            at, key = self.presses.pop(0)
            self.clock.now = max(self.clock.now, at)
            return ord(key)
        self.clock.now += timeout
        return None


class _Session:
    def __init__(self, clock: _Clock, *, fail_on_start: int | None = None, stop_delay: float = 0.0) -> None:
        self.clock = clock
        self.fail_on_start = fail_on_start
        self.stop_delay = stop_delay
        self.started: list[Path] = []
        self.stopped = 0
        self.events: list[str] = []
        self.current: Path | None = None

    async def start(self, path: Path) -> None:
        if self.current is not None:
            raise CaptureError("Recording already in progress.")
        if self.fail_on_start is not None and len(self.started) + 1 == self.fail_on_start:
            raise CaptureError("device went away")
        self.started.append(path)
        self.current = path
        path.write_bytes(b"\x00" * 16)

    async def stop(self) -> None:
        if self.current is None:
            return
        self.stopped += 1
        self.current = None
        self.clock.now += self.stop_delay

    def current_output_size_bytes(self) -> int | None:
        if self.current is None:
            return None
        return self.current.stat().st_size


class _PausableSession(_Session):
    async def pause(self) -> None:
        self.events.append("pause")

    async def resume(self) -> None:
        self.events.append("resume")


def _resolver(**kwargs: object) -> OutputPathResolver:
    return OutputPathResolver(
        "mov",
        prefix="recordit-camera",
        clock=lambda: datetime(2024, 1, 2, 3, 4, 5),
        uuid_factory=lambda: "UUID",
        **kwargs,  # type: ignore[arg-type]
    )


def _controller(
    config: RecordingConfiguration,
    session: _Session,
    clock: _Clock,
    keys: _Keys | None = None,
    **kwargs: object,
) -> RecordingLoopController:
    evaluator = StopConditionEvaluator(config, keys or _Keys(clock), clock=clock)
    kwargs.setdefault("handle_signals", False)
    return RecordingLoopController(
        config,
        session,
        _resolver(overwrite=config.overwrite),
        evaluator,
        clock=clock,
        **kwargs,  # type: ignore[arg-type]
    )


def _config(**kwargs: object) -> RecordingConfiguration:
    return RecordingConfiguration.from_options(environ={}, **kwargs)  # type: ignore[arg-type]


def test_split_chunks_until_duration(tmp_path: Path) -> None:
    clock = _Clock()
    session = _Session(clock)
    config = _config(split=1, duration=10, output=str(tmp_path), name="rec-{chunk}")
    controller = _controller(config, session, clock)

    results = asyncio.run(controller.run_to_completion())

    assert [result.reason for result in results] == [StopReason.SPLIT] * 9 + [StopReason.DURATION]
    assert [result.chunk for result in results] == list(range(1, 11))
    assert [result.path for result in results] == [tmp_path / f"rec-{i}.mov" for i in range(1, 11)]
    assert session.started == [result.path for result in results]
    assert session.stopped == 10
    assert clock.now == pytest.approx(110.0)
    assert all(result.active_seconds == pytest.approx(1.0) for result in results)
    assert all(result.size_bytes == 16 for result in results)
    assert controller.chunk is None


def test_chunk_boundaries_are_contiguous(tmp_path: Path) -> None:
    clock = _Clock()
    config = _config(split=2, duration=5, output=str(tmp_path), name="part-{chunk}")
    controller = _controller(config, _Session(clock), clock)

    results = asyncio.run(controller.run_to_completion())

    assert [result.reason for result in results] == [
        StopReason.SPLIT,
        StopReason.SPLIT,
        StopReason.DURATION,
    ]
    for previous, current in zip(results, results[1:]):
        assert current.started_at == pytest.approx(previous.stopped_at)
    assert results[-1].elapsed_seconds == pytest.approx(1.0)


def test_single_file_run_ends_on_key(tmp_path: Path) -> None:
    clock = _Clock()
    session = _Session(clock)
    keys = _Keys(clock, [(101.5, "s")])
    config = _config(output=str(tmp_path / "clip"))
    controller = _controller(config, session, clock, keys)

    results = asyncio.run(controller.run_to_completion())

    assert len(results) == 1
    result = results[0]
    assert isinstance(result, ChunkResult)
    assert result.reason is StopReason.KEY
    assert result.path == tmp_path / "clip.mov"
    assert result.chunk == 1
    assert result.reason.value == "key"
    assert session.stopped == 1
    assert not keys.active


def test_max_size_stops_run_without_splitting(tmp_path: Path) -> None:
    clock = _Clock()
    session = _Session(clock)
    config = RecordingConfiguration(
        stop_keys=frozenset({ord("s")}),
        max_size_bytes=8,
        output=str(tmp_path / "clip.mov"),
    )
    controller = _controller(config, session, clock)

    results = asyncio.run(controller.run_to_completion())

    assert [result.reason for result in results] == [StopReason.MAX_SIZE]


def test_overall_deadline_checked_before_next_chunk(tmp_path: Path) -> None:
    clock = _Clock()
    session = _Session(clock, stop_delay=1.0)
    config = _config(split=1, duration=2, output=str(tmp_path))
    controller = _controller(config, session, clock)

    results = asyncio.run(controller.run_to_completion())

    assert [result.reason for result in results] == [StopReason.SPLIT]
    assert len(session.started) == 1


def test_start_failure_aborts_run_and_keeps_earlier_chunks(tmp_path: Path) -> None:
    clock = _Clock()
    session = _Session(clock, fail_on_start=2)
    config = _config(split=1, duration=10, output=str(tmp_path), name="rec-{chunk}")
    controller = _controller(config, session, clock)
    collected: list[ChunkResult] = []

    async def _consume() -> None:
        async for result in controller.run():
            collected.append(result)

    with pytest.raises(CaptureError, match="device went away"):
        asyncio.run(_consume())

    assert [result.chunk for result in collected] == [1]
    assert (tmp_path / "rec-1.mov").exists()
    assert controller.chunk is None


def test_path_collision_aborts_instead_of_skipping(tmp_path: Path) -> None:
    clock = _Clock()
    session = _Session(clock)
    (tmp_path / "rec-2.mov").write_bytes(b"old")
    config = _config(split=1, duration=10, output=str(tmp_path), name="rec-{chunk}")
    controller = _controller(config, session, clock)

    with pytest.raises(OutputExistsError):
        asyncio.run(controller.run_to_completion())

    assert session.started == [tmp_path / "rec-1.mov"]
    assert (tmp_path / "rec-2.mov").read_bytes() == b"old"


def test_session_stopped_when_evaluation_fails(tmp_path: Path) -> None:
    clock = _Clock()
    session = _Session(clock)
    keys = _Keys(clock)

    def _explode(count: int) -> None:
        if count == 2:
            raise RuntimeError("terminal vanished")

    keys.on_read = _explode
    controller = _controller(_config(output=str(tmp_path / "clip")), session, clock, keys)

    with pytest.raises(RuntimeError, match="terminal vanished"):
        asyncio.run(controller.run_to_completion())

    assert session.stopped == 1
    assert session.current is None
    assert not keys.active


def test_pause_changes_forwarded_to_session(tmp_path: Path) -> None:
    clock = _Clock()
    session = _PausableSession(clock)
    keys = _Keys(clock, [(100.5, "p"), (101.0, "p")])
    config = _config(pause_key="p", duration=2, output=str(tmp_path / "clip"))
    controller = _controller(config, session, clock, keys)

    results = asyncio.run(controller.run_to_completion())

    assert session.events == ["pause", "resume"]
    assert results[0].reason is StopReason.DURATION
    assert results[0].active_seconds == pytest.approx(1.5)


def test_interrupt_finishes_current_chunk_and_stops(tmp_path: Path) -> None:
    clock = _Clock()
    session = _Session(clock)
    keys = _Keys(clock)
    config = _config(split=1, output=str(tmp_path))
    controller = _controller(config, session, clock, keys)

    def _interrupt(count: int) -> None:
        if count == 6:
            controller.interrupt()

    keys.on_read = _interrupt

    results = asyncio.run(controller.run_to_completion())

    assert [result.reason for result in results] == [StopReason.SPLIT, StopReason.EXTERNAL_SIGNAL]
    assert session.stopped == 2


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals required")
def test_sigint_is_routed_to_the_evaluator(tmp_path: Path) -> None:
    clock = _Clock()
    session = _Session(clock)
    keys = _Keys(clock)

    def _send(count: int) -> None:
        if count == 2:
            os.kill(os.getpid(), signal.SIGINT)

    keys.on_read = _send
    config = _config(duration=10, output=str(tmp_path / "clip"))
    controller = _controller(config, session, clock, keys, handle_signals=True)

    results = asyncio.run(controller.run_to_completion())

    assert [result.reason for result in results] == [StopReason.EXTERNAL_SIGNAL]
    assert session.stopped == 1


def test_run_cannot_be_reentered(tmp_path: Path) -> None:
    clock = _Clock()
    keys = _Keys(clock, [(100.25, "s")])
    controller = _controller(_config(output=str(tmp_path / "clip")), _Session(clock), clock, keys)

    async def _run_twice() -> None:
        generator = controller.run()
        first = await generator.__anext__()
        assert first.reason is StopReason.KEY
        with pytest.raises(RuntimeError):
            await controller.run().__anext__()
        await generator.aclose()

    asyncio.run(_run_twice())


def test_describe_chunk_messages() -> None:
    clock = _Clock()
    config = _config(duration=5, split=2, max_size_mb=1.5)
    controller = _controller(config, _Session(clock), clock, label="Camera recording")

    assert controller.describe_chunk(3) == (
        "Camera recording (chunk 3)... will stop automatically after 5 seconds or when you "
        "press 'S' to stop, split every 2s or when file reaches 1.5 MB."
    )

    plain = _controller(_config(stop_key="q"), _Session(clock), clock, label="Audio recording")
    assert plain.describe_chunk(1) == "Audio recording... press 'Q' to stop."


def test_describe_chunk_mentions_pause_keys() -> None:
    clock = _Clock()
    toggle = _controller(_config(pause_key="p"), _Session(clock), clock)
    distinct = _controller(_config(pause_key="p", resume_key="r"), _Session(clock), clock)

    assert toggle.describe_chunk(1) == "Recording... press 'S' to stop. Press 'P' to pause or resume."
    assert distinct.describe_chunk(1).endswith("Press 'P' to pause and 'R' to resume.")


def test_chunk_state_index_starts_at_one(tmp_path: Path) -> None:
    assert ChunkState(1, tmp_path / "a.mov", 0.0).index == 1
    with pytest.raises(ValueError):
        ChunkState(0, tmp_path / "a.mov", 0.0)
