"""Tests for pause-aware timeline accounting."""

from __future__ import annotations

import pytest

from recordit.timeline import RecordingTimeline


def test_tick_accumulates_active_time() -> None:
    timeline = RecordingTimeline(10.0)

    assert timeline.tick(10.5) == pytest.approx(0.5)
    assert timeline.tick(11.25) == pytest.approx(0.75)
    assert timeline.elapsed_active == pytest.approx(1.25)
    assert timeline.remaining(2.0) == pytest.approx(0.75)


def test_paused_ticks_report_zero_and_do_not_advance_split() -> None:
    timeline = RecordingTimeline(0.0)
    timeline.tick(1.0)
    timeline.pause(1.0)

    assert timeline.is_paused
    assert timeline.tick(3.0) == 0.0
    assert timeline.tick(4.0) == 0.0
    assert timeline.elapsed_active == pytest.approx(1.0)
    assert timeline.remaining(2.0) == pytest.approx(1.0)
    assert timeline.paused_total == pytest.approx(3.0)

    timeline.resume(4.0)
    timeline.tick(4.5)
    assert timeline.elapsed_active == pytest.approx(1.5)


def test_pause_records_time_until_the_pause() -> None:
    timeline = RecordingTimeline(0.0)

    timeline.pause(0.75)

    assert timeline.elapsed_active == pytest.approx(0.75)


def test_elapsed_active_never_decreases() -> None:
    timeline = RecordingTimeline(5.0)
    timeline.tick(6.0)

    assert timeline.tick(5.5) == 0.0
    assert timeline.elapsed_active == pytest.approx(1.0)


def test_remaining_is_clamped_at_zero() -> None:
    timeline = RecordingTimeline(0.0)
    timeline.tick(3.0)

    assert timeline.remaining(1.0) == 0.0
    assert RecordingTimeline.until(5.0, 7.0) == 0.0
    assert RecordingTimeline.until(5.0, 4.0) == pytest.approx(1.0)


def test_absolute_deadline_ignores_pause() -> None:
    timeline = RecordingTimeline(0.0)
    timeline.pause(0.5)
    timeline.tick(1.5)

    assert RecordingTimeline.until(2.0, 1.5) == pytest.approx(0.5)


def test_default_start_uses_clock() -> None:
    timeline = RecordingTimeline(clock=lambda: 42.0)

    assert timeline.started_at == 42.0
    assert timeline.now() == 42.0
    assert timeline.tick() == 0.0


def test_redundant_pause_and_resume_are_ignored() -> None:
    timeline = RecordingTimeline(0.0)
    timeline.resume(1.0)
    assert not timeline.is_paused
    timeline.pause(1.0)
    timeline.pause(2.0)
    assert timeline.is_paused
    assert timeline.elapsed_active == pytest.approx(1.0)
