"""Tests for camera frame sources, video sessions and photo capture."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

pytest.importorskip("numpy")
av = pytest.importorskip("av")
import numpy as np

from recordit.audio import ToneSource
from recordit.camera import (
    CameraInfo,
    SyntheticFrameSource,
    VideoCaptureSession,
    capture_photo,
    create_frame_source,
    list_cameras,
)
from recordit.capture import CaptureError, CaptureUnavailableError
from recordit.config import Resolution


def test_synthetic_source_produces_rgb_frames() -> None:
    source = SyntheticFrameSource(Resolution(64, 48))

    frame = asyncio.run(source.get_frame())

    assert frame.shape == (48, 64, 3)
    assert frame.dtype == np.uint8


def test_synthetic_frames_follow_the_frame_count() -> None:
    source = SyntheticFrameSource(Resolution(32, 16), step=4)

    async def _frames() -> list[np.ndarray]:
        return [await source.get_frame() for _ in range(3)]

    first, second, third = asyncio.run(_frames())

    assert source.frames_served == 3
    assert np.array_equal(first, source.frame_at(0))
    assert np.array_equal(second, np.roll(first, 4, axis=1))
    assert np.array_equal(third, source.frame_at(2))
    assert np.array_equal(source.frame_at(8), first)


def test_auto_camera_falls_back_to_synthetic(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("RECORDIT_CAMERA", raising=False)
    monkeypatch.setitem(sys.modules, "cv2", None)

    source = create_frame_source(resolution=Resolution(32, 24))

    assert isinstance(source, SyntheticFrameSource)
    assert source.resolution == Resolution(32, 24)


def test_unknown_camera_is_unavailable() -> None:
    with pytest.raises(CaptureUnavailableError, match="--list-cameras"):
        create_frame_source("front-door")


def test_opencv_without_library_is_unavailable(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setitem(sys.modules, "cv2", None)

    with pytest.raises(CaptureUnavailableError, match="OpenCV is not installed"):
        create_frame_source("opencv:1")


def test_list_cameras_without_opencv(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("RECORDIT_CAMERA", raising=False)
    monkeypatch.setitem(sys.modules, "cv2", None)

    cameras = list_cameras()

    assert cameras == [CameraInfo(id="synthetic", name="Synthetic test pattern", is_default=True)]
    assert cameras[0].to_dict() == {
        "id": "synthetic",
        "name": "Synthetic test pattern",
        "position": "unspecified",
        "isDefault": True,
    }


def test_video_session_writes_movie(tmp_path: Path) -> None:
    target = tmp_path / "clip.mov"
    session = VideoCaptureSession(SyntheticFrameSource(Resolution(64, 48)), fps=10)

    async def _run() -> tuple[bool, int | None]:
        await session.start(target)
        await asyncio.sleep(0.35)
        recording = session.is_recording
        await session.stop()
        await session.stop()
        return recording, session.current_output_size_bytes()

    recording, size = asyncio.run(_run())

    assert recording
    assert not session.is_recording
    assert target.exists()
    assert size is not None and size > 0


def test_video_session_muxes_audio_track(tmp_path: Path) -> None:
    target = tmp_path / "clip.mov"
    session = VideoCaptureSession(
        SyntheticFrameSource(Resolution(64, 48)),
        fps=10,
        audio=ToneSource(sample_rate=16000),
    )

    async def _run() -> None:
        await session.start(target)
        await asyncio.sleep(0.4)
        await session.close()

    asyncio.run(_run())

    assert session.records_audio
    with av.open(str(target)) as container:
        kinds = sorted(stream.type for stream in container.streams)
    assert kinds == ["audio", "video"]


def test_video_session_writes_mp4_container(tmp_path: Path) -> None:
    target = tmp_path / "clip.mp4"
    session = VideoCaptureSession(
        SyntheticFrameSource(Resolution(32, 32)), fps=10, container_format="mp4"
    )

    async def _run() -> None:
        await session.start(target)
        await asyncio.sleep(0.25)
        await session.close()

    asyncio.run(_run())

    with av.open(str(target)) as container:
        assert [stream.type for stream in container.streams] == ["video"]


def test_video_session_rejects_second_start(tmp_path: Path) -> None:
    session = VideoCaptureSession(SyntheticFrameSource(Resolution(32, 32)), fps=5)

    async def _run() -> None:
        await session.start(tmp_path / "a.mov")
        try:
            await session.start(tmp_path / "b.mov")
        finally:
            await session.close()

    with pytest.raises(CaptureError, match="already in progress"):
        asyncio.run(_run())


def test_video_session_open_failure_is_capture_error(tmp_path: Path) -> None:
    session = VideoCaptureSession(SyntheticFrameSource(Resolution(32, 32)), fps=5)

    with pytest.raises(CaptureError):
        asyncio.run(session.start(tmp_path / "missing" / "clip.mov"))


def test_capture_photo_writes_jpeg(tmp_path: Path) -> None:
    pytest.importorskip("simplejpeg")
    target = tmp_path / "photo.jpg"

    result = asyncio.run(capture_photo(SyntheticFrameSource(Resolution(64, 48)), target))

    assert result == target
    assert target.read_bytes()[:2] == b"\xff\xd8"


def test_capture_photo_rejects_bad_quality(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        asyncio.run(capture_photo(SyntheticFrameSource(), tmp_path / "x.jpg", quality=0))
