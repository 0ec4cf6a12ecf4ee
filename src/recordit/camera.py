"""Camera frame sources and the PyAV backed video capture session."""
from __future__ import annotations

import asyncio
import logging
import os
import queue
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from fractions import Fraction
from pathlib import Path
from typing import Any

import av
import numpy as np
import simplejpeg

from .audio import AudioTrack, SampleSource, count_packet_bytes
from .capture import (
    CaptureError,
    CaptureUnavailableError,
    CompletionSignal,
    file_size,
    summarise_exception,
)
from .config import ENV_CAMERA, Resolution

logger = logging.getLogger(__name__)

# User visible identifiers for frame sources, in listing order.
CAMERA_SOURCES: dict[str, str] = {
    "auto": "Automatic (OpenCV with synthetic fallback)",
    "synthetic": "Synthetic test pattern",
    "opencv": "OpenCV (USB webcam)",
}

DEFAULT_CAMERA_CHOICE = "auto"
DEFAULT_RESOLUTION = Resolution(640, 480)
DEFAULT_FPS = 30.0
VIDEO_EXTENSION = "mov"
PHOTO_EXTENSION = "jpg"

_VIDEO_CODEC_CANDIDATES: tuple[str, ...] = ("libx264", "h264", "mpeg4")
_AUDIO_TRACK_CODEC = "aac"
_QUEUE_DEPTH = 32
_PHOTO_WARMUP_FRAMES = 5
_READ_ATTEMPTS = 3
_STOP = object()


class FrameSource(ABC):
    """Abstract producer of RGB frames."""

    @property
    @abstractmethod
    def resolution(self) -> Resolution:  # pragma: no cover - interface only
        raise NotImplementedError

    @abstractmethod
    async def get_frame(self) -> np.ndarray:  # pragma: no cover - interface only
        raise NotImplementedError

    async def close(self) -> None:  # pragma: no cover - optional override
        return None


class SyntheticFrameSource(FrameSource):
    """Test card that advances a fixed step for every frame served.

    The pattern depends only on the frame number, so a recording at any
    frame rate shows the same sequence and tests get deterministic frames.
    """

    def __init__(self, resolution: Resolution | None = None, *, step: int = 4) -> None:
        self._resolution = resolution or DEFAULT_RESOLUTION
        self.step = int(step)
        self.frames_served = 0
        width, height = self._resolution.as_tuple()
        ramp_x = np.linspace(0, 255, width, dtype=np.uint8)
        ramp_y = np.linspace(0, 255, height, dtype=np.uint8)
        card = np.empty((height, width, 3), dtype=np.uint8)
        card[..., 0] = ramp_x[np.newaxis, :]
        card[..., 1] = 255 - ramp_x[np.newaxis, :]
        card[..., 2] = ramp_y[:, np.newaxis]
        self._card = card

    @property
    def resolution(self) -> Resolution:
        return self._resolution

    def frame_at(self, index: int) -> np.ndarray:
        return np.roll(self._card, (index * self.step) % self._card.shape[1], axis=1)

    async def get_frame(self) -> np.ndarray:
        frame = self.frame_at(self.frames_served)
        self.frames_served += 1
        return frame


def _open_video_capture(
    cv2: Any, index: int, resolution: Resolution | None, fps: float | None
) -> tuple[Any, Resolution]:
    capture = cv2.VideoCapture(index)
    if not capture.isOpened():
        capture.release()
        raise CaptureUnavailableError(f"Failed to open camera index {index}")
    if resolution is not None:
        capture.set(cv2.CAP_PROP_FRAME_WIDTH, float(resolution.width))
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, float(resolution.height))
    if fps is not None:
        capture.set(cv2.CAP_PROP_FPS, float(fps))
    negotiated = Resolution(
        int(capture.get(cv2.CAP_PROP_FRAME_WIDTH)) or DEFAULT_RESOLUTION.width,
        int(capture.get(cv2.CAP_PROP_FRAME_HEIGHT)) or DEFAULT_RESOLUTION.height,
    )
    if resolution is not None and negotiated != resolution:
        logger.info(
            "Camera %d negotiated %s instead of %s", index, negotiated.key(), resolution.key()
        )
    return capture, negotiated


class OpenCVFrameSource(FrameSource):
    """Frames from a local camera through OpenCV ``VideoCapture``."""

    def __init__(
        self,
        index: int = 0,
        resolution: Resolution | None = None,
        *,
        fps: float | None = None,
    ) -> None:
        try:
            import cv2
        except ImportError as exc:  # pragma: no cover - optional dependency
            raise CaptureUnavailableError("OpenCV is not installed") from exc
        self.index = index
        self._capture, self._resolution = _open_video_capture(cv2, index, resolution, fps)

    @property
    def resolution(self) -> Resolution:
        return self._resolution

    async def get_frame(self) -> np.ndarray:
        for attempt in range(1, _READ_ATTEMPTS + 1):
            ok, frame = await asyncio.to_thread(self._capture.read)
            if ok and frame is not None:
                # BGR to RGB
                return np.ascontiguousarray(frame[..., ::-1])
            logger.debug("Camera %d read failed (attempt %d)", self.index, attempt)
        raise CaptureError(f"Failed to read frame from camera {self.index}")

    async def close(self) -> None:
        await asyncio.to_thread(self._capture.release)


@dataclass(frozen=True, slots=True)
class CameraInfo:
    """Listing entry for an available frame source."""

    id: str
    name: str
    position: str = "unspecified"
    is_default: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "position": self.position,
            "isDefault": self.is_default,
        }


def _normalise_choice(choice: str | None) -> str:
    if choice is None:
        choice = os.getenv(ENV_CAMERA, DEFAULT_CAMERA_CHOICE)
    return choice.strip().lower() or DEFAULT_CAMERA_CHOICE


def _opencv_index(choice: str) -> int | None:
    if choice == "opencv":
        return 0
    if choice.startswith("opencv:"):
        try:
            return int(choice.split(":", 1)[1])
        except ValueError:
            return None
    return None


def list_cameras(max_opencv_index: int = 4) -> list[CameraInfo]:
    """Return the frame sources that can be opened on this machine.

    The entry marked default is the one ``create_frame_source`` would pick
    without an explicit ``--camera``.
    """

    default_choice = _normalise_choice(None)
    found: list[int] = []
    try:
        import cv2
    except ImportError:
        logger.debug("OpenCV not installed; skipping USB camera discovery")
    else:
        for index in range(max_opencv_index):
            capture = cv2.VideoCapture(index)
            try:
                if capture.isOpened():
                    found.append(index)
            finally:
                capture.release()

    if default_choice == "auto":
        default_id = "opencv:0" if 0 in found else "synthetic"
    elif default_choice == "synthetic":
        default_id = "synthetic"
    else:
        default_id = f"opencv:{_opencv_index(default_choice)}"

    cameras = [
        CameraInfo(
            id=f"opencv:{index}",
            name=f"{CAMERA_SOURCES['opencv']} #{index}",
            position="external",
            is_default=default_id == f"opencv:{index}",
        )
        for index in found
    ]
    cameras.append(
        CameraInfo(
            id="synthetic",
            name=CAMERA_SOURCES["synthetic"],
            is_default=default_id == "synthetic",
        )
    )
    return cameras


def create_frame_source(
    choice: str | None = None,
    *,
    resolution: Resolution | None = None,
    fps: float | None = None,
) -> FrameSource:
    """Create the frame source named by *choice* or ``RECORDIT_CAMERA``.

    ``auto`` tries the first OpenCV camera and falls back to the synthetic
    test card when it cannot be opened. ``opencv`` or ``opencv:<index>``
    select a camera explicitly and raise :class:`CaptureUnavailableError` on
    failure. ``synthetic`` needs no hardware.
    """

    resolved = _normalise_choice(choice)
    if resolved == "synthetic":
        return SyntheticFrameSource(resolution)
    if resolved == "auto":
        try:
            return OpenCVFrameSource(0, resolution, fps=fps)
        except CaptureUnavailableError as exc:
            logger.warning("No camera available, recording the synthetic test card: %s", exc)
            return SyntheticFrameSource(resolution)
    index = _opencv_index(resolved)
    if index is not None:
        return OpenCVFrameSource(index, resolution, fps=fps)
    raise CaptureUnavailableError(
        f"No camera matches '{choice}'. Use --list-cameras to see available cameras."
    )


# ------------------------------ encoding -------------------------------
def _even(value: int) -> int:
    value = int(value)
    if value > 2 and value % 2:
        value -= 1
    return max(2, value)


@dataclass
class _VideoWriter:
    """PyAV container receiving frames and audio blocks on the encoder thread."""

    path: Path
    fps: float
    resolution: Resolution
    container_format: str = "mov"
    audio_rate: int | None = None
    audio_channels: int = 1
    codec: str = field(init=False, default="")
    frame_count: int = field(init=False, default=0)
    bytes_written: int = field(init=False, default=0)

    def __post_init__(self) -> None:
        rate = Fraction(str(self.fps)).limit_denominator(1000)
        self._time_base = Fraction(rate.denominator, rate.numerator)
        self._width = _even(self.resolution.width)
        self._height = _even(self.resolution.height)
        self._container = av.open(str(self.path), mode="w", format=self.container_format)
        self.audio: AudioTrack | None = None
        try:
            self._stream = self._add_video_stream(rate)
            if self.audio_rate is not None:
                self.audio = AudioTrack(
                    self._container, _AUDIO_TRACK_CODEC, self.audio_rate, self.audio_channels
                )
        except Exception:
            self._container.close()
            raise

    def _add_video_stream(self, rate: Fraction) -> Any:
        last_error: Exception | None = None
        for codec in _VIDEO_CODEC_CANDIDATES:
            try:
                stream = self._container.add_stream(codec, rate=rate)
            except Exception as exc:  # codec not compiled into this FFmpeg
                last_error = exc
                logger.debug("Codec %s unavailable: %s", codec, exc)
                continue
            stream.width = self._width
            stream.height = self._height
            stream.pix_fmt = "yuv420p"
            stream.time_base = self._time_base
            self.codec = codec
            return stream
        detail = summarise_exception(last_error) if last_error else "no encoder"
        raise CaptureUnavailableError(
            f"No usable video codec ({detail}; attempted codecs: "
            f"{', '.join(_VIDEO_CODEC_CANDIDATES)})"
        )

    def add_frame(self, array: np.ndarray) -> None:
        frame = av.VideoFrame.from_ndarray(np.ascontiguousarray(array), format="rgb24")
        frame = frame.reformat(width=self._width, height=self._height, format="yuv420p")
        frame.pts = self.frame_count
        frame.time_base = self._time_base
        self._mux(self._stream.encode(frame))
        self.frame_count += 1

    def add_audio(self, block: np.ndarray) -> None:
        if self.audio is not None:
            self._mux(self.audio.encode(block))

    def finalise(self) -> None:
        try:
            self._mux(self._stream.encode())
            if self.audio is not None:
                self._mux(self.audio.flush())
        finally:
            self._container.close()

    def _mux(self, packets) -> None:
        for packet in packets:
            self._container.mux(packet)
            self.bytes_written += count_packet_bytes(packet)


class VideoCaptureSession:
    """Record frames from a :class:`FrameSource` into movie files.

    Frames are pulled on the event loop at the requested rate and handed to
    an encoder thread, together with microphone blocks when an audio source
    is attached. ``stop`` waits for that thread to finish the file through a
    :class:`CompletionSignal`. Paused frames and blocks are discarded, so the
    finished file has no gap.
    """

    def __init__(
        self,
        source: FrameSource,
        *,
        fps: float | None = None,
        audio: SampleSource | None = None,
        container_format: str = "mov",
    ) -> None:
        self._source = source
        self._audio = audio
        self.fps = float(fps) if fps else DEFAULT_FPS
        self.container_format = container_format
        self._writer: _VideoWriter | None = None
        self._path: Path | None = None
        self._items: queue.Queue[object] | None = None
        self._producers: list[asyncio.Task[None]] = []
        self._encoder: threading.Thread | None = None
        self._completion: CompletionSignal | None = None
        self._paused = False
        self.dropped_frames = 0
        self.dropped_blocks = 0

    @property
    def is_recording(self) -> bool:
        return bool(self._producers)

    @property
    def records_audio(self) -> bool:
        return self._audio is not None

    async def start(self, path: Path) -> None:
        if self._producers:
            raise CaptureError("Recording already in progress.")
        audio = self._audio
        if audio is not None:
            await audio.open()
        try:
            writer = await asyncio.to_thread(
                _VideoWriter,
                Path(path),
                self.fps,
                self._source.resolution,
                self.container_format,
                audio.sample_rate if audio is not None else None,
                audio.channels if audio is not None else 1,
            )
        except CaptureError:
            raise
        except Exception as exc:
            raise CaptureError(f"Unable to open {path}: {summarise_exception(exc)}") from exc
        logger.debug("Encoding %s with %s at %.2f fps", path, writer.codec, self.fps)
        items: queue.Queue[object] = queue.Queue(maxsize=_QUEUE_DEPTH)
        completion = CompletionSignal()
        encoder = threading.Thread(
            target=self._encode_loop,
            args=(writer, items, completion),
            name="recordit-video-encoder",
            daemon=True,
        )
        self._writer = writer
        self._path = Path(path)
        self._items = items
        self._completion = completion
        self._paused = False
        self.dropped_frames = 0
        self.dropped_blocks = 0
        encoder.start()
        self._encoder = encoder
        self._producers = [asyncio.create_task(self._produce_frames(items))]
        if audio is not None:
            self._producers.append(asyncio.create_task(self._produce_audio(audio, items)))

    async def stop(self) -> None:
        producers = self._producers
        if not producers:
            return
        self._producers = []
        for task in producers:
            task.cancel()
        results = await asyncio.gather(*producers, return_exceptions=True)
        items, completion, encoder = self._items, self._completion, self._encoder
        try:
            if items is not None:
                await asyncio.to_thread(items.put, _STOP)
            if completion is not None:
                await completion.wait()
            if encoder is not None:
                await asyncio.to_thread(encoder.join)
        finally:
            writer = self._writer
            self._items = None
            self._completion = None
            self._encoder = None
            self._writer = None
        if writer is not None:
            logger.debug(
                "Finalised %s (%d frames, %d dropped, %d audio blocks dropped)",
                self._path,
                writer.frame_count,
                self.dropped_frames,
                self.dropped_blocks,
            )
        for failure in results:
            if isinstance(failure, Exception) and not isinstance(failure, asyncio.CancelledError):
                raise CaptureError(
                    f"Frame capture failed: {summarise_exception(failure)}"
                ) from failure

    async def pause(self) -> None:
        self._paused = True

    async def resume(self) -> None:
        self._paused = False

    def current_output_size_bytes(self) -> int | None:
        writer = self._writer
        on_disk = file_size(self._path)
        if writer is None:
            return on_disk
        return max(writer.bytes_written, on_disk or 0)

    async def close(self) -> None:
        try:
            await self.stop()
        finally:
            await self._source.close()
            if self._audio is not None:
                await self._audio.close()

    async def _produce_frames(self, items: queue.Queue[object]) -> None:
        loop = asyncio.get_running_loop()
        interval = 1.0 / self.fps
        next_at = loop.time()
        while True:
            frame = await self._source.get_frame()
            if not self._paused:
                try:
                    items.put_nowait(("video", frame))
                except queue.Full:
                    self.dropped_frames += 1
            next_at += interval
            delay = next_at - loop.time()
            if delay > 0:
                await asyncio.sleep(delay)
            else:
                next_at = loop.time()
                await asyncio.sleep(0)

    async def _produce_audio(self, audio: SampleSource, items: queue.Queue[object]) -> None:
        while True:
            block = await audio.read_block()
            if self._paused:
                continue
            try:
                items.put_nowait(("audio", block))
            except queue.Full:
                self.dropped_blocks += 1

    @staticmethod
    def _encode_loop(
        writer: _VideoWriter,
        items: queue.Queue[object],
        completion: CompletionSignal,
    ) -> None:
        error: BaseException | None = None
        try:
            while True:
                item = items.get()
                if item is _STOP:
                    break
                if error is not None:
                    continue
                kind, payload = item  # type: ignore[misc]
                try:
                    if kind == "audio":
                        writer.add_audio(payload)
                    else:
                        writer.add_frame(payload)
                except Exception as exc:
                    logger.error("Video encoding failed: %s", exc)
                    error = CaptureError(f"Video encoding failed: {summarise_exception(exc)}")
        finally:
            try:
                writer.finalise()
            except Exception as exc:
                logger.error("Unable to finalise %s: %s", writer.path, exc)
                if error is None:
                    error = CaptureError(f"Unable to finalise video: {summarise_exception(exc)}")
            completion.resolve(error)


async def capture_photo(
    source: FrameSource,
    path: Path,
    *,
    quality: int = 90,
    warmup_frames: int = _PHOTO_WARMUP_FRAMES,
) -> Path:
    """Grab a single frame from *source* and write it to *path* as JPEG."""

    if not (1 <= quality <= 100):
        raise ValueError("quality must be between 1 and 100")
    frame = await source.get_frame()
    for _ in range(max(0, warmup_frames)):
        frame = await source.get_frame()
    try:
        payload = simplejpeg.encode_jpeg(
            np.ascontiguousarray(frame), quality=quality, colorspace="RGB"
        )
    except Exception as exc:
        raise CaptureError(f"Unable to encode photo: {summarise_exception(exc)}") from exc
    try:
        await asyncio.to_thread(Path(path).write_bytes, payload)
    except OSError as exc:
        raise CaptureError(f"Unable to write photo: {exc}") from exc
    return Path(path)


__all__ = [
    "CAMERA_SOURCES",
    "DEFAULT_CAMERA_CHOICE",
    "DEFAULT_FPS",
    "PHOTO_EXTENSION",
    "VIDEO_EXTENSION",
    "CameraInfo",
    "FrameSource",
    "OpenCVFrameSource",
    "SyntheticFrameSource",
    "VideoCaptureSession",
    "capture_photo",
    "create_frame_source",
    "list_cameras",
]
