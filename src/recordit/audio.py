"""Audio sample sources and the PyAV backed audio capture session."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import os
import queue
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from fractions import Fraction
from pathlib import Path
from typing import Any

import av
import numpy as np

from .capture import (
    CaptureError,
    CaptureUnavailableError,
    CompletionSignal,
    file_size,
    summarise_exception,
)
from .config import ENV_AUDIO_INPUT

logger = logging.getLogger(__name__)

DEFAULT_AUDIO_INPUT = "auto"
DEFAULT_SAMPLE_RATE = 48_000
DEFAULT_CHANNELS = 1
_BLOCK_SECONDS = 0.1
_BLOCK_QUEUE_DEPTH = 32
_DROP_WARNING_EVERY = 25
_STOP = object()


class AudioFormat(str, Enum):
    """Container and codec pairs offered by the audio mode."""

    LINEAR_PCM = "linearPCM"
    AAC = "aac"

    @property
    def file_extension(self) -> str:
        return "wav" if self is AudioFormat.LINEAR_PCM else "m4a"

    @property
    def container_format(self) -> str:
        return "wav" if self is AudioFormat.LINEAR_PCM else "mp4"

    @property
    def codec(self) -> str:
        return "pcm_s16le" if self is AudioFormat.LINEAR_PCM else "aac"


def _layout_for(channels: int) -> str:
    return "mono" if channels == 1 else "stereo"


def _check_stream_options(sample_rate: int, channels: int) -> None:
    if sample_rate <= 0:
        raise ValueError("sample_rate must be positive")
    if channels not in (1, 2):
        raise ValueError("channels must be 1 or 2")


# ------------------------------ sources --------------------------------
class SampleSource(ABC):
    """Producer of ``(channels, frames)`` float32 sample blocks."""

    sample_rate: int
    channels: int

    async def open(self) -> None:
        """Begin delivering blocks. Called before every recorded chunk."""

    @abstractmethod
    async def read_block(self) -> np.ndarray:  # pragma: no cover - interface only
        raise NotImplementedError

    async def close(self) -> None:  # pragma: no cover - optional override
        return None


class ToneSource(SampleSource):
    """Produce a continuous sine tone paced at the sample rate."""

    def __init__(
        self,
        *,
        frequency: float = 440.0,
        amplitude: float = 0.2,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        channels: int = DEFAULT_CHANNELS,
        block_seconds: float = _BLOCK_SECONDS,
    ) -> None:
        _check_stream_options(sample_rate, channels)
        self.frequency = float(frequency)
        self.amplitude = max(0.0, min(1.0, float(amplitude)))
        self.sample_rate = int(sample_rate)
        self.channels = int(channels)
        self.frames_per_block = max(1, int(self.sample_rate * block_seconds))
        self._phase = 0
        self._next_at: float | None = None

    def read(self, frames: int) -> np.ndarray:
        """Return the next ``(channels, frames)`` float32 block without pacing."""

        index = np.arange(self._phase, self._phase + frames, dtype=np.float64)
        self._phase += frames
        wave = self.amplitude * np.sin(2.0 * math.pi * self.frequency * index / self.sample_rate)
        return np.tile(wave.astype(np.float32), (self.channels, 1))

    async def open(self) -> None:
        self._next_at = None

    async def read_block(self) -> np.ndarray:
        loop = asyncio.get_running_loop()
        now = loop.time()
        if self._next_at is None or self._next_at < now:
            self._next_at = now
        delay = self._next_at - now
        if delay > 0:
            await asyncio.sleep(delay)
        self._next_at += self.frames_per_block / float(self.sample_rate)
        return self.read(self.frames_per_block)


def _load_sounddevice() -> Any:
    try:
        import sounddevice
    except (ImportError, OSError) as exc:  # OSError when PortAudio is missing
        raise CaptureUnavailableError(
            f"Microphone capture is unavailable: {summarise_exception(exc)}"
        ) from exc
    return sounddevice


class MicrophoneSource(SampleSource):
    """Blocks from a sounddevice input stream.

    The PortAudio callback copies each block and hands it to the event loop
    with ``call_soon_threadsafe``. Blocks are dropped, with a warning, when
    the recorder falls behind. The stream stays open across chunks; stale
    blocks are discarded whenever :meth:`open` is called again.
    """

    def __init__(
        self,
        device: int | str | None = None,
        *,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        channels: int = DEFAULT_CHANNELS,
        block_seconds: float = _BLOCK_SECONDS,
    ) -> None:
        _check_stream_options(sample_rate, channels)
        sd = _load_sounddevice()
        try:
            info = sd.query_devices(device, kind="input")
        except Exception as exc:
            if device is None:
                message = "No default microphone is available."
            else:
                message = (
                    f"No audio input matches '{device}'. "
                    "Use --list-inputs to see available inputs."
                )
            raise CaptureUnavailableError(message) from exc
        self._sd = sd
        self.device = device
        self.name = str(info.get("name") or "microphone")
        self.sample_rate = int(sample_rate)
        self.channels = int(channels)
        self.blocksize = max(1, int(self.sample_rate * block_seconds))
        self.dropped_blocks = 0
        self._stream: Any = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._blocks: asyncio.Queue[np.ndarray] | None = None
        self._last_status: str | None = None

    async def open(self) -> None:
        if self._stream is not None and self._blocks is not None:
            while not self._blocks.empty():
                self._blocks.get_nowait()
            return
        self._loop = asyncio.get_running_loop()
        self._blocks = asyncio.Queue(maxsize=_BLOCK_QUEUE_DEPTH)
        self.dropped_blocks = 0
        try:
            self._stream = await asyncio.to_thread(self._open_stream)
        except Exception as exc:
            self._blocks = None
            raise CaptureUnavailableError(
                f"Unable to open microphone {self.name}: {summarise_exception(exc)}"
            ) from exc
        logger.debug("Input stream started on %s (%d Hz)", self.name, self.sample_rate)

    def _open_stream(self) -> Any:
        stream = self._sd.InputStream(
            device=self.device,
            channels=self.channels,
            samplerate=self.sample_rate,
            dtype="float32",
            blocksize=self.blocksize,
            callback=self._callback,
        )
        try:
            stream.start()
        except Exception:
            stream.close()
            raise
        return stream

    def _callback(self, indata, frames, time_info, status) -> None:
        if status:
            text = str(status)
            if text != self._last_status:
                logger.warning("Audio callback status: %s", text)
                self._last_status = text
        block = np.asarray(indata, dtype=np.float32).T.copy()
        loop = self._loop
        if loop is None:
            return
        with contextlib.suppress(RuntimeError):  # loop closed during shutdown
            loop.call_soon_threadsafe(self._offer, block)

    def _offer(self, block: np.ndarray) -> None:
        blocks = self._blocks
        if blocks is None:
            return
        try:
            blocks.put_nowait(block)
        except asyncio.QueueFull:
            self.dropped_blocks += 1
            if self.dropped_blocks % _DROP_WARNING_EVERY == 1:
                logger.warning("Dropped %d audio blocks due to slow writer", self.dropped_blocks)

    async def read_block(self) -> np.ndarray:
        blocks = self._blocks
        if blocks is None:
            raise CaptureError("Microphone stream is not open")
        return await blocks.get()

    async def close(self) -> None:
        stream = self._stream
        self._stream = None
        self._blocks = None
        if stream is None:
            return
        try:
            await asyncio.to_thread(stream.stop)
        finally:
            await asyncio.to_thread(stream.close)
        logger.debug("Input stream stopped on %s", self.name)


@dataclass(frozen=True, slots=True)
class AudioInputInfo:
    """Listing entry for an audio input device."""

    id: int
    name: str
    channels: int
    sample_rate: float
    is_default: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "channels": self.channels,
            "sampleRate": self.sample_rate,
            "isDefault": self.is_default,
        }


def _default_input_index(sd: Any) -> int | None:
    try:
        default = sd.default.device
    except AttributeError:
        return None
    if isinstance(default, (list, tuple)):
        default = default[0] if default else None
    try:
        return int(default) if default is not None else None
    except (TypeError, ValueError):
        return None


def list_audio_inputs() -> list[AudioInputInfo]:
    """Return the input devices reported by sounddevice."""

    sd = _load_sounddevice()
    try:
        devices = sd.query_devices()
    except Exception as exc:
        raise CaptureUnavailableError(
            f"Unable to query audio inputs: {summarise_exception(exc)}"
        ) from exc
    default_index = _default_input_index(sd)
    inputs: list[AudioInputInfo] = []
    for index, info in enumerate(devices):
        channels = int(info.get("max_input_channels", 0) or 0)
        if channels <= 0:
            continue
        inputs.append(
            AudioInputInfo(
                id=index,
                name=str(info.get("name", f"Device {index}")),
                channels=channels,
                sample_rate=float(info.get("default_samplerate") or DEFAULT_SAMPLE_RATE),
                is_default=index == default_index,
            )
        )
    logger.debug("Discovered %d audio input device(s)", len(inputs))
    return inputs


def _normalise_input(choice: str | None) -> str:
    if choice is None:
        choice = os.getenv(ENV_AUDIO_INPUT, DEFAULT_AUDIO_INPUT)
    return choice.strip() or DEFAULT_AUDIO_INPUT


def create_sample_source(
    choice: str | None = None,
    *,
    sample_rate: int = DEFAULT_SAMPLE_RATE,
    channels: int = DEFAULT_CHANNELS,
) -> SampleSource:
    """Create the sample source named by *choice* or ``RECORDIT_AUDIO_INPUT``.

    ``auto`` opens the default microphone and falls back to the synthetic
    tone when none is available. ``default``, a device index or a device
    name substring select a microphone explicitly and raise
    :class:`CaptureUnavailableError` on failure.
    """

    resolved = _normalise_input(choice)
    lowered = resolved.lower()
    if lowered == "synthetic":
        return ToneSource(sample_rate=sample_rate, channels=channels)
    if lowered == "auto":
        try:
            return MicrophoneSource(sample_rate=sample_rate, channels=channels)
        except CaptureUnavailableError as exc:
            logger.warning("Microphone unavailable, recording a synthetic tone instead: %s", exc)
            return ToneSource(sample_rate=sample_rate, channels=channels)
    if lowered == "default":
        return MicrophoneSource(sample_rate=sample_rate, channels=channels)
    device: int | str = int(resolved) if resolved.isdigit() else resolved
    return MicrophoneSource(device, sample_rate=sample_rate, channels=channels)


# ------------------------------ encoding -------------------------------
class AudioTrack:
    """Audio stream inside a PyAV output container."""

    def __init__(self, container: Any, codec: str, sample_rate: int, channels: int) -> None:
        self.sample_rate = int(sample_rate)
        self.samples_written = 0
        self._layout = _layout_for(channels)
        self._time_base = Fraction(1, self.sample_rate)
        self._stream = container.add_stream(codec, rate=self.sample_rate)
        self._stream.codec_context.layout = self._layout

    @property
    def seconds_written(self) -> float:
        return self.samples_written / float(self.sample_rate)

    def encode(self, block: np.ndarray) -> list[Any]:
        frame = av.AudioFrame.from_ndarray(
            np.ascontiguousarray(block, dtype=np.float32), format="fltp", layout=self._layout
        )
        frame.sample_rate = self.sample_rate
        frame.pts = self.samples_written
        frame.time_base = self._time_base
        self.samples_written += block.shape[1]
        return list(self._stream.encode(frame))

    def flush(self) -> list[Any]:
        return list(self._stream.encode(None))


def count_packet_bytes(packet: Any) -> int:
    packet_size = getattr(packet, "size", None)
    if isinstance(packet_size, int) and packet_size > 0:
        return packet_size
    return 0


@dataclass
class _AudioWriter:
    path: Path
    audio_format: AudioFormat
    sample_rate: int
    channels: int
    bytes_written: int = field(init=False, default=0)

    def __post_init__(self) -> None:
        self._container = av.open(
            str(self.path), mode="w", format=self.audio_format.container_format
        )
        try:
            self.track = AudioTrack(
                self._container, self.audio_format.codec, self.sample_rate, self.channels
            )
        except Exception:
            self._container.close()
            raise

    def add_block(self, block: np.ndarray) -> None:
        self._mux(self.track.encode(block))

    def finalise(self) -> None:
        try:
            self._mux(self.track.flush())
        finally:
            self._container.close()

    def _mux(self, packets: list[Any]) -> None:
        for packet in packets:
            self._container.mux(packet)
            self.bytes_written += count_packet_bytes(packet)


class AudioCaptureSession:
    """Record blocks from a :class:`SampleSource` into WAV or M4A files."""

    def __init__(
        self, source: SampleSource, *, audio_format: AudioFormat = AudioFormat.LINEAR_PCM
    ) -> None:
        self._source = source
        self.audio_format = audio_format
        self._writer: _AudioWriter | None = None
        self._path: Path | None = None
        self._blocks: queue.Queue[object] | None = None
        self._producer: asyncio.Task[None] | None = None
        self._encoder: threading.Thread | None = None
        self._completion: CompletionSignal | None = None
        self._paused = False
        self.dropped_blocks = 0

    async def start(self, path: Path) -> None:
        if self._producer is not None:
            raise CaptureError("Recording already in progress.")
        await self._source.open()
        try:
            writer = await asyncio.to_thread(
                _AudioWriter,
                Path(path),
                self.audio_format,
                self._source.sample_rate,
                self._source.channels,
            )
        except Exception as exc:
            raise CaptureError(f"Unable to open {path}: {summarise_exception(exc)}") from exc
        blocks: queue.Queue[object] = queue.Queue(maxsize=_BLOCK_QUEUE_DEPTH)
        completion = CompletionSignal()
        encoder = threading.Thread(
            target=self._encode_loop,
            args=(writer, blocks, completion),
            name="recordit-audio-encoder",
            daemon=True,
        )
        self._writer = writer
        self._path = Path(path)
        self._blocks = blocks
        self._completion = completion
        self._paused = False
        self.dropped_blocks = 0
        encoder.start()
        self._encoder = encoder
        self._producer = asyncio.create_task(self._produce_blocks(blocks))

    async def stop(self) -> None:
        producer = self._producer
        if producer is None:
            return
        self._producer = None
        producer.cancel()
        results = await asyncio.gather(producer, return_exceptions=True)
        blocks, completion, encoder = self._blocks, self._completion, self._encoder
        try:
            if blocks is not None:
                await asyncio.to_thread(blocks.put, _STOP)
            if completion is not None:
                await completion.wait()
            if encoder is not None:
                await asyncio.to_thread(encoder.join)
        finally:
            writer = self._writer
            self._blocks = None
            self._completion = None
            self._encoder = None
            self._writer = None
        if writer is not None:
            logger.debug(
                "Finalised %s (%.2fs of audio, %d blocks dropped)",
                self._path,
                writer.track.seconds_written,
                self.dropped_blocks,
            )
        failure = results[0] if results else None
        if isinstance(failure, Exception) and not isinstance(failure, asyncio.CancelledError):
            raise CaptureError(f"Audio capture failed: {summarise_exception(failure)}") from failure

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

    async def _produce_blocks(self, blocks: queue.Queue[object]) -> None:
        while True:
            block = await self._source.read_block()
            if self._paused:
                continue
            try:
                blocks.put_nowait(block)
            except queue.Full:
                self.dropped_blocks += 1

    @staticmethod
    def _encode_loop(
        writer: _AudioWriter,
        blocks: queue.Queue[object],
        completion: CompletionSignal,
    ) -> None:
        error: BaseException | None = None
        try:
            while True:
                item = blocks.get()
                if item is _STOP:
                    break
                if error is None:
                    try:
                        writer.add_block(item)  # type: ignore[arg-type]
                    except Exception as exc:
                        logger.error("Audio encoding failed: %s", exc)
                        error = CaptureError(f"Audio encoding failed: {summarise_exception(exc)}")
        finally:
            try:
                writer.finalise()
            except Exception as exc:
                logger.error("Unable to finalise %s: %s", writer.path, exc)
                if error is None:
                    error = CaptureError(f"Unable to finalise audio: {summarise_exception(exc)}")
            completion.resolve(error)


__all__ = [
    "DEFAULT_AUDIO_INPUT",
    "DEFAULT_CHANNELS",
    "DEFAULT_SAMPLE_RATE",
    "AudioCaptureSession",
    "AudioFormat",
    "AudioInputInfo",
    "AudioTrack",
    "MicrophoneSource",
    "SampleSource",
    "ToneSource",
    "count_packet_bytes",
    "create_sample_source",
    "list_audio_inputs",
]
