"""Capture session interface shared by the camera and audio modes."""
from __future__ import annotations

import asyncio
import logging
import threading
from pathlib import Path
from typing import Iterable, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


class CaptureError(RuntimeError):
    """Raised when a capture session cannot start, record or finalise."""


class CaptureUnavailableError(CaptureError):
    """Raised when no compatible device or backend is available."""


@runtime_checkable
class CaptureSession(Protocol):
    """Collaborator driven by :class:`recordit.controller.RecordingLoopController`.

    ``start`` begins writing to *path* and fails when already recording.
    ``stop`` flushes and finalises the current file and is a no-op when idle.
    ``current_output_size_bytes`` is a best-effort size of the file being
    written, or ``None`` when the session cannot tell.
    """

    async def start(self, path: Path) -> None:  # pragma: no cover - interface only
        ...

    async def stop(self) -> None:  # pragma: no cover - interface only
        ...

    def current_output_size_bytes(self) -> int | None:  # pragma: no cover - interface only
        ...


class CompletionSignal:
    """Single-shot completion channel resolved from a worker thread.

    The first call to :meth:`resolve` wins; later calls are ignored so a
    writer that reports completion twice cannot resolve the waiter twice.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop if loop is not None else asyncio.get_running_loop()
        self._future: asyncio.Future[None] = self._loop.create_future()
        self._lock = threading.Lock()
        self._completed = False

    @property
    def completed(self) -> bool:
        with self._lock:
            return self._completed

    def resolve(self, error: BaseException | None = None) -> bool:
        """Complete the channel, returning ``False`` when it was already resolved."""

        with self._lock:
            if self._completed:
                return False
            self._completed = True
        try:
            self._loop.call_soon_threadsafe(self._settle, error)
        except RuntimeError:  # pragma: no cover - loop closed during shutdown
            logger.debug("Completion arrived after the event loop closed", exc_info=True)
        return True

    def _settle(self, error: BaseException | None) -> None:
        if self._future.done():
            return
        if error is not None:
            self._future.set_exception(error)
        else:
            self._future.set_result(None)

    async def wait(self) -> None:
        await asyncio.shield(self._future)


def file_size(path: Path | None) -> int | None:
    """Return the on-disk size of *path*, or ``None`` when it does not exist yet."""

    if path is None:
        return None
    try:
        return int(path.stat().st_size)
    except FileNotFoundError:
        return None
    except OSError:  # pragma: no cover - best-effort stat
        logger.debug("Unable to stat %s", path, exc_info=True)
        return None


def summarise_exception(exc: BaseException) -> str:
    """Collect the unique error messages from an exception chain."""

    details: list[str] = []
    seen: set[str] = set()
    to_consider: Iterable[BaseException | None] = (
        exc,
        getattr(exc, "__cause__", None),
        getattr(exc, "__context__", None),
    )
    for candidate in to_consider:
        if candidate is None:
            continue
        text = str(candidate).strip()
        if text and text not in seen:
            details.append(text)
            seen.add(text)
    return " | ".join(details)


__all__ = [
    "CaptureError",
    "CaptureSession",
    "CaptureUnavailableError",
    "CompletionSignal",
    "file_size",
    "summarise_exception",
]
