"""Raw terminal handling and keypress sources for operator controls."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import sys
from types import TracebackType
from typing import IO, Iterator, Protocol

try:  # pragma: no cover - termios is unavailable on Windows
    import termios
except ImportError:  # pragma: no cover - platform dependent
    termios = None  # type: ignore[assignment]

logger = logging.getLogger(__name__)


class KeypressSource(Protocol):
    """Non-blocking single-byte key reader used while a chunk is recording.

    Entering the context acquires whatever terminal state the source needs;
    leaving it must restore that state on every exit path.
    """

    def __enter__(self) -> "KeypressSource":  # pragma: no cover - interface only
        ...

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:  # pragma: no cover - interface only
        ...

    async def read(self, timeout: float) -> int | None:  # pragma: no cover - interface only
        """Return the next key byte, or ``None`` once *timeout* seconds pass."""
        ...


def _terminal_fd(stream: IO[str] | None) -> int | None:
    if stream is None or termios is None:
        return None
    try:
        fd = stream.fileno()
    except (AttributeError, OSError, ValueError):
        return None
    try:
        return fd if os.isatty(fd) else None
    except OSError:  # pragma: no cover - closed descriptor
        return None


@contextlib.contextmanager
def raw_terminal(stream: IO[str] | None = None) -> Iterator[int | None]:
    """Disable line buffering and echo on *stream* for the life of the context.

    Yields the file descriptor when the terminal was switched, or ``None``
    when *stream* is not an interactive terminal. Signal generation (Ctrl-C)
    stays enabled. The previous terminal attributes are restored on exit,
    including when the body raises.
    """

    fd = _terminal_fd(sys.stdin if stream is None else stream)
    previous = None
    if fd is not None:
        try:
            previous = termios.tcgetattr(fd)
            attrs = termios.tcgetattr(fd)
            attrs[3] &= ~(termios.ICANON | termios.ECHO)
            attrs[6][termios.VMIN] = 1
            attrs[6][termios.VTIME] = 0
            termios.tcsetattr(fd, termios.TCSANOW, attrs)
        except (termios.error, OSError) as exc:
            logger.warning("Could not set up keyboard input: %s", exc)
            previous = None
            fd = None
    try:
        yield fd
    finally:
        if fd is not None and previous is not None:
            try:
                termios.tcsetattr(fd, termios.TCSADRAIN, previous)
            except (termios.error, OSError):  # pragma: no cover - terminal went away
                logger.debug("Unable to restore terminal attributes", exc_info=True)


class TerminalKeypressSource:
    """Deliver key presses from an interactive terminal through the event loop."""

    def __init__(self, stream: IO[str] | None = None) -> None:
        self._stream = stream
        self._stack: contextlib.ExitStack | None = None
        self._queue: asyncio.Queue[int] | None = None
        self._fd: int | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def interactive(self) -> bool:
        return self._fd is not None

    def __enter__(self) -> "TerminalKeypressSource":
        if self._stack is not None:
            raise RuntimeError("Keypress source already active")
        stack = contextlib.ExitStack()
        self._queue = asyncio.Queue()
        try:
            fd = stack.enter_context(raw_terminal(self._stream))
            if fd is not None:
                loop = asyncio.get_running_loop()
                try:
                    loop.add_reader(fd, self._on_readable)
                except (NotImplementedError, RuntimeError) as exc:
                    logger.warning("Key controls unavailable on this event loop: %s", exc)
                    fd = None
                else:
                    self._loop = loop
                    stack.callback(self._remove_reader, loop, fd)
            self._fd = fd
        except BaseException:
            stack.close()
            raise
        self._stack = stack
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        stack, self._stack = self._stack, None
        self._fd = None
        self._loop = None
        if stack is not None:
            stack.close()

    def _remove_reader(self, loop: asyncio.AbstractEventLoop, fd: int) -> None:
        try:
            loop.remove_reader(fd)
        except (ValueError, RuntimeError):  # pragma: no cover - loop already closed
            logger.debug("Unable to detach keyboard reader", exc_info=True)

    def _on_readable(self) -> None:
        fd = self._fd
        if fd is None or self._queue is None:
            return
        try:
            data = os.read(fd, 1)
        except (BlockingIOError, InterruptedError):
            return
        except OSError as exc:
            logger.debug("Keyboard read failed: %s", exc)
            data = b""
        if not data:
            # EOF on stdin; stop watching so the loop does not spin.
            if self._loop is not None:
                self._remove_reader(self._loop, fd)
            self._fd = None
            return
        self._queue.put_nowait(data[0])

    async def read(self, timeout: float) -> int | None:
        queue = self._queue
        if queue is None:
            raise RuntimeError("Keypress source is not active")
        if not queue.empty():
            return queue.get_nowait()
        if timeout <= 0:
            return None
        try:
            return await asyncio.wait_for(queue.get(), timeout)
        except asyncio.TimeoutError:
            return None


class NullKeypressSource:
    """Keypress source that never yields input (non-interactive runs)."""

    def __enter__(self) -> "NullKeypressSource":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        return None

    async def read(self, timeout: float) -> int | None:
        if timeout > 0:
            await asyncio.sleep(timeout)
        return None


__all__ = [
    "KeypressSource",
    "NullKeypressSource",
    "TerminalKeypressSource",
    "raw_terminal",
]
