"""Display capture through mss."""
from __future__ import annotations

import asyncio
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

import mss
import numpy as np

from .camera import FrameSource
from .capture import CaptureUnavailableError, summarise_exception
from .config import ENV_DISPLAY, Resolution, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_DISPLAY = "primary"
SCREEN_EXTENSION = "mp4"
SCREEN_CONTAINER = "mp4"


@dataclass(frozen=True, slots=True)
class DisplayInfo:
    """A monitor reported by mss. ``id`` starts at 1 for the primary display."""

    id: int
    x: int
    y: int
    width: int
    height: int

    @classmethod
    def from_monitor(cls, index: int, monitor: dict[str, int]) -> "DisplayInfo":
        return cls(
            id=index,
            x=int(monitor["left"]),
            y=int(monitor["top"]),
            width=int(monitor["width"]),
            height=int(monitor["height"]),
        )

    @property
    def region(self) -> dict[str, int]:
        return {"left": self.x, "top": self.y, "width": self.width, "height": self.height}

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "width": self.width,
            "height": self.height,
            "frame": {"x": self.x, "y": self.y, "width": self.width, "height": self.height},
        }

    def describe(self) -> str:
        frame = f"({self.x}, {self.y}, {self.width}, {self.height})"
        return f"{self.id}\t{self.width}x{self.height}\t{frame}"


def list_displays() -> list[DisplayInfo]:
    """Return the individual monitors, excluding mss' combined virtual screen."""

    try:
        with mss.mss() as grabber:
            monitors = list(grabber.monitors)
    except Exception as exc:
        raise CaptureUnavailableError(
            f"Screen capture is unavailable: {summarise_exception(exc)}"
        ) from exc
    return [DisplayInfo.from_monitor(index, monitor) for index, monitor in enumerate(monitors) if index]


def select_display(choice: str | None = None) -> DisplayInfo:
    """Pick the display named by *choice*, ``RECORDIT_DISPLAY`` or the primary one.

    Raises :class:`ValidationError` for a malformed choice and
    :class:`CaptureUnavailableError` when nothing matches.
    """

    if choice is None:
        choice = os.getenv(ENV_DISPLAY, DEFAULT_DISPLAY)
    resolved = choice.strip().lower() or DEFAULT_DISPLAY
    if resolved != DEFAULT_DISPLAY and not resolved.isdigit():
        raise ValidationError(f"Invalid display '{choice}'. Use a display ID or 'primary'.")
    displays = list_displays()
    if not displays:
        raise CaptureUnavailableError("No displays available for capture.")
    if resolved == DEFAULT_DISPLAY:
        return displays[0]
    wanted = int(resolved)
    for display in displays:
        if display.id == wanted:
            logger.debug("Selected display %d (%dx%d)", display.id, display.width, display.height)
            return display
    raise CaptureUnavailableError(
        f"No display matches '{choice}'. Use --list-displays to see available displays."
    )


class ScreenFrameSource(FrameSource):
    """Grab one display as RGB frames.

    mss handles are bound to the thread that created them, so every grab
    runs on a single dedicated worker thread.
    """

    def __init__(self, display: DisplayInfo, resolution: Resolution | None = None) -> None:
        self.display = display
        self._resolution = resolution or Resolution(display.width, display.height)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="recordit-screen")
        self._grabber: Any = None

    @property
    def resolution(self) -> Resolution:
        return self._resolution

    def _grab(self) -> np.ndarray:
        if self._grabber is None:
            self._grabber = mss.mss()
        shot = self._grabber.grab(self.display.region)
        # mss returns BGRA rows
        return np.ascontiguousarray(np.asarray(shot)[..., 2::-1])

    async def get_frame(self) -> np.ndarray:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._executor, self._grab)
        except Exception as exc:
            raise CaptureUnavailableError(
                f"Unable to capture display {self.display.id}: {summarise_exception(exc)}"
            ) from exc

    def _release(self) -> None:
        grabber = self._grabber
        self._grabber = None
        if grabber is not None:
            grabber.close()

    async def close(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(self._executor, self._release)
        finally:
            self._executor.shutdown(wait=False)


__all__ = [
    "DEFAULT_DISPLAY",
    "SCREEN_CONTAINER",
    "SCREEN_EXTENSION",
    "DisplayInfo",
    "ScreenFrameSource",
    "list_displays",
    "select_display",
]
