"""Configuration structures for recordit sessions."""
from __future__ import annotations

import math
import os
from dataclasses import dataclass
from typing import Any, Mapping

from .keys import InvalidKeyError, parse_key_spec

DEFAULT_STOP_KEY = "s"
BYTES_PER_MB = 1_048_576

ENV_STOP_KEY = "RECORDIT_STOP_KEY"
ENV_OUTPUT = "RECORDIT_OUTPUT"
ENV_LOG_LEVEL = "RECORDIT_LOG_LEVEL"
ENV_CAMERA = "RECORDIT_CAMERA"
ENV_AUDIO_INPUT = "RECORDIT_AUDIO_INPUT"
ENV_DISPLAY = "RECORDIT_DISPLAY"


class ValidationError(ValueError):
    """Raised when recording options are missing, malformed or conflicting."""


def _parse_positive(value: Any, *, message: str) -> float | None:
    if value is None:
        return None
    try:
        numeric = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(message) from exc
    if not math.isfinite(numeric) or numeric <= 0:
        raise ValidationError(message)
    return numeric


def _parse_keys(value: str | None, *, label: str) -> frozenset[int]:
    if value is None:
        return frozenset()
    try:
        return parse_key_spec(value, label=label)
    except InvalidKeyError as exc:
        raise ValidationError(str(exc)) from exc


def _env_value(environ: Mapping[str, str], name: str) -> str | None:
    raw = environ.get(name)
    if raw is None:
        return None
    # A single space is a legal key, so only empty values fall through.
    return raw if raw != "" else None


@dataclass(frozen=True, slots=True)
class Resolution:
    """Requested capture resolution."""

    width: int
    height: int

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValidationError("Resolution dimensions must be positive integers.")

    def as_tuple(self) -> tuple[int, int]:
        return (int(self.width), int(self.height))

    def key(self) -> str:
        return f"{self.width}x{self.height}"


def parse_resolution(value: str | None) -> Resolution | None:
    """Parse ``WIDTHxHEIGHT`` into a :class:`Resolution`."""

    if value is None:
        return None
    parts = value.strip().lower().split("x")
    if len(parts) != 2:
        raise ValidationError("Resolution must be formatted as WIDTHxHEIGHT (e.g. 1280x720).")
    try:
        width = int(parts[0])
        height = int(parts[1])
    except ValueError as exc:
        raise ValidationError(
            "Resolution must be formatted as WIDTHxHEIGHT (e.g. 1280x720)."
        ) from exc
    if width <= 0 or height <= 0:
        raise ValidationError("Resolution must be formatted as WIDTHxHEIGHT (e.g. 1280x720).")
    return Resolution(width, height)


def parse_fps(value: Any) -> float | None:
    return _parse_positive(value, message="FPS must be greater than 0.")


@dataclass(frozen=True, slots=True)
class RecordingConfiguration:
    """Validated options controlling when a recording stops or rotates.

    Any combination of duration, split interval, size limit and stop key may
    be active at once; whichever condition fires first ends the chunk.
    """

    stop_keys: frozenset[int]
    duration: float | None = None
    split_interval: float | None = None
    max_size_bytes: int | None = None
    pause_keys: frozenset[int] = frozenset()
    resume_keys: frozenset[int] = frozenset()
    output: str | None = None
    name_template: str | None = None
    overwrite: bool = False

    def __post_init__(self) -> None:
        duration = _parse_positive(
            self.duration, message="Duration must be greater than 0 seconds."
        )
        split = _parse_positive(
            self.split_interval, message="Split duration must be greater than 0 seconds."
        )
        if self.max_size_bytes is not None:
            if isinstance(self.max_size_bytes, bool) or int(self.max_size_bytes) <= 0:
                raise ValidationError("Max size must be greater than 0 MB.")
            object.__setattr__(self, "max_size_bytes", int(self.max_size_bytes))
        if self.resume_keys and not self.pause_keys:
            raise ValidationError("A resume key requires a pause key.")
        if self.output is not None and not str(self.output).strip():
            raise ValidationError("Output path must not be empty.")
        if self.name_template is not None and not self.name_template.strip():
            raise ValidationError("Name pattern must not be empty.")
        object.__setattr__(self, "duration", duration)
        object.__setattr__(self, "split_interval", split)
        object.__setattr__(self, "stop_keys", frozenset(self.stop_keys))
        object.__setattr__(self, "pause_keys", frozenset(self.pause_keys))
        object.__setattr__(self, "resume_keys", frozenset(self.resume_keys))
        object.__setattr__(self, "overwrite", bool(self.overwrite))

    # ------------------------------ properties -----------------------------
    @property
    def splitting(self) -> bool:
        return self.split_interval is not None

    @property
    def max_size_mb(self) -> float | None:
        if self.max_size_bytes is None:
            return None
        return self.max_size_bytes / BYTES_PER_MB

    @property
    def pause_enabled(self) -> bool:
        return bool(self.pause_keys)

    # ------------------------------ factories ------------------------------
    @classmethod
    def from_options(
        cls,
        *,
        duration: float | None = None,
        split: float | None = None,
        max_size_mb: float | None = None,
        stop_key: str | None = None,
        pause_key: str | None = None,
        resume_key: str | None = None,
        output: str | None = None,
        name: str | None = None,
        overwrite: bool = False,
        environ: Mapping[str, str] | None = None,
    ) -> "RecordingConfiguration":
        """Build a configuration from raw command-line values.

        Unset values fall back to ``RECORDIT_STOP_KEY`` and ``RECORDIT_OUTPUT``
        from *environ* (``os.environ`` by default). A pause key without a
        resume key acts as a toggle.
        """

        env = os.environ if environ is None else environ
        stop_value = stop_key if stop_key is not None else _env_value(env, ENV_STOP_KEY)
        if stop_value is None:
            stop_value = DEFAULT_STOP_KEY
        stop_keys = _parse_keys(stop_value, label="Stop key")
        pause_keys = _parse_keys(pause_key, label="Pause key")
        if resume_key is None:
            resume_keys = pause_keys
        else:
            resume_keys = _parse_keys(resume_key, label="Resume key")
        size_mb = _parse_positive(max_size_mb, message="Max size must be greater than 0 MB.")
        max_size_bytes = int(size_mb * BYTES_PER_MB) if size_mb is not None else None
        if max_size_bytes is not None and max_size_bytes <= 0:
            max_size_bytes = 1
        if output is None:
            output = _env_value(env, ENV_OUTPUT)
        return cls(
            stop_keys=stop_keys,
            duration=duration,
            split_interval=split,
            max_size_bytes=max_size_bytes,
            pause_keys=pause_keys,
            resume_keys=resume_keys,
            output=output,
            name_template=name,
            overwrite=overwrite,
        )


__all__ = [
    "BYTES_PER_MB",
    "DEFAULT_STOP_KEY",
    "ENV_AUDIO_INPUT",
    "ENV_CAMERA",
    "ENV_DISPLAY",
    "ENV_LOG_LEVEL",
    "ENV_OUTPUT",
    "ENV_STOP_KEY",
    "RecordingConfiguration",
    "Resolution",
    "ValidationError",
    "parse_fps",
    "parse_resolution",
]
