"""Operator key parsing and pause/resume key handling."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


class InvalidKeyError(ValueError):
    """Raised when a key specification is not a single printable ASCII character."""


def parse_key_spec(value: str | None, *, label: str = "Stop key") -> frozenset[int]:
    """Return the byte values that should match the key described by *value*.

    Alphabetic keys match both their upper- and lower-case forms so the
    operator does not have to care about caps lock or shift. Every other
    printable character matches only itself.
    """

    if not isinstance(value, str) or len(value) != 1:
        raise InvalidKeyError(f"{label} must be a single ASCII character.")
    code = ord(value)
    if code > 0x7F:
        raise InvalidKeyError(f"{label} must be a single ASCII character.")
    if not value.isprintable():
        raise InvalidKeyError(f"{label} must be a printable character.")
    if value.isalpha():
        return frozenset({ord(value.upper()), ord(value.lower())})
    return frozenset({code})


def describe_key(keys: frozenset[int]) -> str:
    """Return a display label for a parsed key set (upper-case when alphabetic)."""

    if not keys:
        return ""
    return chr(min(keys)).upper()


@dataclass(slots=True)
class PauseResumeState:
    """Track the paused flag driven by pause and resume key presses.

    When both key sets are identical the pause key acts as a toggle. With
    distinct keys, a pause key only pauses a running recording and a resume
    key only resumes a paused one; other presses are ignored.
    """

    pause_keys: frozenset[int] = frozenset()
    resume_keys: frozenset[int] = frozenset()
    paused: bool = field(default=False)

    @property
    def toggles(self) -> bool:
        return bool(self.pause_keys) and self.pause_keys == self.resume_keys

    def matches(self, byte: int) -> bool:
        return byte in self.pause_keys or byte in self.resume_keys

    def handle(self, byte: int) -> bool:
        """Apply *byte* to the state and return ``True`` when it changed."""

        if self.toggles:
            if byte in self.pause_keys:
                self.paused = not self.paused
                return True
            return False
        if not self.paused and byte in self.pause_keys:
            self.paused = True
            return True
        if self.paused and byte in self.resume_keys:
            self.paused = False
            return True
        logger.debug("Ignoring key %r outside the current pause state", chr(byte))
        return False


__all__ = ["InvalidKeyError", "PauseResumeState", "describe_key", "parse_key_spec"]
