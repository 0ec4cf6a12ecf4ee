"""recordit package exposing the recording loop and its stop-condition helpers."""

from typing import Any, Sequence

from .config import RecordingConfiguration, ValidationError
from .controller import ChunkResult, ChunkState, RecordingLoopController
from .evaluator import StopConditionEvaluator, StopReason
from .keys import InvalidKeyError, parse_key_spec
from .paths import OutputExistsError, OutputMustBeDirectoryError, OutputPathResolver
from .timeline import RecordingTimeline
from .version import APP_VERSION


def main(argv: Sequence[str] | None = None) -> Any:
    from .cli import main as _main

    return _main(argv)


__all__ = [
    "APP_VERSION",
    "ChunkResult",
    "ChunkState",
    "InvalidKeyError",
    "OutputExistsError",
    "OutputMustBeDirectoryError",
    "OutputPathResolver",
    "RecordingConfiguration",
    "RecordingLoopController",
    "RecordingTimeline",
    "StopConditionEvaluator",
    "StopReason",
    "ValidationError",
    "main",
    "parse_key_spec",
]
