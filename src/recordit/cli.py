"""Command line interface for recordit."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Mapping, NoReturn, Sequence

from pydantic import BaseModel, ConfigDict, Field

from .audio import (
    DEFAULT_CHANNELS,
    DEFAULT_SAMPLE_RATE,
    AudioCaptureSession,
    AudioFormat,
    create_sample_source,
    list_audio_inputs,
)
from .camera import (
    PHOTO_EXTENSION,
    VIDEO_EXTENSION,
    VideoCaptureSession,
    capture_photo,
    create_frame_source,
    list_cameras,
)
from .capture import CaptureError, CaptureUnavailableError, summarise_exception
from .config import (
    ENV_LOG_LEVEL,
    RecordingConfiguration,
    ValidationError,
    parse_fps,
    parse_resolution,
)
from .controller import ChunkResult, RecordingLoopController
from .evaluator import StopConditionEvaluator
from .paths import OutputPathError, OutputPathResolver
from .screen import (
    SCREEN_CONTAINER,
    SCREEN_EXTENSION,
    ScreenFrameSource,
    list_displays,
    select_display,
)
from .terminal import TerminalKeypressSource
from .version import APP_VERSION

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_UNAVAILABLE = 2
EXIT_USAGE = 64
EXIT_INTERRUPTED = 130

COMMANDS = ("audio", "camera", "screen")
DEFAULT_COMMAND = "audio"


class ChunkReport(BaseModel):
    """Machine readable description of a finished recording or photo."""

    model_config = ConfigDict(populate_by_name=True)

    path: str
    mode: str
    fps: float | None = None
    resolution: str | None = None
    audio: bool | None = None
    display: int | None = None
    format: str | None = None
    duration: float | None = None
    max_size_mb: float | None = Field(default=None, alias="maxSizeMB")
    chunk: int | None = None
    stop_reason: str | None = Field(default=None, alias="stopReason")

    def render(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class _UsageParser(argparse.ArgumentParser):
    """Argument parser that reports usage errors with ``EX_USAGE``."""

    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        self.exit(EXIT_USAGE, f"{self.prog}: error: {message}\n")


def _common_options() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--duration",
        type=float,
        help="Stop recording after this many seconds. If omitted, press the stop key to stop.",
    )
    common.add_argument(
        "--split",
        type=float,
        help="Split recording into chunks of this many seconds. Output must be a directory.",
    )
    common.add_argument(
        "--max-size",
        dest="max_size_mb",
        type=float,
        metavar="MB",
        help="Stop when the output file reaches this size in MB.",
    )
    common.add_argument(
        "--output",
        help="Write output to this file or directory. Default: temporary directory.",
    )
    common.add_argument(
        "--name",
        help="Filename pattern when output is a directory. Supports strftime tokens, {uuid}, and {chunk}.",
    )
    common.add_argument(
        "--overwrite",
        action="store_true",
        help="Overwrite the output file if it exists.",
    )
    common.add_argument("--stop-key", help="Stop key (single ASCII character). Default: s.")
    common.add_argument(
        "--pause-key",
        help="Pause key (single ASCII character). Toggles pause unless --resume-key is given.",
    )
    common.add_argument("--resume-key", help="Resume key (single ASCII character).")
    common.add_argument(
        "--json",
        action="store_true",
        help="Print machine-readable JSON to stdout.",
    )
    verbosity = common.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Log debug details to stderr.")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Only log warnings and errors.")
    return common


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the recordit CLI."""

    parser = _UsageParser(
        prog="recordit",
        description="Record audio, camera or screen output from the terminal.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {APP_VERSION}")
    subparsers = parser.add_subparsers(dest="command", metavar="{audio,camera,screen}")
    subparsers.required = True
    common = _common_options()

    audio = subparsers.add_parser(
        "audio",
        parents=[common],
        help="Record audio to a temporary file (default).",
        description="Record audio to a temporary file.",
    )
    audio.add_argument(
        "--format",
        dest="audio_format",
        choices=[item.value for item in AudioFormat],
        default=AudioFormat.LINEAR_PCM.value,
        help="Audio format. Default: linearPCM.",
    )
    audio.add_argument(
        "--sample-rate",
        type=int,
        default=DEFAULT_SAMPLE_RATE,
        help=f"Sample rate in Hz. Default: {DEFAULT_SAMPLE_RATE}.",
    )
    audio.add_argument(
        "--channels",
        type=int,
        choices=(1, 2),
        default=DEFAULT_CHANNELS,
        help=f"Channel count. Default: {DEFAULT_CHANNELS}.",
    )
    audio.add_argument(
        "--input",
        dest="audio_input",
        help=(
            "Audio input: auto, default, synthetic, a device index or a name substring. "
            "Default: auto."
        ),
    )
    audio.add_argument(
        "--list-inputs",
        action="store_true",
        help="List available audio inputs and exit.",
    )

    camera = subparsers.add_parser(
        "camera",
        parents=[common],
        help="Record camera video or take a photo.",
        description="Record camera video or take a photo to a temporary file.",
    )
    camera.add_argument(
        "--list-cameras",
        action="store_true",
        help="List available cameras and exit.",
    )
    camera.add_argument(
        "--camera", help="Camera to use (auto, synthetic, opencv or opencv:<index>). Default: auto."
    )
    camera.add_argument(
        "--mode",
        choices=("video", "photo"),
        help="Capture mode: video or photo. Default: video.",
    )
    camera.add_argument(
        "--photo",
        action="store_true",
        help="Capture a single photo (alias for --mode photo).",
    )
    camera.add_argument("--fps", type=float, help="Frames per second.")
    camera.add_argument("--resolution", help="Capture resolution as WIDTHxHEIGHT (e.g. 1280x720).")
    camera.add_argument(
        "--quality",
        type=int,
        default=90,
        help="JPEG quality for photos (1-100). Default: 90.",
    )
    camera.add_argument(
        "--audio",
        action="store_true",
        help="Record from the system default microphone.",
    )

    screen = subparsers.add_parser(
        "screen",
        parents=[common],
        help="Record a display.",
        description="Record the primary display to a temporary file.",
    )
    screen.add_argument(
        "--list-displays",
        action="store_true",
        help="List available displays and exit.",
    )
    screen.add_argument("--display", help="Display ID to record, or 'primary'.")
    screen.add_argument("--fps", type=float, help="Frames per second.")
    screen.add_argument("--resolution", help="Scale the recording to WIDTHxHEIGHT.")

    for sub in (audio, camera, screen):
        sub.set_defaults(parser=sub)
    return parser


def _with_default_command(argv: Sequence[str]) -> list[str]:
    args = list(argv)
    if args and (args[0] in COMMANDS or args[0] in ("-h", "--help", "--version")):
        return args
    return [DEFAULT_COMMAND, *args]


def configure_logging(
    *,
    verbose: bool = False,
    quiet: bool = False,
    environ: Mapping[str, str] | None = None,
) -> int:
    """Configure root logging on stderr and return the chosen level."""

    env = os.environ if environ is None else environ
    level = logging.INFO
    configured = env.get(ENV_LOG_LEVEL, "").strip().upper()
    if configured:
        candidate = logging.getLevelName(configured)
        if isinstance(candidate, int):
            level = candidate
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    fmt = "%(levelname)s %(name)s: %(message)s" if level <= logging.DEBUG else "%(message)s"
    logging.basicConfig(level=level, format=fmt, stream=sys.stderr, force=True)
    return level


# ------------------------------ validation -----------------------------
def resolve_camera_mode(args: argparse.Namespace) -> str:
    if args.photo:
        if args.mode == "video":
            raise ValidationError("--photo conflicts with --mode video. Use --mode photo or drop --photo.")
        return "photo"
    return args.mode or "video"


def validate_photo_options(args: argparse.Namespace) -> None:
    rejected = (
        ("duration", "--duration"),
        ("split", "--split"),
        ("max_size_mb", "--max-size"),
        ("fps", "--fps"),
    )
    for attribute, flag in rejected:
        if getattr(args, attribute, None) is not None:
            raise ValidationError(f"{flag} is only supported for video capture.")
    if args.audio:
        raise ValidationError("--audio is only supported for video capture.")
    quality = args.quality
    if not (1 <= quality <= 100):
        raise ValidationError("Quality must be between 1 and 100.")


def build_configuration(
    args: argparse.Namespace, environ: Mapping[str, str] | None = None
) -> RecordingConfiguration:
    """Validate recording options from *args* before any capture starts."""

    config = RecordingConfiguration.from_options(
        duration=args.duration,
        split=args.split,
        max_size_mb=args.max_size_mb,
        stop_key=args.stop_key,
        pause_key=args.pause_key,
        resume_key=args.resume_key,
        output=args.output,
        name=args.name,
        overwrite=args.overwrite,
        environ=environ,
    )
    if config.splitting and config.output is not None:
        target = Path(config.output).expanduser()
        if target.exists() and not target.is_dir():
            raise ValidationError("Output must be a directory when using --split.")
    return config


def _emit(report: ChunkReport, *, as_json: bool) -> None:
    if as_json:
        print(report.render(), flush=True)
    else:
        print(report.path, flush=True)


# ------------------------------ commands -------------------------------
async def _record(
    config: RecordingConfiguration,
    session: Any,
    resolver: OutputPathResolver,
    *,
    label: str,
    report_fields: Mapping[str, object],
    as_json: bool,
) -> list[ChunkResult]:
    evaluator = StopConditionEvaluator(config, TerminalKeypressSource())
    controller = RecordingLoopController(config, session, resolver, evaluator, label=label)
    results: list[ChunkResult] = []
    try:
        async for result in controller.run():
            results.append(result)
            report = ChunkReport(
                path=str(result.path),
                chunk=result.chunk,
                stop_reason=result.reason.value,
                duration=config.duration,
                max_size_mb=config.max_size_mb,
                **report_fields,
            )
            _emit(report, as_json=as_json)
    finally:
        await session.close()
    return results


def _print_listing(entries: Sequence[Any], *, as_json: bool, render: Any) -> None:
    if as_json:
        json.dump([entry.to_dict() for entry in entries], sys.stdout)
        sys.stdout.write("\n")
        return
    for entry in entries:
        print(render(entry))


def print_audio_inputs(*, as_json: bool) -> int:
    inputs = list_audio_inputs()
    if not inputs:
        logger.error("No audio inputs available for capture.")
        return EXIT_UNAVAILABLE
    _print_listing(
        inputs,
        as_json=as_json,
        render=lambda item: f"{'*' if item.is_default else ' '} {item.name}\t{item.id}",
    )
    return EXIT_SUCCESS


async def run_audio(args: argparse.Namespace, environ: Mapping[str, str] | None = None) -> int:
    if args.list_inputs:
        return print_audio_inputs(as_json=args.json)

    config = build_configuration(args, environ)
    if args.sample_rate <= 0:
        raise ValidationError("Sample rate must be greater than 0.")
    audio_format = AudioFormat(args.audio_format)
    source = create_sample_source(
        args.audio_input, sample_rate=args.sample_rate, channels=args.channels
    )
    session = AudioCaptureSession(source, audio_format=audio_format)
    resolver = OutputPathResolver(
        audio_format.file_extension,
        prefix="recordit-audio",
        overwrite=config.overwrite,
    )
    await _record(
        config,
        session,
        resolver,
        label="Audio recording",
        report_fields={"mode": "audio", "format": audio_format.value},
        as_json=args.json,
    )
    return EXIT_SUCCESS


def print_cameras(*, as_json: bool) -> int:
    cameras = list_cameras()
    if not cameras:
        logger.error("No cameras available for capture.")
        return EXIT_UNAVAILABLE
    _print_listing(
        cameras,
        as_json=as_json,
        render=lambda camera: f"{'*' if camera.is_default else ' '} {camera.name}\t{camera.id}",
    )
    return EXIT_SUCCESS


async def run_camera(args: argparse.Namespace, environ: Mapping[str, str] | None = None) -> int:
    if args.list_cameras:
        return print_cameras(as_json=args.json)

    mode = resolve_camera_mode(args)
    if mode == "photo":
        validate_photo_options(args)
    fps = parse_fps(args.fps)
    resolution = parse_resolution(args.resolution)
    config = build_configuration(args, environ)
    source = create_frame_source(args.camera, resolution=resolution, fps=fps)

    if mode == "photo":
        resolver = OutputPathResolver(
            PHOTO_EXTENSION, prefix="recordit-photo", overwrite=config.overwrite
        )
        try:
            path = await asyncio.to_thread(
                resolver.resolve_and_prepare, config.output, config.name_template
            )
            await capture_photo(source, path, quality=args.quality)
        finally:
            await source.close()
        _emit(ChunkReport(path=str(path), mode="photo", format="jpeg"), as_json=args.json)
        return EXIT_SUCCESS

    microphone = None
    if args.audio:
        try:
            microphone = create_sample_source("default")
        except CaptureUnavailableError:
            await source.close()
            raise
    session = VideoCaptureSession(source, fps=fps, audio=microphone)
    resolver = OutputPathResolver(
        VIDEO_EXTENSION, prefix="recordit-camera", overwrite=config.overwrite
    )
    await _record(
        config,
        session,
        resolver,
        label="Camera recording",
        report_fields={
            "mode": "video",
            "fps": fps,
            "resolution": resolution.key() if resolution is not None else None,
            "audio": session.records_audio,
        },
        as_json=args.json,
    )
    return EXIT_SUCCESS


def print_displays(*, as_json: bool) -> int:
    displays = list_displays()
    if not displays:
        logger.error("No displays available for capture.")
        return EXIT_UNAVAILABLE
    _print_listing(displays, as_json=as_json, render=lambda display: display.describe())
    return EXIT_SUCCESS


async def run_screen(args: argparse.Namespace, environ: Mapping[str, str] | None = None) -> int:
    if args.list_displays:
        return print_displays(as_json=args.json)

    fps = parse_fps(args.fps)
    resolution = parse_resolution(args.resolution)
    config = build_configuration(args, environ)
    display = select_display(args.display)
    source = ScreenFrameSource(display, resolution)
    session = VideoCaptureSession(source, fps=fps, container_format=SCREEN_CONTAINER)
    resolver = OutputPathResolver(
        SCREEN_EXTENSION, prefix="recordit-screen", overwrite=config.overwrite
    )
    await _record(
        config,
        session,
        resolver,
        label="Screen recording",
        report_fields={
            "mode": "screen",
            "fps": session.fps,
            "resolution": source.resolution.key(),
            "display": display.id,
        },
        as_json=args.json,
    )
    return EXIT_SUCCESS


_HANDLERS = {"audio": run_audio, "camera": run_camera, "screen": run_screen}


def run(argv: Sequence[str] | None = None, environ: Mapping[str, str] | None = None) -> int:
    """Execute the CLI with *argv* arguments and return the exit code."""

    parser = build_parser()
    raw = list(sys.argv[1:] if argv is None else argv)
    args = parser.parse_args(_with_default_command(raw))
    configure_logging(verbose=args.verbose, quiet=args.quiet, environ=environ)
    handler = _HANDLERS[args.command]
    try:
        return asyncio.run(handler(args, environ))
    except ValidationError as exc:
        args.parser.print_usage(sys.stderr)
        logger.error("Error: %s", exc)
        return EXIT_USAGE
    except CaptureUnavailableError as exc:
        logger.error("Error: %s", exc)
        return EXIT_UNAVAILABLE
    except (OutputPathError, CaptureError, OSError) as exc:
        logger.error("Error: %s", exc)
        logger.debug("Recording failed", exc_info=True)
        return EXIT_FAILURE
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return EXIT_INTERRUPTED
    except Exception as exc:
        logger.error("Error: %s", summarise_exception(exc))
        logger.debug("Unexpected failure", exc_info=True)
        return EXIT_FAILURE


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point used by the ``recordit`` console script."""

    return run(argv)


__all__ = [
    "EXIT_FAILURE",
    "EXIT_INTERRUPTED",
    "EXIT_SUCCESS",
    "EXIT_UNAVAILABLE",
    "EXIT_USAGE",
    "ChunkReport",
    "build_configuration",
    "build_parser",
    "configure_logging",
    "main",
    "run",
]


if __name__ == "__main__":  # pragma: no cover - module behaviour
    sys.exit(main())
