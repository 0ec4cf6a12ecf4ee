"""Destination path resolution for recordings and photos."""
from __future__ import annotations

import logging
import os
import tempfile
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)


class OutputPathError(RuntimeError):
    """Base class for output destination failures."""


class OutputExistsError(OutputPathError):
    """Raised when the resolved destination already exists and overwrite is off."""


class OutputMustBeDirectoryError(OutputPathError):
    """Raised when split recordings are pointed at something other than a directory."""


def _new_uuid() -> str:
    return str(uuid.uuid4()).upper()


def _sanitise_filename(name: str) -> str:
    cleaned = name.replace("/", "-")
    if os.sep != "/":
        cleaned = cleaned.replace(os.sep, "-")
    if os.altsep and os.altsep != "/":
        cleaned = cleaned.replace(os.altsep, "-")
    return cleaned


def format_filename(
    pattern: str,
    *,
    when: datetime,
    unique_id: str,
    chunk_index: int | None,
    prefix: str,
) -> str:
    """Expand *pattern* into a filename.

    The pattern goes through ``strftime`` first, then ``{uuid}`` and
    ``{chunk}`` placeholders are substituted. An empty expansion falls back to
    ``<prefix>-<uuid>``.
    """

    try:
        base = when.strftime(pattern)
    except ValueError:
        logger.debug("Unable to expand filename pattern %r", pattern, exc_info=True)
        base = ""
    if not base:
        return f"{prefix}-{unique_id}"
    result = base.replace("{uuid}", unique_id)
    if chunk_index is not None:
        result = result.replace("{chunk}", str(chunk_index))
    return _sanitise_filename(result)


def _has_extension(path: Path) -> bool:
    return bool(path.suffix) and path.suffix != "."


def _ensure_extension(path: Path, extension: str) -> Path:
    if _has_extension(path):
        return path
    return path.with_name(f"{path.name}.{extension}")


def _looks_like_directory(spec: str) -> bool:
    return spec.endswith("/") or spec.endswith(os.sep)


@dataclass(slots=True)
class OutputPathResolver:
    """Compute the destination path for each recording chunk.

    ``output`` may be ``None`` (use the system temporary directory), an
    existing directory, a path ending with a separator (created on demand),
    an existing file, or a new file path. Filenames generated inside a
    directory come from the name template.
    """

    extension: str
    prefix: str = "recordit"
    overwrite: bool = False
    clock: Callable[[], datetime] = field(default=datetime.now)
    uuid_factory: Callable[[], str] = field(default=_new_uuid)
    temp_dir: Path | None = None

    def __post_init__(self) -> None:
        extension = self.extension.strip().lstrip(".")
        if not extension:
            raise ValueError("extension must not be empty")
        self.extension = extension

    def default_pattern(self, chunk_index: int | None) -> str:
        if chunk_index is None:
            return f"{self.prefix}-%Y%m%d-%H%M%S"
        return f"{self.prefix}-%Y%m%d-%H%M%S-{{chunk}}"

    def _generate_name(self, pattern: str, chunk_index: int | None) -> str:
        filename = format_filename(
            pattern,
            when=self.clock(),
            unique_id=self.uuid_factory(),
            chunk_index=chunk_index,
            prefix=self.prefix,
        )
        return _ensure_extension(Path(filename), self.extension).name

    # ------------------------------ operations -----------------------------
    def resolve(
        self,
        output: str | os.PathLike[str] | None,
        name_template: str | None = None,
        *,
        chunk_index: int | None = None,
        require_directory: bool = False,
    ) -> Path:
        """Return the destination for the next file without touching existing files."""

        pattern = name_template or self.default_pattern(chunk_index)

        if output is None:
            directory = self.temp_dir if self.temp_dir is not None else Path(tempfile.gettempdir())
            return directory / self._generate_name(pattern, chunk_index)

        spec = os.fspath(output)
        target = Path(spec).expanduser()

        if target.is_dir():
            return target / self._generate_name(pattern, chunk_index)

        if _looks_like_directory(spec):
            if target.exists():
                raise OutputMustBeDirectoryError(f"Output {spec} is not a directory.")
            target.mkdir(parents=True, exist_ok=True)
            return target / self._generate_name(pattern, chunk_index)

        if target.exists():
            if require_directory:
                raise OutputMustBeDirectoryError("Output must be a directory when using --split.")
            return _ensure_extension(target, self.extension)

        if require_directory:
            if _has_extension(target):
                raise OutputMustBeDirectoryError("Output must be a directory when using --split.")
            target.mkdir(parents=True, exist_ok=True)
            logger.debug("Created output directory %s", target)
            return target / self._generate_name(pattern, chunk_index)

        return _ensure_extension(target, self.extension)

    def prepare(self, path: Path) -> Path:
        """Apply the overwrite policy to *path* before capture starts."""

        if not path.exists() and not path.is_symlink():
            return path
        if path.is_dir():
            raise OutputExistsError(f"Output path {path} is an existing directory.")
        if not self.overwrite:
            raise OutputExistsError("Output file already exists. Use --overwrite to replace it.")
        logger.info("Removing existing output file %s", path)
        path.unlink()
        return path

    def resolve_and_prepare(
        self,
        output: str | os.PathLike[str] | None,
        name_template: str | None = None,
        *,
        chunk_index: int | None = None,
        require_directory: bool = False,
    ) -> Path:
        path = self.resolve(
            output,
            name_template,
            chunk_index=chunk_index,
            require_directory=require_directory,
        )
        return self.prepare(path)


__all__ = [
    "OutputExistsError",
    "OutputMustBeDirectoryError",
    "OutputPathError",
    "OutputPathResolver",
    "format_filename",
]
