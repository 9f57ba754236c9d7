"""Guarded file I/O for entity files.

Every read and write of a component, pipeline, settings or registry file goes
through this module: paths are checked for traversal, sizes are bounded, and
writes land via a temp file in the target directory followed by a rename.
"""

from __future__ import annotations

import contextlib
import logging
import os
import posixpath
import tempfile
from typing import TYPE_CHECKING

from pluqqy.exceptions import (
    FileTooLargeError,
    InvalidPathError,
    NotFoundError,
    PluqqyError,
    WriteError,
)

if TYPE_CHECKING:
    from pathlib import Path, PurePath

__all__ = [
    "MAX_FILE_SIZE",
    "TEMP_PREFIX",
    "clean_path",
    "read_bounded",
    "read_text_bounded",
    "validate_path",
    "write_atomic",
]

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 10 * 1024 * 1024
TEMP_PREFIX = ".tmp-"
DEFAULT_MODE = 0o644


def clean_path(path: str | PurePath) -> str:
    """Lexically normalize a path to forward-slash form.

    Collapses duplicate separators and ``.`` segments and resolves ``a/../b``
    pairs without touching the filesystem. Leading ``..`` segments survive.
    """
    text = str(path).replace("\\", "/")
    if not text:
        return "."
    return posixpath.normpath(text)


def validate_path(path: str | PurePath, *, allow_absolute: bool = False) -> str:
    """Clean ``path`` and reject it if it could escape a trusted root.

    Args:
        path: Path relative to some trusted root.
        allow_absolute: Accept absolute paths (used for caller-chosen output
            files, never for entity paths).

    Returns:
        The cleaned path.

    Raises:
        InvalidPathError: If the cleaned path has a ``..`` segment, or is
            absolute while ``allow_absolute`` is false.
    """
    cleaned = clean_path(path)
    if ".." in cleaned.split("/"):
        raise InvalidPathError(f"Invalid path {str(path)!r}: contains directory traversal")
    if not allow_absolute and posixpath.isabs(cleaned):
        raise InvalidPathError(f"Invalid path {str(path)!r}: absolute paths are not allowed")
    return cleaned


def read_bounded(path: Path, max_size: int = MAX_FILE_SIZE) -> bytes:
    """Read a file after checking its size against ``max_size``.

    Raises:
        NotFoundError: If the file does not exist.
        FileTooLargeError: If the file is larger than ``max_size`` bytes.
        PluqqyError: If the file exists but cannot be read.
    """
    try:
        size = path.stat().st_size
    except FileNotFoundError as e:
        raise NotFoundError(f"File not found: {path}") from e
    if size > max_size:
        raise FileTooLargeError(
            f"File size {size} bytes exceeds maximum allowed size of {max_size} bytes: {path}"
        )
    try:
        return path.read_bytes()
    except FileNotFoundError as e:
        raise NotFoundError(f"File not found: {path}") from e
    except OSError as e:
        logger.error("Failed to read %s: %s", path, e)
        raise PluqqyError(f"Failed to read {path}: {e}") from e


def read_text_bounded(path: Path, max_size: int = MAX_FILE_SIZE) -> str:
    """Read a UTF-8 file with the same guarantees as :func:`read_bounded`."""
    return read_bounded(path, max_size).decode("utf-8")


def write_atomic(
    path: Path,
    data: bytes | str,
    mode: int = DEFAULT_MODE,
    max_size: int = MAX_FILE_SIZE,
) -> None:
    """Replace ``path`` with ``data`` so readers never observe a torn file.

    The payload goes to a ``.tmp-*`` file in the target's own directory
    (rename is only atomic within one filesystem), is fsynced, chmodded and
    then renamed over the target. The temp file is removed on every failure
    path, leaving the previous content of ``path`` untouched.

    Raises:
        FileTooLargeError: If ``data`` is larger than ``max_size`` bytes.
        WriteError: If any stage of the write fails.
    """
    payload = data.encode("utf-8") if isinstance(data, str) else data
    if len(payload) > max_size:
        raise FileTooLargeError(
            f"Content size {len(payload)} bytes exceeds maximum allowed size "
            f"of {max_size} bytes: {path}"
        )

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=TEMP_PREFIX)
    except OSError as e:
        logger.error("Failed to create temp file for %s: %s", path, e)
        raise WriteError(f"Failed to create temp file for {path}: {e}") from e

    try:
        try:
            view = memoryview(payload)
            while view:
                view = view[os.write(fd, view) :]
            os.fsync(fd)
        finally:
            os.close(fd)
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except OSError as e:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)
        logger.error("Failed to write %s: %s", path, e)
        raise WriteError(f"Failed to write {path}: {e}") from e

    logger.debug("Wrote %d bytes to %s", len(payload), path)
