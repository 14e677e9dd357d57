"""
merge-coordinator: filesystem utilities

Purpose
- Crash-safe replacement of the queue document: a reader sees either the old
  document or the new one, never a torn write.
"""

from __future__ import annotations

import contextlib
import os
import tempfile
from pathlib import Path

PathLike = str | os.PathLike[str]

__all__ = [
    "atomic_write_text",
    "read_text_or_none",
]


def atomic_write_text(path: PathLike, text: str, *, encoding: str = "utf-8") -> None:
    """
    Replace ``path`` with ``text`` in one step.

    The temp file lives in the destination directory so ``os.replace`` stays a
    same-filesystem rename; data and directory entry are fsynced.
    """

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    directory = target.parent.resolve(strict=True)

    fd, temp_name = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=".tmp",
        dir=str(directory),
    )
    temp_path = Path(temp_name)
    try:
        with os.fdopen(fd, "w", encoding=encoding) as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, target)
        _fsync_directory(directory)
    except BaseException:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def read_text_or_none(path: PathLike, *, encoding: str = "utf-8") -> str | None:
    """Return file contents, or ``None`` when the file does not exist yet."""

    try:
        return Path(path).read_text(encoding=encoding)
    except FileNotFoundError:
        return None


def _fsync_directory(path: Path) -> None:
    # Not every platform can fsync a directory handle.
    if os.name == "nt":
        return

    flags = os.O_RDONLY | getattr(os, "O_DIRECTORY", 0)
    try:
        dir_fd = os.open(path, flags)
    except OSError:
        return
    try:
        with contextlib.suppress(OSError):
            os.fsync(dir_fd)
    finally:
        os.close(dir_fd)
