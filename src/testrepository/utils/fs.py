"""
testrepository — filesystem utilities

File: src/testrepository/utils/fs.py
Last updated: 2026-10-19

Purpose
- Crash-safe writes for repository files that concurrent readers may open
  at any moment.

Functional requirements
- Atomic writes use temp files in the destination directory and replace in
  a single step.
- Exclusive publication never overwrites an existing name, so two writers
  racing for the same run id cannot both succeed.

Non-functional requirements
- Standard library only and cross-platform behavior where feasible.
"""

from __future__ import annotations

import contextlib
import os
import tempfile
from pathlib import Path

PathLike = str | os.PathLike[str]

__all__ = [
    "atomic_write",
    "publish_exclusive",
]


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """
    Atomically write ``data`` to ``path``.

    The write strategy is:
    1. create temp file in the same directory,
    2. write + flush + fsync file data,
    3. replace target via ``os.replace``.
    """

    target = Path(path)
    temp_path = _write_temp(target, data, encoding=encoding)
    try:
        os.replace(temp_path, target)
        _fsync_directory(target.parent)
    except Exception:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def publish_exclusive(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """
    Write ``data`` to a temp file and hard-link it to ``path``.

    Raises ``FileExistsError`` when ``path`` already exists; the target is
    never observed partially written.
    """

    target = Path(path)
    temp_path = _write_temp(target, data, encoding=encoding)
    try:
        os.link(temp_path, target)
        _fsync_directory(target.parent)
    finally:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)


def _write_temp(target: Path, data: bytes | str, *, encoding: str) -> Path:
    target_parent = target.parent.resolve(strict=True)
    if not target_parent.is_dir():
        raise NotADirectoryError(f"{target_parent!s} is not a directory")

    fd, temp_name = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=".tmp",
        dir=str(target_parent),
    )
    temp_path = Path(temp_name)

    try:
        if isinstance(data, bytes):
            with os.fdopen(fd, "wb") as file_handle:
                file_handle.write(data)
                file_handle.flush()
                os.fsync(file_handle.fileno())
        else:
            with os.fdopen(fd, "w", encoding=encoding, newline="") as file_handle:
                file_handle.write(data)
                file_handle.flush()
                os.fsync(file_handle.fileno())
    except Exception:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise
    return temp_path


def _fsync_directory(path: Path) -> None:
    """
    Best-effort directory fsync for metadata durability after a rename.

    Some platforms/filesystems do not support fsync on directories.
    """

    if os.name == "nt":
        return

    flags = os.O_RDONLY
    if hasattr(os, "O_DIRECTORY"):
        flags |= os.O_DIRECTORY

    try:
        dir_fd = os.open(path, flags)
    except OSError:
        return

    try:
        os.fsync(dir_fd)
    except OSError:
        return
    finally:
        os.close(dir_fd)
