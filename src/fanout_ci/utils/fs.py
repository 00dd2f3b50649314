"""
Filesystem helpers for publishing files atomically and deleting inside a root.

Writes are staged in a temp file next to the target and renamed into place, so
a reader sees either the old file or the complete new one.
"""

from __future__ import annotations

import contextlib
import os
import re
import shutil
import tempfile
from pathlib import Path

PathLike = str | os.PathLike[str]

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    payload = data.encode(encoding) if isinstance(data, str) else data
    target = Path(path)
    fd, staged = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(staged, target)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(staged)
        raise


def atomic_copy(source: PathLike, destination: PathLike) -> None:
    """Copy ``source`` next to ``destination`` under a temp name, then rename."""

    source_path, target = Path(source), Path(destination)
    if not source_path.is_file():
        raise FileNotFoundError(f"{source_path} is not a file")
    fd, staged = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
    try:
        with os.fdopen(fd, "wb") as writer, source_path.open("rb") as reader:
            shutil.copyfileobj(reader, writer, 1024 * 1024)
            writer.flush()
            os.fsync(writer.fileno())
        os.replace(staged, target)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(staged)
        raise


def move_file(source: PathLike, destination: PathLike) -> bool:
    """Move ``source`` to ``destination`` atomically.

    A plain rename when both sit on one filesystem; otherwise an atomic copy
    followed by removing the source. Returns ``True`` when it was a rename.
    """

    source_path, target = Path(source), Path(destination)
    if not source_path.is_file():
        raise FileNotFoundError(f"{source_path} is not a file")
    if _same_filesystem(source_path, target.parent):
        os.replace(source_path, target)
        return True
    atomic_copy(source_path, target)
    source_path.unlink()
    return False


def safe_delete(path: PathLike, root: PathLike) -> None:
    """
    Delete ``path`` (file or tree) only if it lies inside ``root``.

    Symlinks are unlinked, never followed.
    """

    workspace = Path(root).resolve(strict=True)
    target = Path(path)
    if not _inside(target.parent.resolve(strict=True) / target.name, workspace):
        raise ValueError(f"refusing to delete path outside root: {target}")
    if target.is_symlink():
        target.unlink()
    elif not _inside(target.resolve(strict=True), workspace):
        raise ValueError(f"refusing to delete path outside root: {target}")
    elif target.is_dir():
        shutil.rmtree(target)
    else:
        target.unlink()


def safe_name(value: str) -> str:
    """Map a label such as ``tests::neon::foo`` to a name usable as a file name."""

    collapsed = _UNSAFE_NAME_CHARS.sub("_", value.strip()).strip("._")
    if not collapsed:
        raise ValueError(f"cannot derive a safe file name from {value!r}")
    return collapsed


def _same_filesystem(path: Path, directory: Path) -> bool:
    return path.stat().st_dev == directory.stat().st_dev


def _inside(child: Path, parent: Path) -> bool:
    return child == parent or parent in child.parents


__all__ = ["atomic_copy", "atomic_write", "move_file", "safe_delete", "safe_name"]
