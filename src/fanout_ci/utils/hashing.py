"""SHA-256 digests of published artifacts."""

from __future__ import annotations

import hashlib
import os
from pathlib import Path


def sha256_file(path: str | os.PathLike[str]) -> tuple[str, int]:
    """Return ``(hex digest, size in bytes)``, reading the file in 1 MiB chunks."""

    digest = hashlib.sha256()
    size = 0
    with Path(path).open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
            size += len(chunk)
    return digest.hexdigest(), size


__all__ = ["sha256_file"]
