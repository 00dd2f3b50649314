"""Sortable identifiers for runs and published artifacts: ``<prefix>-<ULID>``."""

from __future__ import annotations

import re
import secrets
import time
from collections.abc import Callable
from typing import Final

_RUN_PREFIX: Final[str] = "run"
_ARTIFACT_PREFIX: Final[str] = "art"

_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1
# First character is at most "7": 26 base32 digits carry 130 bits, a ULID only 128.
_ID_PATTERN: Final[re.Pattern[str]] = re.compile(r"(?P<prefix>[a-z]+)-[0-7][0-9A-HJKMNP-TV-Z]{25}")


def _new_id(
    prefix: str,
    *,
    timestamp_ms: int | None = None,
    randbytes: Callable[[int], bytes] = secrets.token_bytes,
) -> str:
    millis = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if not 0 <= millis <= _MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms out of range: {millis}")
    entropy = randbytes(10)
    if len(entropy) != 10:
        raise ValueError("randbytes must return exactly 10 bytes")
    value = (millis << 80) | int.from_bytes(entropy, "big")
    digits = [_ALPHABET[(value >> shift) & 0x1F] for shift in range(125, -1, -5)]
    return f"{prefix}-{''.join(digits)}"


def _check(value: str, prefix: str) -> None:
    match = _ID_PATTERN.fullmatch(value) if isinstance(value, str) else None
    if match is None:
        raise ValueError(f"malformed {prefix} id: {value!r}")
    if match["prefix"] != prefix:
        raise ValueError(f"expected a '{prefix}-' id, got {value!r}")


def generate_run_id(
    *, timestamp_ms: int | None = None, randbytes: Callable[[int], bytes] = secrets.token_bytes
) -> str:
    return _new_id(_RUN_PREFIX, timestamp_ms=timestamp_ms, randbytes=randbytes)


def generate_artifact_id(
    *, timestamp_ms: int | None = None, randbytes: Callable[[int], bytes] = secrets.token_bytes
) -> str:
    return _new_id(_ARTIFACT_PREFIX, timestamp_ms=timestamp_ms, randbytes=randbytes)


def validate_run_id(value: str) -> None:
    _check(value, _RUN_PREFIX)


def validate_artifact_id(value: str) -> None:
    _check(value, _ARTIFACT_PREFIX)


__all__ = [
    "generate_artifact_id",
    "generate_run_id",
    "validate_artifact_id",
    "validate_run_id",
]
