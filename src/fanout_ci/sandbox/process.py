"""Async subprocess execution shared by the build recipe and the job sandbox."""

from __future__ import annotations

import asyncio
import os
import time
from collections.abc import Mapping, Sequence
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path

from fanout_ci.observability.logging import redact_text

_DEFAULT_TAIL_CHARS = 8000


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Outcome of one subprocess; ``output_tail`` holds merged stdout+stderr."""

    argv: tuple[str, ...]
    returncode: int | None
    output_tail: str
    duration_ms: float
    timed_out: bool = False
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return not self.timed_out and self.error is None and self.returncode == 0

    def describe_failure(self) -> str:
        command = " ".join(self.argv[:2])
        if self.error is not None:
            return f"{command}: {self.error}"
        if self.timed_out:
            return f"{command}: timed out after {self.duration_ms / 1000.0:.1f}s"
        return f"{command}: exited with status {self.returncode}"


def render_argv(template: Sequence[str], values: Mapping[str, str]) -> tuple[str, ...]:
    """Substitute ``{placeholder}`` fields in every argv element."""

    rendered: list[str] = []
    for part in template:
        try:
            rendered.append(part.format_map(values))
        except KeyError as exc:
            raise ValueError(f"unknown placeholder {exc.args[0]!r} in {part!r}") from exc
    normalized = tuple(item for item in rendered if item.strip())
    if not normalized:
        raise ValueError("command must not be empty")
    return normalized


def build_environment(
    *,
    inherit_host_env: bool,
    overrides: Mapping[str, str] | None = None,
) -> dict[str, str]:
    if inherit_host_env:
        merged = dict(os.environ)
    else:
        merged = {}
        host_path = os.environ.get("PATH")
        if host_path:
            merged["PATH"] = host_path
    if overrides is not None:
        merged.update(overrides)
    return merged


async def run_command(
    argv: Sequence[str],
    *,
    cwd: Path | str | None = None,
    env: Mapping[str, str] | None = None,
    timeout_seconds: float | None = None,
    max_tail_chars: int = _DEFAULT_TAIL_CHARS,
) -> CommandResult:
    """Run ``argv`` to completion.

    Cancelling the awaiting task kills the process before the cancellation
    propagates, so a cancelled job never leaves a container build running.
    """

    started_ns = time.monotonic_ns()
    parsed = tuple(argv)
    try:
        process = await asyncio.create_subprocess_exec(
            *parsed,
            cwd=None if cwd is None else str(cwd),
            env=None if env is None else dict(env),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as exc:
        return CommandResult(
            argv=parsed,
            returncode=None,
            output_tail="",
            duration_ms=_elapsed_ms(started_ns),
            error=redact_text(str(exc)),
        )

    timed_out = False
    try:
        if timeout_seconds is None:
            stdout_bytes, _ = await process.communicate()
        else:
            stdout_bytes, _ = await asyncio.wait_for(
                process.communicate(), timeout=timeout_seconds
            )
    except TimeoutError:
        timed_out = True
        with suppress(ProcessLookupError):
            process.kill()
        stdout_bytes, _ = await process.communicate()
    except asyncio.CancelledError:
        with suppress(ProcessLookupError):
            process.kill()
        with suppress(Exception):
            await process.wait()
        raise

    return CommandResult(
        argv=parsed,
        returncode=None if timed_out else process.returncode,
        output_tail=redact_text(_tail(stdout_bytes or b"", max_tail_chars)),
        duration_ms=_elapsed_ms(started_ns),
        timed_out=timed_out,
    )


def _tail(data: bytes, max_chars: int) -> str:
    text = data.decode("utf-8", errors="replace")
    if len(text) <= max_chars:
        return text
    return text[-max_chars:]


def _elapsed_ms(started_ns: int) -> float:
    return (time.monotonic_ns() - started_ns) / 1_000_000.0


__all__ = ["CommandResult", "build_environment", "render_argv", "run_command"]
