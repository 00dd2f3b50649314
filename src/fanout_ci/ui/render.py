"""Plain-text rendering for the fanout CLI.

Respects the ``NO_COLOR`` environment variable and the ``--no-color`` flag.
Progress lines go to a separate stream so ``--json`` output on stdout stays
machine-readable.
"""

from __future__ import annotations

import os
import sys
from typing import TYPE_CHECKING, TextIO

from fanout_ci.observability.events import EventType, PipelineEvent

if TYPE_CHECKING:
    from collections.abc import Sequence

_STATUS_COLORS = {
    "passed": "32",
    "succeeded": "32",
    "failed": "31",
    "timed_out": "33",
    "cancelled": "35",
}


def _color_allowed(no_color_flag: bool, stream: TextIO) -> bool:
    if no_color_flag:
        return False
    if os.environ.get("NO_COLOR", ""):
        return False
    return hasattr(stream, "isatty") and stream.isatty()


class CLIRenderer:
    """Thin CLI output renderer producing deterministic plain text."""

    def __init__(
        self,
        *,
        no_color: bool = False,
        verbose: bool = False,
        stream: TextIO | None = None,
        progress_stream: TextIO | None = None,
    ) -> None:
        self.verbose = verbose
        self._stream = stream if stream is not None else sys.stdout
        self._progress = progress_stream if progress_stream is not None else sys.stderr
        self._color = _color_allowed(no_color, self._stream)

    def kv(self, key: str, value: object) -> None:
        self._write(f"{key}: {value}")

    def text(self, line: str) -> None:
        self._write(line)

    def section(self, title: str) -> None:
        self._write(f"\n{title}")

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            self._write(f"  {prefix}{entry}")

    def status(self, value: str) -> str:
        """Return ``value`` colorized by outcome when color is enabled."""

        code = _STATUS_COLORS.get(value)
        if not self._color or code is None:
            return value
        return f"\033[{code}m{value}\033[0m"

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        """Print rows as left-aligned columns under a dashed header rule."""

        if not rows:
            return
        widths = [max(len(str(cell)) for cell in column) for column in zip(headers, *rows)]
        if title:
            self.section(title)
        for cells in (headers, ["-" * width for width in widths], *rows):
            line = "  ".join(str(cell).ljust(width) for cell, width in zip(cells, widths))
            self._write(f"  {line.rstrip()}")

    def on_event(self, event: PipelineEvent) -> None:
        """``EventBus`` subscriber that prints one progress line per event."""

        line = _progress_line(event)
        if line is None:
            return
        if event.event_type is EventType.JOB_STARTED and not self.verbose:
            return
        print(line, file=self._progress, flush=True)

    def _write(self, line: str) -> None:
        print(line, file=self._stream)


def _progress_line(event: PipelineEvent) -> str | None:
    payload = event.payload
    kind = event.event_type
    if kind is EventType.RUN_ADMITTED:
        return f"[run] {event.run_id} admitted on lane {payload.get('lane')}"
    if kind is EventType.RUN_SUPERSEDED:
        return f"[run] {event.run_id} superseded by {payload.get('superseded_by')}"
    if kind is EventType.BUILD_STARTED:
        return "[build] started"
    if kind is EventType.BUILD_FINISHED:
        if payload.get("succeeded"):
            return "[build] finished"
        return f"[build] failed: {payload.get('error')}"
    if kind is EventType.ARTIFACT_PUBLISHED:
        return f"[artifact] published sha256={str(payload.get('sha256'))[:12]}"
    if kind is EventType.JOB_STARTED:
        return f"[job] {payload.get('job_name')} started"
    if kind is EventType.JOB_FINISHED:
        return f"[job] {payload.get('job_name')} {payload.get('status')}"
    if kind is EventType.COVERAGE_REPORTED:
        return f"[coverage] {payload.get('job_name')} -> {payload.get('location')}"
    if kind is EventType.RUN_FINISHED:
        return f"[run] {event.run_id} {payload.get('status')}"
    return None


def create_renderer(*, no_color: bool = False, verbose: bool = False) -> CLIRenderer:
    return CLIRenderer(no_color=no_color, verbose=verbose)


__all__ = ["CLIRenderer", "create_renderer"]
