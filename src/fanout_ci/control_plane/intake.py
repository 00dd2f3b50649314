"""
Long-lived trigger intake behind ``fanout serve``.

Each input line is one JSON trigger, for example::

    {"event": "pull_request", "ref": "refs/pull/7/merge", "sha": "ab12", "actor": "ci"}

Every trigger becomes a run on the same ``Orchestrator``, so a newer trigger on
a lane supersedes the run already in flight there. Input ends at EOF; intake
then waits for the runs still in flight.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any, Protocol

import structlog

from fanout_ci.control_plane.orchestrator import Orchestrator
from fanout_ci.domain.errors import TriggerNotAdmittedError
from fanout_ci.domain.models import RunOutcome, TriggerMetadata

_TRIGGER_FIELDS = frozenset({"event", "kind", "ref", "sha", "actor"})


class LineSource(Protocol):
    def readline(self) -> str: ...


def parse_trigger_line(line: str) -> TriggerMetadata:
    """Parse one intake line; ``event`` and ``kind`` are accepted as synonyms."""

    try:
        payload = json.loads(line)
    except json.JSONDecodeError as exc:
        raise ValueError(f"trigger line is not JSON: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise ValueError("trigger line must be a JSON object")
    unknown = sorted(set(payload) - _TRIGGER_FIELDS)
    if unknown:
        raise ValueError(f"unknown trigger field(s): {', '.join(unknown)}")
    if "event" in payload and "kind" in payload and payload["event"] != payload["kind"]:
        raise ValueError("'event' and 'kind' disagree")
    return TriggerMetadata(
        kind=payload.get("event", payload.get("kind")),
        ref=payload.get("ref"),
        sha=payload.get("sha"),
        actor=payload.get("actor"),
    )


async def serve_triggers(
    orchestrator: Orchestrator,
    source: LineSource,
    *,
    report: Callable[[dict[str, Any]], None],
    logger: Any | None = None,
) -> list[RunOutcome]:
    """Start a run per trigger line until EOF and return the finished outcomes.

    ``report`` receives one JSON-ready dict per line: the run outcome, a
    not-admitted notice, or the reason a line was rejected.
    """

    log = logger if logger is not None else structlog.get_logger(__name__)
    outcomes: list[RunOutcome] = []
    in_flight: list[asyncio.Task[None]] = []

    async def _run(trigger: TriggerMetadata) -> None:
        try:
            outcome = await orchestrator.execute(trigger)
        except TriggerNotAdmittedError as exc:
            report({"admitted": False, "trigger": trigger.to_dict(), "reason": str(exc)})
            return
        outcomes.append(outcome)
        report({"admitted": True, **outcome.to_dict()})

    line_number = 0
    while True:
        # Blocking reads happen off the loop so runs keep progressing meanwhile.
        line = await asyncio.to_thread(source.readline)
        if not line:
            break
        line_number += 1
        if not line.strip():
            continue
        try:
            trigger = parse_trigger_line(line)
        except ValueError as exc:
            log.warning("trigger_line_rejected", line=line_number, error=str(exc))
            report({"line": line_number, "error": str(exc)})
            continue
        log.info("trigger_received", line=line_number, trigger_kind=trigger.kind, ref=trigger.ref)
        in_flight.append(asyncio.create_task(_run(trigger)))
        # Let the new run reach lane admission before the next line is read.
        await asyncio.sleep(0)

    if in_flight:
        await asyncio.gather(*in_flight)
    return outcomes


__all__ = ["parse_trigger_line", "serve_triggers"]
