"""
Lane-scoped single-flight control.

At most one run per lane is tracked as active. A newcomer is always admitted;
whether the run it displaces is cancelled depends on the newcomer's
``cancel_on_supersede`` flag. Admission never queues.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any

import structlog

from fanout_ci.domain.models import Run
from fanout_ci.utils.concurrency import CancellationToken


@dataclass(frozen=True, slots=True)
class AdmissionDecision:
    run_id: str
    lane: str
    superseded_run_id: str | None = None
    cancelled_superseded: bool = False


@dataclass(frozen=True, slots=True)
class LaneEntry:
    lane: str
    run_id: str
    cancelled: bool


class RunConcurrencyController:
    """Lane table ``lane -> Run`` plus one cancellation token per tracked run."""

    def __init__(self, *, logger: Any | None = None) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._lock = threading.Lock()
        self._lanes: dict[str, Run] = {}
        self._tokens: dict[str, CancellationToken] = {}

    def admit(self, run: Run) -> AdmissionDecision:
        """Register ``run`` as the newest run of its lane.

        When the displaced run is cancelled, its token is set before this returns,
        so every executor of that run observes it on its next check.
        """

        with self._lock:
            if run.id in self._tokens:
                raise ValueError(f"run {run.id} was already admitted")
            previous = self._lanes.get(run.lane)
            self._lanes[run.lane] = run
            self._tokens[run.id] = CancellationToken()

            cancelled = False
            if previous is not None and run.cancel_on_supersede:
                previous_token = self._tokens.get(previous.id)
                if previous_token is not None:
                    previous_token.cancel(f"superseded by {run.id}")
                    cancelled = True

        decision = AdmissionDecision(
            run_id=run.id,
            lane=run.lane,
            superseded_run_id=None if previous is None else previous.id,
            cancelled_superseded=cancelled,
        )
        self._logger.info(
            "control_plane_admission_decision",
            run_id=run.id,
            lane=run.lane,
            superseded_run_id=decision.superseded_run_id,
            cancelled_superseded=cancelled,
        )
        return decision

    def is_cancelled(self, run_id: str) -> bool:
        with self._lock:
            token = self._tokens.get(run_id)
        return token is not None and token.is_cancelled

    def token_for(self, run_id: str) -> CancellationToken:
        with self._lock:
            token = self._tokens.get(run_id)
        if token is None:
            raise KeyError(f"run {run_id} is not tracked by the controller")
        return token

    def release(self, run: Run) -> bool:
        """Forget ``run``; the lane entry is removed only if it still points at it.

        Returns ``True`` when the lane entry was removed.
        """

        with self._lock:
            self._tokens.pop(run.id, None)
            current = self._lanes.get(run.lane)
            removed = current is not None and current.id == run.id
            if removed:
                del self._lanes[run.lane]

        self._logger.debug(
            "control_plane_run_released", run_id=run.id, lane=run.lane, removed=removed
        )
        return removed

    def active_run(self, lane: str) -> Run | None:
        with self._lock:
            return self._lanes.get(lane)

    def snapshot(self) -> tuple[LaneEntry, ...]:
        with self._lock:
            return tuple(
                LaneEntry(
                    lane=lane,
                    run_id=run.id,
                    cancelled=run.id in self._tokens and self._tokens[run.id].is_cancelled,
                )
                for lane, run in sorted(self._lanes.items())
            )


__all__ = ["AdmissionDecision", "LaneEntry", "RunConcurrencyController"]
