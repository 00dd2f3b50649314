"""Control plane: admission, lane single-flight, job execution and run orchestration."""

from fanout_ci.control_plane.admission import (
    resolve_cancel_on_supersede,
    resolve_lane,
    should_admit,
    trigger_from_environ,
)
from fanout_ci.control_plane.concurrency import (
    AdmissionDecision,
    LaneEntry,
    RunConcurrencyController,
)
from fanout_ci.control_plane.executor import JobExecutor
from fanout_ci.control_plane.intake import parse_trigger_line, serve_triggers
from fanout_ci.control_plane.orchestrator import Orchestrator, build_orchestrator_from_config

__all__ = [
    "AdmissionDecision",
    "JobExecutor",
    "LaneEntry",
    "Orchestrator",
    "RunConcurrencyController",
    "build_orchestrator_from_config",
    "parse_trigger_line",
    "resolve_cancel_on_supersede",
    "resolve_lane",
    "serve_triggers",
    "should_admit",
    "trigger_from_environ",
]
