"""Runs one matrix job against the run's artifact and classifies the outcome."""

from __future__ import annotations

import asyncio
import time
from typing import Any

import structlog

from fanout_ci.domain.errors import (
    ArtifactNotFoundError,
    JobCancelled,
    JobExecutionFailure,
    JobTimeout,
)
from fanout_ci.domain.models import ArtifactHandle, CoverageReport, JobResult, JobSpec, JobStatus
from fanout_ci.observability.events import EventBus, EventType
from fanout_ci.observability.logging import correlation_scope
from fanout_ci.persistence.artifact_store import ArtifactStore
from fanout_ci.sandbox.runtime import ExecutionSandbox, SandboxOutcome
from fanout_ci.utils.concurrency import CancellationToken, RaceOutcome, race_with_deadline


class JobExecutor:
    """Race sandbox completion against the job timeout and the run's cancel token.

    Whichever fires first decides the status; only a job that ran to completion
    carries coverage. Failures never escape ``run``: they become the result.
    """

    def __init__(
        self,
        *,
        store: ArtifactStore,
        sandbox: ExecutionSandbox,
        events: EventBus | None = None,
        logger: Any | None = None,
    ) -> None:
        self._store = store
        self._sandbox = sandbox
        self._events = events
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def run(
        self,
        job_spec: JobSpec,
        artifact_handle: ArtifactHandle,
        cancel_token: CancellationToken,
    ) -> JobResult:
        with correlation_scope(run_id=artifact_handle.run_id, job_name=job_spec.name):
            started = time.monotonic()
            self._emit(EventType.JOB_STARTED, artifact_handle.run_id, job_spec, {})
            result = await self._run(job_spec, artifact_handle, cancel_token, started)
            self._logger.info(
                "job_finished",
                run_id=artifact_handle.run_id,
                job_name=job_spec.name,
                status=result.status.value,
                duration_ms=round(result.duration_ms, 3),
                has_coverage=result.coverage is not None,
            )
            self._emit(
                EventType.JOB_FINISHED,
                artifact_handle.run_id,
                job_spec,
                {
                    "status": result.status.value,
                    "duration_ms": round(result.duration_ms, 3),
                    "error": result.error,
                },
            )
            return result

    async def _run(
        self,
        job_spec: JobSpec,
        artifact_handle: ArtifactHandle,
        cancel_token: CancellationToken,
        started: float,
    ) -> JobResult:
        if cancel_token.is_cancelled:
            return _result(job_spec, JobStatus.CANCELLED, started, error=_cancelled(job_spec))

        try:
            artifact_path = await asyncio.to_thread(self._store.fetch, artifact_handle)
        except ArtifactNotFoundError as exc:
            if cancel_token.is_cancelled:
                return _result(job_spec, JobStatus.CANCELLED, started, error=_cancelled(job_spec))
            return _result(job_spec, JobStatus.FAILED, started, error=str(exc))

        race = await race_with_deadline(
            self._sandbox.execute(artifact_path, job_spec.name),
            job_spec.timeout_seconds,
            cancel_token,
        )

        if race.outcome is RaceOutcome.CANCELLED:
            return _result(job_spec, JobStatus.CANCELLED, started, error=_cancelled(job_spec))
        if race.outcome is RaceOutcome.TIMED_OUT:
            error = str(JobTimeout(job_spec.name, job_spec.timeout_seconds))
            return _result(job_spec, JobStatus.TIMED_OUT, started, error=error)

        if race.error is not None:
            if isinstance(race.error, JobExecutionFailure):
                error = str(race.error)
            elif isinstance(race.error, Exception):
                error = str(JobExecutionFailure(job_spec.name, f"sandbox error: {race.error!r}"))
            else:
                raise race.error
            self._logger.warning(
                "job_sandbox_crashed",
                job_name=job_spec.name,
                error_type=race.error.__class__.__name__,
            )
            return _result(job_spec, JobStatus.FAILED, started, error=error)

        outcome = race.value
        if not isinstance(outcome, SandboxOutcome):
            error = f"{job_spec.name}: sandbox returned no outcome"
            return _result(job_spec, JobStatus.FAILED, started, error=error)

        coverage = None
        if outcome.coverage is not None:
            coverage = CoverageReport(job_name=job_spec.name, payload=outcome.coverage)
        if outcome.passed:
            return _result(job_spec, JobStatus.PASSED, started, coverage=coverage)
        error = str(
            JobExecutionFailure(job_spec.name, f"test failed with exit status {outcome.returncode}")
        )
        return _result(job_spec, JobStatus.FAILED, started, coverage=coverage, error=error)

    def _emit(
        self,
        event_type: EventType,
        run_id: str,
        job_spec: JobSpec,
        payload: dict[str, object],
    ) -> None:
        if self._events is None:
            return
        self._events.emit(
            event_type,
            {"job_name": job_spec.name, "group": job_spec.group, **payload},
            run_id=run_id,
        )


def _cancelled(job_spec: JobSpec) -> str:
    return str(JobCancelled(job_spec.name, "run was superseded"))


def _result(
    job_spec: JobSpec,
    status: JobStatus,
    started: float,
    *,
    coverage: CoverageReport | None = None,
    error: str | None = None,
) -> JobResult:
    return JobResult(
        job_name=job_spec.name,
        group=job_spec.group,
        status=status,
        required=job_spec.required,
        coverage=coverage,
        error=error,
        duration_ms=(time.monotonic() - started) * 1000.0,
    )


__all__ = ["JobExecutor"]
