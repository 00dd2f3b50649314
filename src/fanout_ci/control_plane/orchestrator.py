"""
Run orchestration: one build, one published artifact, many isolated jobs.

``Orchestrator.execute`` drives a single run end to end:

1. gate the trigger, create the run and admit it on its lane;
2. build (cancellable by supersession, bounded by ``build.timeout_seconds``);
3. publish the artifact and expand the matrix for the trigger;
4. dispatch every job concurrently against the run's cancellation token;
5. stream each result to the coverage aggregator as it completes;
6. settle the terminal status;
7. archive: release the lane entry, revoke the artifact and discard the build
   workspace, whatever the outcome.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Collection, Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog

from fanout_ci.constants import DEFAULT_LANE_TEMPLATE, DEFAULT_PIPELINE_NAME, PULL_REQUEST_TRIGGER
from fanout_ci.control_plane.admission import (
    resolve_cancel_on_supersede,
    resolve_lane,
    should_admit,
)
from fanout_ci.control_plane.concurrency import RunConcurrencyController
from fanout_ci.control_plane.executor import JobExecutor
from fanout_ci.domain.errors import (
    ArtifactStoreError,
    BuildFailure,
    ReportingFailure,
    TriggerNotAdmittedError,
)
from fanout_ci.domain.ids import generate_run_id
from fanout_ci.domain.models import (
    ArtifactHandle,
    BuildOutput,
    JobResult,
    JobSpec,
    MatrixDeclaration,
    Run,
    RunError,
    RunOutcome,
    RunStatus,
    TriggerMetadata,
)
from fanout_ci.observability.events import EventBus, EventType
from fanout_ci.observability.logging import correlation_scope
from fanout_ci.persistence.artifact_store import ArtifactStore
from fanout_ci.planning.matrix import expand, load_matrix
from fanout_ci.reporting.coverage import (
    CommandCoverageSink,
    CoverageAggregator,
    CoverageSink,
    DirectoryCoverageSink,
)
from fanout_ci.sandbox.build import BuildRecipe, CommandBuildRecipe
from fanout_ci.sandbox.runtime import CommandSandbox, ExecutionSandbox
from fanout_ci.utils.concurrency import (
    CancellationToken,
    RaceOutcome,
    WorkerPool,
    race_with_deadline,
)


class Orchestrator:
    """Executes runs for one event loop.

    Keep a single instance for the life of the process: lane single-flight only
    holds between runs admitted by the same controller.
    """

    def __init__(
        self,
        *,
        declaration: MatrixDeclaration,
        build_recipe: BuildRecipe,
        sandbox: ExecutionSandbox,
        store: ArtifactStore,
        sink: CoverageSink,
        controller: RunConcurrencyController | None = None,
        events: EventBus | None = None,
        pipeline_name: str = DEFAULT_PIPELINE_NAME,
        lane_template: str = DEFAULT_LANE_TEMPLATE,
        admitted_triggers: Collection[str] = (PULL_REQUEST_TRIGGER,),
        cancel_on_supersede_triggers: Collection[str] = (PULL_REQUEST_TRIGGER,),
        build_timeout_seconds: float = 3600.0,
        max_parallel_jobs: int = 0,
        clock: Callable[[], datetime] | None = None,
        logger: Any | None = None,
    ) -> None:
        if build_timeout_seconds <= 0:
            raise ValueError("build_timeout_seconds must be > 0")
        if max_parallel_jobs < 0:
            raise ValueError("max_parallel_jobs must be >= 0")
        self._declaration = declaration
        self._build_recipe = build_recipe
        self._store = store
        self._sink = sink
        self._controller = controller if controller is not None else RunConcurrencyController()
        self._events = events
        self._pipeline_name = pipeline_name
        self._lane_template = lane_template
        self._admitted_triggers = frozenset(admitted_triggers)
        self._cancel_triggers = frozenset(cancel_on_supersede_triggers)
        self._build_timeout_seconds = float(build_timeout_seconds)
        self._max_parallel_jobs = max_parallel_jobs
        self._clock = clock if clock is not None else _utc_now
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._executor = JobExecutor(store=store, sandbox=sandbox, events=events, logger=logger)

    @property
    def controller(self) -> RunConcurrencyController:
        return self._controller

    @property
    def declaration(self) -> MatrixDeclaration:
        return self._declaration

    def plan(self, trigger: TriggerMetadata | None = None) -> tuple[JobSpec, ...]:
        return expand(self._declaration, trigger)

    async def execute(self, trigger: TriggerMetadata, *, run_id: str | None = None) -> RunOutcome:
        """Run the pipeline for ``trigger``.

        Raises ``TriggerNotAdmittedError`` before any run exists when the trigger
        is gated out. ``run_id`` lets callers pick the id up front (the CLI names
        the log directory after it).
        """

        if not should_admit(trigger, self._admitted_triggers):
            self._logger.info("trigger_not_admitted", trigger_kind=trigger.kind, ref=trigger.ref)
            raise TriggerNotAdmittedError(trigger.kind)

        run = Run(
            id=run_id if run_id is not None else generate_run_id(),
            lane=resolve_lane(
                trigger, pipeline_name=self._pipeline_name, template=self._lane_template
            ),
            trigger=trigger,
            cancel_on_supersede=resolve_cancel_on_supersede(trigger, self._cancel_triggers),
            started_at=self._clock(),
        )

        with correlation_scope(run_id=run.id, lane=run.lane):
            decision = self._controller.admit(run)
            token = self._controller.token_for(run.id)
            self._emit(
                EventType.RUN_ADMITTED,
                run.id,
                {"lane": run.lane, "trigger_kind": trigger.kind, "ref": trigger.ref},
            )
            if decision.superseded_run_id is not None:
                self._emit(
                    EventType.RUN_SUPERSEDED,
                    decision.superseded_run_id,
                    {"superseded_by": run.id, "cancelled": decision.cancelled_superseded},
                )

            try:
                outcome = await self._execute(run, token)
            except BaseException:
                if not run.is_terminal:
                    run.transition(RunStatus.FAILED, at=self._clock())
                raise
            finally:
                self._controller.release(run)
                await asyncio.to_thread(self._store.revoke, run.id)
                await self._discard_build(run)

            self._logger.info(
                "run_finished",
                run_id=run.id,
                lane=run.lane,
                status=run.status.value,
                jobs=len(outcome.jobs),
                reported=len(outcome.reported),
                errors=len(outcome.errors),
            )
            self._emit(
                EventType.RUN_FINISHED,
                run.id,
                {"status": run.status.value, "counts": dict(outcome.status_counts())},
            )
            return outcome

    async def _execute(self, run: Run, token: CancellationToken) -> RunOutcome:
        if token.is_cancelled:
            return self._finish(run, RunStatus.CANCELLED)
        run.transition(RunStatus.RUNNING)

        build_output = await self._build(run, token)
        if token.is_cancelled:
            return self._finish(run, RunStatus.CANCELLED)
        if not build_output.succeeded:
            error = RunError(
                stage="build",
                kind=BuildFailure.__name__,
                message=build_output.error or "build failed",
            )
            return self._finish(run, RunStatus.FAILED, errors=[error])

        try:
            handle = await asyncio.to_thread(self._store.publish, run, build_output)
        except (BuildFailure, ArtifactStoreError) as exc:
            if token.is_cancelled:
                return self._finish(run, RunStatus.CANCELLED)
            error = RunError(stage="publish", kind=exc.__class__.__name__, message=str(exc))
            return self._finish(run, RunStatus.FAILED, errors=[error])
        self._emit(
            EventType.ARTIFACT_PUBLISHED,
            run.id,
            {"artifact_id": handle.id, "sha256": handle.sha256, "size_bytes": handle.size_bytes},
        )

        jobs = expand(self._declaration, run.trigger)
        results, reported, errors = await self._dispatch(run, handle, jobs, token)

        if token.is_cancelled:
            status = RunStatus.CANCELLED
        else:
            for result in results:
                if result.required and not result.passed:
                    errors.append(
                        RunError(
                            stage="job",
                            kind=result.status.value,
                            message=result.error or result.status.value,
                            job_name=result.job_name,
                        )
                    )
            status = RunStatus.FAILED if errors else RunStatus.SUCCEEDED

        return self._finish(
            run,
            status,
            artifact=handle,
            jobs=jobs,
            results=results,
            reported=reported,
            errors=errors,
        )

    async def _discard_build(self, run: Run) -> None:
        try:
            await asyncio.to_thread(self._build_recipe.discard, run)
        except OSError as exc:
            self._logger.warning("build_workspace_not_removed", run_id=run.id, error=str(exc))

    async def _build(self, run: Run, token: CancellationToken) -> BuildOutput:
        self._emit(EventType.BUILD_STARTED, run.id, {})
        race = await race_with_deadline(
            self._build_recipe.build(run), self._build_timeout_seconds, token
        )

        if race.outcome is RaceOutcome.CANCELLED:
            output = BuildOutput(succeeded=False, error="build cancelled: run was superseded")
        elif race.outcome is RaceOutcome.TIMED_OUT:
            output = BuildOutput(
                succeeded=False,
                error=f"build timed out after {self._build_timeout_seconds:g} seconds",
            )
        elif race.error is not None:
            if not isinstance(race.error, Exception):
                raise race.error
            output = BuildOutput(
                succeeded=False, error=f"{race.error.__class__.__name__}: {race.error}"
            )
        elif isinstance(race.value, BuildOutput):
            output = race.value
        else:
            output = BuildOutput(succeeded=False, error="build recipe returned no output")

        self._logger.info(
            "build_finished",
            run_id=run.id,
            succeeded=output.succeeded,
            duration_ms=round(output.duration_ms, 3),
            error=output.error,
        )
        self._emit(
            EventType.BUILD_FINISHED,
            run.id,
            {"succeeded": output.succeeded, "error": output.error},
        )
        return output

    async def _dispatch(
        self,
        run: Run,
        handle: ArtifactHandle,
        jobs: tuple[JobSpec, ...],
        token: CancellationToken,
    ) -> tuple[list[JobResult], tuple[str, ...], list[RunError]]:
        aggregator = CoverageAggregator(self._sink, events=self._events, logger=self._logger)
        results: list[JobResult] = []
        errors: list[RunError] = []
        if not jobs:
            return results, (), errors

        limit = self._max_parallel_jobs or len(jobs)
        pool: WorkerPool[JobResult] = WorkerPool(max_concurrency=limit)
        async for result in pool.run(self._executor.run(spec, handle, token) for spec in jobs):
            results.append(result)
            # A superseded run reports nothing further.
            if token.is_cancelled:
                continue
            try:
                await aggregator.accept(result, run_id=run.id)
            except ReportingFailure as exc:
                self._logger.error(
                    "coverage_reporting_failed", run_id=run.id, job_name=result.job_name
                )
                errors.append(
                    RunError(
                        stage="reporting",
                        kind=ReportingFailure.__name__,
                        message=str(exc),
                        job_name=result.job_name,
                    )
                )
        return results, aggregator.reported, errors

    def _finish(
        self,
        run: Run,
        status: RunStatus,
        *,
        artifact: ArtifactHandle | None = None,
        jobs: tuple[JobSpec, ...] = (),
        results: list[JobResult] | None = None,
        reported: tuple[str, ...] = (),
        errors: list[RunError] | None = None,
    ) -> RunOutcome:
        run.transition(status, at=self._clock())
        return RunOutcome(
            run=run,
            artifact=artifact,
            jobs=jobs,
            results=tuple(results or ()),
            reported=reported,
            errors=tuple(errors or ()),
        )

    def _emit(self, event_type: EventType, run_id: str, payload: Mapping[str, object]) -> None:
        if self._events is not None:
            self._events.emit(event_type, payload, run_id=run_id)


def build_orchestrator_from_config(
    config: Mapping[str, Any],
    *,
    declaration: MatrixDeclaration | None = None,
    events: EventBus | None = None,
    sink: CoverageSink | None = None,
    cwd: Path | str | None = None,
    logger: Any | None = None,
) -> Orchestrator:
    """Wire an ``Orchestrator`` with the command-based collaborators from ``config``."""

    pipeline = config["pipeline"]
    if declaration is None:
        declaration = load_matrix(pipeline["matrix_file"])
    if sink is None:
        sink = _sink_from_config(config)
    return Orchestrator(
        declaration=declaration,
        build_recipe=CommandBuildRecipe.from_config(config, cwd=cwd),
        sandbox=CommandSandbox.from_config(config, cwd=cwd),
        store=ArtifactStore(config["paths"]["artifact_root"]),
        sink=sink,
        events=events,
        pipeline_name=pipeline["name"],
        lane_template=pipeline["lane_template"],
        admitted_triggers=pipeline["admitted_triggers"],
        cancel_on_supersede_triggers=pipeline["cancel_on_supersede_triggers"],
        build_timeout_seconds=config["build"]["timeout_seconds"],
        max_parallel_jobs=pipeline["max_parallel_jobs"],
        logger=logger,
    )


def _sink_from_config(config: Mapping[str, Any]) -> CoverageSink:
    coverage = config["coverage"]
    file_name = Path(config["sandbox"]["coverage_path"]).name
    if coverage["sink"] == "command":
        return CommandCoverageSink(
            coverage["upload_command"],
            work_root=config["paths"]["work_root"],
            file_name=file_name,
            inherit_host_env=config["sandbox"]["inherit_host_env"],
        )
    return DirectoryCoverageSink(coverage["output_dir"], file_name=file_name)


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


__all__ = ["Orchestrator", "build_orchestrator_from_config"]
