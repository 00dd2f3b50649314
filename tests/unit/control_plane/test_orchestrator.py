"""
Unit tests for run orchestration.

Purpose
- Drive whole runs through ``Orchestrator.execute`` with in-memory collaborators.

What this test file should cover
- Trigger gating before any run exists.
- Build failures, build timeouts, and recipe exceptions stop the run before any job.
- Per-job isolation: timeouts and crashes stay on their own result.
- Required vs. optional groups when settling the run status.
- Coverage forwarding, and reporting failures escalated to the run.
- Cancellation mid-build and mid-dispatch, with nothing forwarded afterwards.
- Archive: lane released, artifact revoked and build workspace discarded on every
  exit path.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from fanout_ci.config import default_config, load_config
from fanout_ci.control_plane import Orchestrator, build_orchestrator_from_config
from fanout_ci.domain import ids
from fanout_ci.domain.errors import TriggerNotAdmittedError
from fanout_ci.domain.models import (
    BuildOutput,
    JobStatus,
    MatrixDeclaration,
    MatrixGroup,
    Run,
    RunError,
    RunStatus,
    TriggerMetadata,
)
from fanout_ci.observability import EventBus, EventType
from fanout_ci.persistence import ArtifactStore
from fanout_ci.sandbox.runtime import SandboxOutcome
from tests.fakes import (
    FakeBuildRecipe,
    FakeSandbox,
    JobBehavior,
    RecordingSink,
    write_pipeline_config,
)

SAMPLE_MATRIX = (
    Path(__file__).resolve().parents[3] / "samples" / "matrix" / "bitcoin-integration.yaml"
)

_CORE = ("tests::neon::microblock", "tests::neon::miner_submit_twice", "tests::neon::size_check")
_ATLAS = ("tests::neon::atlas_integration",)


def _declaration(
    *, core_timeout: float = 5.0, atlas_required: bool = True, atlas_timeout: float = 5.0
) -> MatrixDeclaration:
    return MatrixDeclaration(
        groups=(
            MatrixGroup(name="sampled-genesis", timeout_seconds=core_timeout, members=_CORE),
            MatrixGroup(
                name="atlas-test",
                timeout_seconds=atlas_timeout,
                members=_ATLAS,
                required=atlas_required,
            ),
        )
    )


def _trigger(kind: str = "pull_request", ref: str = "refs/heads/feature-x") -> TriggerMetadata:
    return TriggerMetadata(kind=kind, ref=ref)


class _Harness:
    def __init__(
        self,
        tmp_path: Path,
        *,
        declaration: MatrixDeclaration | None = None,
        behaviors: dict[str, JobBehavior] | None = None,
        recipe: FakeBuildRecipe | None = None,
        sink: RecordingSink | None = None,
        build_timeout_seconds: float = 30.0,
        max_parallel_jobs: int = 0,
    ) -> None:
        self.recipe = recipe if recipe is not None else FakeBuildRecipe(tmp_path / "build")
        self.sandbox = FakeSandbox(behaviors or {})
        self.store = ArtifactStore(tmp_path / "artifacts")
        self.sink = sink if sink is not None else RecordingSink()
        self.events = EventBus()
        self.orchestrator = Orchestrator(
            declaration=declaration or _declaration(),
            build_recipe=self.recipe,
            sandbox=self.sandbox,
            store=self.store,
            sink=self.sink,
            events=self.events,
            build_timeout_seconds=build_timeout_seconds,
            max_parallel_jobs=max_parallel_jobs,
        )


@pytest.mark.asyncio
async def test_successful_run_forwards_every_job_and_archives(tmp_path: Path) -> None:
    harness = _Harness(tmp_path)

    outcome = await harness.orchestrator.execute(_trigger())

    assert outcome.status is RunStatus.SUCCEEDED
    assert outcome.run.finished_at is not None
    assert [job.name for job in outcome.jobs] == [*_CORE, *_ATLAS]
    assert sorted(outcome.reported) == sorted([*_CORE, *_ATLAS])
    assert sorted(harness.sink.job_names) == sorted([*_CORE, *_ATLAS])
    assert outcome.status_counts()["passed"] == 4
    assert outcome.errors == ()
    assert outcome.artifact is not None
    assert set(harness.sandbox.artifacts_seen.values()) == {
        b"integration-image" + outcome.run.id.encode()
    }
    assert harness.store.is_revoked(outcome.run.id)
    assert not outcome.artifact.path.exists()
    assert harness.orchestrator.controller.active_run(outcome.run.lane) is None

    types = [event.event_type for event in harness.events.replay(run_id=outcome.run.id)]
    assert types[:4] == [
        EventType.RUN_ADMITTED,
        EventType.BUILD_STARTED,
        EventType.BUILD_FINISHED,
        EventType.ARTIFACT_PUBLISHED,
    ]
    assert types[-1] is EventType.RUN_FINISHED
    assert types.count(EventType.COVERAGE_REPORTED) == 4


@pytest.mark.asyncio
async def test_non_admitted_trigger_creates_no_run(tmp_path: Path) -> None:
    harness = _Harness(tmp_path)

    with pytest.raises(TriggerNotAdmittedError, match="'push' is not admitted"):
        await harness.orchestrator.execute(_trigger("push", "refs/heads/main"))

    assert harness.recipe.calls == []
    assert harness.events.replay() == ()
    assert harness.orchestrator.controller.snapshot() == ()


@pytest.mark.asyncio
async def test_build_failure_runs_no_jobs(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, recipe=FakeBuildRecipe(tmp_path / "build", fail_with="E0425"))

    outcome = await harness.orchestrator.execute(_trigger())

    assert outcome.status is RunStatus.FAILED
    assert outcome.errors == (RunError(stage="build", kind="BuildFailure", message="E0425"),)
    assert outcome.artifact is None
    assert outcome.jobs == ()
    assert harness.sandbox.started == []
    assert harness.sink.delivered == []
    assert harness.store.handle_for(outcome.run.id) is None


@pytest.mark.asyncio
async def test_build_timeout_fails_the_run(tmp_path: Path) -> None:
    harness = _Harness(
        tmp_path,
        recipe=FakeBuildRecipe(tmp_path / "build", delay_seconds=10.0),
        build_timeout_seconds=0.1,
    )

    outcome = await harness.orchestrator.execute(_trigger())

    assert outcome.status is RunStatus.FAILED
    assert outcome.errors[0].message == "build timed out after 0.1 seconds"
    assert outcome.errors[0].stage == "build"
    assert outcome.errors[0].kind == "BuildFailure"
    assert harness.sandbox.started == []


@pytest.mark.asyncio
async def test_build_recipe_exception_is_a_build_failure(tmp_path: Path) -> None:
    class _ExplodingRecipe:
        async def build(self, run: Run) -> BuildOutput:
            raise RuntimeError("docker daemon unreachable")

        def discard(self, run: Run) -> None:
            pass

    harness = _Harness(tmp_path)
    orchestrator = Orchestrator(
        declaration=_declaration(),
        build_recipe=_ExplodingRecipe(),
        sandbox=harness.sandbox,
        store=harness.store,
        sink=harness.sink,
    )

    outcome = await orchestrator.execute(_trigger())

    assert outcome.status is RunStatus.FAILED
    assert outcome.errors[0].message == "RuntimeError: docker daemon unreachable"


@pytest.mark.asyncio
async def test_job_timeout_is_isolated_to_its_group(tmp_path: Path) -> None:
    harness = _Harness(
        tmp_path,
        declaration=_declaration(atlas_timeout=0.05),
        behaviors={_ATLAS[0]: JobBehavior(block=True)},
    )

    outcome = await harness.orchestrator.execute(_trigger())

    timed_out = outcome.result_for(_ATLAS[0])
    assert timed_out is not None
    assert timed_out.status is JobStatus.TIMED_OUT
    assert all(outcome.result_for(name).status is JobStatus.PASSED for name in _CORE)
    assert sorted(outcome.reported) == sorted(_CORE)
    assert outcome.status is RunStatus.FAILED
    (error,) = outcome.errors
    assert error.stage == "job"
    assert error.kind == "timed_out"
    assert error.job_name == _ATLAS[0]


@pytest.mark.asyncio
async def test_crashing_job_does_not_affect_siblings(tmp_path: Path) -> None:
    crashed = _CORE[1]
    harness = _Harness(tmp_path, behaviors={crashed: JobBehavior(crash=True)})

    outcome = await harness.orchestrator.execute(_trigger())

    assert outcome.result_for(crashed).status is JobStatus.FAILED
    assert crashed not in outcome.reported
    assert len(outcome.reported) == 3
    assert outcome.status is RunStatus.FAILED
    assert [error.job_name for error in outcome.errors] == [crashed]


@pytest.mark.asyncio
async def test_failed_test_coverage_is_forwarded_but_fails_the_run(tmp_path: Path) -> None:
    failing = _CORE[0]
    harness = _Harness(tmp_path, behaviors={failing: JobBehavior(passed=False)})

    outcome = await harness.orchestrator.execute(_trigger())

    assert failing in harness.sink.job_names
    assert outcome.status is RunStatus.FAILED
    assert outcome.errors[0].kind == "failed"


@pytest.mark.asyncio
async def test_optional_group_failures_do_not_fail_the_run(tmp_path: Path) -> None:
    harness = _Harness(
        tmp_path,
        declaration=_declaration(atlas_required=False, atlas_timeout=0.05),
        behaviors={_ATLAS[0]: JobBehavior(block=True)},
    )

    outcome = await harness.orchestrator.execute(_trigger())

    assert outcome.result_for(_ATLAS[0]).status is JobStatus.TIMED_OUT
    assert outcome.status is RunStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_reporting_failure_fails_the_run(tmp_path: Path) -> None:
    rejected = _CORE[2]
    harness = _Harness(tmp_path, sink=RecordingSink(fail_for={rejected}))

    outcome = await harness.orchestrator.execute(_trigger())

    assert outcome.status is RunStatus.FAILED
    assert outcome.result_for(rejected).status is JobStatus.PASSED
    assert rejected not in outcome.reported
    (error,) = outcome.errors
    assert error.stage == "reporting"
    assert error.kind == "ReportingFailure"
    assert error.job_name == rejected


@pytest.mark.asyncio
async def test_missing_coverage_is_a_reporting_failure(tmp_path: Path) -> None:
    silent = _ATLAS[0]
    harness = _Harness(tmp_path, behaviors={silent: JobBehavior(coverage=None)})

    outcome = await harness.orchestrator.execute(_trigger())

    assert outcome.status is RunStatus.FAILED
    assert [error.stage for error in outcome.errors] == ["reporting"]


@pytest.mark.asyncio
async def test_cancel_during_build_publishes_nothing(tmp_path: Path) -> None:
    recipe = FakeBuildRecipe(tmp_path / "build")
    recipe.hold()
    harness = _Harness(tmp_path, recipe=recipe)
    run_id = ids.generate_run_id()

    task = asyncio.create_task(harness.orchestrator.execute(_trigger(), run_id=run_id))
    await recipe.started.wait()
    harness.orchestrator.controller.token_for(run_id).cancel("superseded")
    outcome = await asyncio.wait_for(task, timeout=5.0)

    assert outcome.status is RunStatus.CANCELLED
    assert outcome.artifact is None
    assert harness.store.handle_for(run_id) is None
    assert harness.store.is_revoked(run_id)
    assert harness.sandbox.started == []


@pytest.mark.asyncio
async def test_cancel_during_dispatch_stops_jobs_and_reporting(tmp_path: Path) -> None:
    harness = _Harness(
        tmp_path, behaviors={name: JobBehavior(block=True) for name in (*_CORE, *_ATLAS)}
    )
    run_id = ids.generate_run_id()

    task = asyncio.create_task(harness.orchestrator.execute(_trigger(), run_id=run_id))
    while len(harness.sandbox.started) < 4:
        await asyncio.sleep(0.005)
    harness.orchestrator.controller.token_for(run_id).cancel("superseded")
    outcome = await asyncio.wait_for(task, timeout=5.0)

    assert outcome.status is RunStatus.CANCELLED
    assert {result.status for result in outcome.results} == {JobStatus.CANCELLED}
    assert sorted(harness.sandbox.cancelled) == sorted([*_CORE, *_ATLAS])
    assert harness.sink.delivered == []
    assert outcome.reported == ()
    assert outcome.errors == ()


@pytest.mark.asyncio
async def test_max_parallel_jobs_bounds_sandbox_concurrency(tmp_path: Path) -> None:
    class _CountingSandbox(FakeSandbox):
        active = 0
        peak = 0

        async def execute(self, artifact_path: Path, job_name: str) -> SandboxOutcome:
            type(self).active += 1
            type(self).peak = max(type(self).peak, type(self).active)
            try:
                await asyncio.sleep(0.02)
                return await FakeSandbox.execute(self, artifact_path, job_name)
            finally:
                type(self).active -= 1

    harness = _Harness(tmp_path)
    orchestrator = Orchestrator(
        declaration=_declaration(),
        build_recipe=harness.recipe,
        sandbox=_CountingSandbox(),
        store=harness.store,
        sink=harness.sink,
        max_parallel_jobs=2,
    )

    outcome = await orchestrator.execute(_trigger())

    assert outcome.status is RunStatus.SUCCEEDED
    assert _CountingSandbox.peak == 2


def test_constructor_and_plan(tmp_path: Path) -> None:
    harness = _Harness(tmp_path)
    with pytest.raises(ValueError, match="build_timeout_seconds must be > 0"):
        _Harness(tmp_path, build_timeout_seconds=0)
    with pytest.raises(ValueError, match="max_parallel_jobs must be >= 0"):
        _Harness(tmp_path, max_parallel_jobs=-1)

    assert [job.name for job in harness.orchestrator.plan(_trigger())] == [*_CORE, *_ATLAS]


def test_build_orchestrator_from_config_loads_the_matrix(tmp_path: Path) -> None:
    config = default_config()
    config["pipeline"]["matrix_file"] = str(SAMPLE_MATRIX)
    config["paths"]["artifact_root"] = str(tmp_path / "artifacts")
    config["paths"]["work_root"] = str(tmp_path / "work")
    config["coverage"]["output_dir"] = str(tmp_path / "coverage")

    orchestrator = build_orchestrator_from_config(config, cwd=tmp_path)

    assert [group.name for group in orchestrator.declaration.groups] == [
        "sampled-genesis",
        "atlas-test",
    ]
    assert len(orchestrator.plan()) == 32


@pytest.mark.asyncio
@pytest.mark.parametrize("fail_with", [None, "E0425"])
async def test_build_workspace_is_discarded_after_the_run(
    tmp_path: Path, fail_with: str | None
) -> None:
    recipe = FakeBuildRecipe(tmp_path / "build", fail_with=fail_with)
    harness = _Harness(tmp_path, recipe=recipe)

    outcome = await harness.orchestrator.execute(_trigger())

    assert recipe.discarded == [outcome.run.id]
    assert not (tmp_path / "build" / outcome.run.id).exists()


@pytest.mark.asyncio
async def test_build_workspace_is_discarded_when_the_run_is_cancelled(tmp_path: Path) -> None:
    recipe = FakeBuildRecipe(tmp_path / "build")
    gate = recipe.hold()
    harness = _Harness(tmp_path, recipe=recipe)
    run_id = ids.generate_run_id()

    task = asyncio.create_task(harness.orchestrator.execute(_trigger(), run_id=run_id))
    await recipe.started.wait()
    harness.orchestrator.controller.token_for(run_id).cancel("superseded")
    outcome = await asyncio.wait_for(task, timeout=5.0)
    gate.set()

    assert outcome.status is RunStatus.CANCELLED
    assert recipe.discarded == [run_id]


@pytest.mark.asyncio
async def test_config_wired_run_leaves_no_files_in_the_work_root(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    config_path = write_pipeline_config(repo, {"group-a": (30.0, ("tests::job1",))})
    orchestrator = build_orchestrator_from_config(
        load_config(config_path, environ={}), cwd=repo
    )

    outcome = await orchestrator.execute(_trigger())

    assert outcome.status is RunStatus.SUCCEEDED, outcome.errors
    work_root = repo / "work"
    assert not (work_root / outcome.run.id).exists()
    assert [path for path in work_root.rglob("*") if path.is_file()] == []
    assert not (repo / "artifacts" / outcome.run.id).exists()
