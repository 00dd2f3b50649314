"""
fanout-ci - end-to-end pipeline scenarios

Purpose
- Run whole pipelines through the orchestrator with a real artifact store and
  in-memory build, sandbox, and coverage collaborators.

What this test file should cover
- One build fanned out to two groups, a failing test still contributing coverage.
- Supersession on a lane: the older run's in-flight jobs are cancelled and it
  forwards nothing further, while the newer run completes normally.
- A newcomer without the cancel flag leaves the older run to finish.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path

import pytest

from fanout_ci.control_plane import Orchestrator
from fanout_ci.domain import ids
from fanout_ci.domain.models import (
    JobStatus,
    MatrixDeclaration,
    MatrixGroup,
    RunStatus,
    TriggerMetadata,
)
from fanout_ci.observability import EventBus, EventType
from fanout_ci.persistence import ArtifactStore
from fanout_ci.sandbox.runtime import SandboxOutcome
from tests.fakes import FakeBuildRecipe, FakeSandbox, JobBehavior, RecordingSink

pytestmark = pytest.mark.integration

_FEATURE_X = TriggerMetadata(kind="pull_request", ref="refs/heads/feature-x")


def _two_group_matrix() -> MatrixDeclaration:
    return MatrixDeclaration(
        groups=(
            MatrixGroup(name="group-a", timeout_seconds=30 * 60, members=("job1", "job2")),
            MatrixGroup(name="group-b", timeout_seconds=40 * 60, members=("job3",)),
        )
    )


class _HeldRunSandbox:
    """Holds one run's jobs on ``gate``; coverage names the artifact it ran against."""

    def __init__(self, held_run_id: str, *, fast_jobs: frozenset[str] = frozenset()) -> None:
        self.held_marker = held_run_id.encode()
        self.fast_jobs = fast_jobs
        self.gate = asyncio.Event()
        self.held: list[str] = []
        self.cancelled: list[str] = []

    async def execute(self, artifact_path: Path, job_name: str) -> SandboxOutcome:
        image = artifact_path.read_bytes()
        if image.endswith(self.held_marker) and job_name not in self.fast_jobs:
            self.held.append(job_name)
            try:
                await self.gate.wait()
            except asyncio.CancelledError:
                self.cancelled.append(job_name)
                raise
        return SandboxOutcome(passed=True, coverage=b"SF:" + image, returncode=0)


def _delivered_for(sink: RecordingSink, run_id: str) -> list[str]:
    marker = run_id.encode()
    return [report.job_name for report in sink.delivered if report.payload.endswith(marker)]


async def _wait_until(predicate: Callable[[], object], *, timeout: float = 5.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout=timeout)


@pytest.mark.asyncio
async def test_feature_branch_run_reports_all_three_jobs_and_fails(tmp_path: Path) -> None:
    recipe = FakeBuildRecipe(tmp_path / "build")
    sandbox = FakeSandbox({"job2": JobBehavior(passed=False)})
    sink = RecordingSink()
    store = ArtifactStore(tmp_path / "artifacts", verify_on_fetch=True)
    orchestrator = Orchestrator(
        declaration=_two_group_matrix(),
        build_recipe=recipe,
        sandbox=sandbox,
        store=store,
        sink=sink,
    )

    outcome = await orchestrator.execute(_FEATURE_X)

    assert len(recipe.calls) == 1
    assert len(outcome.results) == 3
    assert {result.job_name: result.status for result in outcome.results} == {
        "job1": JobStatus.PASSED,
        "job2": JobStatus.FAILED,
        "job3": JobStatus.PASSED,
    }
    assert sorted(sink.job_names) == ["job1", "job2", "job3"]
    assert all(report.job_name.encode() in report.payload for report in sink.delivered)
    assert outcome.status is RunStatus.FAILED
    assert [(error.stage, error.job_name) for error in outcome.errors] == [("job", "job2")]
    assert {job.timeout_seconds for job in outcome.jobs if job.group == "group-b"} == {2400.0}
    assert store.is_revoked(outcome.run.id)


@pytest.mark.asyncio
async def test_superseded_run_is_cancelled_and_newcomer_completes(tmp_path: Path) -> None:
    first_id, second_id = ids.generate_run_id(), ids.generate_run_id()
    sandbox = _HeldRunSandbox(first_id, fast_jobs=frozenset({"job3"}))
    sink = RecordingSink()
    events = EventBus()
    store = ArtifactStore(tmp_path / "artifacts")
    orchestrator = Orchestrator(
        declaration=_two_group_matrix(),
        build_recipe=FakeBuildRecipe(tmp_path / "build"),
        sandbox=sandbox,
        store=store,
        sink=sink,
        events=events,
    )

    first_task = asyncio.create_task(orchestrator.execute(_FEATURE_X, run_id=first_id))
    await _wait_until(lambda: len(sandbox.held) == 2 and _delivered_for(sink, first_id))
    second_task = asyncio.create_task(orchestrator.execute(_FEATURE_X, run_id=second_id))
    first = await asyncio.wait_for(first_task, timeout=5.0)
    second = await asyncio.wait_for(second_task, timeout=5.0)

    assert first.status is RunStatus.CANCELLED
    assert {name: first.result_for(name).status for name in ("job1", "job2")} == {
        "job1": JobStatus.CANCELLED,
        "job2": JobStatus.CANCELLED,
    }
    assert sorted(sandbox.cancelled) == ["job1", "job2"]
    assert first.reported == ("job3",)
    assert _delivered_for(sink, first_id) == ["job3"]

    assert second.status is RunStatus.SUCCEEDED
    assert sorted(_delivered_for(sink, second_id)) == ["job1", "job2", "job3"]

    (superseded,) = events.replay(event_type=EventType.RUN_SUPERSEDED)
    assert superseded.run_id == first_id
    assert superseded.payload == {"superseded_by": second_id, "cancelled": True}
    assert store.is_revoked(first_id)
    assert store.is_revoked(second_id)
    assert orchestrator.controller.snapshot() == ()


@pytest.mark.asyncio
async def test_push_newcomer_does_not_cancel_the_running_run(tmp_path: Path) -> None:
    first_id = ids.generate_run_id()
    sandbox = _HeldRunSandbox(first_id)
    sink = RecordingSink()
    orchestrator = Orchestrator(
        declaration=_two_group_matrix(),
        build_recipe=FakeBuildRecipe(tmp_path / "build"),
        sandbox=sandbox,
        store=ArtifactStore(tmp_path / "artifacts"),
        sink=sink,
        admitted_triggers=("pull_request", "push"),
        cancel_on_supersede_triggers=("pull_request",),
    )
    push = TriggerMetadata(kind="push", ref="refs/heads/feature-x")

    first_task = asyncio.create_task(orchestrator.execute(_FEATURE_X, run_id=first_id))
    await _wait_until(lambda: len(sandbox.held) == 3)
    second = await orchestrator.execute(push)
    assert not first_task.done()
    sandbox.gate.set()
    first = await asyncio.wait_for(first_task, timeout=5.0)

    assert second.status is RunStatus.SUCCEEDED
    assert first.status is RunStatus.SUCCEEDED
    assert sorted(_delivered_for(sink, first_id)) == ["job1", "job2", "job3"]
    assert sorted(_delivered_for(sink, second.run.id)) == ["job1", "job2", "job3"]
