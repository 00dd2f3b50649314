"""Pipeline error taxonomy.

Stage failures (``BuildFailure``) stop all downstream work. Job-level errors
(``JobTimeout``, ``JobCancelled``, ``JobExecutionFailure``) stay local to one job
and are recorded on its ``JobResult``. ``ReportingFailure`` is always escalated to
a run failure.
"""

from __future__ import annotations


class PipelineError(RuntimeError):
    """Base error for orchestration failures."""


class BuildFailure(PipelineError):
    """The build recipe failed; no job may run without a valid artifact."""

    def __init__(self, message: str, *, run_id: str | None = None) -> None:
        super().__init__(message)
        self.run_id = run_id


class JobError(PipelineError):
    """Base error for failures scoped to a single matrix job."""

    def __init__(self, job_name: str, message: str) -> None:
        super().__init__(f"{job_name}: {message}")
        self.job_name = job_name


class JobTimeout(JobError):
    """The job exceeded its group's timeout."""

    def __init__(self, job_name: str, timeout_seconds: float) -> None:
        super().__init__(job_name, f"timed out after {timeout_seconds:g} seconds")
        self.timeout_seconds = timeout_seconds


class JobCancelled(JobError):
    """The job's run was superseded by a newer run on the same lane."""


class JobExecutionFailure(JobError):
    """The test unit failed, or could not be executed at all."""


class SandboxCrashError(JobExecutionFailure):
    """The execution sandbox crashed before the test unit reported an outcome."""


class ReportingFailure(PipelineError):
    """Coverage could not be delivered to the reporting sink."""

    def __init__(self, job_name: str, message: str) -> None:
        super().__init__(f"coverage reporting failed for {job_name}: {message}")
        self.job_name = job_name


class ArtifactStoreError(PipelineError):
    """Base error for artifact store contract violations."""


class ArtifactNotFoundError(ArtifactStoreError):
    """The handle is unknown, or the run was cancelled before publish."""


class ArtifactAlreadyPublishedError(ArtifactStoreError):
    """A run attempted to publish a second artifact."""


class MatrixDeclarationError(ValueError):
    """Raised when a matrix declaration is structurally invalid."""

    def __init__(self, issues: tuple[str, ...] | list[str]) -> None:
        self.issues = tuple(issues)
        rendered = "\n".join(f"- {item}" for item in self.issues) or "- unknown matrix error"
        super().__init__(f"invalid matrix declaration:\n{rendered}")


class TriggerNotAdmittedError(PipelineError):
    """The trigger did not pass the pipeline's gating predicate."""

    def __init__(self, kind: str) -> None:
        super().__init__(f"trigger kind {kind!r} is not admitted by this pipeline")
        self.kind = kind


__all__ = [
    "ArtifactAlreadyPublishedError",
    "ArtifactNotFoundError",
    "ArtifactStoreError",
    "BuildFailure",
    "JobCancelled",
    "JobError",
    "JobExecutionFailure",
    "JobTimeout",
    "MatrixDeclarationError",
    "PipelineError",
    "ReportingFailure",
    "SandboxCrashError",
    "TriggerNotAdmittedError",
]
