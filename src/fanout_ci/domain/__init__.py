"""Domain types shared across planes: runs, artifacts, matrix jobs, and results."""

from fanout_ci.domain.errors import (
    ArtifactAlreadyPublishedError,
    ArtifactNotFoundError,
    ArtifactStoreError,
    BuildFailure,
    JobCancelled,
    JobError,
    JobExecutionFailure,
    JobTimeout,
    MatrixDeclarationError,
    PipelineError,
    ReportingFailure,
    SandboxCrashError,
    TriggerNotAdmittedError,
)
from fanout_ci.domain.models import (
    ArtifactHandle,
    BuildOutput,
    CoverageReport,
    JobResult,
    JobSpec,
    JobStatus,
    MatrixDeclaration,
    MatrixGroup,
    Run,
    RunError,
    RunOutcome,
    RunStatus,
    TriggerMetadata,
)

__all__ = [
    "ArtifactAlreadyPublishedError",
    "ArtifactHandle",
    "ArtifactNotFoundError",
    "ArtifactStoreError",
    "BuildFailure",
    "BuildOutput",
    "CoverageReport",
    "JobCancelled",
    "JobError",
    "JobExecutionFailure",
    "JobResult",
    "JobSpec",
    "JobStatus",
    "JobTimeout",
    "MatrixDeclaration",
    "MatrixDeclarationError",
    "MatrixGroup",
    "PipelineError",
    "ReportingFailure",
    "Run",
    "RunError",
    "RunOutcome",
    "RunStatus",
    "SandboxCrashError",
    "TriggerMetadata",
    "TriggerNotAdmittedError",
]
