"""Run-scoped storage for published build artifacts."""

from fanout_ci.persistence.artifact_store import ArtifactStore

__all__ = ["ArtifactStore"]
