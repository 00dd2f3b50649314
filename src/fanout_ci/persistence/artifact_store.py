"""
Write-once artifact store shared by every job of a run.

Publication moves the build output into ``<root>/<run_id>/``: a rename when
the build directory shares the store's filesystem, otherwise a copy to a temp
name and a rename. The handle is registered under the store lock only after the
rename, so ``fetch`` never hands out a partially written file. A revoked run can
neither publish nor fetch.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog

from fanout_ci.domain.errors import (
    ArtifactAlreadyPublishedError,
    ArtifactNotFoundError,
    BuildFailure,
)
from fanout_ci.domain.ids import generate_artifact_id
from fanout_ci.domain.models import ArtifactHandle, BuildOutput, Run
from fanout_ci.utils.fs import move_file, safe_delete
from fanout_ci.utils.hashing import sha256_file


class ArtifactStore:
    """Holds at most one immutable artifact per run."""

    def __init__(
        self,
        root: Path | str,
        *,
        verify_on_fetch: bool = False,
        clock: Callable[[], datetime] | None = None,
        logger: Any | None = None,
    ) -> None:
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)
        self._root = self._root.resolve(strict=True)
        self._verify_on_fetch = verify_on_fetch
        self._clock = clock if clock is not None else _utc_now
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

        self._lock = threading.Lock()
        self._handles: dict[str, ArtifactHandle] = {}
        self._by_run: dict[str, str] = {}
        self._publishing: set[str] = set()
        self._revoked: set[str] = set()

    @property
    def root(self) -> Path:
        return self._root

    def publish(self, run: Run, build_output: BuildOutput) -> ArtifactHandle:
        """Move the run's build output into the store; callable once per run."""

        if not build_output.succeeded or build_output.path is None:
            raise BuildFailure(build_output.error or "build failed", run_id=run.id)

        with self._lock:
            self._check_publishable(run.id)
            self._publishing.add(run.id)

        try:
            source = Path(build_output.path)
            run_dir = self._root / run.id
            run_dir.mkdir(parents=True, exist_ok=True)
            destination = run_dir / source.name
            moved = move_file(source, destination)
            digest, size_bytes = sha256_file(destination)
            handle = ArtifactHandle(
                id=generate_artifact_id(),
                run_id=run.id,
                sha256=digest,
                size_bytes=size_bytes,
                path=destination,
                published_at=self._clock(),
            )

            with self._lock:
                if run.id in self._revoked:
                    revoked = True
                else:
                    revoked = False
                    self._handles[handle.id] = handle
                    self._by_run[run.id] = handle.id
            if revoked:
                self._delete_run_dir(run.id)
                raise ArtifactNotFoundError(f"run {run.id} was revoked during publish")
        finally:
            with self._lock:
                self._publishing.discard(run.id)

        self._logger.info(
            "artifact_published",
            run_id=run.id,
            artifact_id=handle.id,
            sha256=handle.sha256,
            size_bytes=handle.size_bytes,
            renamed=moved,
        )
        return handle

    def fetch(self, handle: ArtifactHandle) -> Path:
        """Return the readable path of a published artifact."""

        with self._lock:
            registered = self._handles.get(handle.id)
            if registered is None or registered != handle or handle.run_id in self._revoked:
                raise ArtifactNotFoundError(f"artifact {handle.id} is not available")

        path = registered.path
        try:
            size_bytes = path.stat().st_size
        except FileNotFoundError as exc:
            raise ArtifactNotFoundError(f"artifact {handle.id} content is missing") from exc
        if size_bytes != registered.size_bytes:
            raise ArtifactNotFoundError(f"artifact {handle.id} content changed after publish")
        if self._verify_on_fetch:
            digest, _ = sha256_file(path)
            if digest != registered.sha256:
                raise ArtifactNotFoundError(f"artifact {handle.id} failed hash verification")
        return path

    def handle_for(self, run_id: str) -> ArtifactHandle | None:
        with self._lock:
            artifact_id = self._by_run.get(run_id)
            return None if artifact_id is None else self._handles.get(artifact_id)

    def revoke(self, run_id: str) -> bool:
        """Make the run's artifact unreadable and delete it. Idempotent.

        Returns ``True`` when a published artifact was removed.
        """

        with self._lock:
            already_revoked = run_id in self._revoked
            self._revoked.add(run_id)
            artifact_id = self._by_run.pop(run_id, None)
            if artifact_id is not None:
                self._handles.pop(artifact_id, None)

        if artifact_id is not None:
            self._delete_run_dir(run_id)
        if not already_revoked:
            self._logger.info("artifact_revoked", run_id=run_id, removed=artifact_id is not None)
        return artifact_id is not None

    def is_revoked(self, run_id: str) -> bool:
        with self._lock:
            return run_id in self._revoked

    def _check_publishable(self, run_id: str) -> None:
        if run_id in self._revoked:
            raise ArtifactNotFoundError(f"run {run_id} was revoked before publish")
        if run_id in self._by_run or run_id in self._publishing:
            raise ArtifactAlreadyPublishedError(f"run {run_id} already published an artifact")

    def _delete_run_dir(self, run_id: str) -> None:
        run_dir = self._root / run_id
        if run_dir.exists():
            safe_delete(run_dir, self._root)


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


__all__ = ["ArtifactStore"]
