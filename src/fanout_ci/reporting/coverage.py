"""
Coverage aggregation.

Every job result is recorded; results that ran to completion must carry a
coverage report, which is delivered to a sink. Any delivery problem surfaces as
``ReportingFailure`` and fails the run.
"""

from __future__ import annotations

import asyncio
import shutil
import tempfile
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import structlog

from fanout_ci.constants import DEFAULT_COVERAGE_PATH
from fanout_ci.domain.errors import ReportingFailure
from fanout_ci.domain.models import CoverageReport, JobResult
from fanout_ci.observability.events import EventBus, EventType
from fanout_ci.sandbox.process import build_environment, render_argv, run_command
from fanout_ci.utils.fs import atomic_write, safe_name


@dataclass(frozen=True, slots=True)
class CoverageAck:
    job_name: str
    sha256: str
    size_bytes: int
    location: str


@runtime_checkable
class CoverageSink(Protocol):
    """Destination for coverage payloads; returns where the payload landed."""

    async def deliver(self, report: CoverageReport) -> str: ...


class DirectoryCoverageSink:
    """Write each report to ``<output_dir>/<job-slug>/<file_name>``."""

    def __init__(self, output_dir: Path | str, *, file_name: str = DEFAULT_COVERAGE_PATH) -> None:
        self._output_dir = Path(output_dir)
        self._file_name = file_name

    @property
    def output_dir(self) -> Path:
        return self._output_dir

    def path_for(self, job_name: str) -> Path:
        return self._output_dir / safe_name(job_name) / self._file_name

    async def deliver(self, report: CoverageReport) -> str:
        target = self.path_for(report.job_name)
        try:
            await asyncio.to_thread(_write_report, target, report.payload)
        except OSError as exc:
            raise ReportingFailure(report.job_name, f"unable to write {target}: {exc}") from exc
        return target.as_posix()


class CommandCoverageSink:
    """Stage the payload in a scratch file and hand it to an uploader command.

    Placeholders: ``{coverage_file}``, ``{job_name}``, ``{job_slug}``.
    """

    def __init__(
        self,
        command: Sequence[str],
        *,
        work_root: Path | str,
        file_name: str = DEFAULT_COVERAGE_PATH,
        timeout_seconds: float | None = 600.0,
        inherit_host_env: bool = True,
        env: Mapping[str, str] | None = None,
    ) -> None:
        if not command:
            raise ValueError("upload command must not be empty")
        self._command = tuple(command)
        self._staging_root = Path(work_root) / "coverage"
        self._file_name = file_name
        self._timeout_seconds = timeout_seconds
        self._env = build_environment(inherit_host_env=inherit_host_env, overrides=env)

    async def deliver(self, report: CoverageReport) -> str:
        slug = safe_name(report.job_name)
        self._staging_root.mkdir(parents=True, exist_ok=True)
        staging_dir = Path(tempfile.mkdtemp(prefix=f"{slug}-", dir=self._staging_root))
        try:
            coverage_file = staging_dir / self._file_name
            await asyncio.to_thread(atomic_write, coverage_file, report.payload)
            argv = render_argv(
                self._command,
                {
                    "coverage_file": str(coverage_file),
                    "job_name": report.job_name,
                    "job_slug": slug,
                },
            )
            result = await run_command(argv, env=self._env, timeout_seconds=self._timeout_seconds)
        finally:
            shutil.rmtree(staging_dir, ignore_errors=True)

        if not result.succeeded:
            raise ReportingFailure(report.job_name, result.describe_failure())
        return " ".join(argv[:1])


def _write_report(target: Path, payload: bytes) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    atomic_write(target, payload)


class CoverageAggregator:
    """Collects job results and streams their coverage to one sink."""

    def __init__(
        self,
        sink: CoverageSink,
        *,
        events: EventBus | None = None,
        logger: Any | None = None,
    ) -> None:
        self._sink = sink
        self._events = events
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._lock = threading.Lock()
        self._results: list[JobResult] = []
        self._acks: dict[str, CoverageAck] = {}
        self._in_flight: set[str] = set()

    @property
    def results(self) -> tuple[JobResult, ...]:
        with self._lock:
            return tuple(self._results)

    @property
    def reported(self) -> tuple[str, ...]:
        """Job names acknowledged by the sink, in delivery order."""

        with self._lock:
            return tuple(self._acks)

    def ack_for(self, job_name: str) -> CoverageAck | None:
        with self._lock:
            return self._acks.get(job_name)

    async def report(
        self,
        job_name: str,
        coverage: CoverageReport,
        *,
        run_id: str | None = None,
    ) -> CoverageAck:
        if coverage.job_name != job_name:
            raise ReportingFailure(job_name, f"report is tagged for {coverage.job_name!r}")
        with self._lock:
            if job_name in self._acks or job_name in self._in_flight:
                raise ReportingFailure(job_name, "coverage was already reported")
            self._in_flight.add(job_name)

        try:
            location = await self._sink.deliver(coverage)
        except ReportingFailure:
            raise
        except Exception as exc:  # noqa: BLE001
            raise ReportingFailure(job_name, f"{exc.__class__.__name__}: {exc}") from exc
        finally:
            with self._lock:
                self._in_flight.discard(job_name)

        ack = CoverageAck(
            job_name=job_name,
            sha256=coverage.sha256,
            size_bytes=len(coverage.payload),
            location=location,
        )
        with self._lock:
            self._acks[job_name] = ack
        self._logger.info(
            "coverage_reported",
            run_id=run_id,
            job_name=job_name,
            sha256=ack.sha256,
            size_bytes=ack.size_bytes,
        )
        if self._events is not None:
            self._events.emit(
                EventType.COVERAGE_REPORTED,
                {"job_name": job_name, "sha256": ack.sha256, "location": location},
                run_id=run_id,
            )
        return ack

    async def accept(self, result: JobResult, *, run_id: str | None = None) -> CoverageAck | None:
        """Record ``result`` and forward its coverage.

        Timed-out and cancelled results are recorded only, as are failed
        results with no coverage (the sandbox crashed). A passed result without
        coverage raises ``ReportingFailure``.
        """

        with self._lock:
            self._results.append(result)
        if not result.ran_to_completion:
            return None
        if result.coverage is None:
            if not result.passed:
                return None
            raise ReportingFailure(result.job_name, "job finished without a coverage report")
        return await self.report(result.job_name, result.coverage, run_id=run_id)


__all__ = [
    "CommandCoverageSink",
    "CoverageAck",
    "CoverageAggregator",
    "CoverageSink",
    "DirectoryCoverageSink",
]
