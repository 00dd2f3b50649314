"""Execution sandboxes: run one named test unit against a published artifact."""

from __future__ import annotations

import shutil
import tempfile
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from fanout_ci.domain.errors import SandboxCrashError
from fanout_ci.sandbox.process import build_environment, render_argv, run_command
from fanout_ci.utils.fs import safe_name


@dataclass(frozen=True, slots=True)
class SandboxOutcome:
    passed: bool
    coverage: bytes | None = None
    returncode: int | None = None
    output_tail: str = ""


@runtime_checkable
class ExecutionSandbox(Protocol):
    """Runs a test unit; raises ``SandboxCrashError`` when it cannot report an outcome."""

    async def execute(self, artifact_path: Path, job_name: str) -> SandboxOutcome: ...


class CommandSandbox:
    """Run a test unit through an argv template.

    ``setup_command`` (e.g. ``docker load -i {artifact}``) must succeed or the
    sandbox is considered crashed. ``command``'s exit status decides pass/fail,
    and coverage is read from ``{output_dir}/<coverage_path>`` when present.
    """

    def __init__(
        self,
        *,
        command: Sequence[str],
        coverage_path: str,
        work_root: Path | str,
        image_tag: str = "",
        setup_command: Sequence[str] = (),
        cwd: Path | str | None = None,
        inherit_host_env: bool = True,
        env: Mapping[str, str] | None = None,
    ) -> None:
        if not command:
            raise ValueError("command must not be empty")
        self._command = tuple(command)
        self._setup_command = tuple(setup_command)
        self._coverage_path = coverage_path
        self._jobs_root = Path(work_root) / "jobs"
        self._image_tag = image_tag
        self._cwd = None if cwd is None else Path(cwd)
        self._env = build_environment(inherit_host_env=inherit_host_env, overrides=env)

    @classmethod
    def from_config(
        cls, config: Mapping[str, Any], *, cwd: Path | str | None = None
    ) -> CommandSandbox:
        sandbox_cfg = config["sandbox"]
        return cls(
            command=sandbox_cfg["command"],
            setup_command=sandbox_cfg.get("setup_command", ()),
            coverage_path=sandbox_cfg["coverage_path"],
            work_root=config["paths"]["work_root"],
            image_tag=config["build"]["image_tag"],
            cwd=cwd,
            inherit_host_env=sandbox_cfg["inherit_host_env"],
        )

    async def execute(self, artifact_path: Path, job_name: str) -> SandboxOutcome:
        self._jobs_root.mkdir(parents=True, exist_ok=True)
        output_dir = Path(tempfile.mkdtemp(prefix=f"{safe_name(job_name)}-", dir=self._jobs_root))
        values = {
            "artifact": str(artifact_path),
            "image_tag": self._image_tag,
            "job_name": job_name,
            "output_dir": str(output_dir),
        }
        try:
            if self._setup_command:
                setup = await run_command(
                    render_argv(self._setup_command, values), cwd=self._cwd, env=self._env
                )
                if not setup.succeeded:
                    raise SandboxCrashError(job_name, f"setup failed: {setup.describe_failure()}")

            result = await run_command(
                render_argv(self._command, values), cwd=self._cwd, env=self._env
            )
            if result.error is not None:
                raise SandboxCrashError(job_name, result.describe_failure())

            coverage_file = output_dir / self._coverage_path
            coverage = coverage_file.read_bytes() if coverage_file.is_file() else None
            return SandboxOutcome(
                passed=result.returncode == 0,
                coverage=coverage,
                returncode=result.returncode,
                output_tail=result.output_tail,
            )
        finally:
            shutil.rmtree(output_dir, ignore_errors=True)


__all__ = ["CommandSandbox", "ExecutionSandbox", "SandboxOutcome"]
