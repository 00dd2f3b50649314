"""Build recipe executors: produce the run's single artifact file."""

from __future__ import annotations

import time
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from fanout_ci.domain.models import BuildOutput, Run
from fanout_ci.sandbox.process import build_environment, render_argv, run_command
from fanout_ci.utils.fs import safe_delete


@runtime_checkable
class BuildRecipe(Protocol):
    """Turns a run into a built artifact on local disk."""

    async def build(self, run: Run) -> BuildOutput: ...

    def discard(self, run: Run) -> None:
        """Remove anything the build left on local disk for ``run``."""
        ...


class CommandBuildRecipe:
    """Build an image, then export it to a tarball.

    ``command`` builds (``docker build ... -t {image_tag}``); ``export_command``
    writes the artifact (``docker save -o {artifact} {image_tag}``). Both share
    one overall timeout.
    """

    def __init__(
        self,
        *,
        command: Sequence[str],
        export_command: Sequence[str],
        image_tag: str,
        artifact_name: str,
        work_root: Path | str,
        timeout_seconds: float,
        cwd: Path | str | None = None,
        inherit_host_env: bool = True,
        env: Mapping[str, str] | None = None,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if not command or not export_command:
            raise ValueError("build and export commands must not be empty")
        self._command = tuple(command)
        self._export_command = tuple(export_command)
        self._image_tag = image_tag
        self._artifact_name = artifact_name
        self._work_root = Path(work_root)
        self._timeout_seconds = float(timeout_seconds)
        self._cwd = None if cwd is None else Path(cwd)
        self._env = build_environment(inherit_host_env=inherit_host_env, overrides=env)

    @classmethod
    def from_config(
        cls, config: Mapping[str, Any], *, cwd: Path | str | None = None
    ) -> CommandBuildRecipe:
        build_cfg = config["build"]
        return cls(
            command=build_cfg["command"],
            export_command=build_cfg["export_command"],
            image_tag=build_cfg["image_tag"],
            artifact_name=build_cfg["artifact_name"],
            work_root=config["paths"]["work_root"],
            timeout_seconds=build_cfg["timeout_seconds"],
            cwd=cwd,
            inherit_host_env=config["sandbox"]["inherit_host_env"],
        )

    async def build(self, run: Run) -> BuildOutput:
        started = time.monotonic()
        out_dir = self._work_root / run.id
        out_dir.mkdir(parents=True, exist_ok=True)
        artifact = out_dir / self._artifact_name
        values = {"artifact": str(artifact), "image_tag": self._image_tag, "run_id": run.id}

        log_parts: list[str] = []
        for template in (self._command, self._export_command):
            remaining = self._timeout_seconds - (time.monotonic() - started)
            if remaining <= 0:
                return self._failed(started, "build timed out", log_parts)
            result = await run_command(
                render_argv(template, values),
                cwd=self._cwd,
                env=self._env,
                timeout_seconds=remaining,
            )
            log_parts.append(result.output_tail)
            if not result.succeeded:
                return self._failed(started, result.describe_failure(), log_parts)

        if not artifact.is_file():
            return self._failed(started, f"export did not produce {artifact}", log_parts)
        return BuildOutput(
            succeeded=True,
            path=artifact,
            duration_ms=_elapsed_ms(started),
            log_tail=_join_tail(log_parts),
        )

    def discard(self, run: Run) -> None:
        run_dir = self._work_root / run.id
        if run_dir.exists():
            safe_delete(run_dir, self._work_root)

    def _failed(self, started: float, error: str, log_parts: list[str]) -> BuildOutput:
        return BuildOutput(
            succeeded=False,
            error=error,
            duration_ms=_elapsed_ms(started),
            log_tail=_join_tail(log_parts),
        )


def _elapsed_ms(started: float) -> float:
    return (time.monotonic() - started) * 1000.0


def _join_tail(parts: list[str], max_chars: int = 8000) -> str:
    joined = "\n".join(part for part in parts if part)
    return joined[-max_chars:]


__all__ = ["BuildRecipe", "CommandBuildRecipe"]
