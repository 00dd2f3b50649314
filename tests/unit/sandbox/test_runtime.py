"""Unit tests for the command-driven execution sandbox."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

from fanout_ci.config import default_config
from fanout_ci.domain.errors import SandboxCrashError
from fanout_ci.sandbox import CommandSandbox, ExecutionSandbox

# argv: artifact, output_dir, job_name, exit status, write coverage (1/0)
_RUN_TEST = (
    "import pathlib, sys; "
    "image = pathlib.Path(sys.argv[1]).read_bytes(); "
    "out = pathlib.Path(sys.argv[2]); "
    "print('running', sys.argv[3], 'against', image.decode(), 'in', out); "
    "sys.argv[5] == '1' and (out / 'lcov.info').write_text('SF:' + sys.argv[3]); "
    "sys.exit(int(sys.argv[4]))"
)


def _sandbox(
    tmp_path: Path,
    *,
    exit_status: int = 0,
    write_coverage: bool = True,
    setup_command: list[str] | None = None,
    command: list[str] | None = None,
) -> CommandSandbox:
    return CommandSandbox(
        command=command
        or [
            sys.executable,
            "-c",
            _RUN_TEST,
            "{artifact}",
            "{output_dir}",
            "{job_name}",
            str(exit_status),
            "1" if write_coverage else "0",
        ],
        setup_command=setup_command or (),
        coverage_path="lcov.info",
        work_root=tmp_path / "work",
    )


def _artifact(tmp_path: Path) -> Path:
    artifact = tmp_path / "integration-image.tar"
    artifact.write_bytes(b"image-bytes")
    return artifact


@pytest.mark.asyncio
async def test_passing_test_returns_its_coverage(tmp_path: Path) -> None:
    outcome = await _sandbox(tmp_path).execute(_artifact(tmp_path), "tests::neon::a")

    assert outcome.passed
    assert outcome.returncode == 0
    assert outcome.coverage == b"SF:tests::neon::a"
    assert "running tests::neon::a against image-bytes" in outcome.output_tail


@pytest.mark.asyncio
async def test_failing_test_keeps_coverage(tmp_path: Path) -> None:
    outcome = await _sandbox(tmp_path, exit_status=1).execute(_artifact(tmp_path), "tests::b")

    assert not outcome.passed
    assert outcome.returncode == 1
    assert outcome.coverage == b"SF:tests::b"


@pytest.mark.asyncio
async def test_missing_coverage_file_yields_none(tmp_path: Path) -> None:
    outcome = await _sandbox(tmp_path, write_coverage=False).execute(
        _artifact(tmp_path), "tests::c"
    )

    assert outcome.passed
    assert outcome.coverage is None


@pytest.mark.asyncio
async def test_output_directories_are_private_and_removed(tmp_path: Path) -> None:
    sandbox = _sandbox(tmp_path)
    artifact = _artifact(tmp_path)

    first, second = await asyncio.gather(
        sandbox.execute(artifact, "tests::same_name"),
        sandbox.execute(artifact, "tests::same_name"),
    )

    first_dir = first.output_tail.split(" in ", 1)[1].strip()
    second_dir = second.output_tail.split(" in ", 1)[1].strip()
    assert first_dir != second_dir
    assert list((tmp_path / "work" / "jobs").iterdir()) == []


@pytest.mark.asyncio
async def test_failed_setup_is_a_sandbox_crash(tmp_path: Path) -> None:
    sandbox = _sandbox(
        tmp_path, setup_command=[sys.executable, "-c", "import sys; sys.exit(2)", "{artifact}"]
    )

    with pytest.raises(SandboxCrashError, match="tests::d: setup failed: .*exited with status 2"):
        await sandbox.execute(_artifact(tmp_path), "tests::d")


@pytest.mark.asyncio
async def test_unlaunchable_command_is_a_sandbox_crash(tmp_path: Path) -> None:
    sandbox = _sandbox(tmp_path, command=["/nonexistent/docker", "build", "{output_dir}"])

    with pytest.raises(SandboxCrashError):
        await sandbox.execute(_artifact(tmp_path), "tests::e")
    assert list((tmp_path / "work" / "jobs").iterdir()) == []


def test_sandbox_from_config_satisfies_the_protocol(tmp_path: Path) -> None:
    config = default_config()
    config["paths"]["work_root"] = str(tmp_path / "work")

    sandbox = CommandSandbox.from_config(config)

    assert isinstance(sandbox, ExecutionSandbox)
    with pytest.raises(ValueError, match="command must not be empty"):
        CommandSandbox(command=[], coverage_path="lcov.info", work_root=tmp_path)
