"""Unit tests for the ``fanout`` command router."""

from __future__ import annotations

import io
import json
from collections.abc import Iterator
from pathlib import Path

import pytest
import structlog

from fanout_ci.main import ExitCode, cli_entrypoint
from fanout_ci.ui.cli import build_parser, run_cli
from tests.fakes import write_pipeline_config

SAMPLE_MATRIX = (
    Path(__file__).resolve().parents[3] / "samples" / "matrix" / "bitcoin-integration.yaml"
)

_GROUPS = {
    "group-a": (30.0, ("tests::job1", "tests::job2_fails")),
    "group-b": (40.0, ("tests::job3",)),
}


@pytest.fixture(autouse=True)
def _isolated_cwd(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    monkeypatch.chdir(tmp_path)
    for name in ("GITHUB_EVENT_NAME", "GITHUB_REF", "GITHUB_SHA", "GITHUB_ACTOR"):
        monkeypatch.delenv(name, raising=False)
    yield
    structlog.reset_defaults()


def _json_output(capsys: pytest.CaptureFixture[str]) -> dict[str, object]:
    return json.loads(capsys.readouterr().out.strip().splitlines()[-1])


def test_parser_requires_a_command() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_matrix_json_lists_every_job(capsys: pytest.CaptureFixture[str]) -> None:
    exit_code = run_cli(["matrix", "--matrix", str(SAMPLE_MATRIX), "--json"])

    payload = _json_output(capsys)
    assert exit_code == ExitCode.SUCCESS
    assert payload["command"] == "matrix"
    jobs = payload["jobs"]
    assert isinstance(jobs, list)
    assert len(jobs) == 32
    assert jobs[0]["group"] == "sampled-genesis"
    assert jobs[0]["timeout_seconds"] == 1800.0


def test_matrix_text_output_shows_timeouts(capsys: pytest.CaptureFixture[str]) -> None:
    exit_code = run_cli(
        ["matrix", "--matrix", str(SAMPLE_MATRIX), "--event", "pull_request", "--no-color"]
    )

    out = capsys.readouterr().out
    assert exit_code == ExitCode.SUCCESS
    assert "30m" in out
    assert "tests::neon_integrations::atlas_integration_test" in out
    assert "Jobs: 32" in out


def test_config_json_is_redacted_effective_config(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config_path = write_pipeline_config(tmp_path / "repo", _GROUPS)

    exit_code = run_cli(["config", "--config", str(config_path), "--json"])

    payload = _json_output(capsys)
    assert exit_code == ExitCode.SUCCESS
    assert payload["active_profile"] is None
    config = payload["config"]
    assert isinstance(config, dict)
    assert config["pipeline"]["matrix_file"] == (
        (tmp_path / "repo").resolve() / "matrix.yaml"
    ).as_posix()


def test_invalid_config_exits_with_config_error(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config_path = tmp_path / "fanout.toml"
    config_path.write_text("[pipeline\n", encoding="utf-8")

    exit_code = run_cli(["config", "--config", str(config_path)])

    assert exit_code == ExitCode.CONFIG_ERROR
    assert "invalid TOML" in capsys.readouterr().err


def test_missing_matrix_file_is_a_config_error(tmp_path: Path) -> None:
    assert cli_entrypoint(["matrix", "--matrix", str(tmp_path / "absent.yaml")]) == 2


def test_non_admitted_trigger_is_skipped(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config_path = write_pipeline_config(tmp_path / "repo", _GROUPS)

    exit_code = run_cli(
        ["run", "--config", str(config_path), "--event", "push", "--ref", "refs/heads/main"]
        + ["--json"]
    )

    payload = _json_output(capsys)
    assert exit_code == ExitCode.SUCCESS
    assert payload["admitted"] is False
    assert payload["trigger"]["kind"] == "push"
    assert not (tmp_path / "repo" / "coverage").exists()


def test_run_reports_every_job_and_fails_on_a_failing_test(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    repo = tmp_path / "repo"
    config_path = write_pipeline_config(repo, _GROUPS)

    exit_code = run_cli(
        [
            "run",
            "--config",
            str(config_path),
            "--repo-root",
            str(repo),
            "--event",
            "pull_request",
            "--ref",
            "refs/heads/feature-x",
            "--json",
        ]
    )

    payload = _json_output(capsys)
    assert exit_code == ExitCode.RUN_FAILED
    assert payload["admitted"] is True
    assert payload["run"]["status"] == "failed"
    assert payload["run"]["lane"] == "stacks-bitcoin-integration-tests-refs/heads/feature-x"
    statuses = {result["job_name"]: result["status"] for result in payload["results"]}
    assert statuses == {
        "tests::job1": "passed",
        "tests::job2_fails": "failed",
        "tests::job3": "passed",
    }
    assert sorted(payload["reported"]) == ["tests::job1", "tests::job2_fails", "tests::job3"]
    written = sorted(path.parent.name for path in (repo / "coverage").rglob("lcov.info"))
    assert written == ["tests_job1", "tests_job2_fails", "tests_job3"]
    assert list((repo / "artifacts").rglob("*.tar")) == []


def test_successful_run_prints_a_summary(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    repo = tmp_path / "repo"
    config_path = write_pipeline_config(repo, {"group-a": (30.0, ("tests::job1",))})

    exit_code = run_cli(
        [
            "run",
            "--config",
            str(config_path),
            "--event",
            "pull_request",
            "--ref",
            "refs/heads/feature-x",
            "--max-parallel",
            "1",
            "--no-color",
        ]
    )

    out = capsys.readouterr().out
    assert exit_code == ExitCode.SUCCESS
    assert "Status: succeeded" in out
    assert "tests::job1" in out
    assert "reported" in out
    assert "Log: " in out


def test_serve_reports_each_line_and_fails_when_a_run_fails(
    tmp_path: Path, capsys: pytest.CaptureFixture[str], monkeypatch: pytest.MonkeyPatch
) -> None:
    repo = tmp_path / "repo"
    config_path = write_pipeline_config(repo, _GROUPS)
    lines = [
        json.dumps({"event": "push", "ref": "refs/heads/main"}),
        "{not json",
        json.dumps({"event": "pull_request", "ref": "refs/pull/7/merge", "sha": "ab12"}),
    ]
    monkeypatch.setattr("sys.stdin", io.StringIO("\n".join(lines) + "\n"))

    exit_code = run_cli(["serve", "--config", str(config_path), "--no-color"])

    out = capsys.readouterr().out
    assert exit_code == ExitCode.RUN_FAILED
    assert "line 2 rejected: trigger line is not JSON" in out
    assert "skipped: " in out
    assert "stacks-bitcoin-integration-tests-refs/pull/7/merge: failed" in out
    assert list((repo / "work").iterdir()) == []


def test_serve_with_empty_input_exits_cleanly(
    tmp_path: Path, capsys: pytest.CaptureFixture[str], monkeypatch: pytest.MonkeyPatch
) -> None:
    config_path = write_pipeline_config(tmp_path / "repo", _GROUPS)
    monkeypatch.setattr("sys.stdin", io.StringIO(""))

    exit_code = run_cli(["serve", "--config", str(config_path), "--json"])

    assert exit_code == ExitCode.SUCCESS
    assert capsys.readouterr().out == ""


def test_run_without_trigger_kind_is_a_config_error(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config_path = write_pipeline_config(tmp_path / "repo", _GROUPS)

    exit_code = run_cli(["run", "--config", str(config_path), "--ref", "refs/heads/x"])

    assert exit_code == ExitCode.CONFIG_ERROR
    assert "trigger kind is required" in capsys.readouterr().err


def test_missing_repo_root_is_a_config_error(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config_path = write_pipeline_config(tmp_path / "repo", _GROUPS)

    exit_code = run_cli(
        [
            "run",
            "--config",
            str(config_path),
            "--repo-root",
            str(tmp_path / "missing"),
            "--event",
            "pull_request",
            "--ref",
            "refs/heads/feature-x",
        ]
    )

    assert exit_code == ExitCode.CONFIG_ERROR
    assert "repo root is not a directory" in capsys.readouterr().err
