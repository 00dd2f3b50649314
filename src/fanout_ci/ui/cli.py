"""Command-line interface router for fanout-ci."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from fanout_ci.config import ConfigLoadError, ConfigValidationError, load_config, redact_config
from fanout_ci.control_plane import (
    build_orchestrator_from_config,
    serve_triggers,
    trigger_from_environ,
)
from fanout_ci.domain.errors import MatrixDeclarationError, TriggerNotAdmittedError
from fanout_ci.domain.ids import generate_run_id
from fanout_ci.domain.models import MatrixDeclaration, RunOutcome, RunStatus, TriggerMetadata
from fanout_ci.main import ExitCode
from fanout_ci.observability import EventBus, setup_logging
from fanout_ci.planning import expand, load_matrix
from fanout_ci.ui.render import CLIRenderer, create_renderer


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = int(ExitCode.RUN_FAILED)

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router."""

    parser = argparse.ArgumentParser(
        prog="fanout",
        description=(
            "fanout-ci: build one artifact, fan it out to a test matrix, aggregate coverage.\n\n"
            "Common workflows:\n"
            "  fanout run --event pull_request --ref refs/pull/7/merge\n"
            "  fanout serve < triggers.jsonl   One run per JSON trigger line, lanes shared\n"
            "  fanout matrix --event push      Show the jobs a trigger would run\n"
            "  fanout config                   Show the effective (redacted) config\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--repo-root",
        default=".",
        help="Directory build and test commands run in (default: current directory).",
    )
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to fanout TOML config (default: ./fanout.toml if present).",
    )
    common.add_argument("--profile", default=None, help="Optional config profile overlay name.")
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output and log at DEBUG level.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )
    common.add_argument(
        "--json", action="store_true", default=False, help="Emit machine-readable JSON."
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser(
        "run",
        parents=[common],
        help="Build the artifact once and run the test matrix against it",
        description=(
            "Run one pipeline invocation. Trigger fields default to the GitHub Actions\n"
            "environment (GITHUB_EVENT_NAME, GITHUB_REF, GITHUB_SHA, GITHUB_ACTOR).\n\n"
            "Exit codes: 0 succeeded or trigger not admitted, 1 failed, 2 config error,\n"
            "3 cancelled (superseded), 4 internal error."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    _add_matrix_argument(run_parser)
    run_parser.add_argument("--event", default=None, help="Trigger kind, e.g. pull_request.")
    run_parser.add_argument("--ref", default=None, help="Git ref the run targets.")
    run_parser.add_argument("--sha", default=None, help="Commit SHA the run targets.")
    _add_max_parallel_argument(run_parser)
    run_parser.set_defaults(handler=_cmd_run)

    serve_parser = subparsers.add_parser(
        "serve",
        parents=[common],
        help="Read JSON trigger lines from stdin and run each on one shared orchestrator",
        description=(
            "Start a run for every JSON trigger line read from stdin, e.g.\n"
            '  {"event": "pull_request", "ref": "refs/pull/7/merge", "sha": "ab12"}\n\n'
            "All runs share one lane controller, so a newer trigger on a lane\n"
            "supersedes the run in flight there. Exits at EOF once every run has\n"
            "finished: 0 when none failed, 1 otherwise."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    _add_matrix_argument(serve_parser)
    _add_max_parallel_argument(serve_parser)
    serve_parser.set_defaults(handler=_cmd_serve)

    matrix_parser = subparsers.add_parser(
        "matrix",
        parents=[common],
        help="Expand the matrix declaration into job specs",
    )
    _add_matrix_argument(matrix_parser)
    matrix_parser.add_argument(
        "--event",
        default=None,
        help="Only show groups admitted for this trigger kind.",
    )
    matrix_parser.set_defaults(handler=_cmd_matrix)

    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Print the effective configuration with secrets redacted",
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


def _add_matrix_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--matrix",
        dest="matrix_path",
        default=None,
        help="Matrix declaration YAML (default: pipeline.matrix_file).",
    )


def _add_max_parallel_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--max-parallel",
        dest="max_parallel",
        type=int,
        default=None,
        help="Upper bound on concurrently running jobs per run (0 = one slot per job).",
    )


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return ExitCode.CONFIG_ERROR

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_run(args: argparse.Namespace) -> int:
    overrides: dict[str, object] = {"pipeline.max_parallel_jobs": args.max_parallel}
    config = _load_effective_config(args, overrides)
    declaration = _load_declaration(config)
    try:
        trigger = trigger_from_environ(os.environ, kind=args.event, ref=args.ref, sha=args.sha)
    except ValueError as exc:
        raise CLIError(str(exc), exit_code=ExitCode.CONFIG_ERROR) from exc

    renderer = _get_renderer(args)
    events = EventBus()
    events.subscribe(renderer.on_event)

    run_id = generate_run_id()
    logging_handle = setup_logging(
        config["observability"],
        run_id=run_id,
        level="DEBUG" if args.verbose else None,
    )
    try:
        orchestrator = build_orchestrator_from_config(
            config, declaration=declaration, events=events, cwd=_repo_root(args)
        )
        outcome = asyncio.run(orchestrator.execute(trigger, run_id=run_id))
    except TriggerNotAdmittedError as exc:
        if args.json:
            _emit_json({"command": "run", "admitted": False, "trigger": trigger.to_dict()})
        else:
            renderer.text(f"skipped: {exc}")
        return ExitCode.SUCCESS
    finally:
        logging_handle.shutdown()

    exit_code = _exit_code_for(outcome)
    if args.json:
        _emit_json({"command": "run", "admitted": True, **outcome.to_dict()})
        return exit_code

    _render_outcome(renderer, outcome, log_path=logging_handle.log_path)
    return exit_code


def _cmd_serve(args: argparse.Namespace) -> int:
    overrides: dict[str, object] = {"pipeline.max_parallel_jobs": args.max_parallel}
    config = _load_effective_config(args, overrides)
    declaration = _load_declaration(config)

    renderer = _get_renderer(args)
    events = EventBus()
    events.subscribe(renderer.on_event)

    def _report(payload: dict[str, Any]) -> None:
        if args.json:
            _emit_json({"command": "serve", **payload})
        elif "error" in payload:
            renderer.text(f"line {payload['line']} rejected: {payload['error']}")
        elif not payload["admitted"]:
            renderer.text(f"skipped: {payload['reason']}")
        else:
            run = payload["run"]
            renderer.kv(f"{run['id']} {run['lane']}", renderer.status(run["status"]))

    # One log file for the whole session; each line still carries its run_id.
    logging_handle = setup_logging(
        config["observability"],
        run_id=generate_run_id(),
        level="DEBUG" if args.verbose else None,
    )
    try:
        orchestrator = build_orchestrator_from_config(
            config, declaration=declaration, events=events, cwd=_repo_root(args)
        )
        outcomes = asyncio.run(serve_triggers(orchestrator, sys.stdin, report=_report))
    finally:
        logging_handle.shutdown()

    if any(outcome.status is RunStatus.FAILED for outcome in outcomes):
        return ExitCode.RUN_FAILED
    return ExitCode.SUCCESS


def _cmd_matrix(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    declaration = _load_declaration(config)
    trigger = None
    if args.event:
        trigger = TriggerMetadata(kind=args.event, ref="matrix-preview")
    jobs = expand(declaration, trigger)

    if args.json:
        _emit_json({"command": "matrix", "jobs": [job.to_dict() for job in jobs]})
        return ExitCode.SUCCESS

    renderer = _get_renderer(args)
    renderer.table(
        ("#", "group", "timeout", "test"),
        [
            (str(job.index), job.group, f"{job.timeout_seconds / 60:g}m", job.name)
            for job in jobs
        ],
    )
    renderer.text(f"\nJobs: {len(jobs)}")
    return ExitCode.SUCCESS


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    redacted = redact_config(config)

    payload: dict[str, object] = {
        "command": "config",
        "active_profile": args.profile,
        "config": redacted,
    }

    if args.json:
        _emit_json(payload)
        return ExitCode.SUCCESS

    renderer = _get_renderer(args)
    renderer.kv("Active profile", args.profile or "(default)")
    renderer.text(json.dumps(redacted, indent=2, sort_keys=True, ensure_ascii=False))
    return ExitCode.SUCCESS


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=args.no_color, verbose=args.verbose)


def _render_outcome(renderer: CLIRenderer, outcome: RunOutcome, *, log_path: Path) -> None:
    run = outcome.run
    renderer.kv("Run ID", run.id)
    renderer.kv("Lane", run.lane)
    renderer.kv("Status", renderer.status(run.status.value))
    if outcome.artifact is not None:
        artifact = outcome.artifact
        renderer.kv("Artifact", f"{artifact.sha256[:12]} ({artifact.size_bytes} bytes)")
    renderer.table(
        ("job", "group", "status", "coverage"),
        [
            (
                result.job_name,
                result.group,
                renderer.status(result.status.value),
                "reported" if result.job_name in outcome.reported else "-",
            )
            for result in outcome.results
        ],
        title="Jobs:",
    )
    counts = {key: value for key, value in outcome.status_counts().items() if value}
    if counts:
        renderer.kv("\nJob counts", counts)
    if outcome.errors:
        renderer.section("Errors:")
        renderer.items(
            [
                f"[{error.stage}] {error.message}" if error.job_name is None
                else f"[{error.stage}] {error.job_name}: {error.kind}"
                for error in outcome.errors
            ]
        )
    renderer.kv("Log", log_path)


def _exit_code_for(outcome: RunOutcome) -> int:
    if outcome.status is RunStatus.SUCCEEDED:
        return ExitCode.SUCCESS
    if outcome.status is RunStatus.CANCELLED:
        return ExitCode.RUN_CANCELLED
    return ExitCode.RUN_FAILED


def _repo_root(args: argparse.Namespace) -> Path:
    candidate = Path(args.repo_root).expanduser().resolve()
    if not candidate.is_dir():
        raise CLIError(
            f"repo root is not a directory: {candidate}", exit_code=ExitCode.CONFIG_ERROR
        )
    return candidate


def _load_effective_config(
    args: argparse.Namespace,
    overrides: Mapping[str, object] | None = None,
) -> dict[str, Any]:
    cli_overrides = dict(overrides or {})
    matrix_path = getattr(args, "matrix_path", None)
    if matrix_path is not None:
        # CLI paths are relative to the working directory, not the config file.
        cli_overrides["pipeline.matrix_file"] = str(Path(matrix_path).expanduser().resolve())
    try:
        return load_config(args.config_path, profile=args.profile, cli_overrides=cli_overrides)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=ExitCode.CONFIG_ERROR) from exc


def _load_declaration(config: Mapping[str, Any]) -> MatrixDeclaration:
    try:
        return load_matrix(config["pipeline"]["matrix_file"])
    except MatrixDeclarationError as exc:
        raise CLIError(str(exc), exit_code=ExitCode.CONFIG_ERROR) from exc


__all__ = ["CLIError", "build_parser", "run_cli"]
