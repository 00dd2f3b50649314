"""Settings table and validation for ``fanout.toml``.

Every setting is declared once in ``SETTINGS``. Defaults, validation, the
``FANOUT_<SECTION>_<KEY>`` environment bindings and path resolution are all
driven from that table. The defaults describe the bitcoin integration
workflow: one ``docker build`` of the node image, ``docker save`` to a
tarball, then a ``docker build -o`` per test that leaves ``lcov.info`` in the
job's output directory.
"""

from __future__ import annotations

import copy
import math
import re
import string
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Final

from fanout_ci.constants import (
    ARTIFACTS_DIR,
    CONFIG_SCHEMA_VERSION,
    COVERAGE_DIR,
    DEFAULT_ARTIFACT_NAME,
    DEFAULT_COVERAGE_PATH,
    DEFAULT_LANE_TEMPLATE,
    DEFAULT_PIPELINE_NAME,
    LOG_DIR,
    PULL_REQUEST_TRIGGER,
    WORK_DIR,
)

FanoutConfig = dict[str, Any]

ENV_PREFIX: Final[str] = "FANOUT_"
REDACTED_VALUE: Final[str] = "<redacted>"


class Kind(StrEnum):
    TEXT = "text"
    PATH = "path"
    FILE_NAME = "file_name"
    RELATIVE_PATH = "relative_path"
    TEMPLATE = "template"
    CHOICE = "choice"
    COUNT = "count"
    SECONDS = "seconds"
    FLAG = "flag"
    ARGV = "argv"
    TRIGGERS = "triggers"


@dataclass(frozen=True, slots=True)
class Setting:
    """One ``[section] key`` entry of the config file."""

    section: str
    key: str
    kind: Kind
    default: Any
    placeholders: frozenset[str] = frozenset()
    required_placeholders: frozenset[str] = frozenset()
    choices: tuple[str, ...] = ()
    allow_empty: bool = False

    @property
    def path(self) -> str:
        return f"{self.section}.{self.key}"

    @property
    def env_name(self) -> str:
        return f"{ENV_PREFIX}{self.section.upper()}_{self.key.upper()}"


_BUILD_FIELDS = frozenset({"artifact", "image_tag", "run_id"})
_SANDBOX_FIELDS = frozenset({"artifact", "image_tag", "job_name", "output_dir"})
_UPLOAD_FIELDS = frozenset({"coverage_file", "job_name", "job_slug"})

SETTINGS: Final[tuple[Setting, ...]] = (
    Setting("meta", "schema_version", Kind.COUNT, CONFIG_SCHEMA_VERSION),
    Setting("pipeline", "name", Kind.TEXT, DEFAULT_PIPELINE_NAME),
    Setting(
        "pipeline",
        "lane_template",
        Kind.TEMPLATE,
        DEFAULT_LANE_TEMPLATE,
        placeholders=frozenset({"pipeline", "ref"}),
        required_placeholders=frozenset({"ref"}),
    ),
    Setting("pipeline", "admitted_triggers", Kind.TRIGGERS, [PULL_REQUEST_TRIGGER]),
    Setting("pipeline", "cancel_on_supersede_triggers", Kind.TRIGGERS, [PULL_REQUEST_TRIGGER]),
    Setting("pipeline", "matrix_file", Kind.PATH, "samples/matrix/bitcoin-integration.yaml"),
    Setting("pipeline", "max_parallel_jobs", Kind.COUNT, 0),
    Setting(
        "build",
        "command",
        Kind.ARGV,
        [
            "docker",
            "build",
            "-f",
            "./.github/actions/bitcoin-int-tests/Dockerfile.generic.bitcoin-tests",
            "-t",
            "{image_tag}",
            ".",
        ],
        placeholders=_BUILD_FIELDS,
    ),
    Setting(
        "build",
        "export_command",
        Kind.ARGV,
        ["docker", "save", "-o", "{artifact}", "{image_tag}"],
        placeholders=_BUILD_FIELDS,
    ),
    Setting("build", "image_tag", Kind.TEXT, "stacks-node:integrations"),
    Setting("build", "artifact_name", Kind.FILE_NAME, DEFAULT_ARTIFACT_NAME),
    Setting("build", "timeout_seconds", Kind.SECONDS, 3600.0),
    Setting(
        "sandbox",
        "setup_command",
        Kind.ARGV,
        ["docker", "load", "-i", "{artifact}"],
        placeholders=_SANDBOX_FIELDS,
        allow_empty=True,
    ),
    Setting(
        "sandbox",
        "command",
        Kind.ARGV,
        [
            "docker",
            "build",
            "-o",
            "{output_dir}",
            "--build-arg",
            "test_name={job_name}",
            "-f",
            "./.github/actions/bitcoin-int-tests/Dockerfile.bitcoin-tests",
            ".",
        ],
        placeholders=_SANDBOX_FIELDS,
    ),
    Setting("sandbox", "coverage_path", Kind.RELATIVE_PATH, DEFAULT_COVERAGE_PATH),
    Setting("sandbox", "inherit_host_env", Kind.FLAG, True),
    Setting("coverage", "sink", Kind.CHOICE, "directory", choices=("directory", "command")),
    Setting("coverage", "output_dir", Kind.PATH, COVERAGE_DIR.as_posix()),
    Setting(
        "coverage",
        "upload_command",
        Kind.ARGV,
        ["codecov", "--file", "{coverage_file}", "--name", "{job_name}"],
        placeholders=_UPLOAD_FIELDS,
    ),
    Setting("paths", "artifact_root", Kind.PATH, ARTIFACTS_DIR.as_posix()),
    Setting("paths", "work_root", Kind.PATH, WORK_DIR.as_posix()),
    Setting(
        "observability",
        "log_level",
        Kind.CHOICE,
        "INFO",
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
    ),
    Setting("observability", "log_dir", Kind.PATH, LOG_DIR.as_posix()),
    Setting("observability", "log_to_stdout", Kind.FLAG, False),
    Setting("observability", "redact_secrets", Kind.FLAG, True),
)

SECTIONS: Final[tuple[str, ...]] = tuple(dict.fromkeys(s.section for s in SETTINGS))
_BY_SECTION: Final[dict[str, dict[str, Setting]]] = {
    section: {s.key: s for s in SETTINGS if s.section == section} for section in SECTIONS
}
# Profiles may override anything except the schema version.
_OVERLAY_SECTIONS: Final[tuple[str, ...]] = tuple(s for s in SECTIONS if s != "meta")

DEFAULT_PROFILES: Final[dict[str, dict[str, Any]]] = {
    "local": {"coverage": {"sink": "directory"}},
    "ci": {"coverage": {"sink": "command"}, "observability": {"log_to_stdout": True}},
}

_TRIGGER_KIND: Final[re.Pattern[str]] = re.compile(r"[a-z][a-z0-9_]*")
_PROFILE_NAME: Final[re.Pattern[str]] = re.compile(r"[a-z][a-z0-9_-]*")
_SECRET_WORDS: Final[frozenset[str]] = frozenset(
    {"auth", "credential", "credentials", "passwd", "password", "private", "secret", "token"}
)
_FORMATTER: Final[string.Formatter] = string.Formatter()


@dataclass(frozen=True, slots=True)
class ConfigIssue:
    path: str
    message: str


class ConfigValidationError(ValueError):
    """Raised with every problem found in a config document, sorted by path."""

    def __init__(self, issues: Sequence[ConfigIssue]) -> None:
        self.issues = tuple(issues)
        lines = "\n".join(f"- {issue.path}: {issue.message}" for issue in self.issues)
        super().__init__(f"invalid config:\n{lines}")


def default_config() -> FanoutConfig:
    config: FanoutConfig = {section: {} for section in SECTIONS}
    for setting in SETTINGS:
        config[setting.section][setting.key] = copy.deepcopy(setting.default)
    config["profiles"] = copy.deepcopy(DEFAULT_PROFILES)
    return config


def validate_config(raw: Mapping[str, Any]) -> FanoutConfig:
    """Return a normalised copy of ``raw`` or raise ``ConfigValidationError``.

    Profile overlays are checked too, but only for the keys they set.
    """

    issues: list[ConfigIssue] = []
    config = _check_tables(raw, "", issues, partial=False)

    version = config.get("meta", {}).get("schema_version")
    if version is not None and version != CONFIG_SCHEMA_VERSION:
        issues.append(
            ConfigIssue(
                "meta.schema_version",
                f"unsupported schema version {version}; "
                f"this release reads version {CONFIG_SCHEMA_VERSION}",
            )
        )

    profiles = raw.get("profiles", {})
    config["profiles"] = {}
    if not isinstance(profiles, Mapping):
        issues.append(ConfigIssue("profiles", "expected a table of profiles"))
        profiles = {}
    for name, overlay in profiles.items():
        path = f"profiles.{name}"
        if not isinstance(name, str) or not _PROFILE_NAME.fullmatch(name):
            issues.append(ConfigIssue(path, "profile names must match ^[a-z][a-z0-9_-]*$"))
        elif not isinstance(overlay, Mapping):
            issues.append(ConfigIssue(path, "expected a table"))
        else:
            config["profiles"][name] = _check_tables(overlay, path, issues, partial=True)

    if issues:
        raise ConfigValidationError(sorted(issues, key=lambda issue: issue.path))
    return config


def apply_profile(config: Mapping[str, Any], name: str) -> FanoutConfig:
    profiles = config.get("profiles", {})
    if name not in profiles:
        raise ConfigValidationError([ConfigIssue("profiles", f"profile {name!r} is not defined")])
    return merge_config(config, profiles[name])


def merge_config(base: Mapping[str, Any], overlay: Mapping[str, Any]) -> FanoutConfig:
    """Deep-merge tables; any non-table value in ``overlay`` (lists included) replaces."""

    merged = copy.deepcopy(dict(base))
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, Mapping):
            merged[key] = merge_config(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def redact_config(value: Any, key: str | None = None) -> Any:
    if key is not None and _looks_secret(key):
        return REDACTED_VALUE
    if isinstance(value, Mapping):
        return {str(k): redact_config(v, str(k)) for k, v in value.items()}
    if isinstance(value, list):
        return [redact_config(item) for item in value]
    return value


def _looks_secret(key: str) -> bool:
    words = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", key).lower()
    parts = [part for part in re.split(r"[^a-z0-9]+", words) if part]
    return "apikey" in "".join(parts) or any(part in _SECRET_WORDS for part in parts)


def _check_tables(
    raw: Mapping[str, Any], prefix: str, issues: list[ConfigIssue], *, partial: bool
) -> FanoutConfig:
    sections = _OVERLAY_SECTIONS if partial else SECTIONS
    known = set(sections) if partial else {*sections, "profiles"}
    for name in set(raw) - known:
        issues.append(_unknown(_join(prefix, str(name)), str(name)))

    checked: FanoutConfig = {}
    for section in sections:
        path = _join(prefix, section)
        table = raw.get(section)
        if table is None:
            if not partial:
                issues.append(ConfigIssue(path, "missing section"))
            continue
        if not isinstance(table, Mapping):
            issues.append(ConfigIssue(path, f"expected a table, got {type(table).__name__}"))
            continue

        settings = _BY_SECTION[section]
        for key in set(table) - set(settings):
            issues.append(_unknown(f"{path}.{key}", str(key)))
        values: dict[str, Any] = {}
        for key, setting in settings.items():
            if key not in table:
                if not partial:
                    issues.append(ConfigIssue(f"{path}.{key}", "missing required field"))
                continue
            try:
                values[key] = _coerce(setting, table[key])
            except ValueError as exc:
                issues.append(ConfigIssue(f"{path}.{key}", str(exc)))
        checked[section] = values
    return checked


def _coerce(setting: Setting, value: object) -> Any:
    kind = setting.kind
    if kind is Kind.FLAG:
        if not isinstance(value, bool):
            raise ValueError(f"expected true or false, got {type(value).__name__}")
        return value
    if kind is Kind.COUNT:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"expected an integer, got {type(value).__name__}")
        if value < 0:
            raise ValueError("must be >= 0")
        return value
    if kind is Kind.SECONDS:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"expected a number of seconds, got {type(value).__name__}")
        if not math.isfinite(value) or value <= 0:
            raise ValueError("must be a finite number > 0")
        return float(value)
    if kind is Kind.ARGV:
        if not isinstance(value, list) or not (value or setting.allow_empty):
            raise ValueError("expected a non-empty list of argv strings")
        argv = []
        for index, item in enumerate(value):
            try:
                argv.append(_template(setting, item))
            except ValueError as exc:
                raise ValueError(f"argument {index}: {exc}") from exc
        return argv
    if kind is Kind.TRIGGERS:
        if not isinstance(value, list):
            raise ValueError("expected a list of trigger kinds")
        kinds: list[str] = []
        for item in value:
            text = _text(item)
            if not _TRIGGER_KIND.fullmatch(text):
                raise ValueError(f"trigger kind {text!r} must match ^[a-z][a-z0-9_]*$")
            if text not in kinds:
                kinds.append(text)
        return kinds

    text = _text(value)
    if kind is Kind.TEMPLATE:
        return _template(setting, text)
    if kind is Kind.CHOICE and text not in setting.choices:
        raise ValueError(f"{text!r} is not one of: {', '.join(setting.choices)}")
    if kind is Kind.FILE_NAME and ("/" in text or "\\" in text or text in {".", ".."}):
        raise ValueError("must be a bare file name")
    if kind is Kind.RELATIVE_PATH and (text.startswith("/") or ".." in text.split("/")):
        raise ValueError("must stay inside the job output directory")
    return text


def _text(value: object) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError("expected a non-empty string")
    if "\x00" in value:
        raise ValueError("must not contain NUL bytes")
    return value.strip()


def _template(setting: Setting, value: object) -> str:
    text = _text(value)
    try:
        used = {name for _, name, _, _ in _FORMATTER.parse(text) if name is not None}
    except ValueError as exc:
        raise ValueError(f"invalid template {text!r}: {exc}") from exc
    unknown = sorted(used - setting.placeholders)
    if unknown:
        raise ValueError(
            f"unknown placeholder(s) {', '.join(unknown)}; "
            f"allowed: {', '.join(sorted(setting.placeholders))}"
        )
    missing = sorted(setting.required_placeholders - used)
    if missing:
        raise ValueError(f"must reference {{{missing[0]}}}")
    return text


def _unknown(path: str, key: str) -> ConfigIssue:
    if _looks_secret(key):
        return ConfigIssue(path, "looks like a credential; supply secrets through the environment")
    return ConfigIssue(path, "unknown field")


def _join(prefix: str, name: str) -> str:
    return f"{prefix}.{name}" if prefix else name


__all__ = [
    "ENV_PREFIX",
    "SETTINGS",
    "ConfigIssue",
    "ConfigValidationError",
    "FanoutConfig",
    "Kind",
    "Setting",
    "apply_profile",
    "default_config",
    "merge_config",
    "redact_config",
    "validate_config",
]
