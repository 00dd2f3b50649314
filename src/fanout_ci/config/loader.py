"""Load ``fanout.toml`` and layer profile, environment and CLI overrides on top.

Later layers win: defaults, file, profile, ``FANOUT_*`` environment, CLI.
Relative paths resolve against the directory holding the config file.
"""

from __future__ import annotations

import json
import os
import shlex
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Final

from fanout_ci.config.schema import (
    ENV_PREFIX,
    SETTINGS,
    FanoutConfig,
    Kind,
    Setting,
    apply_profile,
    default_config,
    merge_config,
    redact_config,
    validate_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "fanout.toml"
PROFILE_ENV: Final[str] = f"{ENV_PREFIX}PROFILE"

_TRUE: Final[frozenset[str]] = frozenset({"1", "true", "yes", "on"})
_FALSE: Final[frozenset[str]] = frozenset({"0", "false", "no", "off"})
_BY_PATH: Final[dict[str, Setting]] = {setting.path: setting for setting in SETTINGS}


class ConfigLoadError(ValueError):
    """The config file or one of its overrides could not be read."""


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> FanoutConfig:
    """Return the validated effective config.

    Without ``config_path`` a ``fanout.toml`` in the working directory is used
    when present; an explicit path that does not exist is an error.
    """

    explicit = config_path is not None
    path = Path(config_path if explicit else DEFAULT_CONFIG_FILE).expanduser().resolve()
    env = os.environ if environ is None else environ

    config = validate_config(merge_config(default_config(), _read_toml(path, required=explicit)))
    selected = (profile or env.get(PROFILE_ENV) or "").strip()
    if selected:
        config = apply_profile(config, selected)
    config = merge_config(config, _env_overrides(env))
    config = merge_config(config, _cli_overrides(cli_overrides or {}))
    return _resolve_paths(validate_config(config), path.parent)


def dump_effective_config(config: Mapping[str, Any]) -> str:
    return json.dumps(redact_config(config), sort_keys=True, indent=2, ensure_ascii=False)


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except FileNotFoundError:
        if required:
            raise ConfigLoadError(f"config file not found: {path}") from None
        return {}
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"cannot read {path}: {exc}") from exc


def _env_overrides(environ: Mapping[str, str]) -> dict[str, dict[str, Any]]:
    overrides: dict[str, dict[str, Any]] = {}
    for setting in SETTINGS:
        raw = environ.get(setting.env_name)
        if raw is None or setting.section == "meta":
            continue
        overrides.setdefault(setting.section, {})[setting.key] = _parse_env(setting, raw.strip())
    return overrides


def _parse_env(setting: Setting, raw: str) -> Any:
    where = f"{setting.env_name} ({setting.path})"
    try:
        if setting.kind in (Kind.ARGV, Kind.TRIGGERS):
            return shlex.split(raw)
        if setting.kind is Kind.COUNT:
            return int(raw)
        if setting.kind is Kind.SECONDS:
            return float(raw)
    except ValueError as exc:
        raise ConfigLoadError(f"{where}: cannot parse {raw!r}: {exc}") from exc
    if setting.kind is Kind.FLAG:
        if raw.lower() in _TRUE:
            return True
        if raw.lower() in _FALSE:
            return False
        raise ConfigLoadError(f"{where}: expected one of {', '.join(sorted(_TRUE | _FALSE))}")
    return raw


def _cli_overrides(overrides: Mapping[str, object]) -> dict[str, dict[str, Any]]:
    nested: dict[str, dict[str, Any]] = {}
    for dotted, value in overrides.items():
        if value is None:
            continue
        setting = _BY_PATH.get(dotted)
        if setting is None:
            raise ConfigLoadError(f"unknown override {dotted!r}")
        nested.setdefault(setting.section, {})[setting.key] = value
    return nested


def _resolve_paths(config: FanoutConfig, base_dir: Path) -> FanoutConfig:
    for setting in SETTINGS:
        if setting.kind is not Kind.PATH:
            continue
        candidate = Path(os.path.expandvars(config[setting.section][setting.key])).expanduser()
        if not candidate.is_absolute():
            candidate = base_dir / candidate
        config[setting.section][setting.key] = Path(os.path.normpath(candidate)).as_posix()
    return config


__all__ = ["ConfigLoadError", "dump_effective_config", "load_config"]
