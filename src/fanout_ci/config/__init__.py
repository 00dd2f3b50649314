"""Config loading, validation, and redacted dumps for ``fanout.toml``."""

from fanout_ci.config.loader import ConfigLoadError, dump_effective_config, load_config
from fanout_ci.config.schema import (
    ConfigIssue,
    ConfigValidationError,
    FanoutConfig,
    default_config,
    redact_config,
    validate_config,
)

__all__ = [
    "ConfigIssue",
    "ConfigLoadError",
    "ConfigValidationError",
    "FanoutConfig",
    "default_config",
    "dump_effective_config",
    "load_config",
    "redact_config",
    "validate_config",
]
