"""Stable constants shared across pipeline planes."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
MATRIX_SCHEMA_VERSION: Final[int] = 1

# Default pipeline identity.
DEFAULT_PIPELINE_NAME: Final[str] = "stacks-bitcoin-integration-tests"
DEFAULT_LANE_TEMPLATE: Final[str] = "{pipeline}-{ref}"
PULL_REQUEST_TRIGGER: Final[str] = "pull_request"

# Matrix group admission keyword for groups that run regardless of trigger kind.
RUN_IF_ALWAYS: Final[str] = "always"

# Default runtime paths (relative to the config file unless overridden).
ARTIFACTS_DIR: Final[PurePosixPath] = PurePosixPath(".fanout/artifacts")
WORK_DIR: Final[PurePosixPath] = PurePosixPath(".fanout/work")
COVERAGE_DIR: Final[PurePosixPath] = PurePosixPath(".fanout/coverage")
LOG_DIR: Final[PurePosixPath] = PurePosixPath(".fanout/logs")

DEFAULT_ARTIFACT_NAME: Final[str] = "integration-image.tar"
DEFAULT_COVERAGE_PATH: Final[str] = "lcov.info"

__all__ = [
    "ARTIFACTS_DIR",
    "CONFIG_SCHEMA_VERSION",
    "COVERAGE_DIR",
    "DEFAULT_ARTIFACT_NAME",
    "DEFAULT_COVERAGE_PATH",
    "DEFAULT_LANE_TEMPLATE",
    "DEFAULT_PIPELINE_NAME",
    "LOG_DIR",
    "MATRIX_SCHEMA_VERSION",
    "PULL_REQUEST_TRIGGER",
    "RUN_IF_ALWAYS",
    "WORK_DIR",
]
