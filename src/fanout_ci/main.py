"""Executable CLI entrypoint for ``fanout_ci``."""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence


class ExitCode(IntEnum):
    """Process exit codes, stable across releases."""

    SUCCESS = 0
    RUN_FAILED = 1
    CONFIG_ERROR = 2
    RUN_CANCELLED = 3
    INTERNAL_ERROR = 4


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Entrypoint used by ``python -m fanout_ci`` and the ``fanout`` script.

    Command handlers report expected failures through ``CLIError``; anything
    reaching this function is either argparse exiting, Ctrl-C, or a bug.
    """

    try:
        from fanout_ci.ui.cli import run_cli

        return int(run_cli(argv))
    except SystemExit as exc:
        if exc.code is None or exc.code == 0:
            return int(ExitCode.SUCCESS)
        # argparse exits with 2 on usage errors, which is our config error code too.
        return int(exc.code) if isinstance(exc.code, int) else int(ExitCode.CONFIG_ERROR)
    except KeyboardInterrupt:
        sys.stderr.write("interrupted\n")
        return int(ExitCode.RUN_CANCELLED)
    except Exception as exc:  # noqa: BLE001 - CLI boundary.
        if _is_config_error(exc):
            sys.stderr.write(f"error: {exc}\n")
            return int(ExitCode.CONFIG_ERROR)
        traceback.print_exception(exc, file=sys.stderr)
        return int(ExitCode.INTERNAL_ERROR)


def _is_config_error(exc: BaseException) -> bool:
    from fanout_ci.config import ConfigLoadError, ConfigValidationError
    from fanout_ci.domain.errors import MatrixDeclarationError

    current: BaseException | None = exc
    while current is not None:
        if isinstance(current, (ConfigLoadError, ConfigValidationError, MatrixDeclarationError)):
            return True
        current = current.__cause__
    return False


__all__ = ["ExitCode", "cli_entrypoint"]
