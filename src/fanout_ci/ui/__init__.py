"""Command-line user interface."""

from fanout_ci.ui.cli import CLIError, build_parser, run_cli
from fanout_ci.ui.render import CLIRenderer, create_renderer

__all__ = ["CLIError", "CLIRenderer", "build_parser", "create_renderer", "run_cli"]
