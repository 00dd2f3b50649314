"""External collaborators: the build recipe executor and the per-job execution sandbox."""

from fanout_ci.sandbox.build import BuildRecipe, CommandBuildRecipe
from fanout_ci.sandbox.process import CommandResult, build_environment, render_argv, run_command
from fanout_ci.sandbox.runtime import CommandSandbox, ExecutionSandbox, SandboxOutcome

__all__ = [
    "BuildRecipe",
    "CommandBuildRecipe",
    "CommandResult",
    "CommandSandbox",
    "ExecutionSandbox",
    "SandboxOutcome",
    "build_environment",
    "render_argv",
    "run_command",
]
