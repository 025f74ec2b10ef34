"""
Sandboxed shell runtime.
Executes a fixed registry of builtins against the VFS and a synthetic environment.
"""

from shell.runtime import (  # noqa: F401
    COMMAND_NOT_FOUND,
    CommandContext,
    ShellCommand,
    ShellResult,
    ShellRuntime,
    ShellRuntimeError,
    split_compound,
)
from shell.builtins import BUILTIN_COMMANDS, default_registry  # noqa: F401
