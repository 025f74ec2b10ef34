"""Shell runtime: parses a command line and dispatches it to registered builtins."""

import logging
import shlex
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from cancellation import CancellationToken, OperationCancelled
from config import shell_config
from vfs import VirtualFS, VFSError, display_path, normalize_path

logger = logging.getLogger(__name__)

COMMAND_NOT_FOUND = 127
SYNTAX_ERROR = 2


class ShellRuntimeError(Exception):
    """Runtime misconfiguration (e.g. no builtins registered). Never raised for command failures."""


@dataclass
class ShellResult:
    """Result of a command or command line."""
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    new_cwd: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {"stdout": self.stdout, "stderr": self.stderr, "exit_code": self.exit_code}


@dataclass
class CommandContext:
    """Everything a builtin may touch: the VFS and the synthetic environment."""
    vfs: VirtualFS
    cwd: str
    env: Dict[str, str]
    user: str
    stdin: Optional[str] = None
    registry: Dict[str, "ShellCommand"] = field(default_factory=dict)


class ShellCommand(ABC):
    """A single builtin command."""
    name: str = ""
    description: str = ""
    usage: str = ""

    @abstractmethod
    async def execute(self, args: List[str], ctx: CommandContext) -> ShellResult:
        """Run the command. Exceptions are converted to exit code 1 by the runtime."""


def split_compound(command_line: str) -> List[Tuple[str, Optional[str]]]:
    """Split on &&, ||, ; and | outside quotes.

    Returns [(segment, operator_after_segment)]; the last operator is None.
    """
    segments: List[Tuple[str, Optional[str]]] = []
    current = ""
    quote = ""
    i = 0
    while i < len(command_line):
        ch = command_line[i]
        nxt = command_line[i + 1] if i + 1 < len(command_line) else ""
        if quote:
            current += ch
            if ch == quote:
                quote = ""
        elif ch in ("'", '"'):
            quote = ch
            current += ch
        elif ch == "\\" and nxt:
            current += ch + nxt
            i += 1
        elif (ch == "&" and nxt == "&") or (ch == "|" and nxt == "|"):
            if current.strip():
                segments.append((current.strip(), ch + nxt))
            current = ""
            i += 1
        elif ch in ("|", ";"):
            if current.strip():
                segments.append((current.strip(), ch))
            current = ""
        else:
            current += ch
        i += 1
    if current.strip():
        segments.append((current.strip(), None))
    return segments


class ShellRuntime:
    """Sandboxed interpreter over a VFS.

    Execution is single-shot: cwd is passed on every call and nothing (cwd
    changes, variables) survives between calls. A `cd` only affects the rest
    of the same command line.
    """

    def __init__(
        self,
        vfs: VirtualFS,
        registry: Optional[Dict[str, ShellCommand]] = None,
        env: Optional[Dict[str, str]] = None,
        user: Optional[str] = None,
    ):
        from shell.builtins import default_registry

        self.vfs = vfs
        self.registry: Dict[str, ShellCommand] = default_registry() if registry is None else registry
        self.env: Dict[str, str] = dict(shell_config.env if env is None else env)
        self.user = user or shell_config.user

    def available_commands(self) -> List[Dict[str, str]]:
        return [
            {"name": c.name, "description": c.description, "usage": c.usage}
            for c in sorted(self.registry.values(), key=lambda c: c.name)
        ]

    async def execute(
        self,
        command_line: str,
        cwd: str = "/",
        cancel_token: Optional[CancellationToken] = None,
    ) -> ShellResult:
        if not self.registry:
            raise ShellRuntimeError("Shell runtime has no registered commands")
        if not (command_line or "").strip():
            return ShellResult(stderr="No command specified", exit_code=SYNTAX_ERROR)

        cwd = normalize_path(cwd)
        segments = split_compound(command_line)
        stdout_parts: List[str] = []
        stderr_parts: List[str] = []
        last_exit = 0
        pipe_input: Optional[str] = None
        prev_op: Optional[str] = None

        for segment, op in segments:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            skip = (prev_op == "&&" and last_exit != 0) or (prev_op == "||" and last_exit == 0)
            if skip:
                prev_op = op
                pipe_input = None
                continue

            stdin = pipe_input if prev_op == "|" else None
            result = await self._execute_single(segment, cwd, stdin)
            if result.new_cwd is not None:
                cwd = result.new_cwd
            last_exit = result.exit_code
            if result.stderr:
                stderr_parts.append(result.stderr.rstrip("\n"))
            if op == "|":
                pipe_input = result.stdout
            else:
                pipe_input = None
                if result.stdout:
                    stdout_parts.append(result.stdout.rstrip("\n"))
            prev_op = op

        stdout = "\n".join(stdout_parts)
        stderr = "\n".join(stderr_parts)
        return ShellResult(
            stdout=stdout + ("\n" if stdout else ""),
            stderr=stderr + ("\n" if stderr else ""),
            exit_code=last_exit,
        )

    async def _execute_single(self, segment: str, cwd: str, stdin: Optional[str]) -> ShellResult:
        try:
            argv = shlex.split(segment)
        except ValueError as e:
            return ShellResult(stderr=f"syntax error: {e}", exit_code=SYNTAX_ERROR)
        if not argv:
            return ShellResult(stderr="No command specified", exit_code=SYNTAX_ERROR)

        name, args = argv[0], argv[1:]
        command = self.registry.get(name)
        if command is None:
            return ShellResult(stderr=f"{name}: command not found", exit_code=COMMAND_NOT_FOUND)

        env = dict(self.env)
        env["PWD"] = display_path(cwd)
        ctx = CommandContext(
            vfs=self.vfs, cwd=cwd, env=env, user=self.user, stdin=stdin, registry=self.registry,
        )
        try:
            return await command.execute(args, ctx)
        except (OperationCancelled, ShellRuntimeError):
            raise
        except VFSError as e:
            return ShellResult(stderr=f"{name}: {e}", exit_code=1)
        except Exception as e:
            logger.warning(f"Builtin {name} failed: {e}")
            return ShellResult(stderr=f"{name}: {e}", exit_code=1)
