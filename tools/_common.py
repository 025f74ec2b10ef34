"""Shared types for the tools package."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from cancellation import CancellationToken
from vfs import VirtualFS

if TYPE_CHECKING:
    from git_sync import GitSyncCoordinator
    from shell.runtime import ShellRuntime


@dataclass
class ToolCall:
    """A structured request from the model. arguments may be a dict or a JSON string."""
    id: str
    name: str
    arguments: Any = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ToolCall":
        return cls(id=d.get("id", ""), name=d.get("name", ""), arguments=d.get("arguments") or {})


@dataclass
class ToolResult:
    """Result from executing a tool"""
    call_id: str
    is_error: bool
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def error(self) -> Optional[str]:
        return self.payload.get("error") if self.is_error else None

    def to_dict(self) -> Dict[str, Any]:
        return {"call_id": self.call_id, "is_error": self.is_error, "payload": self.payload}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ToolResult":
        return cls(call_id=d.get("call_id", ""), is_error=bool(d.get("is_error")), payload=d.get("payload") or {})


def ok(payload: Optional[Dict[str, Any]] = None) -> ToolResult:
    """Successful handler result. The executor fills in call_id."""
    return ToolResult(call_id="", is_error=False, payload=payload or {})


def fail(message: str, **extra: Any) -> ToolResult:
    """Failed handler result carrying an error message plus optional structured fields."""
    return ToolResult(call_id="", is_error=True, payload=dict(extra, error=message))


CANCELLED_MESSAGE = "Tool call cancelled before it completed"


def cancelled_result(call_id: str) -> ToolResult:
    return ToolResult(call_id=call_id, is_error=True, payload={"error": CANCELLED_MESSAGE, "cancelled": True})


# ============================================================
# Build pipeline collaborator
# ============================================================

@dataclass
class BuildResult:
    errors: List[str] = field(default_factory=list)
    output_files: List[str] = field(default_factory=list)


class BuildPipeline(ABC):
    """External bundler. Only the signature matters to the tools."""

    @abstractmethod
    async def build(self, entry_points: List[str], vfs: VirtualFS) -> BuildResult: ...


@dataclass
class ToolContext:
    """Everything a handler may touch for one project."""
    vfs: VirtualFS
    shell: "ShellRuntime"
    git: Optional["GitSyncCoordinator"] = None
    # Directory handed to the git coordinator. CliGitBackend needs the disk path
    # of a LocalFS project; a MemoryFS project has no git with that backend.
    project_dir: str = "."
    builder: Optional[BuildPipeline] = None
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
