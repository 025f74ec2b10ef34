"""Shared pytest fixtures: in-memory projects, a scripted model and a fake git backend."""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from agent.session import Session
from bedrock_service import Completion, ModelProvider
from cancellation import ensure_token
from git_sync import CommitInfo, GitBackend, GitStatus, GitSyncCoordinator
from shell.runtime import ShellRuntime
from tools._common import ToolCall, ToolContext
from tools.dispatch import ToolExecutor
from vfs import MemoryFS


class ScriptedProvider(ModelProvider):
    """Returns queued Completions in order (exceptions in the script are raised).

    block() makes the next complete() wait until release() or cancellation.
    """

    def __init__(self, script: Optional[List[Any]] = None):
        self.script: List[Any] = list(script or [])
        self.requests: List[List[Dict[str, Any]]] = []
        self.tools: List[Dict[str, Any]] = []
        self.system_prompts: List[Optional[str]] = []
        self._gate: Optional[asyncio.Event] = None
        self._entered: Optional[asyncio.Event] = None

    def add(self, *items: Any) -> None:
        self.script.extend(items)

    def block(self) -> None:
        self._gate = asyncio.Event()
        self._entered = asyncio.Event()

    def release(self) -> None:
        if self._gate is not None:
            self._gate.set()

    async def wait_entered(self) -> None:
        await asyncio.wait_for(self._entered.wait(), timeout=2)

    async def complete(self, history, tools, *, system_prompt=None, cancel_token=None):
        self.requests.append(history.to_dicts())
        self.tools = tools
        self.system_prompts.append(system_prompt)
        if self._gate is not None:
            self._entered.set()
            await ensure_token(cancel_token).run(self._gate.wait())
        if not self.script:
            return Completion(text="done")
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


def tool_turn(*calls: ToolCall) -> Completion:
    return Completion(tool_calls=list(calls))


class FakeGitBackend(GitBackend):
    """In-memory git plumbing. gate(op) makes that operation wait until the returned event is set."""

    def __init__(self, remote: str = "https://github.com/acme/app.git"):
        self.remotes: Dict[str, str] = {"origin": remote}
        self.calls: List[tuple] = []
        self.auth_seen: List[Any] = []
        self.failures: Dict[str, Exception] = {}
        self.gates: Dict[str, asyncio.Event] = {}
        self.status_result = GitStatus(branch="main", remotes=dict(self.remotes))
        self.commits: List[CommitInfo] = []
        self.repository = True

    def gate(self, op: str) -> asyncio.Event:
        self.gates[op] = asyncio.Event()
        return self.gates[op]

    async def _network(self, op, dir, auth):
        self.calls.append((op, dir))
        self.auth_seen.append(auth)
        gate = self.gates.get(op)
        if gate is not None:
            await gate.wait()
        failure = self.failures.pop(op, None)
        if failure is not None:
            raise failure

    async def clone(self, url, dir, auth):
        await self._network("clone", dir, auth)

    async def fetch(self, dir, remote, auth):
        await self._network("fetch", dir, auth)

    async def pull(self, dir, remote, branch, auth):
        await self._network("pull", dir, auth)

    async def push(self, dir, remote, branch, auth):
        await self._network("push", dir, auth)

    async def add(self, dir, paths):
        self.calls.append(("add", dir))

    async def commit(self, dir, message, author_name, author_email):
        sha = f"{len(self.commits) + 1:040x}"
        self.commits.insert(0, CommitInfo(sha=sha, message=message, author=f"{author_name} <{author_email}>"))
        self.calls.append(("commit", dir))
        self.status_result.changed_files = {}
        return sha

    async def status(self, dir):
        return self.status_result

    async def log(self, dir, depth):
        return self.commits[:depth]

    async def remote_url(self, dir, remote):
        return self.remotes.get(remote)

    async def is_repository(self, dir):
        return self.repository


@pytest.fixture
def vfs():
    return MemoryFS()


@pytest.fixture
def shell(vfs):
    return ShellRuntime(vfs)


@pytest.fixture
def git_backend():
    return FakeGitBackend()


@pytest.fixture
def git(git_backend):
    return GitSyncCoordinator(git_backend)


@pytest.fixture
def tool_context(vfs, shell, git):
    return ToolContext(vfs=vfs, shell=shell, git=git, project_dir="/proj")


@pytest.fixture
def executor(tool_context):
    return ToolExecutor(tool_context)


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def make_session(provider, executor):
    def _make(**options) -> Session:
        options.setdefault("model_timeout", 5)
        return Session("proj", provider, executor, **options)
    return _make
