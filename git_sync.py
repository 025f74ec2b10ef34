"""
Git sync coordinator.

Wraps clone/fetch/pull/push/commit for project directories, serializes
network operations per directory and resolves credentials per remote origin.
A second network operation on a directory that is already syncing fails
immediately with ConcurrentOperationError; nothing is queued or retried here.
"""

import asyncio
import base64
import json
import logging
import os
import posixpath
import re
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional
from urllib.parse import urlsplit

from cancellation import CancellationToken, ensure_token
from config import git_config

logger = logging.getLogger(__name__)

NETWORK_OPERATIONS = ("fetch", "pull", "push", "clone")


# ============================================================
# Errors
# ============================================================

class GitError(Exception):
    """Base class for git coordinator errors."""


class ConcurrentOperationError(GitError):
    """A network operation is already running for this directory."""

    def __init__(self, dir: str, active_operation: str, requested: str = ""):
        self.dir = dir
        self.active_operation = active_operation
        self.requested = requested
        super().__init__(f"Sync already in progress for {dir} ({active_operation})")


class AuthenticationRequiredError(GitError):
    """The remote needs credentials that are missing or were rejected."""

    def __init__(self, origin: str, rejected: bool = False):
        self.origin = origin
        self.rejected = rejected
        reason = "were rejected" if rejected else "are required"
        super().__init__(f"Credentials for {origin} {reason}")


class GitCommandError(GitError):
    """A git command exited non-zero."""

    def __init__(self, args: List[str], stderr: str, exit_code: int, auth_failure: bool = False):
        self.args_list = args
        self.stderr = stderr
        self.exit_code = exit_code
        self.auth_failure = auth_failure
        detail = (stderr or "").strip() or f"exit {exit_code}"
        super().__init__(f"git {args[0] if args else ''} failed: {detail}")


# ============================================================
# Credentials
# ============================================================

_DEFAULT_PORTS = {"https": 443, "http": 80}


def derive_origin(url: str) -> str:
    """scheme://host[:port] for a remote URL; default ports are dropped."""
    parts = urlsplit((url or "").strip())
    scheme = (parts.scheme or "").lower()
    host = (parts.hostname or "").lower()
    if not scheme or not host:
        raise ValueError(f"Not an http(s) remote URL: {url!r}")
    port = parts.port
    if port and port != _DEFAULT_PORTS.get(scheme):
        return f"{scheme}://{host}:{port}"
    return f"{scheme}://{host}"


def _origin_or_none(url: Optional[str]) -> Optional[str]:
    """Origin for http(s) remotes; None for scp-style SSH remotes and local paths."""
    try:
        return derive_origin(url) if url else None
    except ValueError:
        return None


@dataclass
class GitCredential:
    protocol: str
    host: str
    username: str
    password: str

    @property
    def origin(self) -> str:
        return derive_origin(f"{self.protocol}://{self.host}")

    def auth_header(self) -> str:
        token = base64.b64encode(f"{self.username}:{self.password}".encode()).decode()
        return f"Authorization: Basic {token}"


class CredentialStore:
    """Credentials keyed by origin."""

    def __init__(self, credentials: Optional[List[GitCredential]] = None):
        self._by_origin: Dict[str, GitCredential] = {}
        for cred in credentials or []:
            self.add(cred)

    def add(self, credential: GitCredential) -> None:
        self._by_origin[credential.origin] = credential

    def remove(self, origin: str) -> None:
        self._by_origin.pop(origin, None)

    def find(self, url: str) -> Optional[GitCredential]:
        origin = _origin_or_none(url)
        return self._by_origin.get(origin) if origin else None

    def origins(self) -> List[str]:
        return sorted(self._by_origin)

    @classmethod
    def load(cls, path: str) -> "CredentialStore":
        """Load a JSON list of {protocol, host, username, password}. Missing file -> empty store."""
        if not path or not os.path.exists(path):
            return cls()
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return cls([GitCredential(**{k: str(item.get(k, "")) for k in ("protocol", "host", "username", "password")})
                    for item in data])


# ============================================================
# Per-directory operation lock
# ============================================================

def normalize_dir(dir: str) -> str:
    return posixpath.normpath((dir or ".").replace("\\", "/"))


class GitOperationLock:
    """At most one network operation per directory. Busy directories reject, never queue."""

    def __init__(self) -> None:
        self._active: Dict[str, str] = {}

    def acquire(self, dir: str, operation: str) -> None:
        key = normalize_dir(dir)
        active = self._active.get(key)
        if active is not None:
            logger.info(f"Rejected git {operation} on {key}: {active} in progress")
            raise ConcurrentOperationError(key, active, operation)
        self._active[key] = operation

    def release(self, dir: str) -> None:
        self._active.pop(normalize_dir(dir), None)

    def active_operation(self, dir: str) -> Optional[str]:
        return self._active.get(normalize_dir(dir))

    @contextmanager
    def hold(self, dir: str, operation: str) -> Iterator[None]:
        self.acquire(dir, operation)
        try:
            yield
        finally:
            self.release(dir)


# ============================================================
# Git backend (plumbing collaborator)
# ============================================================

@dataclass
class GitStatus:
    branch: Optional[str] = None
    ahead: int = 0
    behind: int = 0
    # path -> 'M' | 'A' | 'D' | 'U'
    changed_files: Dict[str, str] = field(default_factory=dict)
    remotes: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "branch": self.branch,
            "ahead": self.ahead,
            "behind": self.behind,
            "changed_files": dict(self.changed_files),
            "remotes": dict(self.remotes),
        }


@dataclass
class CommitInfo:
    sha: str
    message: str
    author: str = ""
    date: str = ""


class GitBackend(ABC):
    """Performs the actual git work for a directory."""

    # True when dir must be a real directory on the local disk
    needs_disk = False

    @abstractmethod
    async def clone(self, url: str, dir: str, auth: Optional[GitCredential]) -> None: ...

    @abstractmethod
    async def fetch(self, dir: str, remote: str, auth: Optional[GitCredential]) -> None: ...

    @abstractmethod
    async def pull(self, dir: str, remote: str, branch: Optional[str], auth: Optional[GitCredential]) -> None: ...

    @abstractmethod
    async def push(self, dir: str, remote: str, branch: Optional[str], auth: Optional[GitCredential]) -> None: ...

    @abstractmethod
    async def add(self, dir: str, paths: List[str]) -> None: ...

    @abstractmethod
    async def commit(self, dir: str, message: str, author_name: str, author_email: str) -> str:
        """Stage everything and commit. Returns the new commit sha."""

    @abstractmethod
    async def status(self, dir: str) -> GitStatus: ...

    @abstractmethod
    async def log(self, dir: str, depth: int) -> List[CommitInfo]: ...

    @abstractmethod
    async def remote_url(self, dir: str, remote: str) -> Optional[str]: ...

    @abstractmethod
    async def is_repository(self, dir: str) -> bool: ...


def _parse_git_status_porcelain(stdout: str) -> Dict[str, str]:
    """Parse 'git status --porcelain' output. Returns dict path -> 'M'|'A'|'D'|'U'."""
    result = {}
    for line in (stdout or "").splitlines():
        if len(line) < 4:
            continue
        idx, wt = line[0], line[1]
        path = line[3:]
        # Handle rename: "R  from -> to"
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        if path.startswith('"') and path.endswith('"') and len(path) >= 2:
            path = path[1:-1].replace('\\"', '"')
        path = path.replace("\\", "/").strip().rstrip("/")
        if not path:
            continue
        if wt == "?" and idx == "?":
            result[path] = "U"
        elif wt == "D" or idx == "D":
            result[path] = "D"
        elif idx == "A":
            result[path] = "A"
        else:
            result[path] = "M"
    return result


_AUTH_FAILURE_RE = re.compile(
    r"authentication failed|could not read username|terminal prompts disabled|"
    r"requested url returned error: (401|403)|permission denied",
    re.IGNORECASE,
)


class CliGitBackend(GitBackend):
    """Runs the git executable against directories on the local disk.

    Credentials travel as a one-shot Authorization header; nothing is
    written to the repository config. Cancellation kills the child process.

    Projects whose files live in a MemoryFS have no git through this backend.
    """

    needs_disk = True

    def __init__(self, git_binary: Optional[str] = None, timeout: Optional[float] = None):
        self.git_binary = git_binary or git_config.git_binary
        self.timeout = timeout or git_config.network_timeout

    async def _run(
        self,
        args: List[str],
        cwd: str,
        auth: Optional[GitCredential] = None,
        check: bool = True,
    ) -> str:
        argv = [self.git_binary]
        if auth is not None:
            argv += ["-c", f"http.extraHeader={auth.auth_header()}"]
        argv += args
        env = dict(os.environ, GIT_TERMINAL_PROMPT="0", GIT_ASKPASS="echo")
        logger.debug(f"git {' '.join(args)} (cwd={cwd})")
        proc = await asyncio.create_subprocess_exec(
            *argv, cwd=cwd, env=env,
            stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE,
        )
        try:
            out, err = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except (asyncio.CancelledError, asyncio.TimeoutError):
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise
        stdout = out.decode("utf-8", errors="replace")
        stderr = err.decode("utf-8", errors="replace")
        if check and proc.returncode != 0:
            raise GitCommandError(args, stderr, proc.returncode, bool(_AUTH_FAILURE_RE.search(stderr)))
        return stdout

    async def clone(self, url, dir, auth):
        parent = os.path.dirname(os.path.abspath(dir))
        os.makedirs(parent, exist_ok=True)
        await self._run(["clone", url, os.path.abspath(dir)], cwd=parent, auth=auth)

    async def fetch(self, dir, remote, auth):
        await self._run(["fetch", remote], cwd=dir, auth=auth)

    async def pull(self, dir, remote, branch, auth):
        args = ["-c", f"user.name={git_config.author_name}", "-c", f"user.email={git_config.author_email}",
                "pull", "--no-rebase", remote]
        if branch:
            args.append(branch)
        await self._run(args, cwd=dir, auth=auth)

    async def push(self, dir, remote, branch, auth):
        args = ["push", remote]
        if branch:
            args.append(branch)
        await self._run(args, cwd=dir, auth=auth)

    async def add(self, dir, paths):
        await self._run(["add", "--"] + (paths or ["."]), cwd=dir)

    async def commit(self, dir, message, author_name, author_email):
        await self._run(["add", "-A"], cwd=dir)
        await self._run(["-c", f"user.name={author_name}", "-c", f"user.email={author_email}",
                         "commit", "-m", message], cwd=dir)
        return (await self._run(["rev-parse", "HEAD"], cwd=dir)).strip()

    async def status(self, dir):
        status = GitStatus()
        status.changed_files = _parse_git_status_porcelain(
            await self._run(["status", "--porcelain", "--untracked-files=all"], cwd=dir)
        )
        branch = (await self._run(["symbolic-ref", "--short", "-q", "HEAD"], cwd=dir, check=False)).strip()
        status.branch = branch or None
        counts = await self._run(
            ["rev-list", "--left-right", "--count", "HEAD...@{upstream}"], cwd=dir, check=False,
        )
        parts = counts.split()
        if len(parts) == 2 and all(p.isdigit() for p in parts):
            status.ahead, status.behind = int(parts[0]), int(parts[1])
        for line in (await self._run(["remote", "-v"], cwd=dir)).splitlines():
            fields = line.split()
            if len(fields) >= 2 and (len(fields) < 3 or fields[2] == "(fetch)"):
                status.remotes[fields[0]] = fields[1]
        return status

    async def log(self, dir, depth):
        out = await self._run(
            ["log", f"-n{max(1, depth)}", "--format=%H%x1f%an <%ae>%x1f%aI%x1f%s"], cwd=dir, check=False,
        )
        commits = []
        for line in out.splitlines():
            fields = line.split("\x1f")
            if len(fields) == 4:
                commits.append(CommitInfo(sha=fields[0], author=fields[1], date=fields[2], message=fields[3]))
        return commits

    async def remote_url(self, dir, remote):
        out = await self._run(["remote", "get-url", remote], cwd=dir, check=False)
        return out.strip() or None

    async def is_repository(self, dir):
        return os.path.isdir(os.path.join(dir, ".git"))


# ============================================================
# Coordinator
# ============================================================

class GitSyncCoordinator:
    """Serializes network git operations per directory and resolves credentials per origin."""

    def __init__(
        self,
        backend: GitBackend,
        credentials: Optional[CredentialStore] = None,
        lock: Optional[GitOperationLock] = None,
        author_name: Optional[str] = None,
        author_email: Optional[str] = None,
    ):
        self.backend = backend
        self.credentials = credentials or CredentialStore()
        self.lock = lock or GitOperationLock()
        self.author_name = author_name or git_config.author_name
        self.author_email = author_email or git_config.author_email

    def active_operation(self, dir: str) -> Optional[str]:
        return self.lock.active_operation(dir)

    async def _network(
        self,
        operation: str,
        dir: str,
        url: Optional[str],
        remote: str,
        call: Callable[[Optional[GitCredential]], Awaitable[Any]],
        cancel_token: Optional[CancellationToken],
        credentials: Optional[GitCredential] = None,
    ) -> Any:
        key = normalize_dir(dir)
        token = ensure_token(cancel_token)
        token.raise_if_cancelled()
        # Acquire before the first await so a concurrent request sees the lock.
        with self.lock.hold(key, operation):
            logger.info(f"git {operation} started for {key}")
            if url is None:
                url = await token.run(self.backend.remote_url(key, remote))
            cred = credentials or (self.credentials.find(url) if url else None)
            try:
                result = await token.run(call(cred))
            except GitCommandError as e:
                origin = _origin_or_none(url) if e.auth_failure else None
                if origin is not None:
                    raise AuthenticationRequiredError(origin, rejected=cred is not None) from e
                raise
            logger.info(f"git {operation} finished for {key}")
            return result

    async def clone(
        self,
        url: str,
        dir: str,
        credentials: Optional[GitCredential] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> None:
        key = normalize_dir(dir)
        await self._network(
            "clone", key, url, "origin", lambda cred: self.backend.clone(url, key, cred), cancel_token, credentials,
        )

    async def fetch(self, dir: str, remote: str = "origin",
                    cancel_token: Optional[CancellationToken] = None) -> None:
        key = normalize_dir(dir)
        await self._network(
            "fetch", key, None, remote,
            lambda cred: self.backend.fetch(key, remote, cred), cancel_token,
        )

    async def pull(self, dir: str, remote: str = "origin", branch: Optional[str] = None,
                   cancel_token: Optional[CancellationToken] = None) -> None:
        key = normalize_dir(dir)
        await self._network(
            "pull", key, None, remote,
            lambda cred: self.backend.pull(key, remote, branch, cred), cancel_token,
        )

    async def push(self, dir: str, remote: str = "origin", branch: Optional[str] = None,
                   cancel_token: Optional[CancellationToken] = None) -> None:
        key = normalize_dir(dir)
        await self._network(
            "push", key, None, remote,
            lambda cred: self.backend.push(key, remote, branch, cred), cancel_token,
        )

    async def commit(self, dir: str, message: str, author: Optional[Dict[str, str]] = None) -> str:
        """Commit all changes. Not subject to the network lock, but refuses to race a pull."""
        key = normalize_dir(dir)
        if self.lock.active_operation(key) == "pull":
            raise ConcurrentOperationError(key, "pull", "commit")
        author = author or {}
        return await self.backend.commit(
            key, message, author.get("name") or self.author_name, author.get("email") or self.author_email,
        )

    async def add(self, dir: str, paths: List[str]) -> None:
        await self.backend.add(normalize_dir(dir), paths)

    async def status(self, dir: str) -> GitStatus:
        return await self.backend.status(normalize_dir(dir))

    async def log(self, dir: str, depth: int = 10) -> List[CommitInfo]:
        return await self.backend.log(normalize_dir(dir), depth)

    async def current_branch(self, dir: str) -> Optional[str]:
        return (await self.status(dir)).branch

    async def is_repository(self, dir: str) -> bool:
        return await self.backend.is_repository(normalize_dir(dir))
