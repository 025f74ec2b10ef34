"""
Virtual filesystem abstraction for project files.
Supports a pure in-memory store and a directory on the local disk.

Paths are POSIX-style and rooted at the project directory: "src/a.py",
"/src/a.py" and "./src/../src/a.py" all name the same file. Callers never
see the storage backend. No locking happens here; the tool engine runs one
tool call at a time and git network operations are serialized by git_sync.
"""

import asyncio
import builtins
import logging
import os
import shutil
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


# ============================================================
# Errors
# ============================================================

class VFSError(Exception):
    """Base class for virtual filesystem errors."""


class NotFoundError(VFSError, builtins.FileNotFoundError):
    """Path does not exist."""


class IsADirectoryError(VFSError, builtins.IsADirectoryError):
    """A file operation was attempted on a directory."""


class NotADirectoryError(VFSError, builtins.NotADirectoryError):
    """A directory operation was attempted on a file, or an ancestor is a file."""


class FileExistsError(VFSError, builtins.FileExistsError):
    """Target path already exists."""


class PathEscapeError(VFSError, ValueError):
    """Path resolves outside the project root."""


@dataclass
class FileStat:
    is_directory: bool
    size: int
    mtime: float


# ============================================================
# Path helpers
# ============================================================

def normalize_path(path: str) -> str:
    """Normalize a project path to its canonical root-relative form ("" is the root).

    Raises PathEscapeError if ".." climbs above the project root.
    """
    parts: List[str] = []
    for segment in (path or "").replace("\\", "/").split("/"):
        if segment in ("", "."):
            continue
        if segment == "..":
            if not parts:
                raise PathEscapeError(f"Path escapes project root: {path!r}")
            parts.pop()
            continue
        parts.append(segment)
    return "/".join(parts)


def resolve_path(path: str, cwd: str = "") -> str:
    """Resolve path against cwd. Absolute paths ("/x") are relative to the project root."""
    if (path or "").startswith("/"):
        return normalize_path(path)
    return normalize_path(f"{normalize_path(cwd)}/{path}")


def display_path(path: str) -> str:
    """Canonical path with a leading slash, as shown to users and the model."""
    return "/" + normalize_path(path)


def parent_of(path: str) -> str:
    norm = normalize_path(path)
    return norm.rsplit("/", 1)[0] if "/" in norm else ""


def join_path(*parts: str) -> str:
    return normalize_path("/".join(p for p in parts if p))


# ============================================================
# Abstract filesystem
# ============================================================

class VirtualFS(ABC):
    """Abstract asynchronous filesystem rooted at a project directory."""

    @abstractmethod
    async def read_file(self, path: str) -> bytes:
        """Read a file's bytes. NotFoundError / IsADirectoryError on failure."""

    @abstractmethod
    async def write_file(self, path: str, data: bytes) -> None:
        """Write bytes to a file, creating missing parent directories."""

    @abstractmethod
    async def stat(self, path: str) -> FileStat:
        """Stat a path. NotFoundError if it does not exist."""

    @abstractmethod
    async def list_files(self, path: str = "") -> List[str]:
        """Sorted entry names of a directory (not recursive)."""

    @abstractmethod
    async def unlink(self, path: str) -> None:
        """Delete a file."""

    @abstractmethod
    async def mkdir(self, path: str) -> None:
        """Create a directory and any missing parents. Existing directories are fine."""

    @abstractmethod
    async def rmdir(self, path: str, recursive: bool = False) -> None:
        """Remove a directory; non-empty directories need recursive=True."""

    @abstractmethod
    async def rename(self, src: str, dst: str) -> None:
        """Move a file or directory, creating the destination's parents."""

    @property
    def root(self) -> Optional[str]:
        """Disk directory backing this filesystem, if any."""
        return None

    async def exists(self, path: str) -> bool:
        try:
            await self.stat(path)
            return True
        except NotFoundError:
            return False

    async def is_dir(self, path: str) -> bool:
        try:
            return (await self.stat(path)).is_directory
        except NotFoundError:
            return False

    async def read_text(self, path: str) -> str:
        return (await self.read_file(path)).decode("utf-8", errors="replace")

    async def write_text(self, path: str, text: str) -> None:
        await self.write_file(path, text.encode("utf-8"))

    async def walk(self, path: str = "") -> List[str]:
        """All file paths below a directory, depth-first, sorted per level."""
        base = normalize_path(path)
        files: List[str] = []
        for name in await self.list_files(base):
            child = join_path(base, name)
            if (await self.stat(child)).is_directory:
                files.extend(await self.walk(child))
            else:
                files.append(child)
        return files


# ============================================================
# In-memory backend
# ============================================================

@dataclass
class _FileEntry:
    data: bytes
    mtime: float


class MemoryFS(VirtualFS):
    """Filesystem held entirely in memory. Survives only as long as the process."""

    def __init__(self, files: Optional[Dict[str, bytes]] = None):
        self._files: Dict[str, _FileEntry] = {}
        self._dirs: Dict[str, float] = {"": time.time()}
        for path, data in (files or {}).items():
            self._write_sync(normalize_path(path), data)

    def _check_parents(self, norm: str) -> None:
        """Raise NotADirectoryError if any ancestor of norm is a file."""
        parts = norm.split("/")
        for i in range(1, len(parts)):
            ancestor = "/".join(parts[:i])
            if ancestor in self._files:
                raise NotADirectoryError(f"Not a directory: {display_path(ancestor)}")

    def _make_dirs(self, norm: str) -> None:
        self._check_parents(norm)
        if norm in self._files:
            raise NotADirectoryError(f"Not a directory: {display_path(norm)}")
        parts = norm.split("/") if norm else []
        now = time.time()
        for i in range(1, len(parts) + 1):
            self._dirs.setdefault("/".join(parts[:i]), now)

    def _write_sync(self, norm: str, data: bytes) -> None:
        if norm in self._dirs:
            raise IsADirectoryError(f"Is a directory: {display_path(norm)}")
        self._make_dirs(parent_of(norm))
        self._files[norm] = _FileEntry(bytes(data), time.time())

    def _children(self, norm: str) -> List[str]:
        prefix = f"{norm}/" if norm else ""
        names = set()
        for path in list(self._files) + list(self._dirs):
            if path and path.startswith(prefix):
                rest = path[len(prefix):]
                if rest and "/" not in rest:
                    names.add(rest)
        return sorted(names)

    async def read_file(self, path: str) -> bytes:
        norm = normalize_path(path)
        if norm in self._dirs:
            raise IsADirectoryError(f"Is a directory: {display_path(norm)}")
        entry = self._files.get(norm)
        if entry is None:
            raise NotFoundError(f"No such file: {display_path(norm)}")
        return entry.data

    async def write_file(self, path: str, data: bytes) -> None:
        self._write_sync(normalize_path(path), data)

    async def stat(self, path: str) -> FileStat:
        norm = normalize_path(path)
        if norm in self._dirs:
            return FileStat(is_directory=True, size=0, mtime=self._dirs[norm])
        entry = self._files.get(norm)
        if entry is None:
            raise NotFoundError(f"No such file or directory: {display_path(norm)}")
        return FileStat(is_directory=False, size=len(entry.data), mtime=entry.mtime)

    async def list_files(self, path: str = "") -> List[str]:
        norm = normalize_path(path)
        if norm in self._files:
            raise NotADirectoryError(f"Not a directory: {display_path(norm)}")
        if norm not in self._dirs:
            raise NotFoundError(f"No such directory: {display_path(norm)}")
        return self._children(norm)

    async def unlink(self, path: str) -> None:
        norm = normalize_path(path)
        if norm in self._dirs:
            raise IsADirectoryError(f"Is a directory: {display_path(norm)}")
        if self._files.pop(norm, None) is None:
            raise NotFoundError(f"No such file: {display_path(norm)}")

    async def mkdir(self, path: str) -> None:
        self._make_dirs(normalize_path(path))

    async def rmdir(self, path: str, recursive: bool = False) -> None:
        norm = normalize_path(path)
        if norm in self._files:
            raise NotADirectoryError(f"Not a directory: {display_path(norm)}")
        if norm not in self._dirs:
            raise NotFoundError(f"No such directory: {display_path(norm)}")
        if not norm:
            raise PathEscapeError("Refusing to remove the project root")
        prefix = norm + "/"
        if not recursive and self._children(norm):
            raise VFSError(f"Directory not empty: {display_path(norm)}")
        for p in [p for p in self._files if p.startswith(prefix)]:
            del self._files[p]
        for p in [p for p in self._dirs if p == norm or p.startswith(prefix)]:
            del self._dirs[p]

    async def rename(self, src: str, dst: str) -> None:
        s, d = normalize_path(src), normalize_path(dst)
        if s in self._files:
            if d in self._dirs:
                raise IsADirectoryError(f"Is a directory: {display_path(d)}")
            self._make_dirs(parent_of(d))
            self._files[d] = self._files.pop(s)
            return
        if s not in self._dirs or not s:
            raise NotFoundError(f"No such file or directory: {display_path(s)}")
        if d == s or d.startswith(s + "/"):
            raise VFSError(f"Cannot move {display_path(s)} into itself")
        if d in self._files or d in self._dirs:
            raise FileExistsError(f"File exists: {display_path(d)}")
        self._make_dirs(parent_of(d))
        prefix = s + "/"
        for p in [p for p in self._files if p.startswith(prefix)]:
            self._files[d + "/" + p[len(prefix):]] = self._files.pop(p)
        for p in [p for p in self._dirs if p == s or p.startswith(prefix)]:
            mtime = self._dirs.pop(p)
            self._dirs[d + p[len(s):]] = mtime


# ============================================================
# Local disk backend
# ============================================================

class LocalFS(VirtualFS):
    """Filesystem backed by a directory on the local disk.

    Blocking I/O runs in a worker thread so the event loop keeps serving
    other sessions while a large file is read or written.
    """

    def __init__(self, root: str):
        self._root = os.path.abspath(root)
        os.makedirs(self._root, exist_ok=True)

    @property
    def root(self) -> str:
        return self._root

    def _full(self, path: str) -> str:
        norm = normalize_path(path)
        full = os.path.join(self._root, *norm.split("/")) if norm else self._root
        real = os.path.realpath(full)
        root = os.path.realpath(self._root)
        if real != root and not real.startswith(root + os.sep):
            raise PathEscapeError(f"Path escapes project root: {path!r}")
        return full

    @staticmethod
    def _translate(exc: OSError, path: str) -> VFSError:
        shown = display_path(path)
        if isinstance(exc, builtins.FileNotFoundError):
            return NotFoundError(f"No such file or directory: {shown}")
        if isinstance(exc, builtins.IsADirectoryError):
            return IsADirectoryError(f"Is a directory: {shown}")
        if isinstance(exc, builtins.NotADirectoryError):
            return NotADirectoryError(f"Not a directory: {shown}")
        if isinstance(exc, builtins.FileExistsError):
            return FileExistsError(f"File exists: {shown}")
        return VFSError(f"{shown}: {exc.strerror or exc}")

    async def _run(self, fn, path: str, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except VFSError:
            raise
        except OSError as e:
            raise self._translate(e, path) from e

    async def read_file(self, path: str) -> bytes:
        full = self._full(path)

        def _read() -> bytes:
            if os.path.isdir(full):
                raise builtins.IsADirectoryError(full)
            with open(full, "rb") as f:
                return f.read()

        return await self._run(_read, path)

    async def write_file(self, path: str, data: bytes) -> None:
        full = self._full(path)

        def _write() -> None:
            if os.path.isdir(full):
                raise builtins.IsADirectoryError(full)
            parent = os.path.dirname(full)
            if os.path.isfile(parent):
                raise builtins.NotADirectoryError(parent)
            try:
                os.makedirs(parent, exist_ok=True)
            except builtins.FileExistsError as e:
                raise builtins.NotADirectoryError(parent) from e
            with open(full, "wb") as f:
                f.write(data)

        await self._run(_write, path)

    async def stat(self, path: str) -> FileStat:
        full = self._full(path)

        def _stat() -> FileStat:
            st = os.stat(full)
            is_dir = os.path.isdir(full)
            return FileStat(is_directory=is_dir, size=0 if is_dir else st.st_size, mtime=st.st_mtime)

        return await self._run(_stat, path)

    async def list_files(self, path: str = "") -> List[str]:
        full = self._full(path)
        return await self._run(lambda: sorted(os.listdir(full)), path)

    async def unlink(self, path: str) -> None:
        full = self._full(path)

        def _unlink() -> None:
            if os.path.isdir(full):
                raise builtins.IsADirectoryError(full)
            os.remove(full)

        await self._run(_unlink, path)

    async def mkdir(self, path: str) -> None:
        full = self._full(path)

        def _mkdir() -> None:
            if os.path.isfile(full):
                raise builtins.NotADirectoryError(full)
            try:
                os.makedirs(full, exist_ok=True)
            except builtins.FileExistsError as e:
                raise builtins.NotADirectoryError(full) from e

        await self._run(_mkdir, path)

    async def rmdir(self, path: str, recursive: bool = False) -> None:
        if not normalize_path(path):
            raise PathEscapeError("Refusing to remove the project root")
        full = self._full(path)

        def _rmdir() -> None:
            if os.path.isfile(full):
                raise builtins.NotADirectoryError(full)
            if recursive:
                shutil.rmtree(full)
            else:
                os.rmdir(full)

        await self._run(_rmdir, path)

    async def rename(self, src: str, dst: str) -> None:
        full_src, full_dst = self._full(src), self._full(dst)

        def _rename() -> None:
            if not os.path.exists(full_src):
                raise builtins.FileNotFoundError(full_src)
            if os.path.isdir(full_dst):
                raise builtins.IsADirectoryError(full_dst)
            parent = os.path.dirname(full_dst)
            if os.path.isfile(parent):
                raise builtins.NotADirectoryError(parent)
            os.makedirs(parent, exist_ok=True)
            os.replace(full_src, full_dst)

        await self._run(_rename, src)
