""".gitignore-aware filtering helpers."""

import logging
import posixpath
from typing import List, Optional, Set

import pathspec

from vfs import NotFoundError, VirtualFS, normalize_path

logger = logging.getLogger(__name__)

_ALWAYS_SKIP_DIRS: Set[str] = {
    ".git", "node_modules", "__pycache__", ".venv", "venv",
    ".mypy_cache", ".pytest_cache", ".tox", ".cache",
}

_ALWAYS_SKIP_EXTENSIONS: Set[str] = {
    ".pyc", ".pyo", ".so", ".dylib", ".o", ".class",
}


async def load_gitignore(vfs: VirtualFS) -> Optional[pathspec.PathSpec]:
    """Parse the project root .gitignore. Returns None if there is none."""
    try:
        content = await vfs.read_text(".gitignore")
    except NotFoundError:
        return None
    return pathspec.PathSpec.from_lines("gitwildmatch", content.splitlines())


def is_ignored(rel_path: str, is_dir: bool, gitignore_spec: Optional[pathspec.PathSpec]) -> bool:
    """Check if a path should be ignored based on .gitignore + hardcoded skips."""
    name = posixpath.basename(rel_path)
    if is_dir and name in _ALWAYS_SKIP_DIRS:
        return True
    if not is_dir and posixpath.splitext(name)[1] in _ALWAYS_SKIP_EXTENSIONS:
        return True
    if gitignore_spec:
        check_path = rel_path + "/" if is_dir else rel_path
        if gitignore_spec.match_file(check_path):
            return True
    return False


async def walk_visible(vfs: VirtualFS, path: str = "", limit: int = 1000) -> List[str]:
    """Recursive file listing that skips ignored files and never descends into ignored directories."""
    ignore = await load_gitignore(vfs)
    files = []
    pending = [normalize_path(path)]
    while pending and len(files) < limit:
        current = pending.pop(0)
        for name in await vfs.list_files(current):
            child = posixpath.join(current, name) if current else name
            is_dir = (await vfs.stat(child)).is_directory
            if is_ignored(child, is_dir, ignore):
                continue
            if is_dir:
                pending.append(child)
            else:
                files.append(child)
                if len(files) >= limit:
                    break
    return sorted(files)
