"""
CLI entry point for the agent runtime web server.

Run:  python -m web [--port 8765] [--root /path/to/projects]
"""

import argparse
import logging
import os
import re

import uvicorn

from agent.manager import ProjectContext, SessionManager
from bedrock_service import BedrockService
from config import app_config, git_config
from git_sync import CliGitBackend, CredentialStore, GitSyncCoordinator
from sessions import SessionStore
from shell.runtime import ShellRuntime
from vfs import LocalFS
from web import create_app

logger = logging.getLogger(__name__)

_PROJECT_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


def make_local_project_factory(projects_root: str, git: GitSyncCoordinator):
    """Projects are directories under projects_root; the id is the directory name."""

    def factory(project_id: str) -> ProjectContext:
        if not _PROJECT_ID_RE.match(project_id):
            raise ValueError(f"Invalid project id: {project_id!r}")
        project_dir = os.path.join(projects_root, project_id)
        os.makedirs(project_dir, exist_ok=True)
        vfs = LocalFS(project_dir)
        return ProjectContext(vfs=vfs, shell=ShellRuntime(vfs), git=git, project_dir=project_dir)

    return factory


def build_manager(projects_root: str, sessions_dir: str) -> SessionManager:
    git = GitSyncCoordinator(CliGitBackend(), CredentialStore.load(git_config.credentials_file))
    return SessionManager(
        make_local_project_factory(projects_root, git),
        BedrockService(),
        SessionStore(sessions_dir),
    )


def main():
    parser = argparse.ArgumentParser(description="Agent runtime web server")
    parser.add_argument("--port", type=int, default=8765, help="Server port (default: 8765)")
    parser.add_argument("--host", default="127.0.0.1", help="Server host (default: 127.0.0.1)")
    parser.add_argument("--root", default=app_config.projects_root, help="Directory holding one folder per project")
    parser.add_argument("--sessions-dir", default=app_config.sessions_dir, help="Where session logs are stored")
    parser.add_argument("--log-level", default=app_config.log_level, help="Logging level (default: INFO)")
    args = parser.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    projects_root = os.path.abspath(os.path.expanduser(args.root))
    os.makedirs(projects_root, exist_ok=True)
    manager = build_manager(projects_root, os.path.abspath(os.path.expanduser(args.sessions_dir)))

    print(f"\n  {app_config.title}")
    print(f"  http://{args.host}:{args.port}")
    print(f"  Projects: {projects_root}\n")

    uvicorn.run(create_app(manager), host=args.host, port=args.port, log_level="warning")
