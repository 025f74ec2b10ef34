"""
Session persistence for the agent runtime.
Stores each project's conversation as an append-only JSONL log plus a JSON
snapshot of its queued messages, so a restarted process resumes where it left off.
"""

import hashlib
import json
import logging
import os
import re
import shutil
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from config import app_config

logger = logging.getLogger(__name__)

SESSION_VERSION = 1

HISTORY_FILE = "history.jsonl"
QUEUE_FILE = "queue.json"
META_FILE = "meta.json"
ARCHIVE_DIR = "archive"


def _slugify(name: str) -> str:
    """Turn a project id into a safe filename component."""
    s = name.lower().strip()
    s = re.sub(r"[^a-z0-9]+", "-", s)
    s = s.strip("-")[:50]
    return s or "project"


def _id_hash(project_id: str) -> str:
    """Deterministic short hash so distinct ids never share a directory."""
    return hashlib.sha256(project_id.encode()).hexdigest()[:12]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SessionStore:
    """
    Manages per-project session files on disk.

    File layout:  {base_dir}/{slug}_{hash}/history.jsonl
                                           queue.json
                                           meta.json
                                           archive/{timestamp}.jsonl
    """

    def __init__(self, base_dir: Optional[str] = None):
        self.base_dir = base_dir or app_config.sessions_dir
        os.makedirs(self.base_dir, exist_ok=True)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def append_message(self, project_id: str, message: Dict[str, Any]) -> None:
        path = self._ensure_dir(project_id)
        with open(os.path.join(path, HISTORY_FILE), "a", encoding="utf-8") as f:
            f.write(json.dumps(message, ensure_ascii=False) + "\n")

    def rewrite_history(self, project_id: str, messages: List[Dict[str, Any]]) -> None:
        """Replace the log (used after rollback/reset/repair)."""
        path = self._ensure_dir(project_id)
        self._atomic_write(
            os.path.join(path, HISTORY_FILE),
            "".join(json.dumps(m, ensure_ascii=False) + "\n" for m in messages),
        )
        logger.info(f"Session history rewritten for {project_id} ({len(messages)} messages)")

    def load_history(self, project_id: str) -> List[Dict[str, Any]]:
        path = os.path.join(self._path_for(project_id), HISTORY_FILE)
        if not os.path.exists(path):
            return []
        return self._read_jsonl(path, project_id)

    def archive_history(self, project_id: str, messages: List[Dict[str, Any]]) -> Optional[str]:
        """Save a finished conversation under archive/ before a reset. Returns the archive name."""
        if not messages:
            return None
        archive_dir = os.path.join(self._ensure_dir(project_id), ARCHIVE_DIR)
        os.makedirs(archive_dir, exist_ok=True)
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        name, n = stamp, 1
        while os.path.exists(os.path.join(archive_dir, name + ".jsonl")):
            name = f"{stamp}_{n}"
            n += 1
        self._atomic_write(
            os.path.join(archive_dir, name + ".jsonl"),
            "".join(json.dumps(m, ensure_ascii=False) + "\n" for m in messages),
        )
        logger.info(f"Archived {len(messages)} message(s) for {project_id} as {name}")
        return name

    def list_archives(self, project_id: str) -> List[str]:
        """Archive names, oldest first."""
        archive_dir = os.path.join(self._path_for(project_id), ARCHIVE_DIR)
        if not os.path.isdir(archive_dir):
            return []
        return sorted(f[:-len(".jsonl")] for f in os.listdir(archive_dir) if f.endswith(".jsonl"))

    def load_archive(self, project_id: str, name: str) -> List[Dict[str, Any]]:
        if os.path.basename(name) != name or name in ("", ".", ".."):
            raise ValueError(f"Invalid archive name: {name!r}")
        path = os.path.join(self._path_for(project_id), ARCHIVE_DIR, name + ".jsonl")
        if not os.path.exists(path):
            raise FileNotFoundError(f"No archive {name!r} for {project_id}")
        return self._read_jsonl(path, project_id)

    # ------------------------------------------------------------------
    # Queue backlog
    # ------------------------------------------------------------------

    def save_queue(self, project_id: str, queued: List[Dict[str, Any]]) -> None:
        path = self._ensure_dir(project_id)
        self._atomic_write(os.path.join(path, QUEUE_FILE), json.dumps(queued, ensure_ascii=False))

    def load_queue(self, project_id: str) -> List[Dict[str, Any]]:
        path = os.path.join(self._path_for(project_id), QUEUE_FILE)
        if not os.path.exists(path):
            return []
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to read queue for {project_id}: {e}")
            return []
        return data if isinstance(data, list) else []

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def delete(self, project_id: str) -> bool:
        """Delete everything stored for a project. Returns True if deleted."""
        path = self._path_for(project_id)
        if os.path.isdir(path):
            shutil.rmtree(path)
            logger.info(f"Session deleted: {path}")
            return True
        return False

    def list_projects(self) -> List[Dict[str, Any]]:
        """Known projects, newest first."""
        projects = []
        for fname in os.listdir(self.base_dir):
            meta_path = os.path.join(self.base_dir, fname, META_FILE)
            if not os.path.isfile(meta_path):
                continue
            try:
                with open(meta_path, "r", encoding="utf-8") as f:
                    projects.append(json.load(f))
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Failed to read session meta {meta_path}: {e}")
        projects.sort(key=lambda p: p.get("updated_at") or "", reverse=True)
        return projects

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _path_for(self, project_id: str) -> str:
        return os.path.join(self.base_dir, f"{_slugify(project_id)}_{_id_hash(project_id)}")

    def _ensure_dir(self, project_id: str) -> str:
        path = self._path_for(project_id)
        os.makedirs(path, exist_ok=True)
        meta_path = os.path.join(path, META_FILE)
        meta = {"project_id": project_id, "version": SESSION_VERSION, "created_at": _now_iso()}
        if os.path.exists(meta_path):
            try:
                with open(meta_path, "r", encoding="utf-8") as f:
                    meta.update({k: v for k, v in json.load(f).items() if k == "created_at"})
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Rewriting unreadable session meta {meta_path}: {e}")
        meta["updated_at"] = _now_iso()
        self._atomic_write(meta_path, json.dumps(meta))
        return path

    @staticmethod
    def _read_jsonl(path: str, project_id: str) -> List[Dict[str, Any]]:
        messages = []
        with open(path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    messages.append(json.loads(line))
                except json.JSONDecodeError as e:
                    # A torn final write must not lose the rest of the log
                    logger.warning(f"Skipping corrupt history line {lineno} for {project_id}: {e}")
        return messages

    @staticmethod
    def _atomic_write(path: str, text: str) -> None:
        tmp_path = path + ".tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(text)
            os.replace(tmp_path, path)
        except Exception:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
