"""
Process-wide registry of Sessions keyed by project id.
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from agent.history import ConversationHistory
from agent.session import Session
from bedrock_service import ModelProvider
from config import app_config
from git_sync import GitSyncCoordinator
from message_queue import MessageQueue, QueuedMessage
from sessions import SessionStore
from shell.runtime import ShellRuntime
from tools._common import BuildPipeline, ToolContext
from tools.dispatch import ToolExecutor
from vfs import VirtualFS

logger = logging.getLogger(__name__)


@dataclass
class ProjectContext:
    """Resources one project's session works against."""
    vfs: VirtualFS
    shell: ShellRuntime
    git: Optional[GitSyncCoordinator] = None
    # Directory handed to the git coordinator
    project_dir: str = "."
    builder: Optional[BuildPipeline] = None


ProjectFactory = Callable[[str], Union[ProjectContext, Awaitable[ProjectContext]]]


class SessionManager:
    """One Session per project id for the life of the map entry.

    Creation runs once per id even under concurrent get_or_create calls: the
    first caller stores a future that later callers await.
    """

    def __init__(
        self,
        project_factory: ProjectFactory,
        provider: ModelProvider,
        store: Optional[SessionStore] = None,
        session_options: Optional[Dict[str, Any]] = None,
        max_sessions: Optional[int] = None,
        max_session_age: Optional[float] = None,
    ):
        self.project_factory = project_factory
        self.provider = provider
        self.store = store
        self.session_options = dict(session_options or {})
        self.max_sessions = max_sessions or app_config.max_sessions
        self.max_session_age = max_session_age or app_config.max_session_age
        self._sessions: Dict[str, Session] = {}
        self._pending: Dict[str, "asyncio.Future[Session]"] = {}

    async def get_or_create(self, project_id: str) -> Session:
        if not project_id:
            raise ValueError("project_id is required")
        session = self._sessions.get(project_id)
        if session is not None:
            return session
        pending = self._pending.get(project_id)
        if pending is None:
            pending = asyncio.ensure_future(self._create(project_id))
            self._pending[project_id] = pending
            pending.add_done_callback(lambda _f: self._pending.pop(project_id, None))
        return await asyncio.shield(pending)

    async def _create(self, project_id: str) -> Session:
        ctx = self.project_factory(project_id)
        if inspect.isawaitable(ctx):
            ctx = await ctx
        executor = ToolExecutor(ToolContext(
            vfs=ctx.vfs, shell=ctx.shell, git=ctx.git, project_dir=ctx.project_dir, builder=ctx.builder,
        ))
        history = ConversationHistory()
        queue = MessageQueue()
        if self.store is not None:
            history = ConversationHistory.from_dicts(self.store.load_history(project_id))
            queue = MessageQueue([QueuedMessage.from_dict(d) for d in self.store.load_queue(project_id)])
        session = Session(
            project_id, self.provider, executor,
            store=self.store, history=history, queue=queue, **self.session_options,
        )
        self._sessions[project_id] = session
        logger.info(
            f"Created session for {project_id} ({len(history)} messages, {queue.size} queued)"
        )
        await self.evict_stale(keep=project_id)
        return session

    def get(self, project_id: str) -> Optional[Session]:
        return self._sessions.get(project_id)

    def project_ids(self) -> List[str]:
        return list(self._sessions)

    def running_project_ids(self) -> List[str]:
        return [pid for pid, s in self._sessions.items() if s.is_running]

    async def dispose(self, project_id: str) -> bool:
        """Cancel, persist and forget a project's session. Returns False if there was none."""
        pending = self._pending.get(project_id)
        if pending is not None:
            await asyncio.wait({pending})
        return await self._evict(project_id)

    async def _evict(self, project_id: str) -> bool:
        session = self._sessions.pop(project_id, None)
        if session is None:
            return False
        await session.dispose()
        return True

    async def evict_stale(self, keep: Optional[str] = None) -> List[str]:
        """Dispose idle sessions past max_session_age, then the least recently
        active idle ones beyond max_sessions. Running sessions are never evicted.
        Returns the evicted project ids.
        """
        now = time.time()
        idle = [(pid, s) for pid, s in self._sessions.items() if pid != keep and not s.is_running]
        stale = [pid for pid, s in idle if now - s.last_activity > self.max_session_age]
        excess = len(self._sessions) - len(stale) - self.max_sessions
        if excess > 0:
            remaining = sorted((s.last_activity, pid) for pid, s in idle if pid not in stale)
            stale.extend(pid for _, pid in remaining[:excess])
        evicted = []
        for pid in stale:
            session = self._sessions.get(pid)
            # Another request may have started a turn while earlier evictions awaited
            if session is None or session.is_running:
                continue
            logger.info(f"Evicting idle session {pid}")
            try:
                await self._evict(pid)
            except Exception as e:
                logger.error(f"Failed to evict session {pid}: {e}")
                continue
            evicted.append(pid)
        return evicted

    async def cleanup(self) -> None:
        """Dispose every session. Called once at application teardown."""
        pending = list(self._pending.values())
        if pending:
            # Creations still in flight would otherwise land after the sweep
            await asyncio.wait(pending)
        ids = list(self._sessions)
        if not ids:
            return
        logger.info(f"Cleaning up {len(ids)} session(s)")
        results = await asyncio.gather(*(self._evict(pid) for pid in ids), return_exceptions=True)
        for pid, result in zip(ids, results):
            if isinstance(result, Exception):
                logger.error(f"Failed to dispose session {pid}: {result}")
