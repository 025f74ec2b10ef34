"""
Per-project agent session.

A Session owns the conversation history, the message queue and at most one
driver task. The driver takes queued messages one turn at a time; each turn
alternates model completions and sequential tool execution until the model
answers without tool calls.

State machine:
    idle -> running -> idle | error -> idle
    running -> cancelling -> idle   (queue is NOT drained; call resume())
"""

import asyncio
import logging
import posixpath
import time
from typing import Any, Callable, Dict, List, Optional

from agent.events import SessionEvent, SessionState
from agent.history import (
    ConversationHistory,
    Message,
    assistant_message,
    cancelled_message,
    error_message,
    tool_message,
    user_message,
)
from bedrock_service import Completion, ModelError, ModelProvider, ModelTimeoutError, describe_model_error
from cancellation import CancellationToken, OperationCancelled
from config import app_config
from message_queue import Attachment, MessageQueue, QueuedMessage
from sessions import SessionStore
from tools._common import ToolCall, ToolResult, cancelled_result
from tools.dispatch import ToolExecutor
from vfs import VFSError, display_path, join_path, normalize_path

logger = logging.getLogger(__name__)

Listener = Callable[[SessionEvent], None]


class SessionDisposedError(Exception):
    """Command issued to a session that has been torn down."""


class SessionBusyError(Exception):
    """Operation needs an idle session."""


class Session:
    """Per-project state machine driving model turns and tool calls."""

    def __init__(
        self,
        project_id: str,
        provider: ModelProvider,
        executor: ToolExecutor,
        store: Optional[SessionStore] = None,
        history: Optional[ConversationHistory] = None,
        queue: Optional[MessageQueue] = None,
        system_prompt: Optional[str] = None,
        max_steps: Optional[int] = None,
        model_timeout: Optional[float] = None,
        merge_queued_messages: Optional[bool] = None,
        attachments_dir: Optional[str] = None,
    ):
        self.project_id = project_id
        self.provider = provider
        self.executor = executor
        self.store = store
        self.history = history if history is not None else ConversationHistory()
        self.queue = queue if queue is not None else MessageQueue()
        self.queue.set_on_change(self._on_queue_change)
        self.system_prompt = system_prompt if system_prompt is not None else app_config.system_prompt
        self.max_steps = max_steps or app_config.max_steps
        self.model_timeout = model_timeout or app_config.model_timeout
        self.merge_queued_messages = (
            app_config.merge_queued_messages if merge_queued_messages is None else merge_queued_messages
        )
        self.attachments_dir = normalize_path(attachments_dir or app_config.attachments_dir)

        self._state = SessionState.IDLE
        self._driver: Optional[asyncio.Task] = None
        # Cancels the in-flight model request and tool call of the current turn
        self._turn_token: Optional[CancellationToken] = None
        self._stop_requested = False
        self._disposed = False
        self._listeners: List[Listener] = []
        self.last_activity = time.time()

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._driver is not None

    @property
    def disposed(self) -> bool:
        return self._disposed

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register an observer. Returns a function that unsubscribes it."""
        self._listeners.append(listener)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, event_type: str, **data: Any) -> None:
        event = SessionEvent(type=event_type, project_id=self.project_id, data=data)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(f"Session {self.project_id}: listener failed on {event_type}")

    def _set_state(self, state: SessionState) -> None:
        if state == self._state:
            return
        previous, self._state = self._state, state
        logger.info(f"Session {self.project_id}: {previous.value} -> {state.value}")
        self._emit("state_changed", state=state.value, previous=previous.value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "state": self._state.value,
            "queue_size": self.queue.size,
            "last_activity": self.last_activity,
            "queue": [m.content for m in self.queue.snapshot()],
            "history": self.history.to_dicts(),
        }

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist_append(self, message: Message) -> None:
        if self.store is None:
            return
        try:
            self.store.append_message(self.project_id, message.to_dict())
        except OSError as e:
            logger.warning(f"Session {self.project_id}: failed to persist message: {e}")

    def _persist_history(self) -> None:
        if self.store is None:
            return
        try:
            self.store.rewrite_history(self.project_id, self.history.to_dicts())
        except OSError as e:
            logger.warning(f"Session {self.project_id}: failed to persist history: {e}")

    def _persist_queue(self, queued: List[QueuedMessage]) -> None:
        if self.store is None:
            return
        try:
            self.store.save_queue(self.project_id, [m.to_dict() for m in queued])
        except OSError as e:
            logger.warning(f"Session {self.project_id}: failed to persist queue: {e}")

    def _on_queue_change(self, queued: List[QueuedMessage]) -> None:
        self._persist_queue(queued)
        self._emit("queue_changed", size=len(queued), messages=[m.content for m in queued])

    def _append(self, message: Message) -> Message:
        self.history.append(message)
        self._touch()
        self._persist_append(message)
        self._emit("message_added", index=len(self.history) - 1, message=message.to_dict())
        return message

    def _replace_history(self, history: ConversationHistory) -> None:
        self.history = history
        self._persist_history()
        self._emit("history_reset", length=len(history))

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def _check_alive(self) -> None:
        if self._disposed:
            raise SessionDisposedError(f"Session {self.project_id} has been disposed")

    def _touch(self) -> None:
        self.last_activity = time.time()

    def submit(self, content: str, attachments: Optional[List[Attachment]] = None) -> bool:
        """Queue a user message and start a turn if the session is idle.

        Returns True if a turn started now, False if the message waits in the
        queue (or was dropped as empty). A running session never gets a
        second turn loop; its input is queued instead.
        """
        self._check_alive()
        self._touch()
        if self.queue.enqueue(content, attachments) is None:
            return False
        if self._driver is not None:
            logger.info(f"Session {self.project_id}: busy, message queued ({self.queue.size} waiting)")
            return False
        self._start_driver()
        return True

    def resume(self) -> bool:
        """Drain the queue after a cancellation. Returns True if a turn started."""
        self._check_alive()
        self._touch()
        if self._driver is not None or not self.queue:
            return False
        self._start_driver()
        return True

    async def cancel(self, reason: str = "Cancelled by user") -> bool:
        """Abort the current turn and wait until the session is idle.

        Returns False if nothing was running.
        """
        driver = self._driver
        if driver is None:
            return False
        self._stop_requested = True
        self._set_state(SessionState.CANCELLING)
        if self._turn_token is not None:
            self._turn_token.cancel(reason)
        await asyncio.wait({driver})
        return True

    async def wait_idle(self) -> None:
        """Wait until no driver is active (the queue is drained or a cancel stopped it)."""
        while self._driver is not None:
            await asyncio.wait({self._driver})

    def rollback(self, turns: int = 1) -> int:
        """Drop the last `turns` user turns. Returns the number of messages removed."""
        self._check_alive()
        if self._driver is not None:
            raise SessionBusyError("Cannot roll back while a turn is running")
        before = len(self.history)
        self._replace_history(self.history.rollback_turns(turns))
        removed = before - len(self.history)
        logger.info(f"Session {self.project_id}: rolled back {removed} message(s)")
        return removed

    def reset(self) -> Optional[str]:
        """Start a fresh, empty history. Queued messages are kept.

        The previous conversation is archived first when a store is attached.
        Returns the archive name, if one was written.
        """
        self._check_alive()
        if self._driver is not None:
            raise SessionBusyError("Cannot reset while a turn is running")
        self._touch()
        archived = None
        if self.store is not None and len(self.history):
            # Raises OSError and leaves the history in place if the archive cannot be written
            archived = self.store.archive_history(self.project_id, self.history.to_dicts())
        self._replace_history(ConversationHistory())
        return archived

    async def dispose(self) -> None:
        """Cancel any turn, persist the backlog and refuse further commands."""
        if self._disposed:
            return
        await self.cancel("Session disposed")
        self._disposed = True
        self._persist_queue(self.queue.snapshot())
        self.queue.set_on_change(None)
        self._listeners.clear()
        logger.info(f"Session {self.project_id}: disposed")

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    def _start_driver(self) -> None:
        self._stop_requested = False
        self._set_state(SessionState.RUNNING)
        self._driver = asyncio.create_task(self._drive())

    def _take_next(self) -> Optional[QueuedMessage]:
        if not self.merge_queued_messages:
            return self.queue.dequeue()
        backlog = self.queue.dequeue_all()
        if not backlog:
            return None
        return QueuedMessage(
            content="\n\n".join(m.content for m in backlog if m.content.strip()),
            attachments=[a for m in backlog for a in m.attachments],
        )

    async def _drive(self) -> None:
        try:
            while not self._stop_requested:
                queued = self._take_next()
                if queued is None:
                    break
                await self._run_turn(queued)
                if self._stop_requested or not self.queue:
                    break
                # Passing through idle: its entry action starts the next queued message
                self._set_state(SessionState.IDLE)
                self._set_state(SessionState.RUNNING)
        finally:
            self._driver = None
            self._turn_token = None
            self._set_state(SessionState.IDLE)

    async def _run_turn(self, queued: QueuedMessage) -> None:
        token = CancellationToken()
        self._turn_token = token
        logger.info(f"Session {self.project_id}: turn started")
        outcome = "completed"
        try:
            self._append(await self._user_message(queued))
            outcome = await self._turn_loop(token)
        except OperationCancelled:
            outcome = "cancelled"
        except ModelError as e:
            logger.warning(f"Session {self.project_id}: model error: {e}")
            self._record_error(describe_model_error(e))
            outcome = "error"
        except Exception as e:
            logger.exception(f"Session {self.project_id}: turn failed")
            self._record_error(f"Unexpected error: {e}")
            outcome = "error"
        finally:
            self._turn_token = None

        self._answer_pending_calls()
        if outcome == "cancelled" or token.cancelled:
            self._append(cancelled_message(token.reason or "Cancelled by user"))
            outcome = "cancelled"
        logger.info(f"Session {self.project_id}: turn finished ({outcome})")

    async def _attachment_path(self, name: str, taken: List[str]) -> str:
        name = posixpath.basename(name.replace("\\", "/"))
        if name in ("", ".", ".."):
            name = "attachment"
        stem, ext = posixpath.splitext(name)
        path = join_path(self.attachments_dir, name)
        n = 1
        while path in taken or await self.executor.context.vfs.exists(path):
            path = join_path(self.attachments_dir, f"{stem}_{n}{ext}")
            n += 1
        return path

    async def _user_message(self, queued: QueuedMessage) -> Message:
        """Save attachments to the VFS and reference them in the message text.

        A failed write is reported in the message instead of failing the turn.
        """
        paths: List[str] = []
        failures: List[str] = []
        for attachment in queued.attachments:
            try:
                path = await self._attachment_path(attachment.name, paths)
                await self.executor.context.vfs.write_file(path, attachment.data)
            except VFSError as e:
                logger.warning(f"Session {self.project_id}: could not save attachment {attachment.name!r}: {e}")
                failures.append(f"Could not save attachment {attachment.name!r}: {e}")
                continue
            paths.append(path)
        lines = [queued.content] if queued.content.strip() else []
        lines.extend(f"Added file: {display_path(p)}" for p in paths)
        lines.extend(failures)
        return user_message("\n".join(lines), attachments=[display_path(p) for p in paths])

    async def _turn_loop(self, token: CancellationToken) -> str:
        steps = 0
        while True:
            token.raise_if_cancelled()
            if steps >= self.max_steps:
                self._record_error(f"Stopped after {self.max_steps} model steps without a final answer")
                return "error"
            steps += 1

            self._repair_history()
            completion = await self._complete(token)
            if completion.is_empty():
                self._record_error("The model returned an empty response (no text, tool calls or reasoning)")
                return "error"

            self._append(assistant_message(completion.text, completion.tool_calls, completion.reasoning))
            if not completion.tool_calls:
                return "completed"

            await self.executor.execute_all(
                completion.tool_calls,
                token,
                on_start=self._on_tool_start,
                on_result=self._on_tool_result,
            )
            token.raise_if_cancelled()

    async def _complete(self, token: CancellationToken) -> Completion:
        request = self.provider.complete(
            self.history,
            self.executor.definitions(),
            system_prompt=self.system_prompt,
            cancel_token=token,
        )
        try:
            return await token.run(asyncio.wait_for(request, timeout=self.model_timeout))
        except asyncio.TimeoutError:
            raise ModelTimeoutError(self.model_timeout)

    def _on_tool_start(self, call: ToolCall) -> None:
        self._emit("tool_call", call=call.to_dict())

    def _on_tool_result(self, call: ToolCall, result: ToolResult) -> None:
        self._append(tool_message(result))
        self._emit("tool_result", name=call.name, result=result.to_dict())

    def _repair_history(self) -> None:
        repaired = self.history.repaired()
        if repaired is not self.history:
            self._replace_history(repaired)

    def _answer_pending_calls(self) -> None:
        for call in self.history.unanswered_tool_calls():
            self._append(tool_message(cancelled_result(call.id)))

    def _record_error(self, text: str) -> None:
        self._set_state(SessionState.ERROR)
        self._append(error_message(text))
