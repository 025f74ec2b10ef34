"""
Conversation history for an agent session.

A history is an ordered list of Messages. Within a session it only grows;
rollback and repair build a new ConversationHistory instead of mutating the
existing one, so observers holding the old one never see it change under them.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Set

from tools._common import CANCELLED_MESSAGE, ToolCall, ToolResult

logger = logging.getLogger(__name__)

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_TOOL = "tool"
ROLE_ERROR = "error"
ROLE_CANCELLED = "cancelled"

# Roles that are bookkeeping for the UI and never sent to the model
MARKER_ROLES = frozenset({ROLE_ERROR, ROLE_CANCELLED})


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Message:
    role: str
    content: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    # Set on ROLE_TOOL messages only
    tool_result: Optional[ToolResult] = None
    reasoning: str = ""
    # VFS paths of files attached to a user message
    attachments: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"role": self.role, "content": self.content, "created_at": self.created_at}
        if self.tool_calls:
            d["tool_calls"] = [c.to_dict() for c in self.tool_calls]
        if self.tool_result is not None:
            d["tool_result"] = self.tool_result.to_dict()
        if self.reasoning:
            d["reasoning"] = self.reasoning
        if self.attachments:
            d["attachments"] = list(self.attachments)
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Message":
        result = d.get("tool_result")
        return cls(
            role=d.get("role", ROLE_USER),
            content=d.get("content", ""),
            tool_calls=[ToolCall.from_dict(c) for c in d.get("tool_calls") or []],
            tool_result=ToolResult.from_dict(result) if result else None,
            reasoning=d.get("reasoning", ""),
            attachments=list(d.get("attachments") or []),
            created_at=d.get("created_at") or _now(),
        )


def user_message(content: str, attachments: Optional[List[str]] = None) -> Message:
    return Message(role=ROLE_USER, content=content, attachments=list(attachments or []))


def assistant_message(content: str, tool_calls: Optional[List[ToolCall]] = None, reasoning: str = "") -> Message:
    return Message(role=ROLE_ASSISTANT, content=content, tool_calls=list(tool_calls or []), reasoning=reasoning)


def tool_message(result: ToolResult) -> Message:
    return Message(role=ROLE_TOOL, tool_result=result)


def error_message(text: str) -> Message:
    return Message(role=ROLE_ERROR, content=text)


def cancelled_message(text: str = "Cancelled by user") -> Message:
    return Message(role=ROLE_CANCELLED, content=text)


class ConversationHistory:
    """Append-only sequence of Messages."""

    def __init__(self, messages: Optional[List[Message]] = None):
        self._messages: List[Message] = list(messages or [])

    def append(self, message: Message) -> Message:
        self._messages.append(message)
        return message

    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))

    def __getitem__(self, index):
        return self._messages[index]

    def truncate(self, count: int) -> "ConversationHistory":
        """New history holding the first `count` messages."""
        return ConversationHistory(self._messages[:max(0, count)])

    def rollback_turns(self, turns: int = 1) -> "ConversationHistory":
        """New history with the last `turns` user turns (and everything after them) removed."""
        user_indices = [i for i, m in enumerate(self._messages) if m.role == ROLE_USER]
        if turns <= 0 or not user_indices:
            return ConversationHistory(self._messages)
        cut = user_indices[-turns] if turns <= len(user_indices) else 0
        return self.truncate(cut)

    def unanswered_tool_calls(self) -> List[ToolCall]:
        """Tool calls of the last assistant message that have no result yet."""
        for i in range(len(self._messages) - 1, -1, -1):
            msg = self._messages[i]
            if msg.role == ROLE_ASSISTANT:
                answered = self._result_ids(i + 1)
                return [c for c in msg.tool_calls if c.id not in answered]
        return []

    def _result_ids(self, start: int) -> Set[str]:
        ids = set()
        for msg in self._messages[start:]:
            if msg.role != ROLE_TOOL:
                break
            if msg.tool_result is not None:
                ids.add(msg.tool_result.call_id)
        return ids

    def repaired(self) -> "ConversationHistory":
        """Validate and repair before a completion request.

        Every assistant tool call must be followed by its result before the
        next non-tool message. Missing results (an interrupted process, a
        history loaded from disk) get a synthetic cancelled result. Returns
        self when nothing needed fixing.
        """
        out: List[Message] = []
        inserted = 0
        i = 0
        n = len(self._messages)
        while i < n:
            msg = self._messages[i]
            out.append(msg)
            i += 1
            if msg.role != ROLE_ASSISTANT or not msg.tool_calls:
                continue
            answered = set()
            while i < n and self._messages[i].role == ROLE_TOOL:
                tool_msg = self._messages[i]
                if tool_msg.tool_result is not None:
                    answered.add(tool_msg.tool_result.call_id)
                out.append(tool_msg)
                i += 1
            for call in msg.tool_calls:
                if call.id not in answered:
                    out.append(tool_message(ToolResult(
                        call_id=call.id, is_error=True,
                        payload={"error": CANCELLED_MESSAGE, "cancelled": True},
                    )))
                    inserted += 1
        if not inserted:
            return self
        logger.warning(f"History repaired: added {inserted} missing tool result(s)")
        return ConversationHistory(out)

    def to_dicts(self) -> List[Dict[str, Any]]:
        return [m.to_dict() for m in self._messages]

    @classmethod
    def from_dicts(cls, data: List[Dict[str, Any]]) -> "ConversationHistory":
        return cls([Message.from_dict(d) for d in data])
