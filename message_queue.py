"""
Per-project FIFO of user messages that arrive while the agent is busy.
"""

import base64
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class Attachment:
    """A file the user attached to a message."""
    name: str
    data: bytes = b""
    media_type: str = "application/octet-stream"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "data": base64.b64encode(self.data).decode("ascii"),
            "media_type": self.media_type,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Attachment":
        return cls(
            name=d.get("name", ""),
            data=base64.b64decode(d.get("data") or b""),
            media_type=d.get("media_type") or "application/octet-stream",
        )


@dataclass
class QueuedMessage:
    content: str
    attachments: List[Attachment] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.content or "").strip() and not self.attachments

    def to_dict(self) -> Dict[str, Any]:
        return {"content": self.content, "attachments": [a.to_dict() for a in self.attachments]}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "QueuedMessage":
        return cls(
            content=d.get("content", ""),
            attachments=[Attachment.from_dict(a) for a in d.get("attachments") or []],
        )


class MessageQueue:
    """FIFO of QueuedMessages.

    Empty messages (whitespace-only content and no attachments) are dropped on
    enqueue. Mutations never await, so each one is atomic on the event loop.
    """

    def __init__(
        self,
        messages: Optional[List[QueuedMessage]] = None,
        on_change: Optional[Callable[[List[QueuedMessage]], None]] = None,
    ):
        self._items: List[QueuedMessage] = [m for m in messages or [] if not m.is_empty()]
        self._on_change = on_change

    def set_on_change(self, cb: Optional[Callable[[List[QueuedMessage]], None]]) -> None:
        self._on_change = cb

    def _changed(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(self.snapshot())
        except Exception:
            logger.exception("Message queue change callback failed")

    def enqueue(self, content: str, attachments: Optional[List[Attachment]] = None) -> Optional[QueuedMessage]:
        """Append a message. Returns it, or None when it was dropped as empty."""
        msg = QueuedMessage(content=content or "", attachments=list(attachments or []))
        if msg.is_empty():
            logger.debug("Dropped empty message")
            return None
        self._items.append(msg)
        self._changed()
        return msg

    def dequeue(self) -> Optional[QueuedMessage]:
        """Remove and return the head, or None when empty."""
        if not self._items:
            return None
        msg = self._items.pop(0)
        self._changed()
        return msg

    def dequeue_all(self) -> List[QueuedMessage]:
        """Remove and return the whole backlog in submission order."""
        items, self._items = self._items, []
        if items:
            self._changed()
        return items

    def peek(self) -> Optional[QueuedMessage]:
        return self._items[0] if self._items else None

    @property
    def size(self) -> int:
        return len(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)

    def clear(self) -> None:
        if self._items:
            self._items = []
            self._changed()

    def snapshot(self) -> List[QueuedMessage]:
        return list(self._items)
