"""
Agent package - per-project session orchestration.

- events: SessionEvent and SessionState data types
- history: Message, ConversationHistory, history repair and rollback
- session: Session state machine (turn loop, queue drainage, cancellation)
- manager: SessionManager registry and ProjectContext
"""

from .events import SessionEvent, SessionState
from .history import ConversationHistory, Message
from .session import Session, SessionBusyError, SessionDisposedError
from .manager import ProjectContext, SessionManager

__all__ = [
    "SessionEvent",
    "SessionState",
    "ConversationHistory",
    "Message",
    "Session",
    "SessionBusyError",
    "SessionDisposedError",
    "ProjectContext",
    "SessionManager",
]
