"""
Session event and state data types.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict


class SessionState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    CANCELLING = "cancelling"
    ERROR = "error"


@dataclass
class SessionEvent:
    """Event emitted to session observers"""
    type: str  # state_changed, message_added, queue_changed, tool_call, tool_result, history_reset
    project_id: str = ""
    data: Dict[str, Any] = field(default_factory=dict)
