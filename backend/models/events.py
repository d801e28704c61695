"""Broadcast outcome and live progress event models."""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from models.conversation import ConversationStatus, Turn


class BroadcastStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class BroadcastResult:
    """Per-peer outcome of one broadcast run."""
    peer_id: str
    peer_name: str
    status: BroadcastStatus
    conversation_id: Optional[str] = None
    latest_reply: str = ""
    conversation_status: Optional[ConversationStatus] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == BroadcastStatus.SUCCESS


class ProgressEventType(str, Enum):
    CONVERSATION_START = "conversation_start"
    MESSAGE = "message"
    CONVERSATION_END = "conversation_end"
    ERROR = "error"
    DONE = "done"


@dataclass
class ProgressEvent:
    """
    One streaming progress notification.

    Attributes:
        type: Event kind
        correlation_id: Transient per-peer id, valid before the conversation is persisted
        conversation_id: Real persisted id, set on conversation_end and on error once stored
        peer_id: Target peer of the event (absent on done)
        peer_name: Display name of the target peer
        turn: Appended turn (message events)
        status: Final conversation status (conversation_end events)
        reason: Conclusion reason (conversation_end events)
        error: Failure detail (error events)
        total: Number of peers processed (done event)
    """
    type: ProgressEventType
    correlation_id: Optional[str] = None
    conversation_id: Optional[str] = None
    peer_id: Optional[str] = None
    peer_name: Optional[str] = None
    turn: Optional[Turn] = None
    status: Optional[ConversationStatus] = None
    reason: Optional[str] = None
    error: Optional[str] = None
    total: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type.value}
        if self.correlation_id is not None:
            data["correlation_id"] = self.correlation_id
        if self.conversation_id is not None:
            data["conversation_id"] = self.conversation_id
        if self.peer_id is not None:
            data["peer_id"] = self.peer_id
        if self.peer_name is not None:
            data["peer_name"] = self.peer_name
        if self.turn is not None:
            data["turn"] = self.turn.to_dict()
        if self.status is not None:
            data["status"] = self.status.value
        if self.reason is not None:
            data["reason"] = self.reason
        if self.error is not None:
            data["error"] = self.error
        if self.total is not None:
            data["total"] = self.total
        return data
