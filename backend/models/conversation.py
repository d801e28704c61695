"""Conversation data models."""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, NewType, Optional

# The two proxy sessions of one conversation. Distinct types so a type
# checker rejects passing one side's token into the other side's chat call.
RequesterSessionToken = NewType("RequesterSessionToken", str)
PeerSessionToken = NewType("PeerSessionToken", str)


class TurnRole(str, Enum):
    """Which proxy produced a turn."""
    REQUESTER = "requester"
    PEER = "peer"


class ConversationStatus(str, Enum):
    """Lifecycle status of a peer conversation."""
    ONGOING = "ongoing"
    CONCLUDED = "concluded"
    MAX_ROUNDS = "max_rounds"
    ERROR = "error"
    COMPLETED = "completed"


@dataclass(frozen=True)
class Turn:
    """Represents a single message appended to a transcript."""
    role: TurnRole
    text: str
    emitted_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role.value,
            "text": self.text,
            "emitted_at": self.emitted_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Turn":
        emitted_at = data.get("emitted_at")
        return cls(
            role=TurnRole(data["role"]),
            text=data["text"],
            emitted_at=datetime.fromisoformat(emitted_at) if emitted_at else datetime.now(),
        )


@dataclass
class Conversation:
    """One peer's negotiation thread for one request."""
    conversation_id: str
    request_id: str
    peer_id: str
    peer_name: str
    transcript: List[Turn]
    requester_session_token: Optional[RequesterSessionToken] = None
    peer_session_token: Optional[PeerSessionToken] = None
    status: ConversationStatus = ConversationStatus.ONGOING
    reason: Optional[str] = None
    summary: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.conversation_id,
            "request_id": self.request_id,
            "peer_id": self.peer_id,
            "peer_name": self.peer_name,
            "transcript": [turn.to_dict() for turn in self.transcript],
            "status": self.status.value,
            "reason": self.reason,
            "summary": self.summary,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
