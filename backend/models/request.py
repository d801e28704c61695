"""Request data models."""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from models.conversation import Conversation


class RequestStatus(str, Enum):
    PENDING = "pending"
    BROADCASTING = "broadcasting"
    COMPLETED = "completed"


@dataclass
class Request:
    """A requester's natural-language ask broadcast to the network."""
    request_id: str
    requester_id: str
    content: str
    status: RequestStatus = RequestStatus.PENDING
    summary: Optional[str] = None
    analysis: Optional[Dict[str, Any]] = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.request_id,
            "requester_id": self.requester_id,
            "content": self.content,
            "status": self.status.value,
            "summary": self.summary,
            "analysis": self.analysis,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class RequestWithConversations:
    """A request together with every conversation persisted for it."""
    request: Request
    conversations: List[Conversation]
