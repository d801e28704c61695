"""Data models for the agent network negotiation service."""
from .network import Credential, Peer
from .conversation import (
    Conversation,
    ConversationStatus,
    PeerSessionToken,
    RequesterSessionToken,
    Turn,
    TurnRole,
)
from .request import Request, RequestStatus, RequestWithConversations
from .events import BroadcastResult, BroadcastStatus, ProgressEvent, ProgressEventType

__all__ = [
    "Credential",
    "Peer",
    "Conversation",
    "ConversationStatus",
    "PeerSessionToken",
    "RequesterSessionToken",
    "Turn",
    "TurnRole",
    "Request",
    "RequestStatus",
    "RequestWithConversations",
    "BroadcastResult",
    "BroadcastStatus",
    "ProgressEvent",
    "ProgressEventType",
]
