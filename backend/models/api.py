"""API request and response models for the network endpoints."""
from typing import List, Optional
from pydantic import BaseModel, Field


class BroadcastRequest(BaseModel):
    """Body for POST /network/broadcast and /network/broadcast/stream."""
    requester_id: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)


class BroadcastConversation(BaseModel):
    conversation_id: str
    peer_name: str
    latest_reply: str
    status: str


class BroadcastFailure(BaseModel):
    peer_id: str
    peer_name: str
    error: str
    conversation_id: Optional[str] = None


class BroadcastResponse(BaseModel):
    request_id: str
    total_peers: int
    success_count: int
    failed_count: int
    conversations: List[BroadcastConversation]
    failures: List[BroadcastFailure]


class ChatRequest(BaseModel):
    """Body for POST /network/chat: continue a conversation or mark it complete."""
    conversation_id: str = Field(..., min_length=1)
    message: Optional[str] = None
    action: Optional[str] = None


class TurnModel(BaseModel):
    role: str
    text: str
    emitted_at: str


class ChatResponse(BaseModel):
    reply: str
    transcript: List[TurnModel]


class SummaryRequest(BaseModel):
    request_id: str = Field(..., min_length=1)


class SummaryResponse(BaseModel):
    request_id: str
    summary: Optional[str]
    status: str


class Member(BaseModel):
    id: str
    name: Optional[str]
    avatar: Optional[str] = None
