"""Record store interface for requests, conversations and network peers."""
import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional

from models.conversation import (
    Conversation,
    ConversationStatus,
    PeerSessionToken,
    RequesterSessionToken,
    Turn,
)
from models.network import Credential, Peer
from models.request import Request, RequestStatus, RequestWithConversations
from services.errors import NotFoundError

logger = logging.getLogger(__name__)


def generate_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:12]}"


def generate_conversation_id() -> str:
    return f"conv_{uuid.uuid4().hex[:12]}"


class RecordStore(ABC):
    """
    Persistent storage consumed by the negotiation services.

    Each conversation row is written only by the engine run that created it;
    request status writes are last-writer-wins.
    """

    @abstractmethod
    async def create_request(
        self,
        requester_id: str,
        content: str,
        analysis: Optional[Dict[str, Any]] = None
    ) -> Request:
        ...

    @abstractmethod
    async def get_request(self, request_id: str) -> Optional[Request]:
        ...

    @abstractmethod
    async def list_requests(self, requester_id: str) -> List[Request]:
        """Requests of one requester, newest first."""

    @abstractmethod
    async def update_request_status(self, request_id: str, status: RequestStatus) -> None:
        ...

    @abstractmethod
    async def update_request_summary(
        self,
        request_id: str,
        summary: str,
        status: RequestStatus = RequestStatus.COMPLETED
    ) -> None:
        ...

    @abstractmethod
    async def create_conversation(
        self,
        request_id: str,
        peer_id: str,
        peer_name: str,
        transcript: List[Turn],
        requester_session_token: Optional[RequesterSessionToken],
        peer_session_token: Optional[PeerSessionToken],
        status: ConversationStatus,
        reason: Optional[str] = None
    ) -> Conversation:
        ...

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def update_conversation(
        self,
        conversation_id: str,
        transcript: Optional[List[Turn]] = None,
        requester_session_token: Optional[RequesterSessionToken] = None,
        peer_session_token: Optional[PeerSessionToken] = None,
        status: Optional[ConversationStatus] = None,
        reason: Optional[str] = None
    ) -> Conversation:
        ...

    @abstractmethod
    async def get_conversations_by_request(self, request_id: str) -> List[Conversation]:
        ...

    async def get_request_with_conversations(self, request_id: str) -> Optional[RequestWithConversations]:
        request = await self.get_request(request_id)
        if request is None:
            return None
        conversations = await self.get_conversations_by_request(request_id)
        return RequestWithConversations(request=request, conversations=conversations)

    @abstractmethod
    async def get_peer(self, peer_id: str) -> Optional[Peer]:
        ...

    @abstractmethod
    async def list_peers(self, exclude_peer_id: Optional[str] = None, limit: Optional[int] = None) -> List[Peer]:
        ...

    @abstractmethod
    async def update_peer_credential(self, peer_id: str, credential: Credential) -> None:
        ...


class InMemoryRecordStore(RecordStore):
    """Process-local store. State lives as long as the owning instance."""

    def __init__(self, peers: Optional[List[Peer]] = None):
        self._requests: Dict[str, Request] = {}
        self._conversations: Dict[str, Conversation] = {}
        self._peers: Dict[str, Peer] = {}
        self._lock = asyncio.Lock()
        for peer in peers or []:
            self.add_peer(peer)

    def add_peer(self, peer: Peer) -> None:
        self._peers[peer.peer_id] = peer

    async def create_request(
        self,
        requester_id: str,
        content: str,
        analysis: Optional[Dict[str, Any]] = None
    ) -> Request:
        request = Request(
            request_id=generate_request_id(),
            requester_id=requester_id,
            content=content,
            analysis=analysis
        )
        async with self._lock:
            self._requests[request.request_id] = request
        logger.info(f"Created request {request.request_id} for requester {requester_id}")
        return replace(request)

    async def get_request(self, request_id: str) -> Optional[Request]:
        request = self._requests.get(request_id)
        return replace(request) if request else None

    async def list_requests(self, requester_id: str) -> List[Request]:
        requests = [
            request for request in reversed(list(self._requests.values()))
            if request.requester_id == requester_id
        ]
        requests.sort(key=lambda request: request.created_at, reverse=True)
        return [replace(request) for request in requests]

    async def update_request_status(self, request_id: str, status: RequestStatus) -> None:
        async with self._lock:
            request = self._require_request(request_id)
            request.status = status
            request.updated_at = datetime.now()

    async def update_request_summary(
        self,
        request_id: str,
        summary: str,
        status: RequestStatus = RequestStatus.COMPLETED
    ) -> None:
        async with self._lock:
            request = self._require_request(request_id)
            request.summary = summary
            request.status = status
            request.updated_at = datetime.now()

    async def create_conversation(
        self,
        request_id: str,
        peer_id: str,
        peer_name: str,
        transcript: List[Turn],
        requester_session_token: Optional[RequesterSessionToken],
        peer_session_token: Optional[PeerSessionToken],
        status: ConversationStatus,
        reason: Optional[str] = None
    ) -> Conversation:
        conversation = Conversation(
            conversation_id=generate_conversation_id(),
            request_id=request_id,
            peer_id=peer_id,
            peer_name=peer_name,
            transcript=list(transcript),
            requester_session_token=requester_session_token,
            peer_session_token=peer_session_token,
            status=status,
            reason=reason
        )
        async with self._lock:
            self._conversations[conversation.conversation_id] = conversation
        logger.info(f"Created conversation {conversation.conversation_id} with {peer_name} ({status.value})")
        return self._copy(conversation)

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        conversation = self._conversations.get(conversation_id)
        return self._copy(conversation) if conversation else None

    async def update_conversation(
        self,
        conversation_id: str,
        transcript: Optional[List[Turn]] = None,
        requester_session_token: Optional[RequesterSessionToken] = None,
        peer_session_token: Optional[PeerSessionToken] = None,
        status: Optional[ConversationStatus] = None,
        reason: Optional[str] = None
    ) -> Conversation:
        async with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                raise NotFoundError(f"Conversation {conversation_id} not found")
            if transcript is not None:
                conversation.transcript = list(transcript)
            if requester_session_token is not None:
                conversation.requester_session_token = requester_session_token
            if peer_session_token is not None:
                conversation.peer_session_token = peer_session_token
            if status is not None:
                conversation.status = status
            if reason is not None:
                conversation.reason = reason
            conversation.updated_at = datetime.now()
            return self._copy(conversation)

    async def get_conversations_by_request(self, request_id: str) -> List[Conversation]:
        conversations = [
            conv for conv in self._conversations.values()
            if conv.request_id == request_id
        ]
        conversations.sort(key=lambda conv: conv.created_at)
        return [self._copy(conv) for conv in conversations]

    async def get_peer(self, peer_id: str) -> Optional[Peer]:
        return self._peers.get(peer_id)

    async def list_peers(self, exclude_peer_id: Optional[str] = None, limit: Optional[int] = None) -> List[Peer]:
        peers = [peer for peer in self._peers.values() if peer.peer_id != exclude_peer_id]
        return peers[:limit] if limit is not None else peers

    async def update_peer_credential(self, peer_id: str, credential: Credential) -> None:
        peer = self._peers.get(peer_id)
        if peer is not None:
            peer.credential = credential

    def _require_request(self, request_id: str) -> Request:
        request = self._requests.get(request_id)
        if request is None:
            raise NotFoundError(f"Request {request_id} not found")
        return request

    @staticmethod
    def _copy(conversation: Conversation) -> Conversation:
        return replace(conversation, transcript=list(conversation.transcript))
