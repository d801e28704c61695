"""Human-in-the-loop operations on requests and individual conversations."""
import logging
from dataclasses import dataclass
from typing import List, Optional

from models.conversation import Conversation, ConversationStatus, PeerSessionToken, Turn, TurnRole
from models.network import Peer
from models.request import Request
from services.errors import NotFoundError, ValidationError
from services.proxy_chat import ProxyChatAdapter
from services.record_store import RecordStore
from services.request_analyzer import RequestAnalyzer

logger = logging.getLogger(__name__)


@dataclass
class ContinuationResult:
    reply: str
    transcript: List[Turn]


class ConversationService:
    """Lets the requester create requests, keep talking to a peer, or close a conversation."""

    def __init__(
        self,
        store: RecordStore,
        chat_adapter: ProxyChatAdapter,
        analyzer: Optional[RequestAnalyzer] = None
    ):
        self.store = store
        self.chat_adapter = chat_adapter
        self.analyzer = analyzer

    async def create_request(self, requester_id: str, content: str) -> Request:
        """
        Create a pending request for a known requester.

        With an analyzer configured, its structured reading of the content is
        stored on the request; a failed analysis leaves it empty.

        Raises:
            ValidationError: Empty content or requester id
            NotFoundError: Unknown requester
        """
        if not requester_id or not requester_id.strip():
            raise ValidationError("requester_id is required")
        if not content or not content.strip():
            raise ValidationError("Request content cannot be empty")
        if await self.store.get_peer(requester_id) is None:
            raise NotFoundError(f"Requester {requester_id} not found")
        content = content.strip()
        analysis = None
        if self.analyzer is not None:
            result = await self.analyzer.analyze_request(content)
            analysis = result.model_dump() if result is not None else None
        return await self.store.create_request(requester_id, content, analysis=analysis)

    async def list_requests(self, requester_id: str) -> List[Request]:
        if not requester_id:
            raise ValidationError("requester_id is required")
        return await self.store.list_requests(requester_id)

    async def continue_conversation(self, conversation_id: str, message: str) -> ContinuationResult:
        """
        Send one manual message to the peer, reusing the peer-side session.

        Appends the human message and the peer reply. Chat failures
        propagate and leave the stored conversation unchanged.
        """
        if not message or not message.strip():
            raise ValidationError("Message cannot be empty")

        conversation = await self._require_conversation(conversation_id)
        peer = await self.store.get_peer(conversation.peer_id)
        if peer is None:
            raise NotFoundError(f"Peer {conversation.peer_id} not found")

        logger.info(f"Continuing conversation {conversation_id} with {peer.display_name}")
        result = await self.chat_adapter.send_turn(peer, message, conversation.peer_session_token)

        transcript = list(conversation.transcript)
        transcript.append(Turn(role=TurnRole.REQUESTER, text=message))
        transcript.append(Turn(role=TurnRole.PEER, text=result.reply_text))

        peer_token = PeerSessionToken(result.continuation_token) if result.continuation_token else None
        updated = await self.store.update_conversation(
            conversation_id,
            transcript=transcript,
            peer_session_token=peer_token
        )
        return ContinuationResult(reply=result.reply_text, transcript=updated.transcript)

    async def mark_completed(self, conversation_id: str) -> None:
        await self._require_conversation(conversation_id)
        await self.store.update_conversation(conversation_id, status=ConversationStatus.COMPLETED)
        logger.info(f"Conversation {conversation_id} marked completed")

    async def list_conversations(self, request_id: str) -> List[Conversation]:
        if not request_id:
            raise ValidationError("request_id is required")
        return await self.store.get_conversations_by_request(request_id)

    async def get_request(self, request_id: str) -> Request:
        request = await self.store.get_request(request_id)
        if request is None:
            raise NotFoundError(f"Request {request_id} not found")
        return request

    async def list_members(self) -> List[Peer]:
        return await self.store.list_peers()

    async def _require_conversation(self, conversation_id: str) -> Conversation:
        if not conversation_id:
            raise ValidationError("conversation_id is required")
        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return conversation
