"""Fan-out coordinator broadcasting a request to network peers."""
import asyncio
import logging
import uuid
from typing import Awaitable, Callable, List, Optional, Tuple

from config import PEER_POOL_LIMIT
from models.conversation import Conversation, ConversationStatus, Turn
from models.events import (
    BroadcastResult,
    BroadcastStatus,
    ProgressEvent,
    ProgressEventType,
)
from models.network import Peer
from models.request import RequestStatus
from services.errors import NotFoundError, PersistenceError, ValidationError
from services.progress import ProgressSink, SafeEmitter
from services.record_store import RecordStore
from services.turn_engine import EngineOutcome, TurnEngine

logger = logging.getLogger(__name__)

PeerSelector = Callable[[RecordStore, Peer, int], Awaitable[List[Peer]]]


async def select_recent_peers(store: RecordStore, requester: Peer, limit: int) -> List[Peer]:
    """Default pool: whatever the store lists first, excluding the requester."""
    return await store.list_peers(exclude_peer_id=requester.peer_id, limit=limit)


class _StreamObserver:
    """Forwards appended turns of one peer's run as message events."""

    def __init__(self, emitter: SafeEmitter, correlation_id: str, peer: Peer):
        self.emitter = emitter
        self.correlation_id = correlation_id
        self.peer = peer

    def on_turn_appended(self, turn: Turn) -> None:
        self.emitter.emit(ProgressEvent(
            type=ProgressEventType.MESSAGE,
            correlation_id=self.correlation_id,
            peer_id=self.peer.peer_id,
            peer_name=self.peer.display_name,
            turn=turn
        ))


class BroadcastCoordinator:
    """
    Runs one turn engine per peer concurrently and isolates their failures.

    A failure while negotiating with one peer becomes that peer's failed
    result and never affects the others. A run the engine ends with status
    ERROR is still stored with its partial transcript, and the failed
    result points at it.
    """

    def __init__(
        self,
        store: RecordStore,
        engine: TurnEngine,
        peer_limit: int = PEER_POOL_LIMIT,
        peer_selector: PeerSelector = select_recent_peers
    ):
        self.store = store
        self.engine = engine
        self.peer_limit = peer_limit
        self.peer_selector = peer_selector

    async def broadcast(self, request_id: str, request_content: str, requester_id: str) -> List[BroadcastResult]:
        """
        Negotiate with every candidate peer and return all outcomes together.

        Args:
            request_id: Existing request to attach conversations to
            request_content: Raw request text
            requester_id: Peer id of the requester

        Returns:
            One BroadcastResult per attempted peer

        Raises:
            ValidationError: Missing ids or content, unknown requester or request
            PersistenceError: If the request status cannot be written
        """
        requester, peers = await self._prepare(request_id, request_content, requester_id)
        logger.info(f"Broadcasting request {request_id} to {len(peers)} peers")

        await self.store.update_request_status(request_id, RequestStatus.BROADCASTING)

        results = await asyncio.gather(*(
            self._run_peer(request_id, request_content, requester, peer)
            for peer in peers
        ))

        await self.store.update_request_status(request_id, RequestStatus.COMPLETED)
        self._log_totals(request_id, results)
        return list(results)

    async def broadcast_with_stream(
        self,
        request_id: str,
        request_content: str,
        requester_id: str,
        sink: ProgressSink
    ) -> List[BroadcastResult]:
        """
        Same fan-out as broadcast, emitting progress events as they happen.

        Per peer the sink sees conversation_start, one message per appended
        turn, then conversation_end or error. A final done event carrying the
        peer count follows all peers. The sink is closed on return.

        Raises:
            ValidationError: Before any event is emitted
        """
        emitter = SafeEmitter(sink)
        try:
            requester, peers = await self._prepare(request_id, request_content, requester_id)
            logger.info(f"Streaming broadcast of request {request_id} to {len(peers)} peers")

            await self.store.update_request_status(request_id, RequestStatus.BROADCASTING)

            results = await asyncio.gather(*(
                self._stream_peer(request_id, request_content, requester, peer, emitter)
                for peer in peers
            ))

            try:
                await self.store.update_request_status(request_id, RequestStatus.COMPLETED)
            except PersistenceError as e:
                logger.error(f"Could not mark request {request_id} completed: {e.message}")

            emitter.emit(ProgressEvent(type=ProgressEventType.DONE, total=len(peers)))
            self._log_totals(request_id, results)
            return list(results)
        finally:
            emitter.close()

    async def _prepare(self, request_id: str, request_content: str, requester_id: str) -> Tuple[Peer, List[Peer]]:
        if not request_id or not request_id.strip():
            raise ValidationError("request_id is required")
        if not requester_id or not requester_id.strip():
            raise ValidationError("requester_id is required")
        if not request_content or not request_content.strip():
            raise ValidationError("Request content cannot be empty")

        requester = await self.store.get_peer(requester_id)
        if requester is None:
            raise NotFoundError(f"Requester {requester_id} not found")
        if await self.store.get_request(request_id) is None:
            raise NotFoundError(f"Request {request_id} not found")

        candidates = await self.peer_selector(self.store, requester, self.peer_limit)
        peers = [peer for peer in candidates if peer.peer_id != requester.peer_id]
        return requester, peers[:self.peer_limit]

    async def _run_peer(self, request_id: str, request_content: str, requester: Peer, peer: Peer) -> BroadcastResult:
        try:
            outcome = await self.engine.run(requester, peer, request_content)
            conversation = await self._persist(request_id, peer, outcome)
        except Exception as e:
            logger.error(f"Broadcast to {peer.display_name} failed: {e}", exc_info=True)
            return self._failed(peer, str(e))

        if outcome.status == ConversationStatus.ERROR:
            return self._failed(peer, outcome.reason or "negotiation failed", conversation.conversation_id)
        return self._succeeded(peer, conversation, outcome)

    async def _stream_peer(
        self,
        request_id: str,
        request_content: str,
        requester: Peer,
        peer: Peer,
        emitter: SafeEmitter
    ) -> BroadcastResult:
        correlation_id = f"pending_{uuid.uuid4().hex[:8]}"
        emitter.emit(ProgressEvent(
            type=ProgressEventType.CONVERSATION_START,
            correlation_id=correlation_id,
            peer_id=peer.peer_id,
            peer_name=peer.display_name
        ))

        observer = _StreamObserver(emitter, correlation_id, peer)
        error: Optional[str] = None
        conversation: Optional[Conversation] = None
        try:
            outcome = await self.engine.run(requester, peer, request_content, observer=observer)
            conversation = await self._persist(request_id, peer, outcome)
            if outcome.status == ConversationStatus.ERROR:
                error = outcome.reason or "negotiation failed"
        except Exception as e:
            logger.error(f"Streaming broadcast to {peer.display_name} failed: {e}", exc_info=True)
            error = str(e)

        if error is not None:
            conversation_id = conversation.conversation_id if conversation is not None else None
            emitter.emit(ProgressEvent(
                type=ProgressEventType.ERROR,
                correlation_id=correlation_id,
                conversation_id=conversation_id,
                peer_id=peer.peer_id,
                peer_name=peer.display_name,
                error=error
            ))
            return self._failed(peer, error, conversation_id)

        emitter.emit(ProgressEvent(
            type=ProgressEventType.CONVERSATION_END,
            correlation_id=correlation_id,
            conversation_id=conversation.conversation_id,
            peer_id=peer.peer_id,
            peer_name=peer.display_name,
            status=outcome.status,
            reason=outcome.reason
        ))
        return self._succeeded(peer, conversation, outcome)

    async def _persist(self, request_id: str, peer: Peer, outcome: EngineOutcome) -> Conversation:
        return await self.store.create_conversation(
            request_id=request_id,
            peer_id=peer.peer_id,
            peer_name=peer.display_name,
            transcript=outcome.transcript,
            requester_session_token=outcome.requester_session_token,
            peer_session_token=outcome.peer_session_token,
            status=outcome.status,
            reason=outcome.reason
        )

    @staticmethod
    def _succeeded(peer: Peer, conversation: Conversation, outcome: EngineOutcome) -> BroadcastResult:
        return BroadcastResult(
            peer_id=peer.peer_id,
            peer_name=peer.display_name,
            status=BroadcastStatus.SUCCESS,
            conversation_id=conversation.conversation_id,
            latest_reply=outcome.latest_peer_reply,
            conversation_status=outcome.status
        )

    @staticmethod
    def _failed(peer: Peer, error: str, conversation_id: Optional[str] = None) -> BroadcastResult:
        return BroadcastResult(
            peer_id=peer.peer_id,
            peer_name=peer.display_name,
            status=BroadcastStatus.FAILED,
            conversation_id=conversation_id,
            conversation_status=ConversationStatus.ERROR if conversation_id else None,
            error=error
        )

    @staticmethod
    def _log_totals(request_id: str, results: List[BroadcastResult]) -> None:
        success_count = sum(1 for result in results if result.succeeded)
        logger.info(
            f"Broadcast of request {request_id} finished: "
            f"{success_count} succeeded, {len(results) - success_count} failed"
        )
