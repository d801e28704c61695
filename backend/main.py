"""Main entry point for the agent network negotiation API."""
import asyncio
import json
import logging
from typing import Optional
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from config import CORS_ORIGINS, LOG_FORMAT, LOG_LEVEL, MAX_ROUNDS, PEER_POOL_LIMIT, PORT, SUPABASE_URL, SUPABASE_KEY
from logger import setup_logging
from models.api import (
    BroadcastConversation,
    BroadcastFailure,
    BroadcastRequest,
    BroadcastResponse,
    ChatRequest,
    ChatResponse,
    Member,
    SummaryRequest,
    SummaryResponse,
    TurnModel,
)
from models.conversation import Turn
from services.broadcast import BroadcastCoordinator
from services.conclusion_detector import ConclusionDetector
from services.conversation_service import ConversationService
from services.credentials import CredentialResolver
from services.errors import (
    AuthError,
    ChatBackendError,
    NetworkChatError,
    NotFoundError,
    ValidationError,
)
from services.llm_client import LLMClient, LLMClientError
from services.progress import QueueProgressSink
from services.proxy_chat import ProxyChatAdapter
from services.record_store import InMemoryRecordStore, RecordStore
from services.request_analyzer import RequestAnalyzer
from services.summary import SummaryGenerator
from services.turn_engine import TurnEngine

# Initialize logging
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Agent Network Negotiator",
    description="Broadcasts requests to peer AI proxies and negotiates with each automatically",
    version="1.0.0"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Initialize services (will be done on startup)
record_store: RecordStore = None
broadcast_coordinator: BroadcastCoordinator = None
summary_generator: SummaryGenerator = None
conversation_service: ConversationService = None


@app.on_event("startup")
async def startup_event():
    """Initialize services on startup."""
    global record_store, broadcast_coordinator, summary_generator, conversation_service

    if LOG_FORMAT == "json":
        setup_logging(LOG_LEVEL)

    logger.info("Initializing agent network services...")

    try:
        if SUPABASE_URL and SUPABASE_KEY:
            from services.supabase_store import SupabaseRecordStore
            record_store = SupabaseRecordStore()
        else:
            logger.warning("Supabase not configured, using process-local in-memory store")
            record_store = InMemoryRecordStore()

        llm_client = LLMClient()
        chat_adapter = ProxyChatAdapter(CredentialResolver(record_store))
        engine = TurnEngine(chat_adapter, ConclusionDetector(llm_client), max_rounds=MAX_ROUNDS)

        broadcast_coordinator = BroadcastCoordinator(record_store, engine, peer_limit=PEER_POOL_LIMIT)
        summary_generator = SummaryGenerator(record_store, llm_client)
        conversation_service = ConversationService(record_store, chat_adapter, RequestAnalyzer(llm_client))

        logger.info("All services initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize services: {e}", exc_info=True)
        raise


def _to_http_exception(error: Exception) -> HTTPException:
    """Map service errors onto HTTP status codes with a structured body."""
    if isinstance(error, NetworkChatError):
        if isinstance(error, NotFoundError):
            status_code = 404
        elif isinstance(error, ValidationError):
            status_code = 400
        elif isinstance(error, AuthError):
            status_code = 401
        elif isinstance(error, ChatBackendError):
            status_code = 503
        else:
            status_code = 500
        return HTTPException(status_code=status_code, detail={"error": error.to_dict()})

    if isinstance(error, LLMClientError):
        return HTTPException(
            status_code=503,
            detail={
                "error": {
                    "code": error.error.code,
                    "message": error.error.message,
                    "details": error.error.details
                }
            }
        )

    logger.error(f"Unexpected error: {error}", exc_info=True)
    return HTTPException(status_code=500, detail=f"Internal server error: {str(error)}")


def _turn_model(turn: Turn) -> TurnModel:
    return TurnModel(**turn.to_dict())


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "message": "Agent Network Negotiator API"}


@app.get("/health")
async def health():
    """Detailed health check."""
    return {
        "status": "healthy",
        "service": "agent-network-negotiator",
        "version": "1.0.0"
    }


@app.post("/network/broadcast", response_model=BroadcastResponse)
async def broadcast_endpoint(request: BroadcastRequest) -> BroadcastResponse:
    """
    Create a request and negotiate with every candidate peer, returning when all settle.
    """
    try:
        record = await conversation_service.create_request(request.requester_id, request.content)
        logger.info(f"Broadcasting request {record.request_id} from {request.requester_id}")

        results = await broadcast_coordinator.broadcast(record.request_id, record.content, request.requester_id)
    except Exception as e:
        raise _to_http_exception(e)

    succeeded = [result for result in results if result.succeeded]
    failed = [result for result in results if not result.succeeded]

    return BroadcastResponse(
        request_id=record.request_id,
        total_peers=len(results),
        success_count=len(succeeded),
        failed_count=len(failed),
        conversations=[
            BroadcastConversation(
                conversation_id=result.conversation_id,
                peer_name=result.peer_name,
                latest_reply=result.latest_reply,
                status=result.conversation_status.value
            )
            for result in succeeded
        ],
        failures=[
            BroadcastFailure(
                peer_id=result.peer_id,
                peer_name=result.peer_name,
                error=result.error or "",
                conversation_id=result.conversation_id
            )
            for result in failed
        ]
    )


@app.post("/network/broadcast/stream")
async def broadcast_stream_endpoint(request: BroadcastRequest):
    """
    Create a request and stream negotiation progress as Server-Sent Events.

    Each event is sent as `data: {json}` where type is one of
    conversation_start, message, conversation_end, error or done.
    The new request id is returned in the X-Request-Id header.
    """
    try:
        record = await conversation_service.create_request(request.requester_id, request.content)
    except Exception as e:
        raise _to_http_exception(e)

    sink = QueueProgressSink()

    async def generate_stream():
        """Generator relaying sink events; cancels the broadcast if the client goes away."""
        task: Optional[asyncio.Task] = asyncio.create_task(
            broadcast_coordinator.broadcast_with_stream(
                record.request_id, record.content, request.requester_id, sink
            )
        )
        try:
            async for event in sink.events():
                yield f"data: {json.dumps(event.to_dict())}\n\n".encode('utf-8')
            await task
        except Exception as e:
            logger.error(f"Streaming broadcast failed: {e}", exc_info=True)
            error_data = {
                "type": "error",
                "error": e.to_dict() if isinstance(e, NetworkChatError) else {
                    "code": "UNKNOWN_ERROR",
                    "message": f"Internal server error: {str(e)}"
                }
            }
            yield f"data: {json.dumps(error_data)}\n\n".encode('utf-8')
        finally:
            if not task.done():
                logger.info(f"Client disconnected, cancelling broadcast of {record.request_id}")
                sink.close()
                task.cancel()

    return StreamingResponse(
        generate_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable buffering in nginx
            "X-Request-Id": record.request_id
        }
    )


@app.post("/network/chat")
async def chat_endpoint(request: ChatRequest):
    """Continue a conversation manually, or close it with action=complete."""
    try:
        if request.action == "complete":
            await conversation_service.mark_completed(request.conversation_id)
            return {"success": True, "message": "Conversation completed"}

        if not request.message:
            raise ValidationError("Message cannot be empty")

        logger.info(f"Continuing conversation {request.conversation_id}")
        result = await conversation_service.continue_conversation(request.conversation_id, request.message)
    except Exception as e:
        raise _to_http_exception(e)

    return ChatResponse(
        reply=result.reply,
        transcript=[_turn_model(turn) for turn in result.transcript]
    )


@app.get("/network/requests")
async def requests_endpoint(requester_id: str):
    """List a requester's requests, newest first, with their stored analysis."""
    try:
        requests = await conversation_service.list_requests(requester_id)
    except Exception as e:
        raise _to_http_exception(e)
    return {"requests": [request.to_dict() for request in requests]}


@app.get("/network/conversations")
async def conversations_endpoint(request_id: str):
    """List every conversation of a request."""
    try:
        conversations = await conversation_service.list_conversations(request_id)
    except Exception as e:
        raise _to_http_exception(e)
    return {"success": True, "data": [conversation.to_dict() for conversation in conversations]}


@app.post("/network/summary", response_model=SummaryResponse)
async def generate_summary_endpoint(request: SummaryRequest) -> SummaryResponse:
    """Generate and store the summary for a request."""
    try:
        logger.info(f"Generating summary for request {request.request_id}")
        summary = await summary_generator.summarize(request.request_id)
    except Exception as e:
        raise _to_http_exception(e)
    return SummaryResponse(request_id=request.request_id, summary=summary, status="completed")


@app.get("/network/summary", response_model=SummaryResponse)
async def get_summary_endpoint(request_id: str) -> SummaryResponse:
    """Return the stored summary without regenerating it."""
    try:
        record = await conversation_service.get_request(request_id)
    except Exception as e:
        raise _to_http_exception(e)
    return SummaryResponse(request_id=record.request_id, summary=record.summary, status=record.status.value)


@app.get("/network/members")
async def members_endpoint():
    """List the peers in the network."""
    try:
        peers = await conversation_service.list_members()
    except Exception as e:
        raise _to_http_exception(e)
    return {"members": [Member(id=peer.peer_id, name=peer.name, avatar=peer.avatar) for peer in peers]}


if __name__ == "__main__":
    import uvicorn
    logger.info(f"Starting Agent Network Negotiator API on port {PORT}")
    uvicorn.run(app, host="0.0.0.0", port=PORT)
