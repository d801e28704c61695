"""Summary generator producing a digest of every negotiation for a request."""
import logging
from typing import List

from models.conversation import Conversation, TurnRole
from models.request import Request, RequestStatus
from services.errors import NotFoundError
from services.llm_client import LLMClient
from services.record_store import RecordStore

logger = logging.getLogger(__name__)

EXCERPT_LENGTH = 100

SUMMARY_SYSTEM_PROMPT = """You summarize the outcome of a request that was broadcast to several people.
Answer concisely and list:
1. How many people replied
2. Who can help, and with what
3. What parts of the request remain unmet"""


class SummaryGenerator:
    """Renders all conversations of a request and asks the completion service for a summary."""

    def __init__(self, store: RecordStore, llm_client: LLMClient):
        self.store = store
        self.llm_client = llm_client

    async def summarize(self, request_id: str) -> str:
        """
        Generate, persist and return the summary for a request.

        Completion failures propagate to the caller.

        Raises:
            NotFoundError: If the request does not exist
            LLMClientError: If the completion call fails
        """
        loaded = await self.store.get_request_with_conversations(request_id)
        if loaded is None:
            raise NotFoundError(f"Request {request_id} not found")

        digest = self.render_digest(loaded.request, loaded.conversations)
        prompt = (
            "Based on the request and conversation records below, write a short summary "
            "of who can help and what they can provide:\n\n"
            f"{digest}"
        )

        logger.info(f"Generating summary for request {request_id} over {len(loaded.conversations)} conversations")
        summary = await self.llm_client.complete(prompt, SUMMARY_SYSTEM_PROMPT, structured=False)

        await self.store.update_request_summary(request_id, summary, RequestStatus.COMPLETED)
        return summary

    @staticmethod
    def render_digest(request: Request, conversations: List[Conversation]) -> str:
        """Deterministic text rendering: request content, then transcript excerpts per peer."""
        lines = ["## Request", request.content, "", "## Conversations"]
        for conversation in conversations:
            lines.append("")
            lines.append(f"### {conversation.peer_name} ({conversation.status.value})")
            for turn in conversation.transcript:
                speaker = "Requester" if turn.role == TurnRole.REQUESTER else conversation.peer_name
                excerpt = turn.text[:EXCERPT_LENGTH]
                if len(turn.text) > EXCERPT_LENGTH:
                    excerpt += "..."
                lines.append(f"- **{speaker}**: {excerpt}")
        return "\n".join(lines)
