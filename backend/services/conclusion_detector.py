"""Conclusion detector judging whether a negotiation has reached a definite outcome."""
import logging
from dataclasses import dataclass
from typing import List, Sequence
from pydantic import BaseModel, StrictBool
from pydantic import ValidationError as SchemaError

from models.conversation import Turn, TurnRole
from services.errors import DetectionError
from services.llm_client import LLMClient

logger = logging.getLogger(__name__)

MIN_TURNS_FOR_DETECTION = 4

INSUFFICIENT_ROUNDS_REASON = "insufficient rounds"
DETECTION_FAILED_REASON = "detection failed, continuing"

DETECTION_SYSTEM_PROMPT = """You review a negotiation between a requester's assistant and a peer's assistant.
Decide whether the conversation has reached a definite conclusion.

It is concluded ONLY if all of these hold:
1. The peer has explicitly said whether they can or cannot help.
2. If they can help, they have said concretely what they offer.
3. Both sides have reached at least provisional agreement on the key particulars
   (timing, location, conditions) where those apply.
A clear refusal from the peer also counts as concluded.
Otherwise it is not concluded.

Respond with JSON: {"concluded": true or false, "reason": "one short sentence"}"""


@dataclass
class ConclusionResult:
    concluded: bool
    reason: str


class ConclusionJudgment(BaseModel):
    """Expected shape of the completion service's verdict."""
    concluded: StrictBool
    reason: str = ""


class ConclusionDetector:
    """Asks the completion service whether a transcript has concluded. Fails open."""

    def __init__(self, llm_client: LLMClient):
        self.llm_client = llm_client

    async def detect_conclusion(self, transcript: Sequence[Turn]) -> ConclusionResult:
        """
        Judge whether the exchange has reached a definite outcome.

        Transcripts shorter than two full round trips are never sent to the
        completion service. Any backend or parsing failure yields
        "not concluded" so a broken detector cannot end a run early.

        Args:
            transcript: Ordered turns so far

        Returns:
            ConclusionResult with the verdict and a human-readable reason
        """
        if len(transcript) < MIN_TURNS_FOR_DETECTION:
            return ConclusionResult(concluded=False, reason=INSUFFICIENT_ROUNDS_REASON)

        try:
            judgment = await self._judge(transcript)
        except DetectionError as e:
            logger.warning(f"Conclusion detection failed, continuing: {e.message}")
            return ConclusionResult(concluded=False, reason=DETECTION_FAILED_REASON)

        logger.info(f"Conclusion verdict: concluded={judgment.concluded}, reason={judgment.reason!r}")
        return ConclusionResult(
            concluded=judgment.concluded,
            reason=judgment.reason or ("concluded" if judgment.concluded else "not concluded")
        )

    async def _judge(self, transcript: Sequence[Turn]) -> ConclusionJudgment:
        prompt = f"Conversation:\n\n{self.render_transcript(transcript)}\n\nHas this conversation concluded?"
        try:
            raw = await self.llm_client.complete(prompt, DETECTION_SYSTEM_PROMPT, structured=True)
        except Exception as e:
            raise DetectionError(f"Completion call failed: {e}")

        if not isinstance(raw, dict):
            raise DetectionError(f"Expected a JSON object, got {type(raw).__name__}")
        try:
            return ConclusionJudgment.model_validate(raw)
        except SchemaError as e:
            raise DetectionError(f"Verdict did not match schema: {e.error_count()} errors")

    @staticmethod
    def render_transcript(transcript: Sequence[Turn]) -> str:
        lines: List[str] = []
        for turn in transcript:
            label = "Requester" if turn.role == TurnRole.REQUESTER else "Peer"
            lines.append(f"{label}: {turn.text}")
        return "\n".join(lines)
