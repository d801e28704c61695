"""Structured analysis of a request before it is broadcast."""
import logging
from typing import List, Optional
from pydantic import BaseModel, Field
from pydantic import ValidationError as SchemaError

from services.llm_client import LLMClient

logger = logging.getLogger(__name__)

ANALYSIS_SYSTEM_PROMPT = """You analyze a request someone wants to broadcast to their network.
Extract the key information and respond with JSON only:
{
  "summary": "one-sentence summary of the request",
  "category": "event | item | service | venue | skill | other",
  "requirements": ["concrete resources the requester needs"],
  "preferences": ["preferences or constraints such as time, place, budget"],
  "tags": ["short keywords useful for matching people who can help"]
}"""


class RequestAnalysis(BaseModel):
    """Expected shape of the completion service's analysis."""
    summary: str
    category: str = "other"
    requirements: List[str] = Field(default_factory=list)
    preferences: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)


class RequestAnalyzer:
    """Extracts a structured summary of a request. Fails open: no analysis, no error."""

    def __init__(self, llm_client: LLMClient):
        self.llm_client = llm_client

    async def analyze_request(self, content: str) -> Optional[RequestAnalysis]:
        """
        Ask the completion service for a structured reading of the request.

        Args:
            content: Raw request text

        Returns:
            RequestAnalysis, or None when the call fails or the reply does not fit the schema
        """
        prompt = f"Analyze this request:\n\n{content}"
        try:
            raw = await self.llm_client.complete(prompt, ANALYSIS_SYSTEM_PROMPT, structured=True)
        except Exception as e:
            logger.warning(f"Request analysis failed, creating request without it: {e}")
            return None

        if not isinstance(raw, dict):
            logger.warning(f"Request analysis returned {type(raw).__name__}, expected a JSON object")
            return None
        try:
            analysis = RequestAnalysis.model_validate(raw)
        except SchemaError as e:
            logger.warning(f"Request analysis did not match schema: {e.error_count()} errors")
            return None

        logger.info(f"Request analyzed: category={analysis.category}, tags={analysis.tags}")
        return analysis
