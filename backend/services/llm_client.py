"""LLM Client for the general-purpose completion service (Groq API)."""
import asyncio
import json
import time
from dataclasses import dataclass
from typing import Optional, Dict, Any, Union
from groq import AsyncGroq
from groq import RateLimitError, AuthenticationError, APIError, APITimeoutError
import logging

from config import GROQ_API_KEY, COMPLETION_MODEL, COMPLETION_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

JSON_ONLY_INSTRUCTION = "Return only a valid JSON object and no other text."


@dataclass
class LLMResponse:
    """Response from LLM generation."""
    text: str
    tokens_input: int
    tokens_output: int
    latency_ms: int
    model_used: str


@dataclass
class LLMError:
    """Structured error response from LLM operations."""
    code: str
    message: str
    details: Dict[str, Any]


class LLMClientError(Exception):
    """Custom exception for LLM client errors with structured error information."""

    def __init__(self, error: LLMError):
        self.error = error
        super().__init__(error.message)


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """
    Find the first well-formed JSON object embedded in free text.

    Models often wrap JSON in prose or code fences, so every "{" is tried
    as a start position until one decodes to a dict.

    Args:
        text: Raw completion text

    Returns:
        The decoded object, or None if the text holds no JSON object
    """
    if not text:
        return None

    decoder = json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            value, _ = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            value = None
        if isinstance(value, dict):
            return value
        start = text.find("{", start + 1)
    return None


class LLMClient:
    """Client for interfacing with Groq API for analysis, detection and summaries."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = COMPLETION_MODEL,
        timeout: float = COMPLETION_TIMEOUT_SECONDS
    ):
        """
        Initialize LLM client with Groq API key.

        Args:
            api_key: Groq API key (defaults to GROQ_API_KEY from environment)
            model: Default model for completions
            timeout: Upper bound in seconds for a single completion call
        """
        self.api_key = api_key or GROQ_API_KEY
        if not self.api_key:
            raise ValueError("GROQ_API_KEY must be provided or set in environment")

        self.model = model
        self.timeout = timeout
        self.client = AsyncGroq(api_key=self.api_key, timeout=timeout, max_retries=0)
        logger.info("LLMClient initialized successfully")

    async def generate(
        self,
        prompt: str,
        system: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: int = 1000,
        temperature: float = 0.7
    ) -> LLMResponse:
        """
        Generate response using Groq API.

        Args:
            prompt: User prompt
            system: Optional system instruction
            model: Model name override
            max_tokens: Maximum tokens to generate
            temperature: Sampling temperature

        Returns:
            LLMResponse with text, token counts, and latency

        Raises:
            LLMClientError: Structured error with code, message, and details
        """
        model = model or self.model
        start_time = time.time()

        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        try:
            logger.debug(f"Generating response with model: {model}")

            response = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=model,
                    messages=messages,
                    max_tokens=max_tokens,
                    temperature=temperature
                ),
                timeout=self.timeout
            )

            latency_ms = int((time.time() - start_time) * 1000)
            text = response.choices[0].message.content or ""
            tokens_input = response.usage.prompt_tokens
            tokens_output = response.usage.completion_tokens

            logger.info(
                f"Generated response: model={model}, "
                f"input_tokens={tokens_input}, output_tokens={tokens_output}, "
                f"latency={latency_ms}ms"
            )

            return LLMResponse(
                text=text,
                tokens_input=tokens_input,
                tokens_output=tokens_output,
                latency_ms=latency_ms,
                model_used=model
            )

        except RateLimitError as e:
            raise self._error(
                "RATE_LIMIT_ERROR",
                "Rate limit exceeded. Please try again in a few moments.",
                model, start_time, e, retry_after=60
            )

        except AuthenticationError as e:
            raise self._error(
                "AUTHENTICATION_ERROR",
                "Authentication failed. Please check your API key.",
                model, start_time, e
            )

        except (APITimeoutError, asyncio.TimeoutError) as e:
            raise self._error(
                "TIMEOUT_ERROR",
                "Request timed out. Please try again.",
                model, start_time, e
            )

        except APIError as e:
            raise self._error(
                "API_ERROR",
                f"Groq API error: {str(e)}",
                model, start_time, e
            )

        except Exception as e:
            raise self._error(
                "UNKNOWN_ERROR",
                f"Unexpected error during generation: {str(e)}",
                model, start_time, e, error_type=type(e).__name__
            )

    async def complete(
        self,
        prompt: str,
        system_instruction: Optional[str] = None,
        structured: bool = False
    ) -> Union[str, Dict[str, Any]]:
        """
        Single-shot completion returning plain text or a parsed JSON object.

        Args:
            prompt: User prompt
            system_instruction: System instruction
            structured: When True, return the first JSON object in the reply

        Returns:
            Reply text, or a dict when structured

        Raises:
            LLMClientError: On API failure, or PARSE_ERROR when no object is found
        """
        if not structured:
            response = await self.generate(prompt, system=system_instruction)
            return response.text

        system = f"{system_instruction}\n\n{JSON_ONLY_INSTRUCTION}" if system_instruction else JSON_ONLY_INSTRUCTION
        response = await self.generate(prompt, system=system, temperature=0.3)
        parsed = extract_json_object(response.text)
        if parsed is None:
            error = LLMError(
                code="PARSE_ERROR",
                message="Completion did not contain a JSON object",
                details={"model": response.model_used, "raw_text": response.text[:500]}
            )
            logger.warning(f"Structured completion parse failure: {response.text[:200]!r}")
            raise LLMClientError(error)
        return parsed

    def _error(
        self,
        code: str,
        message: str,
        model: str,
        start_time: float,
        original: Exception,
        **extra: Any
    ) -> LLMClientError:
        latency_ms = int((time.time() - start_time) * 1000)
        details: Dict[str, Any] = {
            "model": model,
            "latency_ms": latency_ms,
            "original_error": str(original)
        }
        details.update(extra)
        error = LLMError(code=code, message=message, details=details)
        logger.error(
            f"{code}: model={model}, latency={latency_ms}ms, error={original}",
            exc_info=True,
            extra={"extra": {"error_code": error.code, "error_details": error.details}}
        )
        return LLMClientError(error)
