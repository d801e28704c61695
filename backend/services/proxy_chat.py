"""Proxy chat adapter for per-user digital proxies (SecondMe chat stream API)."""
import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, List, Optional
import httpx

from config import CHAT_TIMEOUT_SECONDS, SECONDME_BASE_URL
from models.network import Peer
from services.credentials import CredentialResolver
from services.errors import AuthError, ChatBackendError

logger = logging.getLogger(__name__)


@dataclass
class ChatTurnResult:
    """Reply from one proxy turn plus the session to continue it."""
    reply_text: str
    continuation_token: Optional[str]


class ProxyChatAdapter:
    """Sends one message to a peer's proxy and returns the drained reply."""

    def __init__(
        self,
        credentials: CredentialResolver,
        base_url: str = SECONDME_BASE_URL,
        timeout: float = CHAT_TIMEOUT_SECONDS,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize the adapter.

        Args:
            credentials: Resolver producing live access tokens per peer
            base_url: Proxy chat backend base URL
            timeout: Upper bound in seconds for a whole turn, stream included
            http_client: Shared client (a fresh one is opened per turn otherwise)
        """
        self.credentials = credentials
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http_client = http_client

    async def send_turn(
        self,
        peer: Peer,
        message: str,
        continuation_token: Optional[str] = None
    ) -> ChatTurnResult:
        """
        Send a message to the peer's proxy, continuing a session when a token is given.

        Raises:
            AuthError: Credential invalid, unrefreshable or rejected
            ChatBackendError: Transport failure, backend error or timeout
        """
        logger.info(
            f"Chatting with {peer.display_name}"
            + (f" (session: {continuation_token[:8]}...)" if continuation_token else " (new session)")
        )
        try:
            return await asyncio.wait_for(
                self._send_turn(peer, message, continuation_token),
                timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.error(f"Chat turn with {peer.display_name} timed out after {self.timeout}s")
            raise ChatBackendError(
                f"Chat turn timed out after {self.timeout}s",
                code="TIMEOUT_ERROR"
            )

    async def _send_turn(self, peer: Peer, message: str, continuation_token: Optional[str]) -> ChatTurnResult:
        credential = await self.credentials.resolve_live_credential(peer)
        return await self.post_chat_turn(credential, message, continuation_token)

    async def post_chat_turn(
        self,
        credential: str,
        message: str,
        continuation_token: Optional[str] = None
    ) -> ChatTurnResult:
        """
        POST one chat turn and fully drain the event stream.

        Args:
            credential: Live access token
            message: Message text
            continuation_token: Backend session id from a previous turn

        Returns:
            ChatTurnResult with concatenated reply text and the session id
        """
        body = {"message": message}
        if continuation_token:
            body["sessionId"] = continuation_token

        headers = {
            "Authorization": f"Bearer {credential}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        url = f"{self.base_url}/api/secondme/chat/stream"

        try:
            if self._http_client is not None:
                return await self._stream(self._http_client, url, body, headers, continuation_token)
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await self._stream(client, url, body, headers, continuation_token)
        except httpx.TimeoutException as e:
            raise ChatBackendError("Chat backend request timed out", detail=str(e), code="TIMEOUT_ERROR")
        except httpx.HTTPError as e:
            raise ChatBackendError(f"Chat backend request failed: {e}", detail=str(e))

    async def _stream(
        self,
        client: httpx.AsyncClient,
        url: str,
        body: dict,
        headers: dict,
        continuation_token: Optional[str]
    ) -> ChatTurnResult:
        async with client.stream("POST", url, json=body, headers=headers) as response:
            if response.status_code in (401, 403):
                detail = (await response.aread()).decode("utf-8", errors="replace")
                raise AuthError(
                    "Chat backend rejected credential",
                    details={"status_code": response.status_code, "detail": detail}
                )
            if response.status_code >= 400:
                detail = (await response.aread()).decode("utf-8", errors="replace")
                raise ChatBackendError(
                    f"Chat backend error: {response.status_code}",
                    status_code=response.status_code,
                    detail=detail
                )

            fragments: List[str] = []
            session_id: Optional[str] = None
            event_name: Optional[str] = None

            async for line in response.aiter_lines():
                if not line:
                    event_name = None
                    continue
                if line.startswith("event:"):
                    event_name = line[6:].strip()
                    continue
                if not line.startswith("data:"):
                    continue

                data = line[5:].strip()
                if data == "[DONE]":
                    continue

                try:
                    payload = json.loads(data)
                except json.JSONDecodeError:
                    if event_name == "session" and data:
                        session_id = data
                    continue

                if not isinstance(payload, dict):
                    continue
                found_session = payload.get("sessionId") or payload.get("session_id")
                if found_session:
                    session_id = str(found_session)
                if event_name == "session":
                    continue
                fragment = self._content_fragment(payload)
                if fragment:
                    fragments.append(fragment)

        reply = "".join(fragments)
        if not reply:
            raise ChatBackendError("Chat backend returned an empty reply", status_code=response.status_code)

        return ChatTurnResult(reply_text=reply, continuation_token=session_id or continuation_token)

    @staticmethod
    def _content_fragment(payload: dict) -> Optional[str]:
        for key in ("content", "delta"):
            value = payload.get(key)
            if isinstance(value, str):
                return value
        choices: Any = payload.get("choices")
        if isinstance(choices, list) and choices:
            delta = choices[0].get("delta") if isinstance(choices[0], dict) else None
            if isinstance(delta, dict) and isinstance(delta.get("content"), str):
                return delta["content"]
        return None
