"""Credential resolution for peer proxies, refreshing OAuth tokens near expiry."""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional
import httpx

from config import (
    SECONDME_BASE_URL,
    SECONDME_CLIENT_ID,
    SECONDME_CLIENT_SECRET,
    TOKEN_REFRESH_WINDOW_SECONDS,
)
from models.network import Credential, Peer
from services.errors import AuthError
from services.record_store import RecordStore

logger = logging.getLogger(__name__)


class CredentialResolver:
    """Hands out live access tokens, refreshing and persisting them on demand."""

    def __init__(
        self,
        store: RecordStore,
        base_url: str = SECONDME_BASE_URL,
        client_id: Optional[str] = SECONDME_CLIENT_ID,
        client_secret: Optional[str] = SECONDME_CLIENT_SECRET,
        refresh_window_seconds: int = TOKEN_REFRESH_WINDOW_SECONDS,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.store = store
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_window = timedelta(seconds=refresh_window_seconds)
        self.timeout = timeout
        self._http_client = http_client
        self._refresh_locks: Dict[str, asyncio.Lock] = {}

    async def resolve_live_credential(self, peer: Peer) -> str:
        """
        Return a non-expired access token for the peer.

        At most one refresh per peer runs at a time. The backend rotates the
        refresh token on every refresh, so concurrent callers wait for the
        first refresh and reuse its result.

        Args:
            peer: Peer whose proxy is about to be called

        Returns:
            Access token valid for at least the refresh window

        Raises:
            AuthError: If the token is near expiry and cannot be refreshed
        """
        if self._is_live(peer.credential):
            return peer.credential.access_token

        lock = self._refresh_locks.setdefault(peer.peer_id, asyncio.Lock())
        async with lock:
            # Another caller may have refreshed while we waited.
            credential = peer.credential
            if self._is_live(credential):
                return credential.access_token

            logger.info(f"Refreshing token for {peer.display_name}")

            if not credential.refresh_token:
                raise AuthError(
                    f"Credential for {peer.display_name} expired and has no refresh token",
                    details={"peer_id": peer.peer_id}
                )

            refreshed = await self._refresh(peer, credential.refresh_token)
            peer.credential = refreshed
            await self.store.update_peer_credential(peer.peer_id, refreshed)
            return refreshed.access_token

    def _is_live(self, credential: Credential) -> bool:
        now = datetime.now(credential.expires_at.tzinfo)
        return credential.expires_at - now > self.refresh_window

    async def _refresh(self, peer: Peer, refresh_token: str) -> Credential:
        form = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.client_id or "",
            "client_secret": self.client_secret or "",
        }
        url = f"{self.base_url}/api/oauth/token/refresh"

        try:
            if self._http_client is not None:
                response = await self._http_client.post(url, data=form, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, data=form)
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Token refresh failed for {peer.display_name}: {e}")
            raise AuthError(
                f"Token refresh failed for {peer.display_name}",
                details={"peer_id": peer.peer_id, "original_error": str(e)}
            )

        if response.status_code >= 400 or payload.get("code") != 0:
            message = payload.get("message") or "Failed to refresh token"
            logger.error(f"Token refresh rejected for {peer.display_name}: {message}")
            raise AuthError(
                message,
                details={"peer_id": peer.peer_id, "status_code": response.status_code}
            )

        data = payload.get("data") or {}
        try:
            return Credential(
                access_token=data["accessToken"],
                refresh_token=data.get("refreshToken") or refresh_token,
                expires_at=datetime.now(peer.credential.expires_at.tzinfo)
                + timedelta(seconds=int(data["expiresIn"]))
            )
        except (KeyError, TypeError, ValueError) as e:
            raise AuthError(
                "Malformed token refresh response",
                details={"peer_id": peer.peer_id, "original_error": str(e)}
            )
