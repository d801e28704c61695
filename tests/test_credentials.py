"""Unit tests for CredentialResolver."""
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'backend'))

import asyncio
import httpx
import pytest
from urllib.parse import parse_qs
from fakes import make_peer
from services.errors import AuthError
from services.credentials import CredentialResolver
from services.record_store import InMemoryRecordStore


def resolve(peer, handler, store=None):
    """Run resolve_live_credential with a mock token endpoint."""
    store = store or InMemoryRecordStore([peer])

    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            resolver = CredentialResolver(
                store,
                base_url="https://proxy.test",
                client_id="client",
                client_secret="secret",
                refresh_window_seconds=300,
                http_client=client
            )
            return await resolver.resolve_live_credential(peer)
    return asyncio.run(go())


def refusing_handler(request):
    raise AssertionError("token endpoint should not be called")


class TestCredentialResolver:
    """Test suite for CredentialResolver."""

    def test_fresh_token_is_returned_without_refresh(self):
        peer = make_peer("bob", expires_in=3600)

        assert resolve(peer, refusing_handler) == "access-bob"

    def test_near_expiry_token_is_refreshed_and_persisted(self):
        """Test a token inside the refresh window is swapped and written back."""
        peer = make_peer("bob", expires_in=60)
        store = InMemoryRecordStore([peer])
        captured = {}

        def handler(request):
            captured["url"] = str(request.url)
            captured["form"] = parse_qs(request.content.decode())
            return httpx.Response(200, json={
                "code": 0,
                "data": {"accessToken": "fresh", "refreshToken": "refresh-2", "expiresIn": 7200}
            })

        token = resolve(peer, handler, store)

        assert token == "fresh"
        assert captured["url"] == "https://proxy.test/api/oauth/token/refresh"
        assert captured["form"]["grant_type"] == ["refresh_token"]
        assert captured["form"]["refresh_token"] == ["refresh-token"]
        assert captured["form"]["client_id"] == ["client"]

        stored = asyncio.run(store.get_peer("bob"))
        assert stored.credential.access_token == "fresh"
        assert stored.credential.refresh_token == "refresh-2"

    def test_missing_refresh_token(self):
        peer = make_peer("bob", expires_in=10, refresh_token=None)

        with pytest.raises(AuthError, match="no refresh token"):
            resolve(peer, refusing_handler)

    def test_rejected_refresh(self):
        def handler(request):
            return httpx.Response(200, json={"code": 401, "message": "refresh token revoked"})

        with pytest.raises(AuthError, match="refresh token revoked"):
            resolve(make_peer("bob", expires_in=-10), handler)

    def test_http_error_status(self):
        def handler(request):
            return httpx.Response(500, json={"code": 500})

        with pytest.raises(AuthError):
            resolve(make_peer("bob", expires_in=0), handler)

    def test_transport_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(AuthError) as exc_info:
            resolve(make_peer("bob", expires_in=0), handler)

        assert "connection refused" in exc_info.value.details["original_error"]

    def test_malformed_response(self):
        def handler(request):
            return httpx.Response(200, json={"code": 0, "data": {"accessToken": "fresh"}})

        with pytest.raises(AuthError, match="Malformed"):
            resolve(make_peer("bob", expires_in=0), handler)

    def test_non_json_response(self):
        def handler(request):
            return httpx.Response(200, text="<html>gateway</html>")

        with pytest.raises(AuthError):
            resolve(make_peer("bob", expires_in=0), handler)

    def test_concurrent_resolves_share_one_refresh(self):
        """Test parallel callers on a near-expiry peer trigger a single refresh."""
        peer = make_peer("alice", expires_in=60)
        store = InMemoryRecordStore([peer])
        presented = []
        issued = {"refresh-token"}

        def handler(request):
            refresh_token = parse_qs(request.content.decode())["refresh_token"][0]
            presented.append(refresh_token)
            if refresh_token not in issued:
                return httpx.Response(200, json={"code": 401, "message": "refresh token reused"})
            issued.discard(refresh_token)
            rotated = f"refresh-{len(presented) + 1}"
            issued.add(rotated)
            return httpx.Response(200, json={
                "code": 0,
                "data": {"accessToken": "fresh", "refreshToken": rotated, "expiresIn": 7200}
            })

        async def go():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                resolver = CredentialResolver(
                    store,
                    base_url="https://proxy.test",
                    refresh_window_seconds=300,
                    http_client=client
                )
                return await asyncio.gather(*(resolver.resolve_live_credential(peer) for _ in range(4)))

        tokens = asyncio.run(go())

        assert tokens == ["fresh"] * 4
        assert presented == ["refresh-token"]
        assert peer.credential.refresh_token == "refresh-2"
