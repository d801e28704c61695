"""Unit tests for ProxyChatAdapter."""
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'backend'))

import asyncio
import json
import httpx
import pytest
from unittest.mock import AsyncMock, Mock
from fakes import make_peer
from services.errors import AuthError, ChatBackendError
from services.proxy_chat import ProxyChatAdapter


def sse(*frames):
    return "".join(frames)


def run_turn(handler, message="Hello", continuation_token=None):
    """Drive post_chat_turn against a mock transport."""
    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            adapter = ProxyChatAdapter(Mock(), base_url="https://proxy.test", http_client=client)
            return await adapter.post_chat_turn("access-token", message, continuation_token)
    return asyncio.run(go())


class TestProxyChatAdapter:
    """Test suite for ProxyChatAdapter."""

    def test_concatenates_streamed_fragments(self):
        """Test content fragments are joined in order and the session id captured."""
        body = sse(
            "event: session\n",
            'data: {"sessionId": "sess-42"}\n\n',
            'data: {"content": "Hello, "}\n\n',
            'data: {"content": "I can help."}\n\n',
            "data: [DONE]\n\n",
        )

        result = run_turn(lambda request: httpx.Response(200, text=body))

        assert result.reply_text == "Hello, I can help."
        assert result.continuation_token == "sess-42"

    def test_plain_session_event_payload(self):
        body = sse(
            "event: session\n",
            "data: raw-session-id\n\n",
            'data: {"delta": "Sure"}\n\n',
        )

        result = run_turn(lambda request: httpx.Response(200, text=body))

        assert result.reply_text == "Sure"
        assert result.continuation_token == "raw-session-id"

    def test_openai_style_chunks(self):
        body = sse(
            'data: {"choices": [{"delta": {"content": "Yes"}}]}\n\n',
            'data: {"choices": [{"delta": {"content": "!"}}], "session_id": "s-9"}\n\n',
        )

        result = run_turn(lambda request: httpx.Response(200, text=body))

        assert result.reply_text == "Yes!"
        assert result.continuation_token == "s-9"

    def test_request_shape_and_existing_session(self):
        """Test the continuation token is sent as sessionId and kept when none is returned."""
        captured = {}

        def handler(request):
            captured["url"] = str(request.url)
            captured["auth"] = request.headers["Authorization"]
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, text='data: {"content": "ok"}\n\n')

        result = run_turn(handler, message="Follow up", continuation_token="sess-1")

        assert captured["url"] == "https://proxy.test/api/secondme/chat/stream"
        assert captured["auth"] == "Bearer access-token"
        assert captured["body"] == {"message": "Follow up", "sessionId": "sess-1"}
        assert result.continuation_token == "sess-1"

    def test_new_session_omits_session_id(self):
        captured = {}

        def handler(request):
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, text='data: {"content": "ok"}\n\n')

        run_turn(handler)

        assert "sessionId" not in captured["body"]

    @pytest.mark.parametrize("status_code", [401, 403])
    def test_rejected_credential_raises_auth_error(self, status_code):
        with pytest.raises(AuthError) as exc_info:
            run_turn(lambda request: httpx.Response(status_code, text="unauthorized"))

        assert exc_info.value.details["status_code"] == status_code

    def test_server_error_raises_chat_backend_error(self):
        with pytest.raises(ChatBackendError) as exc_info:
            run_turn(lambda request: httpx.Response(500, text="internal error"))

        assert exc_info.value.status_code == 500
        assert exc_info.value.detail == "internal error"

    def test_empty_reply_raises(self):
        """Test a stream with no content fragments is a backend error."""
        with pytest.raises(ChatBackendError, match="empty reply"):
            run_turn(lambda request: httpx.Response(200, text="data: [DONE]\n\n"))

    def test_transport_failure_raises_chat_backend_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ChatBackendError):
            run_turn(handler)

    def test_transport_timeout_has_timeout_code(self):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        with pytest.raises(ChatBackendError) as exc_info:
            run_turn(handler)

        assert exc_info.value.code == "TIMEOUT_ERROR"

    def test_send_turn_resolves_credential(self):
        """Test send_turn asks the resolver for a live token before posting."""
        credentials = Mock()
        credentials.resolve_live_credential = AsyncMock(return_value="live-token")
        captured = {}

        def handler(request):
            captured["auth"] = request.headers["Authorization"]
            return httpx.Response(200, text='data: {"content": "hi"}\n\n')

        async def go():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                adapter = ProxyChatAdapter(credentials, base_url="https://proxy.test", http_client=client)
                return await adapter.send_turn(make_peer("bob"), "Hello")

        result = asyncio.run(go())

        assert result.reply_text == "hi"
        assert captured["auth"] == "Bearer live-token"
        credentials.resolve_live_credential.assert_awaited_once()

    def test_send_turn_times_out(self):
        """Test a turn exceeding the overall bound becomes a timeout error."""
        credentials = Mock()
        credentials.resolve_live_credential = AsyncMock(return_value="token")
        adapter = ProxyChatAdapter(credentials, base_url="https://proxy.test", timeout=0.01)

        async def slow(*args, **kwargs):
            await asyncio.sleep(1)

        adapter.post_chat_turn = slow

        with pytest.raises(ChatBackendError) as exc_info:
            asyncio.run(adapter.send_turn(make_peer("bob"), "Hello"))

        assert exc_info.value.code == "TIMEOUT_ERROR"

    def test_auth_error_from_resolver_propagates(self):
        credentials = Mock()
        credentials.resolve_live_credential = AsyncMock(side_effect=AuthError("refresh failed"))
        adapter = ProxyChatAdapter(credentials, base_url="https://proxy.test")

        with pytest.raises(AuthError):
            asyncio.run(adapter.send_turn(make_peer("bob"), "Hello"))
