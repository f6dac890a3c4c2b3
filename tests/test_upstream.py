"""
Tests for upstream communication.

Tests cover:
- Blocked / rate-limited response classification
- Per-route reply decoding
- UpstreamClient transport behaviour
"""

import json

import httpx
import pytest

from errors import RateLimited, UpstreamBlocked, UpstreamSchemaViolation, UpstreamUnavailable
from models import ConversationRequest, Message
from router import Route, route_request
from upstream import (
    BLOCKED_TEXT,
    RATE_LIMIT_MARKER,
    RATE_LIMITED_TEXT,
    AudioReply,
    Base64Reply,
    ChatV1Reply,
    ChatV2Reply,
    ImageReply,
    UpstreamClient,
    classify_upstream_response,
    decode_reply,
)


# ============================================================================
# Classification
# ============================================================================

class TestClassifyUpstreamResponse:
    """Test the error/backpressure translator."""

    def test_passthrough(self):
        body = b'{"reply": "ok"}'
        assert classify_upstream_response(200, body) is body

    @pytest.mark.parametrize(
        "body",
        [
            b"<html><body>Attention Required</body></html>",
            b"  <!DOCTYPE html><html></html>",
            b'{"reply":"<!DOCTYPE html>\\n<html>..."}',
        ],
    )
    def test_html_is_blocked(self, body):
        with pytest.raises(UpstreamBlocked) as exc:
            classify_upstream_response(200, body)
        assert exc.value.message == BLOCKED_TEXT

    def test_html_wins_over_429(self):
        with pytest.raises(UpstreamBlocked):
            classify_upstream_response(429, b"<html>slow down</html>")

    def test_status_429(self):
        with pytest.raises(RateLimited) as exc:
            classify_upstream_response(429, b'{"error": "x"}')
        assert exc.value.message == RATE_LIMITED_TEXT

    def test_rate_limit_marker(self):
        body = b'{"reply":"Too many requests (","retry_after":60}'
        assert RATE_LIMIT_MARKER.encode() in body
        with pytest.raises(RateLimited):
            classify_upstream_response(200, body)

    def test_marker_needs_closing_quote(self):
        body = b'{"reply":"Too many requests (5 per minute)"}'
        assert classify_upstream_response(200, body) is body

    def test_other_errors_pass_through(self):
        assert classify_upstream_response(502, b"{}") == b"{}"


# ============================================================================
# Decoding
# ============================================================================

class TestDecodeReply:
    """Test closed reply-variant decoding."""

    def test_chat_v1(self):
        assert decode_reply(Route.CHAT_V1, b'{"reply":"hey","ms":12}') == ChatV1Reply("hey")

    def test_chat_v2(self):
        assert decode_reply(Route.CHAT_V2, b'{"content":"hello there","ms":3}') == ChatV2Reply("hello there")

    def test_chat_missing_field_is_empty(self):
        assert decode_reply(Route.CHAT_V2, b"{}").text == ""

    def test_image(self):
        body = json.dumps({"created": 1, "data": [{"revised_prompt": "p", "url": "https://img/1.png"}]})
        assert decode_reply(Route.IMAGE, body.encode()) == ImageReply("https://img/1.png")

    def test_image_empty_data(self):
        assert decode_reply(Route.IMAGE, b'{"data": []}') == ImageReply("")

    def test_base64(self):
        assert decode_reply(Route.BASE64_IMAGE, b'{"output": [["aGVsbG8=", "x"]], "ms": 1}') == Base64Reply("aGVsbG8=")

    def test_base64_empty(self):
        assert decode_reply(Route.BASE64_IMAGE, b'{"output": [[]]}') == Base64Reply("")

    def test_audio(self):
        assert decode_reply(Route.SPEECH, b'{"url": "https://a/1.mp3"}') == AudioReply("https://a/1.mp3")

    @pytest.mark.parametrize(
        "route,body",
        [
            (Route.CHAT_V1, b"not json"),
            (Route.CHAT_V2, b"[]"),
            (Route.CHAT_V2, b'{"content": 5}'),
            (Route.IMAGE, b'{"data": "nope"}'),
            (Route.IMAGE, b'{"data": ["nope"]}'),
            (Route.BASE64_IMAGE, b'{"output": ["flat"]}'),
            (Route.SPEECH, b'{"url": ["x"]}'),
        ],
    )
    def test_schema_violation(self, route, body):
        with pytest.raises(UpstreamSchemaViolation):
            decode_reply(route, body)


# ============================================================================
# UpstreamClient
# ============================================================================

class TestUpstreamClient:
    """Test sending routed payloads."""

    @pytest.mark.asyncio
    async def test_send_posts_payload(self, test_config):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"content": "ok"})

        decision = route_request(
            ConversationRequest(model_name="gpt-4o", messages=(Message("user", "hi"),)),
            test_config,
        )
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            status, body = await UpstreamClient(test_config).send(client, decision)

        assert status == 200
        assert json.loads(body) == {"content": "ok"}
        assert seen["url"] == "https://upstream.test/v2/chat/completions"
        assert seen["body"]["messages"] == [{"role": "user", "content": "hi"}]

    @pytest.mark.asyncio
    async def test_transport_error_is_unavailable(self, test_config):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        decision = route_request(
            ConversationRequest(model_name="x", messages=(Message("user", "hi"),)),
            test_config,
        )
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(UpstreamUnavailable):
                await UpstreamClient(test_config).send(client, decision)

    @pytest.mark.asyncio
    async def test_prewarm_swallows_errors(self, test_config):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await UpstreamClient(test_config).prewarm(client)

    @pytest.mark.asyncio
    async def test_prewarm_hits_legacy_endpoint(self, test_config):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((str(request.url), json.loads(request.content)))
            return httpx.Response(200, json={"reply": "hi"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await UpstreamClient(test_config).prewarm(client)
        assert seen == [("https://upstream.test/v1/chat/completions", {"messages": ["hello world"]})]
