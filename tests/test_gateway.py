"""Tests for the gateway client."""

import json
from unittest.mock import AsyncMock

import httpx
import pytest

from agentpod.errors import GatewayUnavailable
from agentpod.gateway import EMPTY_REPLY, GatewayClient
from agentpod.models import ChatMessage


def completion(content):
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def make_client(settings, handler, sleep=None):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GatewayClient(
        settings=settings, http_client=http_client, sleep=sleep or AsyncMock()
    )


MESSAGES = [ChatMessage(role="user", content="hi")]


class TestSend:
    @pytest.mark.asyncio
    async def test_request_shape(self, settings):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=completion("hello"))

        client = make_client(settings, handler)
        reply = await client.send("agent-u1", MESSAGES, token="secret")

        assert reply == "hello"
        assert seen["url"] == "http://gateway.test/v1/chat/completions"
        assert seen["headers"]["X-Agent-Id"] == "agent-u1"
        assert seen["headers"]["Authorization"] == "Bearer secret"
        assert seen["body"]["user"] == "agent-u1"
        assert seen["body"]["stream"] is False
        assert seen["body"]["messages"] == [{"role": "user", "content": "hi"}]

    @pytest.mark.asyncio
    async def test_no_token_no_auth_header(self, settings):
        seen = {}

        def handler(request):
            seen["headers"] = request.headers
            return httpx.Response(200, json=completion("ok"))

        client = make_client(settings, handler)
        await client.send("agent-u1", [{"role": "user", "content": "hi"}])

        assert "Authorization" not in seen["headers"]

    @pytest.mark.asyncio
    async def test_retries_with_linear_delay(self, settings):
        attempts = []

        def handler(request):
            attempts.append(1)
            if len(attempts) < 3:
                return httpx.Response(503, text="warming up")
            return httpx.Response(200, json=completion("finally"))

        sleep = AsyncMock()
        client = make_client(settings, handler, sleep=sleep)

        assert await client.send("agent-u1", MESSAGES) == "finally"
        assert len(attempts) == 3
        assert [call.args[0] for call in sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_all_attempts_fail(self, settings):
        attempts = []

        def handler(request):
            attempts.append(1)
            return httpx.Response(502, text="bad gateway")

        client = make_client(settings, handler)

        with pytest.raises(GatewayUnavailable) as exc_info:
            await client.send("agent-u1", MESSAGES)

        assert len(attempts) == 3
        assert exc_info.value.status_code == 502
        assert "bad gateway" in exc_info.value.message
        assert isinstance(exc_info.value.last_error, httpx.HTTPStatusError)

    @pytest.mark.asyncio
    async def test_transport_errors_are_retried(self, settings):
        attempts = []

        def handler(request):
            attempts.append(1)
            raise httpx.ConnectError("refused", request=request)

        client = make_client(settings, handler)

        with pytest.raises(GatewayUnavailable) as exc_info:
            await client.send("agent-u1", MESSAGES)

        assert len(attempts) == 3
        assert exc_info.value.status_code is None

    @pytest.mark.asyncio
    async def test_empty_reply_fallback(self, settings):
        client = make_client(
            settings, lambda request: httpx.Response(200, json=completion(""))
        )
        assert await client.send("agent-u1", MESSAGES) == EMPTY_REPLY


class TestStream:
    @pytest.mark.asyncio
    async def test_streams_deltas(self, settings):
        body = (
            b'data: {"choices":[{"delta":{"content":"Hel"}}]}\n\n'
            b'data: {"choices":[{"delta":{"content":"lo"}}]}\n\n'
            b"data: [DONE]\n\n"
        )
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, content=body)

        client = make_client(settings, handler)
        deltas = [d async for d in client.stream("agent-u1", MESSAGES)]

        assert deltas == ["Hel", "lo"]
        assert seen["body"]["stream"] is True

    @pytest.mark.asyncio
    async def test_non_2xx_raises(self, settings):
        client = make_client(
            settings, lambda request: httpx.Response(500, text="agent crashed")
        )

        with pytest.raises(GatewayUnavailable) as exc_info:
            async for _ in client.stream("agent-u1", MESSAGES):
                pass

        assert exc_info.value.status_code == 500
        assert "agent crashed" in exc_info.value.message


class TestHealth:
    @pytest.mark.asyncio
    async def test_healthy(self, settings):
        client = make_client(settings, lambda request: httpx.Response(200))
        assert await client.health() is True

    @pytest.mark.asyncio
    async def test_unreachable(self, settings):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = make_client(settings, handler)
        assert await client.health() is False
