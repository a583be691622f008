"""Tests for ConversationService."""

from unittest.mock import AsyncMock, Mock

import pytest

from agentpod.conversation import ConversationService
from agentpod.errors import GatewayUnavailable, InsufficientCredits
from agentpod.models import AgentStatus, ModelTier
from agentpod.stores import InMemoryAgentRecordStore, InMemoryCreditStore
from agentpod.voice import VoicePipeline


@pytest.fixture
def records(now):
    return InMemoryAgentRecordStore(clock=lambda: now)


@pytest.fixture
def credits():
    return InMemoryCreditStore(balances={"u1": 50}, tiers={"rich": ModelTier.BEST})


@pytest.fixture
def lifecycle():
    lifecycle = Mock()
    lifecycle.ensure_running = AsyncMock(return_value="token-1")
    return lifecycle


@pytest.fixture
def gateway():
    gateway = Mock()
    gateway.send = AsyncMock(return_value="Done! <!--action:open_url|https://x.test-->")
    return gateway


@pytest.fixture
def service(lifecycle, gateway, credits, records):
    return ConversationService(
        lifecycle, gateway, credits, records, synthesizer=Mock()
    )


class TestSendMessage:
    @pytest.mark.asyncio
    async def test_reply_debits_once(self, service, credits, records, gateway, now):
        await records.set_agent_record("u1", status=AgentStatus.RUNNING)

        reply = await service.send_message("u1", "  hello  ")

        assert reply.response == "Done!"
        assert reply.actions == [{"type": "open_url", "params": ["https://x.test"]}]
        assert reply.credits.used == 10
        assert reply.credits.remaining == 40
        assert [(u.usage_type, u.amount) for u in credits.usage] == [("message", 10)]
        assert (await records.get_agent_record("u1")).last_active_at == now

        agent_id, messages = gateway.send.await_args.args
        assert agent_id == "agent-u1"
        assert messages[0].content == "hello"
        assert gateway.send.await_args.kwargs == {"token": "token-1"}

    @pytest.mark.asyncio
    async def test_insufficient_credits_checked_first(self, service, lifecycle, gateway):
        with pytest.raises(InsufficientCredits) as exc_info:
            await service.send_message("rich", "hello")

        assert exc_info.value.required == 100
        assert exc_info.value.available == 0
        lifecycle.ensure_running.assert_not_awaited()
        gateway.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_text_rejected(self, service, lifecycle):
        with pytest.raises(ValueError):
            await service.send_message("u1", "   ")
        lifecycle.ensure_running.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_gateway_failure_not_debited(self, service, gateway, credits):
        gateway.send.side_effect = GatewayUnavailable("Gateway returned 503", 503)

        with pytest.raises(GatewayUnavailable):
            await service.send_message("u1", "hello")

        assert await credits.get_credits("u1") == 50
        assert credits.usage == []


class TestStreamVoice:
    @pytest.mark.asyncio
    async def test_builds_pipeline(self, service, gateway, lifecycle):
        gateway.stream = Mock(return_value=Mock())

        pipeline = await service.stream_voice("u1", "hello", voice="robot")

        assert isinstance(pipeline, VoicePipeline)
        assert pipeline.voice == "alloy"
        assert pipeline.cost == 10
        lifecycle.ensure_running.assert_awaited_once_with("u1")
        assert gateway.stream.call_args.kwargs == {"token": "token-1"}

    @pytest.mark.asyncio
    async def test_insufficient_credits(self, service, lifecycle):
        with pytest.raises(InsufficientCredits):
            await service.stream_voice("rich", "hello")
        lifecycle.ensure_running.assert_not_awaited()
