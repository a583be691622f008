"""Chat and voice requests against a user's agent."""

import structlog

from .actions import parse_actions
from .errors import InsufficientCredits
from .gateway import GatewayClient
from .lifecycle import LifecycleManager
from .models import (
    CREDIT_COSTS,
    AgentRecord,
    ChatMessage,
    CreditSummary,
    MessageReply,
    agent_id_for,
)
from .speech import SpeechSynthesizer, resolve_voice
from .stores import AgentRecordStore, CreditStore
from .voice import VoicePipeline

logger = structlog.get_logger(__name__)


class ConversationService:
    """
    Entry point for user messages.

    Credits are checked before any sandbox or gateway work, and debited once
    per completed request.
    """

    def __init__(
        self,
        lifecycle: LifecycleManager,
        gateway: GatewayClient,
        credits: CreditStore,
        records: AgentRecordStore,
        synthesizer: SpeechSynthesizer | None = None,
        synthesis_batch_size: int = 3,
    ):
        self.lifecycle = lifecycle
        self.gateway = gateway
        self.credits = credits
        self.records = records
        self.synthesizer = synthesizer
        self.synthesis_batch_size = synthesis_batch_size

    async def _check_credits(self, user_id: str) -> int:
        tier = await self.credits.get_model_tier(user_id)
        cost = CREDIT_COSTS[tier]
        available = await self.credits.get_credits(user_id)
        if available < cost:
            logger.info(
                "insufficient_credits", user_id=user_id, required=cost, available=available
            )
            raise InsufficientCredits(user_id, cost, available)
        return cost

    async def _agent_id(self, user_id: str) -> str:
        record: AgentRecord | None = await self.records.get_agent_record(user_id)
        return record.agent_id if record else agent_id_for(user_id)

    async def send_message(self, user_id: str, text: str) -> MessageReply:
        """
        Send one message and wait for the full reply.

        Raises:
            ValueError: Empty message.
            InsufficientCredits: Balance below the per-request cost.
            ProvisioningTimeout: The sandbox did not come up.
            GatewayUnavailable: The gateway failed after retries.
        """
        text = (text or "").strip()
        if not text:
            raise ValueError("Message text is required")

        cost = await self._check_credits(user_id)
        token = await self.lifecycle.ensure_running(user_id)
        agent_id = await self._agent_id(user_id)

        reply = await self.gateway.send(
            agent_id, [ChatMessage(role="user", content=text)], token=token
        )
        clean_text, actions = parse_actions(reply)

        remaining = await self.credits.debit_credits(user_id, cost)
        await self.credits.record_usage(user_id, "message", cost)
        await self.records.touch_activity(user_id)

        logger.info(
            "message_completed",
            user_id=user_id,
            agent_id=agent_id,
            actions=len(actions),
            credits_remaining=remaining,
        )
        return MessageReply(
            response=clean_text,
            actions=actions,
            credits=CreditSummary(used=cost, remaining=remaining),
        )

    async def stream_voice(
        self,
        user_id: str,
        text: str,
        voice: str | None = None,
        native_tts: bool = False,
    ) -> VoicePipeline:
        """Validate and build a voice pipeline over the gateway stream."""
        text = (text or "").strip()
        if not text:
            raise ValueError("Message text is required")

        cost = await self._check_credits(user_id)
        token = await self.lifecycle.ensure_running(user_id)
        agent_id = await self._agent_id(user_id)

        async def on_complete(_clean_text: str) -> None:
            await self.records.touch_activity(user_id)

        source = self.gateway.stream(
            agent_id, [ChatMessage(role="user", content=text)], token=token
        )
        return VoicePipeline(
            source,
            user_id=user_id,
            credits=self.credits,
            cost=cost,
            synthesizer=self.synthesizer,
            voice=resolve_voice(voice),
            native_tts=native_tts,
            batch_size=self.synthesis_batch_size,
            on_complete=on_complete,
        )
