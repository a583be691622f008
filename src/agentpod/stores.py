"""
Interfaces to the external collaborators agentpod consumes.

User, credit and agent-record persistence live outside this service. The
protocols below are the narrow surface the core depends on; the in-memory
implementations back local development and tests.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Protocol

from .models import (
    AgentRecord,
    AgentStatus,
    ModelTier,
    ReapCandidate,
    Tier,
    agent_id_for,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CreditStore(Protocol):
    async def get_credits(self, user_id: str) -> int: ...

    async def debit_credits(self, user_id: str, amount: int) -> int: ...

    async def record_usage(self, user_id: str, usage_type: str, amount: int) -> None: ...

    async def get_model_tier(self, user_id: str) -> ModelTier: ...


class AgentRecordStore(Protocol):
    async def get_agent_record(self, user_id: str) -> AgentRecord | None: ...

    async def set_agent_record(self, user_id: str, **fields) -> AgentRecord: ...

    async def touch_activity(self, user_id: str) -> None: ...


class ReapCandidateSource(Protocol):
    async def list_inactive(
        self, tier: Tier, threshold_days: int
    ) -> list[ReapCandidate]: ...


@dataclass
class UsageEntry:
    user_id: str
    usage_type: str
    amount: int
    recorded_at: datetime


class InMemoryCreditStore:
    """Credit balances and usage log held in process memory."""

    def __init__(
        self,
        balances: dict[str, int] | None = None,
        tiers: dict[str, ModelTier] | None = None,
        default_balance: int = 0,
    ):
        self._balances = dict(balances or {})
        self._tiers = dict(tiers or {})
        self._default_balance = default_balance
        self._lock = asyncio.Lock()
        self.usage: list[UsageEntry] = []

    async def get_credits(self, user_id: str) -> int:
        return self._balances.get(user_id, self._default_balance)

    async def debit_credits(self, user_id: str, amount: int) -> int:
        async with self._lock:
            remaining = self._balances.get(user_id, self._default_balance) - amount
            self._balances[user_id] = max(remaining, 0)
            return self._balances[user_id]

    async def record_usage(self, user_id: str, usage_type: str, amount: int) -> None:
        self.usage.append(
            UsageEntry(
                user_id=user_id,
                usage_type=usage_type,
                amount=amount,
                recorded_at=utcnow(),
            )
        )

    async def get_model_tier(self, user_id: str) -> ModelTier:
        return self._tiers.get(user_id, ModelTier.STANDARD)


class InMemoryAgentRecordStore:
    """Agent records keyed by user id."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._records: dict[str, AgentRecord] = {}
        self._clock = clock

    async def get_agent_record(self, user_id: str) -> AgentRecord | None:
        record = self._records.get(user_id)
        return replace(record) if record else None

    async def set_agent_record(self, user_id: str, **fields) -> AgentRecord:
        record = self._records.get(user_id)
        if record is None:
            record = AgentRecord(user_id=user_id, agent_id=agent_id_for(user_id))
        record = replace(record, **fields)
        self._records[user_id] = record
        return replace(record)

    async def touch_activity(self, user_id: str) -> None:
        if user_id in self._records:
            self._records[user_id].last_active_at = self._clock()

    def all(self) -> list[AgentRecord]:
        return [replace(r) for r in self._records.values()]


class InMemoryReapCandidateSource:
    """Derives reap candidates from an in-memory record store.

    Only agents in the ``running`` state are considered active, mirroring the
    production query that ignores already paused or errored agents.
    """

    def __init__(
        self,
        records: InMemoryAgentRecordStore,
        tiers: dict[str, Tier] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._records = records
        self._tiers = dict(tiers or {})
        self._clock = clock

    def set_tier(self, user_id: str, tier: Tier) -> None:
        self._tiers[user_id] = tier

    async def list_inactive(
        self, tier: Tier, threshold_days: int
    ) -> list[ReapCandidate]:
        cutoff = self._clock() - timedelta(days=threshold_days)
        candidates = []
        for record in self._records.all():
            if record.status != AgentStatus.RUNNING:
                continue
            if self._tiers.get(record.user_id, Tier.FREE) != tier:
                continue
            if record.last_active_at is not None and record.last_active_at > cutoff:
                continue
            candidates.append(
                ReapCandidate(
                    agent_id=record.agent_id,
                    user_id=record.user_id,
                    last_active_at=record.last_active_at,
                    tier=tier,
                )
            )
        return candidates
