"""Tests for the idle agent reaper."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from agentpod.lifecycle import LifecycleManager
from agentpod.models import AgentStatus, BindingEntry, ReapCandidate, Tier
from agentpod.reaper import Reaper
from agentpod.registry import ConfigRegistry
from agentpod.stores import InMemoryAgentRecordStore, InMemoryReapCandidateSource
from agentpod.workspace import WorkspaceManager


@pytest.fixture
def records(now):
    return InMemoryAgentRecordStore(clock=lambda: now)


@pytest.fixture
def registry(settings):
    return ConfigRegistry(settings.registry_path)


@pytest.fixture
def lifecycle(fake_engine, registry, settings, records):
    return LifecycleManager(
        engine=fake_engine,
        registry=registry,
        workspaces=WorkspaceManager(settings),
        records=records,
        settings=settings,
    )


@pytest.fixture
def source(records, now):
    return InMemoryReapCandidateSource(records, clock=lambda: now)


@pytest.fixture
def reaper(lifecycle, records, source, settings, now):
    return Reaper(lifecycle, records, source, settings, clock=lambda: now)


async def add_agent(registry, records, user_id, last_active_at, bound=True):
    agent_id = f"agent-{user_id}"
    await records.set_agent_record(
        user_id, status=AgentStatus.RUNNING, last_active_at=last_active_at
    )
    if bound:
        await registry.add_agent(
            BindingEntry(agent_id=agent_id, workspace_path=f"/gw/{agent_id}", model="m")
        )
    return agent_id


class TestReaperPolicy:
    @pytest.mark.asyncio
    async def test_free_threshold_boundary(self, reaper, registry, records, now):
        just_under = await add_agent(
            registry, records, "u1", now - timedelta(days=7) + timedelta(seconds=1)
        )
        just_over = await add_agent(
            registry, records, "u2", now - timedelta(days=7) - timedelta(seconds=1)
        )

        report = await reaper.sweep()

        assert report.paused == [just_over]
        assert report.errors == []
        assert await registry.exists(just_under)
        assert not await registry.exists(just_over)
        assert (await records.get_agent_record("u2")).status == AgentStatus.SLEEPING
        assert (await records.get_agent_record("u1")).status == AgentStatus.RUNNING

    @pytest.mark.asyncio
    async def test_paid_threshold(self, reaper, registry, records, source, now):
        recent = await add_agent(registry, records, "p1", now - timedelta(days=10))
        stale = await add_agent(registry, records, "p2", now - timedelta(days=31))
        source.set_tier("p1", Tier.PAID)
        source.set_tier("p2", Tier.PAID)

        report = await reaper.sweep()

        assert report.paused == [stale]
        assert await registry.exists(recent)

    @pytest.mark.asyncio
    async def test_never_active_is_eligible(self, reaper, registry, records):
        agent_id = await add_agent(registry, records, "u1", None)

        report = await reaper.sweep()

        assert report.paused == [agent_id]

    @pytest.mark.asyncio
    async def test_unbound_agent_skipped(self, reaper, registry, records, now):
        await add_agent(registry, records, "u1", now - timedelta(days=30), bound=False)

        report = await reaper.sweep()

        assert report.paused == []
        assert report.errors == []

    @pytest.mark.asyncio
    async def test_errors_are_isolated(self, reaper, registry, records, lifecycle, now):
        first = await add_agent(registry, records, "u1", now - timedelta(days=8))
        second = await add_agent(registry, records, "u2", now - timedelta(days=9))
        original_pause = lifecycle.pause

        async def flaky_pause(agent_id):
            if agent_id == first:
                raise RuntimeError("registry locked")
            await original_pause(agent_id)

        lifecycle.pause = flaky_pause

        report = await reaper.sweep()

        assert report.paused == [second]
        assert report.errors == [f"{first}: registry locked"]

    @pytest.mark.asyncio
    async def test_reaper_rechecks_threshold(self, lifecycle, records, settings, now):
        candidates = AsyncMock()
        fresh = ReapCandidate(
            agent_id="agent-u1",
            user_id="u1",
            last_active_at=now - timedelta(days=1),
            tier=Tier.FREE,
        )
        candidates.list_inactive.side_effect = lambda tier, days: (
            [fresh] if tier == Tier.FREE else []
        )
        lifecycle.pause = AsyncMock()
        reaper = Reaper(lifecycle, records, candidates, settings, clock=lambda: now)

        report = await reaper.sweep()

        assert report.paused == []
        lifecycle.pause.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_enumeration_failure_propagates(self, lifecycle, records, settings):
        candidates = AsyncMock()
        candidates.list_inactive.side_effect = RuntimeError("db down")
        reaper = Reaper(lifecycle, records, candidates, settings)

        with pytest.raises(RuntimeError):
            await reaper.sweep()


class TestReaperLoop:
    @pytest.mark.asyncio
    async def test_start_stop(self, reaper):
        await reaper.start()
        assert reaper.running
        await reaper.stop()
        assert not reaper.running
