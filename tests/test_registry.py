"""Tests for the binding registry."""

import asyncio
import json
from unittest.mock import Mock, patch

import pytest

from agentpod.errors import AgentAlreadyExists, ConfigWriteFailure
from agentpod.models import BindingEntry
from agentpod.registry import ConfigRegistry


def entry(agent_id, workspace="/gw/workspaces"):
    return BindingEntry(
        agent_id=agent_id,
        workspace_path=f"{workspace}/{agent_id}",
        model="openai-custom/gpt-5-nano",
    )


@pytest.fixture
def path(tmp_path):
    return tmp_path / "gateway.json"


@pytest.fixture
def debouncer():
    return Mock()


@pytest.fixture
def registry(path, debouncer):
    return ConfigRegistry(path, debouncer)


class TestConfigRegistry:
    @pytest.mark.asyncio
    async def test_missing_document_is_empty(self, registry):
        assert await registry.count() == 0
        assert await registry.list_agents() == []
        assert not await registry.exists("agent-1")

    @pytest.mark.asyncio
    async def test_add_writes_agent_and_binding(self, registry, path, debouncer):
        await registry.add_agent(entry("agent-1"))

        doc = json.loads(path.read_text())
        assert doc["agents"]["list"] == [
            {
                "id": "agent-1",
                "name": "agent-1",
                "model": {"primary": "openai-custom/gpt-5-nano", "fallbacks": []},
                "workspace": "/gw/workspaces/agent-1",
            }
        ]
        assert doc["bindings"] == [
            {
                "agentId": "agent-1",
                "match": {"channel": "webchat", "peer": {"kind": "dm", "id": "agent-1"}},
            }
        ]
        debouncer.schedule.assert_called_once()

    @pytest.mark.asyncio
    async def test_add_duplicate_raises(self, registry, debouncer):
        await registry.add_agent(entry("agent-1"))

        with pytest.raises(AgentAlreadyExists):
            await registry.add_agent(entry("agent-1"))

        assert debouncer.schedule.call_count == 1
        assert await registry.count() == 1

    @pytest.mark.asyncio
    async def test_remove(self, registry, debouncer):
        await registry.add_agent(entry("agent-1"))
        await registry.add_agent(entry("agent-2"))

        assert await registry.remove_agent("agent-1") is True

        assert [e.agent_id for e in await registry.list_agents()] == ["agent-2"]
        assert debouncer.schedule.call_count == 3

    @pytest.mark.asyncio
    async def test_remove_absent_is_noop(self, registry, path, debouncer):
        assert await registry.remove_agent("agent-ghost") is False
        assert not path.exists()
        debouncer.schedule.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_keys_preserved(self, registry, path):
        path.write_text(
            json.dumps(
                {
                    "gateway": {"port": 18789, "auth": {"mode": "token"}},
                    "models": {"providers": ["x"]},
                    "agents": {"defaults": {"sandbox": "off"}, "list": []},
                    "bindings": [],
                    "channels": {"webchat": {"enabled": True}},
                }
            )
        )

        await registry.add_agent(entry("agent-1"))
        await registry.remove_agent("agent-1")

        doc = json.loads(path.read_text())
        assert doc["gateway"] == {"port": 18789, "auth": {"mode": "token"}}
        assert doc["models"] == {"providers": ["x"]}
        assert doc["agents"]["defaults"] == {"sandbox": "off"}
        assert doc["channels"] == {"webchat": {"enabled": True}}

    @pytest.mark.asyncio
    async def test_concurrent_mutations_are_not_lost(self, registry):
        await asyncio.gather(*(registry.add_agent(entry(f"agent-{i}")) for i in range(10)))
        assert await registry.count() == 10

    @pytest.mark.asyncio
    async def test_no_tmp_file_left_behind(self, registry, path):
        await registry.add_agent(entry("agent-1"))
        assert not registry.tmp_path.exists()
        assert path.exists()

    @pytest.mark.asyncio
    async def test_failed_rename_keeps_original(self, registry, path):
        await registry.add_agent(entry("agent-1"))
        before = path.read_text()

        with patch("agentpod.registry.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(ConfigWriteFailure):
                await registry.add_agent(entry("agent-2"))

        assert path.read_text() == before
        assert not registry.tmp_path.exists()

    @pytest.mark.asyncio
    async def test_get_round_trips_entry(self, registry):
        await registry.add_agent(entry("agent-1"))
        assert await registry.get("agent-1") == entry("agent-1")
        assert await registry.get("agent-2") is None
