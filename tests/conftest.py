"""Pytest configuration and fixtures."""

import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Ensure `src/` is importable in tests without installing the package.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from agentpod.config import Settings  # noqa: E402
from agentpod.models import SandboxHandle, SandboxState  # noqa: E402


@pytest.fixture
def settings(tmp_path):
    """Settings pointing all disk state at a temporary directory."""
    return Settings(
        registry_path=str(tmp_path / "gateway" / "gateway.json"),
        workspaces_dir=str(tmp_path / "workspaces"),
        gateway_workspaces_dir="/gw/workspaces",
        templates_dir=None,
        reload_debounce_seconds=0.05,
        health_poll_interval_seconds=2.0,
        health_poll_attempts=30,
        gateway_url="http://gateway.test",
        tts_url="http://tts.test/api",
        tts_api_key="tts-key",
        cron_secret="cron-secret",
        default_credits=100,
    )


@pytest.fixture
def now():
    return datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeEngine:
    """In-memory sandbox engine with name-based idempotent create."""

    def __init__(self):
        self.sandboxes: dict[str, dict] = {}
        self.create_calls = 0
        self.created = 0
        self.started: list[str] = []
        self.deleted: list[str] = []
        self.fail_start = False

    async def create(self, user_id: str) -> SandboxHandle:
        self.create_calls += 1
        sandbox_id = f"sbx-{user_id}"
        existing = self.sandboxes.get(sandbox_id)
        if existing is None:
            self.created += 1
            existing = {"token": f"token-{self.created}", "running": True}
            self.sandboxes[sandbox_id] = existing
        existing["running"] = True
        return SandboxHandle(sandbox_id=sandbox_id, token=existing["token"])

    async def start(self, sandbox_id: str) -> None:
        if self.fail_start or sandbox_id not in self.sandboxes:
            from agentpod.errors import ContainerNotFound

            raise ContainerNotFound(sandbox_id)
        self.sandboxes[sandbox_id]["running"] = True
        self.started.append(sandbox_id)

    async def stop(self, sandbox_id: str) -> None:
        if sandbox_id in self.sandboxes:
            self.sandboxes[sandbox_id]["running"] = False

    async def status(self, sandbox_id: str) -> SandboxState:
        sandbox = self.sandboxes.get(sandbox_id)
        if sandbox is None:
            return SandboxState.NOT_FOUND
        return SandboxState.RUNNING if sandbox["running"] else SandboxState.STOPPED

    async def delete(self, sandbox_id: str) -> None:
        self.sandboxes.pop(sandbox_id, None)
        self.deleted.append(sandbox_id)

    def url_for(self, user_id: str) -> str:
        return f"http://sandbox-{user_id}:18789"


@pytest.fixture
def fake_engine():
    return FakeEngine()
