"""Domain and API models for agentpod."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

# =============================================================================
# Sandbox / Agent Models
# =============================================================================


class AgentStatus(str, Enum):
    """Lifecycle state of a user's agent instance."""

    PENDING = "pending"
    PROVISIONING = "provisioning"
    RUNNING = "running"
    SLEEPING = "sleeping"
    ERROR = "error"
    NOT_FOUND = "not_found"


class SandboxState(str, Enum):
    """Normalized engine view of a sandbox."""

    RUNNING = "running"
    STOPPED = "stopped"
    NOT_FOUND = "not_found"


class Tier(str, Enum):
    """Subscription tier used by the reap policy."""

    FREE = "free"
    PAID = "paid"


class ModelTier(str, Enum):
    STANDARD = "standard"
    POWER = "power"
    BEST = "best"


CREDIT_COSTS: dict[ModelTier, int] = {
    ModelTier.STANDARD: 10,
    ModelTier.POWER: 30,
    ModelTier.BEST: 100,
}


def agent_id_for(user_id: str) -> str:
    """Agent ids are derived from the owning user id."""
    return f"agent-{user_id}"


@dataclass(frozen=True)
class SandboxHandle:
    """Result of creating (or finding) a sandbox."""

    sandbox_id: str
    token: str


@dataclass
class AgentRecord:
    """Externally persisted view of a user's agent instance."""

    user_id: str
    agent_id: str
    sandbox_id: str | None = None
    gateway_token: str | None = None
    status: AgentStatus = AgentStatus.PENDING
    last_active_at: datetime | None = None


@dataclass
class BindingEntry:
    """One agent binding in the shared gateway registry."""

    agent_id: str
    workspace_path: str
    model: str
    channel_binding: str = "webchat"

    def to_agent(self) -> dict[str, Any]:
        return {
            "id": self.agent_id,
            "name": self.agent_id,
            "model": {"primary": self.model, "fallbacks": []},
            "workspace": self.workspace_path,
        }

    def to_binding(self) -> dict[str, Any]:
        return {
            "agentId": self.agent_id,
            "match": {
                "channel": self.channel_binding,
                "peer": {"kind": "dm", "id": self.agent_id},
            },
        }

    @classmethod
    def from_document(
        cls, agent: dict[str, Any], binding: dict[str, Any] | None
    ) -> "BindingEntry":
        model = agent.get("model") or {}
        if isinstance(model, dict):
            model = model.get("primary", "")
        channel = "webchat"
        if binding:
            channel = (binding.get("match") or {}).get("channel", channel)
        return cls(
            agent_id=agent["id"],
            workspace_path=agent.get("workspace", ""),
            model=str(model),
            channel_binding=channel,
        )


@dataclass(frozen=True)
class ReapCandidate:
    """Read-only projection of an agent that may be inactive."""

    agent_id: str
    user_id: str
    last_active_at: datetime | None
    tier: Tier


@dataclass
class ReapReport:
    """Aggregate outcome of one reaper sweep."""

    paused: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ProvisionResult:
    status: str  # created, ok, resumed, recreated
    agent_id: str


# =============================================================================
# API Models
# =============================================================================


class ChatMessage(BaseModel):
    role: str
    content: str


class MessageRequest(BaseModel):
    text: str = ""


class VoiceRequest(BaseModel):
    text: str = ""
    voice: str | None = None
    native_tts: bool = Field(default=False, alias="nativeTts")

    model_config = {"populate_by_name": True}


class CreditSummary(BaseModel):
    used: int
    remaining: int


class MessageReply(BaseModel):
    response: str
    actions: list[dict[str, Any]] = Field(default_factory=list)
    credits: CreditSummary


class AgentStatusResponse(BaseModel):
    agent_status: str = Field(serialization_alias="agentStatus")
    agent_id: str | None = Field(default=None, serialization_alias="agentId")
    bound: bool = False


class ReapResponse(BaseModel):
    status: str
    paused: int
    errors: int
    details: dict[str, list[str]]
