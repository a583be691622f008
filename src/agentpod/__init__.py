"""
agentpod

Per-user agent sandboxes behind a shared gateway:
- Docker sandbox provisioning with idempotent creation
- Binding registry with debounced gateway reloads
- Retrying gateway client and SSE stream decoding
- Idle agent reaper
- Token -> sentence -> speech voice streaming
"""

__version__ = "0.1.0"

from .config import Settings, get_settings
from .errors import (
    AgentAlreadyExists,
    AgentPodError,
    ConfigurationError,
    ConfigWriteFailure,
    ContainerNotFound,
    EngineError,
    GatewayUnavailable,
    InsufficientCredits,
    ProvisioningTimeout,
    SynthesisFailure,
    WorkspaceMissing,
)
from .models import AgentStatus, BindingEntry, SandboxHandle, SandboxState, Tier

__all__ = [
    "__version__",
    "Settings",
    "get_settings",
    # Errors
    "AgentPodError",
    "AgentAlreadyExists",
    "ConfigurationError",
    "ConfigWriteFailure",
    "ContainerNotFound",
    "EngineError",
    "GatewayUnavailable",
    "InsufficientCredits",
    "ProvisioningTimeout",
    "SynthesisFailure",
    "WorkspaceMissing",
    # Models
    "AgentStatus",
    "BindingEntry",
    "SandboxHandle",
    "SandboxState",
    "Tier",
]
