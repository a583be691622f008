"""Exception hierarchy for agentpod."""


class AgentPodError(Exception):
    """Base exception for all agentpod errors."""

    pass


class ConfigurationError(AgentPodError):
    """Configuration error."""

    pass


class EngineError(AgentPodError):
    """The sandbox engine rejected or failed an operation."""

    def __init__(self, operation: str, message: str, cause: Exception | None = None):
        self.operation = operation
        self.cause = cause
        super().__init__(f"Engine {operation} failed: {message}")


class ContainerNotFound(EngineError):
    """The sandbox referenced by a stored record no longer exists."""

    def __init__(self, sandbox_id: str, cause: Exception | None = None):
        self.sandbox_id = sandbox_id
        super().__init__("lookup", f"sandbox {sandbox_id} not found", cause)


class ProvisioningTimeout(AgentPodError):
    """Sandbox did not report healthy within the polling budget."""

    def __init__(self, user_id: str, attempts: int, interval: float):
        self.user_id = user_id
        self.attempts = attempts
        self.interval = interval
        super().__init__(
            f"Sandbox for user {user_id} not healthy after "
            f"{attempts} attempts ({attempts * interval:.0f}s)"
        )


class GatewayUnavailable(AgentPodError):
    """All attempts to reach the shared gateway failed."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        last_error: Exception | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.last_error = last_error
        super().__init__(message)


class WorkspaceMissing(AgentPodError):
    """An agent cannot be resumed because its workspace is gone."""

    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        super().__init__(f"Agent workspace not found: {agent_id}")


class AgentAlreadyExists(AgentPodError):
    """The binding registry already contains this agent id."""

    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        super().__init__(f"Agent {agent_id} already exists")


class ConfigWriteFailure(AgentPodError):
    """Reading or persisting the shared registry document failed."""

    def __init__(self, path: str, cause: Exception | None = None):
        self.path = path
        self.cause = cause
        super().__init__(f"Failed to write registry {path}: {cause}")


class SynthesisFailure(AgentPodError):
    """Speech synthesis failed for a single sentence."""

    def __init__(self, index: int, message: str, cause: Exception | None = None):
        self.index = index
        self.cause = cause
        super().__init__(f"Synthesis of sentence {index} failed: {message}")


class InsufficientCredits(AgentPodError):
    """The user cannot afford the request."""

    def __init__(self, user_id: str, required: int, available: int):
        self.user_id = user_id
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient credits: {required} required, {available} available"
        )
