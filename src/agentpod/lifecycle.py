"""
Sandbox lifecycle manager.

Owns the agent record state machine:

    pending -> provisioning -> running <-> sleeping
                     |
                     +-> error (health polling exhausted)

and the two resources behind an agent: the per-user sandbox (through the
engine adapter) and the agent's binding in the shared gateway registry.
Registry removal pauses an agent without touching its sandbox or workspace;
only ``destroy`` deletes anything.

There is no lock at this layer. Concurrent ``ensure_running`` calls for the
same user all reach ``engine.create``, whose lookup-before-create by
container name makes them converge on one sandbox and one token.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable

import httpx
import structlog

from .config import Settings, get_settings
from .engine import SandboxEngine
from .errors import (
    AgentAlreadyExists,
    AgentPodError,
    ProvisioningTimeout,
    WorkspaceMissing,
)
from .metrics import provision_duration_seconds, sandbox_provisions_total
from .models import (
    AgentStatus,
    AgentStatusResponse,
    BindingEntry,
    ProvisionResult,
    SandboxState,
    agent_id_for,
)
from .registry import ConfigRegistry
from .stores import AgentRecordStore
from .workspace import WorkspaceManager

logger = structlog.get_logger(__name__)


class LifecycleManager:
    """Provision, start, pause, resume and destroy per-user agents."""

    def __init__(
        self,
        engine: SandboxEngine,
        registry: ConfigRegistry,
        workspaces: WorkspaceManager,
        records: AgentRecordStore,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.engine = engine
        self.registry = registry
        self.workspaces = workspaces
        self.records = records
        self.settings = settings or get_settings()
        self._http_client = http_client
        self._sleep = sleep

    # ------------------------------------------------------------------
    # sandbox
    # ------------------------------------------------------------------

    async def ensure_running(self, user_id: str) -> str:
        """
        Make sure the user's sandbox is up and return its gateway token.

        Reuses a running sandbox, restarts a stopped one, and otherwise
        creates a new sandbox and waits for its health endpoint.

        Raises:
            ProvisioningTimeout: The new sandbox never reported healthy.
            EngineError: The engine failed to create the sandbox.
        """
        record = await self.records.get_agent_record(user_id)

        if record and record.sandbox_id and record.gateway_token:
            state = await self.engine.status(record.sandbox_id)
            if state == SandboxState.RUNNING:
                sandbox_provisions_total.labels(outcome="reused").inc()
                return record.gateway_token
            if state == SandboxState.STOPPED:
                try:
                    await self.engine.start(record.sandbox_id)
                except AgentPodError as e:
                    logger.warning(
                        "sandbox_restart_failed_recreating",
                        user_id=user_id,
                        sandbox_id=record.sandbox_id,
                        error=str(e),
                    )
                else:
                    await self.records.set_agent_record(
                        user_id, status=AgentStatus.RUNNING
                    )
                    sandbox_provisions_total.labels(outcome="started").inc()
                    logger.info("sandbox_resumed", user_id=user_id)
                    return record.gateway_token

        await self.records.set_agent_record(user_id, status=AgentStatus.PROVISIONING)
        started = time.monotonic()

        handle = await self.engine.create(user_id)
        await self.records.set_agent_record(
            user_id,
            sandbox_id=handle.sandbox_id,
            gateway_token=handle.token,
        )

        if await self._wait_healthy(user_id):
            await self.records.set_agent_record(user_id, status=AgentStatus.RUNNING)
            provision_duration_seconds.observe(time.monotonic() - started)
            sandbox_provisions_total.labels(outcome="created").inc()
            logger.info(
                "sandbox_ready",
                user_id=user_id,
                duration_seconds=round(time.monotonic() - started, 2),
            )
            return handle.token

        await self.records.set_agent_record(user_id, status=AgentStatus.ERROR)
        sandbox_provisions_total.labels(outcome="timeout").inc()
        logger.error("sandbox_provision_timeout", user_id=user_id)
        raise ProvisioningTimeout(
            user_id,
            self.settings.health_poll_attempts,
            self.settings.health_poll_interval_seconds,
        )

    async def _wait_healthy(self, user_id: str) -> bool:
        url = self.engine.url_for(user_id)
        attempts = self.settings.health_poll_attempts
        interval = self.settings.health_poll_interval_seconds

        if self._http_client is not None:
            return await self._poll(self._http_client, url, attempts, interval)
        async with httpx.AsyncClient(
            timeout=self.settings.health_probe_timeout_seconds
        ) as client:
            return await self._poll(client, url, attempts, interval)

    async def _poll(
        self, client: httpx.AsyncClient, url: str, attempts: int, interval: float
    ) -> bool:
        for attempt in range(1, attempts + 1):
            try:
                response = await client.get(
                    url, timeout=self.settings.health_probe_timeout_seconds
                )
                if response.is_success:
                    return True
                logger.debug(
                    "sandbox_health_pending",
                    url=url,
                    attempt=attempt,
                    status_code=response.status_code,
                )
            except httpx.HTTPError as e:
                logger.debug(
                    "sandbox_health_pending", url=url, attempt=attempt, error=str(e)
                )
            if attempt < attempts:
                await self._sleep(interval)
        return False

    # ------------------------------------------------------------------
    # registry binding
    # ------------------------------------------------------------------

    def _entry(self, agent_id: str) -> BindingEntry:
        return BindingEntry(
            agent_id=agent_id,
            workspace_path=self.workspaces.gateway_path(agent_id),
            model=self.settings.binding_model,
            channel_binding=self.settings.binding_channel,
        )

    async def _bind(self, agent_id: str) -> None:
        try:
            await self.registry.add_agent(self._entry(agent_id))
        except AgentAlreadyExists:
            logger.debug("agent_already_bound", agent_id=agent_id)

    async def _create_agent(self, agent_id: str) -> None:
        await asyncio.to_thread(self.workspaces.create, agent_id)
        await self._bind(agent_id)

    async def pause(self, agent_id: str) -> None:
        """Unbind the agent from the gateway. The sandbox is left as-is."""
        await self.registry.remove_agent(agent_id)
        logger.info("agent_paused", agent_id=agent_id)

    async def resume(self, agent_id: str) -> None:
        """
        Re-bind a paused agent.

        Raises:
            WorkspaceMissing: The agent's workspace no longer exists.
        """
        if not await asyncio.to_thread(self.workspaces.exists, agent_id):
            raise WorkspaceMissing(agent_id)
        if await self.registry.exists(agent_id):
            return
        await self._bind(agent_id)
        logger.info("agent_resumed", agent_id=agent_id)

    # ------------------------------------------------------------------
    # user level operations
    # ------------------------------------------------------------------

    async def provision(self, user_id: str) -> ProvisionResult:
        """Create or repair the user's agent, then make sure it is running."""
        agent_id = agent_id_for(user_id)
        record = await self.records.get_agent_record(user_id)

        if record is None:
            await self._create_agent(agent_id)
            await self.records.set_agent_record(user_id, status=AgentStatus.PENDING)
            status = "created"
        else:
            agent_id = record.agent_id
            bound = await self.registry.exists(agent_id)
            if bound and record.status != AgentStatus.SLEEPING:
                status = "ok"
            else:
                try:
                    await self.resume(agent_id)
                    status = "resumed"
                except WorkspaceMissing:
                    logger.warning("agent_workspace_missing_recreating", agent_id=agent_id)
                    await self._create_agent(agent_id)
                    status = "recreated"

        await self.ensure_running(user_id)
        await self.records.set_agent_record(user_id, status=AgentStatus.RUNNING)
        logger.info("agent_provisioned", user_id=user_id, agent_id=agent_id, status=status)
        return ProvisionResult(status=status, agent_id=agent_id)

    async def wake(self, user_id: str) -> str:
        """Bring a sleeping agent back: re-bind, ensure running, mark active."""
        record = await self.records.get_agent_record(user_id)
        agent_id = record.agent_id if record else agent_id_for(user_id)

        if not await self.registry.exists(agent_id):
            try:
                await self.resume(agent_id)
            except WorkspaceMissing:
                await self._create_agent(agent_id)

        token = await self.ensure_running(user_id)
        await self.records.set_agent_record(user_id, status=AgentStatus.RUNNING)
        await self.records.touch_activity(user_id)
        logger.info("agent_woken", user_id=user_id, agent_id=agent_id)
        return token

    async def destroy(self, user_id: str) -> None:
        """Delete everything belonging to the user's agent."""
        record = await self.records.get_agent_record(user_id)
        agent_id = record.agent_id if record else agent_id_for(user_id)

        await self.registry.remove_agent(agent_id)
        if record and record.sandbox_id:
            await self.engine.delete(record.sandbox_id)
        await asyncio.to_thread(self.workspaces.remove, agent_id)

        if record:
            await self.records.set_agent_record(
                user_id,
                status=AgentStatus.NOT_FOUND,
                sandbox_id=None,
                gateway_token=None,
            )
        logger.info("agent_destroyed", user_id=user_id, agent_id=agent_id)

    async def agent_status(self, user_id: str) -> AgentStatusResponse:
        record = await self.records.get_agent_record(user_id)
        if record is None or record.status == AgentStatus.NOT_FOUND:
            return AgentStatusResponse(agent_status=AgentStatus.NOT_FOUND.value)

        bound = await self.registry.exists(record.agent_id)
        status = record.status
        if bound and status not in (AgentStatus.ERROR, AgentStatus.SLEEPING):
            status = AgentStatus.RUNNING
        return AgentStatusResponse(
            agent_status=status.value, agent_id=record.agent_id, bound=bound
        )
