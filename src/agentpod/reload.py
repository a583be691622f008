"""
Debounced gateway reloads.

The gateway re-reads the binding registry when signalled. Bursts of registry
mutations collapse into a single reload: each mutation cancels the pending
timer and schedules a new one, and only a quiet window fires the action.
"""

import asyncio
from collections.abc import Awaitable, Callable

import docker
import structlog
from docker.errors import DockerException

from .config import Settings, get_settings
from .errors import EngineError
from .metrics import registry_reloads_total

logger = structlog.get_logger(__name__)

ReloadAction = Callable[[], Awaitable[None]]


class ReloadDebouncer:
    """
    Collapse bursts of reload requests into one action per quiet window.

    A single timer handle is owned per instance. Once the timer fires, the
    action runs as its own task and is never cancelled by later schedules;
    a schedule arriving during a running action starts a fresh window.
    """

    def __init__(self, action: ReloadAction, delay: float = 5.0):
        self.action = action
        self.delay = delay
        self.fired = 0
        self._handle: asyncio.TimerHandle | None = None
        self._inflight: set[asyncio.Task] = set()

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def schedule(self) -> None:
        """(Re)start the quiet window. Must be called from the event loop."""
        loop = asyncio.get_running_loop()
        if self._handle is not None:
            self._handle.cancel()
        self._handle = loop.call_later(self.delay, self._fire)
        logger.debug("gateway_reload_scheduled", delay_seconds=self.delay)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    async def flush(self) -> None:
        """Run a pending reload now and wait for in-flight reloads."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
            self.fired += 1
            await self._run()
        await self.wait_idle()

    async def wait_idle(self) -> None:
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)

    def _fire(self) -> None:
        self._handle = None
        self.fired += 1
        task = asyncio.get_running_loop().create_task(self._run())
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _run(self) -> None:
        try:
            await self.action()
        except Exception as e:
            registry_reloads_total.labels(status="error").inc()
            logger.error("gateway_reload_failed", error=str(e), exc_info=True)
            return
        registry_reloads_total.labels(status="success").inc()
        logger.info("gateway_reload_fired")


class DockerGatewayReloader:
    """Signal the gateway process to re-read its config, restarting as fallback."""

    def __init__(
        self,
        settings: Settings | None = None,
        client: docker.DockerClient | None = None,
    ):
        self.settings = settings or get_settings()
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            if self.settings.docker_base_url:
                self._client = docker.DockerClient(
                    base_url=self.settings.docker_base_url
                )
            else:
                self._client = docker.from_env()
        return self._client

    async def __call__(self) -> None:
        await asyncio.to_thread(self._reload_blocking)

    def _reload_blocking(self) -> None:
        name = self.settings.gateway_container
        try:
            container = self.client.containers.get(name)
        except DockerException as e:
            raise EngineError("reload", f"gateway container {name}: {e}", e) from e

        try:
            result = container.exec_run(
                ["pkill", "-SIGUSR1", "-f", self.settings.gateway_process_pattern]
            )
            if result.exit_code == 0:
                logger.info("gateway_hot_reloaded", container=name)
                return
            logger.warning(
                "gateway_hot_reload_failed",
                container=name,
                exit_code=result.exit_code,
            )
        except DockerException as e:
            logger.warning("gateway_hot_reload_failed", container=name, error=str(e))

        try:
            container.restart()
        except DockerException as e:
            raise EngineError("restart", str(e), e) from e
        logger.info("gateway_restarted", container=name)
