"""
Docker sandbox engine.

Each user gets one long-lived container running the agent process, attached
to a private bridge network and reachable by its container name. The
container name is derived deterministically from the user id, which makes the
name lookup the serialization point for idempotent creation: a second create
for the same user finds the existing container and returns the token recorded
in its environment instead of creating a duplicate.

The docker SDK is blocking, so every call runs in a worker thread.
"""

import asyncio
import hashlib
import secrets
import weakref
from typing import Any, Protocol

import docker
import structlog
from docker.errors import APIError, DockerException, NotFound

from .config import Settings, get_settings
from .errors import ConfigurationError, ContainerNotFound, EngineError
from .models import SandboxHandle, SandboxState

logger = structlog.get_logger(__name__)

TOKEN_ENV = "GATEWAY_TOKEN"
MANAGED_BY_LABEL = "agentpod.managed-by"
USER_LABEL = "agentpod.user-hash"


class SandboxEngine(Protocol):
    """Contract the lifecycle manager relies on."""

    async def create(self, user_id: str) -> SandboxHandle: ...

    async def start(self, sandbox_id: str) -> None: ...

    async def stop(self, sandbox_id: str) -> None: ...

    async def status(self, sandbox_id: str) -> SandboxState: ...

    async def delete(self, sandbox_id: str) -> None: ...

    def url_for(self, user_id: str) -> str: ...


def container_name(user_id: str) -> str:
    """Stable container name for a user (prefix of the user id hash)."""
    digest = hashlib.sha256(user_id.encode("utf-8")).hexdigest()
    return f"agent-{digest[:12]}"


def _token_from_attrs(attrs: dict[str, Any]) -> str | None:
    for entry in (attrs.get("Config") or {}).get("Env") or []:
        key, _, value = entry.partition("=")
        if key == TOKEN_ENV and value:
            return value
    return None


def _is_running(attrs: dict[str, Any]) -> bool:
    return bool((attrs.get("State") or {}).get("Running"))


class DockerEngine:
    """Manage per-user agent containers through the Docker Engine API."""

    def __init__(
        self,
        settings: Settings | None = None,
        client: docker.DockerClient | None = None,
    ):
        self.settings = settings or get_settings()
        self._client = client
        self._network_ready = False
        # Entries live only while a create for that name is in flight.
        self._create_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    @property
    def client(self) -> docker.DockerClient:
        """Lazy initialization of Docker client."""
        if self._client is None:
            try:
                if self.settings.docker_base_url:
                    self._client = docker.DockerClient(
                        base_url=self.settings.docker_base_url
                    )
                else:
                    self._client = docker.from_env()
            except DockerException as e:
                raise ConfigurationError(f"Docker daemon unreachable: {e}") from e
        return self._client

    def url_for(self, user_id: str) -> str:
        return f"http://{container_name(user_id)}:{self.settings.agent_port}"

    # ------------------------------------------------------------------
    # create
    # ------------------------------------------------------------------

    async def create(self, user_id: str) -> SandboxHandle:
        """
        Return the user's sandbox, creating and starting it only if absent.

        Concurrent calls in this process for the same user are serialized on
        the container name. Across processes, a name conflict from the engine
        is resolved by adopting the container the other process created.
        """
        name = container_name(user_id)
        lock = self._create_locks.get(name)
        if lock is None:
            lock = self._create_locks[name] = asyncio.Lock()
        async with lock:
            return await asyncio.to_thread(self._create_blocking, user_id, name)

    def _create_blocking(self, user_id: str, name: str) -> SandboxHandle:
        self._ensure_network()

        existing = self._find(name)
        if existing is not None:
            return self._adopt(existing)

        token = secrets.token_urlsafe(32)
        settings = self.settings
        try:
            container = self.client.containers.run(
                settings.agent_image,
                name=name,
                detach=True,
                environment={
                    "USER_ID": user_id,
                    TOKEN_ENV: token,
                    "AGENT_MODEL": settings.agent_model,
                    "AGENT_PORT": str(settings.agent_port),
                },
                labels={
                    MANAGED_BY_LABEL: settings.service_name,
                    USER_LABEL: name.removeprefix("agent-"),
                },
                network=settings.agent_network,
                restart_policy={"Name": "always"},
                mem_limit=f"{settings.agent_memory_mb}m",
                nano_cpus=int(settings.agent_cpus * 1_000_000_000),
            )
        except APIError as e:
            if e.status_code == 409:
                logger.warning("sandbox_create_conflict", container=name)
                existing = self._find(name)
                if existing is not None:
                    return self._adopt(existing)
            logger.error("sandbox_create_failed", container=name, error=str(e))
            raise EngineError("create", str(e), e) from e

        logger.info(
            "sandbox_created",
            container=name,
            sandbox_id=container.id[:12],
            image=settings.agent_image,
        )
        return SandboxHandle(sandbox_id=container.id, token=token)

    def _find(self, name: str):
        """Look up a container by name. Only 'not found' means absent."""
        try:
            return self.client.containers.get(name)
        except NotFound:
            return None
        except APIError as e:
            raise EngineError("lookup", str(e), e) from e

    def _adopt(self, container) -> SandboxHandle:
        attrs = container.attrs
        token = _token_from_attrs(attrs)
        if token is None:
            raise EngineError(
                "create", f"container {container.name} has no recorded token"
            )
        if not _is_running(attrs):
            try:
                container.start()
            except APIError as e:
                raise EngineError("start", str(e), e) from e
            logger.info("sandbox_restarted_existing", container=container.name)
        else:
            logger.info("sandbox_reused_existing", container=container.name)
        return SandboxHandle(sandbox_id=container.id, token=token)

    def _ensure_network(self) -> None:
        if self._network_ready:
            return
        network = self.settings.agent_network
        try:
            self.client.networks.get(network)
        except NotFound:
            try:
                self.client.networks.create(network, driver="bridge")
                logger.info("sandbox_network_created", network=network)
            except APIError as e:
                if e.status_code != 409:
                    raise EngineError("network", str(e), e) from e
        except APIError as e:
            raise EngineError("network", str(e), e) from e
        self._network_ready = True

    # ------------------------------------------------------------------
    # start / stop / status / delete
    # ------------------------------------------------------------------

    async def start(self, sandbox_id: str) -> None:
        await asyncio.to_thread(self._start_blocking, sandbox_id)

    def _start_blocking(self, sandbox_id: str) -> None:
        try:
            container = self.client.containers.get(sandbox_id)
            if not _is_running(container.attrs):
                container.start()
                logger.info("sandbox_started", sandbox_id=sandbox_id[:12])
        except NotFound as e:
            raise ContainerNotFound(sandbox_id, e) from e
        except APIError as e:
            raise EngineError("start", str(e), e) from e

    async def stop(self, sandbox_id: str) -> None:
        await asyncio.to_thread(self._stop_blocking, sandbox_id)

    def _stop_blocking(self, sandbox_id: str) -> None:
        try:
            container = self.client.containers.get(sandbox_id)
            container.stop(timeout=self.settings.stop_timeout_seconds)
            logger.info("sandbox_stopped", sandbox_id=sandbox_id[:12])
        except NotFound:
            logger.info("sandbox_stop_not_found", sandbox_id=sandbox_id[:12])
        except APIError as e:
            # 304: already stopped
            if e.status_code == 304:
                return
            raise EngineError("stop", str(e), e) from e

    async def status(self, sandbox_id: str) -> SandboxState:
        return await asyncio.to_thread(self._status_blocking, sandbox_id)

    def _status_blocking(self, sandbox_id: str) -> SandboxState:
        try:
            container = self.client.containers.get(sandbox_id)
        except NotFound:
            return SandboxState.NOT_FOUND
        except Exception as e:
            logger.warning(
                "sandbox_status_failed", sandbox_id=sandbox_id[:12], error=str(e)
            )
            return SandboxState.NOT_FOUND
        if _is_running(container.attrs):
            return SandboxState.RUNNING
        return SandboxState.STOPPED

    async def delete(self, sandbox_id: str) -> None:
        await asyncio.to_thread(self._delete_blocking, sandbox_id)

    def _delete_blocking(self, sandbox_id: str) -> None:
        try:
            container = self.client.containers.get(sandbox_id)
        except NotFound:
            logger.info("sandbox_delete_not_found", sandbox_id=sandbox_id[:12])
            return
        except APIError as e:
            raise EngineError("delete", str(e), e) from e

        try:
            container.stop(timeout=5)
        except APIError:
            pass  # Already stopped

        try:
            container.remove(force=True)
        except NotFound:
            return
        except APIError as e:
            raise EngineError("delete", str(e), e) from e
        logger.info("sandbox_deleted", sandbox_id=sandbox_id[:12])
