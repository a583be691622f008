"""agentpod HTTP API."""

import json
import secrets
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone

import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sse_starlette.sse import EventSourceResponse

from .config import Settings, get_settings
from .conversation import ConversationService
from .engine import DockerEngine
from .errors import (
    AgentPodError,
    ConfigWriteFailure,
    EngineError,
    GatewayUnavailable,
    InsufficientCredits,
    ProvisioningTimeout,
    WorkspaceMissing,
)
from .gateway import GatewayClient
from .lifecycle import LifecycleManager
from .logging import set_correlation_id, setup_logging
from .models import MessageRequest, ReapResponse, VoiceRequest
from .reaper import Reaper
from .registry import ConfigRegistry
from .reload import DockerGatewayReloader, ReloadDebouncer
from .speech import HttpSpeechSynthesizer
from .stores import (
    InMemoryAgentRecordStore,
    InMemoryCreditStore,
    InMemoryReapCandidateSource,
)
from .workspace import WorkspaceManager

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    """Everything the routes need, wired once per process."""

    settings: Settings
    lifecycle: LifecycleManager
    conversation: ConversationService
    reaper: Reaper
    gateway: GatewayClient
    debouncer: ReloadDebouncer | None = None
    synthesizer: HttpSpeechSynthesizer | None = None

    async def aclose(self) -> None:
        if self.debouncer is not None:
            await self.debouncer.flush()
        await self.gateway.aclose()
        if self.synthesizer is not None:
            await self.synthesizer.aclose()


def build_services(settings: Settings | None = None) -> Services:
    """Wire the Docker-backed services with in-memory external stores."""
    settings = settings or get_settings()

    debouncer = ReloadDebouncer(
        DockerGatewayReloader(settings), delay=settings.reload_debounce_seconds
    )
    registry = ConfigRegistry(settings.registry_path, debouncer)
    records = InMemoryAgentRecordStore()
    credits = InMemoryCreditStore(default_balance=settings.default_credits)

    lifecycle = LifecycleManager(
        engine=DockerEngine(settings),
        registry=registry,
        workspaces=WorkspaceManager(settings),
        records=records,
        settings=settings,
    )
    gateway = GatewayClient(settings=settings)
    synthesizer = HttpSpeechSynthesizer(settings)
    conversation = ConversationService(
        lifecycle,
        gateway,
        credits,
        records,
        synthesizer=synthesizer,
        synthesis_batch_size=settings.synthesis_batch_size,
    )
    reaper = Reaper(lifecycle, records, InMemoryReapCandidateSource(records), settings)

    return Services(
        settings=settings,
        lifecycle=lifecycle,
        conversation=conversation,
        reaper=reaper,
        gateway=gateway,
        debouncer=debouncer,
        synthesizer=synthesizer,
    )


def _error(status_code: int, error: str, message: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "message": message, **extra},
    )


def create_app(services: Services | None = None) -> FastAPI:
    """Application factory. Pass ``services`` to skip the default wiring."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = services is None
        app.state.services = services or build_services()
        settings = app.state.services.settings
        if owned:
            setup_logging(settings.log_level, settings.log_format, settings.service_name)
        logger.info("agentpod_starting", reaper_enabled=settings.reaper_enabled)

        if settings.reaper_enabled:
            await app.state.services.reaper.start()
        yield
        await app.state.services.reaper.stop()
        if owned:
            await app.state.services.aclose()
        logger.info("agentpod_stopping")

    app = FastAPI(
        title="agentpod",
        description="Per-user agent sandboxes behind a shared gateway",
        version="0.1.0",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    # =========================================================================
    # Request context & error mapping
    # =========================================================================

    @app.middleware("http")
    async def correlation_id(request: Request, call_next):
        corr_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        set_correlation_id(corr_id)
        response = await call_next(request)
        response.headers["X-Request-Id"] = corr_id
        return response

    @app.exception_handler(InsufficientCredits)
    async def insufficient_credits(request: Request, exc: InsufficientCredits):
        return _error(
            402,
            "insufficient_credits",
            str(exc),
            required=exc.required,
            available=exc.available,
        )

    @app.exception_handler(GatewayUnavailable)
    async def gateway_unavailable(request: Request, exc: GatewayUnavailable):
        return _error(
            502, "gateway_unavailable", exc.message, upstream_status=exc.status_code
        )

    @app.exception_handler(ProvisioningTimeout)
    async def provisioning_timeout(request: Request, exc: ProvisioningTimeout):
        return _error(504, "provisioning_timeout", str(exc))

    @app.exception_handler(WorkspaceMissing)
    async def workspace_missing(request: Request, exc: WorkspaceMissing):
        return _error(409, "workspace_missing", str(exc))

    @app.exception_handler(EngineError)
    async def engine_error(request: Request, exc: EngineError):
        logger.error("engine_error", operation=exc.operation, error=str(exc))
        return _error(503, "engine_error", str(exc))

    @app.exception_handler(ConfigWriteFailure)
    async def config_write_failure(request: Request, exc: ConfigWriteFailure):
        logger.error("registry_error", path=exc.path, error=str(exc))
        return _error(500, "registry_error", str(exc))

    @app.exception_handler(AgentPodError)
    async def agentpod_error(request: Request, exc: AgentPodError):
        logger.error("unhandled_agentpod_error", error=str(exc))
        return _error(500, "internal_error", str(exc))

    def get_services(request: Request) -> Services:
        return request.app.state.services

    def get_user_id(x_user_id: str = Header(default="", alias="X-User-Id")) -> str:
        if not x_user_id:
            raise HTTPException(status_code=401, detail="Missing X-User-Id header")
        return x_user_id

    # =========================================================================
    # Health & Metrics
    # =========================================================================

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy", "service": "agentpod"}

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics endpoint."""
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/gateway/health")
    async def gateway_health(svc: Services = Depends(get_services)):
        healthy = await svc.gateway.health()
        return {"healthy": healthy}

    # =========================================================================
    # Agent
    # =========================================================================

    @app.post("/agent/message")
    async def agent_message(
        body: MessageRequest,
        user_id: str = Depends(get_user_id),
        svc: Services = Depends(get_services),
    ):
        if not body.text.strip():
            return _error(400, "invalid_request", "Message text is required")
        reply = await svc.conversation.send_message(user_id, body.text)
        return reply.model_dump()

    @app.post("/agent/voice")
    async def agent_voice(
        request: Request,
        body: VoiceRequest,
        user_id: str = Depends(get_user_id),
        svc: Services = Depends(get_services),
    ):
        """
        Stream a spoken reply as server-sent events.

        Every pipeline event is sent as a ``chunk`` event whose data is the
        JSON-encoded event. Disconnecting cancels the pipeline.
        """
        if not body.text.strip():
            return _error(400, "invalid_request", "Message text is required")

        pipeline = await svc.conversation.stream_voice(
            user_id, body.text, voice=body.voice, native_tts=body.native_tts
        )

        async def event_generator():
            try:
                async for event in pipeline.events():
                    if await request.is_disconnected():
                        logger.info("voice_client_disconnected", user_id=user_id)
                        break
                    yield {"event": "chunk", "data": json.dumps(event)}
            finally:
                pipeline.cancel()

        return EventSourceResponse(event_generator())

    @app.post("/agent/provision")
    async def agent_provision(
        user_id: str = Depends(get_user_id),
        svc: Services = Depends(get_services),
    ):
        result = await svc.lifecycle.provision(user_id)
        return {"status": result.status, "agentId": result.agent_id}

    @app.get("/agent/status")
    async def agent_status(
        user_id: str = Depends(get_user_id),
        svc: Services = Depends(get_services),
    ):
        status = await svc.lifecycle.agent_status(user_id)
        return status.model_dump(by_alias=True)

    @app.post("/agent/wake")
    async def agent_wake(
        user_id: str = Depends(get_user_id),
        svc: Services = Depends(get_services),
    ):
        await svc.lifecycle.wake(user_id)
        return {"status": "running"}

    # =========================================================================
    # Cron
    # =========================================================================

    def verify_cron(
        authorization: str = Header(default=""),
        svc: Services = Depends(get_services),
    ) -> None:
        secret = svc.settings.cron_secret
        if not secret:
            raise HTTPException(status_code=500, detail="Cron secret not configured")
        provided = authorization.removeprefix("Bearer ").strip()
        if not secrets.compare_digest(provided, secret):
            raise HTTPException(status_code=401, detail="Unauthorized")

    @app.post("/cron/reap", dependencies=[Depends(verify_cron)])
    async def cron_reap(svc: Services = Depends(get_services)):
        try:
            report = await svc.reaper.sweep()
        except Exception as e:
            logger.error("cron_reap_failed", error=str(e), exc_info=True)
            return JSONResponse(
                status_code=500, content={"status": "error", "message": str(e)}
            )
        return ReapResponse(
            status="ok",
            paused=len(report.paused),
            errors=len(report.errors),
            details={"paused": report.paused, "errors": report.errors},
        ).model_dump()

    @app.get("/cron/health", dependencies=[Depends(verify_cron)])
    async def cron_health(svc: Services = Depends(get_services)):
        checks = {"gateway": await svc.gateway.health()}
        return {
            "status": "ok" if all(checks.values()) else "degraded",
            "checks": checks,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app
