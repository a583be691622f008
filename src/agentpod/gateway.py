"""
Client for the shared agent gateway.

The gateway speaks the OpenAI chat completions protocol and routes each
request to the agent named in the ``X-Agent-Id`` header. Request/response
calls are retried with a linearly growing delay; streaming calls are a single
attempt decoded incrementally from server-sent events.
"""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from typing import Any

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from .config import Settings, get_settings
from .errors import GatewayUnavailable
from .metrics import gateway_attempts_total
from .models import ChatMessage
from .sse import iter_deltas

logger = structlog.get_logger(__name__)

AGENT_ID_HEADER = "X-Agent-Id"
EMPTY_REPLY = "I didn't have a response for that. Could you try asking again?"

Messages = Sequence[ChatMessage | dict[str, str]]


def _serialize(messages: Messages) -> list[dict[str, str]]:
    return [
        m.model_dump()
        if isinstance(m, ChatMessage)
        else {"role": m["role"], "content": m["content"]}
        for m in messages
    ]


class GatewayClient:
    """HTTP client for the gateway's chat completions endpoint."""

    def __init__(
        self,
        base_url: str | None = None,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self.base_url = (base_url or self.settings.gateway_url).rstrip("/")
        self.timeout = self.settings.gateway_timeout_seconds
        self.max_attempts = self.settings.gateway_max_attempts
        self.retry_step = self.settings.gateway_retry_step_seconds
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=self.timeout)
        self._sleep = sleep

    @property
    def completions_url(self) -> str:
        return f"{self.base_url}/v1/chat/completions"

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self, agent_id: str, token: str | None) -> dict[str, str]:
        headers = {AGENT_ID_HEADER: agent_id, "Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _body(self, agent_id: str, messages: Messages, stream: bool) -> dict[str, Any]:
        return {
            "model": self.settings.gateway_model,
            "messages": _serialize(messages),
            "user": agent_id,
            "stream": stream,
        }

    # ------------------------------------------------------------------
    # request/response
    # ------------------------------------------------------------------

    async def send(
        self, agent_id: str, messages: Messages, token: str | None = None
    ) -> str:
        """
        Send a conversation and return the assistant's reply.

        Transport errors and non-2xx answers are retried; the delay before
        attempt N+1 is N times the retry step.

        Raises:
            GatewayUnavailable: Every attempt failed, or the reply was malformed.
        """
        body = self._body(agent_id, messages, stream=False)
        headers = self._headers(agent_id, token)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_incrementing(start=self.retry_step, increment=self.retry_step),
            retry=retry_if_exception_type(httpx.HTTPError),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    data = await self._send_once(body, headers)
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            detail = e.response.text[:500]
            logger.error(
                "gateway_send_failed",
                agent_id=agent_id,
                status_code=status_code,
                attempts=self.max_attempts,
            )
            raise GatewayUnavailable(
                f"Gateway returned {status_code}: {detail}",
                status_code=status_code,
                last_error=e,
            ) from e
        except httpx.HTTPError as e:
            logger.error(
                "gateway_send_failed",
                agent_id=agent_id,
                error=str(e),
                attempts=self.max_attempts,
            )
            raise GatewayUnavailable(
                f"Gateway unreachable: {e!r}", last_error=e
            ) from e

        try:
            content = data["choices"][0]["message"].get("content")
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise GatewayUnavailable(
                "Gateway returned a malformed completion", last_error=e
            ) from e
        return content or EMPTY_REPLY

    async def _send_once(
        self, body: dict[str, Any], headers: dict[str, str]
    ) -> dict[str, Any]:
        try:
            response = await self._client.post(
                self.completions_url, json=body, headers=headers, timeout=self.timeout
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            gateway_attempts_total.labels(
                operation="send", status=str(e.response.status_code)
            ).inc()
            raise
        except httpx.HTTPError:
            gateway_attempts_total.labels(operation="send", status="transport").inc()
            raise
        gateway_attempts_total.labels(operation="send", status="ok").inc()

        try:
            return response.json()
        except ValueError as e:
            raise GatewayUnavailable(
                "Gateway returned invalid JSON",
                status_code=response.status_code,
                last_error=e,
            ) from e

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "gateway_send_retrying",
            attempt=retry_state.attempt_number,
            next_delay_seconds=(
                retry_state.next_action.sleep if retry_state.next_action else None
            ),
            error=str(error),
        )

    # ------------------------------------------------------------------
    # streaming
    # ------------------------------------------------------------------

    async def stream(
        self, agent_id: str, messages: Messages, token: str | None = None
    ) -> AsyncIterator[str]:
        """
        Stream the assistant's reply as content deltas.

        Closing the iterator aborts the underlying read and releases the
        connection.

        Raises:
            GatewayUnavailable: Non-2xx answer or transport failure.
        """
        body = self._body(agent_id, messages, stream=True)
        headers = self._headers(agent_id, token)

        try:
            async with self._client.stream(
                "POST",
                self.completions_url,
                json=body,
                headers=headers,
                timeout=self.timeout,
            ) as response:
                if not response.is_success:
                    detail = (await response.aread()).decode("utf-8", "replace")[:500]
                    gateway_attempts_total.labels(
                        operation="stream", status=str(response.status_code)
                    ).inc()
                    raise GatewayUnavailable(
                        f"Gateway returned {response.status_code}: {detail}",
                        status_code=response.status_code,
                    )
                gateway_attempts_total.labels(operation="stream", status="ok").inc()
                async for delta in iter_deltas(response.aiter_bytes()):
                    yield delta
        except httpx.HTTPError as e:
            gateway_attempts_total.labels(operation="stream", status="transport").inc()
            logger.error("gateway_stream_failed", agent_id=agent_id, error=str(e))
            raise GatewayUnavailable(f"Gateway stream failed: {e!r}", last_error=e) from e

    # ------------------------------------------------------------------
    # health
    # ------------------------------------------------------------------

    async def health(self) -> bool:
        try:
            response = await self._client.get(
                f"{self.base_url}/",
                timeout=self.settings.health_probe_timeout_seconds,
            )
        except httpx.HTTPError as e:
            logger.warning("gateway_health_unreachable", error=str(e))
            return False
        return response.is_success
