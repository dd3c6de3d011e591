"""
Agent Transport - the single streaming POST to the agent endpoint.

Wraps httpx.AsyncClient. The client is created lazily inside the running
event loop and recreated if the loop changes, so repeated asyncio.run()
calls (CLI, tests) never reuse a client bound to a dead loop.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import httpx

from chargur.config import Credentials, EngineConfig
from chargur.exceptions import AuthenticationRequired, TransportFailure

logger = logging.getLogger(__name__)

AUTH_STATUSES = (401, 403)


@dataclass
class AgentRequest:
    """Body of one agent-prompt call."""

    stage_id: str
    user_message: str
    conversation_id: str
    current_stage_data: dict[str, Any] = field(default_factory=dict)
    all_stage_data: dict[str, Any] = field(default_factory=dict)
    conversation_history: list[dict[str, str]] = field(default_factory=list)
    memory: dict[str, Any] = field(default_factory=dict)
    recommendations: list[Any] = field(default_factory=list)
    # Set on a retry when checkpoints exist for this exchange
    last_token_index: int | None = None

    def to_body(self) -> dict[str, Any]:
        """Serialize using the endpoint's camelCase field names."""
        body: dict[str, Any] = {
            "stageId": self.stage_id,
            "currentStageData": self.current_stage_data,
            "allStageData": self.all_stage_data,
            "userMessage": self.user_message,
            "conversationId": self.conversation_id,
            "conversationHistory": self.conversation_history,
            "memory": self.memory,
            "recommendations": self.recommendations,
        }
        if self.last_token_index is not None and self.last_token_index >= 0:
            body["lastTokenIndex"] = self.last_token_index
            body["resumeStreaming"] = True
        return body


class AgentTransport:
    """
    Streams the agent response body as raw byte chunks.

    The httpx read timeout doubles as the idle timeout: the endpoint sends
    heartbeat frames while the model is thinking, so silence longer than
    `idle_timeout` means the connection has stalled.
    """

    def __init__(self, config: EngineConfig, client: httpx.AsyncClient | None = None):
        self.config = config
        self._client = client
        self._owns_client = client is None
        self._client_loop: asyncio.AbstractEventLoop | None = None
        self.request_count = 0

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client, recreating if the event loop changed."""
        if not self._owns_client:
            return self._client  # type: ignore[return-value]

        current_loop = asyncio.get_running_loop()
        if self._client is not None and self._client_loop is not current_loop:
            # Old loop is gone; abandon rather than close
            self._client = None

        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(
                    self.config.request_timeout,
                    connect=self.config.connect_timeout,
                    read=self.config.idle_timeout,
                ),
            )
            self._client_loop = current_loop
        return self._client

    async def close(self) -> None:
        """Close the client if this transport created it."""
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
            self._client_loop = None

    def _headers(self, credentials: Credentials) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
            "Authorization": f"Bearer {credentials.access_token}",
            **self.config.extra_headers,
        }
        if self.config.api_key:
            headers["apikey"] = self.config.api_key
        return headers

    async def stream(self, request: AgentRequest, credentials: Credentials) -> AsyncIterator[bytes]:
        """
        POST the request and yield response body chunks as they arrive.

        Raises:
            AuthenticationRequired: On 401/403
            TransportFailure: On any other non-2xx status or network error
        """
        client = self._get_client()
        self.request_count += 1
        logger.debug(
            f"Opening agent stream for conversation {request.conversation_id} "
            f"(resume after {request.last_token_index})"
        )

        try:
            async with client.stream(
                "POST",
                self.config.agent_url,
                json=request.to_body(),
                headers=self._headers(credentials),
            ) as response:
                if response.status_code in AUTH_STATUSES:
                    text = await _read_error_text(response)
                    raise AuthenticationRequired(
                        f"Agent function rejected credentials: {response.status_code} - {text}",
                        {"status": response.status_code},
                    )
                if response.is_error:
                    text = await _read_error_text(response)
                    raise TransportFailure(
                        f"Agent function failed: {response.status_code} - {text}",
                        status=response.status_code,
                        server_message=text,
                    )

                async for chunk in response.aiter_bytes():
                    if chunk:
                        yield chunk

        except httpx.TimeoutException as e:
            logger.warning(f"Agent stream stalled after {self.config.idle_timeout}s: {e!r}")
            raise TransportFailure(f"Agent stream stalled: {type(e).__name__}") from e
        except httpx.HTTPError as e:
            raise TransportFailure(f"Agent stream failed: {e}") from e


async def _read_error_text(response: httpx.Response) -> str:
    try:
        body = await response.aread()
    except httpx.HTTPError:
        return "Unknown error"
    return body.decode("utf-8", errors="replace")[:500] or "Unknown error"
