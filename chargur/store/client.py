"""
Checkpoint Store Client - async access to the durable conversation store.

The store speaks the PostgREST dialect over HTTP:

    GET  /rest/v1/chat_response_tokens?conversation_id=eq.<id>&token_index=gt.3&order=token_index.asc
    POST /rest/v1/chat_response_tokens?on_conflict=conversation_id,token_index
         Prefer: resolution=merge-duplicates

Every call carries the user's bearer token. Any non-2xx response surfaces as
StoreError with the HTTP status and the server's message.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import httpx

from chargur.config import Credentials, EngineConfig, resolve_credentials
from chargur.exceptions import AuthenticationRequired, StoreAuthError, StoreError
from chargur.logging import StoreLogEntry, now_iso, store_logger
from chargur.store.models import (
    CheckpointToken,
    CompleteResponse,
    ConversationSession,
    ConversationStatus,
)

logger = logging.getLogger(__name__)

CONVERSATIONS = "chat_conversations"
TOKENS = "chat_response_tokens"
RESPONSES = "chat_responses"


class CheckpointStoreClient:
    """
    Client for the conversation / checkpoint store.

    Usage:
        async with CheckpointStoreClient(config) as store:
            conversation_id = await store.create_conversation(stage_id, project_id, {}, user_id)
            await store.append_tokens(conversation_id, tokens)
    """

    def __init__(self, config: EngineConfig, client: httpx.AsyncClient | None = None):
        self.config = config
        self._client = client
        self._owns_client = client is None
        self._client_loop: asyncio.AbstractEventLoop | None = None

    async def __aenter__(self) -> CheckpointStoreClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client, recreating if the event loop changed."""
        if not self._owns_client:
            return self._client  # type: ignore[return-value]

        current_loop = asyncio.get_running_loop()
        if self._client is not None and self._client_loop is not current_loop:
            self._client = None

        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.request_timeout, connect=self.config.connect_timeout),
            )
            self._client_loop = current_loop
        return self._client

    async def close(self) -> None:
        """Close the client if this store created it."""
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
            self._client_loop = None

    async def _credentials(self) -> Credentials:
        credentials = await resolve_credentials(self.config.credential_provider)
        if credentials is None:
            raise AuthenticationRequired("Sign in required to access conversation history")
        return credentials

    async def _request(
        self,
        operation: str,
        method: str,
        resource: str,
        *,
        params: dict[str, str] | None = None,
        json: Any = None,
        prefer: str | None = None,
        conversation_id: str = "",
    ) -> list[dict[str, Any]]:
        """
        Issue one call and return the decoded rows.

        Raises:
            StoreAuthError: On 401/403
            StoreError: On any other non-2xx status or network error
        """
        credentials = await self._credentials()
        headers = {
            "Authorization": f"Bearer {credentials.access_token}",
            "Content-Type": "application/json",
            **self.config.extra_headers,
        }
        if self.config.api_key:
            headers["apikey"] = self.config.api_key
        if prefer:
            headers["Prefer"] = prefer

        entry = StoreLogEntry(
            timestamp=now_iso(),
            operation=operation,
            resource=resource,
            conversation_id=conversation_id,
        )
        start_time = time.monotonic()

        try:
            response = await self._get_client().request(
                method,
                f"{self.config.rest_url}/{resource}",
                params=params,
                json=json,
                headers=headers,
            )
        except httpx.HTTPError as e:
            entry.error = f"{type(e).__name__}: {e}"[:500]
            entry.latency_ms = int((time.monotonic() - start_time) * 1000)
            store_logger.error(entry.to_json())
            raise StoreError(f"{operation} failed: {type(e).__name__}", server_message=str(e)) from e

        entry.status = response.status_code
        entry.latency_ms = int((time.monotonic() - start_time) * 1000)

        if response.is_error:
            server_message = _server_message(response)
            entry.error = server_message[:500]
            store_logger.error(entry.to_json())
            error_cls = StoreAuthError if response.status_code in (401, 403) else StoreError
            raise error_cls(
                f"{operation} failed: {response.status_code} - {server_message}",
                status=response.status_code,
                server_message=server_message,
            )

        rows = _decode_rows(response)
        entry.rows = len(rows)
        store_logger.info(entry.to_json())
        return rows

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def create_conversation(
        self,
        stage_id: str,
        project_id: str,
        metadata: dict[str, Any] | None = None,
        user_id: str | None = None,
    ) -> str:
        """Create an active conversation and return its id."""
        if user_id is None:
            user_id = (await self._credentials()).user_id
        rows = await self._request(
            "create_conversation",
            "POST",
            CONVERSATIONS,
            json={
                "user_id": user_id,
                "project_id": project_id,
                "stage_id": stage_id,
                "status": ConversationStatus.ACTIVE.value,
                "metadata": metadata or {},
            },
            prefer="return=representation",
        )
        if not rows or "id" not in rows[0]:
            raise StoreError("create_conversation returned no row", server_message="empty representation")
        conversation_id = rows[0]["id"]
        logger.info(f"Created conversation {conversation_id} for stage {stage_id}")
        return conversation_id

    async def get_conversation(self, conversation_id: str) -> ConversationSession | None:
        """Fetch a conversation by id, or None if it does not exist."""
        rows = await self._request(
            "get_conversation",
            "GET",
            CONVERSATIONS,
            params={"id": f"eq.{conversation_id}", "select": "*", "limit": "1"},
            conversation_id=conversation_id,
        )
        return ConversationSession.from_row(rows[0]) if rows else None

    async def find_conversation(
        self,
        project_id: str,
        stage_id: str,
        user_id: str,
    ) -> ConversationSession | None:
        """Most recent conversation for a (project, stage, user) triple."""
        rows = await self._request(
            "find_conversation",
            "GET",
            CONVERSATIONS,
            params={
                "project_id": f"eq.{project_id}",
                "stage_id": f"eq.{stage_id}",
                "user_id": f"eq.{user_id}",
                "select": "*",
                "order": "created_at.desc",
                "limit": "1",
            },
        )
        return ConversationSession.from_row(rows[0]) if rows else None

    async def update_conversation_status(self, conversation_id: str, status: ConversationStatus) -> None:
        """Set the lifecycle status of a conversation."""
        await self._request(
            "update_conversation_status",
            "PATCH",
            CONVERSATIONS,
            params={"id": f"eq.{conversation_id}"},
            json={"status": status.value},
            prefer="return=minimal",
            conversation_id=conversation_id,
        )

    # ------------------------------------------------------------------
    # Checkpoint tokens
    # ------------------------------------------------------------------

    async def append_tokens(self, conversation_id: str, tokens: list[CheckpointToken]) -> None:
        """
        Upsert checkpoint tokens keyed by (conversation_id, token_index).

        Re-sending an index replaces the row instead of adding a second one,
        so retried writes are idempotent.
        """
        if not tokens:
            return

        # Last write wins for duplicate indexes within one batch
        by_index: dict[int, CheckpointToken] = {}
        for token in tokens:
            by_index[token.index] = token
        rows = [
            CheckpointToken(conversation_id, t.index, t.content, t.kind).to_row()
            for t in sorted(by_index.values(), key=lambda t: t.index)
        ]

        await self._request(
            "append_tokens",
            "POST",
            TOKENS,
            params={"on_conflict": "conversation_id,token_index"},
            json=rows,
            prefer="resolution=merge-duplicates,return=minimal",
            conversation_id=conversation_id,
        )

    async def get_tokens_after(self, conversation_id: str, index: int = -1) -> list[CheckpointToken]:
        """Tokens with token_index strictly greater than `index`, ascending."""
        rows = await self._request(
            "get_tokens_after",
            "GET",
            TOKENS,
            params={
                "conversation_id": f"eq.{conversation_id}",
                "token_index": f"gt.{index}",
                "select": "*",
                "order": "token_index.asc",
            },
            conversation_id=conversation_id,
        )
        tokens = [CheckpointToken.from_row(row) for row in rows]
        tokens.sort(key=lambda t: t.index)
        return tokens

    async def get_last_token_index(self, conversation_id: str) -> int:
        """Highest stored token index, or -1 when nothing is checkpointed."""
        rows = await self._request(
            "get_last_token_index",
            "GET",
            TOKENS,
            params={
                "conversation_id": f"eq.{conversation_id}",
                "select": "token_index",
                "order": "token_index.desc",
                "limit": "1",
            },
            conversation_id=conversation_id,
        )
        return int(rows[0]["token_index"]) if rows else -1

    # ------------------------------------------------------------------
    # Complete responses
    # ------------------------------------------------------------------

    async def get_last_complete_response(self, conversation_id: str) -> CompleteResponse | None:
        """Newest assembled response for the conversation, if any."""
        rows = await self._request(
            "get_last_complete_response",
            "GET",
            RESPONSES,
            params={
                "conversation_id": f"eq.{conversation_id}",
                "select": "*",
                "order": "created_at.desc",
                "limit": "1",
            },
            conversation_id=conversation_id,
        )
        return CompleteResponse.from_row(rows[0]) if rows else None

    async def list_complete_responses(self, conversation_id: str) -> list[CompleteResponse]:
        """Every assembled response for the conversation, oldest first."""
        rows = await self._request(
            "list_complete_responses",
            "GET",
            RESPONSES,
            params={
                "conversation_id": f"eq.{conversation_id}",
                "select": "*",
                "order": "created_at.asc",
            },
            conversation_id=conversation_id,
        )
        return [CompleteResponse.from_row(row) for row in rows]

    async def save_complete_response(self, response: CompleteResponse) -> None:
        """Store an assembled response."""
        await self._request(
            "save_complete_response",
            "POST",
            RESPONSES,
            json=response.to_row(),
            prefer="return=minimal",
            conversation_id=response.conversation_id,
        )


def _decode_rows(response: httpx.Response) -> list[dict[str, Any]]:
    if not response.content:
        return []
    try:
        data = response.json()
    except ValueError:
        raise StoreError(
            "Store returned a non-JSON body",
            status=response.status_code,
            server_message=response.text[:200],
        )
    if isinstance(data, dict):
        return [data]
    if isinstance(data, list):
        return [row for row in data if isinstance(row, dict)]
    return []


def _server_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:500] or response.reason_phrase
    if isinstance(data, dict):
        return str(data.get("message") or data.get("error") or data)[:500]
    return str(data)[:500]
