"""Tests for the checkpoint store client against a fake PostgREST endpoint."""

import json

import httpx
import pytest

from chargur.config import EngineConfig, static_credentials
from chargur.exceptions import AuthenticationRequired, StoreAuthError, StoreError
from chargur.store.client import CheckpointStoreClient
from chargur.store.models import (
    CheckpointToken,
    CompleteResponse,
    ConversationStatus,
)


class FakePostgrest:
    """Minimal PostgREST emulation: eq/gt filters, order, limit, upsert."""

    def __init__(self):
        self.tables: dict[str, list[dict]] = {
            "chat_conversations": [],
            "chat_response_tokens": [],
            "chat_responses": [],
        }
        self.requests: list[httpx.Request] = []
        self.fail_with: httpx.Response | None = None
        self._clock = 0

    def _tick(self) -> str:
        self._clock += 1
        return f"2026-01-01T00:00:{self._clock:02d}+00:00"

    def _filter(self, rows, params):
        for key, value in params.multi_items():
            if key in ("select", "order", "limit", "on_conflict"):
                continue
            op, _, operand = value.partition(".")
            if op == "eq":
                rows = [r for r in rows if str(r.get(key)) == operand]
            elif op == "gt":
                rows = [r for r in rows if r.get(key) is not None and r[key] > int(operand)]
        if order := params.get("order"):
            column, _, direction = order.partition(".")
            rows = sorted(rows, key=lambda r: r.get(column), reverse=direction == "desc")
        if limit := params.get("limit"):
            rows = rows[: int(limit)]
        return rows

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            return self.fail_with

        table = request.url.path.rsplit("/", 1)[-1]
        rows = self.tables[table]
        params = request.url.params

        if request.method == "GET":
            return httpx.Response(200, json=self._filter(rows, params))

        if request.method == "PATCH":
            update = json.loads(request.content)
            for row in self._filter(rows, params):
                row.update(update)
            return httpx.Response(204)

        body = json.loads(request.content)
        new_rows = body if isinstance(body, list) else [body]
        conflict = params.get("on_conflict")
        created = []
        for row in new_rows:
            row = dict(row)
            row.setdefault("created_at", self._tick())
            if table == "chat_conversations":
                row.setdefault("id", f"conv-{len(rows) + 1}")
            if conflict:
                keys = conflict.split(",")
                existing = [r for r in rows if all(r.get(k) == row.get(k) for k in keys)]
                if existing:
                    existing[0].update(row)
                    continue
            rows.append(row)
            created.append(row)

        if "return=representation" in request.headers.get("Prefer", ""):
            return httpx.Response(201, json=created)
        return httpx.Response(201)


@pytest.fixture
def backend():
    return FakePostgrest()


@pytest.fixture
def client(backend):
    config = EngineConfig(
        endpoint_base_url="https://project.example.test/",
        credential_provider=static_credentials("user-1", "token-1"),
        api_key="anon-key",
    )
    http = httpx.AsyncClient(transport=httpx.MockTransport(backend.handler))
    return CheckpointStoreClient(config, client=http)


class TestConversations:
    """Tests for conversation operations."""

    @pytest.mark.asyncio
    async def test_create_and_find(self, client, backend):
        conversation_id = await client.create_conversation("ideation-discovery", "proj-1", {"source": "test"})

        found = await client.find_conversation("proj-1", "ideation-discovery", "user-1")
        assert found.id == conversation_id
        assert found.status == ConversationStatus.ACTIVE
        assert backend.tables["chat_conversations"][0]["user_id"] == "user-1"

    @pytest.mark.asyncio
    async def test_find_missing_returns_none(self, client):
        assert await client.find_conversation("proj-1", "feature-planning", "user-1") is None
        assert await client.get_conversation("nope") is None

    @pytest.mark.asyncio
    async def test_update_status(self, client):
        conversation_id = await client.create_conversation("ideation-discovery", "proj-1")
        await client.update_conversation_status(conversation_id, ConversationStatus.FAILED)
        conversation = await client.get_conversation(conversation_id)
        assert conversation.status == ConversationStatus.FAILED

    @pytest.mark.asyncio
    async def test_headers(self, client, backend):
        await client.get_conversation("conv-1")
        request = backend.requests[-1]
        assert request.headers["Authorization"] == "Bearer token-1"
        assert request.headers["apikey"] == "anon-key"
        assert request.url.path == "/rest/v1/chat_conversations"


class TestTokens:
    """Tests for checkpoint token operations."""

    @pytest.mark.asyncio
    async def test_append_is_idempotent(self, client):
        """Writing the same (conversation, index) twice keeps one entry."""
        tokens = [CheckpointToken("conv-1", 0, "Hel"), CheckpointToken("conv-1", 1, "Hello")]
        await client.append_tokens("conv-1", tokens)
        await client.append_tokens("conv-1", tokens)

        stored = await client.get_tokens_after("conv-1", -1)
        assert [(t.index, t.content) for t in stored] == [(0, "Hel"), (1, "Hello")]

    @pytest.mark.asyncio
    async def test_duplicate_index_in_one_batch(self, client, backend):
        await client.append_tokens(
            "conv-1",
            [CheckpointToken("conv-1", 0, "first"), CheckpointToken("conv-1", 0, "second")],
        )
        body = json.loads(backend.requests[-1].content)
        assert len(body) == 1
        assert body[0]["token_content"] == "second"

    @pytest.mark.asyncio
    async def test_append_empty_is_noop(self, client, backend):
        await client.append_tokens("conv-1", [])
        assert backend.requests == []

    @pytest.mark.asyncio
    async def test_upsert_request_shape(self, client, backend):
        await client.append_tokens("conv-1", [CheckpointToken("conv-1", 0, "x")])
        request = backend.requests[-1]
        assert request.url.params["on_conflict"] == "conversation_id,token_index"
        assert "resolution=merge-duplicates" in request.headers["Prefer"]

    @pytest.mark.asyncio
    async def test_tokens_after_index(self, client):
        await client.append_tokens("conv-1", [CheckpointToken("conv-1", i, f"t{i}") for i in range(5)])
        await client.append_tokens("conv-2", [CheckpointToken("conv-2", 9, "other")])

        after = await client.get_tokens_after("conv-1", 2)
        assert [t.index for t in after] == [3, 4]
        assert await client.get_last_token_index("conv-1") == 4
        assert await client.get_last_token_index("conv-3") == -1


class TestResponses:
    """Tests for complete response operations."""

    @pytest.mark.asyncio
    async def test_save_and_read_last(self, client):
        await client.save_complete_response(CompleteResponse("conv-1", "First", user_prompt="a"))
        await client.save_complete_response(
            CompleteResponse(
                "conv-1",
                "Second",
                suggestions=["More"],
                auto_fill_data={"appName": "Recipe Hub"},
                stage_complete=True,
                next_stage_id="feature-planning",
                user_prompt="b",
            )
        )

        last = await client.get_last_complete_response("conv-1")
        assert last.full_content == "Second"
        assert last.next_stage_id == "feature-planning"
        assert last.auto_fill_data == {"appName": "Recipe Hub"}
        assert last.created_at is not None

        history = await client.list_complete_responses("conv-1")
        assert [r.user_prompt for r in history] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_missing_response(self, client):
        assert await client.get_last_complete_response("conv-1") is None


class TestErrors:
    """Non-2xx responses surface as typed failures."""

    @pytest.mark.asyncio
    async def test_server_error_carries_status_and_message(self, client, backend):
        backend.fail_with = httpx.Response(500, json={"message": "relation does not exist"})
        with pytest.raises(StoreError) as exc_info:
            await client.get_tokens_after("conv-1")
        assert exc_info.value.status == 500
        assert exc_info.value.server_message == "relation does not exist"
        assert not isinstance(exc_info.value, AuthenticationRequired)

    @pytest.mark.asyncio
    async def test_auth_error(self, client, backend):
        backend.fail_with = httpx.Response(401, json={"message": "JWT expired"})
        with pytest.raises(StoreAuthError) as exc_info:
            await client.get_last_token_index("conv-1")
        assert isinstance(exc_info.value, AuthenticationRequired)
        assert exc_info.value.status == 401

    @pytest.mark.asyncio
    async def test_network_error(self, backend):
        def broken(request):
            raise httpx.ConnectError("connection refused", request=request)

        config = EngineConfig(
            endpoint_base_url="https://project.example.test",
            credential_provider=static_credentials("user-1", "token-1"),
        )
        store = CheckpointStoreClient(config, client=httpx.AsyncClient(transport=httpx.MockTransport(broken)))
        with pytest.raises(StoreError) as exc_info:
            await store.get_conversation("conv-1")
        assert exc_info.value.status is None

    @pytest.mark.asyncio
    async def test_missing_credentials(self, backend):
        config = EngineConfig(endpoint_base_url="https://project.example.test")
        store = CheckpointStoreClient(config, client=httpx.AsyncClient(transport=httpx.MockTransport(backend.handler)))
        with pytest.raises(AuthenticationRequired):
            await store.get_conversation("conv-1")
        assert backend.requests == []

    @pytest.mark.asyncio
    async def test_store_calls_are_logged(self, client, backend, isolated_logs):
        backend.fail_with = httpx.Response(503, text="unavailable")
        with pytest.raises(StoreError):
            await client.get_conversation("conv-1")

        lines = isolated_logs.store_log_path.read_text().splitlines()
        entry = json.loads(lines[-1])
        assert entry["operation"] == "get_conversation"
        assert entry["status"] == 503
        assert entry["error"] == "unavailable"
