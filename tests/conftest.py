"""Shared fixtures: log redirection and in-memory collaborators for the engine."""

import asyncio
import json
from datetime import datetime, timezone

import pytest

from chargur.config import EngineConfig, static_credentials
from chargur.exceptions import StoreError
from chargur.logging import LogConfig, reset_loggers, set_config
from chargur.store.models import (
    CheckpointToken,
    CompleteResponse,
    ConversationSession,
    ConversationStatus,
    TokenKind,
)


@pytest.fixture(autouse=True)
def isolated_logs(tmp_path):
    """Write JSONL logs into a per-test directory."""
    reset_loggers()
    config = LogConfig(log_dir=tmp_path / "logs")
    set_config(config)
    yield config
    reset_loggers()


def frame(**payload) -> bytes:
    """Encode one wire frame."""
    return f"data: {json.dumps(payload)}\n\n".encode()


async def wait_for(predicate, timeout: float = 2.0) -> None:
    """Yield to the loop until predicate() is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not reached in time")
        await asyncio.sleep(0.001)


class FakeTransport:
    """
    Scripted agent transport.

    Each call to stream() consumes one script. A script is an exception
    (raised before any byte) or a list whose items are yielded in order:
    bytes are yielded, exceptions are raised, asyncio.Events are awaited and
    callables are invoked.
    """

    def __init__(self, *scripts):
        self.scripts = list(scripts)
        self.requests = []
        self.closed = False

    @property
    def request_count(self) -> int:
        return len(self.requests)

    async def stream(self, request, credentials):
        self.requests.append(request)
        script = self.scripts.pop(0) if self.scripts else []
        if isinstance(script, BaseException):
            raise script
        for item in script:
            if isinstance(item, BaseException):
                raise item
            if isinstance(item, asyncio.Event):
                await item.wait()
            elif callable(item):
                item()
            else:
                yield item

    async def close(self) -> None:
        self.closed = True


class FakeStore:
    """In-memory checkpoint store with the client's async interface."""

    def __init__(self):
        self.conversations: dict[str, ConversationSession] = {}
        self.tokens: dict[tuple[str, int], CheckpointToken] = {}
        self.responses: list[CompleteResponse] = []
        self.status_updates: list[tuple[str, ConversationStatus]] = []
        self.fail_operations: set[str] = set()
        self.closed = False
        self._next_id = 1

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.fail_operations:
            raise StoreError(f"{operation} failed: 500 - boom", status=500, server_message="boom")

    def add_conversation(self, project_id, stage_id, user_id, status=ConversationStatus.ACTIVE) -> str:
        conversation_id = f"conv-{self._next_id}"
        self._next_id += 1
        self.conversations[conversation_id] = ConversationSession(
            id=conversation_id,
            project_id=project_id,
            stage_id=stage_id,
            user_id=user_id,
            status=status,
            created_at=datetime.now(timezone.utc),
        )
        return conversation_id

    def add_response(self, conversation_id: str, content: str, **kwargs) -> CompleteResponse:
        response = CompleteResponse(
            conversation_id=conversation_id,
            full_content=content,
            created_at=kwargs.pop("created_at", datetime.now(timezone.utc)),
            **kwargs,
        )
        self.responses.append(response)
        return response

    async def create_conversation(self, stage_id, project_id, metadata=None, user_id=None) -> str:
        self._maybe_fail("create_conversation")
        return self.add_conversation(project_id, stage_id, user_id or "")

    async def get_conversation(self, conversation_id):
        self._maybe_fail("get_conversation")
        return self.conversations.get(conversation_id)

    async def find_conversation(self, project_id, stage_id, user_id):
        self._maybe_fail("find_conversation")
        for conversation in reversed(list(self.conversations.values())):
            if (conversation.project_id, conversation.stage_id, conversation.user_id) == (
                project_id,
                stage_id,
                user_id,
            ):
                return conversation
        return None

    async def update_conversation_status(self, conversation_id, status):
        self._maybe_fail("update_conversation_status")
        self.status_updates.append((conversation_id, status))
        self.conversations[conversation_id].status = status

    async def append_tokens(self, conversation_id, tokens):
        self._maybe_fail("append_tokens")
        for token in tokens:
            self.tokens[(conversation_id, token.index)] = token

    async def get_tokens_after(self, conversation_id, index=-1):
        self._maybe_fail("get_tokens_after")
        return sorted(
            (t for (cid, i), t in self.tokens.items() if cid == conversation_id and i > index),
            key=lambda t: t.index,
        )

    async def get_last_token_index(self, conversation_id):
        self._maybe_fail("get_last_token_index")
        indexes = [i for (cid, i) in self.tokens if cid == conversation_id]
        return max(indexes) if indexes else -1

    async def get_last_complete_response(self, conversation_id):
        self._maybe_fail("get_last_complete_response")
        matching = [r for r in self.responses if r.conversation_id == conversation_id]
        return matching[-1] if matching else None

    async def list_complete_responses(self, conversation_id):
        self._maybe_fail("list_complete_responses")
        return [r for r in self.responses if r.conversation_id == conversation_id]

    async def save_complete_response(self, response):
        self._maybe_fail("save_complete_response")
        self.responses.append(response)

    def content_tokens(self, conversation_id):
        return [
            t
            for (cid, _), t in sorted(self.tokens.items())
            if cid == conversation_id and t.kind == TokenKind.CONTENT
        ]

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def engine_config():
    return EngineConfig(
        endpoint_base_url="https://project.example.test",
        credential_provider=static_credentials("user-1", "token-1"),
        api_key="anon-key",
    )
