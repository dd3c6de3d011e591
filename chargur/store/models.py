"""
Checkpoint Store Models

Dataclasses that map to the store's three resources:
- chat_conversations: one row per (project, stage, user) conversation
- chat_response_tokens: append-only checkpoint log, unique on
  (conversation_id, token_index)
- chat_responses: the assembled response of each finished exchange

Rows travel as JSON objects with snake_case keys.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

# ============================================================================
# ENUMS - values match the store's CHECK constraints
# ============================================================================


class ConversationStatus(str, Enum):
    """Conversation lifecycle status."""

    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class MessageRole(str, Enum):
    """Role of a message in conversation."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class TokenKind(str, Enum):
    """Kind of checkpointed fragment."""

    CONTENT = "content"
    SUGGESTION = "suggestion"
    AUTOFILL = "autofill"
    COMPLETE = "complete"


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================


def generate_id() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Timezone-aware current time, comparable with store timestamps."""
    return datetime.now(timezone.utc)


def parse_datetime(value: str | datetime | None) -> datetime | None:
    """Parse an ISO timestamp from the store (accepts a trailing 'Z')."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, TypeError, AttributeError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def latest_content(tokens: list[CheckpointToken]) -> str:
    """Text of the newest content token; content tokens are cumulative."""
    content_tokens = [t for t in tokens if t.kind == TokenKind.CONTENT]
    return content_tokens[-1].content if content_tokens else ""


def _as_list(value: Any) -> list:
    return list(value) if isinstance(value, list) else []


def _as_dict(value: Any) -> dict:
    return dict(value) if isinstance(value, dict) else {}


# ============================================================================
# ENTITIES
# ============================================================================


@dataclass
class ConversationSession:
    """
    Identity of one conversation.

    Maps to: chat_conversations
    Never deleted by the engine; retention belongs to the store.
    """

    id: str
    project_id: str
    stage_id: str
    user_id: str
    status: ConversationStatus = ConversationStatus.ACTIVE
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> ConversationSession:
        """Create from a store row."""
        status = row.get("status") or ConversationStatus.ACTIVE.value
        return cls(
            id=row["id"],
            project_id=row.get("project_id") or "",
            stage_id=row.get("stage_id") or "",
            user_id=row.get("user_id") or "",
            status=ConversationStatus(status),
            metadata=_as_dict(row.get("metadata")),
            created_at=parse_datetime(row.get("created_at")),
        )


@dataclass(frozen=True)
class ChatMessage:
    """
    A message in the conversation history.

    Immutable: history only ever grows by appending new messages.
    """

    role: MessageRole
    content: str
    id: str = field(default_factory=generate_id)
    timestamp: datetime = field(default_factory=utcnow)
    suggestions: tuple[str, ...] = ()
    auto_fill_data: dict[str, Any] = field(default_factory=dict)
    is_complete: bool = True

    def to_history_item(self) -> dict[str, str]:
        """Convert to the {role, content} shape sent as conversationHistory."""
        return {"role": self.role.value, "content": self.content}


@dataclass(frozen=True)
class CheckpointToken:
    """
    One checkpointed fragment of a streamed response.

    Maps to: chat_response_tokens
    Write-once per (conversation_id, index).
    """

    conversation_id: str
    index: int
    content: str
    kind: TokenKind = TokenKind.CONTENT

    def to_row(self) -> dict[str, Any]:
        """Convert to a store row."""
        return {
            "conversation_id": self.conversation_id,
            "token_index": self.index,
            "token_content": self.content,
            "token_type": self.kind.value,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> CheckpointToken:
        """Create from a store row."""
        return cls(
            conversation_id=row.get("conversation_id", ""),
            index=int(row["token_index"]),
            content=row.get("token_content") or "",
            kind=TokenKind(row.get("token_type") or TokenKind.CONTENT.value),
        )


@dataclass
class CompleteResponse:
    """
    The assembled response of one finished exchange.

    Maps to: chat_responses
    """

    conversation_id: str
    full_content: str = ""
    suggestions: list[str] = field(default_factory=list)
    auto_fill_data: dict[str, Any] = field(default_factory=dict)
    stage_complete: bool = False
    next_stage_id: str | None = None
    context: dict[str, Any] = field(default_factory=dict)
    is_complete: bool = True
    user_prompt: str | None = None
    created_at: datetime | None = None

    def to_row(self) -> dict[str, Any]:
        """Convert to a store row."""
        context = dict(self.context)
        if self.next_stage_id:
            context["next_stage_id"] = self.next_stage_id
        row: dict[str, Any] = {
            "conversation_id": self.conversation_id,
            "full_content": self.full_content,
            "suggestions": self.suggestions,
            "auto_fill_data": self.auto_fill_data,
            "stage_complete": self.stage_complete,
            "context": context,
            "is_complete": self.is_complete,
        }
        if self.user_prompt is not None:
            row["user_prompt"] = self.user_prompt
        return row

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> CompleteResponse:
        """Create from a store row."""
        context = _as_dict(row.get("context"))
        return cls(
            conversation_id=row.get("conversation_id", ""),
            full_content=row.get("full_content") or "",
            suggestions=_as_list(row.get("suggestions")),
            auto_fill_data=_as_dict(row.get("auto_fill_data")),
            stage_complete=bool(row.get("stage_complete")),
            next_stage_id=context.get("next_stage_id") or None,
            context=context,
            is_complete=bool(row.get("is_complete")),
            user_prompt=row.get("user_prompt"),
            created_at=parse_datetime(row.get("created_at")),
        )

    def to_message(self) -> ChatMessage:
        """The assistant message this response represents in history."""
        return ChatMessage(
            role=MessageRole.ASSISTANT,
            content=self.full_content,
            timestamp=self.created_at or utcnow(),
            suggestions=tuple(self.suggestions),
            auto_fill_data=dict(self.auto_fill_data),
            is_complete=self.is_complete,
        )
