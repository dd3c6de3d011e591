"""
Log Entry Data Structures for Chargur.

Structured entries for agent stream attempts, checkpoint store calls,
and conversation session lifecycle events.
"""

import json
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any


@dataclass
class StreamLogEntry:
    """One network attempt against the agent endpoint."""

    # Identity
    timestamp: str  # ISO 8601
    request_id: str  # UUID shared by every attempt of one send_message
    session_id: str  # engine session for correlation

    conversation_id: str = ""
    stage_id: str = ""
    attempt: int = 1
    resumed_from_index: int = -1

    # Request
    user_message: str = ""

    # Stream accounting
    content_events: int = 0
    heartbeats: int = 0
    malformed_frames: int = 0
    unknown_events: int = 0
    completed: bool = False
    final_content_chars: int = 0

    # Metrics
    latency_ms: int = 0
    first_byte_ms: int = 0

    # Outcome: "success", "retry", "failed", "cancelled", "recovered"
    outcome: str = ""
    error: str | None = None
    error_type: str | None = None

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(asdict(self), default=str)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StreamLogEntry":
        """Create from dictionary."""
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class StoreLogEntry:
    """One HTTP call against the checkpoint store."""

    timestamp: str
    operation: str  # "append_tokens", "get_tokens_after", ...
    resource: str  # "chat_conversations", "chat_response_tokens", "chat_responses"
    conversation_id: str = ""
    status: int | None = None
    rows: int = 0
    latency_ms: int = 0
    error: str | None = None

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(asdict(self), default=str)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)


@dataclass
class SessionLogEntry:
    """Log entry for conversation session lifecycle events."""

    timestamp: str  # ISO 8601
    session_id: str
    event_type: str  # "start", "switch", "request", "recovered", "error", "end"

    project_id: str = ""
    stage_id: str = ""
    conversation_id: str = ""
    user_request: str = ""
    history_messages: int = 0

    # Populated on "error" event
    error: str | None = None
    error_type: str | None = None

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(asdict(self), default=str)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionLogEntry":
        """Create from dictionary."""
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


def now_iso() -> str:
    """Get current timestamp in ISO 8601 format."""
    return datetime.now().isoformat()
