"""
Engine State - the single mutable state of a conversation engine.

EngineState is owned by the engine and mutated only from the task that
currently holds the newest generation. Consumers never see it directly;
they receive frozen EngineSnapshot copies.
"""

from dataclasses import dataclass, field
from typing import Any

from chargur.store.models import ChatMessage


@dataclass(frozen=True)
class EngineSnapshot:
    """Read-only view of the engine, re-emitted on every transition."""

    is_loading: bool = False
    is_streaming: bool = False
    content: str = ""
    suggestions: tuple[str, ...] = ()
    auto_fill_data: dict[str, Any] = field(default_factory=dict)
    is_complete: bool = False
    error: str | None = None
    conversation_id: str | None = None
    history_messages: tuple[ChatMessage, ...] = ()


@dataclass
class EngineState:
    """
    Mutable state behind the snapshot.

    Transient fields (content through error) describe the exchange in
    progress and are cleared by reset_transient(). conversation_id and
    history survive until the stage changes.
    """

    is_loading: bool = False
    content: str = ""
    suggestions: list[str] = field(default_factory=list)
    auto_fill_data: dict[str, Any] = field(default_factory=dict)
    is_complete: bool = False
    error: str | None = None
    conversation_id: str | None = None
    history: list[ChatMessage] = field(default_factory=list)

    @property
    def is_streaming(self) -> bool:
        return self.is_loading and bool(self.content)

    def reset_transient(self) -> None:
        """Clear everything that belongs to a single exchange."""
        self.is_loading = False
        self.content = ""
        self.suggestions = []
        self.auto_fill_data = {}
        self.is_complete = False
        self.error = None

    def append_message(self, message: ChatMessage) -> None:
        """History only ever grows by appending."""
        self.history.append(message)

    def history_items(self) -> list[dict[str, str]]:
        """History in the {role, content} shape the agent endpoint expects."""
        return [message.to_history_item() for message in self.history]

    def snapshot(self) -> EngineSnapshot:
        return EngineSnapshot(
            is_loading=self.is_loading,
            is_streaming=self.is_streaming,
            content=self.content,
            suggestions=tuple(self.suggestions),
            auto_fill_data=dict(self.auto_fill_data),
            is_complete=self.is_complete,
            error=self.error,
            conversation_id=self.conversation_id,
            history_messages=tuple(self.history),
        )
