"""
Conversation Session Manager.

Owns the identity of the conversation for one (project, stage, user)
triple. Activating a key looks up an existing conversation and replays
its history; the conversation itself is only created when the first
message is sent.
"""

import logging
from dataclasses import dataclass
from typing import Any

from chargur.store.client import CheckpointStoreClient
from chargur.store.models import ChatMessage, MessageRole

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionKey:
    """Identifies the one conversation a stage owns."""

    project_id: str
    stage_id: str
    user_id: str


class ConversationSessionManager:
    """Lazily creates and remembers the conversation id for the active key."""

    def __init__(self, store: CheckpointStoreClient):
        self.store = store
        self._key: SessionKey | None = None
        self._conversation_id: str | None = None

    @property
    def key(self) -> SessionKey | None:
        return self._key

    @property
    def conversation_id(self) -> str | None:
        return self._conversation_id

    async def activate(self, key: SessionKey) -> list[ChatMessage]:
        """
        Make key the active session and return its stored history.

        If no conversation exists yet for the key, the id stays unset and
        the history is empty.

        Raises:
            StoreError: If the lookup fails; the session is left inactive
        """
        # Key and id stay unset until the store answers
        self.reset()

        conversation = await self.store.find_conversation(key.project_id, key.stage_id, key.user_id)
        if conversation is None:
            self._key = key
            logger.debug(f"No conversation yet for stage {key.stage_id}")
            return []

        responses = await self.store.list_complete_responses(conversation.id)
        self._key = key
        self._conversation_id = conversation.id

        history: list[ChatMessage] = []
        for response in responses:
            if response.user_prompt:
                history.append(
                    ChatMessage(
                        role=MessageRole.USER,
                        content=response.user_prompt,
                        timestamp=response.created_at or response.to_message().timestamp,
                    )
                )
            history.append(response.to_message())

        logger.info(
            f"Resumed conversation {conversation.id} for stage {key.stage_id} "
            f"({len(history)} messages)"
        )
        return history

    async def ensure_session(self, metadata: dict[str, Any] | None = None) -> str:
        """
        Return the conversation id, creating the conversation on first use.

        Raises:
            RuntimeError: If no key has been activated
            StoreError: If the conversation cannot be created
        """
        if self._conversation_id is not None:
            return self._conversation_id
        if self._key is None:
            raise RuntimeError("No session key activated")

        self._conversation_id = await self.store.create_conversation(
            self._key.stage_id,
            self._key.project_id,
            metadata or {},
            self._key.user_id,
        )
        return self._conversation_id

    def reset(self) -> None:
        """Forget the active key and conversation."""
        self._key = None
        self._conversation_id = None
