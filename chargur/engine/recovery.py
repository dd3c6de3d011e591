"""
Recovery Controller - rebuild a response from the checkpoint store.

Runs before every retry. If the remote model already finished and the store
holds the complete response, that response replaces the network call and
the model is not queried again. Otherwise the partial content and the last
checkpointed index are reported so the retry can ask the service to resume.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from chargur.exceptions import ChargurError
from chargur.store.client import CheckpointStoreClient
from chargur.store.models import CompleteResponse, ConversationStatus, latest_content

logger = logging.getLogger(__name__)


@dataclass
class RecoveryResult:
    """Outcome of a recovery attempt."""

    success: bool
    content: str = ""
    suggestions: list[str] = field(default_factory=list)
    auto_fill_data: dict[str, Any] = field(default_factory=dict)
    stage_complete: bool = False
    next_stage_id: str | None = None
    is_complete: bool = False
    last_token_index: int = -1
    error: str | None = None


@dataclass
class RecoveryStatus:
    """Diagnostic view of a conversation's checkpoints."""

    conversation_exists: bool
    conversation_status: str | None = None
    token_count: int = 0
    last_token_index: int = -1
    is_complete: bool = False
    issues: list[str] = field(default_factory=list)
    can_recover: bool = False

    @property
    def is_valid(self) -> bool:
        return self.conversation_exists and not self.issues


class RecoveryController:
    """Reconstructs the last known-good state of a conversation."""

    def __init__(self, store: CheckpointStoreClient):
        self.store = store

    @staticmethod
    def _belongs_to_exchange(
        response: CompleteResponse,
        user_prompt: str | None,
        since: datetime | None,
    ) -> bool:
        # A repeated prompt ("yes", "continue") matches earlier answers too,
        # so the time bound applies whenever both timestamps are known
        if since is not None and response.created_at is not None and response.created_at < since:
            return False
        if user_prompt is not None and response.user_prompt is not None:
            return response.user_prompt == user_prompt
        return True

    async def recover(
        self,
        conversation_id: str,
        user_prompt: str | None = None,
        after_index: int = -1,
        since: datetime | None = None,
    ) -> RecoveryResult:
        """
        Try to recover the response for the exchange in progress.

        Args:
            conversation_id: Conversation to inspect
            user_prompt: Prompt of the exchange being retried; a stored response
                that records a different prompt answers an earlier exchange
            after_index: Last token index written before this exchange began
            since: Responses stored before this moment answer an earlier exchange

        Returns:
            RecoveryResult with success=True only for a complete response
        """
        try:
            response = await self.store.get_last_complete_response(conversation_id)
            if response is not None and response.is_complete:
                if self._belongs_to_exchange(response, user_prompt, since):
                    logger.info(f"Recovered complete response for conversation {conversation_id}")
                    return RecoveryResult(
                        success=True,
                        content=response.full_content,
                        suggestions=list(response.suggestions),
                        auto_fill_data=dict(response.auto_fill_data),
                        stage_complete=response.stage_complete,
                        next_stage_id=response.next_stage_id,
                        is_complete=True,
                    )
                logger.debug("Stored complete response belongs to an earlier exchange")

            tokens = await self.store.get_tokens_after(conversation_id, after_index)
        except ChargurError as e:
            logger.warning(f"Recovery lookup failed for {conversation_id}: {e}")
            return RecoveryResult(success=False, last_token_index=after_index, error=str(e))

        return RecoveryResult(
            success=False,
            content=latest_content(tokens),
            last_token_index=tokens[-1].index if tokens else after_index,
            error="No complete response stored",
        )

    async def status(self, conversation_id: str) -> RecoveryStatus:
        """
        Inspect a conversation's checkpoints for gaps and recoverability.

        Raises:
            StoreError: If the store cannot be reached
        """
        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None:
            return RecoveryStatus(conversation_exists=False, issues=["Conversation not found"])

        tokens = await self.store.get_tokens_after(conversation_id, -1)
        response = await self.store.get_last_complete_response(conversation_id)

        issues: list[str] = []
        if not tokens:
            issues.append("No tokens found")
        indexes = [t.index for t in tokens]
        for prev, cur in zip(indexes, indexes[1:]):
            if cur != prev + 1:
                issues.append(f"Token sequence gap between {prev} and {cur}")

        can_recover = conversation.status == ConversationStatus.ACTIVE or (
            conversation.status == ConversationStatus.FAILED and bool(tokens)
        )

        return RecoveryStatus(
            conversation_exists=True,
            conversation_status=conversation.status.value,
            token_count=len(tokens),
            last_token_index=indexes[-1] if indexes else -1,
            is_complete=bool(response and response.is_complete),
            issues=issues,
            can_recover=can_recover,
        )
