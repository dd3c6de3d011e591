"""
Checkpoint writer for one exchange.

Content events are cumulative, so each one is stored as a full snapshot
of the response so far. Tokens are numbered after the highest index the
conversation already holds and written in batches. A failed write turns
checkpointing off for the rest of the exchange; it never fails the stream.
"""

import logging

from chargur.exceptions import StoreError
from chargur.store.client import CheckpointStoreClient
from chargur.store.models import CheckpointToken, TokenKind

logger = logging.getLogger(__name__)


class CheckpointWriter:
    """Buffers checkpoint tokens and flushes them to the store."""

    def __init__(
        self,
        store: CheckpointStoreClient,
        conversation_id: str,
        last_index: int,
        batch_size: int = 8,
    ):
        self.store = store
        self.conversation_id = conversation_id
        self.batch_size = batch_size
        self.base_index: int | None = last_index  # highest index before this exchange
        self.last_index = last_index  # highest index handed out
        self.enabled = True
        self.written = 0
        self._pending: list[CheckpointToken] = []

    @classmethod
    async def open(
        cls,
        store: CheckpointStoreClient,
        conversation_id: str,
        batch_size: int = 8,
    ) -> "CheckpointWriter":
        """
        Start a writer after the conversation's current last index.

        If that index cannot be read, the writer starts disabled: guessing
        an index could overwrite checkpoints of an earlier exchange.
        """
        try:
            last_index = await store.get_last_token_index(conversation_id)
        except StoreError as e:
            logger.warning(f"Checkpointing disabled for {conversation_id}: {e}")
            return cls.disabled(store, conversation_id)
        return cls(store, conversation_id, last_index, batch_size)

    @classmethod
    def disabled(cls, store: CheckpointStoreClient, conversation_id: str) -> "CheckpointWriter":
        writer = cls(store, conversation_id, -1)
        writer.enabled = False
        writer.base_index = None
        return writer

    @property
    def pending(self) -> int:
        return len(self._pending)

    def add(self, content: str, kind: TokenKind = TokenKind.CONTENT) -> bool:
        """
        Queue a token.

        Returns:
            True when a full batch is waiting to be flushed
        """
        if not self.enabled:
            return False
        self.last_index += 1
        self._pending.append(CheckpointToken(self.conversation_id, self.last_index, content, kind))
        return len(self._pending) >= self.batch_size

    def skip_to(self, index: int) -> None:
        """Continue numbering after index (used when the service resumes)."""
        if index > self.last_index:
            self.last_index = index

    async def flush(self) -> None:
        if not self.enabled or not self._pending:
            return
        batch, self._pending = self._pending, []
        try:
            await self.store.append_tokens(self.conversation_id, batch)
        except StoreError as e:
            logger.warning(f"Checkpoint write failed, disabling for this exchange: {e}")
            self.enabled = False
            return
        self.written += len(batch)
