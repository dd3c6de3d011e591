"""
Chargur Checkpoint Store

HTTP client and models for durable conversations, checkpoint tokens and
complete responses.
"""

from chargur.store.client import CheckpointStoreClient
from chargur.store.models import (
    ChatMessage,
    CheckpointToken,
    CompleteResponse,
    ConversationSession,
    ConversationStatus,
    MessageRole,
    TokenKind,
)

__all__ = [
    "CheckpointStoreClient",
    "ChatMessage",
    "CheckpointToken",
    "CompleteResponse",
    "ConversationSession",
    "ConversationStatus",
    "MessageRole",
    "TokenKind",
]
