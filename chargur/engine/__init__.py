"""Engine components - orchestrator, retry, recovery, sessions, events."""

from chargur.engine.autofill import AutoFillUpdate, normalize_auto_fill
from chargur.engine.checkpoints import CheckpointWriter
from chargur.engine.engine import SIGN_IN_MESSAGE, StreamingConversationEngine
from chargur.engine.events import EngineEventType, EventBus
from chargur.engine.recovery import RecoveryController, RecoveryResult, RecoveryStatus
from chargur.engine.retry import RetryController, RetryDecision, RetryState, is_auth_failure
from chargur.engine.session import ConversationSessionManager, SessionKey
from chargur.engine.state import EngineSnapshot, EngineState

__all__ = [
    "StreamingConversationEngine",
    "SIGN_IN_MESSAGE",
    "EngineSnapshot",
    "EngineState",
    "EngineEventType",
    "EventBus",
    "AutoFillUpdate",
    "normalize_auto_fill",
    "CheckpointWriter",
    "RecoveryController",
    "RecoveryResult",
    "RecoveryStatus",
    "RetryController",
    "RetryDecision",
    "RetryState",
    "is_auth_failure",
    "ConversationSessionManager",
    "SessionKey",
]
