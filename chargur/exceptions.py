"""
Chargur - Exception Hierarchy

All engine-specific exceptions inherit from ChargurError.
Authentication failures are fatal; everything else an attempt raises is
classified by the retry controller.
"""

from typing import Any

GENERIC_FAILURE_MESSAGE = "Failed to get response from AI assistant"


class ChargurError(Exception):
    """Base exception for all Chargur errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigError(ChargurError):
    """Raised when configuration is invalid or missing."""

    pass


# Attempt-level errors
class AuthenticationRequired(ChargurError):
    """Raised when the caller has no valid credentials. Never retried."""

    pass


class TransportFailure(ChargurError):
    """Raised when the agent stream cannot be opened or breaks mid-flight."""

    def __init__(self, message: str, status: int | None = None, server_message: str = ""):
        super().__init__(message, {"status": status, "server_message": server_message[:200]})
        self.status = status
        self.server_message = server_message


class MalformedFrame(ChargurError):
    """A single wire frame could not be decoded. Dropped by the parser."""

    def __init__(self, message: str, line: str):
        super().__init__(message, {"line": line[:200]})
        self.line = line


class RemoteError(ChargurError):
    """Application error carried by an `error` event on the stream."""

    pass


class CancelledByNewRequest(ChargurError):
    """A newer send_message superseded this one. Suppressed, never surfaced."""

    pass


# Checkpoint store errors
class StoreError(ChargurError):
    """Raised when the checkpoint store returns a non-2xx response."""

    def __init__(self, message: str, status: int | None = None, server_message: str = ""):
        super().__init__(message, {"status": status, "server_message": server_message[:200]})
        self.status = status
        self.server_message = server_message


class StoreAuthError(StoreError, AuthenticationRequired):
    """Checkpoint store rejected the bearer credential (401/403)."""

    pass


# State Errors
class StateTransitionError(ChargurError):
    """Raised when an invalid state transition is attempted.

    Includes the current state and the attempted target state for debugging.
    """

    def __init__(self, message: str, from_state: str, to_state: str):
        super().__init__(message, {"from_state": from_state, "to_state": to_state})
        self.from_state = from_state
        self.to_state = to_state
