"""
Chargur - streaming conversation engine for the guided app-design wizard.

Turns a chat message into a durable, resumable, incrementally rendered
assistant response: framed stream parsing, checkpointing to the
conversation store, recovery and bounded retries.
"""

__version__ = "0.1.0"

from chargur.exceptions import (
    ChargurError,
    ConfigError,
    AuthenticationRequired,
    TransportFailure,
    RemoteError,
    StoreError,
)

__all__ = [
    "__version__",
    "ChargurError",
    "ConfigError",
    "AuthenticationRequired",
    "TransportFailure",
    "RemoteError",
    "StoreError",
]
