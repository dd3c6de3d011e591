"""
Chargur Logging System.

Provides structured JSONL logging for:
- Agent stream attempts (attempt number, event counts, timing, outcome)
- Checkpoint store calls (operation, status, latency)
- Conversation session lifecycle events

Usage:
    from chargur.logging import stream_logger, StreamLogEntry, now_iso

    entry = StreamLogEntry(
        timestamp=now_iso(),
        request_id=str(uuid.uuid4()),
        session_id=get_session_id(),
        ...
    )
    stream_logger.info(entry.to_json())

Logs are written to ~/.chargur/logs/:
    - stream.jsonl: agent stream attempts
    - store.jsonl: checkpoint store calls
    - session.jsonl: session lifecycle events
"""

import threading
from typing import Any

from .config import LOG_NAMES, LogConfig, get_config, set_config
from .entries import SessionLogEntry, StoreLogEntry, StreamLogEntry, now_iso
from .handlers import create_jsonl_logger, redact

# Thread-local storage for session context
_context = threading.local()


def set_session_id(session_id: str) -> None:
    """Set the current session ID for log correlation."""
    _context.session_id = session_id


def get_session_id() -> str:
    """Get the current session ID, or 'unknown' if not set."""
    return getattr(_context, "session_id", "unknown")


_loggers: dict[str, Any] = {}
_init_lock = threading.Lock()


def _ensure_loggers() -> None:
    """Initialize loggers on first use."""
    if _loggers:
        return

    with _init_lock:
        if _loggers:
            return

        config = get_config()
        console_level = config.console_level if config.console_enabled else None

        for name in LOG_NAMES:
            _loggers[name] = create_jsonl_logger(
                f"chargur.logs.{name}",
                config.log_path(name),
                level=config.level_for(name),
                max_bytes=config.max_file_size_bytes,
                backup_count=config.backup_count,
                redact_secrets=config.redact_enabled,
                console_level=console_level,
            )


def reset_loggers() -> None:
    """Drop initialized loggers so the next use picks up a new LogConfig."""
    with _init_lock:
        for logger in _loggers.values():
            for handler in list(logger.handlers):
                handler.close()
                logger.removeHandler(handler)
        _loggers.clear()


class _LazyLogger:
    """Lazy wrapper that initializes the actual logger on first use."""

    def __init__(self, name: str):
        self._name = name

    def _get_logger(self) -> Any:
        _ensure_loggers()
        return _loggers[self._name]

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._get_logger().debug(msg, *args, **kwargs)

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._get_logger().info(msg, *args, **kwargs)

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._get_logger().warning(msg, *args, **kwargs)

    def error(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._get_logger().error(msg, *args, **kwargs)


# Public logger instances
stream_logger = _LazyLogger("stream")
store_logger = _LazyLogger("store")
session_logger = _LazyLogger("session")


__all__ = [
    # Loggers
    "stream_logger",
    "store_logger",
    "session_logger",
    # Log entries
    "StreamLogEntry",
    "StoreLogEntry",
    "SessionLogEntry",
    # Utilities
    "now_iso",
    "redact",
    "get_session_id",
    "set_session_id",
    "reset_loggers",
    # Config
    "LogConfig",
    "get_config",
    "set_config",
]
