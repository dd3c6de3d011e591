"""
Custom Log Handlers for Chargur.

JSONL rotating file handler for structured log output, with optional
credential redaction and an optional Rich console mirror.
"""

import json
import logging
import re
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from rich.logging import RichHandler

# Bearer tokens and JWT-looking strings never belong in a log file
_SECRET_PATTERNS = [
    re.compile(r"(Bearer\s+)[A-Za-z0-9\-._~+/]+=*", re.IGNORECASE),
    re.compile(r"eyJ[A-Za-z0-9_\-]+\.[A-Za-z0-9_\-]+\.[A-Za-z0-9_\-]+"),
]


def redact(text: str) -> str:
    """Mask credentials embedded in a log line."""
    for pattern in _SECRET_PATTERNS:
        if pattern.groups:
            text = pattern.sub(r"\1[REDACTED]", text)
        else:
            text = pattern.sub("[REDACTED]", text)
    return text


class JSONLRotatingHandler(RotatingFileHandler):
    """
    Rotating file handler that writes one JSON object per line.

    Messages produced by a log entry's .to_json() are written as-is;
    plain-text messages are wrapped with timestamp, level and logger name.
    """

    def __init__(
        self,
        filename: str | Path,
        max_bytes: int = 10_000_000,  # 10MB
        backup_count: int = 5,
        redact_secrets: bool = True,
    ):
        filepath = Path(filename)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        self.redact_secrets = redact_secrets

        super().__init__(
            str(filepath),
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )

    def _to_record_dict(self, record: logging.LogRecord, msg: str) -> dict[str, Any]:
        try:
            data = json.loads(msg)
            if isinstance(data, dict):
                return data
        except json.JSONDecodeError:
            pass
        return {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "message": msg,
            "logger": record.name,
        }

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            if self.redact_secrets:
                msg = redact(msg)
            data = self._to_record_dict(record, msg)
            self.stream.write(json.dumps(data, default=str) + "\n")
            self.flush()
        except Exception:
            self.handleError(record)


class SimpleFormatter(logging.Formatter):
    """Return the message as-is; entries are already serialized."""

    def format(self, record: logging.LogRecord) -> str:
        return record.getMessage()


def create_jsonl_logger(
    name: str,
    filepath: Path,
    level: str = "INFO",
    max_bytes: int = 10_000_000,
    backup_count: int = 5,
    redact_secrets: bool = True,
    console_level: str | None = None,
) -> logging.Logger:
    """
    Create a logger configured for JSONL output.

    Args:
        name: Logger name
        filepath: Path to log file
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        max_bytes: Max file size before rotation
        backup_count: Number of backup files
        redact_secrets: Mask bearer tokens before writing
        console_level: If set, also mirror records to a Rich console handler

    Returns:
        Configured logger
    """
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Remove existing handlers to avoid duplicates
    logger.handlers.clear()

    handler = JSONLRotatingHandler(
        filepath,
        max_bytes=max_bytes,
        backup_count=backup_count,
        redact_secrets=redact_secrets,
    )
    handler.setFormatter(SimpleFormatter())
    logger.addHandler(handler)

    if console_level:
        console = RichHandler(show_path=False, markup=False)
        console.setLevel(getattr(logging, console_level.upper(), logging.WARNING))
        logger.addHandler(console)

    # Don't propagate to root logger
    logger.propagate = False

    return logger
