"""
Where the engine's JSONL logs go and how much they record.

Three logs are written, one line per record:
- stream: one record per agent request attempt, so a retried message shows
  up as several lines sharing a request_id
- store: one record per checkpoint store call; token batches are flushed
  many times per response, which makes this the busiest file
- session: start, switch and dispose of conversation sessions

Every log has its own level. CHARGUR_LOG_LEVEL sets all three at once and
CHARGUR_<NAME>_LOG_LEVEL (e.g. CHARGUR_STORE_LOG_LEVEL=WARNING) overrides one.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

LOG_NAMES = ("stream", "store", "session")


@dataclass
class LogConfig:
    """Paths, rotation and levels for the stream, store and session logs."""

    log_dir: Path = field(default_factory=lambda: Path.home() / ".chargur" / "logs")

    # Rotation applies per file; store.jsonl reaches the limit first
    max_file_size_bytes: int = 10 * 1024 * 1024
    backup_count: int = 5

    stream_level: str = "INFO"
    store_level: str = "INFO"
    session_level: str = "INFO"

    # Requests carry the user's bearer token
    redact_enabled: bool = True

    # Off unless asked for; the chat UI draws on the same terminal
    console_enabled: bool = False
    console_level: str = "WARNING"

    @classmethod
    def from_env(cls) -> "LogConfig":
        """Build a config from CHARGUR_LOG_* variables, keeping defaults for the rest."""
        config = cls()

        if level := os.environ.get("CHARGUR_LOG_LEVEL"):
            for name in LOG_NAMES:
                config.set_level(name, level)
        for name in LOG_NAMES:
            if level := os.environ.get(f"CHARGUR_{name.upper()}_LOG_LEVEL"):
                config.set_level(name, level)

        if log_dir := os.environ.get("CHARGUR_LOG_DIR"):
            config.log_dir = Path(log_dir)

        # A malformed size keeps the default rather than disabling rotation
        if max_size := os.environ.get("CHARGUR_LOG_MAX_SIZE_MB"):
            try:
                config.max_file_size_bytes = int(max_size) * 1024 * 1024
            except ValueError:
                pass

        if os.environ.get("CHARGUR_LOG_CONSOLE", "").lower() in ("1", "true", "yes"):
            config.console_enabled = True

        return config

    def level_for(self, name: str) -> str:
        """Level of the named log ("stream", "store" or "session")."""
        if name not in LOG_NAMES:
            raise ValueError(f"Unknown log: {name}")
        return getattr(self, f"{name}_level")

    def set_level(self, name: str, level: str) -> None:
        if name not in LOG_NAMES:
            raise ValueError(f"Unknown log: {name}")
        setattr(self, f"{name}_level", level.upper())

    def log_path(self, name: str) -> Path:
        """File the named log is written to."""
        if name not in LOG_NAMES:
            raise ValueError(f"Unknown log: {name}")
        return self.log_dir / f"{name}.jsonl"

    def ensure_log_dir(self) -> None:
        self.log_dir.mkdir(parents=True, exist_ok=True)

    @property
    def stream_log_path(self) -> Path:
        return self.log_path("stream")

    @property
    def store_log_path(self) -> Path:
        return self.log_path("store")

    @property
    def session_log_path(self) -> Path:
        return self.log_path("session")


_config: LogConfig | None = None


def get_config() -> LogConfig:
    """Process-wide config, read from the environment on first use."""
    global _config
    if _config is None:
        _config = LogConfig.from_env()
        _config.ensure_log_dir()
    return _config


def set_config(config: LogConfig) -> None:
    """Replace the process-wide config; call reset_loggers() for it to take effect."""
    global _config
    _config = config
    _config.ensure_log_dir()
