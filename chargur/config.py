"""
Chargur - Configuration Management

Builds the EngineConfig passed explicitly into the engine, its transport and
its store client. Values come from keyword arguments, or from environment
variables and ~/.config/chargur/config.json via load_config().
"""

import inspect
import json
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Union

from chargur.exceptions import ConfigError

# Configuration paths
CONFIG_DIR = Path.home() / ".config" / "chargur"
CONFIG_FILE = CONFIG_DIR / "config.json"

DEFAULT_AGENT_PATH = "/functions/v1/agent-prompt"
DEFAULT_REST_PATH = "/rest/v1"

# Stage identifiers of the design wizard, in order
STAGE_IDS = (
    "ideation-discovery",
    "feature-planning",
    "structure-flow",
    "interface-interaction",
    "architecture-design",
    "user-auth-flow",
    "ux-review-check",
    "auto-prompt-engine",
    "export-handoff",
)


@dataclass(frozen=True)
class Credentials:
    """Bearer credential for the signed-in user."""

    user_id: str
    access_token: str

    def __repr__(self) -> str:
        return f"Credentials(user_id={self.user_id!r}, access_token='***')"


CredentialProvider = Callable[[], Union[Credentials, None, Awaitable[Credentials | None]]]


async def resolve_credentials(provider: CredentialProvider | None) -> Credentials | None:
    """Call a sync or async credential provider."""
    if provider is None:
        return None
    result = provider()
    if inspect.isawaitable(result):
        result = await result
    return result


def static_credentials(user_id: str, access_token: str) -> CredentialProvider:
    """Provider that always returns the same credentials (or None if blank)."""
    creds = Credentials(user_id=user_id, access_token=access_token) if access_token else None

    def _provider() -> Credentials | None:
        return creds

    return _provider


@dataclass
class EngineConfig:
    """Explicit configuration for one engine instance."""

    endpoint_base_url: str
    credential_provider: CredentialProvider | None = None
    api_key: str = ""  # Project-level key sent as `apikey` header
    agent_path: str = DEFAULT_AGENT_PATH
    rest_path: str = DEFAULT_REST_PATH

    # Retry policy
    max_retries: int = 4
    base_delay: float = 1.0  # seconds, doubled per attempt

    # Network
    connect_timeout: float = 10.0
    idle_timeout: float = 30.0  # max silence between chunks; heartbeats reset it
    request_timeout: float = 30.0  # non-streaming store calls

    # Checkpointing
    persist_checkpoints: bool = True
    checkpoint_batch_size: int = 8
    save_responses: bool = False  # set when the agent endpoint does not store responses itself

    extra_headers: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.endpoint_base_url = self.endpoint_base_url.rstrip("/")

    @property
    def agent_url(self) -> str:
        return self.endpoint_base_url + self.agent_path

    @property
    def rest_url(self) -> str:
        return self.endpoint_base_url + self.rest_path

    def validate(self) -> None:
        """
        Check the configuration for obvious mistakes.

        Raises:
            ConfigError: If a value is missing or out of range
        """
        if not self.endpoint_base_url:
            raise ConfigError("endpoint_base_url is required", {"hint": "Set CHARGUR_ENDPOINT_URL"})
        if not self.endpoint_base_url.startswith(("http://", "https://")):
            raise ConfigError(
                "endpoint_base_url must be an http(s) URL",
                {"endpoint_base_url": self.endpoint_base_url},
            )
        if self.max_retries < 1:
            raise ConfigError("max_retries must be at least 1", {"max_retries": self.max_retries})
        if self.base_delay < 0:
            raise ConfigError("base_delay cannot be negative", {"base_delay": self.base_delay})
        if self.idle_timeout <= 0:
            raise ConfigError("idle_timeout must be positive", {"idle_timeout": self.idle_timeout})
        if self.checkpoint_batch_size < 1:
            raise ConfigError(
                "checkpoint_batch_size must be at least 1",
                {"checkpoint_batch_size": self.checkpoint_batch_size},
            )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization (secrets omitted)."""
        return {
            "endpoint_base_url": self.endpoint_base_url,
            "agent_path": self.agent_path,
            "rest_path": self.rest_path,
            "max_retries": self.max_retries,
            "base_delay": self.base_delay,
            "connect_timeout": self.connect_timeout,
            "idle_timeout": self.idle_timeout,
            "request_timeout": self.request_timeout,
            "persist_checkpoints": self.persist_checkpoints,
            "checkpoint_batch_size": self.checkpoint_batch_size,
            "save_responses": self.save_responses,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EngineConfig":
        """Create EngineConfig from dictionary."""
        if "endpoint_base_url" not in data:
            raise ConfigError("Missing required field in config", {"field": "endpoint_base_url"})
        return cls(
            endpoint_base_url=data["endpoint_base_url"],
            api_key=data.get("api_key", ""),
            agent_path=data.get("agent_path", DEFAULT_AGENT_PATH),
            rest_path=data.get("rest_path", DEFAULT_REST_PATH),
            max_retries=int(data.get("max_retries", 4)),
            base_delay=float(data.get("base_delay", 1.0)),
            connect_timeout=float(data.get("connect_timeout", 10.0)),
            idle_timeout=float(data.get("idle_timeout", 30.0)),
            request_timeout=float(data.get("request_timeout", 30.0)),
            persist_checkpoints=bool(data.get("persist_checkpoints", True)),
            checkpoint_batch_size=int(data.get("checkpoint_batch_size", 8)),
            save_responses=bool(data.get("save_responses", False)),
        )


def load_config(config_file: Path | None = None) -> EngineConfig:
    """
    Load configuration from the config file and environment.

    Environment variables override values from the file.

    Returns:
        EngineConfig with all settings loaded

    Raises:
        ConfigError: If configuration is invalid
    """
    path = config_file or CONFIG_FILE
    data: dict[str, Any] = {}

    if path.exists():
        try:
            with open(path) as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in {path}", {"error": str(e)})

    if url := os.environ.get("CHARGUR_ENDPOINT_URL"):
        data["endpoint_base_url"] = url
    if api_key := os.environ.get("CHARGUR_API_KEY"):
        data["api_key"] = api_key
    if max_retries := os.environ.get("CHARGUR_MAX_RETRIES"):
        try:
            data["max_retries"] = int(max_retries)
        except ValueError:
            raise ConfigError("CHARGUR_MAX_RETRIES must be an integer", {"value": max_retries})

    if "endpoint_base_url" not in data:
        raise ConfigError(
            "CHARGUR_ENDPOINT_URL environment variable not set",
            {"hint": "Export CHARGUR_ENDPOINT_URL=https://your-project.example.co"},
        )

    config = EngineConfig.from_dict(data)
    config.credential_provider = static_credentials(
        os.environ.get("CHARGUR_USER_ID", data.get("user_id", "")),
        os.environ.get("CHARGUR_ACCESS_TOKEN", ""),
    )
    config.validate()
    return config
