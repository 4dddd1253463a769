from __future__ import annotations

import logging
import os
import re
from collections.abc import Callable, Mapping
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import Field, field_validator

from src.core.common.exceptions import ConfigurationError
from src.core.interfaces.model_bases import DomainModel

logger = logging.getLogger(__name__)

DEFAULT_LOCATION = "us-central1"
DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"
CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"

_ENGINE_RESOURCE_PATTERN = re.compile(r"reasoningEngines/(\d+)")


def _to_int(value: str, fallback: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return fallback


def _to_float(value: str, fallback: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return fallback


def _to_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _to_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class LogLevel(str, Enum):
    """Log levels for configuration."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LoggingConfig(DomainModel):
    """Logging configuration."""

    level: LogLevel = LogLevel.INFO
    log_file: str | None = None
    # Mask bearer tokens and signed assertions in every log record.
    redact_tokens: bool = True


class ServiceAccountConfig(DomainModel):
    """Service-account credential source and token issuance tuning."""

    # Either a path to the key file or the key JSON itself.
    credentials: str | None = None
    scope: str = CLOUD_PLATFORM_SCOPE
    refresh_buffer_seconds: float = 60.0
    request_timeout: float = 10.0
    max_attempts: int = 4
    base_delay: float = 0.25
    max_delay: float = 2.0
    assertion_lifetime: int = 3600

    @field_validator("max_attempts")
    @classmethod
    def validate_max_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_attempts must be at least 1")
        return v

    def require_credentials(self) -> str:
        """Return the configured credential source or fail fast."""
        source = (self.credentials or "").strip()
        if not source:
            raise ConfigurationError(
                "Service account credentials are not configured. Set "
                "GOOGLE_SERVICE_ACCOUNT_KEY_FILE to a key file path or inline JSON."
            )
        return source


class AgentEngineConfig(DomainModel):
    """Addressing and transport settings for the reasoning engine."""

    project_id: str | None = None
    location: str = DEFAULT_LOCATION
    reasoning_engine: str | None = None
    api_base_url: str | None = None
    connect_timeout: float = 60.0
    # Time allowed between chunks while streaming.
    read_timeout: float = 300.0
    session_recovery_attempts: int = 1
    status_prefixes: list[str] = Field(default_factory=list)

    @field_validator("api_base_url")
    @classmethod
    def validate_api_base_url(cls, v: str | None) -> str | None:
        """Validate the API URL if provided."""
        if v is not None and not v.startswith(("http://", "https://")):
            raise ValueError("API URL must start with http:// or https://")
        return v

    @property
    def engine_id(self) -> str:
        """Numeric engine id, accepting a full resource name as input."""
        raw = (self.reasoning_engine or "").strip()
        if not raw:
            raise ConfigurationError("VERTEX_REASONING_ENGINE is not configured")
        match = _ENGINE_RESOURCE_PATTERN.search(raw)
        return match.group(1) if match else raw

    def require_ready(self) -> None:
        """Fail before any network call when identifiers are missing."""
        if not (self.project_id or "").strip():
            raise ConfigurationError("VERTEX_PROJECT_ID is not configured")
        # Property access validates the engine id.
        _ = self.engine_id

    def base_url(self) -> str:
        self.require_ready()
        root = self.api_base_url or f"https://{self.location}-aiplatform.googleapis.com/v1"
        return (
            f"{root.rstrip('/')}/projects/{self.project_id}"
            f"/locations/{self.location}/reasoningEngines/{self.engine_id}"
        )


class AppConfig(DomainModel):
    """Top-level configuration for the Agent Engine client."""

    agent_engine: AgentEngineConfig = Field(default_factory=AgentEngineConfig)
    service_account: ServiceAccountConfig = Field(
        default_factory=ServiceAccountConfig
    )
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_env(cls, *, environ: Mapping[str, str] | None = None) -> AppConfig:
        """Create AppConfig from environment variables.

        Returns:
            AppConfig instance
        """
        env: Mapping[str, str] = environ if environ is not None else os.environ
        return cls.model_validate(_env_overrides(env))


# (env var, dotted config path, transform)
_ENV_BINDINGS: list[tuple[str, str, Callable[[str], Any] | None]] = [
    ("VERTEX_PROJECT_ID", "agent_engine.project_id", None),
    ("VERTEX_LOCATION", "agent_engine.location", None),
    ("VERTEX_REASONING_ENGINE", "agent_engine.reasoning_engine", None),
    ("AGENT_ENGINE_API_BASE_URL", "agent_engine.api_base_url", None),
    (
        "AGENT_ENGINE_READ_TIMEOUT",
        "agent_engine.read_timeout",
        lambda v: _to_float(v, 300.0),
    ),
    (
        "AGENT_ENGINE_SESSION_RECOVERY_ATTEMPTS",
        "agent_engine.session_recovery_attempts",
        lambda v: _to_int(v, 1),
    ),
    ("AGENT_ENGINE_STATUS_PREFIXES", "agent_engine.status_prefixes", _to_list),
    ("GOOGLE_APPLICATION_CREDENTIALS", "service_account.credentials", None),
    # Takes precedence over GOOGLE_APPLICATION_CREDENTIALS (applied later).
    ("GOOGLE_SERVICE_ACCOUNT_KEY_FILE", "service_account.credentials", None),
    (
        "TOKEN_REFRESH_BUFFER_SECONDS",
        "service_account.refresh_buffer_seconds",
        lambda v: _to_float(v, 60.0),
    ),
    (
        "TOKEN_REQUEST_MAX_ATTEMPTS",
        "service_account.max_attempts",
        lambda v: _to_int(v, 4),
    ),
    ("LOG_LEVEL", "logging.level", lambda v: v.strip().upper()),
    ("LOG_FILE", "logging.log_file", None),
    ("LOG_REDACT_TOKENS", "logging.redact_tokens", _to_bool),
]


def _env_overrides(env: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for name, path, transform in _ENV_BINDINGS:
        raw_value = env.get(name)
        if raw_value is None or raw_value == "":
            continue
        value = transform(raw_value) if transform is not None else raw_value
        _set_by_path(overrides, path, value)
    return overrides


def _merge_dicts(d1: dict[str, Any], d2: dict[str, Any]) -> dict[str, Any]:
    for k, v in d2.items():
        if k in d1 and isinstance(d1[k], dict) and isinstance(v, dict):
            _merge_dicts(d1[k], v)
        else:
            d1[k] = v
    return d1


def _set_by_path(target: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current: dict[str, Any] = target
    for key in parts[:-1]:
        current = current.setdefault(key, {})
    current[parts[-1]] = value


def load_config(
    config_path: str | Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> AppConfig:
    """
    Load configuration from file and environment.

    Defaults are overlaid with the YAML file (if any) and then with
    environment variables.

    Args:
        config_path: Optional path to a YAML configuration file

    Returns:
        AppConfig instance
    """
    if environ is None:
        from dotenv import find_dotenv, load_dotenv

        # .env next to where the command is run, not next to this module
        load_dotenv(find_dotenv(usecwd=True))
        environ = os.environ

    config_data: dict[str, Any] = AppConfig().model_dump(mode="json")

    if config_path:
        import yaml

        path = Path(config_path)
        if not path.exists():
            if logger.isEnabledFor(logging.WARNING):
                logger.warning(f"Configuration file not found: {config_path}")
        else:
            if path.suffix.lower() not in [".yaml", ".yml"]:
                raise ConfigurationError(
                    f"Unsupported configuration file format: {path.suffix}. Use YAML (.yaml/.yml)."
                )

            with open(path, encoding="utf-8") as f:
                file_config = yaml.safe_load(f) or {}
            if not isinstance(file_config, dict):
                raise ConfigurationError(
                    f"Configuration file {path} must contain a mapping at the top level"
                )
            _merge_dicts(config_data, file_config)

    _merge_dicts(config_data, _env_overrides(environ))
    return AppConfig.model_validate(config_data)
