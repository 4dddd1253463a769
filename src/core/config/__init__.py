# Configuration package

from src.core.config.app_config import (
    AgentEngineConfig,
    AppConfig,
    LoggingConfig,
    ServiceAccountConfig,
    load_config,
)

__all__ = [
    "AgentEngineConfig",
    "AppConfig",
    "LoggingConfig",
    "ServiceAccountConfig",
    "load_config",
]
