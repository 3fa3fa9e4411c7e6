"""Configuration module for the Ranger verification server."""
from config.models import (
    AgentConfig,
    BrowserConfig,
    RangerConfig,
    ServerConfig,
    StorageConfig,
    load_config,
)

__all__ = [
    "AgentConfig",
    "BrowserConfig",
    "RangerConfig",
    "ServerConfig",
    "StorageConfig",
    "load_config",
]
