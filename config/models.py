"""Pydantic configuration models for the Ranger verification server."""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

from exceptions import ConfigFileNotFoundError, ConfigurationError
from run_types import DEFAULT_VIEWPORT_HEIGHT, DEFAULT_VIEWPORT_WIDTH


# Load .env file if present
load_dotenv()

DEFAULT_CONFIG_PATH = Path("ranger.json")


def _env_fallback(data: Any, env_mapping: dict[str, str]) -> Any:
    """Fill unset fields from environment variables."""
    if not isinstance(data, dict):
        return data
    for field_name, env_var in env_mapping.items():
        if data.get(field_name) is None:
            env_value = os.getenv(env_var)
            if env_value:
                data[field_name] = env_value
    return data


class AgentConfig(BaseModel):
    """Model provider used by the ReAct loop.

    When provider or key is missing, runs use the screenshot-only mode.
    """

    llm_provider: Optional[str] = Field(
        default=None,
        description="Model provider: anthropic or openai",
    )
    llm_api_key: Optional[str] = Field(
        default=None,
        description="API key for the model provider",
    )
    llm_model: Optional[str] = Field(
        default=None,
        description="Model name; provider default when unset",
    )
    llm_base_url: Optional[str] = Field(
        default=None,
        description="Custom endpoint for OpenAI-compatible servers",
    )

    @field_validator("llm_base_url")
    @classmethod
    def validate_base_url(cls, v: Optional[str]) -> Optional[str]:
        """Ensure base_url doesn't have trailing slash."""
        return v.rstrip("/") if v else v

    @model_validator(mode="before")
    @classmethod
    def load_from_env(cls, data: Any) -> Any:
        """Load values from environment variables if not explicitly set."""
        return _env_fallback(
            data,
            {
                "llm_provider": "RANGER_LLM_PROVIDER",
                "llm_api_key": "RANGER_LLM_API_KEY",
                "llm_model": "RANGER_LLM_MODEL",
                "llm_base_url": "RANGER_LLM_BASE_URL",
            },
        )


class BrowserConfig(BaseModel):
    """Defaults for profiles that do not pick a browser or viewport."""

    browser: str = Field(
        default="chromium",
        description="Browser engine: chromium, firefox or webkit",
    )
    viewport_width: int = Field(
        default=DEFAULT_VIEWPORT_WIDTH,
        ge=320,
        le=3840,
        description="Browser viewport width",
    )
    viewport_height: int = Field(
        default=DEFAULT_VIEWPORT_HEIGHT,
        ge=240,
        le=2160,
        description="Browser viewport height",
    )


class StorageConfig(BaseModel):
    """Where runs and artifacts are kept."""

    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".ranger" / "data",
        description="Root directory for the run store and artifacts",
    )

    @field_validator("data_dir", mode="before")
    @classmethod
    def convert_to_path(cls, v: Any) -> Path:
        """Convert string to Path."""
        if isinstance(v, str):
            return Path(v).expanduser()
        return v

    @model_validator(mode="before")
    @classmethod
    def load_from_env(cls, data: Any) -> Any:
        return _env_fallback(data, {"data_dir": "RANGER_DATA_DIR"})

    @property
    def artifacts_root(self) -> Path:
        return self.data_dir / "artifacts"

    @property
    def store_path(self) -> Path:
        return self.data_dir / "runs.json"


class ServerConfig(BaseModel):
    """HTTP server settings."""

    host: str = Field(default="127.0.0.1", description="Bind address")
    port: int = Field(default=4800, ge=1, le=65535, description="Bind port")
    keepalive_seconds: float = Field(
        default=15.0,
        gt=0,
        description="Idle time before a keepalive is sent on live streams",
    )


class RangerConfig(BaseModel):
    """Root configuration model combining all config sections."""

    agent: AgentConfig = Field(default_factory=AgentConfig)
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    verbose: bool = Field(
        default=False,
        description="Enable verbose logging",
    )


def load_config(
    config_path: Optional[Path] = None,
    cli_overrides: Optional[dict[str, Any]] = None,
) -> RangerConfig:
    """
    Load configuration from file with CLI overrides.

    Priority (highest to lowest):
    1. CLI arguments
    2. Config file
    3. Environment variables (fill fields the file leaves unset)
    4. Defaults
    """
    config_data: dict[str, Any] = {}

    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH
        required = False
    else:
        required = True

    if config_path.exists():
        with open(config_path, "r", encoding="utf-8") as f:
            try:
                if config_path.suffix in {".yaml", ".yml"}:
                    config_data = yaml.safe_load(f) or {}
                else:
                    config_data = json.load(f)
            except (yaml.YAMLError, json.JSONDecodeError) as e:
                raise ConfigurationError(
                    f"Invalid config file {config_path}: {e}",
                    {"file_path": str(config_path)},
                ) from e
    elif required:
        raise ConfigFileNotFoundError(str(config_path))

    config = RangerConfig.model_validate(config_data)

    # Apply CLI overrides
    if cli_overrides:
        config_dict = config.model_dump()
        _apply_overrides(config_dict, cli_overrides)
        config = RangerConfig.model_validate(config_dict)

    return config


def _apply_overrides(config_dict: dict[str, Any], overrides: dict[str, Any]) -> None:
    """Apply CLI overrides to config dictionary."""
    override_mapping = {
        "host": ("server", "host"),
        "port": ("server", "port"),
        "data_dir": ("storage", "data_dir"),
        "browser": ("browser", "browser"),
        "llm_provider": ("agent", "llm_provider"),
        "llm_model": ("agent", "llm_model"),
        "verbose": ("verbose", None),
    }

    for key, value in overrides.items():
        if value is None:
            continue

        mapping = override_mapping.get(key)
        if mapping:
            section, field = mapping
            if field is None:
                config_dict[section] = value
            else:
                config_dict[section][field] = value
