"""Configuration management for the agent service.

Supports YAML configuration files and environment variable overrides.
Configuration is loaded once and cached for performance.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from shared.errors import ConfigurationError


def _join_csv(value: Any) -> Any:
    """Accept either a list or a comma-separated string for list-like settings."""
    if isinstance(value, (list, tuple, set)):
        return ",".join(str(v).strip() for v in value)
    return value


def parse_csv(value: str) -> list[str]:
    """Split a comma-separated setting, dropping blanks and duplicates."""
    seen: list[str] = []
    for part in value.split(","):
        item = part.strip()
        if item and item not in seen:
            seen.append(item)
    return seen


class LLMSettings(BaseSettings):
    """Model endpoint configuration."""
    provider: str = Field(default="openai", description="LLM provider: openai")
    model: str = Field(default="gpt-4o-mini", description="Model name")
    api_key: Optional[str] = Field(default=None, description="API key")
    api_base: Optional[str] = Field(default=None, description="API base URL")
    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    timeout_seconds: float = Field(default=60.0, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="LLM_",
        env_file=".env",
        extra="ignore"
    )


class GatewaySettings(BaseSettings):
    """Tool gateway configuration."""
    base_url: str = Field(default="http://localhost:8090")
    api_key: Optional[str] = Field(default=None)
    timeout_seconds: float = Field(default=30.0, gt=0)
    tools_path: Optional[str] = Field(default=None, description="YAML file replacing the built-in tool catalog")

    model_config = SettingsConfigDict(
        env_prefix="GATEWAY_",
        env_file=".env",
        extra="ignore"
    )


class EngineSettings(BaseSettings):
    """Orchestration loop configuration."""
    max_rounds: int = Field(default=6, ge=1, description="Model calls allowed in the tool loop")
    history_limit: int = Field(default=10, ge=0)
    history_message_chars: int = Field(default=1000, gt=0)
    tool_result_chars: int = Field(default=8000, gt=0)
    attachment_text_chars: int = Field(default=4000, ge=0)
    turn_timeout_seconds: float = Field(default=120.0, gt=0)
    serialize_conversation_turns: bool = Field(default=True)
    system_prompt: Optional[str] = Field(default=None)

    model_config = SettingsConfigDict(
        env_prefix="ENGINE_",
        env_file=".env",
        extra="ignore"
    )


class DatabaseSettings(BaseSettings):
    """Conversation store configuration."""
    url: Optional[str] = Field(default=None, description="SQLAlchemy async URL; unset keeps history in memory")
    echo: bool = Field(default=False)

    model_config = SettingsConfigDict(
        env_prefix="DATABASE_",
        env_file=".env",
        extra="ignore"
    )


class APISettings(BaseSettings):
    """HTTP surface configuration."""
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8091)
    api_keys: str = Field(default="", description="Comma-separated caller API keys")
    cors_allowed_origins: str = Field(default="", description="Comma-separated allowed origins")

    model_config = SettingsConfigDict(
        env_prefix="API_",
        env_file=".env",
        extra="ignore"
    )

    @field_validator("api_keys", "cors_allowed_origins", mode="before")
    @classmethod
    def join_lists(cls, value: Any) -> Any:
        return _join_csv(value)

    @property
    def allowed_api_keys(self) -> frozenset[str]:
        return frozenset(parse_csv(self.api_keys))

    @property
    def allowed_origins(self) -> list[str]:
        return parse_csv(self.cors_allowed_origins)


class Settings(BaseSettings):
    """Main application settings."""
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    mock_mode: bool = Field(default=False, description="Answer with a canned reply, no model or tool calls")

    # Component settings
    llm: LLMSettings = Field(default_factory=LLMSettings)
    gateway: GatewaySettings = Field(default_factory=GatewaySettings)
    engine: EngineSettings = Field(default_factory=EngineSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    api: APISettings = Field(default_factory=APISettings)

    model_config = SettingsConfigDict(
        env_prefix="AGENT_",
        env_file=".env",
        extra="ignore"
    )

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Settings":
        """Load settings from a YAML file."""
        return cls(**load_yaml_config(path))

    def validate_runtime(self) -> None:
        """
        Check that the settings are sufficient to serve traffic.

        Raises:
            ConfigurationError: If a required credential is missing
        """
        if not self.api.allowed_api_keys:
            raise ConfigurationError("missing API_API_KEYS")
        if self.mock_mode:
            return
        if not self.llm.api_key:
            raise ConfigurationError("missing LLM_API_KEY")
        if not self.gateway.api_key:
            raise ConfigurationError("missing GATEWAY_API_KEY")
        if not self.gateway.base_url.strip():
            raise ConfigurationError("missing GATEWAY_BASE_URL")


def load_yaml_config(path: str | Path) -> dict[str, Any]:
    """Load a YAML configuration file."""
    path = Path(path)
    if not path.exists():
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    config_path = os.environ.get("AGENT_CONFIG_PATH", "config/settings.yaml")
    return Settings.from_yaml(config_path)
