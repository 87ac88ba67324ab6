"""Configuration management for the access request agent.

Supports YAML configuration files and environment variable overrides.
Configuration is loaded once and cached; components receive the pieces
they need through their constructors.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LLMSettings(BaseSettings):
    """Decision model configuration."""
    provider: str = Field(default="openai", description="LLM provider: openai, azure_openai, scripted")
    model: str = Field(default="gpt-4o-mini", description="Model name")
    api_key: Optional[str] = Field(default=None, description="API key")
    api_base: Optional[str] = Field(default=None, description="API base URL")
    api_version: Optional[str] = Field(default="2024-02-15-preview", description="API version")
    deployment_name: Optional[str] = Field(default=None, description="Azure deployment name")
    temperature: float = Field(default=0.1, ge=0, le=2)
    max_tokens: int = Field(default=4096, gt=0)
    tool_choice: str = Field(default="auto")
    max_retries: int = Field(default=2, ge=1, description="Attempts per model call on connection errors")

    model_config = SettingsConfigDict(
        env_prefix="LLM_",
        env_file=".env",
        extra="ignore"
    )


class GovernanceSettings(BaseSettings):
    """Identity governance backend configuration."""
    base_url: str = Field(default="https://demo-takolive.okta.com")
    api_token: Optional[str] = Field(default=None, description="Governance API token")
    auth_scheme: str = Field(default="SSWS", description="Authorization scheme prefixed to the token")
    application_id: str = Field(default="0oavij8jl7fx84fA5697", description="Default GCP application ID")
    timeout_seconds: float = Field(default=30.0, gt=0)

    # Mock mode
    mock_mode: bool = Field(default=True)
    mock_latency_seconds: float = Field(default=0.3, ge=0)

    model_config = SettingsConfigDict(
        env_prefix="GOVERNANCE_",
        env_file=".env",
        extra="ignore"
    )

    @property
    def mode(self) -> str:
        return "mock" if self.mock_mode else "live"


class AgentSettings(BaseSettings):
    """Agent loop configuration."""
    max_iterations: int = Field(default=10, gt=0, description="Maximum model turns per request")
    model_timeout_seconds: float = Field(default=60.0, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="AGENT_",
        env_file=".env",
        extra="ignore"
    )


class OrchestratorSettings(BaseSettings):
    """Webhook service configuration."""
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000)
    background_processing: bool = Field(
        default=False,
        description="Acknowledge webhooks before the agent loop completes"
    )

    # Audit
    enable_audit: bool = Field(default=True)
    audit_log_path: str = Field(default="logs/audit.log")

    model_config = SettingsConfigDict(
        env_prefix="ORCHESTRATOR_",
        env_file=".env",
        extra="ignore"
    )


class Settings(BaseSettings):
    """Main application settings."""
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # Component settings
    llm: LLMSettings = Field(default_factory=LLMSettings)
    governance: GovernanceSettings = Field(default_factory=GovernanceSettings)
    agent: AgentSettings = Field(default_factory=AgentSettings)
    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)

    model_config = SettingsConfigDict(
        env_prefix="ACCESS_AGENT_",
        env_file=".env",
        extra="ignore"
    )

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Settings":
        """
        Load settings from a YAML file.

        Environment variables take precedence over values in the file:
        a YAML key whose prefixed variable is set is left to the
        environment source.
        """
        config = load_yaml_config(path)
        values = _without_env_overrides(
            {k: v for k, v in config.items() if k not in COMPONENT_SETTINGS},
            cls
        )

        for name, settings_cls in COMPONENT_SETTINGS.items():
            values[name] = settings_cls(
                **_without_env_overrides(config.get(name) or {}, settings_cls)
            )

        return cls(**values)


COMPONENT_SETTINGS: dict[str, type[BaseSettings]] = {
    "llm": LLMSettings,
    "governance": GovernanceSettings,
    "agent": AgentSettings,
    "orchestrator": OrchestratorSettings,
}


def _without_env_overrides(
    values: dict[str, Any],
    settings_cls: type[BaseSettings]
) -> dict[str, Any]:
    prefix = settings_cls.model_config.get("env_prefix", "")
    env_names = {name.upper() for name in os.environ}
    return {
        key: value for key, value in values.items()
        if f"{prefix}{key}".upper() not in env_names
    }


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
    config_path = os.environ.get("ACCESS_AGENT_CONFIG_PATH", "config/settings.yaml")
    return Settings.from_yaml(config_path)
