"""
Configuration management for the progressive rollout engine.

This module provides a unified configuration system that supports:
- YAML configuration files
- Environment variable overrides (``ROLLOUT_`` prefix, ``__`` nesting)
- Runtime configuration overrides
- Type validation and conversion
"""

from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..exceptions import ConfigurationError


class Environment(str, Enum):
    """Environment the engine itself runs in."""

    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class RetryConfig(BaseModel):
    """Per-target retry budget with exponential backoff."""

    max_attempts: int = Field(default=3, ge=1, description="Attempts per target")
    min_wait: float = Field(default=0.5, ge=0, description="Minimum backoff in seconds")
    max_wait: float = Field(default=10.0, ge=0, description="Maximum backoff in seconds")
    multiplier: float = Field(default=2.0, ge=0, description="Backoff multiplier")


class ObservabilityConfig(BaseModel):
    """Observability configuration."""

    service_name: str = Field(default="progressive-rollout", description="Service name for logs")
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: str = Field(default="json", description="Log format (json|text)")
    log_file: str | None = Field(default=None, description="Optional rotating log file")
    enable_metrics: bool = Field(default=True, description="Enable Prometheus metrics")

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        if v not in ("json", "text"):
            raise ValueError("log_format must be 'json' or 'text'")
        return v


class RolloutEngineConfig(BaseSettings):
    """Main rollout engine configuration class."""

    model_config = SettingsConfigDict(
        env_prefix="ROLLOUT_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    environment: Environment = Field(default=Environment.DEVELOPMENT)

    # Concurrency
    max_global_concurrency: int = Field(
        default=50, ge=1, description="Concurrent target operations across all rollouts"
    )
    max_concurrency_per_stage: int | None = Field(
        default=None, ge=1, description="Concurrent target operations within one stage"
    )

    # Finished rollouts kept in memory; older ones are served from the store
    finished_history_size: int = Field(default=1000, ge=0)

    # External call timeouts
    deploy_timeout_seconds: float = Field(default=300.0, gt=0)
    health_timeout_seconds: float = Field(default=60.0, gt=0)

    # Retry budgets
    deploy_retry: RetryConfig = Field(default_factory=RetryConfig)
    rollback_retry: RetryConfig = Field(default_factory=RetryConfig)

    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    @classmethod
    def from_yaml(cls, file_path: str | Path) -> "RolloutEngineConfig":
        """Load configuration from YAML file."""
        try:
            with open(file_path) as f:
                data = yaml.safe_load(f) or {}
            return cls(**data)
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {file_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML configuration: {e}")
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed: {e}")

    @classmethod
    def from_env(cls, env_prefix: str = "ROLLOUT_") -> "RolloutEngineConfig":
        """Load configuration from environment variables."""
        try:
            return cls(_env_prefix=env_prefix)
        except ValidationError as e:
            raise ConfigurationError(
                f"Environment configuration validation failed: {e}"
            )

    def to_yaml(self, file_path: str | Path) -> None:
        """Save configuration to YAML file."""
        try:
            with open(file_path, "w") as f:
                yaml.safe_dump(
                    self.model_dump(mode="json"), f, default_flow_style=False, indent=2
                )
        except OSError as e:
            raise ConfigurationError(f"Failed to save configuration: {e}")


class ConfigManager:
    """Configuration manager with dotted-key runtime overrides."""

    def __init__(self, config: RolloutEngineConfig | None = None):
        self._config = config or RolloutEngineConfig()
        self._overrides: dict[str, Any] = {}

    @property
    def config(self) -> RolloutEngineConfig:
        """Get the current configuration."""
        return self._config

    def load_from_yaml(self, file_path: str | Path) -> RolloutEngineConfig:
        """Load configuration from YAML file."""
        self._config = RolloutEngineConfig.from_yaml(file_path)
        return self._config

    def load_from_env(self, env_prefix: str = "ROLLOUT_") -> RolloutEngineConfig:
        """Load configuration from environment variables."""
        self._config = RolloutEngineConfig.from_env(env_prefix)
        return self._config

    def set_override(self, key: str, value: Any) -> None:
        """Set a configuration override."""
        self._overrides[key] = value

    def get_value(self, key: str, default: Any = None) -> Any:
        """Get a configuration value with override support."""
        if key in self._overrides:
            return self._overrides[key]

        obj: Any = self._config
        for part in key.split("."):
            if hasattr(obj, part):
                obj = getattr(obj, part)
            else:
                return default
        return obj

    def clear_overrides(self) -> None:
        """Clear all configuration overrides."""
        self._overrides.clear()

    def validate(self) -> None:
        """Validate the current configuration."""
        try:
            RolloutEngineConfig(**self._config.model_dump())
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed: {e}")


def load_config(
    yaml_file: str | Path | None = None,
    env_prefix: str = "ROLLOUT_",
    environment: Environment | None = None,
) -> RolloutEngineConfig:
    """
    Load configuration with automatic source selection.

    Priority order:
    1. YAML file (if provided and present)
    2. Environment variables
    3. Defaults
    """
    if yaml_file and Path(yaml_file).exists():
        config = RolloutEngineConfig.from_yaml(yaml_file)
    else:
        config = RolloutEngineConfig.from_env(env_prefix)

    if environment:
        config.environment = environment

    return config


__all__ = [
    "ConfigManager",
    "Environment",
    "LogLevel",
    "ObservabilityConfig",
    "RetryConfig",
    "RolloutEngineConfig",
    "load_config",
]
