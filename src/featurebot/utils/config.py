"""
Configuration management for featurebot.

This module provides centralized configuration using Pydantic settings
with support for environment variables and .env files.
"""

from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DAY_SECONDS = 24 * 60 * 60


class ValidationResult(BaseModel):
    valid: bool = True
    errors: list[str] = []
    warnings: list[str] = []


class FeatureBotSettings(BaseSettings):
    """featurebot configuration settings."""

    # Application
    app_name: str = "featurebot"
    app_version: str = "0.1.0"
    debug: bool = Field(default=False)

    # Storage settings
    data_dir: str = Field(default="~/.featurebot/data", description="Directory used by the JSON file store")

    # Feature system settings
    feature_manifest: dict[str, str] = Field(
        default={
            "message_cache": "featurebot.features.builtin.message_cache:MessageCacheFeature",
            "anti_delete": "featurebot.features.builtin.anti_delete:AntiDeleteFeature",
            "auto_react": "featurebot.features.builtin.auto_react:AutoReactFeature",
        },
        description="Feature name -> 'module:attribute' of its factory"
    )
    features_config: dict[str, dict[str, Any]] = Field(
        default={},
        description="Per-feature defaults: enabled, auto_start and feature settings"
    )
    feature_stop_timeout_seconds: float = Field(default=10.0, description="Maximum time a feature stop hook may take")

    # Event bus settings
    bus_max_concurrent_handlers: int = Field(default=100, description="Maximum concurrently running event handlers")

    # Retention cache settings
    cache_max_per_bucket: int = Field(default=1000, description="Maximum entries kept per bucket (conversation)")
    cache_retention_seconds: float = Field(default=3 * DAY_SECONDS, description="Global retention window for cached entries")
    cache_sweep_interval_seconds: float = Field(default=6 * 60 * 60, description="Interval between retention sweeps")

    # Logging settings
    log_level: str = Field(default="INFO", description="Logging level")
    log_structured: bool = Field(default=False, description="Emit JSON structured logs")
    log_file: str | None = Field(default=None, description="Optional log file path")

    # Pydantic v2 settings configuration
    model_config = SettingsConfigDict(
        env_file="config/.env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="FEATUREBOT_",
        extra="ignore",
    )

    def get_data_dir(self) -> Path:
        """Get the data directory as Path object, creating it if needed."""
        path = Path(self.data_dir).expanduser().resolve()
        path.mkdir(parents=True, exist_ok=True)
        return path

    def get_log_file_path(self) -> Path | None:
        """Get log file path as Path object."""
        if not self.log_file:
            return None
        path = Path(self.log_file).expanduser().resolve()
        path.parent.mkdir(parents=True, exist_ok=True)
        return path

    def get_cache_config(self) -> dict[str, Any]:
        """Get retention cache configuration as a dictionary."""
        return {
            "max_per_bucket": self.cache_max_per_bucket,
            "retention_seconds": self.cache_retention_seconds,
            "sweep_interval_seconds": self.cache_sweep_interval_seconds,
        }

    def validate_settings(self) -> ValidationResult:
        """Validate settings and return status information."""
        status = ValidationResult()

        if self.cache_max_per_bucket < 0:
            status.errors.append("cache_max_per_bucket must not be negative")
            status.valid = False

        if self.cache_retention_seconds <= 0:
            status.errors.append("cache_retention_seconds must be positive")
            status.valid = False

        if self.cache_sweep_interval_seconds <= 0:
            status.errors.append("cache_sweep_interval_seconds must be positive")
            status.valid = False
        elif self.cache_sweep_interval_seconds > self.cache_retention_seconds:
            status.warnings.append("Sweep interval is longer than the retention window")

        if self.bus_max_concurrent_handlers < 1:
            status.errors.append("bus_max_concurrent_handlers must be at least 1")
            status.valid = False

        for name, target in self.feature_manifest.items():
            if ":" not in target:
                status.warnings.append(f"Manifest entry for {name} is not in 'module:attribute' form: {target}")

        return status


# Global settings instance
settings: FeatureBotSettings | None = None


def get_settings() -> FeatureBotSettings:
    """Get the global settings instance."""
    global settings
    if settings is None:
        settings = FeatureBotSettings()
    return settings


def reload_settings() -> FeatureBotSettings:
    """Reload settings from environment and return new instance."""
    global settings
    settings = FeatureBotSettings()
    return settings
