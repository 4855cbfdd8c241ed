# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 Andrew Wyatt (Fewtarius)

"""
LiveBundle Configuration Module

Handles loading and managing updater configuration from YAML files.
"""

import logging
import os
import sys
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# Periodic checks faster than this are clamped up
MIN_PERIOD_CHECK_DELAY = 600


class ServerConfig(BaseModel):
    """Local call-surface settings."""
    host: str = Field(default="127.0.0.1", description="Bind address for the local API")
    port: int = Field(default=8765, description="Port for the local API")
    api_key: Optional[str] = Field(default=None, description="Optional API key required on every call")


class UpdaterConfig(BaseModel):
    """Bundle lifecycle behaviour."""
    app_ready_timeout: int = Field(default=10000, ge=1000, description="Milliseconds the app has to call notify_app_ready")
    response_timeout: int = Field(default=20, ge=1, description="HTTP timeout in seconds for update/channel/stats calls")
    auto_update: bool = Field(default=True, description="Check for and download updates automatically")
    auto_delete_failed: bool = Field(default=True, description="Delete bundles once they are marked as failed")
    auto_delete_previous: bool = Field(default=True, description="Delete the previous bundle after a successful switch")
    reset_when_update: bool = Field(default=True, description="Drop downloaded bundles when the host app version changes")
    direct_update: str = Field(default="false", description="Apply downloads immediately: false, atInstall, onLaunch, always")
    allow_manual_bundle_error: bool = Field(default=False, description="Allow the app to mark bundles as failed")
    allow_modify_url: bool = Field(default=False, description="Allow the app to change update/stats/channel URLs")
    allow_modify_app_id: bool = Field(default=False, description="Allow the app to change its app id")
    persist_custom_id: bool = Field(default=False, description="Keep the custom id across restarts")
    persist_modify_url: bool = Field(default=False, description="Keep URL/app id overrides across restarts")
    period_check_delay: int = Field(default=0, ge=0, description="Seconds between periodic update checks (0 = off)")
    default_channel: Optional[str] = Field(default=None, description="Channel used when the device has none set")
    version: str = Field(default="0.0.0", description="Version of the builtin bundle / host app")
    app_id: str = Field(default="", description="Application id sent to the update server")
    public_key: Optional[str] = Field(default=None, description="RSA public key (PEM) for end-to-end encrypted bundles")

    @field_validator("direct_update", mode="before")
    @classmethod
    def _normalize_direct_update(cls, value):
        if isinstance(value, bool):
            return "always" if value else "false"
        value = str(value)
        if value not in ("false", "true", "atInstall", "onLaunch", "always"):
            raise ValueError(f"Invalid direct_update mode: {value}")
        return "always" if value == "true" else value

    @field_validator("period_check_delay")
    @classmethod
    def _clamp_period(cls, value: int) -> int:
        if 0 < value < MIN_PERIOD_CHECK_DELAY:
            return MIN_PERIOD_CHECK_DELAY
        return value


class EndpointsConfig(BaseModel):
    """Server endpoints."""
    update_url: str = Field(default="https://plugin.capgo.app/updates", description="Update check endpoint")
    channel_url: str = Field(default="https://plugin.capgo.app/channel_self", description="Channel endpoint")
    stats_url: str = Field(default="https://plugin.capgo.app/stats", description="Statistics endpoint (empty = disabled)")


class StorageConfig(BaseModel):
    """Where bundles and the storage document live."""
    data_directory: Path = Field(default=Path("./data"), description="Per-installation data directory")
    builtin_path: Path = Field(default=Path("./www/index.html"), description="Entry point of the builtin bundle")
    secure_storage: bool = Field(default=True, description="Encrypt the device id at rest")


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(default="INFO", description="Log level (WARNING, INFO, DEBUG)")
    file: Optional[Path] = Field(default=None, description="Log file path (null = console only)")


class Config(BaseModel):
    """Main configuration container."""
    server: ServerConfig = Field(default_factory=ServerConfig)
    updater: UpdaterConfig = Field(default_factory=UpdaterConfig)
    endpoints: EndpointsConfig = Field(default_factory=EndpointsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(path: Optional[str] = None) -> Config:
    """
    Load configuration from YAML file.

    Args:
        path: Path to config file. If None, uses LIVEBUNDLE_CONFIG env var
              or defaults to ./livebundle.yaml

    Returns:
        Config object with loaded settings
    """
    if path is None:
        path = os.environ.get("LIVEBUNDLE_CONFIG", "./livebundle.yaml")

    config_path = Path(path)

    if config_path.exists():
        logger.info("Loading configuration from: %s", config_path)
        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}

            return Config(
                server=ServerConfig(**data.get("server", {})),
                updater=UpdaterConfig(**data.get("updater", {})),
                endpoints=EndpointsConfig(**data.get("endpoints", {})),
                storage=StorageConfig(**data.get("storage", {})),
                logging=LoggingConfig(**data.get("logging", {})),
            )
        except Exception as e:
            logger.warning("Failed to load config file: %s. Using defaults.", e)
            return Config()
    else:
        logger.info("Config file not found at %s. Using defaults.", config_path)
        return Config()


def setup_logging(config: LoggingConfig) -> None:
    """
    Configure logging based on configuration.

    Args:
        config: Logging configuration settings
    """
    level = getattr(logging, config.level.upper(), logging.INFO)

    # Setup handlers - always include console
    handlers = [logging.StreamHandler()]

    if config.file:
        try:
            config.file.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(config.file))
        except Exception as e:
            # If file logging fails, continue with console-only logging
            print(f"Warning: Could not setup file logging: {e}", file=sys.stderr)

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers
    )

    logging.getLogger("uvicorn").setLevel(level)
    logging.getLogger("uvicorn.access").setLevel(level)

    if config.file:
        logger.info("Logging configured: level=%s, file=%s", config.level, config.file)
    else:
        logger.info("Logging configured: level=%s (console only)", config.level)


# Global config instance - loaded on import
config = load_config()
