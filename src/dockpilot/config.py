"""Configuration management for DockPilot.

This module defines the configuration schema using Pydantic settings,
supporting TOML files, environment variables, and programmatic overrides.

Configuration loading priority (highest to lowest):
1. Programmatic overrides (passed to DockpilotConfig constructor)
2. Environment variables (DOCKPILOT_* prefix)
3. TOML configuration file
4. Default values defined in this module

Example TOML configuration:
    [recreate]
    health_timeout_seconds = 45
    stable_checks = 2

Example environment variable override:
    DOCKPILOT_DOCKER__BASE_URL="unix:///var/run/docker.sock"
    DOCKPILOT_RECREATE__HEALTH_TIMEOUT_SECONDS=60
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import tomli
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LoggingConfig(BaseSettings):
    """Logging configuration.

    Attributes:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: Log format (json or console)
        file: Optional log file path (None for stdout only)
        rotation_size_mb: Log file rotation size in megabytes
        retention_count: Number of rotated log files to keep
    """

    model_config = SettingsConfigDict(
        env_prefix="DOCKPILOT_LOGGING__",
        extra="forbid",
    )

    level: str = Field(default="INFO")
    format: str = Field(default="json")
    file: Path | None = Field(default=None)
    rotation_size_mb: int = Field(default=50, ge=1, le=1000)
    retention_count: int = Field(default=10, ge=1, le=100)

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level is recognized."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v_upper

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate log format is recognized."""
        valid_formats = {"json", "console"}
        v_lower = v.lower()
        if v_lower not in valid_formats:
            raise ValueError(f"Invalid log format: {v}. Must be one of {valid_formats}")
        return v_lower


class DockerConfig(BaseSettings):
    """Docker daemon connection configuration.

    Attributes:
        base_url: Explicit daemon URL (None uses DOCKER_HOST or the default socket)
        rootless: Prefer the rootless daemon socket under XDG_RUNTIME_DIR
        stop_timeout_seconds: Grace period given to a container on stop
    """

    model_config = SettingsConfigDict(
        env_prefix="DOCKPILOT_DOCKER__",
        extra="forbid",
    )

    base_url: str | None = Field(default=None)
    rootless: bool = Field(default=False)
    stop_timeout_seconds: int = Field(default=10, ge=0, le=600)


class RecreateConfig(BaseSettings):
    """Settings for environment reconfiguration by container recreation.

    Attributes:
        health_timeout_seconds: How long the replacement may take to reach running
        poll_interval_seconds: Delay between inspect polls while probing
        stable_checks: Consecutive running observations required to pass the probe
        backup_prefix: Prefix of generated backup container names
        keep_rollback_container: Default for requests that omit the flag
    """

    model_config = SettingsConfigDict(
        env_prefix="DOCKPILOT_RECREATE__",
        extra="forbid",
    )

    health_timeout_seconds: float = Field(default=30.0, gt=0.0, le=600.0)
    poll_interval_seconds: float = Field(default=0.5, gt=0.0, le=60.0)
    stable_checks: int = Field(default=1, ge=1, le=20)
    backup_prefix: str = Field(default="rollback_")
    keep_rollback_container: bool = Field(default=False)

    @field_validator("backup_prefix")
    @classmethod
    def validate_backup_prefix(cls, v: str) -> str:
        """Backup names must start with a character Docker accepts."""
        if not v or not v[0].isalnum():
            raise ValueError(f"Invalid backup prefix: {v!r}. Must start with a letter or digit")
        return v


class WebConfig(BaseSettings):
    """Web dashboard configuration.

    Attributes:
        host: Bind host address
        port: Bind port number
        cors_origins: Allowed CORS origins
    """

    model_config = SettingsConfigDict(
        env_prefix="DOCKPILOT_WEB__",
        extra="forbid",
    )

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3001, ge=1, le=65535)
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:5173"])


class DockpilotConfig(BaseSettings):
    """Root configuration for DockPilot.

    Aggregates all subsystem configurations. Configuration can be loaded from:
    1. TOML files (using load_config function)
    2. Environment variables (DOCKPILOT_* prefix)
    3. Direct instantiation with keyword arguments

    Environment variable format for nested config:
        DOCKPILOT_<SECTION>__<KEY>=value
    """

    model_config = SettingsConfigDict(
        env_prefix="DOCKPILOT_",
        env_nested_delimiter="__",
        extra="forbid",
    )

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    docker: DockerConfig = Field(default_factory=DockerConfig)
    recreate: RecreateConfig = Field(default_factory=RecreateConfig)
    web: WebConfig = Field(default_factory=WebConfig)


def load_config(config_path: Path | None = None) -> DockpilotConfig:
    """Load configuration from TOML file with environment variable overrides.

    Configuration search order (first found is used):
    1. config_path if explicitly provided
    2. ./dockpilot.toml (current directory)
    3. ~/.config/dockpilot/config.toml (user config directory)

    Args:
        config_path: Explicit path to TOML config file. If None, searches
                    default locations.

    Returns:
        DockpilotConfig: Fully resolved configuration instance.

    Raises:
        FileNotFoundError: If config_path is explicitly provided but doesn't exist.
        ValueError: If TOML file contains invalid configuration.
    """
    toml_data: dict[str, Any] = {}

    if config_path is not None:
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        selected_path = config_path
    else:
        search_paths = [
            Path.cwd() / "dockpilot.toml",
            Path.home() / ".config" / "dockpilot" / "config.toml",
        ]
        selected_path = None
        for path in search_paths:
            if path.exists():
                selected_path = path
                break

    if selected_path is not None:
        with open(selected_path, "rb") as f:
            toml_data = tomli.load(f)

    # Pydantic overlays environment variables on top of the TOML data
    try:
        return DockpilotConfig(**toml_data)
    except Exception as e:
        if selected_path:
            raise ValueError(f"Invalid configuration in {selected_path}: {e}") from e
        else:
            raise ValueError(f"Invalid configuration: {e}") from e
