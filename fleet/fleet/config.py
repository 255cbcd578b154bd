"""Configuration management for update-fleet.

This module provides YAML-based configuration loading and saving,
following the XDG Base Directory Specification.
"""

from __future__ import annotations

import os
from datetime import timedelta
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigError
from .models import Target

logger = structlog.get_logger(__name__)

CONFIG_ENV_VAR = "UPDATE_FLEET_CONFIG"


def get_config_dir() -> Path:
    """Get the configuration directory following XDG spec.

    Returns:
        Path to the configuration directory.
    """
    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    base = Path(xdg_config_home) if xdg_config_home else Path.home() / ".config"
    return base / "update-fleet"


def get_default_config_path() -> Path:
    """Get the configuration file path, honouring ``UPDATE_FLEET_CONFIG``."""
    override = os.environ.get(CONFIG_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return get_config_dir() / "config.yaml"


class EngineConfig(BaseModel):
    """Engine tunables."""

    max_concurrent_sessions: int = Field(
        default=5, ge=1, description="Maximum concurrent SSH sessions process-wide"
    )
    cache_ttl_hours: float = Field(default=12, gt=0, description="Hours before a check is stale")
    connect_timeout: float = Field(default=30, gt=0, description="SSH connect timeout in seconds")
    command_timeout: float = Field(default=120, gt=0, description="Default command timeout")
    upgrade_timeout: float = Field(default=3600, gt=0, description="Upgrade-all timeout")
    package_upgrade_timeout: float = Field(default=300, gt=0, description="Single package timeout")
    reboot_timeout: float = Field(default=30, gt=0, description="Reboot command timeout")
    job_retention_seconds: float = Field(
        default=300, ge=0, description="How long finished jobs stay pollable"
    )
    reprobe_interval: float = Field(
        default=15, gt=0, description="Seconds between reconnect attempts after a disconnect"
    )
    reprobe_timeout: float = Field(
        default=300, gt=0, description="Give up reconnecting after this many seconds"
    )
    recheck_retries: int = Field(default=3, ge=1, description="Post-reboot check attempts")
    recheck_retry_delay: float = Field(default=10, ge=0, description="Delay between attempts")
    check_interval_minutes: float = Field(
        default=15, gt=0, description="Periodic checker wake-up interval"
    )
    stream_buffer_size: int = Field(default=2000, ge=1, description="Replay buffer per target")
    subscriber_queue_size: int = Field(
        default=2000, ge=1, description="Live events a subscriber may fall behind by"
    )
    log_level: str = Field(default="info", description="debug, info, warning or error")
    history_db: Path | None = Field(default=None, description="DuckDB file; None uses the XDG data directory")

    @property
    def cache_ttl(self) -> timedelta:
        """Cache TTL as a timedelta."""
        return timedelta(hours=self.cache_ttl_hours)


class TargetConfig(BaseModel):
    """A target as written in the configuration file."""

    id: int
    hostname: str
    username: str
    port: int = 22
    key_file: Path | None = None
    password_env: str | None = None
    sudo_password_env: str | None = None
    known_hosts: Path | None = None
    disabled_managers: list[str] = Field(default_factory=list)
    managers: list[str] | None = Field(
        default=None, description="Known families; skips detection when set"
    )

    def to_target(self, name: str) -> Target:
        """Build the runtime Target."""
        return Target(
            id=self.id,
            name=name,
            hostname=self.hostname,
            port=self.port,
            username=self.username,
            key_file=self.key_file.expanduser() if self.key_file else None,
            password_env=self.password_env,
            sudo_password_env=self.sudo_password_env,
            known_hosts=self.known_hosts.expanduser() if self.known_hosts else None,
            disabled_managers=list(self.disabled_managers),
            detected_managers=list(self.managers) if self.managers is not None else None,
        )


class FleetConfig(BaseModel):
    """Complete configuration."""

    engine: EngineConfig = Field(default_factory=EngineConfig)
    targets: dict[str, TargetConfig] = Field(default_factory=dict)

    def build_targets(self) -> list[Target]:
        """Build runtime targets.

        Raises:
            ConfigError: If two targets share an id.
        """
        seen: dict[int, str] = {}
        targets: list[Target] = []
        for name, target_config in self.targets.items():
            if target_config.id in seen:
                raise ConfigError(
                    f"Target id {target_config.id} used by both {seen[target_config.id]} and {name}"
                )
            seen[target_config.id] = name
            targets.append(target_config.to_target(name))
        return targets


class ConfigManager:
    """Manages application configuration.

    Provides high-level methods for loading, saving, and initializing the
    configuration file.
    """

    def __init__(self, config_path: Path | None = None) -> None:
        """Initialize the configuration manager.

        Args:
            config_path: Optional path to configuration file.
                        Uses default path if not provided.
        """
        self.config_path = config_path or get_default_config_path()
        self._config: FleetConfig | None = None

    def load(self) -> FleetConfig:
        """Load configuration from file.

        Returns:
            FleetConfig with loaded values, or defaults if the file doesn't exist.

        Raises:
            ConfigError: If the file is not valid YAML or fails validation.
        """
        if not self.config_path.exists():
            logger.info("using_default_config", path=str(self.config_path))
            self._config = FleetConfig()
            return self._config

        try:
            data = yaml.safe_load(self.config_path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {self.config_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Top level of {self.config_path} must be a mapping")

        self._config = self._parse_config(data)
        logger.debug("config_loaded", path=str(self.config_path), targets=len(self._config.targets))
        return self._config

    def get_config(self) -> FleetConfig:
        """Get the current configuration, loading from file if needed."""
        if self._config is None:
            return self.load()
        return self._config

    def save(self, config: FleetConfig | None = None) -> None:
        """Save configuration to file.

        Args:
            config: Configuration to save. Uses current config if not provided.
        """
        if config is not None:
            self._config = config
        if self._config is None:
            self._config = FleetConfig()

        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        content = yaml.dump(
            self._serialize_config(self._config), default_flow_style=False, sort_keys=False
        )
        self.config_path.write_text(content)
        logger.info("config_saved", path=str(self.config_path))

    def init_config(self, force: bool = False) -> bool:
        """Write a configuration file with defaults.

        Args:
            force: If True, overwrite existing configuration.

        Returns:
            True if configuration was created, False if it already exists.
        """
        if self.config_path.exists() and not force:
            logger.info("config_exists", path=str(self.config_path))
            return False

        self.save(FleetConfig())
        logger.info("config_initialized", path=str(self.config_path))
        return True

    def _parse_config(self, data: dict[str, Any]) -> FleetConfig:
        try:
            return FleetConfig(
                engine=EngineConfig(**(data.get("engine") or {})),
                targets={
                    name: TargetConfig(**target_data)
                    for name, target_data in (data.get("targets") or {}).items()
                },
            )
        except (ValidationError, TypeError) as e:
            raise ConfigError(f"Invalid configuration in {self.config_path}: {e}") from e

    def _serialize_config(self, config: FleetConfig) -> dict[str, Any]:
        return {
            "engine": config.engine.model_dump(mode="json"),
            "targets": {
                name: target.model_dump(mode="json", exclude_defaults=True)
                for name, target in config.targets.items()
            },
        }
