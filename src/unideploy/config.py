"""Configuration management for Unideploy.

This module defines the configuration schema using Pydantic settings,
supporting TOML files, environment variables, and programmatic overrides.

Configuration loading priority (highest to lowest):
1. Programmatic overrides (passed to UnideployConfig constructor)
2. Environment variables (UNIDEPLOY_* prefix)
3. TOML configuration file
4. Default values defined in this module

Example TOML configuration:
    [registry]
    path = "/opt/unideploy/service-registry.json"
    write_lock_timeout_seconds = 30

    [deploy]
    base_dir = "/opt/unideploy/apps"
    multi_stage = true

Example environment variable override:
    UNIDEPLOY_REGISTRY__PATH="/var/lib/unideploy/registry.json"
    UNIDEPLOY_DEPLOY__KEEP_BACKUP=true
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import tomli
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_ROOT = Path("/opt/unideploy")


class RegistryConfig(BaseSettings):
    """Service registry and lock configuration.

    Attributes:
        path: Location of the registry JSON document
        write_lock_timeout_seconds: Maximum wait for the registry write lock
        read_lock_timeout_seconds: Maximum wait for the registry read lock
        stale_lock_seconds: Age after which a lock is considered abandoned
        initial_poll_seconds: First backoff delay while a lock is contended
        max_poll_seconds: Upper bound for the backoff delay
    """

    model_config = SettingsConfigDict(
        env_prefix="UNIDEPLOY_REGISTRY__",
        extra="forbid",
    )

    path: Path = Field(default=DEFAULT_ROOT / "service-registry.json")
    write_lock_timeout_seconds: float = Field(default=30.0, gt=0.0, le=600.0)
    read_lock_timeout_seconds: float = Field(default=10.0, gt=0.0, le=600.0)
    stale_lock_seconds: float = Field(default=300.0, gt=0.0, le=86400.0)
    initial_poll_seconds: float = Field(default=0.1, gt=0.0, le=10.0)
    max_poll_seconds: float = Field(default=2.0, gt=0.0, le=60.0)


class DeployConfig(BaseSettings):
    """Deployment orchestration configuration.

    Attributes:
        base_dir: Directory holding one production directory per app
        data_dir: Directory holding one persistent data directory per app
        backup_grace_seconds: How long a backup survives a successful deployment
        keep_backup: Never delete backups after a successful deployment
        auto_rollback: Roll back automatically when deployment or verification fails
        multi_stage: Use staging/cutover deployments by default
        min_free_disk_mb: Minimum free disk space required by preflight
        compose_timeout_seconds: Timeout for docker compose invocations
        hook_max_attempts: Attempts per hook callback before it counts as failed
        hook_retry_delay_seconds: Delay between hook callback attempts
        deploy_lock_timeout_seconds: Maximum wait for the per-app deployment lock
    """

    model_config = SettingsConfigDict(
        env_prefix="UNIDEPLOY_DEPLOY__",
        extra="forbid",
    )

    base_dir: Path = Field(default=DEFAULT_ROOT / "apps")
    data_dir: Path = Field(default=DEFAULT_ROOT / "data")
    backup_grace_seconds: float = Field(default=300.0, ge=0.0, le=86400.0)
    keep_backup: bool = Field(default=False)
    auto_rollback: bool = Field(default=True)
    multi_stage: bool = Field(default=False)
    min_free_disk_mb: int = Field(default=1000, ge=0)
    compose_timeout_seconds: int = Field(default=300, ge=10, le=3600)
    hook_max_attempts: int = Field(default=1, ge=1, le=10)
    hook_retry_delay_seconds: float = Field(default=1.0, ge=0.0, le=60.0)
    deploy_lock_timeout_seconds: float = Field(default=60.0, gt=0.0, le=3600.0)


class HealthConfig(BaseSettings):
    """Health checker configuration.

    Attributes:
        interval_seconds: Poll interval during the first phase of a check
        slow_interval_seconds: Poll interval once slow_after_seconds have elapsed
        slow_after_seconds: Elapsed time after which polling slows down
        request_timeout_seconds: Timeout of a single HTTP/TCP probe
        default_timeout_seconds: Overall timeout when a deployment does not set one
        verify_attempts: Attempts used by post-cutover verification
        max_log_lines: Container log lines collected for diagnostics
    """

    model_config = SettingsConfigDict(
        env_prefix="UNIDEPLOY_HEALTH__",
        extra="forbid",
    )

    interval_seconds: float = Field(default=5.0, gt=0.0, le=300.0)
    slow_interval_seconds: float = Field(default=10.0, gt=0.0, le=600.0)
    slow_after_seconds: float = Field(default=30.0, ge=0.0, le=3600.0)
    request_timeout_seconds: float = Field(default=5.0, gt=0.0, le=120.0)
    default_timeout_seconds: float = Field(default=60.0, gt=0.0, le=3600.0)
    verify_attempts: int = Field(default=8, ge=1, le=50)
    max_log_lines: int = Field(default=20, ge=0, le=1000)


class DependencyConfig(BaseSettings):
    """Service dependency waiting configuration.

    Attributes:
        timeout_seconds: Overall timeout for waiting on all dependencies
        parallel: Check independent dependencies concurrently
        max_concurrency: Upper bound on concurrent dependency probes
    """

    model_config = SettingsConfigDict(
        env_prefix="UNIDEPLOY_DEPENDENCIES__",
        extra="forbid",
    )

    timeout_seconds: float = Field(default=120.0, gt=0.0, le=3600.0)
    parallel: bool = Field(default=True)
    max_concurrency: int = Field(default=4, ge=1, le=64)


class ProxyConfig(BaseSettings):
    """Reverse-proxy and certificate configuration.

    Attributes:
        config_dir: Directory receiving one nginx config file per app
        certs_dir: Directory holding <server_name>/fullchain.pem and privkey.pem
        reload_command: Command used to reload the proxy
        self_signed_days: Validity of generated self-signed certificates
    """

    model_config = SettingsConfigDict(
        env_prefix="UNIDEPLOY_PROXY__",
        extra="forbid",
    )

    config_dir: Path = Field(default=DEFAULT_ROOT / "nginx" / "conf.d")
    certs_dir: Path = Field(default=DEFAULT_ROOT / "certs")
    reload_command: list[str] = Field(
        default_factory=lambda: ["docker", "exec", "nginx-proxy", "nginx", "-s", "reload"]
    )
    self_signed_days: int = Field(default=365, ge=1, le=3650)


class PluginConfig(BaseSettings):
    """Plugin discovery configuration.

    Attributes:
        directory: Optional directory scanned for plugin modules
        enabled: Plugins activated for every deployment
        entry_point_group: importlib.metadata entry point group for installed plugins
    """

    model_config = SettingsConfigDict(
        env_prefix="UNIDEPLOY_PLUGINS__",
        extra="forbid",
    )

    directory: Path | None = Field(default=None)
    enabled: list[str] = Field(default_factory=list)
    entry_point_group: str = Field(default="unideploy.plugins")


class DockerConfig(BaseSettings):
    """Docker operations configuration.

    Attributes:
        rootless: Use rootless Docker daemon
        stop_timeout_seconds: Grace period given to containers on stop
    """

    model_config = SettingsConfigDict(
        env_prefix="UNIDEPLOY_DOCKER__",
        extra="forbid",
    )

    rootless: bool = Field(default=False)
    stop_timeout_seconds: int = Field(default=30, ge=1, le=600)


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
        env_prefix="UNIDEPLOY_LOGGING__",
        extra="forbid",
    )

    level: str = Field(default="INFO")
    format: str = Field(default="console")
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


class UnideployConfig(BaseSettings):
    """Root configuration for Unideploy.

    Aggregates all subsystem configurations. Configuration can be loaded from:
    1. TOML files (using load_config function)
    2. Environment variables (UNIDEPLOY_* prefix)
    3. Direct instantiation with keyword arguments

    Environment variable format for nested config:
        UNIDEPLOY_<SECTION>__<KEY>=value
    """

    model_config = SettingsConfigDict(
        env_prefix="UNIDEPLOY_",
        env_nested_delimiter="__",
        extra="forbid",
    )

    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    deploy: DeployConfig = Field(default_factory=DeployConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    dependencies: DependencyConfig = Field(default_factory=DependencyConfig)
    proxy: ProxyConfig = Field(default_factory=ProxyConfig)
    plugins: PluginConfig = Field(default_factory=PluginConfig)
    docker: DockerConfig = Field(default_factory=DockerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(config_path: Path | None = None) -> UnideployConfig:
    """Load configuration from TOML file with environment variable overrides.

    Configuration search order (first found is used):
    1. config_path if explicitly provided
    2. ./unideploy.toml (current directory)
    3. ~/.config/unideploy/config.toml (user config directory)

    Args:
        config_path: Explicit path to TOML config file. If None, searches
                    default locations.

    Returns:
        UnideployConfig: Fully resolved configuration instance.

    Raises:
        FileNotFoundError: If config_path is explicitly provided but doesn't exist.
        ValueError: If TOML file contains invalid configuration.
    """
    toml_data: dict[str, Any] = {}

    if config_path is not None:
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        selected_path: Path | None = config_path
    else:
        search_paths = [
            Path.cwd() / "unideploy.toml",
            Path.home() / ".config" / "unideploy" / "config.toml",
        ]
        selected_path = next((p for p in search_paths if p.exists()), None)

    if selected_path is not None:
        with open(selected_path, "rb") as f:
            toml_data = tomli.load(f)

    try:
        return UnideployConfig(**toml_data)
    except Exception as e:
        if selected_path:
            raise ValueError(f"Invalid configuration in {selected_path}: {e}") from e
        raise ValueError(f"Invalid configuration: {e}") from e
