"""Berth configuration management.

Configuration sources (in priority order):
1. Environment variables (BERTH_ prefix)
2. Config file (config.yaml)
3. Defaults
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000


class DatabaseConfig(BaseModel):
    """Database configuration."""

    # SQLite by default; postgresql+asyncpg:// works as well
    url: str = "sqlite+aiosqlite:///./berth.db"
    echo: bool = False


class DockerConfig(BaseModel):
    """Docker driver configuration."""

    socket: str = "unix:///var/run/docker.sock"


class DriverConfig(BaseModel):
    """Driver layer configuration."""

    type: str = "docker"
    docker: DockerConfig = Field(default_factory=DockerConfig)


class LifecycleConfig(BaseModel):
    """Timeouts and convergence budgets for container actions.

    Timeouts are in seconds. The restart poll blocks the caller for at most
    ``restart_poll_attempts * restart_poll_interval`` seconds.
    """

    stop_timeout: int = Field(default=30, ge=0)
    force_stop_timeout: int = Field(default=0, ge=0)
    restart_timeout: int = Field(default=10, ge=0)

    restart_poll_attempts: int = Field(default=10, ge=1)
    restart_poll_interval: float = Field(default=1.0, ge=0)

    # When the runtime reports a health check, also wait for "healthy"
    require_healthy: bool = True


PortRange = tuple[int, int]


def _default_preferred_ranges() -> dict[int, PortRange]:
    return {
        80: (8080, 8089),  # HTTP
        443: (8443, 8449),  # HTTPS
        3306: (33060, 33069),  # MySQL
        5432: (54320, 54329),  # PostgreSQL
        27017: (27018, 27027),  # MongoDB
        6379: (63790, 63799),  # Redis
        3000: (3001, 3010),  # Node / Grafana
    }


class PortsConfig(BaseModel):
    """Port allocator configuration."""

    preferred_ranges: dict[int, PortRange] = Field(default_factory=_default_preferred_ranges)
    dynamic_range: PortRange = (49152, 65535)
    alternative_range: PortRange = (10000, 10999)

    # Interface used by the OS bind probe
    probe_host: str = "0.0.0.0"

    @field_validator("dynamic_range", "alternative_range")
    @classmethod
    def _check_range(cls, value: PortRange) -> PortRange:
        low, high = value
        if not (1 <= low <= high <= 65535):
            raise ValueError(f"invalid port range: {low}-{high}")
        return value

    @model_validator(mode="after")
    def _check_preferred(self) -> "PortsConfig":
        for desired, (low, high) in self.preferred_ranges.items():
            if not (1 <= low <= high <= 65535):
                raise ValueError(f"invalid preferred range for {desired}: {low}-{high}")
        return self


class VolumesConfig(BaseModel):
    """Volume reconciliation configuration."""

    # Soft-delete marker written into VolumeRecord.mountpoint
    tombstone_prefix: str = "DELETED_"

    # Runtime-side label carrying the owning account
    owner_label: str = "berth.owner"

    default_driver: str = "local"


class GCTaskConfig(BaseModel):
    """GC task-specific configuration."""

    enabled: bool = True


class GCConfig(BaseModel):
    """Background reconciliation configuration."""

    enabled: bool = True
    run_on_startup: bool = False
    interval_seconds: int = 300  # 5 minutes

    container_drift: GCTaskConfig = Field(default_factory=GCTaskConfig)
    volume_reconcile: GCTaskConfig = Field(default_factory=GCTaskConfig)


class SecurityConfig(BaseModel):
    """Caller identity configuration.

    Authentication happens upstream; Berth only reads the trusted identity
    headers set by the fronting proxy.
    """

    allow_anonymous: bool = True
    owner_header: str = "X-Owner"
    role_header: str = "X-Role"


class Settings(BaseSettings):
    """Berth application settings."""

    model_config = SettingsConfigDict(
        env_prefix="BERTH_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    server: ServerConfig = Field(default_factory=ServerConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    driver: DriverConfig = Field(default_factory=DriverConfig)
    lifecycle: LifecycleConfig = Field(default_factory=LifecycleConfig)
    ports: PortsConfig = Field(default_factory=PortsConfig)
    volumes: VolumesConfig = Field(default_factory=VolumesConfig)
    gc: GCConfig = Field(default_factory=GCConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)


def _load_config_file() -> dict:
    """Load configuration from YAML file if exists.

    Looks for config file in order:
    1. BERTH_CONFIG_FILE environment variable
    2. ./config.yaml
    3. /etc/berth/config.yaml
    """
    config_paths = [
        os.environ.get("BERTH_CONFIG_FILE"),
        Path("config.yaml"),
        Path("/etc/berth/config.yaml"),
    ]

    for path in config_paths:
        if path is None:
            continue
        path = Path(path)
        if path.exists():
            with open(path) as f:
                return yaml.safe_load(f) or {}

    return {}


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Configuration is loaded from:
    1. YAML config file (if exists)
    2. Environment variables (override)
    3. Defaults
    """
    file_config = _load_config_file()
    return Settings(**file_config)
