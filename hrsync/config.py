"""Configuration loading for hrsync."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# Routes of the HR system of record
DEFAULT_ENTITY_PATHS = {
    "employee": "/employees",
    "attendance": "/attendance",
    "leave": "/leave",
    "payroll": "/payroll",
    "performance": "/performance",
    "document": "/documents",
    "onboarding": "/onboarding",
    "asset": "/assets",
}


@dataclass
class ServiceConfig:
    name: str = "hrsync"


@dataclass
class RemoteConfig:
    """Connection to the remote HR system of record."""

    base_url: str = ""
    timeout_seconds: float = 30.0
    max_retries: int = 3
    api_token: str | None = None
    entity_paths: dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_ENTITY_PATHS)
    )
    """Per entity type URL path; unknown types use /<type>s"""

    natural_keys: dict[str, str] = field(
        default_factory=lambda: {"employee": "email"}
    )
    """Field used to match independently created records"""

    def path_for(self, entity_type: str) -> str:
        return self.entity_paths.get(entity_type, f"/{entity_type}s")


@dataclass
class SyncConfig:
    """Configuration for the operation log and sync cycles."""

    db_path: str = "~/.hrsync/sync.db"
    batch_size: int = 50
    auto_sync: bool = False
    auto_sync_interval_seconds: int = 60
    operation_timeout_seconds: float = 30.0
    max_retries: int = 3
    retention_days: int = 30


@dataclass
class DashboardConfig:
    host: str = "127.0.0.1"
    port: int = 8080


@dataclass
class Config:
    service: ServiceConfig = field(default_factory=ServiceConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    dashboard: DashboardConfig = field(default_factory=DashboardConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with HRSYNC_ prefix."""
    return os.environ.get(f"HRSYNC_{key}", default)


def _is_true(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    if name := _get_env("SERVICE_NAME"):
        config.service.name = name

    # Remote overrides
    if base_url := _get_env("REMOTE_URL"):
        config.remote.base_url = base_url
    if token := _get_env("REMOTE_API_TOKEN"):
        config.remote.api_token = token
    if timeout := _get_env("REMOTE_TIMEOUT"):
        config.remote.timeout_seconds = float(timeout)
    if retries := _get_env("REMOTE_MAX_RETRIES"):
        config.remote.max_retries = int(retries)

    # Sync overrides
    if db_path := _get_env("SYNC_DB_PATH"):
        config.sync.db_path = db_path
    if batch_size := _get_env("SYNC_BATCH_SIZE"):
        config.sync.batch_size = int(batch_size)
    if auto_sync := _get_env("SYNC_AUTO"):
        config.sync.auto_sync = _is_true(auto_sync)
    if interval := _get_env("SYNC_INTERVAL"):
        config.sync.auto_sync_interval_seconds = int(interval)

    # Dashboard overrides
    if host := _get_env("DASHBOARD_HOST"):
        config.dashboard.host = host
    if port := _get_env("DASHBOARD_PORT"):
        config.dashboard.port = int(port)

    return config


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            if "service" in data:
                config.service = ServiceConfig(
                    name=data["service"].get("name", config.service.name)
                )

            # Parse remote config
            if "remote" in data:
                remote_data = data["remote"]
                defaults = RemoteConfig()
                config.remote = RemoteConfig(
                    base_url=remote_data.get("base_url", defaults.base_url),
                    timeout_seconds=remote_data.get(
                        "timeout_seconds", defaults.timeout_seconds
                    ),
                    max_retries=remote_data.get("max_retries", defaults.max_retries),
                    api_token=remote_data.get("api_token"),
                    entity_paths={
                        **defaults.entity_paths,
                        **(remote_data.get("entity_paths") or {}),
                    },
                    natural_keys=remote_data.get(
                        "natural_keys", defaults.natural_keys
                    ),
                )

            # Parse sync config
            if "sync" in data:
                sync_data = data["sync"]
                config.sync = SyncConfig(
                    db_path=sync_data.get("db_path", config.sync.db_path),
                    batch_size=sync_data.get("batch_size", config.sync.batch_size),
                    auto_sync=sync_data.get("auto_sync", config.sync.auto_sync),
                    auto_sync_interval_seconds=sync_data.get(
                        "auto_sync_interval_seconds",
                        config.sync.auto_sync_interval_seconds,
                    ),
                    operation_timeout_seconds=sync_data.get(
                        "operation_timeout_seconds",
                        config.sync.operation_timeout_seconds,
                    ),
                    max_retries=sync_data.get("max_retries", config.sync.max_retries),
                    retention_days=sync_data.get(
                        "retention_days", config.sync.retention_days
                    ),
                )

            if "dashboard" in data:
                dash_data = data["dashboard"]
                config.dashboard = DashboardConfig(
                    host=dash_data.get("host", config.dashboard.host),
                    port=dash_data.get("port", config.dashboard.port),
                )

    return _apply_env_overrides(config)
