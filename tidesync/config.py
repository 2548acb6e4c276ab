"""Configuration loading for tidesync."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class NodeConfig:
    name: str = "tidesync-client"


@dataclass
class StoreConfig:
    """Configuration for the local SQLite store."""

    db_path: str = "~/.tidesync/sync.db"
    log_retention_days: int = 7
    purge_done_after_days: int = 30


@dataclass
class RemoteConfig:
    base_url: str = "http://localhost:8787"
    auth_token: str | None = None
    request_timeout_seconds: float = 30.0


@dataclass
class SyncConfig:
    """Configuration for the sync worker."""

    max_retries: int = 5
    base_delay_ms: int = 2000
    batch_size: int = 10
    scope_id: str | None = None  # None pulls the global scope
    lease_enabled: bool = False  # Only needed when several processes share a store
    lease_ttl_seconds: int = 300

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError(f"max_retries must be >= 1, got {self.max_retries}")
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be >= 0, got {self.base_delay_ms}")


@dataclass
class SchedulerConfig:
    enabled: bool = True
    minimum_interval_minutes: int = 15
    initial_delay_seconds: float = 0.0


@dataclass
class Config:
    node: NodeConfig = field(default_factory=NodeConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with TIDESYNC_ prefix."""
    return os.environ.get(f"TIDESYNC_{key}", default)


def _as_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    if name := _get_env("NODE_NAME"):
        config.node.name = name

    # Store overrides
    if db_path := _get_env("DB_PATH"):
        config.store.db_path = db_path
    if retention := _get_env("LOG_RETENTION_DAYS"):
        config.store.log_retention_days = int(retention)

    # Remote overrides
    if url := _get_env("REMOTE_URL"):
        config.remote.base_url = url
    if token := _get_env("AUTH_TOKEN"):
        config.remote.auth_token = token
    if timeout := _get_env("REQUEST_TIMEOUT"):
        config.remote.request_timeout_seconds = float(timeout)

    # Sync overrides
    if max_retries := _get_env("MAX_RETRIES"):
        config.sync.max_retries = int(max_retries)
    if base_delay := _get_env("BASE_DELAY_MS"):
        config.sync.base_delay_ms = int(base_delay)
    if batch_size := _get_env("BATCH_SIZE"):
        config.sync.batch_size = int(batch_size)
    if scope_id := _get_env("SCOPE_ID"):
        config.sync.scope_id = scope_id
    if lease_enabled := _get_env("LEASE_ENABLED"):
        config.sync.lease_enabled = _as_bool(lease_enabled)

    # Scheduler overrides
    if scheduler_enabled := _get_env("SCHEDULER_ENABLED"):
        config.scheduler.enabled = _as_bool(scheduler_enabled)
    if interval := _get_env("SYNC_INTERVAL"):
        config.scheduler.minimum_interval_minutes = int(interval)

    # Re-run validation after overrides
    config.sync.__post_init__()

    return config


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded and validated Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            if "node" in data:
                config.node = NodeConfig(
                    name=data["node"].get("name", config.node.name)
                )

            if "store" in data:
                store_data = data["store"]
                config.store = StoreConfig(
                    db_path=store_data.get("db_path", config.store.db_path),
                    log_retention_days=store_data.get(
                        "log_retention_days", config.store.log_retention_days
                    ),
                    purge_done_after_days=store_data.get(
                        "purge_done_after_days", config.store.purge_done_after_days
                    ),
                )

            if "remote" in data:
                remote_data = data["remote"]
                config.remote = RemoteConfig(
                    base_url=remote_data.get("base_url", config.remote.base_url),
                    auth_token=remote_data.get("auth_token"),
                    request_timeout_seconds=remote_data.get(
                        "request_timeout_seconds",
                        config.remote.request_timeout_seconds,
                    ),
                )

            if "sync" in data:
                sync_data = data["sync"]
                config.sync = SyncConfig(
                    max_retries=sync_data.get("max_retries", config.sync.max_retries),
                    base_delay_ms=sync_data.get(
                        "base_delay_ms", config.sync.base_delay_ms
                    ),
                    batch_size=sync_data.get("batch_size", config.sync.batch_size),
                    scope_id=sync_data.get("scope_id", config.sync.scope_id),
                    lease_enabled=sync_data.get(
                        "lease_enabled", config.sync.lease_enabled
                    ),
                    lease_ttl_seconds=sync_data.get(
                        "lease_ttl_seconds", config.sync.lease_ttl_seconds
                    ),
                )

            if "scheduler" in data:
                sched_data = data["scheduler"]
                config.scheduler = SchedulerConfig(
                    enabled=sched_data.get("enabled", config.scheduler.enabled),
                    minimum_interval_minutes=sched_data.get(
                        "minimum_interval_minutes",
                        config.scheduler.minimum_interval_minutes,
                    ),
                    initial_delay_seconds=sched_data.get(
                        "initial_delay_seconds",
                        config.scheduler.initial_delay_seconds,
                    ),
                )

    return _apply_env_overrides(config)
