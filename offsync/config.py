"""Configuration loading for offsync."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class StoreConfig:
    db_path: str = "~/.offsync/offsync.db"


@dataclass
class TransportConfig:
    base_url: str = ""
    timeout_seconds: float = 30.0
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class ConnectivityConfig:
    """Configuration for connectivity detection."""

    probe_url: str = ""  # Defaults to transport.base_url
    probe_interval_seconds: float = 15.0
    probe_timeout_seconds: float = 5.0
    guard_interval_seconds: float = 2.0  # Online must hold this long to count


@dataclass
class QueueConfig:
    max_retries: int = 3
    max_size: int = 100


@dataclass
class SyncConfig:
    """Configuration for the drain scheduler."""

    auto_sync: bool = True
    backoff_base_seconds: float = 2.0
    backoff_max_seconds: float = 60.0


@dataclass
class Config:
    store: StoreConfig = field(default_factory=StoreConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)
    connectivity: ConnectivityConfig = field(default_factory=ConnectivityConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)

    @property
    def probe_url(self) -> str:
        return self.connectivity.probe_url or self.transport.base_url


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with OFFSYNC_ prefix."""
    return os.environ.get(f"OFFSYNC_{key}", default)


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    if db_path := _get_env("DB_PATH"):
        config.store.db_path = db_path

    # Transport overrides
    if base_url := _get_env("BASE_URL"):
        config.transport.base_url = base_url
    if timeout := _get_env("TIMEOUT"):
        config.transport.timeout_seconds = float(timeout)

    # Connectivity overrides
    if probe_url := _get_env("PROBE_URL"):
        config.connectivity.probe_url = probe_url
    if probe_interval := _get_env("PROBE_INTERVAL"):
        config.connectivity.probe_interval_seconds = float(probe_interval)
    if guard := _get_env("GUARD_INTERVAL"):
        config.connectivity.guard_interval_seconds = float(guard)

    # Queue overrides
    if max_retries := _get_env("MAX_RETRIES"):
        config.queue.max_retries = int(max_retries)
    if max_size := _get_env("QUEUE_MAX_SIZE"):
        config.queue.max_size = int(max_size)

    # Sync overrides
    if auto_sync := _get_env("AUTO_SYNC"):
        config.sync.auto_sync = auto_sync.lower() in ("true", "1", "yes")
    if backoff_base := _get_env("BACKOFF_BASE"):
        config.sync.backoff_base_seconds = float(backoff_base)
    if backoff_max := _get_env("BACKOFF_MAX"):
        config.sync.backoff_max_seconds = float(backoff_max)

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

            if "store" in data:
                config.store = StoreConfig(
                    db_path=data["store"].get("db_path", config.store.db_path)
                )

            # Parse transport config
            if "transport" in data:
                transport_data = data["transport"]
                config.transport = TransportConfig(
                    base_url=transport_data.get("base_url", config.transport.base_url),
                    timeout_seconds=transport_data.get(
                        "timeout_seconds", config.transport.timeout_seconds
                    ),
                    headers=dict(transport_data.get("headers") or {}),
                )

            # Parse connectivity config
            if "connectivity" in data:
                conn_data = data["connectivity"]
                config.connectivity = ConnectivityConfig(
                    probe_url=conn_data.get("probe_url", config.connectivity.probe_url),
                    probe_interval_seconds=conn_data.get(
                        "probe_interval_seconds",
                        config.connectivity.probe_interval_seconds,
                    ),
                    probe_timeout_seconds=conn_data.get(
                        "probe_timeout_seconds",
                        config.connectivity.probe_timeout_seconds,
                    ),
                    guard_interval_seconds=conn_data.get(
                        "guard_interval_seconds",
                        config.connectivity.guard_interval_seconds,
                    ),
                )

            # Parse queue config
            if "queue" in data:
                queue_data = data["queue"]
                config.queue = QueueConfig(
                    max_retries=queue_data.get("max_retries", config.queue.max_retries),
                    max_size=queue_data.get("max_size", config.queue.max_size),
                )

            # Parse sync config
            if "sync" in data:
                sync_data = data["sync"]
                config.sync = SyncConfig(
                    auto_sync=sync_data.get("auto_sync", config.sync.auto_sync),
                    backoff_base_seconds=sync_data.get(
                        "backoff_base_seconds", config.sync.backoff_base_seconds
                    ),
                    backoff_max_seconds=sync_data.get(
                        "backoff_max_seconds", config.sync.backoff_max_seconds
                    ),
                )

    return _apply_env_overrides(config)
