"""Configuration loading for colsync."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class NodeConfig:
    name: str = "colsync-node"


@dataclass
class ServerConfig:
    """Configuration for the sync HTTP server."""

    host: str = "0.0.0.0"
    port: int = 8080
    default_page_size: int = 100
    max_page_size: int = 1000


@dataclass
class StorageConfig:
    change_log_path: str = "~/.colsync/changes.db"
    records_path: str = "~/.colsync/records.db"


@dataclass
class ClockConfig:
    max_drift_ms: int = 60_000


@dataclass
class SyncConfig:
    """Configuration for the client side of sync."""

    enabled: bool = True
    remote_url: str = ""  # URL of the sync server
    user_id: str = ""
    sync_interval_minutes: int = 5
    retry_max_attempts: int = 3
    batch_size: int = 100
    compress: bool = False
    timeout_seconds: float = 30.0


@dataclass
class Config:
    node: NodeConfig = field(default_factory=NodeConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    clock: ClockConfig = field(default_factory=ClockConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with COLSYNC_ prefix."""
    return os.environ.get(f"COLSYNC_{key}", default)


def _as_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Node overrides
    if name := _get_env("NODE_NAME"):
        config.node.name = name

    # Server overrides
    if host := _get_env("SERVER_HOST"):
        config.server.host = host
    if port := _get_env("SERVER_PORT"):
        config.server.port = int(port)
    if default_page_size := _get_env("SERVER_DEFAULT_PAGE_SIZE"):
        config.server.default_page_size = int(default_page_size)
    if max_page_size := _get_env("SERVER_MAX_PAGE_SIZE"):
        config.server.max_page_size = int(max_page_size)

    # Storage overrides
    if change_log_path := _get_env("CHANGE_LOG_PATH"):
        config.storage.change_log_path = change_log_path
    if records_path := _get_env("RECORDS_PATH"):
        config.storage.records_path = records_path

    # Clock overrides
    if max_drift := _get_env("CLOCK_MAX_DRIFT_MS"):
        config.clock.max_drift_ms = int(max_drift)

    # Sync overrides
    if sync_enabled := _get_env("SYNC_ENABLED"):
        config.sync.enabled = _as_bool(sync_enabled)
    if remote_url := _get_env("SYNC_REMOTE_URL"):
        config.sync.remote_url = remote_url
    if user_id := _get_env("SYNC_USER_ID"):
        config.sync.user_id = user_id
    if sync_interval := _get_env("SYNC_INTERVAL"):
        config.sync.sync_interval_minutes = int(sync_interval)
    if retry_max := _get_env("SYNC_RETRY_MAX_ATTEMPTS"):
        config.sync.retry_max_attempts = int(retry_max)
    if batch_size := _get_env("SYNC_BATCH_SIZE"):
        config.sync.batch_size = int(batch_size)
    if compress := _get_env("SYNC_COMPRESS"):
        config.sync.compress = _as_bool(compress)
    if timeout := _get_env("SYNC_TIMEOUT_SECONDS"):
        config.sync.timeout_seconds = float(timeout)

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

            # Parse node config
            if "node" in data:
                config.node = NodeConfig(
                    name=data["node"].get("name", config.node.name)
                )

            # Parse server config
            if "server" in data:
                server_data = data["server"]
                config.server = ServerConfig(
                    host=server_data.get("host", config.server.host),
                    port=server_data.get("port", config.server.port),
                    default_page_size=server_data.get(
                        "default_page_size", config.server.default_page_size
                    ),
                    max_page_size=server_data.get(
                        "max_page_size", config.server.max_page_size
                    ),
                )

            # Parse storage config
            if "storage" in data:
                storage_data = data["storage"]
                config.storage = StorageConfig(
                    change_log_path=storage_data.get(
                        "change_log_path", config.storage.change_log_path
                    ),
                    records_path=storage_data.get(
                        "records_path", config.storage.records_path
                    ),
                )

            # Parse clock config
            if "clock" in data:
                config.clock = ClockConfig(
                    max_drift_ms=data["clock"].get(
                        "max_drift_ms", config.clock.max_drift_ms
                    )
                )

            # Parse sync config
            if "sync" in data:
                sync_data = data["sync"]
                config.sync = SyncConfig(
                    enabled=sync_data.get("enabled", config.sync.enabled),
                    remote_url=sync_data.get("remote_url", config.sync.remote_url),
                    user_id=sync_data.get("user_id", config.sync.user_id),
                    sync_interval_minutes=sync_data.get(
                        "sync_interval_minutes", config.sync.sync_interval_minutes
                    ),
                    retry_max_attempts=sync_data.get(
                        "retry_max_attempts", config.sync.retry_max_attempts
                    ),
                    batch_size=sync_data.get("batch_size", config.sync.batch_size),
                    compress=sync_data.get("compress", config.sync.compress),
                    timeout_seconds=sync_data.get(
                        "timeout_seconds", config.sync.timeout_seconds
                    ),
                )

    # Apply environment variable overrides
    config = _apply_env_overrides(config)

    # The default page can never exceed the cap
    if config.server.default_page_size > config.server.max_page_size:
        config.server.default_page_size = config.server.max_page_size

    return config
