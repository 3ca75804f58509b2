"""Configuration loading for crdtrelay."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8006
    cors_origins: list[str] = field(default_factory=lambda: ["*"])
    max_body_bytes: int = 20 * 1024 * 1024


@dataclass
class StorageConfig:
    """Configuration for the SQLite message log."""

    db_path: str = "~/.crdtrelay/db.sqlite"
    busy_timeout_seconds: float = 5.0


@dataclass
class ClockConfig:
    max_drift_ms: int = 60 * 1000


@dataclass
class ClientConfig:
    """Configuration for a replica syncing against a relay."""

    server_url: str = "http://localhost:8006"
    group_id: str = ""
    replica_id: str = ""  # Generated when empty
    retry_max_attempts: int = 3
    timeout_seconds: float = 30.0
    index_keep: int = 2  # Children kept per trie level when sending; 0 sends all


@dataclass
class Config:
    server: ServerConfig = field(default_factory=ServerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    clock: ClockConfig = field(default_factory=ClockConfig)
    client: ClientConfig = field(default_factory=ClientConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with CRDTRELAY_ prefix."""
    return os.environ.get(f"CRDTRELAY_{key}", default)


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Server overrides
    if host := _get_env("HOST"):
        config.server.host = host
    if port := _get_env("PORT"):
        config.server.port = int(port)
    if origins := _get_env("CORS_ORIGINS"):
        config.server.cors_origins = [o.strip() for o in origins.split(",") if o.strip()]
    if max_body := _get_env("MAX_BODY_BYTES"):
        config.server.max_body_bytes = int(max_body)

    # Storage overrides
    if db_path := _get_env("DB_PATH"):
        config.storage.db_path = db_path
    if busy_timeout := _get_env("BUSY_TIMEOUT"):
        config.storage.busy_timeout_seconds = float(busy_timeout)

    if max_drift := _get_env("MAX_DRIFT_MS"):
        config.clock.max_drift_ms = int(max_drift)

    # Client overrides
    if server_url := _get_env("SERVER_URL"):
        config.client.server_url = server_url
    if group_id := _get_env("GROUP_ID"):
        config.client.group_id = group_id
    if replica_id := _get_env("REPLICA_ID"):
        config.client.replica_id = replica_id
    if index_keep := _get_env("INDEX_KEEP"):
        config.client.index_keep = int(index_keep)

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

            if "server" in data:
                server_data = data["server"]
                config.server = ServerConfig(
                    host=server_data.get("host", config.server.host),
                    port=server_data.get("port", config.server.port),
                    cors_origins=server_data.get(
                        "cors_origins", config.server.cors_origins
                    ),
                    max_body_bytes=server_data.get(
                        "max_body_bytes", config.server.max_body_bytes
                    ),
                )

            if "storage" in data:
                storage_data = data["storage"]
                config.storage = StorageConfig(
                    db_path=storage_data.get("db_path", config.storage.db_path),
                    busy_timeout_seconds=storage_data.get(
                        "busy_timeout_seconds", config.storage.busy_timeout_seconds
                    ),
                )

            if "clock" in data:
                config.clock = ClockConfig(
                    max_drift_ms=data["clock"].get(
                        "max_drift_ms", config.clock.max_drift_ms
                    )
                )

            if "client" in data:
                client_data = data["client"]
                config.client = ClientConfig(
                    server_url=client_data.get("server_url", config.client.server_url),
                    group_id=client_data.get("group_id", config.client.group_id),
                    replica_id=client_data.get("replica_id", config.client.replica_id),
                    retry_max_attempts=client_data.get(
                        "retry_max_attempts", config.client.retry_max_attempts
                    ),
                    timeout_seconds=client_data.get(
                        "timeout_seconds", config.client.timeout_seconds
                    ),
                    index_keep=client_data.get("index_keep", config.client.index_keep),
                )

    return _apply_env_overrides(config)
