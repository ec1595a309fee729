"""Configuration loading for tillsync."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class TerminalConfig:
    terminal_id: str = "terminal-1"
    store_id: str = ""


@dataclass
class SyncConfig:
    """Configuration for the terminal side of sync."""

    enabled: bool = True
    server_url: str = ""  # Base URL of the sync gateway
    api_key: str = ""
    sync_interval_seconds: int = 30
    connectivity_check_seconds: int = 10
    batch_size: int = 50
    max_retries: int = 3
    timeout_seconds: float = 30.0
    cycle_timeout_seconds: float = 120.0
    queue_db_path: str = "~/.tillsync/queue.db"
    local_db_path: str = "~/.tillsync/local.db"
    processed_retention_days: int = 7


@dataclass
class ServerConfig:
    """Configuration for the gateway and relay process."""

    host: str = "0.0.0.0"
    port: int = 8000
    db_path: str = "~/.tillsync/server.db"
    api_key: str = ""  # Empty disables the API key check


@dataclass
class RelayConfig:
    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"
    token_ttl_minutes: int = 720
    send_timeout_seconds: float = 5.0  # Per-frame limit before a slow socket loses it


@dataclass
class Config:
    terminal: TerminalConfig = field(default_factory=TerminalConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    relay: RelayConfig = field(default_factory=RelayConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with TILLSYNC_ prefix."""
    return os.environ.get(f"TILLSYNC_{key}", default)


def _is_true(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Terminal overrides
    if terminal_id := _get_env("TERMINAL_ID"):
        config.terminal.terminal_id = terminal_id
    if store_id := _get_env("STORE_ID"):
        config.terminal.store_id = store_id

    # Sync overrides
    if sync_enabled := _get_env("SYNC_ENABLED"):
        config.sync.enabled = _is_true(sync_enabled)
    if server_url := _get_env("SYNC_SERVER_URL"):
        config.sync.server_url = server_url
    if api_key := _get_env("SYNC_API_KEY"):
        config.sync.api_key = api_key
    if sync_interval := _get_env("SYNC_INTERVAL"):
        config.sync.sync_interval_seconds = int(sync_interval)
    if batch_size := _get_env("SYNC_BATCH_SIZE"):
        config.sync.batch_size = int(batch_size)
    if queue_db := _get_env("SYNC_QUEUE_DB_PATH"):
        config.sync.queue_db_path = queue_db
    if local_db := _get_env("SYNC_LOCAL_DB_PATH"):
        config.sync.local_db_path = local_db

    # Server overrides
    if host := _get_env("SERVER_HOST"):
        config.server.host = host
    if port := _get_env("SERVER_PORT"):
        config.server.port = int(port)
    if db_path := _get_env("SERVER_DB_PATH"):
        config.server.db_path = db_path
    if server_key := _get_env("SERVER_API_KEY"):
        config.server.api_key = server_key

    # Relay overrides
    if secret := _get_env("RELAY_JWT_SECRET"):
        config.relay.jwt_secret = secret
    if algorithm := _get_env("RELAY_JWT_ALGORITHM"):
        config.relay.jwt_algorithm = algorithm

    return config


def _section(data: dict, cls: type, current: Any) -> Any:
    """Build a section dataclass from YAML, keeping current values for missing keys."""
    values = {
        name: data.get(name, getattr(current, name))
        for name in current.__dataclass_fields__
    }
    return cls(**values)


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None or missing, uses defaults.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            if "terminal" in data:
                config.terminal = _section(data["terminal"] or {}, TerminalConfig, config.terminal)

            if "sync" in data:
                config.sync = _section(data["sync"] or {}, SyncConfig, config.sync)

            if "server" in data:
                config.server = _section(data["server"] or {}, ServerConfig, config.server)

            if "relay" in data:
                config.relay = _section(data["relay"] or {}, RelayConfig, config.relay)

    # Apply environment variable overrides
    config = _apply_env_overrides(config)

    # Terminals without their own key reuse the server key (single-box setups)
    if not config.sync.api_key and config.server.api_key:
        config.sync.api_key = config.server.api_key

    return config
