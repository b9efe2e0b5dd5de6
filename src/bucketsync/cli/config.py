"""Configuration utilities for the bucketsync CLI.

This module provides shared configuration functions used across CLI commands.
The config file holds two sections, "store" and "engine"; credentials are
never written to it.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any

from bucketsync.core.config import ConfigError, EngineConfig, StoreConfig

if TYPE_CHECKING:
    from bucketsync.sync.engine import TransferEngine

HOME_ENV = "BUCKETSYNC_HOME"
ACCESS_KEY_ENV = "BUCKETSYNC_ACCESS_KEY_ID"
SECRET_KEY_ENV = "BUCKETSYNC_SECRET_ACCESS_KEY"


def get_config_dir() -> Path:
    """Get the configuration directory for bucketsync.

    Returns:
        Path to $BUCKETSYNC_HOME, or ~/.bucketsync by default.
    """
    override = os.environ.get(HOME_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".bucketsync"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def get_state_db() -> Path:
    """Get the path to the transfer state database."""
    return get_config_dir() / "state.db"


def load_config() -> dict[str, Any]:
    """Load configuration from config file."""
    config_file = get_config_file()
    if config_file.exists():
        return dict(json.loads(config_file.read_text()))
    return {}


def save_config(config: dict[str, Any]) -> None:
    """Save configuration to config file."""
    config_file = get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2))


def load_store_config() -> StoreConfig:
    """Build the store settings from the config file and environment.

    Raises:
        ConfigError: If the store was never configured.
    """
    data = load_config().get("store")
    if not data:
        raise ConfigError("No object store configured. Run 'bucketsync configure' first.")
    store = StoreConfig.from_dict(data)
    access_key = os.environ.get(ACCESS_KEY_ENV)
    secret_key = os.environ.get(SECRET_KEY_ENV)
    if access_key and secret_key:
        store.access_key = access_key
        store.secret_key = secret_key
    return store


def load_engine_config() -> EngineConfig:
    """Build the engine settings from the config file (defaults if absent)."""
    return EngineConfig.from_dict(load_config().get("engine", {}))


def open_engine() -> TransferEngine:
    """Create an engine over the configured store and the local state database.

    The engine is not started: callers decide whether pending transfers
    of earlier runs should be relaunched.

    Raises:
        ConfigError: If the configuration is missing or invalid.
    """
    from bucketsync.state import TransferStateStore
    from bucketsync.storage import create_object_store
    from bucketsync.sync.engine import TransferEngine

    store_config = load_store_config()
    engine_config = load_engine_config()
    try:
        store = create_object_store(store_config, engine_config)
    except ValueError as e:
        raise ConfigError(str(e)) from e
    state = TransferStateStore(get_state_db())
    return TransferEngine(store, state, engine_config)
