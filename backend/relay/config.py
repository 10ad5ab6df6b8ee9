"""Relay application configuration.

Loads non-secret settings from ``relay.settings.yaml`` (override the path
with the ``RELAY_SETTINGS`` environment variable). A missing file is not an
error: every section falls back to its defaults.
"""
from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("relay.settings.yaml")
SETTINGS_ENV_VAR = "RELAY_SETTINGS"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 9002
    allowed_origins: List[str] = Field(default_factory=lambda: ["http://localhost:9002"])


class LoggingSettings(BaseModel):
    level: str = "info"


class RelaySettings(BaseModel):
    """Live fan-out tuning."""
    outbound_queue_size: int = 256

    @field_validator("outbound_queue_size")
    @classmethod
    def _positive_queue(cls, value: int) -> int:
        if value < 1:
            raise ValueError("outbound_queue_size must be at least 1")
        return value


class StorageSettings(BaseModel):
    """Message store (DuckDB) settings."""
    enabled: bool = True
    db_path: str  = "relay_messages.duckdb"


class AppConfig(BaseModel):
    server:  ServerSettings  = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    relay:   RelaySettings   = Field(default_factory=RelaySettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)


# ---------------------------------------------------------------------------
# Public loaders
# ---------------------------------------------------------------------------


def _resolve_db_path(db_path: str, settings_path: Path) -> str:
    # In-memory DuckDB and absolute paths are used verbatim.
    if db_path == ":memory:" or Path(db_path).is_absolute():
        return db_path
    return str(settings_path.resolve().parent / db_path)


def load_config(settings_path: Optional[Path] = None) -> AppConfig:
    """Build a fresh *AppConfig* from the settings file.

    Args:
        settings_path: Explicit settings file. Defaults to ``$RELAY_SETTINGS``
            or ``relay.settings.yaml`` in the working directory.

    Returns:
        The validated configuration.
    """
    if settings_path is None:
        settings_path = Path(os.environ.get(SETTINGS_ENV_VAR, SETTINGS_FILE))
    settings_path = Path(settings_path)

    data = _load_yaml(settings_path)
    config = AppConfig(**data)

    if settings_path.exists():
        config.storage.db_path = _resolve_db_path(config.storage.db_path, settings_path)

    logger.info(
        "Settings loaded (server=%s:%s, storage.enabled=%s, queue=%d)",
        config.server.host,
        config.server.port,
        config.storage.enabled,
        config.relay.outbound_queue_size,
    )
    return config


@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """Return the process-wide configuration (loaded once)."""
    return load_config()
