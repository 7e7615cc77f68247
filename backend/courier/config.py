"""Courier application configuration.

Loads settings from ``courier.settings.yaml`` (non-secret configuration).
A missing file is not an error: every section has working defaults so the
service can start with an in-repo database for local development.

Sections:
  * server: bind address and CORS origins
  * logging: root log level
  * database: DuckDB file location
  * delivery: heartbeat, outbound queues, catch-up paging
  * persistence: append retry policy
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("courier.settings.yaml")

MEMORY_DATABASE = ":memory:"


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
    host:            str = "0.0.0.0"
    port:            int = 8000
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: str = "info"

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        if getattr(logging, value.upper(), None) is None:
            raise ValueError(f"Unknown log level: {value}")
        return value.lower()


class DatabaseSettings(BaseModel):
    path: str = "courier.duckdb"


class DeliverySettings(BaseModel):
    """Live delivery tuning: liveness, outbound queues, catch-up paging."""
    heartbeat_timeout_seconds: float = Field(default=30.0, gt=0)
    reap_interval_seconds:     float = Field(default=10.0, gt=0)
    outbound_queue_size:       int   = Field(default=256, ge=1)
    overflow_policy:           Literal["drop_oldest", "disconnect"] = "drop_oldest"
    catch_up_default_limit:    int   = Field(default=500, ge=1)
    catch_up_max_limit:        int   = Field(default=500, ge=1)
    drain_timeout_seconds:     float = Field(default=5.0, ge=0)
    dedup_cache_size:          int   = Field(default=10000, ge=0)

    @model_validator(mode="after")
    def _default_within_max(self) -> "DeliverySettings":
        if self.catch_up_default_limit > self.catch_up_max_limit:
            raise ValueError(
                "catch_up_default_limit must not exceed catch_up_max_limit"
            )
        return self


class PersistenceSettings(BaseModel):
    append_max_attempts:    int   = Field(default=3, ge=1)
    append_backoff_seconds: float = Field(default=0.05, ge=0)


class AppConfig(BaseModel):
    server:      ServerSettings      = Field(default_factory=ServerSettings)
    logging:     LoggingSettings     = Field(default_factory=LoggingSettings)
    database:    DatabaseSettings    = Field(default_factory=DatabaseSettings)
    delivery:    DeliverySettings    = Field(default_factory=DeliverySettings)
    persistence: PersistenceSettings = Field(default_factory=PersistenceSettings)


# ---------------------------------------------------------------------------
# Path resolution
# ---------------------------------------------------------------------------


def _resolve_database_path(config: AppConfig, settings_path: Path) -> None:
    """Resolve a relative database path against the settings file directory."""
    raw = config.database.path
    if raw == MEMORY_DATABASE:
        return
    path = Path(raw)
    if not path.is_absolute():
        path = settings_path.resolve().parent / path
    config.database.path = str(path)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------

_config: Optional[AppConfig] = None


def load_config(settings_path: Optional[Path] = None) -> AppConfig:
    """Load ``courier.settings.yaml`` into an *AppConfig* object."""
    path = Path(settings_path) if settings_path is not None else SETTINGS_FILE
    config = AppConfig(**_load_yaml(path))
    _resolve_database_path(config, path)
    logger.info(
        "Settings loaded (server=%s:%s, database=%s, heartbeat=%ss, overflow=%s)",
        config.server.host,
        config.server.port,
        config.database.path,
        config.delivery.heartbeat_timeout_seconds,
        config.delivery.overflow_policy,
    )
    return config


def get_config() -> AppConfig:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Forget the cached config (used by tests)."""
    global _config
    _config = None
