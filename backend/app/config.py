"""Gigchat application configuration.

Loads settings from a single YAML file:
  * gigchat.settings.yaml: non-secret configuration

The path can be overridden with the GIGCHAT_SETTINGS environment variable.
The messaging core has no secrets of its own (the store is an embedded
DuckDB file and authentication happens in the gateway in front of us).
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("gigchat.settings.yaml")
SETTINGS_ENV_VAR = "GIGCHAT_SETTINGS"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def _settings_path() -> Path:
    override = os.environ.get(SETTINGS_ENV_VAR)
    return Path(override) if override else SETTINGS_FILE


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:         str  = "0.0.0.0"
    port:         int  = 8000
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: str = "info"

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        if getattr(logging, value.upper(), None) is None:
            raise ValueError(f"Unknown log level: {value}")
        return value


class StoreSettings(BaseModel):
    """Where the DuckDB message table lives (":memory:" for tests)."""
    db_path:           str = "messages.duckdb"
    default_page_size: int = Field(default=50, ge=1)
    max_page_size:     int = Field(default=100, ge=1)

    @model_validator(mode="after")
    def _page_sizes(self) -> "StoreSettings":
        if self.default_page_size > self.max_page_size:
            raise ValueError("default_page_size cannot exceed max_page_size")
        return self


class DeliverySettings(BaseModel):
    """Push retry policy for the delivery engine."""
    max_attempts:       int   = Field(default=3, ge=1)
    base_delay_seconds: float = Field(default=0.5, ge=0)
    max_delay_seconds:  float = Field(default=30.0, ge=0)


class MessagingSettings(BaseModel):
    max_content_length:        int   = Field(default=4000, ge=1)
    typing_timeout_seconds:    float = Field(default=2.0, gt=0)
    disconnect_grace_seconds:  float = Field(default=5.0, ge=0)
    heartbeat_timeout_seconds: float = Field(default=30.0, gt=0)
    heartbeat_sweep_seconds:   float = Field(default=10.0, gt=0)
    auth_timeout_seconds:      float = Field(default=30.0, gt=0)
    max_connections:           int   = Field(default=1000, ge=0)


class AppSettings(BaseModel):
    server:    ServerSettings    = Field(default_factory=ServerSettings)
    logging:   LoggingSettings   = Field(default_factory=LoggingSettings)
    store:     StoreSettings     = Field(default_factory=StoreSettings)
    messaging: MessagingSettings = Field(default_factory=MessagingSettings)
    delivery:  DeliverySettings  = Field(default_factory=DeliverySettings)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------

_config: Optional[AppSettings] = None


def load_settings(path: Optional[Path] = None) -> AppSettings:
    """Load *gigchat.settings.yaml* into a validated *AppSettings* object."""
    settings_data = _load_yaml(path or _settings_path())

    app_settings = AppSettings(**settings_data)
    logger.info(
        "Settings loaded (server=%s:%s, store=%s, max_attempts=%s)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.store.db_path,
        app_settings.delivery.max_attempts,
    )
    return app_settings


def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_settings()
    return _config


def reset_config() -> None:
    """Drop the cached settings so the next get_config() reloads them."""
    global _config
    _config = None
