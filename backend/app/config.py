"""Chat backend configuration.

Settings are read from a single YAML file, ``chat.settings.yaml``. The path
can be overridden with the ``CHAT_SETTINGS_PATH`` environment variable or by
passing ``settings_path`` to ``load_config``. A missing file yields defaults.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("chat.settings.yaml")
SETTINGS_ENV_VAR = "CHAT_SETTINGS_PATH"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerConfig(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 8000
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingConfig(BaseModel):
    level: str = "info"

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        if value.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {value}")
        return value.lower()


class ChatConfig(BaseModel):
    """Limits of the in-memory chat core."""
    history_limit:        int  = Field(default=1000, ge=1)
    snapshot_size:        int  = Field(default=50, ge=0)
    max_page_size:        int  = Field(default=100, ge=1)
    notify_room_contacts: bool = True


class IdentityConfig(BaseModel):
    lookup_timeout_seconds: float = Field(default=5.0, gt=0)


class AppConfig(BaseModel):
    server:   ServerConfig   = Field(default_factory=ServerConfig)
    logging:  LoggingConfig  = Field(default_factory=LoggingConfig)
    chat:     ChatConfig     = Field(default_factory=ChatConfig)
    identity: IdentityConfig = Field(default_factory=IdentityConfig)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(settings_path: Optional[Path] = None) -> AppConfig:
    """Load settings into an *AppConfig* object."""
    if settings_path is None:
        settings_path = Path(os.environ.get(SETTINGS_ENV_VAR, SETTINGS_FILE))
    config = AppConfig(**_load_yaml(Path(settings_path)))
    logger.info(
        "Settings loaded (server=%s:%s, history_limit=%s)",
        config.server.host,
        config.server.port,
        config.chat.history_limit,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the cached application config, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[AppConfig]) -> None:
    """Replace the cached config (``None`` reloads on next use)."""
    global _config
    _config = config
