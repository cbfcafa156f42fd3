"""ConvoManage application configuration.

Loads settings from two YAML files:
  * convomanage.settings.yaml: non-secret configuration
  * convomanage.secrets.yaml : secrets (never committed)

The JWT signing secret may also come from the ``JWT_SECRET`` environment
variable, which wins over the secrets file.
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

SETTINGS_FILE = Path("convomanage.settings.yaml")
SECRETS_FILE  = Path("convomanage.secrets.yaml")

JWT_SECRET_ENV = "JWT_SECRET"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class JWTSecrets(BaseModel):
    secret_key: str = "change-me-in-production"


class Secrets(BaseModel):
    jwt: JWTSecrets = Field(default_factory=JWTSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 5000
    allowed_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])


class AuthSettings(BaseModel):
    algorithm:            str = "HS256"
    token_expire_minutes: int = 7 * 24 * 60


class StorageSettings(BaseModel):
    db_path: str = "convomanage.duckdb"


class RealtimeSettings(BaseModel):
    """Switches and limits for the socket hub."""
    max_message_length:       int  = 500
    max_question_length:      int  = 1000
    max_answer_length:        int  = 2000
    # Joining a video room checks session access (attendee, speaker or admin).
    video_requires_access:    bool = True
    # Send "recipient_unavailable" back when a signaling target is gone.
    notify_unavailable_peer:  bool = True
    # Emit user-stopped-typing for sessions a disconnecting user was typing in.
    synthesize_typing_stop:   bool = True

    @field_validator("max_message_length", "max_question_length", "max_answer_length")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("length limits must be positive")
        return value


class LoggingSettings(BaseModel):
    level: str = "info"


class AppConfig(BaseModel):
    server:   ServerSettings   = Field(default_factory=ServerSettings)
    auth:     AuthSettings     = Field(default_factory=AuthSettings)
    storage:  StorageSettings  = Field(default_factory=StorageSettings)
    realtime: RealtimeSettings = Field(default_factory=RealtimeSettings)
    logging:  LoggingSettings  = Field(default_factory=LoggingSettings)
    secrets:  Secrets          = Field(default_factory=Secrets)

    @property
    def jwt_secret(self) -> str:
        return os.environ.get(JWT_SECRET_ENV) or self.secrets.jwt.secret_key


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object.

    Relative ``storage.db_path`` values resolve against the settings file's
    directory so the database lands next to its configuration.
    """
    settings_path = Path(settings_path) if settings_path else SETTINGS_FILE
    secrets_path = Path(secrets_path) if secrets_path else settings_path.with_name(SECRETS_FILE.name)

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path)

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)

    db_path = config.storage.db_path
    if db_path != ":memory:" and not Path(db_path).is_absolute() and settings_path.exists():
        config.storage.db_path = str(settings_path.resolve().parent / db_path)

    logger.info(
        "Settings loaded (server=%s:%s, db=%s, log_level=%s)",
        config.server.host,
        config.server.port,
        config.storage.db_path,
        config.logging.level,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[AppConfig]) -> None:
    """Replace the process-wide config (``None`` forces a reload)."""
    global _config
    _config = config
