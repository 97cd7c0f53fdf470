"""Parley application configuration.

Loads settings from two YAML files:
  * parley.settings.yaml: non-secret configuration
  * parley.secrets.yaml: secrets (never committed)

Both files are looked up in ``$PARLEY_CONFIG_DIR`` (default: the working
directory). ``PARLEY_JWT_SECRET`` overrides the signing key from the
secrets file.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE_NAME = "parley.settings.yaml"
SECRETS_FILE_NAME  = "parley.secrets.yaml"

DEFAULT_JWT_SECRET = "change-me-in-production-parley-signing-key"


def _config_dir() -> Path:
    return Path(os.environ.get("PARLEY_CONFIG_DIR", "."))


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
    secret_key: str = DEFAULT_JWT_SECRET
    algorithm:  Literal["HS256", "HS384", "HS512"] = "HS256"


class Secrets(BaseModel):
    jwt: JWTSecrets = Field(default_factory=JWTSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str  = "0.0.0.0"
    port:            int  = 8888
    reload:          bool = False
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: str = "info"

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        if value.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {value}")
        return value.lower()


class AuthSettings(BaseModel):
    token_expire_minutes:             int = Field(default=1440, ge=1)
    session_max_age_minutes:          int = Field(default=1440, ge=1)
    session_cleanup_interval_seconds: int = Field(default=3600, ge=1)
    bcrypt_rounds:                    int = Field(default=12, ge=4, le=31)


class WebSocketSettings(BaseModel):
    heartbeat_interval_seconds: float = Field(default=30.0, gt=0)
    typing_timeout_seconds:     float = Field(default=3.0, gt=0)


class RateLimitSettings(BaseModel):
    """Limit strings use the ``limits`` notation, e.g. ``"5/minute"``."""
    enabled:  bool = True
    login:    str  = "5/minute"
    messages: str  = "20/minute"
    default:  str  = "100/minute"


class PaginationSettings(BaseModel):
    default_limit: int = Field(default=50, ge=1)
    max_limit:     int = Field(default=100, ge=1)


class MessageSettings(BaseModel):
    max_length: int = Field(default=5000, ge=1)


class SeedSettings(BaseModel):
    """Demo users, rooms and messages loaded at startup."""
    enabled: bool = True


class AppConfig(BaseModel):
    server:     ServerSettings     = Field(default_factory=ServerSettings)
    logging:    LoggingSettings    = Field(default_factory=LoggingSettings)
    auth:       AuthSettings       = Field(default_factory=AuthSettings)
    websocket:  WebSocketSettings  = Field(default_factory=WebSocketSettings)
    rate_limit: RateLimitSettings  = Field(default_factory=RateLimitSettings)
    pagination: PaginationSettings = Field(default_factory=PaginationSettings)
    messages:   MessageSettings    = Field(default_factory=MessageSettings)
    seed:       SeedSettings       = Field(default_factory=SeedSettings)
    secrets:    Secrets            = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(config_dir: Optional[Path] = None) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object."""
    base = config_dir if config_dir is not None else _config_dir()
    settings_data = _load_yaml(base / SETTINGS_FILE_NAME)
    secrets_data  = _load_yaml(base / SECRETS_FILE_NAME)

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    env_secret = os.environ.get("PARLEY_JWT_SECRET")
    if env_secret:
        settings_data["secrets"].setdefault("jwt", {})["secret_key"] = env_secret

    config = AppConfig(**settings_data)
    if config.secrets.jwt.secret_key == DEFAULT_JWT_SECRET:
        logger.warning("Using the default JWT secret; set PARLEY_JWT_SECRET in production.")
    logger.info(
        "Config loaded (server=%s:%s, rate_limit.enabled=%s, seed.enabled=%s)",
        config.server.host,
        config.server.port,
        config.rate_limit.enabled,
        config.seed.enabled,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Forget the cached configuration (used by tests)."""
    global _config
    _config = None
