from __future__ import annotations

import logging
import os


def _env_str(name: str, default: str = "") -> str:
    return str(os.getenv(name, default) or default).strip()


def _env_int(name: str, default: int) -> int:
    try:
        return int(str(os.getenv(name, "") or "").strip() or default)
    except Exception:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = str(os.getenv(name, "") or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y", "on"}


class Config:
    def __init__(self):
        self.ENV = _env_str("APP_ENV", "development").lower()
        self.LOG_LEVEL = _env_str("LOG_LEVEL", "INFO").upper()

        self.DATABASE_URL = _env_str("DATABASE_URL", "sqlite:///./provisioning.db")
        self.DB_POOL_SIZE = max(1, _env_int("DB_POOL_SIZE", 5))
        self.DB_ECHO = _env_bool("DB_ECHO", False)

        # Credential policy table (kind -> default TTL). 0 disables expiry for API keys.
        self.SETUP_CODE_PREFIX = _env_str("SETUP_CODE_PREFIX", "CLAVE").upper()
        self.SETUP_CODE_TTL_HOURS = _env_int("SETUP_CODE_TTL_HOURS", 24)
        self.MAGIC_LINK_TTL_MINUTES = _env_int("MAGIC_LINK_TTL_MINUTES", 30)
        self.REFRESH_TOKEN_TTL_DAYS = _env_int("REFRESH_TOKEN_TTL_DAYS", 7)
        self.API_KEY_TTL_DAYS = _env_int("API_KEY_TTL_DAYS", 0)

        self.REDIS_URL = _env_str("REDIS_URL", "redis://localhost:6379/0")
        self.CLEANUP_INTERVAL_MINUTES = max(1, _env_int("CLEANUP_INTERVAL_MINUTES", 60))

    def validate(self) -> None:
        if not self.DATABASE_URL:
            raise ValueError("DATABASE_URL is required")
        if not self.SETUP_CODE_PREFIX.isalnum():
            raise ValueError("SETUP_CODE_PREFIX must be alphanumeric")
        for name in ("SETUP_CODE_TTL_HOURS", "MAGIC_LINK_TTL_MINUTES", "REFRESH_TOKEN_TTL_DAYS", "API_KEY_TTL_DAYS"):
            if int(getattr(self, name)) < 0:
                raise ValueError(f"{name} must be >= 0")
        if self.SETUP_CODE_TTL_HOURS == 0 or self.MAGIC_LINK_TTL_MINUTES == 0 or self.REFRESH_TOKEN_TTL_DAYS == 0:
            raise ValueError("Setup code, magic link and refresh token TTLs must be > 0")


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
