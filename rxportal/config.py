"""Application settings resolved from the environment."""

from __future__ import annotations

import os
import secrets
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo

from platformdirs import user_data_dir

APP_NAME = "RxPortal"

DEFAULT_DIGITALRX_BASE_URL = "https://www.dbswebserver.com/DBSRestApi/API"


def _get_int_env(name: str, default: Optional[int] = None) -> Optional[int]:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer; got {raw!r}") from exc


def _get_float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a number; got {raw!r}") from exc


def data_dir() -> Path:
    """Return the per-user data directory, creating it if required."""

    override = os.getenv("RXPORTAL_DATA_DIR")
    path = Path(override).expanduser() if override else Path(user_data_dir(APP_NAME, APP_NAME))
    path.mkdir(parents=True, exist_ok=True)
    return path


@dataclass(frozen=True)
class Settings:
    """Resolved runtime configuration."""

    digitalrx_base_url: str = DEFAULT_DIGITALRX_BASE_URL
    digitalrx_timeout: float = 10.0
    digitalrx_vendor_name: str = APP_NAME
    timezone_name: str = "UTC"
    refill_lookahead_days: int = 2
    status_poll_interval: float = 30.0
    admin_page_size: int = 10
    refill_check_interval: int = 3600
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"
    log_level: str = "INFO"

    @property
    def timezone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone_name)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the active settings derived from the environment."""

    lookahead = _get_int_env("REFILL_LOOKAHEAD_DAYS", 2)
    page_size = _get_int_env("ADMIN_PAGE_SIZE", 10)
    return Settings(
        digitalrx_base_url=os.getenv("DIGITALRX_BASE_URL") or DEFAULT_DIGITALRX_BASE_URL,
        digitalrx_timeout=_get_float_env("DIGITALRX_TIMEOUT", 10.0),
        digitalrx_vendor_name=os.getenv("DIGITALRX_VENDOR_NAME") or APP_NAME,
        timezone_name=os.getenv("RXPORTAL_TIMEZONE") or "UTC",
        refill_lookahead_days=max(1, lookahead or 1),
        status_poll_interval=_get_float_env("STATUS_POLL_INTERVAL", 30.0),
        admin_page_size=max(1, page_size or 1),
        refill_check_interval=_get_int_env("REFILL_CHECK_INTERVAL", 3600) or 0,
        jwt_secret=os.getenv("JWT_SECRET") or secrets.token_urlsafe(48),
        jwt_algorithm=os.getenv("JWT_ALGORITHM") or "HS256",
        log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
    )


__all__ = ["APP_NAME", "Settings", "data_dir", "get_settings"]
