"""Database helpers for RxPortal."""

from __future__ import annotations

from .config import DatabaseSettings, get_database_settings
from .models import Base
from .session import (
    configure_engine,
    get_engine,
    get_session,
    init_schema,
    ping,
    session_scope,
)

__all__ = [
    "Base",
    "DatabaseSettings",
    "configure_engine",
    "get_database_settings",
    "get_engine",
    "get_session",
    "init_schema",
    "ping",
    "session_scope",
]
