"""Database configuration helpers."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict

from rxportal.config import _get_int_env, data_dir


# Optional integer engine settings, keyed by environment variable.
_POOL_OPTIONS = {
    "DB_POOL_SIZE": "pool_size",
    "DB_MAX_OVERFLOW": "max_overflow",
    "DB_POOL_TIMEOUT": "pool_timeout",
}


@dataclass(frozen=True)
class DatabaseSettings:
    """Resolved database configuration for the application."""

    url: str
    echo: bool = False

    def engine_options(self) -> Dict[str, object]:
        """Return keyword arguments for :func:`sqlalchemy.create_engine`."""

        options: Dict[str, object] = {"echo": self.echo, "future": True}
        for env_name, option in _POOL_OPTIONS.items():
            value = _get_int_env(env_name)
            if value is not None:
                options[option] = value
        if self.is_sqlite:
            options["connect_args"] = {"check_same_thread": False}
        elif self.is_postgres:
            options["pool_pre_ping"] = True
            options["connect_args"] = self._postgres_connect_args()
        return options

    @staticmethod
    def _postgres_connect_args() -> Dict[str, object]:
        # Sessions always run in UTC.
        server_options = ["timezone=UTC"]
        statement_timeout = _get_int_env("STATEMENT_TIMEOUT_MS")
        if statement_timeout is not None:
            server_options.append(f"statement_timeout={statement_timeout}")
        connect_args: Dict[str, object] = {
            "options": " ".join(f"-c {value}" for value in server_options)
        }
        connect_timeout = _get_int_env("PGCONNECT_TIMEOUT")
        if connect_timeout is not None:
            connect_args["connect_timeout"] = connect_timeout
        return connect_args

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    @property
    def is_postgres(self) -> bool:
        return self.url.startswith("postgres")


def _normalise_postgres_url(url: str) -> str:
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def _normalise_sqlite_path(path: str | os.PathLike[str]) -> Path:
    resolved = Path(path).expanduser()
    if resolved.is_dir():
        resolved = resolved / "rxportal.db"
    resolved.parent.mkdir(parents=True, exist_ok=True)
    return resolved


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
    """Return the active database settings derived from the environment."""

    url = os.getenv("RXPORTAL_DATABASE_URL") or os.getenv("DATABASE_URL")
    if url:
        return DatabaseSettings(url=_normalise_postgres_url(url))

    path_override = os.getenv("RXPORTAL_DB_PATH")
    if path_override:
        db_path = _normalise_sqlite_path(path_override)
    else:
        db_path = data_dir() / "rxportal.db"
    return DatabaseSettings(url=f"sqlite:///{db_path}")


__all__ = ["DatabaseSettings", "get_database_settings"]
