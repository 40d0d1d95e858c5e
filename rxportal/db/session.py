"""Engine and session management for the relational store.

The engine is created lazily from :func:`rxportal.db.config.get_database_settings`.
Tests (or embedding applications) may point the module at another engine via
:func:`configure_engine`.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Generator, Iterator, Optional

import structlog
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from rxportal.db.config import get_database_settings
from rxportal.db.models import Base

logger = structlog.get_logger(__name__)

_ENGINE: Optional[Engine] = None
_SESSION_FACTORY: Optional[sessionmaker[Session]] = None


def _build_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)


def configure_engine(engine: Engine) -> None:
    """Use ``engine`` for all subsequent sessions."""

    global _ENGINE, _SESSION_FACTORY

    if _ENGINE is not None and _ENGINE is not engine:
        _ENGINE.dispose()
    _ENGINE = engine
    _SESSION_FACTORY = _build_factory(engine)


def get_engine() -> Engine:
    """Return the configured engine, creating it from settings on first use."""

    if _ENGINE is None:
        settings = get_database_settings()
        configure_engine(create_engine(settings.url, **settings.engine_options()))
        logger.info("database_engine_created", sqlite=settings.is_sqlite)
    assert _ENGINE is not None
    return _ENGINE


def session_factory() -> sessionmaker[Session]:
    get_engine()
    assert _SESSION_FACTORY is not None
    return _SESSION_FACTORY


def init_schema(engine: Optional[Engine] = None) -> None:
    """Create all tables defined by the declarative models."""

    Base.metadata.create_all(engine or get_engine())


def ping() -> bool:
    """Return ``True`` when the database answers a trivial query."""

    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        logger.warning("database_ping_failed", exc_info=True)
        return False


@contextmanager
def session_scope() -> Iterator[Session]:
    """Yield a session that commits on success and rolls back on error."""

    session = session_factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_session() -> Generator[Session, None, None]:
    """FastAPI dependency yielding a session scoped to one request."""

    with session_scope() as session:
        yield session


__all__ = [
    "configure_engine",
    "get_engine",
    "get_session",
    "init_schema",
    "ping",
    "session_factory",
    "session_scope",
]
