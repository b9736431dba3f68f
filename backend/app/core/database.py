"""
Database layer — synchronous SQLAlchemy 2.0.

Provides:
    • Engine construction from a URL (SQLite by default, any SQLAlchemy URL works)
    • Session scope with commit / rollback
    • Base model for ORM entities
    • Table creation for dev/test deployments

Usage:
    from backend.app.core.database import Base, create_db_engine, session_scope

    engine = create_db_engine("sqlite:///alertrun.db")
    factory = make_session_factory(engine)

    with session_scope(factory) as session:
        session.add(row)
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ── ORM Base ──
class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


# ── Engine ──
def create_db_engine(url: Optional[str] = None, *, echo: Optional[bool] = None) -> Engine:
    """Build an engine; SQLite connections may be shared across request threads."""
    url = url or settings.DATABASE_URL
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(
        url,
        echo=settings.DATABASE_ECHO if echo is None else echo,
        connect_args=connect_args,
        future=True,
    )


# ── Session Factory ──
def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False, future=True)


@contextmanager
def session_scope(factory: sessionmaker) -> Iterator[Session]:
    """Transactional scope: commit on success, rollback and re-raise on error."""
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# ── Lifecycle ──
def init_db(engine: Engine) -> None:
    """Create all tables (dev/test only — use migrations in production)."""
    # Register ORM tables on Base.metadata
    from backend.app.alerts import sql_store  # noqa: F401

    Base.metadata.create_all(engine)
    logger.info("Database tables initialised")


def check_connection(engine: Engine) -> None:
    """Round-trip a trivial query; raises on failure."""
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))


def close_db(engine: Engine) -> None:
    """Dispose engine connections."""
    engine.dispose()
    logger.info("Database connections closed")
