"""Database engine and session factory construction.

Engines and factories are created explicitly and handed to the
repositories that need them; there is no process-wide engine.
"""

import logging
from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session as SQLAlchemySession
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from ..config import Config
from .models import Base

logger = logging.getLogger(__name__)


def make_engine(database_url: str | None = None, echo: bool | None = None) -> Engine:
    """Create an engine for ``database_url`` (defaults to DATABASE_URL)."""
    database_url = database_url or Config.get_database_url()
    echo = Config.is_debug() if echo is None else echo

    if database_url.startswith("sqlite"):
        # SQLite needs special handling for check_same_thread
        kwargs = {"connect_args": {"check_same_thread": False}, "echo": echo}
        if ":memory:" in database_url:
            # One shared connection, otherwise each thread sees an empty database
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)

    return create_engine(
        database_url,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        echo=echo,
    )


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine) -> None:
    """Create all tables that don't exist yet."""
    Base.metadata.create_all(bind=engine)
    logger.info(f"Database initialized: {engine.url}")


@contextmanager
def session_scope(factory: sessionmaker) -> Generator[SQLAlchemySession, None, None]:
    """Context manager for database sessions.

    Usage:
        with session_scope(factory) as session:
            session.query(...)
    """
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
