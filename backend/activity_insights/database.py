"""SQLAlchemy engine and session management.

Supports SQLite (local dev/testing) and pooled server databases.
Nothing is created at import time: the process entry point builds the
engine and session factory and hands them to the services.
"""

import logging
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

logger = logging.getLogger(__name__)

Base = declarative_base()


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """Build an engine with SQLite or pooled-server arguments."""
    engine_kwargs: dict = {
        "echo": echo,
    }

    if database_url.startswith("sqlite"):
        # Store calls run in worker threads (asyncio.to_thread)
        engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
    else:
        engine_kwargs["pool_size"] = 10
        engine_kwargs["max_overflow"] = 20
        engine_kwargs["pool_pre_ping"] = True

    return create_engine(database_url, **engine_kwargs)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create all tables registered on Base."""
    # Import models so tables are registered with Base
    from activity_insights import models as _models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    logger.info("Database initialized: %s", str(engine.url).split("?")[0])


@contextmanager
def session_scope(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """Context manager for a single DB session. Commits on success, rolls back on error."""
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
