"""
Database connection and session management.

Builds SQLAlchemy engines for PostgreSQL (pooled) or SQLite (single static
connection, used for tests and local development) and hands out session
factories. Background workers (delivery threads, sweeps) each open their own
session from the factory; sessions are never shared across threads.
"""

import os
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

from dotenv import load_dotenv
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from fieldnotify.src.utils.logging_config import get_logger


logger = get_logger("db")

# Load environment variables from a .env file next to the package, if present
env_path = Path(__file__).parent.parent.parent / '.env'
if env_path.exists():
    load_dotenv(dotenv_path=env_path)


def create_db_engine(database_url: Optional[str] = None) -> Engine:
    """
    Create an engine for the given URL.

    Args:
        database_url: SQLAlchemy URL. Falls back to FIELDNOTIFY_DB_URL, then
            a local SQLite file.

    Returns:
        Configured Engine
    """
    url = database_url or os.environ.get("FIELDNOTIFY_DB_URL", "sqlite:///fieldnotify.db")

    if url.startswith("sqlite"):
        # SQLite doesn't support pool_size, max_overflow, or pool_recycle
        engine = create_engine(
            url,
            connect_args={'check_same_thread': False},
            poolclass=StaticPool,
            echo=False,
        )
        event.listen(engine, "connect", _sqlite_pragma_on_connect)
    else:
        engine = create_engine(
            url,
            pool_size=20,
            max_overflow=10,
            pool_pre_ping=True,
            pool_recycle=3600,
            echo=False,
        )

    logger.info("Database engine created", extra={"dialect": engine.dialect.name})
    return engine


def _sqlite_pragma_on_connect(dbapi_con, con_record):
    dbapi_con.execute('pragma foreign_keys=ON')


def create_session_factory(engine: Engine) -> sessionmaker:
    """Session factory bound to ``engine``."""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=engine,
    )


@contextmanager
def session_scope(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Provide a session for one unit of background work.

    Rolls back on error and always closes the session. Services commit their
    own writes; this only guarantees cleanup.

    Usage:
        with session_scope(factory) as db:
            EscalationMonitor(db, ...).run_sweep()
    """
    db = session_factory()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(engine: Engine) -> None:
    """
    Create all tables.

    For production, use migrations instead; this is for first-time setup,
    local development and tests.
    """
    from fieldnotify.src.models import Base
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created")
