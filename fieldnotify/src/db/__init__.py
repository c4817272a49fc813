"""
Database engine and session helpers.
"""

from fieldnotify.src.db.database import (
    create_db_engine,
    create_session_factory,
    session_scope,
    init_db,
)

__all__ = [
    "create_db_engine",
    "create_session_factory",
    "session_scope",
    "init_db",
]
