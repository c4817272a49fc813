"""
Custom SQLAlchemy types for cross-database compatibility.

Payload columns use PostgreSQL's JSONB in production and plain JSON on
SQLite, which the test suite and local development run against.
"""

from sqlalchemy import TypeDecorator, JSON
from sqlalchemy.dialects.postgresql import JSONB


class JSONBType(TypeDecorator):
    """
    JSON column that is JSONB on PostgreSQL and JSON elsewhere.

    Used for notification action data, endpoint mute lists and audit
    metadata.
    """

    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(JSONB())
        return dialect.type_descriptor(JSON())


def enum_values(enum_cls):
    """values_callable for SQLAlchemy Enum columns: persist the enum values."""
    return [member.value for member in enum_cls]
