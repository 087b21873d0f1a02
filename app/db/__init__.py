"""
Database Module
===============

Declarative base, engine and request-scoped sessions for the billing
tables.
"""

from app.db.base import Base, CreatedAtMixin, TimestampMixin
from app.db.session import close_db, get_db, get_engine, get_session_factory, init_db

__all__ = [
    "Base",
    "CreatedAtMixin",
    "TimestampMixin",
    "close_db",
    "get_db",
    "get_engine",
    "get_session_factory",
    "init_db",
]
