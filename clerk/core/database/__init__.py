"""
Database subsystem for Clerk.

Async SQLAlchemy engine, session and transaction management, plus the ORM
base classes used by the account and rank models.
"""

from clerk.core.database.base import Base, TimestampMixin, utc_now
from clerk.core.database.bootstrap import (
    create_schema,
    initialize_database_subsystem,
    shutdown_database_subsystem,
)
from clerk.core.database.service import (
    DatabaseInitializationError,
    DatabaseNotInitializedError,
    DatabaseService,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "utc_now",
    "DatabaseService",
    "create_schema",
    "initialize_database_subsystem",
    "shutdown_database_subsystem",
    "DatabaseInitializationError",
    "DatabaseNotInitializedError",
]
