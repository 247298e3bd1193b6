"""
Database Models Package
========================

SQLAlchemy ORM models for Clerk.

All models:
- Are schema-only, with no business logic
- Use Mapped[] syntax with mapped_column()
- Inherit TimestampMixin for created_at / updated_at
- Store list- and map-shaped values in JSONB columns

Domain Organization:
--------------------
- identity: Account and Rank
"""

from clerk.core.database.base import Base

from .identity import Account, Rank

__all__ = ["Base", "Account", "Rank"]
