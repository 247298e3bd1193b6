"""
Rank Model
==========

A named permission bundle. Ranks inherit other ranks by name; the
``users`` list mirrors the accounts holding the rank and is kept for
administrative listing only. Authorization reads grants from the account.
"""

from __future__ import annotations

from typing import List

from sqlalchemy import Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from clerk.core.database.base import Base, TimestampMixin


class Rank(Base, TimestampMixin):
    __tablename__ = "ranks"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    prefix: Mapped[str] = mapped_column(Text, nullable=False, default="")
    weight: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    permissions: Mapped[List[str]] = mapped_column(JSONB, nullable=False, default=list)
    inheritance: Mapped[List[str]] = mapped_column(JSONB, nullable=False, default=list)
    users: Mapped[List[str]] = mapped_column(JSONB, nullable=False, default=list)

    def __repr__(self) -> str:
        return f"<Rank(name={self.name!r}, weight={self.weight})>"
