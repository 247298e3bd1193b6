"""
Account Model
=============

Durable identity and security state for one player account.

Schema-only representation of:
- Identity (username as PK, case-insensitive unique index, platform)
- Credentials (bcrypt hash) and lockout state
- Linked platform identifiers, observed IPs and login history
- Geo fingerprint of the last trusted login
- Direct permission and rank grants
- Social graph (friends, pending requests) and per-account settings
- Row revision used to tell stale cached projections from newer ones

JSONB columns are always replaced with new values rather than mutated in
place; value shapes are owned by ``clerk.modules.accounts.codec``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from clerk.core.database.base import Base, TimestampMixin, utc_now


class Account(Base, TimestampMixin):
    """One row per registered username."""

    # ========================================================================
    # TABLE CONFIGURATION
    # ========================================================================

    __tablename__ = "accounts"
    __table_args__ = (
        Index("ix_accounts_uuids", "uuids", postgresql_using="gin"),
        Index("ix_accounts_ip_address", "ip_address", postgresql_using="gin"),
    )

    # ========================================================================
    # IDENTITY & CREDENTIALS
    # ========================================================================

    username: Mapped[str] = mapped_column(
        String(16),
        primary_key=True,
        doc="Display-cased username; equality is case-insensitive",
    )

    password: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        doc="bcrypt hash",
    )

    platform: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="Java",
        doc="Client platform at registration (Java / Bedrock)",
    )

    uuids: Mapped[List[str]] = mapped_column(
        JSONB, nullable=False, default=list, doc="Linked stable identifiers"
    )

    ip_address: Mapped[List[str]] = mapped_column(
        JSONB, nullable=False, default=list, doc="Observed IP addresses"
    )

    registered_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
        server_default=func.now(),
    )

    logins: Mapped[List[Dict[str, Any]]] = mapped_column(
        JSONB,
        nullable=False,
        default=list,
        doc="Recent logins, newest last",
    )

    logged_out: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    auto_lock: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # ========================================================================
    # LOCKOUT STATE
    # ========================================================================

    failed_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    lock_until: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        doc="NULL with locked=True means a permanent lock",
    )

    lock_reason: Mapped[str] = mapped_column(Text, nullable=False, default="")
    locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    country: Mapped[str] = mapped_column(Text, nullable=False, default="Unknown")
    region: Mapped[str] = mapped_column(Text, nullable=False, default="Unknown")

    # ========================================================================
    # AUTHORIZATION
    # ========================================================================

    permissions: Mapped[List[Any]] = mapped_column(
        JSONB, nullable=False, default=list, doc="{permission, expires?} grants"
    )

    ranks: Mapped[List[Any]] = mapped_column(
        JSONB, nullable=False, default=list, doc="{rank, expires?} grants"
    )

    # ========================================================================
    # SOCIAL & SETTINGS
    # ========================================================================

    friends: Mapped[List[Dict[str, Any]]] = mapped_column(
        JSONB, nullable=False, default=list
    )
    incoming_requests: Mapped[List[Dict[str, Any]]] = mapped_column(
        JSONB, nullable=False, default=list
    )
    outgoing_requests: Mapped[List[Dict[str, Any]]] = mapped_column(
        JSONB, nullable=False, default=list
    )

    last_seen: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    settings: Mapped[Dict[str, Any]] = mapped_column(
        JSONB, nullable=False, default=dict
    )

    # ========================================================================
    # CACHE RECONCILIATION
    # ========================================================================

    revision: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
        doc="Bumped by every write-through; cached projections carry the revision they reflect",
    )

    def __repr__(self) -> str:
        return f"<Account(username={self.username!r}, locked={self.locked})>"


Index("ix_accounts_username_lower", func.lower(Account.username), unique=True)
