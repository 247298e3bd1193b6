"""
Clerk Shared Module

Purpose
-------
Domain-level foundations for the account, auth, rank, friend, sync and
session modules:
- Domain exceptions
- Base service and repository patterns
- Duration parsing and time formatting
- Input validators and contract constants

Architecture
------------
- BaseService: Foundation for service classes (logging, config, events)
- BaseRepository: Type-safe database access patterns
- Domain exceptions: outcomes carried inside typed results
- Durations: "1d12h" grammar, calendar-aware expiries, "ago" formatting
- Validators: username/password/duration checks raising ValidationError

Usage
-----
    from clerk.modules.shared import BaseService, ValidationError, parse_duration
"""

from __future__ import annotations

from .base_repository import BaseRepository
from .base_service import BaseService
from .durations import (
    expiry_from,
    format_ago,
    format_ago_short,
    format_remaining,
    humanize,
    is_valid_duration,
    parse_duration,
)
from .exceptions import (
    ClerkDomainException,
    ConflictError,
    LockedError,
    NotFoundError,
    SecurityError,
    ValidationError,
)
from .validators import validate_duration, validate_password, validate_username

__all__ = [
    "BaseRepository",
    "BaseService",
    "ClerkDomainException",
    "ConflictError",
    "LockedError",
    "NotFoundError",
    "SecurityError",
    "ValidationError",
    "expiry_from",
    "format_ago",
    "format_ago_short",
    "format_remaining",
    "humanize",
    "is_valid_duration",
    "parse_duration",
    "validate_duration",
    "validate_password",
    "validate_username",
]
