"""
Domain exceptions for Clerk.

Purpose
-------
Structured, domain-specific error values for account security outcomes:
invalid input, unknown accounts, conflicting relationship state, locked
accounts and security locks.

Design Notes
------------
- All domain exceptions inherit from `ClerkDomainException`.
- Services return these inside typed result objects (``LoginResult``,
  ``FriendResult``, ``RankResult``...) rather than raising them at callers;
  they remain real exceptions so that callers may raise them at a boundary.
- The shared ``StructuredError`` base supplies ``message``, ``details``,
  ``severity``, ``is_retryable``, ``error_code`` and ``to_dict()``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from clerk.core.exceptions import ErrorSeverity, StructuredError


class ClerkDomainException(StructuredError):
    """Root of the business outcomes; expected, so logged at INFO by default."""

    DEFAULT_SEVERITY = ErrorSeverity.INFO


class ValidationError(ClerkDomainException):
    """
    Raised when input fails domain validation (username format, password
    strength, duration strings, self-targeted friend requests).

    Args:
        field: Name of the field that failed validation
        message: Explanation of why validation failed
    """

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.validation_message = message
        super().__init__(
            f"Validation error for {field}: {message}",
            details={"field": field, "validation_message": message},
            error_code=f"VALIDATION_{field.upper()}",
        )


class NotFoundError(ClerkDomainException):
    """
    Raised when an account or rank does not exist.

    Args:
        resource_type: "Account" or "Rank"
        identifier: The name that was looked up
    """

    def __init__(self, resource_type: str, identifier: Optional[Any] = None) -> None:
        self.resource_type = resource_type
        self.identifier = identifier
        message = (
            f"{resource_type} not found: {identifier}"
            if identifier is not None
            else f"{resource_type} not found"
        )
        super().__init__(
            message,
            details={"resource_type": resource_type, "identifier": identifier},
            error_code=f"{resource_type.upper()}_NOT_FOUND",
        )


class ConflictError(ClerkDomainException):
    """
    Raised when the requested transition conflicts with current state
    (already friends, duplicate request, requests disabled, name taken).

    Args:
        reason: Stable short reason, e.g. "already_friends"
        message: Human-readable explanation
    """

    def __init__(self, reason: str, message: str, **details: Any) -> None:
        self.reason = reason
        super().__init__(
            message,
            details={"reason": reason, **details},
            error_code=f"CONFLICT_{reason.upper()}",
        )


class LockedError(ClerkDomainException):
    """
    Returned when an account is locked.

    Args:
        reason: The stored lock reason
        until: Lock expiry; None means permanent
    """

    DEFAULT_SEVERITY = ErrorSeverity.WARNING

    def __init__(self, reason: str, until: Optional[datetime] = None) -> None:
        self.reason = reason
        self.until = until
        if until is None:
            message = "Account is permanently locked."
        else:
            message = f"Account is locked until {until.strftime('%Y-%m-%d %H:%M:%S %Z').strip()}."
        super().__init__(
            message,
            details={
                "reason": reason,
                "until": until.isoformat() if until else None,
                "permanent": until is None,
            },
            error_code="ACCOUNT_LOCKED",
        )

    @property
    def is_permanent(self) -> bool:
        return self.until is None


class SecurityError(ClerkDomainException):
    """
    Returned after a geo anomaly locked the account. The lock is already
    committed when this error is produced.

    Args:
        reason: The lock reason that was stored
    """

    DEFAULT_SEVERITY = ErrorSeverity.WARNING

    def __init__(self, reason: str, **details: Any) -> None:
        self.reason = reason
        super().__init__(
            f"Security lock applied: {reason}",
            details={"reason": reason, **details},
            error_code="SECURITY_LOCK",
        )
