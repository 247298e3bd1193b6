"""
Infrastructure exceptions for Clerk.

Two hierarchies share one shape (``StructuredError``):

* ``ClerkInfrastructureException`` (here): the stores or configuration failed.
  ``TransientStoreError`` is tagged with its tier; cache-tier failures are
  absorbed by callers, database-tier failures propagate.
* ``ClerkDomainException`` (``clerk.modules.shared.exceptions``): business
  outcomes such as locked accounts or duplicate friend requests, carried in
  typed results.

Every error exposes ``message``, ``details``, ``severity``, ``is_retryable``,
``error_code`` and ``to_dict()``. ``get_error_severity``, ``is_transient_error``
and ``should_alert`` read those attributes, so they accept either hierarchy
(and plain exceptions, which count as unexpected errors).
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorSeverity(Enum):
    DEBUG = "debug"
    INFO = "info"  # expected outcomes: bad input, unknown account
    WARNING = "warning"  # handled: cache fallback, lockouts
    ERROR = "error"
    CRITICAL = "critical"


class StructuredError(Exception):
    """
    Exception carrying logging metadata.

    Subclasses set ``DEFAULT_SEVERITY`` and ``DEFAULT_RETRYABLE``; both can be
    overridden per instance.
    """

    DEFAULT_SEVERITY: ErrorSeverity = ErrorSeverity.ERROR
    DEFAULT_RETRYABLE: bool = False

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[ErrorSeverity] = None,
        is_retryable: Optional[bool] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})
        self.severity = severity or self.DEFAULT_SEVERITY
        self.is_retryable = self.DEFAULT_RETRYABLE if is_retryable is None else is_retryable
        self.error_code = error_code or type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": type(self).__name__,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
            "severity": self.severity.value,
            "is_retryable": self.is_retryable,
        }

    def __str__(self) -> str:
        if not self.details:
            return f"[{self.error_code}] {self.message}"
        return f"[{self.error_code}] {self.message} | Details: {self.details}"

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, error_code={self.error_code!r})"


def _describe(error: Optional[BaseException]) -> Dict[str, Any]:
    if error is None:
        return {"error": "operation failed", "error_type": None}
    return {"error": str(error), "error_type": type(error).__name__}


class ClerkInfrastructureException(StructuredError):
    """Root of the store, cache and configuration failures."""


class ConfigurationError(ClerkInfrastructureException):
    """A required configuration key is missing or unusable."""

    DEFAULT_SEVERITY = ErrorSeverity.CRITICAL

    def __init__(self, config_key: str, message: str) -> None:
        self.config_key = config_key
        super().__init__(
            f"Configuration error for {config_key}: {message}",
            details={"config_key": config_key, "message": message},
            error_code="CONFIG_ERROR",
        )


class DatabaseError(ClerkInfrastructureException):
    """
    A statement failed for a reason retrying will not fix (bad SQL,
    constraint violation). The transaction has been rolled back.
    """

    def __init__(self, operation: str, original_error: BaseException) -> None:
        self.operation = operation
        self.original_error = original_error
        super().__init__(
            f"Database error during {operation}: {original_error}",
            details={"operation": operation, **_describe(original_error)},
            error_code="DATABASE_ERROR",
        )


class TransientStoreError(ClerkInfrastructureException):
    """
    A cache or database round trip failed for a reason that may clear up:
    lost connection, timeout or an open circuit.

    Args:
        tier: ``CACHE`` or ``DATABASE``
        operation: What was being attempted, e.g. ``"get_json"``
        original_error: The underlying exception, if any
    """

    DEFAULT_SEVERITY = ErrorSeverity.WARNING
    DEFAULT_RETRYABLE = True

    CACHE = "cache"
    DATABASE = "database"

    def __init__(
        self,
        tier: str,
        operation: str,
        original_error: Optional[BaseException] = None,
    ) -> None:
        self.tier = tier
        self.operation = operation
        self.original_error = original_error
        described = _describe(original_error)
        super().__init__(
            f"Transient {tier} error during {operation}: {described['error']}",
            details={"tier": tier, "operation": operation, **described},
            # Losing the durable store fails the operation; losing the cache does not.
            severity=ErrorSeverity.ERROR if tier == self.DATABASE else ErrorSeverity.WARNING,
            error_code="TRANSIENT_STORE_ERROR",
        )

    @property
    def is_cache_tier(self) -> bool:
        return self.tier == self.CACHE


class CircuitBreakerError(ClerkInfrastructureException):
    """A circuit breaker is open and rejecting calls until ``retry_after`` elapses."""

    DEFAULT_SEVERITY = ErrorSeverity.WARNING
    DEFAULT_RETRYABLE = True

    def __init__(self, service: str, failure_count: int, retry_after: float) -> None:
        self.service = service
        self.failure_count = failure_count
        self.retry_after = retry_after
        super().__init__(
            f"Circuit breaker open for {service} "
            f"({failure_count} failures, retry after {retry_after:.1f}s)",
            details={
                "service": service,
                "failure_count": failure_count,
                "retry_after": retry_after,
            },
            error_code="CIRCUIT_BREAKER_OPEN",
        )


def is_transient_error(exc: BaseException) -> bool:
    """True when the failed operation may succeed if retried."""
    return getattr(exc, "is_retryable", False) is True


def get_error_severity(exc: BaseException) -> ErrorSeverity:
    severity = getattr(exc, "severity", None)
    if isinstance(severity, ErrorSeverity):
        return severity
    return ErrorSeverity.ERROR


def should_alert(exc: BaseException) -> bool:
    """True if severity is ERROR or CRITICAL."""
    return get_error_severity(exc) in (ErrorSeverity.ERROR, ErrorSeverity.CRITICAL)
