"""
Clerk Domain Validators

Purpose
-------
Validation of user-supplied account input. Validators raise
``ValidationError`` on failure and return the normalized value on success,
so services can convert the error into a typed result.

Design Notes
------------
- No database access: uniqueness checks belong to the services
- Messages are user-facing and end with a period

Usage
-----
    from clerk.modules.shared.validators import validate_username

    name = validate_username("Alice")
    validate_password("Secret1")
"""

from __future__ import annotations

import re
from typing import Optional

from .constants import (
    PASSWORD_MIN_LENGTH,
    USERNAME_MAX_LENGTH,
    USERNAME_MIN_LENGTH,
    USERNAME_PATTERN,
)
from .durations import is_valid_duration
from .exceptions import ValidationError

_USERNAME_RE = re.compile(USERNAME_PATTERN)


def validate_username(
    username: Optional[str],
    min_length: int = USERNAME_MIN_LENGTH,
    max_length: int = USERNAME_MAX_LENGTH,
) -> str:
    """
    Validate a username for registration.

    Raises:
        ValidationError: If the name is empty, out of bounds, or contains
            characters other than letters, digits, '_', '.' and '-'
    """
    name = (username or "").strip()
    if not name:
        raise ValidationError("username", "Username cannot be empty.")
    if not min_length <= len(name) <= max_length:
        raise ValidationError(
            "username",
            f"Username must be between {min_length} and {max_length} characters.",
        )
    if not _USERNAME_RE.match(name):
        raise ValidationError(
            "username",
            "Username can only contain letters, numbers, underscores, dots and hyphens.",
        )
    return name


def validate_password(password: Optional[str], min_length: int = PASSWORD_MIN_LENGTH) -> str:
    """
    Validate password strength: minimum length, an uppercase letter, a
    lowercase letter, and a digit or symbol.
    """
    value = password or ""
    if len(value) < min_length:
        raise ValidationError(
            "password", f"Password must be at least {min_length} characters long."
        )
    if not any(c.isupper() for c in value):
        raise ValidationError("password", "Password must contain an uppercase letter.")
    if not any(c.islower() for c in value):
        raise ValidationError("password", "Password must contain a lowercase letter.")
    if not any(c.isdigit() or not c.isalnum() for c in value):
        raise ValidationError(
            "password", "Password must contain a number or special character."
        )
    return value


def validate_duration(duration: Optional[str]) -> Optional[str]:
    """None passes through (permanent); anything else must parse."""
    if duration is None:
        return None
    if not is_valid_duration(duration):
        raise ValidationError(
            "duration",
            "Invalid duration format. Use combinations like 1d, 12h, 30m, 2w, 1mo, 1y.",
        )
    return duration.strip().lower()
