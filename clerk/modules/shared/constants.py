"""
Clerk Domain Constants

Purpose
-------
Stable names and fallbacks used across the domain modules: the default rank,
cache key layout, pub/sub channels, registration limits and login-history
bounds.

IMPORTANT:
Tunable values (lockout thresholds, TTLs, sync interval) are read through
ConfigManager from ``config/clerk.yaml``. The values here are the fallbacks
used when a key is absent, and names that are part of the Redis contract.

Design Notes
------------
- Values are annotated with typing.Final
- No side effects at import time
"""

from __future__ import annotations

from typing import Final, Tuple

# ============================================================================
# RANKS
# ============================================================================

DEFAULT_RANK_NAME: Final[str] = "Default"
DEFAULT_RANK_PREFIX: Final[str] = "[Default]"
DEFAULT_RANK_PERMISSIONS: Final[Tuple[str, ...]] = ("clerk.default",)
DEFAULT_RANK_WEIGHT: Final[int] = 0

# ============================================================================
# CACHE / PUB-SUB CONTRACT
# ============================================================================

ACCOUNT_KEY_PREFIX: Final[str] = "account:"
ACCOUNT_TTL_SECONDS: Final[int] = 3600
MEMO_TTL_SECONDS: Final[float] = 0.5

RANK_UPDATES_CHANNEL: Final[str] = "clerk:rank_updates"
ACCOUNT_UPDATES_CHANNEL: Final[str] = "clerk:account_updates"

RANK_UPDATE_MESSAGE_TYPE: Final[str] = "database_update"
ACCOUNT_UPDATE_MESSAGE_TYPE: Final[str] = "account_update"

# ============================================================================
# AUTHENTICATION
# ============================================================================

LOCKOUT_THRESHOLDS: Final[Tuple[Tuple[int, int], ...]] = (
    (5, 5 * 60),
    (10, 30 * 60),
    (15, 60 * 60),
)
PERMANENT_LOCK_THRESHOLD: Final[int] = 20

UNKNOWN_GEO: Final[str] = "Unknown"

LOGIN_HISTORY_MAX_ENTRIES: Final[int] = 10
LOGIN_HISTORY_MAX_AGE_DAYS: Final[int] = 7
AUTO_LOCK_WINDOW_SECONDS: Final[int] = 120

# ============================================================================
# REGISTRATION
# ============================================================================

USERNAME_MIN_LENGTH: Final[int] = 3
USERNAME_MAX_LENGTH: Final[int] = 16
USERNAME_PATTERN: Final[str] = r"^[a-zA-Z0-9_.-]+$"
PASSWORD_MIN_LENGTH: Final[int] = 6

# ============================================================================
# SETTINGS
# ============================================================================

SETTING_TOGGLED_REQUESTS: Final[str] = "toggledRequests"

PLATFORM_JAVA: Final[str] = "Java"
PLATFORM_BEDROCK: Final[str] = "Bedrock"
