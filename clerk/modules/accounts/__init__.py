"""Account records: storage, JSON codec, and the account service."""

from .codec import PROJECTION_FIELDS, SYNCED_FIELDS, build_projection
from .repository import AccountRepository
from .service import AccountService
from .types import (
    AccountResult,
    AccountStatus,
    AccountSummary,
    FriendEntry,
    FriendRequest,
    GeoInfo,
    LoginHistoryEntry,
    LoginRecord,
    PermissionGrant,
    PermissionView,
    RankGrant,
    RegistrationResult,
)

__all__ = [
    "AccountRepository",
    "AccountResult",
    "AccountService",
    "AccountStatus",
    "AccountSummary",
    "FriendEntry",
    "FriendRequest",
    "GeoInfo",
    "LoginHistoryEntry",
    "LoginRecord",
    "PermissionGrant",
    "PermissionView",
    "PROJECTION_FIELDS",
    "RankGrant",
    "RegistrationResult",
    "SYNCED_FIELDS",
    "build_projection",
]
