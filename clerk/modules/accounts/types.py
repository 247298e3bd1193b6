"""
Typed in-process values for account data.

The JSONB columns and the cache projection hold loosely-shaped JSON (see
``codec``); everything past the codec works with these frozen dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from clerk.modules.shared.constants import UNKNOWN_GEO
from clerk.modules.shared.exceptions import ClerkDomainException


@dataclass(frozen=True)
class RankGrant:
    rank: str
    expires: Optional[datetime] = None

    def is_active(self, now: datetime) -> bool:
        return self.expires is None or self.expires > now


@dataclass(frozen=True)
class PermissionGrant:
    permission: str
    expires: Optional[datetime] = None

    def is_active(self, now: datetime) -> bool:
        return self.expires is None or self.expires > now


@dataclass(frozen=True)
class FriendEntry:
    username: str
    since: int


@dataclass(frozen=True)
class FriendRequest:
    """A pending request; ``username`` is the other party."""

    username: str
    timestamp: int


@dataclass(frozen=True)
class LoginRecord:
    id: str
    platform: str
    ip_address: str
    date: datetime
    country: str = UNKNOWN_GEO
    region: str = UNKNOWN_GEO


@dataclass(frozen=True)
class GeoInfo:
    """Result of a best-effort IP geolocation."""

    country: str = UNKNOWN_GEO
    region: str = UNKNOWN_GEO
    is_mobile: bool = False
    is_proxy: bool = False
    is_hosting: bool = False

    @classmethod
    def unknown(cls) -> "GeoInfo":
        return cls()

    @property
    def country_known(self) -> bool:
        return self.country != UNKNOWN_GEO

    @property
    def region_known(self) -> bool:
        return self.region != UNKNOWN_GEO


# ============================================================================
# RESULTS
# ============================================================================


class AccountStatus(str, Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    INVALID = "invalid"
    CONFLICT = "conflict"


@dataclass
class AccountResult:
    """Outcome of an account mutation; ``error`` is set unless ``ok``."""

    status: AccountStatus
    message: str = ""
    error: Optional[ClerkDomainException] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status is AccountStatus.OK

    @classmethod
    def success(cls, message: str = "", **data: Any) -> "AccountResult":
        return cls(AccountStatus.OK, message, None, dict(data))

    @classmethod
    def failure(cls, status: "AccountStatus", error: ClerkDomainException) -> "AccountResult":
        message = getattr(error, "validation_message", None) or error.message
        return cls(status, message, error)


@dataclass
class RegistrationResult:
    success: bool
    username: Optional[str] = None
    message: str = ""
    error: Optional[ClerkDomainException] = None


@dataclass(frozen=True)
class PermissionView:
    """Display row for ``AccountService.list_permissions``."""

    permission: str
    expires: Optional[datetime]
    label: str


@dataclass(frozen=True)
class LoginHistoryEntry:
    record: LoginRecord
    ago: str


@dataclass(frozen=True)
class AccountSummary:
    """Identity columns returned by id/IP lookups."""

    username: str
    platform: str
    registered_date: Optional[datetime]
    uuids: List[str]
    ip_address: List[str]
    country: str = UNKNOWN_GEO
    region: str = UNKNOWN_GEO

    @property
    def java_ids(self) -> List[str]:
        """Dashed UUIDs (36 chars) belong to Java clients."""
        return [value for value in self.uuids if len(value) == 36]
