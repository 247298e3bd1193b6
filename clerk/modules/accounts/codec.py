"""
JSON codec for account values.

Purpose
-------
The only place that knows how grants, friends, requests and login history
are laid out in the JSONB columns and in the Redis projection, including
the legacy shapes still present in older rows:

- rank grants:        {"rank": "VIP", "expires": 1735689600} or "VIP"
- permission grants:  {"permission": "x.y", "expires": ...}   or "x.y"
- friends:            {"username": "Bob", "since": 1700000000} or "Bob"
- incoming requests:  {"from": "Bob", "timestamp": ...}
- outgoing requests:  {"to": "Bob", "timestamp": ...}
- logins:             {"id", "platform", "ip_address", "date" (ISO-8601),
                       "country", "region"}

Expiries and ``since`` / ``timestamp`` are epoch seconds.

Projection
----------
``build_projection`` renders the cached document for ``account:<name>``,
stamped with the row ``revision`` it reflects. ``to_json_value`` /
``from_json_value`` convert a single column between its ORM value and the
projection representation (datetimes become ISO strings or epoch seconds).
Transforms passed to ``CacheCoordinator`` always see the projection
representation.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional

from clerk.modules.shared.constants import UNKNOWN_GEO
from clerk.modules.shared.timeutil import epoch_seconds, from_epoch, parse_iso

from .types import FriendEntry, FriendRequest, LoginRecord, PermissionGrant, RankGrant

if TYPE_CHECKING:
    from clerk.database.models import Account


PROJECTION_FIELDS = (
    "username",
    "platform",
    "registered_date",
    "country",
    "region",
    "permissions",
    "ranks",
    "friends",
    "incoming_requests",
    "outgoing_requests",
    "settings",
    "last_seen",
)

# Columns the sync job reconciles from cache into the store.
SYNCED_FIELDS = ("permissions", "ranks", "settings")

# Projection key holding the row revision the document was built from.
REVISION_FIELD = "revision"

ACCOUNT_COLUMNS = frozenset(
    {
        "username",
        "password",
        "platform",
        "uuids",
        "ip_address",
        "registered_date",
        "logins",
        "logged_out",
        "auto_lock",
        "failed_attempts",
        "lock_until",
        "lock_reason",
        "locked",
        "country",
        "region",
        "permissions",
        "ranks",
        "friends",
        "incoming_requests",
        "outgoing_requests",
        "last_seen",
        "settings",
    }
)

_EPOCH_FIELDS = frozenset({"last_seen"})
_ISO_FIELDS = frozenset({"registered_date", "lock_until"})


def _epoch(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_list(raw: Any) -> List[Any]:
    return list(raw) if isinstance(raw, (list, tuple)) else []


# ============================================================================
# GRANTS
# ============================================================================


def decode_rank_grants(raw: Any) -> List[RankGrant]:
    grants: List[RankGrant] = []
    for item in _as_list(raw):
        if isinstance(item, str):
            grants.append(RankGrant(item))
        elif isinstance(item, dict) and item.get("rank"):
            grants.append(RankGrant(str(item["rank"]), from_epoch(_epoch(item.get("expires")))))
    return grants


def encode_rank_grants(grants: Iterable[RankGrant]) -> List[Dict[str, Any]]:
    encoded: List[Dict[str, Any]] = []
    for grant in grants:
        entry: Dict[str, Any] = {"rank": grant.rank}
        if grant.expires is not None:
            entry["expires"] = epoch_seconds(grant.expires)
        encoded.append(entry)
    return encoded


def decode_permission_grants(raw: Any) -> List[PermissionGrant]:
    grants: List[PermissionGrant] = []
    for item in _as_list(raw):
        if isinstance(item, str):
            grants.append(PermissionGrant(item))
        elif isinstance(item, dict) and item.get("permission"):
            grants.append(
                PermissionGrant(str(item["permission"]), from_epoch(_epoch(item.get("expires"))))
            )
    return grants


def encode_permission_grants(grants: Iterable[PermissionGrant]) -> List[Dict[str, Any]]:
    encoded: List[Dict[str, Any]] = []
    for grant in grants:
        entry: Dict[str, Any] = {"permission": grant.permission}
        if grant.expires is not None:
            entry["expires"] = epoch_seconds(grant.expires)
        encoded.append(entry)
    return encoded


# ============================================================================
# SOCIAL
# ============================================================================


def decode_friends(raw: Any) -> List[FriendEntry]:
    friends: List[FriendEntry] = []
    for item in _as_list(raw):
        if isinstance(item, str):
            friends.append(FriendEntry(item, 0))
        elif isinstance(item, dict) and item.get("username"):
            friends.append(FriendEntry(str(item["username"]), _epoch(item.get("since")) or 0))
    return friends


def encode_friends(friends: Iterable[FriendEntry]) -> List[Dict[str, Any]]:
    return [{"username": f.username, "since": f.since} for f in friends]


def decode_requests(raw: Any, key: str) -> List[FriendRequest]:
    """``key`` is "from" for incoming and "to" for outgoing lists."""
    requests: List[FriendRequest] = []
    for item in _as_list(raw):
        if isinstance(item, dict) and item.get(key):
            requests.append(FriendRequest(str(item[key]), _epoch(item.get("timestamp")) or 0))
    return requests


def encode_requests(requests: Iterable[FriendRequest], key: str) -> List[Dict[str, Any]]:
    return [{key: r.username, "timestamp": r.timestamp} for r in requests]


# ============================================================================
# LOGIN HISTORY
# ============================================================================


def decode_logins(raw: Any) -> List[LoginRecord]:
    records: List[LoginRecord] = []
    for item in _as_list(raw):
        if not isinstance(item, dict):
            continue
        date = parse_iso(item.get("date"))
        if date is None:
            continue
        records.append(
            LoginRecord(
                id=str(item.get("id", "")),
                platform=str(item.get("platform", "")),
                ip_address=str(item.get("ip_address", "")),
                date=date,
                country=str(item.get("country") or UNKNOWN_GEO),
                region=str(item.get("region") or UNKNOWN_GEO),
            )
        )
    return records


def encode_logins(records: Iterable[LoginRecord]) -> List[Dict[str, Any]]:
    return [
        {
            "id": r.id,
            "platform": r.platform,
            "ip_address": r.ip_address,
            "date": r.date.isoformat(),
            "country": r.country,
            "region": r.region,
        }
        for r in records
    ]


# ============================================================================
# PROJECTION
# ============================================================================


def to_json_value(field: str, value: Any) -> Any:
    if field in _EPOCH_FIELDS:
        return epoch_seconds(value) if isinstance(value, datetime) else _epoch(value)
    if field in _ISO_FIELDS:
        return value.isoformat() if isinstance(value, datetime) else value
    if isinstance(value, list):
        return list(value)
    if isinstance(value, dict):
        return dict(value)
    return value


def from_json_value(field: str, value: Any) -> Any:
    if field in _EPOCH_FIELDS:
        return from_epoch(value) if not isinstance(value, datetime) else value
    if field in _ISO_FIELDS:
        return parse_iso(value)
    return value


def row_revision(account: "Account") -> int:
    return int(account.revision or 0)


def bump_revision(account: "Account") -> int:
    """Advance the row revision after changing the row; returns the new value."""
    account.revision = row_revision(account) + 1
    return account.revision


def build_projection(account: "Account") -> Dict[str, Any]:
    """Cache document for one account, stamped with its row revision."""
    projection = {name: to_json_value(name, getattr(account, name)) for name in PROJECTION_FIELDS}
    projection[REVISION_FIELD] = row_revision(account)
    return projection
