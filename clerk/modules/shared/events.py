"""EventBus event names emitted by the domain services."""

from __future__ import annotations

from typing import Final

ACCOUNT_LOGIN: Final[str] = "account.login"
ACCOUNT_LOGIN_FAILED: Final[str] = "account.login_failed"
ACCOUNT_LOCKED: Final[str] = "account.locked"
ACCOUNT_GEO_LOCKED: Final[str] = "account.geo_locked"
ACCOUNT_UNLOCKED: Final[str] = "account.unlocked"
ACCOUNT_REGISTERED: Final[str] = "account.registered"
ACCOUNT_PASSWORD_CHANGED: Final[str] = "account.password_changed"

FRIEND_REQUEST_SENT: Final[str] = "friends.request_sent"
FRIEND_REQUEST_ACCEPTED: Final[str] = "friends.request_accepted"
FRIEND_REQUEST_DENIED: Final[str] = "friends.request_denied"
FRIEND_REQUEST_CANCELLED: Final[str] = "friends.request_cancelled"
FRIEND_REMOVED: Final[str] = "friends.removed"

RANK_UPDATED: Final[str] = "ranks.updated"
RANK_DELETED: Final[str] = "ranks.deleted"
RANK_GRANTED: Final[str] = "ranks.granted"
RANK_REVOKED: Final[str] = "ranks.revoked"

SESSION_CONNECTED: Final[str] = "session.connected"
SESSION_DISCONNECTED: Final[str] = "session.disconnected"

SYNC_COMPLETED: Final[str] = "sync.completed"
