"""
In-memory doubles for unit tests.

The repositories and Redis double implement the same methods the services
call on ``AccountRepository``, ``RankRepository`` and ``RedisService`` so
the real ``CacheCoordinator`` and domain services run unchanged on top of
them. Integration tests exercise the real stores.
"""

from __future__ import annotations

import copy
import json
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from fnmatch import fnmatchcase
from typing import Any, Dict, Iterable, List, Optional, Tuple

from clerk.core.exceptions import TransientStoreError
from clerk.database.models import Account, Rank
from clerk.modules.accounts.types import GeoInfo

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


class MutableClock:
    """Callable clock that tests move forward explicitly."""

    def __init__(self, start: datetime = NOW) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class Ticker:
    """Monotonic-seconds clock for the cache memo."""

    def __init__(self) -> None:
        self.value = 0.0

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class StaticConfig:
    """``ConfigManager.get`` lookalike backed by a flat dict of dotted keys."""

    def __init__(self, values: Optional[Dict[str, Any]] = None) -> None:
        self.values = dict(values or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)


# ============================================================================
# DATABASE
# ============================================================================


class FakeSession:
    pass


class FakeDatabase:
    """Hands out sessions; the fake repositories hold the data."""

    def __init__(self) -> None:
        self.sessions = 0
        self.transactions = 0

    @asynccontextmanager
    async def get_session(self):
        self.sessions += 1
        yield FakeSession()

    @asynccontextmanager
    async def get_transaction(self):
        self.transactions += 1
        yield FakeSession()


class FakeStore:
    def __init__(self) -> None:
        self.accounts: Dict[str, Account] = {}
        self.ranks: Dict[str, Rank] = {}


class FakeAccountRepository:
    def __init__(self, store: FakeStore) -> None:
        self.store = store

    async def get_by_username(self, session, username: str, *, for_update: bool = False):
        return self.store.accounts.get(username.lower())

    async def username_taken(self, session, username: str) -> bool:
        return username.lower() in self.store.accounts

    async def lock_many(self, session, usernames: Iterable[str]) -> Dict[str, Account]:
        keys = sorted({name.lower() for name in usernames})
        return {key: self.store.accounts[key] for key in keys if key in self.store.accounts}

    async def find_by_id_or_ip(self, session, stable_id: Optional[str] = None, ip: Optional[str] = None):
        if not stable_id and not ip:
            return []
        found = [
            account for account in self.store.accounts.values()
            if (stable_id and stable_id in (account.uuids or []))
            or (ip and ip in (account.ip_address or []))
        ]
        return sorted(found, key=lambda a: a.username)

    async def find_auto_login_candidates(self, session, stable_id: str, ip: str):
        return [
            account for account in self.store.accounts.values()
            if stable_id in (account.uuids or [])
            and ip in (account.ip_address or [])
            and not account.logged_out
        ]

    async def find_with_rank(self, session, rank_name: str, *, for_update: bool = False):
        folded = rank_name.lower()

        def holds(account: Account) -> bool:
            return any(
                str(grant.get("rank") if isinstance(grant, dict) else grant).lower() == folded
                for grant in (account.ranks or [])
            )

        return sorted(
            (a for a in self.store.accounts.values() if holds(a)),
            key=lambda a: a.username.lower(),
        )

    def add(self, session, instance: Account) -> Account:
        self.store.accounts[instance.username.lower()] = instance
        return instance

    async def delete(self, session, instance: Account) -> None:
        self.store.accounts.pop(instance.username.lower(), None)


class FakeRankRepository:
    def __init__(self, store: FakeStore) -> None:
        self.store = store

    async def get_by_name(self, session, name: str, *, for_update: bool = False):
        return self.store.ranks.get(name.lower())

    async def list_all(self, session) -> List[Rank]:
        return sorted(self.store.ranks.values(), key=lambda r: (-(r.weight or 0), r.name))

    async def find_inheriting(self, session, name: str, *, for_update: bool = False):
        folded = name.lower()
        return [r for r in self.store.ranks.values() if folded in {i.lower() for i in (r.inheritance or [])}]

    def add(self, session, instance: Rank) -> Rank:
        self.store.ranks[instance.name.lower()] = instance
        return instance

    async def delete(self, session, instance: Rank) -> None:
        self.store.ranks.pop(instance.name.lower(), None)


# ============================================================================
# REDIS
# ============================================================================


class FakeRedis:
    """
    Subset of ``RedisService`` used by the cache coordinator and sync job.
    Values are stored JSON-encoded so reads never alias writes.
    """

    def __init__(self) -> None:
        self.data: Dict[str, str] = {}
        self.ttls: Dict[str, int] = {}
        self.published: List[Tuple[str, Dict[str, Any]]] = []
        self.handlers: Dict[str, Any] = {}
        self.fail = False
        self.lock_held = False
        self.locks_taken = 0

    def _check(self, operation: str) -> None:
        if self.fail:
            raise TransientStoreError(TransientStoreError.CACHE, operation, ConnectionError("redis down"))

    async def get_json(self, key: str) -> Optional[Any]:
        self._check("GET")
        raw = self.data.get(key)
        return json.loads(raw) if raw is not None else None

    async def set_json(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        self._check("SET")
        self.data[key] = json.dumps(value)
        if ttl_seconds:
            self.ttls[key] = int(ttl_seconds)
        return True

    async def delete(self, *keys: str) -> int:
        self._check("DEL")
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def ttl(self, key: str) -> int:
        self._check("TTL")
        if key not in self.data:
            return -2
        return self.ttls.get(key, -1)

    async def scan_keys(self, pattern: str, count: int = 500) -> List[str]:
        self._check("SCAN")
        return sorted(key for key in self.data if fnmatchcase(key, pattern))

    async def publish(self, channel: str, message: Dict[str, Any]) -> int:
        self._check("PUBLISH")
        self.published.append((channel, copy.deepcopy(dict(message))))
        return len(self.handlers)

    async def subscribe(self, handlers: Dict[str, Any]) -> None:
        self._check("SUBSCRIBE")
        self.handlers.update(handlers)

    async def unsubscribe_all(self) -> None:
        self.handlers.clear()

    @asynccontextmanager
    async def acquire_lock(self, lock_name: str, timeout_seconds: Optional[int] = None):
        self._check("LOCK")
        if self.lock_held:
            yield False
            return
        self.lock_held = True
        self.locks_taken += 1
        try:
            yield True
        finally:
            self.lock_held = False

    def messages(self, channel: str) -> List[Dict[str, Any]]:
        return [message for name, message in self.published if name == channel]


# ============================================================================
# AUTH DOUBLES
# ============================================================================


class FakeGeo:
    """Per-IP canned answers; unknown for anything unmapped."""

    def __init__(self, answers: Optional[Dict[str, GeoInfo]] = None) -> None:
        self.answers = dict(answers or {})
        self.calls: List[str] = []

    async def lookup(self, ip: str) -> GeoInfo:
        self.calls.append(ip)
        return self.answers.get(ip, GeoInfo.unknown())


class FakeHasher:
    """Reversible stand-in for bcrypt so tests stay fast."""

    PREFIX = "hashed:"

    async def hash(self, plain: str) -> str:
        return self.PREFIX + plain

    async def verify(self, plain: str, hashed: Optional[str]) -> bool:
        return hashed == self.PREFIX + plain


def make_account(store: FakeStore, username: str, password: str = "Secret1", **fields: Any) -> Account:
    """Insert a fully-populated account row into ``store``."""
    values: Dict[str, Any] = {
        "username": username,
        "password": FakeHasher.PREFIX + password,
        "platform": "Java",
        "uuids": [],
        "ip_address": [],
        "registered_date": NOW - timedelta(days=30),
        "logins": [],
        "logged_out": False,
        "auto_lock": False,
        "failed_attempts": 0,
        "lock_until": None,
        "lock_reason": "",
        "locked": False,
        "country": "Unknown",
        "region": "Unknown",
        "permissions": [],
        "ranks": [{"rank": "Default"}],
        "friends": [],
        "incoming_requests": [],
        "outgoing_requests": [],
        "last_seen": None,
        "settings": {},
    }
    values.update(fields)
    account = Account(**values)
    store.accounts[username.lower()] = account
    return account


def make_rank(
    store: FakeStore,
    name: str,
    *,
    prefix: str = "",
    permissions: Iterable[str] = (),
    inheritance: Iterable[str] = (),
    weight: int = 0,
    users: Iterable[str] = (),
) -> Rank:
    rank = Rank(
        name=name,
        prefix=prefix,
        permissions=list(permissions),
        inheritance=list(inheritance),
        weight=weight,
        users=list(users),
    )
    store.ranks[name.lower()] = rank
    return rank
