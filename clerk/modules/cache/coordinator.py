"""
CacheCoordinator: two-tier account reads and write-through mutations.

Purpose
-------
Serve account fields from the fastest tier that has them and keep every
tier consistent after a mutation:

    memo (per process, sub-second TTL)
      -> Redis projection ``account:<lower(username)>`` (TTL ~1h)
        -> PostgreSQL ``accounts`` row (source of truth)

Responsibilities
----------------
- ``get``: tiered read; a miss hydrates the full projection from the store.
  Fields outside the projection (``logins``, ``uuids``...) are always read
  from the store.
- ``mutate`` / ``update`` / ``transact``: lock the affected rows in sorted
  order inside one transaction, apply the changes, bump the row revision,
  commit, then patch the cached projection (keeping its TTL), refresh the
  memo and publish ``{type: "account_update", username, timestamp}``.
- ``publish_rank_update`` and the subscriber that drops memo entries and
  notifies rank-table listeners.

Revisions
---------
Every projection carries the ``revision`` of the row it was built from. A
patch is only applied on top of the revision just before the write;
anything else means the cached document missed a write, and it is deleted
so the next read rebuilds it from the store.

Failure Model
-------------
Cache-tier ``TransientStoreError`` (Redis down, breaker open) is logged and
absorbed; the operation continues against the store. Database-tier errors
propagate to the caller. A failed transaction leaves every tier untouched.
A committed write whose cache patch failed marks the key stale: this
process deletes it before reading it again.

Configuration Keys
------------------
- cache.account_ttl_seconds   : int   (default 3600)
- cache.memo_ttl_seconds      : float (default 0.5)
- cache.channels.rank_updates : str   (default "clerk:rank_updates")
- cache.channels.account_updates : str (default "clerk:account_updates")
"""

from __future__ import annotations

import copy
import time
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Set,
    Tuple,
)

from clerk.core.config.manager import ConfigManager
from clerk.core.database.service import DatabaseService
from clerk.core.exceptions import TransientStoreError
from clerk.core.logging.logger import get_logger
from clerk.core.redis.service import RedisService
from clerk.modules.accounts.codec import (
    ACCOUNT_COLUMNS,
    PROJECTION_FIELDS,
    REVISION_FIELD,
    build_projection,
    bump_revision,
    from_json_value,
    to_json_value,
)
from clerk.modules.accounts.repository import AccountRepository
from clerk.modules.shared.constants import (
    ACCOUNT_KEY_PREFIX,
    ACCOUNT_TTL_SECONDS,
    ACCOUNT_UPDATE_MESSAGE_TYPE,
    ACCOUNT_UPDATES_CHANNEL,
    MEMO_TTL_SECONDS,
    RANK_UPDATE_MESSAGE_TYPE,
    RANK_UPDATES_CHANNEL,
)
from clerk.modules.shared.timeutil import epoch_seconds

logger = get_logger(__name__)

Transform = Callable[[Any], Any]
Snapshot = Dict[str, Dict[str, Any]]
Planner = Callable[[Snapshot], Mapping[str, Mapping[str, Any]]]
RankListener = Callable[[], Awaitable[Any]]
SessionHook = Callable[[Any, Dict[str, Dict[str, Any]]], Awaitable[None]]

_PROJECTION_SET = frozenset(PROJECTION_FIELDS)


def account_key(username: str) -> str:
    return f"{ACCOUNT_KEY_PREFIX}{username.lower()}"


class CacheCoordinator:
    """
    Tiered account cache over ``RedisService`` and ``DatabaseService``.

    One instance per process. ``database`` and ``redis`` default to the
    infrastructure singletons and are injectable for tests.
    """

    def __init__(
        self,
        database: Any = DatabaseService,
        redis: Any = RedisService,
        repository: Optional[AccountRepository] = None,
        config_manager: Any = ConfigManager,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._db = database
        self._redis = redis
        self._repo = repository or AccountRepository()
        self._clock = clock

        self.account_ttl = int(config_manager.get("cache.account_ttl_seconds", ACCOUNT_TTL_SECONDS))
        self.memo_ttl = float(config_manager.get("cache.memo_ttl_seconds", MEMO_TTL_SECONDS))
        self.rank_channel = config_manager.get("cache.channels.rank_updates", RANK_UPDATES_CHANNEL)
        self.account_channel = config_manager.get(
            "cache.channels.account_updates", ACCOUNT_UPDATES_CHANNEL
        )

        self._memo: Dict[str, Tuple[float, Dict[str, Any]]] = {}
        # Keys whose write-through patch failed; deleted before the next read.
        self._stale: Set[str] = set()
        self._rank_listeners: List[RankListener] = []
        self._listening = False

    # ========================================================================
    # MEMO
    # ========================================================================

    def _memo_get(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self._memo.get(key)
        if entry is None:
            return None
        stored_at, projection = entry
        if self._clock() - stored_at > self.memo_ttl:
            self._memo.pop(key, None)
            return None
        return projection

    def _memo_put(self, key: str, projection: Dict[str, Any]) -> None:
        self._memo[key] = (self._clock(), projection)

    def invalidate_local(self, username: str) -> None:
        """Drop the per-process memo entry for ``username``."""
        self._memo.pop(account_key(username), None)

    # ========================================================================
    # CACHE-TIER HELPERS
    # ========================================================================

    @staticmethod
    def _absorb(exc: TransientStoreError, operation: str, key: Optional[str] = None) -> None:
        if not exc.is_cache_tier:
            raise exc
        logger.warning(
            f"Cache {operation} unavailable, continuing without Redis",
            extra={"key": key, "error": str(exc), "error_type": type(exc).__name__},
        )

    async def _fetch(self, key: str) -> Optional[Dict[str, Any]]:
        """Redis read that first deletes a key marked stale. Raises TransientStoreError."""
        if key in self._stale:
            await self._redis.delete(key)
            self._stale.discard(key)
            return None
        cached = await self._redis.get_json(key)
        return cached if isinstance(cached, dict) else None

    async def _redis_read(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            return await self._fetch(key)
        except TransientStoreError as exc:
            self._absorb(exc, "read", key)
            return None

    async def _redis_write(self, key: str, projection: Dict[str, Any], ttl: int) -> None:
        try:
            await self._redis.set_json(key, projection, ttl)
        except TransientStoreError as exc:
            self._absorb(exc, "write", key)
            return
        self._stale.discard(key)

    async def _publish(self, channel: str, message: Dict[str, Any]) -> None:
        try:
            await self._redis.publish(channel, message)
        except TransientStoreError as exc:
            self._absorb(exc, "publish", channel)

    # ========================================================================
    # READS
    # ========================================================================

    @staticmethod
    def _check_fields(fields: Iterable[str]) -> List[str]:
        names = list(fields)
        unknown = [name for name in names if name not in ACCOUNT_COLUMNS]
        if unknown:
            raise ValueError(f"Unknown account fields: {', '.join(unknown)}")
        return names

    async def get(
        self, username: str, fields: Optional[Iterable[str]] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Read account fields in projection representation.

        Returns None when the account does not exist. With ``fields`` omitted
        the whole projection is returned.
        """
        requested = self._check_fields(fields) if fields is not None else list(PROJECTION_FIELDS)
        key = account_key(username)
        extra = [name for name in requested if name not in _PROJECTION_SET]

        projection = self._memo_get(key)
        if projection is None:
            projection = await self._redis_read(key)
            if projection is not None:
                self._memo_put(key, projection)

        extras: Dict[str, Any] = {}
        if projection is None or extra:
            async with self._db.get_session() as session:
                account = await self._repo.get_by_username(session, username)
                if account is None:
                    return None
                if projection is None:
                    projection = build_projection(account)
                    await self._store_projection(key, projection)
                extras = {name: to_json_value(name, getattr(account, name)) for name in extra}

        result = {name: copy.deepcopy(projection.get(name)) for name in requested if name not in extras}
        result.update(extras)
        return result

    async def _store_projection(self, key: str, projection: Dict[str, Any]) -> None:
        self._memo_put(key, projection)
        await self._redis_write(key, projection, self.account_ttl)

    async def warm(self, username: str) -> Optional[Dict[str, Any]]:
        """Load the projection from the store into Redis and the memo."""
        async with self._db.get_session() as session:
            account = await self._repo.get_by_username(session, username)
            if account is None:
                return None
            projection = build_projection(account)
        await self._store_projection(account_key(username), projection)
        return copy.deepcopy(projection)

    async def evict(self, username: str) -> None:
        """Remove the Redis projection and the memo entry."""
        key = account_key(username)
        self._memo.pop(key, None)
        try:
            await self._redis.delete(key)
        except TransientStoreError as exc:
            self._absorb(exc, "delete", key)
            return
        self._stale.discard(key)

    async def cached_projection(self, username: str) -> Optional[Dict[str, Any]]:
        """The Redis document as stored, bypassing the memo and the store."""
        return await self._redis_read(account_key(username))

    async def cached_usernames(self) -> List[str]:
        """Lower-cased usernames that currently have a Redis projection."""
        try:
            keys = await self._redis.scan_keys(f"{ACCOUNT_KEY_PREFIX}*")
        except TransientStoreError as exc:
            self._absorb(exc, "scan")
            return []
        return sorted(key[len(ACCOUNT_KEY_PREFIX):] for key in keys if key.startswith(ACCOUNT_KEY_PREFIX))

    # ========================================================================
    # WRITES
    # ========================================================================

    async def update(self, username: str, field: str, transform: Transform) -> Optional[Any]:
        """Apply ``transform`` to one field; returns the new value or None if no account."""
        changed = await self.mutate({username: {field: transform}})
        values = changed.get(username.lower())
        return None if values is None else values.get(field)

    async def mutate(
        self, changes: Mapping[str, Mapping[str, Transform]]
    ) -> Dict[str, Dict[str, Any]]:
        """
        Apply per-field transforms to one or more accounts in one transaction.

        Each transform receives a deep copy of the current value (projection
        representation) and returns the new value. Missing accounts are
        skipped. Returns ``{lower(username): {field: new_value}}``.
        """
        fields = {field for transforms in changes.values() for field in transforms}
        lowered = {name.lower(): transforms for name, transforms in changes.items()}

        def plan(snapshot: Snapshot) -> Dict[str, Dict[str, Any]]:
            return {
                name: {field: transform(snapshot[name][field]) for field, transform in lowered[name].items()}
                for name in snapshot
                if name in lowered
            }

        return await self.transact(list(changes), fields, plan)

    async def transact(
        self,
        usernames: Iterable[str],
        fields: Iterable[str],
        plan: Planner,
        *,
        in_transaction: Optional[SessionHook] = None,
    ) -> Dict[str, Dict[str, Any]]:
        """
        Lock ``usernames``, hand ``plan`` a snapshot of ``fields`` and persist
        the values it returns.

        The snapshot maps lower-cased usernames to deep-copied field values
        plus ``"username"`` (display casing). ``plan`` may raise to abort;
        the transaction then rolls back and nothing reaches the cache.
        ``in_transaction`` runs in the same transaction after the writes,
        receiving the session and the written values.
        """
        field_list = self._check_fields(fields)
        if "username" in field_list:
            raise ValueError("username is immutable")

        async with self._db.get_transaction() as session:
            accounts = await self._repo.lock_many(session, usernames)
            snapshot: Snapshot = {}
            for name, account in accounts.items():
                values = {f: copy.deepcopy(to_json_value(f, getattr(account, f))) for f in field_list}
                values["username"] = account.username
                snapshot[name] = values

            planned = plan(snapshot)

            written: Dict[str, Dict[str, Any]] = {}
            revisions: Dict[str, int] = {}
            for name, values in planned.items():
                account = accounts.get(name.lower())
                if account is None or not values:
                    continue
                self._check_fields(values)
                for field, value in values.items():
                    setattr(account, field, from_json_value(field, value))
                key = account.username.lower()
                written[key] = {field: to_json_value(field, getattr(account, field)) for field in values}
                revisions[key] = bump_revision(account)

            if in_transaction is not None:
                await in_transaction(session, written)

        for name, values in written.items():
            await self.propagate_write(name, values, revisions[name])
        return written

    async def propagate_write(self, username: str, values: Dict[str, Any], revision: int) -> None:
        """
        Patch the cached projection after a committed write that moved the
        row to ``revision``, then announce the write.

        If Redis fails mid-patch the key is marked stale, so this process
        never serves the pre-write document.
        """
        key = account_key(username)
        projected = {f: copy.deepcopy(v) for f, v in values.items() if f in _PROJECTION_SET}
        projected[REVISION_FIELD] = revision

        self._memo.pop(key, None)
        try:
            await self._patch_projection(key, projected, revision)
        except TransientStoreError as exc:
            self._absorb(exc, "patch", key)
            self._stale.add(key)

        await self._publish(
            self.account_channel,
            {
                "type": ACCOUNT_UPDATE_MESSAGE_TYPE,
                "username": username,
                "timestamp": epoch_seconds(),
            },
        )

    async def _patch_projection(self, key: str, projected: Dict[str, Any], revision: int) -> None:
        cached = await self._fetch(key)
        if cached is None:
            return
        if cached.get(REVISION_FIELD) != revision - 1:
            # The document missed an earlier write; the next read rebuilds it.
            await self._redis.delete(key)
            logger.info(
                "Dropped account projection behind the store",
                extra={"key": key, "cached_revision": cached.get(REVISION_FIELD), "revision": revision},
            )
            return
        cached.update(projected)
        ttl = await self._redis.ttl(key)
        await self._redis.set_json(key, cached, ttl if ttl > 0 else self.account_ttl)
        self._memo_put(key, cached)

    # ========================================================================
    # PUB/SUB
    # ========================================================================

    def add_rank_listener(self, listener: RankListener) -> None:
        self._rank_listeners.append(listener)

    async def publish_rank_update(self) -> None:
        await self._publish(
            self.rank_channel,
            {"type": RANK_UPDATE_MESSAGE_TYPE, "timestamp": epoch_seconds()},
        )

    async def handle_account_update(self, message: Dict[str, Any]) -> None:
        if message.get("type") != ACCOUNT_UPDATE_MESSAGE_TYPE:
            return
        username = message.get("username")
        if isinstance(username, str) and username:
            self.invalidate_local(username)

    async def handle_rank_update(self, message: Dict[str, Any]) -> None:
        if message.get("type") != RANK_UPDATE_MESSAGE_TYPE:
            return
        for listener in list(self._rank_listeners):
            await listener()

    async def start_listening(self) -> bool:
        """Subscribe to both channels. Returns False when Redis is unavailable."""
        if self._listening:
            return True
        try:
            await self._redis.subscribe(
                {
                    self.rank_channel: self.handle_rank_update,
                    self.account_channel: self.handle_account_update,
                }
            )
        except TransientStoreError as exc:
            self._absorb(exc, "subscribe")
            return False
        self._listening = True
        logger.info(
            "Cache invalidation listener started",
            extra={"channels": [self.rank_channel, self.account_channel]},
        )
        return True

    async def stop_listening(self) -> None:
        if not self._listening:
            return
        await self._redis.unsubscribe_all()
        self._listening = False
