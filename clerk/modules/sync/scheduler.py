"""
Sync Scheduler
==============

Purpose
-------
Reconcile cached account projections with PostgreSQL. Every mutation is
already written through to the store, so a run normally finds nothing to
write. It repairs two kinds of drift, told apart by the row ``revision``
stamped into each projection:

- the projection is at the row's revision but its values differ (edited in
  Redis by another process): the cached values are written to the store
- the projection is at an older revision (a committed write whose cache
  patch failed): the store wins and the projection is evicted, so the next
  read rebuilds it

Responsibilities
----------------
- Periodic ``run_once`` on the ``sync.auto_sync`` interval
- Targeted ``flush_player`` for one account
- ``on_disconnect`` listener: stamp ``last_seen`` then flush that account
- Never overlap itself: a tick that finds a run in progress is skipped; with
  ``sync.distributed_lock`` on, other processes are excluded through a Redis
  lock as well

Only ``permissions``, ``ranks`` and ``settings`` are reconciled, and only rows
whose stored value differs from the cached one are written. A stale
projection is never copied over the store.

Configuration Keys
------------------
- sync.auto_sync                : duration string (default "10m"; "" disables)
- sync.batch_size               : int (default 200)
- sync.distributed_lock         : bool (default True)
- sync.lock_timeout_seconds     : int (default 300)
- sync.flush_on_shutdown        : bool (default True)
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple

from clerk.core.config.manager import ConfigManager
from clerk.core.database.service import DatabaseService
from clerk.core.event.types import EventPayload, ListenerPriority
from clerk.core.exceptions import (
    ClerkInfrastructureException,
    TransientStoreError,
    is_transient_error,
)
from clerk.core.logging.logger import LogContext, get_logger
from clerk.core.redis.service import RedisService
from clerk.modules.accounts.codec import (
    REVISION_FIELD,
    SYNCED_FIELDS,
    bump_revision,
    row_revision,
    to_json_value,
)
from clerk.modules.accounts.repository import AccountRepository
from clerk.modules.shared import events
from clerk.modules.shared.base_service import BaseService
from clerk.modules.shared.durations import parse_duration
from clerk.modules.shared.timeutil import epoch_seconds, utc_now

if TYPE_CHECKING:
    from logging import Logger

    from clerk.core.event.bus import EventBus
    from clerk.modules.cache.coordinator import CacheCoordinator

SYNC_LOCK_NAME = "clerk:sync"


class SyncScheduler(BaseService):
    """
    Background reconciliation between the Redis cache and PostgreSQL.

    Public Methods
    --------------
    - start() / stop()
    - run_once() -> Optional[int]
    - flush_player(username) -> bool
    - on_disconnect(payload)
    """

    def __init__(
        self,
        cache: CacheCoordinator,
        event_bus: EventBus,
        logger: Optional[Logger] = None,
        *,
        config_manager: Any = ConfigManager,
        database: Any = DatabaseService,
        redis: Any = RedisService,
        repository: Optional[AccountRepository] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(config_manager, event_bus, logger or get_logger(__name__))
        self._cache = cache
        self._db = database
        self._redis = redis
        self._repo = repository or AccountRepository()
        self._clock = clock

        self._run_lock = asyncio.Lock()
        self._task: Optional["asyncio.Task[None]"] = None
        self._listener_id: Optional[str] = None

        self.interval: Optional[timedelta] = parse_duration(
            str(self.get_config("sync.auto_sync", "10m") or "")
        )
        self.batch_size = max(1, int(self.get_config("sync.batch_size", 200)))
        self.distributed_lock = bool(self.get_config("sync.distributed_lock", True))
        self.lock_timeout = int(self.get_config("sync.lock_timeout_seconds", 300))
        self.flush_on_shutdown = bool(self.get_config("sync.flush_on_shutdown", True))

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    def start(self) -> bool:
        """
        Subscribe to disconnects and start the periodic task.

        Returns False when the interval is empty or invalid; the disconnect
        listener is registered either way.
        """
        if self._listener_id is None:
            self._listener_id = self._events.subscribe(
                events.SESSION_DISCONNECTED,
                self.on_disconnect,
                priority=ListenerPriority.CRITICAL,
                identifier="sync.on_disconnect",
            )

        if self.interval is None:
            self.log.info("Periodic sync disabled", extra={"auto_sync": self.get_config("sync.auto_sync")})
            return False
        if self.running:
            return True

        self._task = asyncio.create_task(self._loop(), name="clerk-sync")
        self.log.info("Periodic sync started", extra={"interval_seconds": self.interval.total_seconds()})
        return True

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._listener_id is not None:
            self._events.unsubscribe(events.SESSION_DISCONNECTED, self._listener_id)
            self._listener_id = None

        if self.flush_on_shutdown:
            await self.run_once()
        self.log.info("Periodic sync stopped")

    async def _loop(self) -> None:
        assert self.interval is not None
        seconds = self.interval.total_seconds()
        while True:
            await asyncio.sleep(seconds)
            try:
                await self.run_once()
            except ClerkInfrastructureException as exc:
                # Keep ticking; the next run retries.
                self.log_error("run_once", exc, retryable=is_transient_error(exc))

    # ========================================================================
    # RECONCILIATION
    # ========================================================================

    async def run_once(self) -> Optional[int]:
        """
        Flush every cached account. Returns the number of accounts written,
        or None when the run was skipped because another is in progress.
        """
        if self._run_lock.locked():
            self.log.debug("Sync already running, tick skipped")
            return None

        async with self._run_lock:
            with LogContext(operation="sync"):
                start = time.perf_counter()
                written = await self._guarded_flush()
                if written is None:
                    return None
                latency_ms = round((time.perf_counter() - start) * 1000, 2)
                self.log.info("Sync completed", extra={"written": written, "latency_ms": latency_ms})
                await self.emit_event(events.SYNC_COMPLETED, {"written": written, "latency_ms": latency_ms})
                return written

    async def _guarded_flush(self) -> Optional[int]:
        if not self.distributed_lock:
            return await self._flush_cached()

        written: Optional[int] = None
        try:
            async with self._redis.acquire_lock(SYNC_LOCK_NAME, self.lock_timeout) as acquired:
                if not acquired:
                    self.log.info("Sync lock held by another process, run skipped")
                    return None
                written = await self._flush_cached()
        except TransientStoreError as exc:
            if not exc.is_cache_tier:
                raise
            self.log.warning(
                "Sync lock unavailable, running without it",
                extra={"error": str(exc), "error_type": type(exc).__name__},
            )
            if written is None:
                written = await self._flush_cached()
        return written

    async def _flush_cached(self) -> int:
        usernames = await self._cache.cached_usernames()
        written = 0
        for offset in range(0, len(usernames), self.batch_size):
            written += await self._flush_batch(usernames[offset:offset + self.batch_size])
        return written

    async def flush_player(self, username: str) -> bool:
        """Flush one account's cached permissions, ranks and settings."""
        return await self._flush_batch([username]) > 0

    async def _flush_batch(self, usernames: List[str]) -> int:
        cached: Dict[str, Dict[str, Any]] = {}
        for name in usernames:
            projection = await self._cache.cached_projection(name)
            if projection is not None:
                cached[name.lower()] = projection
        if not cached:
            return 0

        written: Dict[str, Tuple[Dict[str, Any], int]] = {}
        stale: List[str] = []
        async with self._db.get_transaction() as session:
            accounts = await self._repo.lock_many(session, cached)
            for name, account in accounts.items():
                projection = cached[name]
                if projection.get(REVISION_FIELD) != row_revision(account):
                    stale.append(name)
                    continue
                changed = {
                    field: projection[field]
                    for field in SYNCED_FIELDS
                    if field in projection
                    and to_json_value(field, getattr(account, field)) != projection[field]
                }
                for field, value in changed.items():
                    setattr(account, field, value)
                if changed:
                    written[name] = (changed, bump_revision(account))

        for name in stale:
            await self._cache.evict(name)
        for name, (changed, revision) in written.items():
            await self._cache.propagate_write(name, changed, revision)

        if stale:
            self.log.info("Sync evicted projections behind the store", extra={"usernames": stale})
        if written:
            self.log.info("Sync wrote drifted accounts", extra={"usernames": list(written)})
        return len(written)

    # ========================================================================
    # EVENT LISTENERS
    # ========================================================================

    async def on_disconnect(self, payload: EventPayload) -> None:
        username = payload.get("username")
        if not username:
            return
        seen = epoch_seconds(self._clock())
        await self._cache.update(username, "last_seen", lambda _: seen)
        await self.flush_player(username)
