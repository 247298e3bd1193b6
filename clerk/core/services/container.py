"""
Service Container
=================

Purpose
-------
Build the engine's services once, in dependency order, and own their
lifecycle.

Responsibilities
----------------
- Construct the cache coordinator, rank table and every domain service
- Ensure the Default rank exists and load the rank table
- Wire cross-process invalidation (rank updates reload the table)
- Start and stop the sync scheduler and the pub/sub listener
- Expose services as properties that fail loudly before ``initialize()``

Non-Responsibilities
--------------------
- Infrastructure bring-up (``DatabaseService``, ``RedisService``,
  ``ConfigManager``) happens in ``clerk.main`` before the container
- Transport concerns: the embedding server supplies the ``IdentityResolver``

Build Order
-----------
CacheCoordinator -> RankTable -> RankService -> AuthorizationResolver ->
AuthenticationGuard -> AccountService -> RelationshipManager ->
SyncScheduler -> SessionManager
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional, TypeVar

from clerk.core.config.manager import ConfigManager
from clerk.core.database.service import DatabaseService
from clerk.core.logging.logger import get_logger
from clerk.core.redis.service import RedisService
from clerk.modules.accounts.service import AccountService
from clerk.modules.auth.geo import GeoLookup, IpApiGeoLookup
from clerk.modules.auth.guard import AuthenticationGuard
from clerk.modules.cache.coordinator import CacheCoordinator
from clerk.modules.friends.service import RelationshipManager
from clerk.modules.ranks.resolver import AuthorizationResolver
from clerk.modules.ranks.service import RankService
from clerk.modules.ranks.table import RankTable
from clerk.modules.session.manager import IdentityResolver, SessionManager
from clerk.modules.sync.scheduler import SyncScheduler

if TYPE_CHECKING:
    from logging import Logger

    from clerk.core.event.bus import EventBus

logger = get_logger(__name__)

T = TypeVar("T")


class ServiceContainer:
    """
    Holds one instance of every domain service.

    Usage:
        container = ServiceContainer(ConfigManager, event_bus, logger, identity=resolver)
        await container.initialize()
        allowed = await container.resolver.has_permission("Alice", "clerk.rank.grant")
        await container.shutdown()
    """

    def __init__(
        self,
        config_manager: Any,
        event_bus: EventBus,
        logger: Logger,
        *,
        identity: IdentityResolver,
        geo: Optional[GeoLookup] = None,
        database: Any = DatabaseService,
        redis: Any = RedisService,
    ) -> None:
        self._config_manager = config_manager
        self._event_bus = event_bus
        self._logger = logger
        self._identity = identity
        self._geo = geo
        self._database = database
        self._redis = redis

        self._cache: Optional[CacheCoordinator] = None
        self._rank_table: Optional[RankTable] = None
        self._ranks: Optional[RankService] = None
        self._resolver: Optional[AuthorizationResolver] = None
        self._guard: Optional[AuthenticationGuard] = None
        self._accounts: Optional[AccountService] = None
        self._friends: Optional[RelationshipManager] = None
        self._sync: Optional[SyncScheduler] = None
        self._sessions: Optional[SessionManager] = None

        self._initialized = False
        self._owns_geo = geo is None
        self._service_init_times: Dict[str, float] = {}
        self._init_start: Optional[float] = None
        self._init_end: Optional[float] = None

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def _timed(self, name: str, factory: Callable[[], T]) -> T:
        start = time.perf_counter()
        service = factory()
        self._service_init_times[name] = time.perf_counter() - start
        return service

    async def initialize(self) -> None:
        """Build every service, load the rank table and start background work."""
        if self._initialized:
            self._logger.warning("ServiceContainer already initialized")
            return

        self._init_start = time.perf_counter()
        self._logger.info("Service container initialization starting")

        cfg, bus, db = self._config_manager, self._event_bus, self._database
        if self._geo is None:
            self._geo = IpApiGeoLookup.from_config(cfg)
        geo = self._geo

        cache = self._cache = self._timed(
            "cache",
            lambda: CacheCoordinator(database=db, redis=self._redis, config_manager=cfg),
        )
        table = self._rank_table = RankTable()
        ranks = self._ranks = self._timed(
            "ranks",
            lambda: RankService(cache, table, bus, config_manager=cfg, database=db),
        )
        self._resolver = self._timed("resolver", lambda: AuthorizationResolver(cache, table))
        guard = self._guard = self._timed(
            "guard",
            lambda: AuthenticationGuard(cache, geo, bus, config_manager=cfg, database=db),
        )
        accounts = self._accounts = self._timed(
            "accounts",
            lambda: AccountService(cache, geo, bus, config_manager=cfg, database=db),
        )
        self._friends = self._timed(
            "friends",
            lambda: RelationshipManager(cache, bus, config_manager=cfg),
        )
        self._sync = self._timed(
            "sync",
            lambda: SyncScheduler(cache, bus, config_manager=cfg, database=db, redis=self._redis),
        )
        self._sessions = self._timed(
            "sessions",
            lambda: SessionManager(guard, accounts, cache, self._identity, bus, config_manager=cfg),
        )

        await ranks.ensure_default_rank()
        await ranks.refresh_table()
        cache.add_rank_listener(ranks.refresh_table)
        await cache.start_listening()
        self._sync.start()

        self._init_end = time.perf_counter()
        self._initialized = True
        self._logger.info(
            "Service container initialized",
            extra={
                "latency_ms": round((self._init_end - self._init_start) * 1000, 2),
                "service_count": len(self._service_init_times),
                "rank_count": len(table),
            },
        )

    async def shutdown(self) -> None:
        """Stop background work. Safe to call more than once."""
        if not self._initialized:
            return
        self._logger.info("Service container shutting down")

        if self._sync is not None:
            await self._sync.stop()
        if self._cache is not None:
            await self._cache.stop_listening()
        if self._owns_geo and isinstance(self._geo, IpApiGeoLookup):
            await self._geo.close()

        self._initialized = False
        self._logger.info("Service container shut down")

    # ========================================================================
    # Accessors
    # ========================================================================

    def _require(self, service: Optional[T]) -> T:
        if not self._initialized or service is None:
            raise RuntimeError("ServiceContainer not initialized. Call initialize() first.")
        return service

    @property
    def cache(self) -> CacheCoordinator:
        return self._require(self._cache)

    @property
    def rank_table(self) -> RankTable:
        return self._require(self._rank_table)

    @property
    def ranks(self) -> RankService:
        return self._require(self._ranks)

    @property
    def resolver(self) -> AuthorizationResolver:
        return self._require(self._resolver)

    @property
    def guard(self) -> AuthenticationGuard:
        return self._require(self._guard)

    @property
    def accounts(self) -> AccountService:
        return self._require(self._accounts)

    @property
    def friends(self) -> RelationshipManager:
        return self._require(self._friends)

    @property
    def sync(self) -> SyncScheduler:
        return self._require(self._sync)

    @property
    def sessions(self) -> SessionManager:
        return self._require(self._sessions)

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def health(self) -> Dict[str, Any]:
        """Liveness of both stores plus breaker, bus and build statistics."""
        total = (
            self._init_end - self._init_start
            if self._init_start is not None and self._init_end is not None
            else None
        )
        config_metrics = getattr(self._config_manager, "get_metrics", None)
        return {
            "initialized": self._initialized,
            "database": {
                "healthy": await self._database.health_check(),
                "circuit": self._database.get_circuit_breaker_metrics(),
            },
            "redis": {
                "healthy": await self._redis.health_check(),
                **self._redis.get_status(),
            },
            "events": self._event_bus.get_metrics_summary(),
            "config": config_metrics() if config_metrics is not None else None,
            "sync_running": self._sync is not None and self._sync.running,
            "ranks_loaded": len(self._rank_table) if self._rank_table is not None else 0,
            "init_seconds": total,
            "service_init_seconds": dict(self._service_init_times),
        }


# ============================================================================
# Process-wide container
# ============================================================================

_container: Optional[ServiceContainer] = None


def initialize_service_container(
    event_bus: EventBus,
    *,
    identity: IdentityResolver,
    config_manager: Any = ConfigManager,
    logger: Optional[Logger] = None,
    geo: Optional[GeoLookup] = None,
) -> ServiceContainer:
    """Create the process-wide container; call ``initialize()`` on the result."""
    global _container
    if _container is not None:
        raise RuntimeError("Service container already created")
    _container = ServiceContainer(
        config_manager,
        event_bus,
        logger or get_logger(__name__),
        identity=identity,
        geo=geo,
    )
    return _container


async def shutdown_service_container() -> None:
    global _container
    if _container is None:
        return
    await _container.shutdown()
    _container = None
