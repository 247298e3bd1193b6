"""
Pytest Configuration and Fixtures for Clerk Tests
=================================================

Purpose
-------
Centralized fixtures for the Clerk test suite.

Responsibilities
----------------
- Environment setup before any ``clerk`` import (Config validates on import)
- In-memory stores, Redis double and clocks for unit tests
- Fully wired domain services over those doubles
- Testcontainers for PostgreSQL and Redis in integration tests

Architecture Notes
------------------
- Unit tests run the real services and the real CacheCoordinator on top of
  the doubles in ``tests.fakes``; nothing is patched inside the services
- Integration tests use testcontainers (real database and Redis)
- Containers are session scoped; engines and data are per test
"""

from __future__ import annotations

import os

os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_LEVEL", "DEBUG")

from typing import Any, Dict, Generator, List

import pytest
from testcontainers.postgres import PostgresContainer
from testcontainers.redis import RedisContainer

from clerk.core.event.bus import EventBus
from clerk.core.event.types import ListenerPriority
from clerk.core.logging.logger import get_logger
from clerk.modules.accounts.service import AccountService
from clerk.modules.auth.guard import AuthenticationGuard
from clerk.modules.cache.coordinator import CacheCoordinator
from clerk.modules.friends.service import RelationshipManager
from clerk.modules.ranks.resolver import AuthorizationResolver
from clerk.modules.ranks.service import RankService
from clerk.modules.ranks.table import RankTable
from clerk.modules.session.manager import SessionManager
from clerk.modules.sync.scheduler import SyncScheduler
from tests.fakes import (
    FakeAccountRepository,
    FakeDatabase,
    FakeGeo,
    FakeHasher,
    FakeRankRepository,
    FakeRedis,
    FakeStore,
    MutableClock,
    StaticConfig,
    Ticker,
    make_rank,
)

logger = get_logger(__name__)

# ============================================================================
# TESTCONTAINERS FIXTURES (Integration Tests)
# ============================================================================


@pytest.fixture(scope="session")
def postgres_container() -> Generator[PostgresContainer, None, None]:
    """
    Start PostgreSQL testcontainer for integration tests.

    Scope: session (container persists across all tests)
    """
    logger.info("Starting PostgreSQL testcontainer...")
    container = PostgresContainer(image="postgres:17-alpine", driver="asyncpg")
    container.start()
    logger.info("PostgreSQL testcontainer started: %s", container.get_connection_url())

    yield container

    logger.info("Stopping PostgreSQL testcontainer...")
    container.stop()


@pytest.fixture(scope="session")
def redis_container() -> Generator[RedisContainer, None, None]:
    """
    Start Redis testcontainer for integration tests.

    Scope: session (container persists across all tests)
    """
    logger.info("Starting Redis testcontainer...")
    container = RedisContainer(image="redis:7-alpine")
    container.start()
    logger.info(
        "Redis testcontainer started: %s:%s",
        container.get_container_host_ip(),
        container.get_exposed_port(6379),
    )

    yield container

    logger.info("Stopping Redis testcontainer...")
    container.stop()


@pytest.fixture(scope="session")
def postgres_url(postgres_container: PostgresContainer) -> str:
    return postgres_container.get_connection_url().replace("psycopg2", "asyncpg")


@pytest.fixture(scope="session")
def redis_url(redis_container: RedisContainer) -> str:
    host = redis_container.get_container_host_ip()
    port = redis_container.get_exposed_port(6379)
    return f"redis://{host}:{port}/0"


# ============================================================================
# TEST DOUBLES (Unit Tests)
# ============================================================================


class EventRecorder:
    """Collects every payload published on the bus."""

    def __init__(self) -> None:
        self.payloads: List[Dict[str, Any]] = []

    async def __call__(self, payload: Dict[str, Any]) -> None:
        self.payloads.append(payload)

    def named(self, event_name: str) -> List[Dict[str, Any]]:
        return [p for p in self.payloads if p.get("event") == event_name]


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def ticker() -> Ticker:
    return Ticker()


@pytest.fixture
def config() -> StaticConfig:
    """
    Config double. Tests add keys to ``config.values`` before requesting the
    services that read them.
    """
    return StaticConfig({"sync.auto_sync": "10m"})


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus(listener_timeout_seconds=1.0)


@pytest.fixture
def recorder(event_bus: EventBus) -> EventRecorder:
    recorder = EventRecorder()
    event_bus.subscribe("*", recorder, priority=ListenerPriority.HIGH, identifier="test.recorder")
    return recorder


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def database() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture
def redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def account_repo(store: FakeStore) -> FakeAccountRepository:
    return FakeAccountRepository(store)


@pytest.fixture
def rank_repo(store: FakeStore) -> FakeRankRepository:
    return FakeRankRepository(store)


@pytest.fixture
def geo() -> FakeGeo:
    return FakeGeo()


@pytest.fixture
def hasher() -> FakeHasher:
    return FakeHasher()


@pytest.fixture
def default_rank(store: FakeStore):
    return make_rank(store, "Default", prefix="[Default]", permissions=["clerk.default"])


# ============================================================================
# SERVICES (Unit Tests)
# ============================================================================


@pytest.fixture
def cache(database, redis, account_repo, config, ticker) -> CacheCoordinator:
    return CacheCoordinator(
        database=database,
        redis=redis,
        repository=account_repo,
        config_manager=config,
        clock=ticker,
    )


@pytest.fixture
def rank_table() -> RankTable:
    return RankTable()


@pytest.fixture
def rank_service(cache, rank_table, event_bus, config, database, rank_repo, account_repo, clock):
    return RankService(
        cache,
        rank_table,
        event_bus,
        config_manager=config,
        database=database,
        repository=rank_repo,
        account_repository=account_repo,
        clock=clock,
    )


@pytest.fixture
def resolver(cache, rank_table, clock) -> AuthorizationResolver:
    return AuthorizationResolver(cache, rank_table, clock=clock)


@pytest.fixture
def guard(cache, geo, event_bus, config, database, account_repo, hasher, clock):
    return AuthenticationGuard(
        cache,
        geo,
        event_bus,
        config_manager=config,
        database=database,
        repository=account_repo,
        hasher=hasher,
        clock=clock,
    )


@pytest.fixture
def accounts(cache, geo, event_bus, config, database, account_repo, rank_repo, hasher, clock):
    return AccountService(
        cache,
        geo,
        event_bus,
        config_manager=config,
        database=database,
        repository=account_repo,
        rank_repository=rank_repo,
        hasher=hasher,
        clock=clock,
    )


@pytest.fixture
def friends(cache, event_bus, config, clock) -> RelationshipManager:
    return RelationshipManager(cache, event_bus, config_manager=config, clock=clock)


@pytest.fixture
def scheduler(cache, event_bus, config, database, redis, account_repo, clock) -> SyncScheduler:
    return SyncScheduler(
        cache,
        event_bus,
        config_manager=config,
        database=database,
        redis=redis,
        repository=account_repo,
        clock=clock,
    )


@pytest.fixture
def identity(mocker):
    """IdentityResolver double returning a fixed Java UUID."""
    resolver = mocker.MagicMock()
    resolver.resolve_identity = mocker.AsyncMock(
        return_value=("123e4567-e89b-12d3-a456-426614174000", "Java")
    )
    return resolver


@pytest.fixture
def sessions(guard, accounts, cache, identity, event_bus, config, clock) -> SessionManager:
    return SessionManager(
        guard, accounts, cache, identity, event_bus, config_manager=config, clock=clock
    )
