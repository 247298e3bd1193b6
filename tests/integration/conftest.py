"""
Integration fixtures: real PostgreSQL and Redis from testcontainers.

Engines and Redis clients are created per test, so each test runs on its
own event loop with a clean schema and an empty Redis database.
"""

from __future__ import annotations

import pytest
from sqlalchemy import text

from clerk.core.database.bootstrap import (
    initialize_database_subsystem,
    shutdown_database_subsystem,
)
from clerk.core.database.service import DatabaseService
from clerk.core.redis.service import RedisService
from clerk.modules.accounts.service import AccountService
from clerk.modules.auth.guard import AuthenticationGuard
from clerk.modules.auth.passwords import PasswordHasher
from clerk.modules.cache.coordinator import CacheCoordinator
from clerk.modules.friends.service import RelationshipManager
from clerk.modules.ranks.resolver import AuthorizationResolver
from clerk.modules.ranks.service import RankService
from clerk.modules.ranks.table import RankTable
from clerk.modules.sync.scheduler import SyncScheduler

# bcrypt's minimum work factor keeps the suite fast.
TEST_ROUNDS = 4


@pytest.fixture
async def infrastructure(postgres_url, redis_url):
    await initialize_database_subsystem(url=postgres_url, create_schema_objects=True)
    await RedisService.initialize(url=redis_url)

    async with DatabaseService.get_transaction() as session:
        await session.execute(text("TRUNCATE TABLE accounts, ranks RESTART IDENTITY"))
    await RedisService.client().flushdb()

    yield

    await RedisService.shutdown()
    await shutdown_database_subsystem()


@pytest.fixture
def hasher():
    return PasswordHasher(TEST_ROUNDS)


@pytest.fixture
def cache(infrastructure):
    return CacheCoordinator()


@pytest.fixture
async def rank_service(cache, rank_table, event_bus, clock):
    service = RankService(cache, rank_table, event_bus, clock=clock)
    await service.ensure_default_rank()
    await service.refresh_table()
    return service


@pytest.fixture
def resolver(cache, rank_table, clock):
    return AuthorizationResolver(cache, rank_table, clock=clock)


@pytest.fixture
def guard(cache, geo, event_bus, hasher, clock):
    return AuthenticationGuard(cache, geo, event_bus, hasher=hasher, clock=clock)


@pytest.fixture
def accounts(cache, geo, event_bus, hasher, clock):
    return AccountService(cache, geo, event_bus, hasher=hasher, clock=clock)


@pytest.fixture
def friends(cache, event_bus, clock):
    return RelationshipManager(cache, event_bus, clock=clock)


@pytest.fixture
def scheduler(cache, event_bus, clock):
    return SyncScheduler(cache, event_bus, clock=clock)
