"""
End-to-end flows against PostgreSQL and Redis.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import text

from clerk.core.config.manager import ConfigManager
from clerk.core.database.service import DatabaseService
from clerk.core.exceptions import DatabaseError
from clerk.core.logging.logger import get_logger
from clerk.core.redis.service import RedisService
from clerk.core.services.container import ServiceContainer
from clerk.main import ConnectionIdResolver
from clerk.modules.accounts.repository import AccountRepository
from clerk.modules.accounts.types import GeoInfo
from clerk.modules.auth.guard import LoginStatus
from clerk.modules.cache.coordinator import CacheCoordinator, account_key
from clerk.modules.friends.service import FriendOutcome
from clerk.modules.ranks.repository import RankRepository
from clerk.modules.shared.exceptions import LockedError

pytestmark = [pytest.mark.integration, pytest.mark.database]

IP = "203.0.113.7"
UUID = "123e4567-e89b-12d3-a456-426614174000"


async def stored(username):
    async with DatabaseService.get_session() as session:
        return await AccountRepository().get_by_username(session, username)


class TestLockout:
    async def test_alice_locked_after_five_failures(self, accounts, guard, geo, clock):
        """Registered from the US, five misses lock the account for five minutes."""
        geo.answers[IP] = GeoInfo(country="US", region="CA")
        assert (await accounts.register("Alice", "Secret1", stable_id=UUID, ip=IP)).success

        counts = []
        for _ in range(5):
            result = await guard.verify_credentials("alice", "Wrong99", IP)
            counts.append((await stored("Alice")).failed_attempts)

        assert counts == [1, 2, 3, 4, 5]
        assert result.status is LoginStatus.LOCKED
        assert "5" in result.message
        assert result.lock_until == clock.now + timedelta(minutes=5)

        clock.advance(minutes=1)
        retry = await guard.verify_credentials("Alice", "Secret1", IP)

        assert retry.status is LoginStatus.LOCKED
        assert isinstance(retry.error, LockedError)

    async def test_concurrent_failures_are_counted_exactly(self, accounts, guard):
        """Row locks serialize attempts on one account."""
        await accounts.register("Bob", "Secret1")

        results = await asyncio.gather(
            *(guard.verify_credentials("Bob", "Wrong99", IP) for _ in range(5))
        )

        assert (await stored("Bob")).failed_attempts == 5
        assert sum(r.status is LoginStatus.LOCKED for r in results) == 1

    async def test_country_change_locks(self, accounts, guard, geo):
        geo.answers[IP] = GeoInfo(country="US", region="CA")
        await accounts.register("Carol", "Secret1", ip=IP)
        geo.answers["198.51.100.1"] = GeoInfo(country="FR", region="IDF")

        result = await guard.verify_credentials("Carol", "Secret1", "198.51.100.1")

        assert result.status is LoginStatus.GEO_LOCKED
        account = await stored("Carol")
        assert account.locked is True
        assert account.lock_until is None


class TestCache:
    async def test_forced_miss_matches_store(self, accounts, cache):
        await accounts.register("Alice", "Secret1", ip=IP)
        await accounts.update_setting("Alice", "chatColor", "gold")
        await cache.evict("Alice")

        data = await cache.get("alice", ["settings", "ranks"])

        account = await stored("Alice")
        assert data["settings"] == account.settings == {"chatColor": "gold"}
        assert data["ranks"] == account.ranks

    async def test_write_through(self, accounts, cache):
        await accounts.register("Alice", "Secret1")
        await accounts.add_permission("Alice", "fly.use")

        projection = await RedisService.get_json(account_key("Alice"))
        account = await stored("Alice")

        assert projection["permissions"] == account.permissions == [{"permission": "fly.use"}]
        assert 0 < await RedisService.ttl(account_key("Alice")) <= cache.account_ttl

    async def test_rank_update_reaches_other_coordinator(self, cache):
        """A second process hears about rank changes over pub/sub."""
        other = CacheCoordinator()
        heard = asyncio.Event()

        async def on_update():
            heard.set()

        other.add_rank_listener(on_update)
        assert await other.start_listening()
        try:
            for _ in range(5):
                await cache.publish_rank_update()
                try:
                    await asyncio.wait_for(heard.wait(), timeout=1.0)
                    break
                except asyncio.TimeoutError:
                    continue
            assert heard.is_set()
        finally:
            await other.stop_listening()


class TestRanks:
    async def test_permissions_through_inheritance(self, rank_service, resolver, accounts):
        await rank_service.set_rank("Staff", "[Staff]", ["clerk.permission.*"], ["Default"], 50)
        await rank_service.set_rank("Owner", "[Owner]", ["clerk.*"], ["Staff"], 100)
        await accounts.register("Alice", "Secret1")
        await accounts.register("Bob", "Secret1")
        await rank_service.grant_rank("Alice", "Owner")
        await rank_service.grant_rank("Bob", "Staff")

        assert await resolver.has_permission("Alice", "clerk.grant.add")
        assert await resolver.has_permission("Bob", "clerk.permission.add.permanent")
        assert not await resolver.has_permission("Bob", "clerk.other")

    async def test_delete_cascades(self, rank_service, accounts):
        await rank_service.set_rank("Mod", "[Mod]", ["mod.kick"], ["Default"], 50)
        await rank_service.set_rank("Admin", "[Admin]", ["admin.*"], ["Mod"], 100)
        await accounts.register("Alice", "Secret1")
        await rank_service.grant_rank("Alice", "Mod", "1d")

        result = await rank_service.delete_rank("Mod")

        assert result.success
        assert (await stored("Alice")).ranks == [{"rank": "Default"}]
        assert rank_service.get_rank("Admin").inheritance == ()
        projection = await RedisService.get_json(account_key("Alice"))
        assert projection["ranks"] == [{"rank": "Default"}]

    async def test_delete_matches_any_casing(self, rank_service, accounts):
        """Inheritance entries and legacy grants in another casing are cascaded too."""
        await rank_service.set_rank("VIP", "[VIP]", ["vip.chat"], [], 10)
        await accounts.register("Alice", "Secret1")
        async with DatabaseService.get_transaction() as session:
            account = await AccountRepository().get_by_username(session, "Alice", for_update=True)
            account.ranks = [*account.ranks, "vip"]
            default = await RankRepository().get_by_name(session, "default", for_update=True)
            default.inheritance = ["vip"]

        result = await rank_service.delete_rank("VIP")

        assert result.success
        assert (await stored("Alice")).ranks == [{"rank": "Default"}]
        assert rank_service.get_rank("Default").inheritance == ()

    async def test_registration_joins_default_rank(self, rank_service, accounts):
        await accounts.register("Alice", "Secret1")

        assert await rank_service.has_rank("Alice", "Default")


class TestRegistration:
    async def test_concurrent_registrations_of_one_name(self, accounts):
        results = await asyncio.gather(
            *(accounts.register(name, "Secret1") for name in ("Alice", "ALICE", "alice"))
        )

        assert sum(result.success for result in results) == 1
        assert all(r.error.reason == "username_taken" for r in results if not r.success)


class TestFriends:
    async def test_crossing_requests(self, accounts, friends):
        await accounts.register("Alice", "Secret1")
        await accounts.register("Bob", "Secret1")

        assert (await friends.send_request("Alice", "Bob")).outcome is FriendOutcome.REQUEST_SENT
        result = await friends.send_request("Bob", "Alice")

        assert result.outcome is FriendOutcome.NOW_FRIENDS
        for name, other in (("Alice", "Bob"), ("Bob", "Alice")):
            account = await stored(name)
            assert [f["username"] for f in account.friends] == [other]
            assert account.incoming_requests == [] and account.outgoing_requests == []


class TestSync:
    async def test_repairs_drifted_projection(self, accounts, cache, scheduler):
        await accounts.register("Alice", "Secret1")
        projection = await RedisService.get_json(account_key("Alice"))
        projection["settings"] = {"hideJoin": True}
        await RedisService.set_json(account_key("Alice"), projection, 600)

        written = await scheduler.run_once()

        assert written == 1
        assert (await stored("Alice")).settings == {"hideJoin": True}

    async def test_never_reverts_a_newer_write(self, accounts, cache, scheduler):
        """A projection left behind by a missed write is evicted, not flushed."""
        await accounts.register("Alice", "Secret1")
        behind = await RedisService.get_json(account_key("Alice"))
        await accounts.add_permission("Alice", "fly.use")
        await RedisService.set_json(account_key("Alice"), behind, 600)

        assert await scheduler.run_once() == 0

        assert (await stored("Alice")).permissions == [{"permission": "fly.use"}]
        assert await RedisService.get_json(account_key("Alice")) is None


class TestContainer:
    async def test_initialize_and_shutdown(self, infrastructure, event_bus, geo):
        container = ServiceContainer(
            ConfigManager,
            event_bus,
            get_logger(__name__),
            identity=ConnectionIdResolver(),
            geo=geo,
        )
        await container.initialize()
        try:
            assert container.ranks.get_rank("Default") is not None
            assert "default" in container.rank_table
            assert container.sync.running

            state = await container.sessions.connect("s1", UUID, IP)
            assert state.platform == "Java"
            assert not state.authenticated

            health = await container.health()
            assert health["database"]["healthy"] and health["redis"]["healthy"]
            assert health["redis"]["circuit_state"] == "closed"
            assert health["sync_running"]
            assert health["ranks_loaded"] == 1
        finally:
            await container.shutdown()

        assert not container.is_initialized
        with pytest.raises(RuntimeError):
            container.sessions


class TestDatabaseService:
    async def test_statement_errors_roll_back(self, infrastructure):
        with pytest.raises(DatabaseError) as exc_info:
            async with DatabaseService.get_transaction() as session:
                await session.execute(text("SELECT * FROM no_such_table"))

        assert exc_info.value.operation == "transaction"
        assert await DatabaseService.health_check()
