"""
Unit tests for CacheCoordinator.

Covers tiered reads (memo, Redis projection, store), write-through
propagation, Redis-failure fallback and the pub/sub handlers.
"""

import pytest

from clerk.modules.cache.coordinator import account_key
from tests.fakes import NOW, make_account


@pytest.fixture
def alice(store):
    return make_account(store, "Alice", last_seen=NOW, settings={"theme": "dark"})


class TestReads:
    async def test_miss_hydrates_projection(self, cache, redis, alice):
        """A cold read loads the store row and caches the full projection."""
        data = await cache.get("alice", ["settings"])

        assert data == {"settings": {"theme": "dark"}}
        cached = await redis.get_json(account_key("Alice"))
        assert cached["username"] == "Alice"
        assert redis.ttls[account_key("Alice")] == 3600

    async def test_unknown_account(self, cache, redis):
        assert await cache.get("nobody", ["settings"]) is None
        assert redis.data == {}

    async def test_memo_serves_repeat_reads(self, cache, redis, database, alice):
        """Within the memo TTL neither Redis nor the store is consulted."""
        await cache.get("Alice", ["settings"])
        redis.data.clear()
        sessions = database.sessions

        data = await cache.get("Alice", ["settings"])

        assert data == {"settings": {"theme": "dark"}}
        assert database.sessions == sessions

    async def test_memo_expires(self, cache, redis, ticker, alice):
        """After the memo TTL the Redis projection is read again."""
        await cache.get("Alice", ["settings"])
        await redis.set_json(account_key("Alice"), {"username": "Alice", "settings": {"theme": "light"}})

        ticker.advance(0.6)
        data = await cache.get("Alice", ["settings"])

        assert data == {"settings": {"theme": "light"}}

    async def test_invalidate_local_forces_redis_read(self, cache, redis, alice):
        await cache.get("Alice", ["settings"])
        await redis.set_json(account_key("Alice"), {"username": "Alice", "settings": {"theme": "light"}})

        cache.invalidate_local("ALICE")

        assert (await cache.get("Alice", ["settings"]))["settings"] == {"theme": "light"}

    async def test_cached_projection(self, cache, alice):
        assert await cache.cached_projection("Alice") is None

        await cache.warm("Alice")
        projection = await cache.cached_projection("alice")

        assert projection["username"] == "Alice"
        assert projection["settings"] == {"theme": "dark"}

    async def test_non_projection_fields_come_from_store(self, cache, alice):
        """Fields outside the projection are always read from the store."""
        alice.logins = [{"id": "x", "date": NOW.isoformat()}]

        data = await cache.get("Alice", ["settings", "logins"])

        assert data["logins"] == [{"id": "x", "date": NOW.isoformat()}]
        assert data["settings"] == {"theme": "dark"}

    async def test_reads_return_copies(self, cache, alice):
        """Mutating a returned value does not touch the memo."""
        first = await cache.get("Alice", ["settings"])
        first["settings"]["theme"] = "changed"

        second = await cache.get("Alice", ["settings"])

        assert second["settings"] == {"theme": "dark"}

    async def test_unknown_field_rejected(self, cache, alice):
        with pytest.raises(ValueError):
            await cache.get("Alice", ["favourite_colour"])

    async def test_cached_usernames(self, cache, alice, store):
        make_account(store, "Bob")
        await cache.warm("Alice")
        await cache.warm("Bob")

        assert await cache.cached_usernames() == ["alice", "bob"]


class TestWrites:
    async def test_update_writes_store_and_cache(self, cache, redis, alice):
        """The store row, the Redis projection and the memo agree after a write."""
        await cache.warm("Alice")

        value = await cache.update("alice", "settings", lambda s: {**s, "theme": "light"})

        assert value == {"theme": "light"}
        assert alice.settings == {"theme": "light"}
        cached = await redis.get_json(account_key("Alice"))
        assert cached["settings"] == {"theme": "light"}
        assert (await cache.get("Alice", ["settings"]))["settings"] == {"theme": "light"}

    async def test_update_stamps_revision(self, cache, redis, alice):
        await cache.warm("Alice")

        await cache.update("Alice", "settings", lambda s: {"theme": "light"})
        await cache.update("Alice", "settings", lambda s: {"theme": "blue"})

        assert alice.revision == 2
        assert (await redis.get_json(account_key("Alice")))["revision"] == 2

    async def test_patch_over_missed_write_drops_projection(self, cache, redis, alice):
        """A projection older than the row it would be patched onto is deleted instead."""
        await cache.warm("Alice")
        alice.revision = 3

        await cache.update("Alice", "settings", lambda s: {"theme": "light"})

        assert account_key("Alice") not in redis.data
        assert (await cache.get("Alice", ["settings"]))["settings"] == {"theme": "light"}
        assert (await redis.get_json(account_key("Alice")))["revision"] == 4

    async def test_update_preserves_ttl(self, cache, redis, alice):
        """Patching the projection keeps its remaining lifetime."""
        await cache.warm("Alice")
        redis.ttls[account_key("Alice")] = 1200

        await cache.update("Alice", "settings", lambda s: {})

        assert redis.ttls[account_key("Alice")] == 1200

    async def test_update_announces_write(self, cache, redis, alice):
        await cache.update("Alice", "settings", lambda s: {})

        messages = redis.messages(cache.account_channel)
        assert [m["username"] for m in messages] == ["alice"]
        assert messages[0]["type"] == "account_update"

    async def test_update_missing_account(self, cache, redis):
        assert await cache.update("ghost", "settings", lambda s: {}) is None
        assert redis.published == []

    async def test_uncached_write_drops_memo(self, cache, redis, alice):
        """Without a Redis projection the next read goes back to the store."""
        await cache.get("Alice", ["settings"])
        redis.data.clear()

        await cache.update("Alice", "settings", lambda s: {"theme": "blue"})

        assert (await cache.get("Alice", ["settings"]))["settings"] == {"theme": "blue"}

    async def test_failed_plan_leaves_every_tier_untouched(self, cache, redis, alice):
        """An exception inside the plan aborts before anything is written."""
        await cache.warm("Alice")

        def explode(snapshot):
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await cache.transact(["Alice"], ["settings"], explode)

        assert redis.published == []
        cached = await redis.get_json(account_key("Alice"))
        assert cached["settings"] == {"theme": "dark"}

    async def test_transact_snapshot_shape(self, cache, store, alice):
        """Snapshots are keyed by lower-case name and carry display casing."""
        make_account(store, "Bob")
        seen = {}

        def plan(snapshot):
            seen.update(snapshot)
            return {}

        await cache.transact(["BOB", "alice"], ["settings"], plan)

        assert set(seen) == {"alice", "bob"}
        assert seen["bob"]["username"] == "Bob"

    async def test_username_is_immutable(self, cache, alice):
        with pytest.raises(ValueError):
            await cache.transact(["Alice"], ["username"], lambda s: {})

    async def test_in_transaction_hook_receives_written_values(self, cache, alice):
        received = {}

        async def hook(session, written):
            received.update(written)

        await cache.transact(
            ["Alice"], ["settings"], lambda s: {"alice": {"settings": {"x": 1}}}, in_transaction=hook
        )

        assert received == {"alice": {"settings": {"x": 1}}}


class TestRedisFailure:
    async def test_reads_fall_back_to_store(self, cache, redis, alice):
        """Redis being down never fails a read."""
        redis.fail = True

        data = await cache.get("Alice", ["settings"])

        assert data == {"settings": {"theme": "dark"}}

    async def test_writes_still_reach_store(self, cache, redis, alice):
        redis.fail = True

        value = await cache.update("Alice", "settings", lambda s: {"theme": "light"})

        assert value == {"theme": "light"}
        assert alice.settings == {"theme": "light"}

    async def test_failed_patch_never_serves_old_projection(self, cache, redis, alice):
        """A write committed during an outage is visible once Redis is back."""
        await cache.warm("Alice")
        redis.fail = True
        await cache.update("Alice", "settings", lambda s: {"theme": "light"})
        redis.fail = False

        assert (await cache.get("Alice", ["settings"]))["settings"] == {"theme": "light"}
        cached = await redis.get_json(account_key("Alice"))
        assert cached["settings"] == {"theme": "light"}
        assert cached["revision"] == 1

    async def test_listener_start_reports_unavailable(self, cache, redis):
        redis.fail = True

        assert await cache.start_listening() is False


class TestPubSub:
    async def test_account_update_drops_memo(self, cache, redis, alice):
        """Another process's write invalidates this process's memo entry."""
        await cache.get("Alice", ["settings"])
        await redis.set_json(account_key("Alice"), {"username": "Alice", "settings": {"v": 2}})

        await cache.handle_account_update({"type": "account_update", "username": "alice"})

        assert (await cache.get("Alice", ["settings"]))["settings"] == {"v": 2}

    async def test_rank_update_notifies_listeners(self, cache, mocker):
        listener = mocker.AsyncMock()
        cache.add_rank_listener(listener)

        await cache.handle_rank_update({"type": "database_update"})
        await cache.handle_rank_update({"type": "something_else"})

        listener.assert_awaited_once()

    async def test_start_listening_subscribes_both_channels(self, cache, redis):
        assert await cache.start_listening() is True

        assert set(redis.handlers) == {cache.rank_channel, cache.account_channel}

        await cache.stop_listening()
        assert redis.handlers == {}

    async def test_publish_rank_update(self, cache, redis):
        await cache.publish_rank_update()

        assert redis.messages(cache.rank_channel)[0]["type"] == "database_update"
