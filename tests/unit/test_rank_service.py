"""
Unit tests for RankService.

Tests rank definitions, the deletion cascade, grants and YAML
export/import.
"""

from datetime import timedelta

import pytest
import yaml

from clerk.modules.cache.coordinator import account_key
from clerk.modules.shared import events
from clerk.modules.shared.exceptions import ConflictError, NotFoundError, ValidationError
from tests.fakes import NOW, make_account, make_rank


@pytest.fixture
async def seeded(store, rank_service, default_rank):
    make_rank(store, "Mod", permissions=["mod.kick"], inheritance=["Default"], weight=50)
    make_rank(store, "Admin", permissions=["admin.*"], inheritance=["Mod"], weight=100)
    make_rank(store, "VIP", prefix="[VIP]", weight=10)
    await rank_service.refresh_table()


class TestDefinitions:
    async def test_ensure_default_rank_creates_once(self, rank_service, store):
        first = await rank_service.ensure_default_rank()
        store.ranks["default"].prefix = "[Changed]"
        second = await rank_service.ensure_default_rank()

        assert first.name == "Default"
        assert first.permissions == ("clerk.default",)
        assert second.prefix == "[Changed]"
        assert len(store.ranks) == 1
        assert rank_service.get_rank("default") is not None

    async def test_set_rank_creates(self, rank_service, store, redis, recorder, default_rank):
        result = await rank_service.set_rank(
            "Builder", "[B]", ["build.*", "build.*"], ["Default", "Builder"], 20
        )

        assert result.success
        assert result.message == "Rank Builder created."
        assert store.ranks["builder"].permissions == ["build.*"]
        assert store.ranks["builder"].inheritance == ["Default"]
        assert rank_service.get_rank("Builder").weight == 20
        assert redis.messages("clerk:rank_updates")
        assert recorder.named(events.RANK_UPDATED)[0]["created"] is True

    async def test_set_rank_update_keeps_members(self, rank_service, store, seeded):
        store.ranks["vip"].users = ["Alice"]

        result = await rank_service.set_rank("vip", "[VIP+]", ["vip.chat"], [], 15)

        assert result.message == "Rank VIP updated."
        assert store.ranks["vip"].users == ["Alice"]
        assert store.ranks["vip"].prefix == "[VIP+]"

    async def test_set_rank_requires_name(self, rank_service):
        result = await rank_service.set_rank("  ")

        assert not result.success
        assert isinstance(result.error, ValidationError)

    async def test_list_ranks_by_weight(self, rank_service, seeded):
        assert [r.name for r in rank_service.list_ranks()] == ["Admin", "Mod", "VIP", "Default"]


class TestDeleteRank:
    @pytest.mark.parametrize("name", ["Default", "default", "DEFAULT"])
    async def test_default_rank_is_protected(self, rank_service, store, seeded, name):
        result = await rank_service.delete_rank(name)

        assert not result.success
        assert isinstance(result.error, ConflictError)
        assert "default" in store.ranks

    async def test_unknown_rank(self, rank_service, seeded):
        result = await rank_service.delete_rank("Ghost")

        assert isinstance(result.error, NotFoundError)

    async def test_cascade(self, rank_service, cache, store, redis, seeded):
        """Deleting a rank strips it from inheritance lists and every account."""
        alice = make_account(store, "Alice", ranks=[{"rank": "Mod"}, {"rank": "VIP"}])
        make_account(store, "Bob", ranks=[{"rank": "VIP"}])
        await cache.warm("Alice")

        result = await rank_service.delete_rank("mod")

        assert result.success
        assert result.message == "Rank Mod deleted."
        assert "mod" not in store.ranks
        assert store.ranks["admin"].inheritance == []
        assert alice.ranks == [{"rank": "VIP"}]
        assert (await redis.get_json(account_key("Alice")))["ranks"] == [{"rank": "VIP"}]
        assert rank_service.get_rank("Mod") is None
        assert store.accounts["bob"].ranks == [{"rank": "VIP"}]

    async def test_cascade_ignores_case(self, rank_service, cache, store, redis, seeded):
        """Inheritance entries and grants written in another casing are removed too."""
        make_rank(store, "Helper", inheritance=["vip", "Mod"])
        alice = make_account(store, "Alice", ranks=[{"rank": "Default"}, "vip", {"rank": "Vip", "expires": 1}])
        await cache.warm("Alice")

        result = await rank_service.delete_rank("VIP")

        assert result.success
        assert store.ranks["helper"].inheritance == ["Mod"]
        assert alice.ranks == [{"rank": "Default"}]
        assert (await redis.get_json(account_key("Alice")))["ranks"] == [{"rank": "Default"}]

    async def test_inheritance_set_in_other_casing(self, rank_service, store, seeded):
        await rank_service.set_rank("Helper", inheritance=["vip", "VIP", "default"])

        assert store.ranks["helper"].inheritance == ["VIP", "Default"]

        await rank_service.delete_rank("VIP")

        assert store.ranks["helper"].inheritance == ["Default"]


class TestGrants:
    async def test_grant_timed_rank(self, rank_service, store, seeded, recorder):
        alice = make_account(store, "Alice")

        result = await rank_service.grant_rank("Alice", "vip", "1d")

        assert result.success
        assert result.message == "Granted VIP to Alice for 1d."
        assert result.grant.expires == NOW + timedelta(days=1)
        assert {"rank": "VIP", "expires": int((NOW + timedelta(days=1)).timestamp())} in alice.ranks
        assert store.ranks["vip"].users == ["Alice"]
        assert recorder.named(events.RANK_GRANTED)[0]["rank"] == "VIP"

    async def test_regrant_replaces_previous_grant(self, rank_service, store, seeded):
        """A permanent grant replaces a timed one rather than stacking."""
        alice = make_account(store, "Alice", ranks=[])
        await rank_service.grant_rank("Alice", "VIP", "1d")

        await rank_service.grant_rank("Alice", "VIP")

        assert alice.ranks == [{"rank": "VIP"}]
        assert store.ranks["vip"].users == ["Alice"]

    async def test_grant_unknown_rank(self, rank_service, store, seeded):
        make_account(store, "Alice")

        result = await rank_service.grant_rank("Alice", "Ghost")

        assert isinstance(result.error, NotFoundError)

    async def test_grant_bad_duration(self, rank_service, store, seeded):
        make_account(store, "Alice")

        result = await rank_service.grant_rank("Alice", "VIP", "forever")

        assert not result.success
        assert result.message.startswith("Invalid duration format.")

    async def test_grant_unknown_account(self, rank_service, store, seeded):
        result = await rank_service.grant_rank("ghost", "VIP")

        assert isinstance(result.error, NotFoundError)
        assert store.ranks["vip"].users == []

    async def test_remove_rank(self, rank_service, store, seeded, recorder):
        alice = make_account(store, "Alice", ranks=[{"rank": "Default"}, {"rank": "VIP"}])
        store.ranks["vip"].users = ["Alice"]

        result = await rank_service.remove_rank("alice", "vip")

        assert result.success
        assert alice.ranks == [{"rank": "Default"}]
        assert store.ranks["vip"].users == []
        assert recorder.named(events.RANK_REVOKED)

    async def test_remove_rank_not_held(self, rank_service, store, seeded):
        make_account(store, "Alice")

        result = await rank_service.remove_rank("Alice", "VIP")

        assert not result.success
        assert "does not have rank VIP" in result.message

    async def test_user_ranks_hides_expired(self, rank_service, store, seeded, clock):
        make_account(store, "Alice", ranks=[])
        await rank_service.grant_rank("Alice", "VIP", "1h")
        await rank_service.grant_rank("Alice", "Mod")
        clock.advance(hours=2)

        active = await rank_service.user_ranks("Alice")
        everything = await rank_service.user_ranks("Alice", include_expired=True)

        assert [g.rank for g in active] == ["Mod"]
        assert [g.rank for g in everything] == ["VIP", "Mod"]
        assert await rank_service.has_rank("Alice", "vip") is False
        assert await rank_service.has_rank("Alice", "MOD") is True

    def test_format_time_until_expiration(self, rank_service):
        assert rank_service.format_time_until_expiration(NOW + timedelta(days=2, hours=3)) == "2d"
        assert rank_service.format_time_until_expiration(NOW - timedelta(minutes=1)) == "Expired"


class TestYaml:
    async def test_export(self, rank_service, seeded, tmp_path):
        target = tmp_path / "out" / "ranks.yml"

        count = await rank_service.export_ranks(target)

        document = yaml.safe_load(target.read_text(encoding="utf-8"))
        assert count == 4
        assert document["ranks"]["Admin"] == {
            "prefix": "",
            "permissions": ["admin.*"],
            "inheritance": ["Mod"],
            "weight": 100,
        }
        assert "users" not in document["ranks"]["VIP"]

    async def test_import_restores_and_keeps_members(self, rank_service, store, seeded, tmp_path):
        target = tmp_path / "ranks.yml"
        await rank_service.export_ranks(target)
        store.ranks["vip"].users = ["Alice"]
        store.ranks["vip"].prefix = "[Changed]"
        del store.ranks["admin"]

        result = await rank_service.import_ranks(target)

        assert result.success
        assert result.message == "Imported 4 ranks."
        assert store.ranks["vip"].prefix == "[VIP]"
        assert store.ranks["vip"].users == ["Alice"]
        assert rank_service.get_rank("Admin").permissions == ("admin.*",)

    async def test_import_spells_inheritance_like_definitions(self, rank_service, store, seeded, tmp_path):
        target = tmp_path / "ranks.yml"
        target.write_text(
            "ranks:\n"
            "  Helper:\n"
            "    inheritance: [builder, vip]\n"
            "  Builder:\n"
            "    weight: 5\n",
            encoding="utf-8",
        )

        result = await rank_service.import_ranks(target)

        assert result.success
        assert store.ranks["helper"].inheritance == ["Builder", "VIP"]

    async def test_import_missing_file(self, rank_service, tmp_path):
        result = await rank_service.import_ranks(tmp_path / "missing.yml")

        assert not result.success
        assert isinstance(result.error, ValidationError)

    async def test_import_wrong_shape(self, rank_service, tmp_path):
        target = tmp_path / "ranks.yml"
        target.write_text("- just\n- a list\n", encoding="utf-8")

        result = await rank_service.import_ranks(target)

        assert not result.success
        assert "ranks" in result.message
