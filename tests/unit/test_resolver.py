"""
Unit tests for AuthorizationResolver and RankTable.

Covers inheritance (including cycles), wildcard matching, grant expiry
and direct permissions.
"""

from datetime import timedelta

import pytest

from clerk.modules.ranks.resolver import matches_any, wildcard_matches
from clerk.modules.ranks.table import RankDefinition, RankTable
from clerk.modules.shared.timeutil import epoch_seconds
from tests.fakes import NOW, make_account, make_rank


@pytest.fixture
async def ranks(store, rank_service, default_rank):
    make_rank(store, "Mod", permissions=["mod.kick", "chat.*"], inheritance=["Default"], weight=50)
    make_rank(store, "Admin", permissions=["admin.*"], inheritance=["Mod"], weight=100)
    await rank_service.refresh_table()


class TestWildcards:
    @pytest.mark.parametrize(
        ("pattern", "token", "expected"),
        [
            ("chat.*", "chat.color", True),
            ("chat.*", "chat.color.red", True),
            ("chat.*", "chat", False),
            ("chat.*", "chatter.x", False),
            ("*", "anything.at.all", True),
            ("chat.color", "chat.color", False),
        ],
    )
    def test_wildcard_matches(self, pattern, token, expected):
        assert wildcard_matches(pattern, token) is expected

    def test_exact_match_wins(self):
        assert matches_any({"chat.color"}, "chat.color") is True
        assert matches_any({"chat.color"}, "chat.colour") is False


class TestRankTable:
    def test_inheritance_is_transitive(self):
        table = RankTable(
            [
                RankDefinition("Default", permissions=("a",)),
                RankDefinition("Mod", permissions=("b",), inheritance=("Default",)),
                RankDefinition("Admin", permissions=("c",), inheritance=("Mod",)),
            ]
        )

        assert table.permissions_for("admin") == {"a", "b", "c"}

    def test_cycles_terminate(self):
        """Mutual inheritance is walked once per rank."""
        table = RankTable(
            [
                RankDefinition("A", permissions=("a",), inheritance=("B",)),
                RankDefinition("B", permissions=("b",), inheritance=("A",)),
            ]
        )

        assert table.permissions_for("A") == {"a", "b"}

    def test_unknown_parent_ignored(self):
        table = RankTable([RankDefinition("A", permissions=("a",), inheritance=("Ghost",))])

        assert table.permissions_for("A") == {"a"}

    def test_ordering_by_weight(self):
        table = RankTable([RankDefinition("Low", weight=1), RankDefinition("High", weight=9)])

        assert [r.name for r in table.all()] == ["High", "Low"]
        assert "high" in table


class TestHasPermission:
    async def test_inherited_permissions(self, resolver, store, ranks):
        make_account(store, "Alice", ranks=[{"rank": "Admin"}])

        assert await resolver.has_permission("Alice", "admin.ban") is True
        assert await resolver.has_permission("Alice", "mod.kick") is True
        assert await resolver.has_permission("Alice", "clerk.default") is True
        assert await resolver.has_permission("Alice", "chat.color.red") is True
        assert await resolver.has_permission("Alice", "server.stop") is False

    async def test_expired_rank_grants_nothing(self, resolver, store, ranks):
        make_account(
            store, "Bob", ranks=[{"rank": "Mod", "expires": epoch_seconds(NOW - timedelta(seconds=1))}]
        )

        assert await resolver.has_permission("Bob", "mod.kick") is False

    async def test_timed_rank_before_expiry(self, resolver, store, ranks):
        make_account(
            store, "Bob", ranks=[{"rank": "Mod", "expires": epoch_seconds(NOW + timedelta(days=1))}]
        )

        assert await resolver.has_permission("Bob", "mod.kick") is True

    async def test_direct_permissions(self, resolver, store, ranks):
        """Direct grants match exactly and respect expiry."""
        make_account(
            store,
            "Carol",
            ranks=[],
            permissions=[
                "legacy.perm",
                {"permission": "special.fly"},
                {"permission": "fly.*"},
                {"permission": "temp.x", "expires": epoch_seconds(NOW - timedelta(hours=1))},
            ],
        )

        assert await resolver.has_permission("Carol", "special.fly") is True
        assert await resolver.has_permission("Carol", "legacy.perm") is True
        assert await resolver.has_permission("Carol", "temp.x") is False
        assert await resolver.has_permission("Carol", "fly.high") is False

    async def test_unknown_account(self, resolver, ranks):
        assert await resolver.has_permission("ghost", "clerk.default") is False

    async def test_rank_names_ignore_case(self, resolver, store, ranks):
        make_account(store, "Dave", ranks=["admin"])

        assert await resolver.has_permission("Dave", "admin.ban") is True


class TestQueries:
    async def test_effective_permissions(self, resolver, store, ranks):
        make_account(store, "Alice", ranks=[{"rank": "Mod"}], permissions=[{"permission": "x.y"}])

        assert await resolver.effective_permissions("Alice") == {
            "mod.kick",
            "chat.*",
            "clerk.default",
            "x.y",
        }

    async def test_primary_rank_is_heaviest(self, resolver, store, ranks):
        make_account(store, "Alice", ranks=[{"rank": "Default"}, {"rank": "Admin"}, {"rank": "Mod"}])

        primary = await resolver.primary_rank("Alice")

        assert primary.name == "Admin"

    async def test_primary_rank_ignores_unknown(self, resolver, store, ranks):
        make_account(store, "Alice", ranks=["Ghost"])

        assert await resolver.primary_rank("Alice") is None

    async def test_rank_permissions(self, resolver, ranks):
        assert resolver.rank_permissions("Mod") == {"mod.kick", "chat.*", "clerk.default"}
