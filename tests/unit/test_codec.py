"""
Unit tests for the account JSON codec and cache projection.
"""

from datetime import datetime, timezone

from clerk.modules.accounts.codec import (
    PROJECTION_FIELDS,
    REVISION_FIELD,
    build_projection,
    decode_friends,
    decode_logins,
    decode_permission_grants,
    decode_rank_grants,
    decode_requests,
    encode_permission_grants,
    encode_rank_grants,
    from_json_value,
    to_json_value,
)
from clerk.modules.accounts.types import PermissionGrant, RankGrant
from tests.fakes import NOW, FakeStore, make_account

UTC = timezone.utc


class TestGrants:
    def test_legacy_and_structured_rank_grants(self):
        """Bare strings are permanent grants; junk entries are skipped."""
        raw = ["VIP", {"rank": "Mod", "expires": 1735732800}, {"bogus": 1}, 5]

        grants = decode_rank_grants(raw)

        assert grants == [
            RankGrant("VIP"),
            RankGrant("Mod", datetime(2025, 1, 1, 12, 0, tzinfo=UTC)),
        ]

    def test_permanent_grant_has_no_expires_key(self):
        """Only timed grants carry an expiry."""
        encoded = encode_rank_grants([RankGrant("VIP"), RankGrant("Mod", NOW)])

        assert encoded == [{"rank": "VIP"}, {"rank": "Mod", "expires": 1735732800}]

    def test_permission_grants(self):
        raw = ["x.y", {"permission": "a.b", "expires": "1735732800"}, {"permission": ""}]

        grants = decode_permission_grants(raw)

        assert grants == [PermissionGrant("x.y"), PermissionGrant("a.b", NOW)]
        assert encode_permission_grants(grants)[0] == {"permission": "x.y"}

    def test_non_list_values_decode_empty(self):
        assert decode_rank_grants(None) == []
        assert decode_permission_grants({"permission": "x"}) == []


class TestSocial:
    def test_legacy_friend_strings(self):
        """Old rows stored friends as plain names."""
        friends = decode_friends(["Bob", {"username": "Carol", "since": 1700000000}])

        assert [(f.username, f.since) for f in friends] == [("Bob", 0), ("Carol", 1700000000)]

    def test_requests_use_direction_key(self):
        """Incoming lists use "from", outgoing lists use "to"."""
        raw = [{"from": "Bob", "timestamp": 5}, {"to": "Carol", "timestamp": 6}]

        assert [r.username for r in decode_requests(raw, "from")] == ["Bob"]
        assert [r.username for r in decode_requests(raw, "to")] == ["Carol"]


class TestLogins:
    def test_decode_skips_records_without_date(self):
        raw = [
            {"id": "u1", "platform": "Java", "ip_address": "1.1.1.1", "date": "2025-01-01T10:00:00Z"},
            {"id": "u2", "platform": "Java", "ip_address": "2.2.2.2"},
        ]

        records = decode_logins(raw)

        assert len(records) == 1
        assert records[0].date == datetime(2025, 1, 1, 10, 0, tzinfo=UTC)
        assert records[0].country == "Unknown"


class TestProjection:
    def test_projection_excludes_secrets(self):
        """The cached document never contains the password hash or lock state."""
        account = make_account(FakeStore(), "Alice", last_seen=NOW)

        projection = build_projection(account)

        assert set(projection) == set(PROJECTION_FIELDS) | {REVISION_FIELD}
        assert projection[REVISION_FIELD] == 0
        assert "password" not in projection
        assert "locked" not in projection

    def test_projection_value_shapes(self):
        """last_seen is epoch seconds; registered_date is ISO-8601."""
        account = make_account(FakeStore(), "Alice", last_seen=NOW, registered_date=NOW)

        projection = build_projection(account)

        assert projection["last_seen"] == 1735732800
        assert projection["registered_date"] == NOW.isoformat()

    def test_column_conversions(self):
        """ISO and epoch columns convert back to aware datetimes."""
        assert from_json_value("lock_until", to_json_value("lock_until", NOW)) == NOW
        assert from_json_value("last_seen", 1735732800) == NOW
        assert to_json_value("last_seen", None) is None
        assert from_json_value("settings", {"a": 1}) == {"a": 1}
