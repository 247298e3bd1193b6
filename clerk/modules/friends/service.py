"""
Relationship Manager
====================

Purpose
-------
Friend request state machine between two accounts A and B:

    None --A sends--> A->B pending --B accepts / B sends--> Friends
      ^                   |                                    |
      +--- B denies / A cancels                       either removes

Every transition reads both accounts under row locks and writes both sides
in one transaction through ``CacheCoordinator.transact``, so friendship is
always symmetric and at most one request per direction exists.

Check Order for ``send_request(a, b)``
--------------------------------------
1. a == b (case-insensitive)        -> SELF_REQUEST
2. b does not exist                  -> NOT_FOUND
3. b has ``toggledRequests`` enabled -> REQUESTS_DISABLED
4. already friends                   -> ALREADY_FRIENDS
5. a -> b already pending            -> DUPLICATE_REQUEST
6. b -> a pending                    -> NOW_FRIENDS (both records removed)
7. otherwise                         -> REQUEST_SENT

Events
------
friends.request_sent, friends.request_accepted, friends.request_denied,
friends.request_cancelled, friends.removed; payload ``{"from", "to"}``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from clerk.core.config.manager import ConfigManager
from clerk.core.logging.logger import get_logger
from clerk.modules.accounts.codec import (
    decode_friends,
    decode_requests,
    encode_friends,
    encode_requests,
)
from clerk.modules.accounts.types import FriendEntry, FriendRequest
from clerk.modules.shared import events
from clerk.modules.shared.base_service import BaseService
from clerk.modules.shared.constants import SETTING_TOGGLED_REQUESTS
from clerk.modules.shared.durations import format_ago
from clerk.modules.shared.exceptions import (
    ClerkDomainException,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from clerk.modules.shared.timeutil import epoch_seconds, from_epoch, utc_now

if TYPE_CHECKING:
    from logging import Logger

    from clerk.core.event.bus import EventBus
    from clerk.modules.cache.coordinator import CacheCoordinator, Snapshot

_FIELDS = ["friends", "incoming_requests", "outgoing_requests", "settings"]


class FriendOutcome(str, Enum):
    SELF_REQUEST = "self_request"
    NOT_FOUND = "not_found"
    REQUESTS_DISABLED = "requests_disabled"
    ALREADY_FRIENDS = "already_friends"
    DUPLICATE_REQUEST = "duplicate_request"
    NOW_FRIENDS = "now_friends"
    REQUEST_SENT = "request_sent"
    NO_REQUEST = "no_request"
    REQUEST_DENIED = "request_denied"
    REQUEST_CANCELLED = "request_cancelled"
    FRIEND_REMOVED = "friend_removed"
    NOT_FRIENDS = "not_friends"


_SUCCESSFUL = frozenset(
    {
        FriendOutcome.NOW_FRIENDS,
        FriendOutcome.REQUEST_SENT,
        FriendOutcome.REQUEST_DENIED,
        FriendOutcome.REQUEST_CANCELLED,
        FriendOutcome.FRIEND_REMOVED,
    }
)


@dataclass
class FriendResult:
    outcome: FriendOutcome
    message: str = ""
    error: Optional[ClerkDomainException] = None

    @property
    def success(self) -> bool:
        return self.outcome in _SUCCESSFUL


@dataclass(frozen=True)
class FriendView:
    username: str
    since: int
    last_seen: Optional[datetime]
    last_seen_label: str


# ============================================================================
# Pair helpers over a locked snapshot
# ============================================================================


def _same(left: str, right: str) -> bool:
    return left.lower() == right.lower()


class _Pair:
    """Mutable view over the two locked accounts of one transition."""

    def __init__(self, snapshot: "Snapshot", a: str, b: str, now: int) -> None:
        self.a = snapshot.get(a.lower())
        self.b = snapshot.get(b.lower())
        self.now = now
        self.changes: Dict[str, Dict[str, Any]] = {}

    @property
    def a_name(self) -> str:
        return self.a["username"]

    @property
    def b_name(self) -> str:
        return self.b["username"]

    def _set(self, side: Dict[str, Any], field: str, value: Any) -> None:
        side[field] = value
        self.changes.setdefault(side["username"].lower(), {})[field] = value

    def friends(self, side: Dict[str, Any]) -> List[FriendEntry]:
        return decode_friends(side["friends"])

    def incoming(self, side: Dict[str, Any]) -> List[FriendRequest]:
        return decode_requests(side["incoming_requests"], "from")

    def outgoing(self, side: Dict[str, Any]) -> List[FriendRequest]:
        return decode_requests(side["outgoing_requests"], "to")

    def are_friends(self) -> bool:
        return any(_same(f.username, self.b_name) for f in self.friends(self.a)) or any(
            _same(f.username, self.a_name) for f in self.friends(self.b)
        )

    def pending(self, sender: Dict[str, Any], target: Dict[str, Any]) -> bool:
        return any(_same(r.username, target["username"]) for r in self.outgoing(sender)) or any(
            _same(r.username, sender["username"]) for r in self.incoming(target)
        )

    def requests_disabled(self, side: Dict[str, Any]) -> bool:
        settings = side.get("settings") or {}
        return bool(settings.get(SETTING_TOGGLED_REQUESTS, False))

    def add_request(self, sender: Dict[str, Any], target: Dict[str, Any]) -> None:
        outgoing = self.outgoing(sender) + [FriendRequest(target["username"], self.now)]
        incoming = self.incoming(target) + [FriendRequest(sender["username"], self.now)]
        self._set(sender, "outgoing_requests", encode_requests(outgoing, "to"))
        self._set(target, "incoming_requests", encode_requests(incoming, "from"))

    def drop_request(self, sender: Dict[str, Any], target: Dict[str, Any]) -> None:
        outgoing = [r for r in self.outgoing(sender) if not _same(r.username, target["username"])]
        incoming = [r for r in self.incoming(target) if not _same(r.username, sender["username"])]
        self._set(sender, "outgoing_requests", encode_requests(outgoing, "to"))
        self._set(target, "incoming_requests", encode_requests(incoming, "from"))

    def befriend(self) -> None:
        for side, other in ((self.a, self.b), (self.b, self.a)):
            current = [f for f in self.friends(side) if not _same(f.username, other["username"])]
            self._set(side, "friends", encode_friends(current + [FriendEntry(other["username"], self.now)]))
        self.drop_request(self.a, self.b)
        self.drop_request(self.b, self.a)

    def unfriend(self) -> None:
        for side, other in ((self.a, self.b), (self.b, self.a)):
            remaining = [f for f in self.friends(side) if not _same(f.username, other["username"])]
            self._set(side, "friends", encode_friends(remaining))


class RelationshipManager(BaseService):
    """Friend requests and friendships; all writes go through the cache coordinator."""

    def __init__(
        self,
        cache: CacheCoordinator,
        event_bus: EventBus,
        logger: Optional[Logger] = None,
        *,
        config_manager: Any = ConfigManager,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(config_manager, event_bus, logger or get_logger(__name__))
        self._cache = cache
        self._clock = clock

    async def _run(
        self,
        a: str,
        b: str,
        decide: Callable[[_Pair], FriendResult],
    ) -> FriendResult:
        outcome: Dict[str, FriendResult] = {}

        def plan(snapshot: "Snapshot") -> Dict[str, Dict[str, Any]]:
            pair = _Pair(snapshot, a, b, epoch_seconds(self._clock()))
            if pair.a is None or pair.b is None:
                missing = b if pair.b is None else a
                outcome["result"] = FriendResult(
                    FriendOutcome.NOT_FOUND,
                    f"Player {missing} was not found.",
                    NotFoundError("Account", missing),
                )
                return {}
            outcome["result"] = decide(pair)
            return pair.changes

        await self._cache.transact([a, b], _FIELDS, plan)
        return outcome["result"]

    # ========================================================================
    # TRANSITIONS
    # ========================================================================

    async def send_request(self, sender: str, target: str) -> FriendResult:
        if _same(sender, target):
            return FriendResult(
                FriendOutcome.SELF_REQUEST,
                "You cannot send a friend request to yourself.",
                ValidationError("target", "You cannot send a friend request to yourself."),
            )

        def decide(pair: _Pair) -> FriendResult:
            if pair.requests_disabled(pair.b):
                return FriendResult(
                    FriendOutcome.REQUESTS_DISABLED,
                    f"{pair.b_name} is not accepting friend requests.",
                    ConflictError("requests_disabled", f"{pair.b_name} has friend requests disabled."),
                )
            if pair.are_friends():
                return FriendResult(
                    FriendOutcome.ALREADY_FRIENDS,
                    f"You are already friends with {pair.b_name}.",
                    ConflictError("already_friends", "Already friends."),
                )
            if pair.pending(pair.a, pair.b):
                return FriendResult(
                    FriendOutcome.DUPLICATE_REQUEST,
                    f"You already sent a friend request to {pair.b_name}.",
                    ConflictError("duplicate_request", "Request already pending."),
                )
            if pair.pending(pair.b, pair.a):
                pair.befriend()
                return FriendResult(FriendOutcome.NOW_FRIENDS, f"You are now friends with {pair.b_name}.")
            pair.add_request(pair.a, pair.b)
            return FriendResult(FriendOutcome.REQUEST_SENT, f"Friend request sent to {pair.b_name}.")

        self.log_operation("send_request", sender=sender, target=target)
        result = await self._run(sender, target, decide)
        if result.outcome is FriendOutcome.REQUEST_SENT:
            await self.emit_event(events.FRIEND_REQUEST_SENT, {"from": sender, "to": target})
        elif result.outcome is FriendOutcome.NOW_FRIENDS:
            await self.emit_event(events.FRIEND_REQUEST_ACCEPTED, {"from": target, "to": sender})
        return result

    async def accept_request(self, username: str, requester: str) -> FriendResult:
        """``username`` accepts the pending request from ``requester``."""

        def decide(pair: _Pair) -> FriendResult:
            if not pair.pending(pair.b, pair.a):
                return FriendResult(
                    FriendOutcome.NO_REQUEST,
                    f"You have no friend request from {pair.b_name}.",
                    NotFoundError("FriendRequest", pair.b_name),
                )
            pair.befriend()
            return FriendResult(FriendOutcome.NOW_FRIENDS, f"You are now friends with {pair.b_name}.")

        result = await self._run(username, requester, decide)
        if result.outcome is FriendOutcome.NOW_FRIENDS:
            await self.emit_event(events.FRIEND_REQUEST_ACCEPTED, {"from": requester, "to": username})
        return result

    async def deny_request(self, username: str, requester: str) -> FriendResult:
        """``username`` denies the pending request from ``requester``."""

        def decide(pair: _Pair) -> FriendResult:
            if not pair.pending(pair.b, pair.a):
                return FriendResult(
                    FriendOutcome.NO_REQUEST,
                    f"You have no friend request from {pair.b_name}.",
                    NotFoundError("FriendRequest", pair.b_name),
                )
            pair.drop_request(pair.b, pair.a)
            return FriendResult(
                FriendOutcome.REQUEST_DENIED, f"Denied the friend request from {pair.b_name}."
            )

        result = await self._run(username, requester, decide)
        if result.outcome is FriendOutcome.REQUEST_DENIED:
            await self.emit_event(events.FRIEND_REQUEST_DENIED, {"from": requester, "to": username})
        return result

    async def cancel_request(self, username: str, target: str) -> FriendResult:
        """``username`` withdraws their pending request to ``target``."""

        def decide(pair: _Pair) -> FriendResult:
            if not pair.pending(pair.a, pair.b):
                return FriendResult(
                    FriendOutcome.NO_REQUEST,
                    f"You have no pending request to {pair.b_name}.",
                    NotFoundError("FriendRequest", pair.b_name),
                )
            pair.drop_request(pair.a, pair.b)
            return FriendResult(
                FriendOutcome.REQUEST_CANCELLED, f"Cancelled your friend request to {pair.b_name}."
            )

        result = await self._run(username, target, decide)
        if result.outcome is FriendOutcome.REQUEST_CANCELLED:
            await self.emit_event(events.FRIEND_REQUEST_CANCELLED, {"from": username, "to": target})
        return result

    async def remove_friendship(self, username: str, other: str) -> FriendResult:
        """Remove a friend, or cancel a pending request to them."""

        def decide(pair: _Pair) -> FriendResult:
            if pair.are_friends():
                pair.unfriend()
                return FriendResult(FriendOutcome.FRIEND_REMOVED, f"Removed {pair.b_name} from your friends.")
            if pair.pending(pair.a, pair.b):
                pair.drop_request(pair.a, pair.b)
                return FriendResult(
                    FriendOutcome.REQUEST_CANCELLED, f"Cancelled your friend request to {pair.b_name}."
                )
            return FriendResult(
                FriendOutcome.NOT_FRIENDS,
                f"You are not friends with {pair.b_name}.",
                ConflictError("not_friends", "Not friends."),
            )

        result = await self._run(username, other, decide)
        if result.outcome is FriendOutcome.FRIEND_REMOVED:
            await self.emit_event(events.FRIEND_REMOVED, {"from": username, "to": other})
        elif result.outcome is FriendOutcome.REQUEST_CANCELLED:
            await self.emit_event(events.FRIEND_REQUEST_CANCELLED, {"from": username, "to": other})
        return result

    # ========================================================================
    # QUERIES
    # ========================================================================

    async def list_friends(self, username: str) -> List[FriendView]:
        data = await self._cache.get(username, ["friends"])
        if data is None:
            return []
        now = self._clock()
        views: List[FriendView] = []
        for friend in decode_friends(data.get("friends")):
            other = await self._cache.get(friend.username, ["last_seen"])
            last_seen = from_epoch(other.get("last_seen")) if other else None
            label = format_ago((now - last_seen).total_seconds()) if last_seen else "Unknown"
            views.append(FriendView(friend.username, friend.since, last_seen, label))
        return views

    async def list_incoming(self, username: str) -> List[FriendRequest]:
        data = await self._cache.get(username, ["incoming_requests"])
        return decode_requests(data.get("incoming_requests"), "from") if data else []

    async def list_outgoing(self, username: str) -> List[FriendRequest]:
        data = await self._cache.get(username, ["outgoing_requests"])
        return decode_requests(data.get("outgoing_requests"), "to") if data else []

    async def toggle_requests(self, username: str) -> Optional[bool]:
        """Flip ``toggledRequests``; returns True when requests are now disabled."""

        def flip(settings: Any) -> Dict[str, Any]:
            current = dict(settings or {})
            current[SETTING_TOGGLED_REQUESTS] = not bool(current.get(SETTING_TOGGLED_REQUESTS, False))
            return current

        settings = await self._cache.update(username, "settings", flip)
        if settings is None:
            return None
        return bool(settings.get(SETTING_TOGGLED_REQUESTS))
