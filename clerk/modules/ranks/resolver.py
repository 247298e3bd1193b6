"""
AuthorizationResolver: permission checks against ranks and direct grants.

Resolution order for ``has_permission(username, token)``:

1. Permissions of every active (non-expired) rank, including inherited
   ranks, matched exactly.
2. Wildcards from those ranks. ``a.*`` matches ``a.b`` and ``a.b.c``; a
   ``*`` segment matches the remainder when the preceding segments match
   exactly, so ``*`` alone grants everything.
3. Direct permission grants that have not expired, matched exactly.

Account data is read through ``CacheCoordinator``; rank definitions come
from the in-memory ``RankTable``.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Callable, Iterable, List, Optional, Set

from clerk.core.logging.logger import get_logger
from clerk.modules.accounts.codec import decode_permission_grants, decode_rank_grants
from clerk.modules.shared.timeutil import utc_now

from .table import RankDefinition, RankTable

if TYPE_CHECKING:
    from clerk.modules.cache.coordinator import CacheCoordinator

logger = get_logger(__name__)


def wildcard_matches(pattern: str, token: str) -> bool:
    if "*" not in pattern:
        return False
    pattern_parts = pattern.split(".")
    token_parts = token.split(".")
    if len(pattern_parts) > len(token_parts):
        return False
    for pattern_part, token_part in zip(pattern_parts, token_parts):
        if pattern_part == "*":
            return True
        if pattern_part != token_part:
            return False
    return False


def matches_any(permissions: Iterable[str], token: str) -> bool:
    granted = set(permissions)
    if token in granted:
        return True
    return any(wildcard_matches(p, token) for p in granted if "*" in p)


class AuthorizationResolver:
    def __init__(
        self,
        cache: CacheCoordinator,
        table: RankTable,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._cache = cache
        self._table = table
        self._clock = clock

    @property
    def table(self) -> RankTable:
        return self._table

    async def _grants(self, username: str):
        data = await self._cache.get(username, ["ranks", "permissions"])
        if data is None:
            return None, None
        now = self._clock()
        ranks = [g.rank for g in decode_rank_grants(data.get("ranks")) if g.is_active(now)]
        direct = [
            g.permission
            for g in decode_permission_grants(data.get("permissions"))
            if g.is_active(now)
        ]
        return ranks, direct

    def rank_permissions(self, rank: str) -> Set[str]:
        """Permissions of ``rank`` including inherited ranks."""
        return self._table.permissions_for(rank)

    async def active_ranks(self, username: str) -> List[str]:
        ranks, _ = await self._grants(username)
        return ranks or []

    async def has_permission(self, username: str, token: str) -> bool:
        ranks, direct = await self._grants(username)
        if ranks is None:
            return False

        rank_perms: Set[str] = set()
        for rank in ranks:
            rank_perms |= self._table.permissions_for(rank)

        allowed = matches_any(rank_perms, token) or token in direct
        logger.debug(
            "Permission check",
            extra={"username": username, "permission": token, "allowed": allowed},
        )
        return allowed

    async def effective_permissions(self, username: str) -> Set[str]:
        """Union of active rank permissions (with inheritance) and active direct grants."""
        ranks, direct = await self._grants(username)
        if ranks is None:
            return set()
        permissions: Set[str] = set(direct)
        for rank in ranks:
            permissions |= self._table.permissions_for(rank)
        return permissions

    async def primary_rank(self, username: str) -> Optional[RankDefinition]:
        """Highest-weight active rank known to the table."""
        ranks = await self.active_ranks(username)
        known = [r for r in (self._table.get(name) for name in ranks) if r is not None]
        if not known:
            return None
        return max(known, key=lambda r: r.weight)
