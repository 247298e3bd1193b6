"""
Account repository.

All username lookups compare ``lower(username)`` so that "Alice", "alice"
and "ALICE" address the same row. Multi-row locks are taken in ascending
``lower(username)`` order so that two transactions locking the same pair
cannot deadlock.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Dict, Iterable, List, Optional

from sqlalchemy import and_, func, or_, select

from clerk.core.logging.logger import get_logger
from clerk.database.models import Account
from clerk.modules.shared.base_repository import BaseRepository, lowered_jsonb

if TYPE_CHECKING:
    from logging import Logger

    from sqlalchemy.ext.asyncio import AsyncSession


class AccountRepository(BaseRepository[Account]):
    def __init__(self, logger: Optional[Logger] = None) -> None:
        super().__init__(Account, logger or get_logger(__name__))

    async def get_by_username(
        self, session: AsyncSession, username: str, *, for_update: bool = False
    ) -> Optional[Account]:
        return await self.find_one_where(
            session,
            func.lower(Account.username) == username.lower(),
            for_update=for_update,
        )

    async def username_taken(self, session: AsyncSession, username: str) -> bool:
        return await self.exists(session, func.lower(Account.username) == username.lower())

    async def lock_many(
        self, session: AsyncSession, usernames: Iterable[str]
    ) -> Dict[str, Account]:
        """
        SELECT ... FOR UPDATE every named account in sorted order.

        Returns a mapping keyed by lower-cased username; missing accounts are
        simply absent.
        """
        keys = sorted({name.lower() for name in usernames})
        if not keys:
            return {}
        accounts = await self.find_many_where(
            session,
            func.lower(Account.username).in_(keys),
            for_update=True,
            order_by=[func.lower(Account.username)],
        )
        return {account.username.lower(): account for account in accounts}

    async def find_by_id_or_ip(
        self,
        session: AsyncSession,
        stable_id: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> List[Account]:
        conditions = []
        if stable_id:
            conditions.append(Account.uuids.contains([stable_id]))
        if ip:
            conditions.append(Account.ip_address.contains([ip]))
        if not conditions:
            return []
        return await self.find_many_where(
            session, or_(*conditions), order_by=[Account.username]
        )

    async def find_auto_login_candidates(
        self, session: AsyncSession, stable_id: str, ip: str
    ) -> List[Account]:
        """Accounts linked to both the id and the IP that never logged out."""
        return await self.find_many_where(
            session,
            and_(
                Account.uuids.contains([stable_id]),
                Account.ip_address.contains([ip]),
                Account.logged_out.is_(False),
            ),
        )

    async def find_with_rank(
        self, session: AsyncSession, rank_name: str, *, for_update: bool = False
    ) -> List[Account]:
        """Accounts holding ``rank_name`` in either grant shape and any casing."""
        grants = lowered_jsonb(Account.ranks)
        folded = rank_name.lower()
        return await self.find_many_where(
            session,
            or_(grants.contains([{"rank": folded}]), grants.contains([folded])),
            for_update=for_update,
            order_by=[func.lower(Account.username)],
        )
