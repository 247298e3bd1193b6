"""Rank repository: case-insensitive name lookups and inheritance queries."""

from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import func

from clerk.core.logging.logger import get_logger
from clerk.database.models import Rank
from clerk.modules.shared.base_repository import BaseRepository, lowered_jsonb

if TYPE_CHECKING:
    from logging import Logger

    from sqlalchemy.ext.asyncio import AsyncSession


class RankRepository(BaseRepository[Rank]):
    def __init__(self, logger: Optional[Logger] = None) -> None:
        super().__init__(Rank, logger or get_logger(__name__))

    async def get_by_name(
        self, session: AsyncSession, name: str, *, for_update: bool = False
    ) -> Optional[Rank]:
        return await self.find_one_where(
            session, func.lower(Rank.name) == name.lower(), for_update=for_update
        )

    async def list_all(self, session: AsyncSession) -> List[Rank]:
        return await self.find_many_where(session, order_by=[Rank.weight.desc(), Rank.name])

    async def find_inheriting(
        self, session: AsyncSession, name: str, *, for_update: bool = False
    ) -> List[Rank]:
        """Ranks whose inheritance list contains ``name`` in any casing."""
        return await self.find_many_where(
            session,
            lowered_jsonb(Rank.inheritance).contains([name.lower()]),
            for_update=for_update,
        )
