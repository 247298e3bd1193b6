"""
Rank Service
============

Purpose
-------
Administration of ranks and rank grants:

- rank definitions: ensure the Default rank, list/get, create-or-update,
  delete with cascade, YAML export/import
- grants: give a rank to an account (optionally timed), revoke it, query it
- keep the in-memory ``RankTable`` current in this process and tell other
  processes to refresh theirs over ``clerk:rank_updates``

Domain Rules
------------
- "Default" (any casing) can never be deleted.
- Deleting a rank removes it from every other rank's inheritance list and
  from every account's rank grants in the same transaction.
- Inheritance entries are stored in the casing of the rank they name and
  matched case-insensitively.
- Granting a rank the account already has replaces the earlier grant, so a
  timed grant can be turned permanent and vice versa.
- Timed grants use the duration grammar ("1d12h", "1mo"); months and years
  are calendar arithmetic.

Dependencies
------------
- CacheCoordinator: account grant writes and rank-update broadcast
- RankTable: in-memory definitions shared with AuthorizationResolver
- DatabaseService: rank row transactions
- PyYAML: rank export/import files
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

import yaml

from clerk.core.config.manager import ConfigManager
from clerk.core.database.service import DatabaseService
from clerk.core.logging.logger import get_logger
from clerk.database.models import Rank
from clerk.modules.accounts.codec import bump_revision, decode_rank_grants, encode_rank_grants
from clerk.modules.accounts.repository import AccountRepository
from clerk.modules.accounts.types import RankGrant
from clerk.modules.shared import events
from clerk.modules.shared.base_service import BaseService
from clerk.modules.shared.constants import (
    DEFAULT_RANK_NAME,
    DEFAULT_RANK_PERMISSIONS,
    DEFAULT_RANK_PREFIX,
    DEFAULT_RANK_WEIGHT,
)
from clerk.modules.shared.durations import expiry_from, format_remaining
from clerk.modules.shared.exceptions import (
    ClerkDomainException,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from clerk.modules.shared.timeutil import utc_now
from clerk.modules.shared.validators import validate_duration

from .repository import RankRepository
from .table import RankDefinition, RankTable

if TYPE_CHECKING:
    from logging import Logger

    from sqlalchemy.ext.asyncio import AsyncSession

    from clerk.core.event.bus import EventBus
    from clerk.modules.cache.coordinator import CacheCoordinator


@dataclass
class RankResult:
    success: bool
    message: str = ""
    error: Optional[ClerkDomainException] = None
    rank: Optional[RankDefinition] = None
    grant: Optional[RankGrant] = None

    @classmethod
    def failed(cls, error: ClerkDomainException) -> "RankResult":
        message = getattr(error, "validation_message", None) or error.message
        return cls(False, message, error)


def _unique(values: Iterable[Any]) -> List[str]:
    seen: List[str] = []
    for value in values:
        text = str(value).strip()
        if text and text not in seen:
            seen.append(text)
    return seen


def _without(values: Iterable[Any], name: str) -> List[str]:
    return [str(v) for v in values if str(v).lower() != name.lower()]


class RankService(BaseService):
    """
    Rank definitions and grants.

    Public Methods
    --------------
    - refresh_table() / ensure_default_rank()
    - list_ranks() / get_rank() / set_rank() / delete_rank()
    - grant_rank() / remove_rank() / has_rank() / user_ranks()
    - format_time_until_expiration()
    - export_ranks() / import_ranks()
    """

    def __init__(
        self,
        cache: CacheCoordinator,
        table: RankTable,
        event_bus: EventBus,
        logger: Optional[Logger] = None,
        *,
        config_manager: Any = ConfigManager,
        database: Any = DatabaseService,
        repository: Optional[RankRepository] = None,
        account_repository: Optional[AccountRepository] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(config_manager, event_bus, logger or get_logger(__name__))
        self._cache = cache
        self._table = table
        self._db = database
        self._repo = repository or RankRepository()
        self._accounts = account_repository or AccountRepository()
        self._clock = clock

        self.default_rank_name = self.get_config("ranks.default.name", DEFAULT_RANK_NAME)

    # ========================================================================
    # TABLE MAINTENANCE
    # ========================================================================

    async def refresh_table(self) -> int:
        """Reload every rank definition into the shared table."""
        async with self._db.get_session() as session:
            ranks = await self._repo.list_all(session)
            definitions = [RankDefinition.from_model(rank) for rank in ranks]
        self._table.replace(definitions)
        self.log.info("Rank table refreshed", extra={"rank_count": len(definitions)})
        return len(definitions)

    async def _changed(self, event: str, **data: Any) -> None:
        await self.refresh_table()
        await self._cache.publish_rank_update()
        await self.emit_event(event, data)

    async def ensure_default_rank(self) -> RankDefinition:
        """Create the Default rank when it does not exist."""
        async with self._db.get_transaction() as session:
            rank = await self._repo.get_by_name(session, self.default_rank_name)
            if rank is None:
                rank = Rank(
                    name=self.default_rank_name,
                    prefix=self.get_config("ranks.default.prefix", DEFAULT_RANK_PREFIX),
                    permissions=list(
                        self.get_config("ranks.default.permissions", list(DEFAULT_RANK_PERMISSIONS))
                    ),
                    inheritance=[],
                    users=[],
                    weight=int(self.get_config("ranks.default.weight", DEFAULT_RANK_WEIGHT)),
                )
                self._repo.add(session, rank)
                self.log.info("Default rank created", extra={"rank": rank.name})
            definition = RankDefinition.from_model(rank)
        await self.refresh_table()
        return definition

    # ========================================================================
    # DEFINITIONS
    # ========================================================================

    def list_ranks(self) -> List[RankDefinition]:
        return self._table.all()

    def get_rank(self, name: str) -> Optional[RankDefinition]:
        return self._table.get(name)

    async def set_rank(
        self,
        name: str,
        prefix: str = "",
        permissions: Iterable[str] = (),
        inheritance: Iterable[str] = (),
        weight: int = 0,
    ) -> RankResult:
        """Create or replace a rank definition; existing members are kept."""
        name = (name or "").strip()
        if not name:
            return RankResult.failed(ValidationError("rank", "Rank name cannot be empty."))
        inherited = _without(_unique(self._spelled(inheritance)), name)

        self.log_operation("set_rank", rank=name)
        async with self._db.get_transaction() as session:
            rank = await self._repo.get_by_name(session, name, for_update=True)
            created = rank is None
            if rank is None:
                rank = Rank(name=name, users=[])
                self._repo.add(session, rank)
            rank.prefix = prefix or ""
            rank.permissions = _unique(permissions)
            rank.inheritance = inherited
            rank.weight = int(weight)
            definition = RankDefinition.from_model(rank)

        await self._changed(events.RANK_UPDATED, rank=definition.name, created=created)
        verb = "created" if created else "updated"
        return RankResult(True, f"Rank {definition.name} {verb}.", rank=definition)

    def _spelled(self, names: Iterable[Any], pending: Iterable[Any] = ()) -> List[str]:
        """Inherited rank names in the casing of their definitions."""
        incoming = {str(n).strip().lower(): str(n).strip() for n in pending}
        spelled = []
        for name in names:
            text = str(name).strip()
            definition = self._table.get(text)
            spelled.append(definition.name if definition else incoming.get(text.lower(), text))
        return spelled

    async def delete_rank(self, name: str) -> RankResult:
        """
        Delete a rank and cascade it out of inheritance lists and account
        grants in one transaction.
        """
        if name.strip().lower() == self.default_rank_name.lower():
            return RankResult.failed(
                ConflictError("default_rank", "The Default rank cannot be deleted.")
            )

        self.log_operation("delete_rank", rank=name)
        affected: Dict[str, Tuple[List[Any], int]] = {}
        async with self._db.get_transaction() as session:
            rank = await self._repo.get_by_name(session, name, for_update=True)
            if rank is None:
                return RankResult.failed(NotFoundError("Rank", name))
            canonical = rank.name

            for other in await self._repo.find_inheriting(session, canonical, for_update=True):
                other.inheritance = _without(other.inheritance or [], canonical)

            for account in await self._accounts.find_with_rank(session, canonical, for_update=True):
                remaining = [g for g in decode_rank_grants(account.ranks) if g.rank.lower() != canonical.lower()]
                account.ranks = encode_rank_grants(remaining)
                affected[account.username.lower()] = (account.ranks, bump_revision(account))

            await self._repo.delete(session, rank)

        for username, (ranks, revision) in affected.items():
            await self._cache.propagate_write(username, {"ranks": ranks}, revision)

        await self._changed(events.RANK_DELETED, rank=canonical, accounts=len(affected))
        return RankResult(True, f"Rank {canonical} deleted.")

    # ========================================================================
    # GRANTS
    # ========================================================================

    async def grant_rank(
        self, username: str, rank_name: str, duration: Optional[str] = None
    ) -> RankResult:
        """Give ``rank_name`` to ``username``, permanently or for ``duration``."""
        definition = self._table.get(rank_name)
        if definition is None:
            return RankResult.failed(NotFoundError("Rank", rank_name))
        try:
            duration = validate_duration(duration)
        except ValidationError as exc:
            return RankResult.failed(exc)

        expires = expiry_from(self._clock(), duration) if duration else None
        grant = RankGrant(definition.name, expires)

        def plan(snapshot):
            return {
                name: {
                    "ranks": encode_rank_grants(
                        [g for g in decode_rank_grants(values["ranks"]) if g.rank.lower() != grant.rank.lower()]
                        + [grant]
                    )
                }
                for name, values in snapshot.items()
            }

        async def add_member(session: AsyncSession, written: Dict[str, Dict[str, Any]]) -> None:
            if written:
                await self._update_members(session, definition.name, add=username)

        written = await self._cache.transact([username], ["ranks"], plan, in_transaction=add_member)
        if not written:
            return RankResult.failed(NotFoundError("Account", username))

        await self.emit_event(
            events.RANK_GRANTED,
            {"username": username, "rank": definition.name, "expires": expires},
        )
        suffix = f" for {duration}" if duration else ""
        return RankResult(
            True, f"Granted {definition.name} to {username}{suffix}.", rank=definition, grant=grant
        )

    async def remove_rank(self, username: str, rank_name: str) -> RankResult:
        held: Dict[str, bool] = {}

        def plan(snapshot):
            changes = {}
            for name, values in snapshot.items():
                grants = decode_rank_grants(values["ranks"])
                remaining = [g for g in grants if g.rank.lower() != rank_name.lower()]
                held[name] = len(remaining) != len(grants)
                if held[name]:
                    changes[name] = {"ranks": encode_rank_grants(remaining)}
            return changes

        async def drop_member(session: AsyncSession, written: Dict[str, Dict[str, Any]]) -> None:
            if written:
                await self._update_members(session, rank_name, remove=username)

        await self._cache.transact([username], ["ranks"], plan, in_transaction=drop_member)
        if not held:
            return RankResult.failed(NotFoundError("Account", username))
        if not any(held.values()):
            return RankResult.failed(
                NotFoundError("RankGrant", f"{username} does not have rank {rank_name}")
            )

        await self.emit_event(events.RANK_REVOKED, {"username": username, "rank": rank_name})
        return RankResult(True, f"Removed {rank_name} from {username}.")

    async def _update_members(
        self,
        session: AsyncSession,
        rank_name: str,
        *,
        add: Optional[str] = None,
        remove: Optional[str] = None,
    ) -> None:
        rank = await self._repo.get_by_name(session, rank_name, for_update=True)
        if rank is None:
            return
        members = list(rank.users or [])
        if remove:
            members = _without(members, remove)
        if add and add.lower() not in {m.lower() for m in members}:
            members.append(add)
        rank.users = members

    async def user_ranks(self, username: str, *, include_expired: bool = False) -> List[RankGrant]:
        data = await self._cache.get(username, ["ranks"])
        if data is None:
            return []
        grants = decode_rank_grants(data.get("ranks"))
        if include_expired:
            return grants
        now = self._clock()
        return [g for g in grants if g.is_active(now)]

    async def has_rank(self, username: str, rank_name: str) -> bool:
        return any(g.rank.lower() == rank_name.lower() for g in await self.user_ranks(username))

    def format_time_until_expiration(self, expires: datetime) -> str:
        return format_remaining(expires, self._clock())

    # ========================================================================
    # YAML EXPORT / IMPORT
    # ========================================================================

    async def export_ranks(self, path: Union[str, Path]) -> int:
        """Write every rank to ``path`` as ``ranks: {name: {...}}``."""
        document = {
            "ranks": {
                rank.name: {
                    "prefix": rank.prefix,
                    "permissions": list(rank.permissions),
                    "inheritance": list(rank.inheritance),
                    "weight": rank.weight,
                }
                for rank in self._table.all()
            }
        }
        target = Path(path)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            with target.open("w", encoding="utf-8") as fh:
                yaml.safe_dump(document, fh, sort_keys=False, allow_unicode=True)

        await asyncio.to_thread(_write)
        self.log.info("Ranks exported", extra={"path": str(target), "rank_count": len(document["ranks"])})
        return len(document["ranks"])

    async def import_ranks(self, path: Union[str, Path]) -> RankResult:
        """
        Upsert every rank found in a YAML export. Members of existing ranks
        are kept; ranks absent from the file are left untouched.
        """
        source = Path(path)

        def _read() -> Any:
            with source.open("r", encoding="utf-8") as fh:
                return yaml.safe_load(fh)

        try:
            document = await asyncio.to_thread(_read)
        except (OSError, yaml.YAMLError) as exc:
            self.log_error("import_ranks", exc, path=str(source))
            return RankResult.failed(ValidationError("file", f"Could not read {source}: {exc}"))

        entries = document.get("ranks") if isinstance(document, dict) else None
        if not isinstance(entries, dict):
            return RankResult.failed(ValidationError("file", "Expected a top-level 'ranks' mapping."))

        async with self._db.get_transaction() as session:
            for name, body in entries.items():
                body = body if isinstance(body, dict) else {}
                rank = await self._repo.get_by_name(session, str(name), for_update=True)
                if rank is None:
                    rank = Rank(name=str(name), users=[])
                    self._repo.add(session, rank)
                rank.prefix = str(body.get("prefix") or "")
                rank.permissions = _unique(body.get("permissions") or [])
                inherited = self._spelled(body.get("inheritance") or [], entries)
                rank.inheritance = _without(_unique(inherited), str(name))
                rank.weight = int(body.get("weight") or 0)

        await self._changed(events.RANK_UPDATED, imported=len(entries))
        return RankResult(True, f"Imported {len(entries)} ranks.")
