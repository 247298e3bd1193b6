"""
In-memory rank table.

Holds every rank definition keyed by lower-cased name and answers
inheritance-expanded permission queries without touching the store. The
table is replaced wholesale on refresh, so readers always see one
consistent generation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Set, Tuple

from clerk.core.logging.logger import get_logger

if TYPE_CHECKING:
    from clerk.database.models import Rank

logger = get_logger(__name__)


@dataclass(frozen=True)
class RankDefinition:
    name: str
    prefix: str = ""
    weight: int = 0
    permissions: Tuple[str, ...] = ()
    inheritance: Tuple[str, ...] = ()
    users: Tuple[str, ...] = field(default=(), compare=False)

    @classmethod
    def from_model(cls, rank: "Rank") -> "RankDefinition":
        return cls(
            name=rank.name,
            prefix=rank.prefix or "",
            weight=int(rank.weight or 0),
            permissions=tuple(str(p) for p in (rank.permissions or [])),
            inheritance=tuple(str(r) for r in (rank.inheritance or [])),
            users=tuple(str(u) for u in (rank.users or [])),
        )


class RankTable:
    def __init__(self, ranks: Iterable[RankDefinition] = ()) -> None:
        self._ranks: Dict[str, RankDefinition] = {}
        self.replace(ranks)

    def replace(self, ranks: Iterable[RankDefinition]) -> None:
        self._ranks = {rank.name.lower(): rank for rank in ranks}
        logger.debug("Rank table replaced", extra={"rank_count": len(self._ranks)})

    def get(self, name: str) -> Optional[RankDefinition]:
        return self._ranks.get(name.lower())

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._ranks

    def __len__(self) -> int:
        return len(self._ranks)

    def all(self) -> List[RankDefinition]:
        """Ranks ordered by weight, heaviest first."""
        return sorted(self._ranks.values(), key=lambda r: (-r.weight, r.name.lower()))

    def permissions_for(self, name: str) -> Set[str]:
        """
        Own permissions plus everything inherited, transitively.

        Walks the inheritance graph with an explicit stack and a visited set,
        so cycles and unknown rank names are harmless.
        """
        permissions: Set[str] = set()
        visited: Set[str] = set()
        stack = [name]
        while stack:
            current = stack.pop().lower()
            if current in visited:
                continue
            visited.add(current)
            rank = self._ranks.get(current)
            if rank is None:
                continue
            permissions.update(rank.permissions)
            stack.extend(reversed(rank.inheritance))
        return permissions
