"""Rank administration and permission resolution."""

from .resolver import AuthorizationResolver, matches_any, wildcard_matches
from .service import RankResult, RankService
from .table import RankDefinition, RankTable

__all__ = [
    "AuthorizationResolver",
    "RankDefinition",
    "RankResult",
    "RankService",
    "RankTable",
    "matches_any",
    "wildcard_matches",
]
