"""Identity models: accounts and ranks."""

from .account import Account
from .rank import Rank

__all__ = ["Account", "Rank"]
