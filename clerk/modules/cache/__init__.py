"""Tiered account cache coordination (memo, Redis projection, PostgreSQL)."""

from .coordinator import CacheCoordinator, account_key

__all__ = ["CacheCoordinator", "account_key"]
