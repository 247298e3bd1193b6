"""Cache-to-store reconciliation."""

from .scheduler import SYNC_LOCK_NAME, SyncScheduler

__all__ = ["SYNC_LOCK_NAME", "SyncScheduler"]
