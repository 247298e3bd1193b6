"""
Redis infrastructure for Clerk.

Exports
-------
RedisService - connection pool, KV/JSON operations, SCAN, pub/sub and locks.

Example
-------
>>> await RedisService.initialize()
>>> await RedisService.set_json("account:alice", projection, ttl_seconds=3600)
>>> await RedisService.publish("clerk:account_updates", {"type": "account_update"})
>>> await RedisService.shutdown()
"""

from __future__ import annotations

from clerk.core.redis.service import RedisService

__all__ = ["RedisService"]
