"""
RedisService: async Redis infrastructure for Clerk.

Purpose
-------
Distributed cache and pub/sub substrate shared by every proxy process:
account projections live under ``account:<username>`` with a TTL, and
invalidation notices travel over Redis channels.

Responsibilities
----------------
- Initialize and manage a singleton Redis connection pool
- KV and JSON operations (get/set/delete/ttl/get_json/set_json)
- Key enumeration via SCAN
- Publish JSON messages and run background subscriber tasks
- Distributed locking via SET NX + Lua compare-and-delete
- Route all I/O through a circuit breaker and translate failures into
  ``TransientStoreError`` with tier "cache"

Non-Responsibilities
--------------------
- Deciding what to do when the cache is down (callers absorb cache-tier
  errors and fall back to the database)
- Business logic of any kind

Configuration Keys
------------------
- core.redis.url                     : str (falls back to Config.REDIS_URL)
- core.redis.socket_timeout_seconds  : int (falls back to Config.REDIS_SOCKET_TIMEOUT)
- core.redis.max_connections         : int (falls back to Config.REDIS_MAX_CONNECTIONS)
- core.redis.lock.default_timeout_sec: int (default 30)
- core.redis.pubsub.reconnect_delay_sec: float (default 1.0)

Architecture Notes
------------------
- redis-py asyncio client with ``decode_responses=True``
- Lock safety via unique UUID tokens + Lua compare-and-delete
- Initialization is idempotent and guarded by an asyncio.Lock
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from redis.asyncio.client import PubSub, Redis as AsyncRedis
from redis.exceptions import RedisError

from clerk.core.circuit_breaker import CircuitBreaker
from clerk.core.config.config import Config
from clerk.core.config.manager import ConfigManager
from clerk.core.exceptions import TransientStoreError
from clerk.core.logging.logger import get_logger

logger = get_logger(__name__)

MessageHandler = Callable[[Dict[str, Any]], Awaitable[None]]

_REDIS_FAILURES = (RedisError, OSError, asyncio.TimeoutError)


class RedisService:
    """Singleton async Redis client with breaker-guarded operations."""

    _client: Optional[AsyncRedis] = None
    _breaker: Optional[CircuitBreaker] = None
    _subscriptions: List[Tuple[PubSub, "asyncio.Task[None]"]] = []
    _init_lock: asyncio.Lock = asyncio.Lock()

    _LUA_UNLOCK_SCRIPT = """
    if redis.call("GET", KEYS[1]) == ARGV[1] then
        return redis.call("DEL", KEYS[1])
    else
        return 0
    end
    """

    # ═══════════════════════════════════════════════════════════════════════
    # LIFECYCLE MANAGEMENT
    # ═══════════════════════════════════════════════════════════════════════

    @classmethod
    async def initialize(cls, url: Optional[str] = None) -> None:
        """
        Connect and verify with PING (idempotent).

        Raises
        ------
        RuntimeError
            If the connection cannot be established.
        """
        async with cls._init_lock:
            if cls._client is not None:
                logger.debug("RedisService already initialized, skipping")
                return

            url = url or ConfigManager.get("core.redis.url", Config.REDIS_URL)
            socket_timeout = ConfigManager.get(
                "core.redis.socket_timeout_seconds", Config.REDIS_SOCKET_TIMEOUT
            )
            max_connections = ConfigManager.get(
                "core.redis.max_connections", Config.REDIS_MAX_CONNECTIONS
            )

            start_time = time.monotonic()
            client: AsyncRedis = AsyncRedis.from_url(
                url,
                socket_timeout=socket_timeout,
                encoding="utf-8",
                decode_responses=True,
                max_connections=max_connections,
                retry_on_timeout=False,
                health_check_interval=30,
            )
            try:
                await client.ping()
            except _REDIS_FAILURES as exc:
                await client.aclose()
                logger.critical(
                    "Failed to initialize RedisService",
                    extra={
                        "error": str(exc),
                        "error_type": type(exc).__name__,
                        "url_scheme": url.split("://")[0] if "://" in url else "unknown",
                    },
                )
                raise RuntimeError(f"Failed to initialize RedisService: {exc}") from exc

            cls._client = client
            cls._breaker = CircuitBreaker("redis")
            cls._subscriptions = []

            logger.info(
                "RedisService initialized successfully",
                extra={
                    "socket_timeout_seconds": socket_timeout,
                    "max_connections": max_connections,
                    "latency_ms": round((time.monotonic() - start_time) * 1000, 2),
                },
            )

    @classmethod
    async def shutdown(cls) -> None:
        """Stop subscribers and close the pool (safe if not initialized)."""
        await cls.unsubscribe_all()

        client = cls._client
        cls._client = None
        cls._breaker = None
        if client is None:
            return

        try:
            await client.aclose()
        except _REDIS_FAILURES as exc:
            logger.error(
                "Error during RedisService shutdown",
                extra={"error": str(exc), "error_type": type(exc).__name__},
            )
            return
        logger.info("RedisService shutdown complete")

    @classmethod
    def is_initialized(cls) -> bool:
        return cls._client is not None

    @classmethod
    def client(cls) -> AsyncRedis:
        if cls._client is None:
            raise RuntimeError("RedisService not initialized. Call RedisService.initialize() first.")
        return cls._client

    # ═══════════════════════════════════════════════════════════════════════
    # HEALTH & STATUS
    # ═══════════════════════════════════════════════════════════════════════

    @classmethod
    async def health_check(cls) -> bool:
        """PING; never raises."""
        if cls._client is None:
            return False
        try:
            start_time = time.monotonic()
            pong = await cls._client.ping()
        except _REDIS_FAILURES as exc:
            logger.warning(
                "Redis health check failed",
                extra={"error": str(exc), "error_type": type(exc).__name__},
            )
            return False
        logger.debug(
            "Redis health check passed",
            extra={"latency_ms": round((time.monotonic() - start_time) * 1000, 2)},
        )
        return bool(pong)

    @classmethod
    def get_status(cls) -> Dict[str, Any]:
        breaker = cls._breaker.get_metrics() if cls._breaker else None
        return {
            "initialized": cls._client is not None,
            "circuit_state": breaker.state.value if breaker else "not_initialized",
            "subscriptions": len(cls._subscriptions),
        }

    # ═══════════════════════════════════════════════════════════════════════
    # EXECUTION
    # ═══════════════════════════════════════════════════════════════════════

    @classmethod
    async def _execute(
        cls,
        operation_name: str,
        operation: Callable[[AsyncRedis], Awaitable[Any]],
        key: Optional[str] = None,
    ) -> Any:
        if cls._client is None or cls._breaker is None:
            raise TransientStoreError(
                TransientStoreError.CACHE,
                operation_name,
                RuntimeError("RedisService not initialized"),
            )

        breaker = cls._breaker
        if not await breaker.allow_request():
            raise TransientStoreError(TransientStoreError.CACHE, operation_name, breaker.open_error())

        start_time = time.monotonic()
        try:
            result = await operation(cls._client)
        except _REDIS_FAILURES as exc:
            await breaker.record_failure()
            logger.warning(
                f"Redis {operation_name} failed",
                extra={
                    "key": key,
                    "latency_ms": round((time.monotonic() - start_time) * 1000, 2),
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                },
            )
            raise TransientStoreError(TransientStoreError.CACHE, operation_name, exc) from exc

        await breaker.record_success()
        logger.debug(
            f"Redis {operation_name}",
            extra={"key": key, "latency_ms": round((time.monotonic() - start_time) * 1000, 2)},
        )
        return result

    # ═══════════════════════════════════════════════════════════════════════
    # KEY-VALUE OPERATIONS
    # ═══════════════════════════════════════════════════════════════════════

    @classmethod
    async def get(cls, key: str) -> Optional[str]:
        return await cls._execute("GET", lambda c: c.get(key), key)

    @classmethod
    async def set(cls, key: str, value: str, ttl_seconds: Optional[int] = None) -> bool:
        """SET with optional expiry (``ex``)."""
        return bool(await cls._execute("SET", lambda c: c.set(key, value, ex=ttl_seconds), key))

    @classmethod
    async def delete(cls, *keys: str) -> int:
        if not keys:
            return 0
        return int(await cls._execute("DEL", lambda c: c.delete(*keys), keys[0]))

    @classmethod
    async def ttl(cls, key: str) -> int:
        """Remaining TTL in seconds (-1 no expiry, -2 missing)."""
        return int(await cls._execute("TTL", lambda c: c.ttl(key), key))

    @classmethod
    async def get_json(cls, key: str) -> Optional[Any]:
        raw = await cls.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding undecodable JSON value", extra={"key": key})
            return None

    @classmethod
    async def set_json(cls, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        return await cls.set(key, json.dumps(value, separators=(",", ":")), ttl_seconds)

    @classmethod
    async def scan_keys(cls, pattern: str, count: int = 500) -> List[str]:
        """All keys matching ``pattern`` via incremental SCAN."""

        async def _scan(client: AsyncRedis) -> List[str]:
            return [key async for key in client.scan_iter(match=pattern, count=count)]

        return await cls._execute("SCAN", _scan, pattern)

    # ═══════════════════════════════════════════════════════════════════════
    # PUB/SUB
    # ═══════════════════════════════════════════════════════════════════════

    @classmethod
    async def publish(cls, channel: str, message: Mapping[str, Any]) -> int:
        """Publish a JSON message; returns the number of receivers."""
        payload = json.dumps(dict(message), separators=(",", ":"))
        return int(await cls._execute("PUBLISH", lambda c: c.publish(channel, payload), channel))

    @classmethod
    async def subscribe(cls, handlers: Mapping[str, MessageHandler]) -> "asyncio.Task[None]":
        """
        Subscribe to channels and dispatch decoded JSON payloads to handlers
        from a background task. Handler failures are logged per message.
        """
        if cls._client is None:
            raise TransientStoreError(
                TransientStoreError.CACHE,
                "SUBSCRIBE",
                RuntimeError("RedisService not initialized"),
            )
        pubsub = cls._client.pubsub(ignore_subscribe_messages=True)
        try:
            await pubsub.subscribe(*handlers.keys())
        except _REDIS_FAILURES as exc:
            await pubsub.aclose()
            raise TransientStoreError(TransientStoreError.CACHE, "SUBSCRIBE", exc) from exc
        task = asyncio.create_task(
            cls._listen(pubsub, dict(handlers)),
            name=f"redis-pubsub:{','.join(handlers)}",
        )
        cls._subscriptions.append((pubsub, task))
        logger.info("Redis subscription started", extra={"channels": list(handlers)})
        return task

    @classmethod
    async def _listen(cls, pubsub: PubSub, handlers: Dict[str, MessageHandler]) -> None:
        reconnect_delay = float(ConfigManager.get("core.redis.pubsub.reconnect_delay_sec", 1.0))
        while True:
            try:
                async for message in pubsub.listen():
                    await cls._dispatch(message, handlers)
            except _REDIS_FAILURES as exc:
                logger.warning(
                    "Redis subscription interrupted; reconnecting",
                    extra={
                        "channels": list(handlers),
                        "error": str(exc),
                        "error_type": type(exc).__name__,
                    },
                )
                await asyncio.sleep(reconnect_delay)

    @staticmethod
    async def _dispatch(message: Dict[str, Any], handlers: Dict[str, MessageHandler]) -> None:
        if message.get("type") != "message":
            return
        channel = message.get("channel")
        handler = handlers.get(channel)
        if handler is None:
            return
        try:
            payload = json.loads(message.get("data") or "")
        except ValueError:
            logger.warning("Ignoring non-JSON pub/sub message", extra={"channel": channel})
            return
        if not isinstance(payload, dict):
            logger.warning("Ignoring non-object pub/sub message", extra={"channel": channel})
            return
        try:
            await handler(payload)
        except Exception as exc:
            logger.error(
                "Pub/sub handler failed",
                extra={"channel": channel, "error": str(exc), "error_type": type(exc).__name__},
                exc_info=True,
            )

    @classmethod
    async def unsubscribe_all(cls) -> None:
        subscriptions, cls._subscriptions = cls._subscriptions, []
        for pubsub, task in subscriptions:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            try:
                await pubsub.unsubscribe()
                await pubsub.aclose()
            except _REDIS_FAILURES as exc:
                logger.warning(
                    "Error closing Redis subscription",
                    extra={"error": str(exc), "error_type": type(exc).__name__},
                )

    # ═══════════════════════════════════════════════════════════════════════
    # DISTRIBUTED LOCKS
    # ═══════════════════════════════════════════════════════════════════════

    @classmethod
    @asynccontextmanager
    async def acquire_lock(
        cls,
        lock_name: str,
        timeout_seconds: Optional[int] = None,
    ) -> AsyncGenerator[bool, None]:
        """
        Try once to take ``lock:<lock_name>``; yields whether it was acquired.

        The lock expires after ``timeout_seconds`` so a crashed holder cannot
        block others forever.
        """
        timeout_seconds = timeout_seconds or ConfigManager.get(
            "core.redis.lock.default_timeout_sec", 30
        )
        lock_key = f"lock:{lock_name}"
        token = uuid.uuid4().hex

        acquired = bool(
            await cls._execute(
                "LOCK",
                lambda c: c.set(lock_key, token, nx=True, ex=timeout_seconds),
                lock_key,
            )
        )
        try:
            yield acquired
        finally:
            if acquired:
                await cls._execute(
                    "UNLOCK",
                    lambda c: c.eval(cls._LUA_UNLOCK_SCRIPT, 1, lock_key, token),
                    lock_key,
                )
