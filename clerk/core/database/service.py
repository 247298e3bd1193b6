"""
Database Service - durable store access for Clerk.

Purpose
-------
Centralized async engine and session management for the account and rank
tables. Every session passes through a PostgreSQL circuit breaker.

Responsibilities
----------------
- Initialize and manage a single AsyncEngine with connection pooling
- Provide async context managers for read sessions and atomic transactions
- Commit on success, roll back on any exception
- Host the row locks repositories take with ``for_update=True``
- Translate connection-level failures into ``TransientStoreError`` (tier
  "database") and fail fast while the circuit is open
- Configure statement timeouts for PostgreSQL connections

Non-Responsibilities
--------------------
- Schema creation (see ``clerk.core.database.bootstrap``)
- Query construction (repositories)
- Domain logic

Architecture Notes
------------------
**Transaction Model**:
- ``get_transaction()`` is the interface for every mutation. Lockout counters,
  cache write-through and relationship pairs all run inside one.
- Never call ``session.commit()`` inside service code.

**Connection Pooling**:
- QueuePool in normal operation, NullPool when ``ENVIRONMENT=testing``.

**Configuration** (from Config):
- DATABASE_URL, DATABASE_POOL_SIZE, DATABASE_MAX_OVERFLOW,
  DATABASE_POOL_RECYCLE, DATABASE_STATEMENT_TIMEOUT_MS, DATABASE_ECHO

Usage Example
-------------
>>> async with DatabaseService.get_transaction() as session:
...     account = await repo.get_by_username(session, "alice", for_update=True)
...     account.failed_attempts += 1
...     # Automatic commit on exit

Error Handling
--------------
- DatabaseInitializationError: bad configuration or engine creation failure
- DatabaseNotInitializedError: use before ``initialize()`` or after ``shutdown()``
- TransientStoreError: connection loss, timeouts, open circuit
- DatabaseError: any other driver error inside a transaction (bad SQL,
  constraint violations)
- Other exceptions raised inside a transaction roll it back and propagate as-is
"""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Optional, Type

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool, Pool, QueuePool

from clerk.core.circuit_breaker import CircuitBreaker
from clerk.core.config.config import Config
from clerk.core.exceptions import DatabaseError, TransientStoreError
from clerk.core.logging.logger import get_logger

logger = get_logger(__name__)

# Failures that say nothing about the statement itself.
_TRANSIENT_ERRORS = (OperationalError, InterfaceError, ConnectionError, TimeoutError, OSError)


class DatabaseInitializationError(RuntimeError):
    """Raised when database engine initialization fails."""


class DatabaseNotInitializedError(RuntimeError):
    """Raised when database operations are attempted before initialization."""


@dataclass(frozen=True)
class _DatabaseConfigSnapshot:
    url: str
    echo: bool
    pool_class: Type[Pool]
    pool_size: int
    max_overflow: int
    pool_recycle: int
    statement_timeout_ms: int

    @property
    def is_postgres(self) -> bool:
        return self.url.startswith(("postgresql://", "postgresql+asyncpg://"))

    @property
    def url_scheme(self) -> str:
        return self.url.split(":", 1)[0] if ":" in self.url else "unknown"


class DatabaseService:
    """
    Async database engine and session management.

    Public API
    ----------
    - initialize() / shutdown()
    - get_session(): reads
    - get_transaction(): atomic writes
    - health_check(), get_circuit_breaker_metrics()
    """

    _engine: Optional[AsyncEngine] = None
    _session_factory: Optional[async_sessionmaker[AsyncSession]] = None
    _config_snapshot: Optional[_DatabaseConfigSnapshot] = None
    _init_lock: asyncio.Lock = asyncio.Lock()
    _circuit_breaker: Optional[CircuitBreaker] = None

    # ========================================================================
    # Initialization & Shutdown
    # ========================================================================

    @classmethod
    def _build_config_snapshot(cls, url: Optional[str] = None) -> _DatabaseConfigSnapshot:
        database_url = url or Config.DATABASE_URL
        if not database_url or not isinstance(database_url, str):
            raise DatabaseInitializationError("DATABASE_URL must be configured as a non-empty string")

        return _DatabaseConfigSnapshot(
            url=database_url,
            echo=bool(Config.DATABASE_ECHO),
            pool_class=NullPool if Config.is_testing() else QueuePool,
            pool_size=Config.DATABASE_POOL_SIZE,
            max_overflow=Config.DATABASE_MAX_OVERFLOW,
            pool_recycle=Config.DATABASE_POOL_RECYCLE,
            statement_timeout_ms=Config.DATABASE_STATEMENT_TIMEOUT_MS,
        )

    @classmethod
    async def initialize(cls, url: Optional[str] = None) -> None:
        """
        Initialize the engine and session factory (idempotent).

        ``url`` overrides ``Config.DATABASE_URL``; integration tests pass the
        container URL here.
        """
        async with cls._init_lock:
            if cls._engine is not None:
                logger.debug("DatabaseService already initialized; skipping")
                return

            logger.info("Initializing DatabaseService")
            try:
                config = cls._build_config_snapshot(url)
                engine_kwargs: dict[str, Any] = {
                    "echo": config.echo,
                    "poolclass": config.pool_class,
                }
                if config.pool_class is QueuePool:
                    engine_kwargs.update(
                        pool_size=config.pool_size,
                        max_overflow=config.max_overflow,
                        pool_recycle=config.pool_recycle,
                        pool_pre_ping=True,
                    )

                cls._engine = create_async_engine(config.url, **engine_kwargs)
                cls._session_factory = async_sessionmaker(
                    bind=cls._engine,
                    class_=AsyncSession,
                    expire_on_commit=False,
                )
                cls._config_snapshot = config
                cls._circuit_breaker = CircuitBreaker("database")
            except Exception as exc:
                logger.error(
                    "DatabaseService initialization failed",
                    extra={"error": str(exc), "error_type": type(exc).__name__},
                    exc_info=True,
                )
                raise DatabaseInitializationError(f"Database initialization failed: {exc}") from exc

            logger.info(
                "DatabaseService initialized successfully",
                extra={
                    "url_scheme": config.url_scheme,
                    "pool_class": config.pool_class.__name__,
                },
            )

    @classmethod
    async def shutdown(cls) -> None:
        """Dispose the engine (safe to call multiple times)."""
        async with cls._init_lock:
            if cls._engine is None:
                return

            logger.info("Shutting down DatabaseService")
            try:
                await cls._engine.dispose()
            finally:
                cls._engine = None
                cls._session_factory = None
                cls._config_snapshot = None
                cls._circuit_breaker = None
            logger.info("DatabaseService shutdown complete")

    @classmethod
    def get_engine(cls) -> AsyncEngine:
        cls._ensure_initialized()
        assert cls._engine is not None
        return cls._engine

    # ========================================================================
    # Health Check
    # ========================================================================

    @classmethod
    async def health_check(cls) -> bool:
        """``SELECT 1`` liveness check; never raises."""
        if cls._engine is None:
            logger.warning("Health check called on uninitialized DatabaseService")
            return False

        start = time.perf_counter()
        try:
            async with cls._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except (DBAPIError, *_TRANSIENT_ERRORS) as exc:
            logger.warning(
                "Database health check failed",
                extra={"error": str(exc), "error_type": type(exc).__name__},
            )
            return False
        finally:
            logger.debug(
                "Database health check completed",
                extra={"latency_ms": round((time.perf_counter() - start) * 1000, 2)},
            )

    # ========================================================================
    # Session & Transaction Context Managers
    # ========================================================================

    @classmethod
    def _ensure_initialized(cls) -> None:
        if cls._session_factory is None or cls._engine is None:
            raise DatabaseNotInitializedError(
                "DatabaseService must be initialized before use. "
                "Call DatabaseService.initialize() during startup."
            )

    @classmethod
    async def _apply_statement_timeout(cls, session: AsyncSession) -> None:
        config = cls._config_snapshot
        if config is not None and config.is_postgres:
            await session.execute(
                text(f"SET LOCAL statement_timeout = {int(config.statement_timeout_ms)}")
            )

    @classmethod
    async def _admit(cls, operation: str) -> CircuitBreaker:
        cls._ensure_initialized()
        breaker = cls._circuit_breaker
        assert breaker is not None
        if not await breaker.allow_request():
            logger.warning(
                "Database request rejected by circuit breaker",
                extra={"operation": operation, "retry_after": breaker.retry_after()},
            )
            raise TransientStoreError(TransientStoreError.DATABASE, operation, breaker.open_error())
        return breaker

    @classmethod
    @asynccontextmanager
    async def get_session(cls) -> AsyncGenerator[AsyncSession, None]:
        """
        Session for reads. No commit; the implicit transaction is rolled back
        when the session closes.
        """
        breaker = await cls._admit("session")
        assert cls._session_factory is not None

        async with cls._session_factory() as session:
            try:
                await cls._apply_statement_timeout(session)
                yield session
            except _TRANSIENT_ERRORS as exc:
                await breaker.record_failure()
                logger.error(
                    "Transient database failure in session",
                    extra={"error": str(exc), "error_type": type(exc).__name__},
                )
                raise TransientStoreError(TransientStoreError.DATABASE, "session", exc) from exc
            else:
                await breaker.record_success()

    @classmethod
    @asynccontextmanager
    async def get_transaction(cls) -> AsyncGenerator[AsyncSession, None]:
        """
        Session wrapped in an atomic transaction.

        Commits on success. On any exception: rolls back and re-raises;
        connection-level failures are re-raised as ``TransientStoreError``.
        """
        breaker = await cls._admit("transaction")
        assert cls._session_factory is not None

        start = time.perf_counter()
        async with cls._session_factory() as session:
            try:
                await cls._apply_statement_timeout(session)
                yield session
                await session.commit()
            except _TRANSIENT_ERRORS as exc:
                await session.rollback()
                await breaker.record_failure()
                logger.error(
                    "Transient database failure in transaction; rolled back",
                    extra={
                        "error": str(exc),
                        "error_type": type(exc).__name__,
                        "latency_ms": round((time.perf_counter() - start) * 1000, 2),
                    },
                )
                raise TransientStoreError(TransientStoreError.DATABASE, "transaction", exc) from exc
            except DBAPIError as exc:
                await session.rollback()
                logger.error(
                    "Database error in transaction; rolled back",
                    extra={"error": str(exc.orig), "error_type": type(exc).__name__},
                )
                raise DatabaseError("transaction", exc) from exc
            except BaseException as exc:
                await session.rollback()
                logger.debug(
                    "Transaction rolled back",
                    extra={"error_type": type(exc).__name__},
                )
                raise
            else:
                await breaker.record_success()
                logger.debug(
                    "Database transaction committed",
                    extra={"latency_ms": round((time.perf_counter() - start) * 1000, 2)},
                )

    @classmethod
    def get_circuit_breaker_metrics(cls) -> dict[str, Any]:
        if cls._circuit_breaker is None:
            return {"state": "not_initialized"}
        metrics = cls._circuit_breaker.get_metrics()
        return {
            "state": metrics.state.value,
            "failure_count": metrics.failure_count,
            "success_count": metrics.success_count,
            "consecutive_failures": metrics.consecutive_failures,
            "total_requests": metrics.total_requests,
            "rejected_requests": metrics.rejected_requests,
        }
