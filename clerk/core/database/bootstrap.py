"""
Database subsystem bootstrap.

Purpose
-------
Single entry point for bringing the durable store up and down: initialize
``DatabaseService``, verify readiness, and create the ``accounts`` / ``ranks``
schema when asked to.

Bootstrap Sequence
------------------
1. ``initialize_database_subsystem()`` is called during startup
2. DatabaseService initializes the engine and session factory
3. Optional health check with a timeout
4. Optional ``create_all`` for the ORM metadata (idempotent)

Usage
-----
>>> await initialize_database_subsystem(create_schema=True)
>>> ...
>>> await shutdown_database_subsystem()
"""

from __future__ import annotations

import asyncio
from typing import Optional

from clerk.core.database.base import Base
from clerk.core.database.service import DatabaseInitializationError, DatabaseService
from clerk.core.logging.logger import get_logger

logger = get_logger(__name__)

BOOTSTRAP_HEALTH_TIMEOUT_SECONDS = 5.0


async def create_schema() -> None:
    """Create missing tables and indexes for every registered model."""
    # Registers the model classes on Base.metadata.
    import clerk.database.models  # noqa: F401

    engine = DatabaseService.get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ensured", extra={"tables": sorted(Base.metadata.tables)})


async def initialize_database_subsystem(
    *,
    url: Optional[str] = None,
    verify_health: bool = True,
    create_schema_objects: bool = False,
) -> None:
    """
    Initialize the database subsystem.

    Raises
    ------
    DatabaseInitializationError
        If initialization fails or the health check fails or times out.
    """
    logger.info("Initializing database subsystem")
    await DatabaseService.initialize(url)

    if verify_health:
        try:
            healthy = await asyncio.wait_for(
                DatabaseService.health_check(),
                timeout=BOOTSTRAP_HEALTH_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError as exc:
            logger.error(
                "Database health check timed out during bootstrap",
                extra={"timeout_seconds": BOOTSTRAP_HEALTH_TIMEOUT_SECONDS},
            )
            raise DatabaseInitializationError(
                f"Database health check timed out after {BOOTSTRAP_HEALTH_TIMEOUT_SECONDS}s"
            ) from exc

        if not healthy:
            raise DatabaseInitializationError(
                "Database is unreachable or unhealthy after initialization"
            )

    if create_schema_objects:
        await create_schema()

    logger.info(
        "Database subsystem initialized",
        extra={"health_checked": verify_health, "schema_created": create_schema_objects},
    )


async def shutdown_database_subsystem() -> None:
    """Dispose the engine. Errors are logged; shutdown continues."""
    logger.info("Shutting down database subsystem")
    try:
        await DatabaseService.shutdown()
    except Exception as exc:
        logger.error(
            "Error during database subsystem shutdown",
            extra={"error": str(exc), "error_type": type(exc).__name__},
            exc_info=True,
        )
        return
    logger.info("Database subsystem shutdown complete")
