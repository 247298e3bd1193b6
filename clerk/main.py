"""
Clerk - Application Entry Point
===============================

Bootstrap order:
- Static config validation and logging setup
- ConfigManager (YAML defaults)
- Database and Redis services
- Service container (ranks, cache listener, sync scheduler)

Embedding servers call ``start_engine(identity)`` / ``stop_engine()``.
Running the module directly starts a headless node that keeps the rank
table, cache invalidation and periodic sync alive until SIGTERM or Ctrl+C.
"""

from __future__ import annotations

import asyncio
import signal
import sys
from typing import Optional, Tuple

from clerk.core.config.config import Config
from clerk.core.config.manager import ConfigManager
from clerk.core.database.bootstrap import (
    initialize_database_subsystem,
    shutdown_database_subsystem,
)
from clerk.core.event.bus import EventBus
from clerk.core.logging.logger import (
    get_logger,
    get_logging_health,
    setup_logging,
    shutdown_logging,
)
from clerk.core.redis.service import RedisService
from clerk.core.services.container import (
    ServiceContainer,
    initialize_service_container,
    shutdown_service_container,
)
from clerk.modules.session.manager import IdentityResolver
from clerk.modules.shared.constants import PLATFORM_BEDROCK, PLATFORM_JAVA

logger = get_logger(__name__)


class ConnectionIdResolver:
    """
    Treats the connection id as the stable id. Dashed 36-character UUIDs are
    Java clients; anything else is a Bedrock id.
    """

    async def resolve_identity(self, connection_id: str) -> Tuple[Optional[str], str]:
        if not connection_id:
            return None, PLATFORM_JAVA
        platform = PLATFORM_JAVA if len(connection_id) == 36 else PLATFORM_BEDROCK
        return connection_id, platform


# ============================================================================
# Engine lifecycle
# ============================================================================

async def start_engine(
    identity: IdentityResolver,
    *,
    create_schema: bool = False,
) -> ServiceContainer:
    """Bring infrastructure up and return an initialized container."""
    logger.info("Clerk initialization starting")

    Config.validate()
    setup_logging()
    logger.info("Configuration validated", extra=Config.get_config_summary())

    await ConfigManager.initialize(Config.CONFIG_DIR)
    logger.info("Config manager initialized")

    await initialize_database_subsystem(create_schema_objects=create_schema)
    logger.info("Database service initialized")

    await RedisService.initialize()
    logger.info("Redis service initialized")

    container = initialize_service_container(
        EventBus(ConfigManager),
        identity=identity,
        logger=get_logger("clerk.core.services.container"),
    )
    await container.initialize()
    logger.info("Clerk initialized")
    return container


async def stop_engine() -> None:
    """Shut down in reverse order. Each step is attempted even if an earlier one failed."""
    logger.info("Clerk shutdown starting")

    try:
        await shutdown_service_container()
        logger.info("Service container shut down")
    except Exception as exc:
        logger.error(f"Service container shutdown error: {exc}", exc_info=True)

    try:
        await RedisService.shutdown()
        logger.info("Redis service shut down")
    except Exception as exc:
        logger.error(f"Redis service shutdown error: {exc}", exc_info=True)

    await shutdown_database_subsystem()
    health = get_logging_health()
    logger.info(
        "Clerk shutdown complete",
        extra={"log_records": health.enqueued, "log_records_dropped": health.dropped},
    )
    shutdown_logging()


# ============================================================================
# Headless node
# ============================================================================

async def main() -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            logger.debug("Signal handlers not supported on this platform")

    started = False
    try:
        await start_engine(ConnectionIdResolver(), create_schema=True)
        started = True
        logger.info("Clerk node running")
        await stop.wait()
    except asyncio.CancelledError:
        logger.warning("Asyncio task cancellation received; shutting down gracefully.")
        raise
    finally:
        if started:
            await stop_engine()


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Clerk stopped via keyboard interrupt.")
    except Exception as exc:
        logger.critical(f"Startup failure: {exc}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    run()
