"""
Clerk logging infrastructure: queue-backed structured logging with
ContextVar-bound session context (`LogContext`).
"""

from clerk.core.logging.logger import (
    LogContext,
    LoggerConfig,
    LoggingHealth,
    get_log_context,
    get_logger,
    get_logging_health,
    setup_logging,
    shutdown_logging,
)

__all__ = [
    "setup_logging",
    "shutdown_logging",
    "get_logger",
    "get_logging_health",
    "LogContext",
    "get_log_context",
    "LoggerConfig",
    "LoggingHealth",
]
