"""
Base Service Foundation

Purpose
-------
Foundational class for the engine's domain services (authentication,
accounts, ranks, relationships, sync, sessions). Services implement the
business rules, open transactions through ``DatabaseService``, and emit
domain events.

Design Notes
------------
This base class provides:
- Structured logging with operation context
- Config access through ConfigManager with optional required keys
- Event emission helpers

What this class does NOT do:
- Manage database transactions (DatabaseService's job)
- Hold per-request state

Usage
-----
    class RankService(BaseService):
        def __init__(self, database, repository, config_manager, event_bus, logger):
            super().__init__(config_manager, event_bus, logger)
            self._db = database
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, Optional

from clerk.core.exceptions import ConfigurationError, get_error_severity, should_alert

if TYPE_CHECKING:
    from logging import Logger

    from clerk.core.config.manager import ConfigManager
    from clerk.core.event.bus import EventBus


class BaseService:
    """
    Base class for all domain services.

    Args:
        config_manager: Configuration manager (class or instance exposing ``get``)
        event_bus: Event bus for cross-module communication
        logger: Structured logger instance
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        event_bus: EventBus,
        logger: Logger,
    ) -> None:
        self._config = config_manager
        self._events = event_bus
        self.log = logger

    def get_config(self, key: str, default: Optional[Any] = None, required: bool = False) -> Any:
        """
        Retrieve a configuration value.

        Raises:
            ConfigurationError: If required=True and key is missing
        """
        value = self._config.get(key, default)
        if required and value is None:
            raise ConfigurationError(key, f"Required configuration key '{key}' is missing")
        return value

    async def emit_event(
        self,
        event_type: str,
        data: Dict[str, Any],
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Publish a domain event; listener failures are isolated by the bus."""
        await self._events.publish(event_type, {**data, **(context or {})})

    def log_operation(self, operation: str, **context: Any) -> None:
        self.log.info(
            f"Service operation: {operation}",
            extra={"operation": operation, **context},
        )

    def log_error(self, operation: str, error: Exception, **context: Any) -> None:
        """Log at ERROR for alert-worthy failures, WARNING for handled ones."""
        level = logging.ERROR if should_alert(error) else logging.WARNING
        self.log.log(
            level,
            f"Service error during {operation}: {error}",
            extra={
                "operation": operation,
                "severity": get_error_severity(error).value,
                "error_type": type(error).__name__,
                "error": str(error),
                **context,
            },
        )
