"""
In-process EventBus for Clerk.

Purpose
-------
Decouple the engine's components: the session manager announces disconnects,
the authentication guard announces locks and logins, the relationship manager
announces requests so that a notification layer can tell online players.

Responsibilities
----------------
- Register listeners for exact names ("session.disconnected") or wildcard
  patterns ("friends.*", "account.*")
- Execute listeners in priority tiers:
  - CRITICAL / HIGH: sequential, awaited, with timeout
  - NORMAL: concurrent via asyncio.gather, awaited
  - LOW: fire-and-forget background tasks
- Isolate listener failures: one failing listener is logged and never
  prevents the others from running or propagates to the publisher

Non-Responsibilities
--------------------
- Cross-process delivery (Redis pub/sub in ``RedisService``)
- Persistence or replay of events

Configuration Keys
------------------
- core.event.listener_timeout_seconds : float (default 5.0)
"""

from __future__ import annotations

import asyncio
import inspect
from fnmatch import fnmatchcase
from typing import Any, Dict, List, Optional, Set

from clerk.core.config.manager import ConfigManager
from clerk.core.event.types import (
    CallbackType,
    EventListener,
    EventPayload,
    ListenerPriority,
)
from clerk.core.logging.logger import get_logger

logger = get_logger(__name__)


class EventBus:
    """
    Priority-tiered async event bus.

    Examples
    --------
    >>> bus = EventBus()
    >>> bus.subscribe("session.disconnected", scheduler.on_disconnect,
    ...               priority=ListenerPriority.CRITICAL)
    >>> await bus.publish("session.disconnected", {"username": "Alice"})
    """

    def __init__(
        self,
        config_manager: Optional[type[ConfigManager]] = None,
        *,
        listener_timeout_seconds: Optional[float] = None,
    ) -> None:
        self._listeners: Dict[str, List[EventListener]] = {}
        self._background: Set["asyncio.Task[Any]"] = set()
        self._published: Dict[str, int] = {}
        self._errors: Dict[str, int] = {}

        if listener_timeout_seconds is None:
            source = config_manager or ConfigManager
            listener_timeout_seconds = float(source.get("core.event.listener_timeout_seconds", 5.0))
        self._timeout = listener_timeout_seconds

    @staticmethod
    def _validate_callback_signature(callback: CallbackType) -> None:
        try:
            sig = inspect.signature(callback)
        except (TypeError, ValueError):
            return
        if any(p.kind is p.VAR_POSITIONAL for p in sig.parameters.values()):
            return
        params = [
            p for p in sig.parameters.values()
            if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD)
        ]
        if len(params) != 1:
            name = getattr(callback, "__qualname__", repr(callback))
            raise ValueError(
                f"Event listener must accept exactly 1 parameter (EventPayload), "
                f"got {len(params)} parameters for '{name}'"
            )

    # ------------------------------------------------------------------ #
    # Subscription API
    # ------------------------------------------------------------------ #

    def subscribe(
        self,
        event_name: str,
        callback: CallbackType,
        *,
        priority: ListenerPriority = ListenerPriority.NORMAL,
        identifier: Optional[str] = None,
        once: bool = False,
    ) -> str:
        """
        Subscribe a callback to an event name or wildcard pattern.

        Returns the listener identifier used by ``unsubscribe``.
        """
        self._validate_callback_signature(callback)
        listener = EventListener.from_callback(
            event_name=event_name,
            callback=callback,
            priority=priority,
            identifier=identifier,
            once=once,
        )

        bucket = self._listeners.setdefault(event_name, [])
        if any(existing.identifier == listener.identifier for existing in bucket):
            logger.warning(
                "EventBus: duplicate listener prevented",
                extra={"event_name": event_name, "listener_id": listener.identifier},
            )
            return listener.identifier

        bucket.append(listener)
        logger.debug(
            "EventBus: subscribed listener",
            extra={
                "event_name": event_name,
                "listener_id": listener.identifier,
                "priority": listener.priority.name,
            },
        )
        return listener.identifier

    def unsubscribe(self, event_name: str, identifier: str) -> bool:
        bucket = self._listeners.get(event_name, [])
        remaining = [listener for listener in bucket if listener.identifier != identifier]
        if len(remaining) == len(bucket):
            return False
        if remaining:
            self._listeners[event_name] = remaining
        else:
            self._listeners.pop(event_name, None)
        return True

    def clear(self) -> None:
        """Remove every listener (tests, full re-initialization)."""
        self._listeners.clear()

    def _matching_listeners(self, event_name: str) -> List[EventListener]:
        matched: List[EventListener] = []
        for pattern, bucket in list(self._listeners.items()):
            if pattern == event_name or fnmatchcase(event_name, pattern):
                matched.extend(bucket)
                consumed = [listener for listener in bucket if listener.once]
                if consumed:
                    self._listeners[pattern] = [l for l in bucket if not l.once]
        matched.sort(key=lambda listener: listener.priority.value)
        return matched

    # ------------------------------------------------------------------ #
    # Publish API
    # ------------------------------------------------------------------ #

    async def publish(self, event_name: str, data: EventPayload) -> list[Any]:
        """
        Publish an event. Returns results from non-LOW listeners; failed
        listeners contribute nothing.
        """
        self._published[event_name] = self._published.get(event_name, 0) + 1
        listeners = self._matching_listeners(event_name)
        if not listeners:
            return []

        payload = {"event": event_name, **data}
        results: list[Any] = []

        for listener in (l for l in listeners if l.priority.is_sequential):
            ok, value = await self._invoke(listener, payload, timeout=self._timeout)
            if ok:
                results.append(value)

        normal = [l for l in listeners if l.priority is ListenerPriority.NORMAL]
        if normal:
            outcomes = await asyncio.gather(*(self._invoke(l, payload) for l in normal))
            results.extend(value for ok, value in outcomes if ok)

        for listener in (l for l in listeners if l.priority is ListenerPriority.LOW):
            task = asyncio.create_task(self._invoke(listener, payload))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

        return results

    async def _invoke(
        self,
        listener: EventListener,
        payload: EventPayload,
        timeout: Optional[float] = None,
    ) -> tuple[bool, Any]:
        try:
            result = listener.callback(payload)
            if inspect.isawaitable(result):
                result = await asyncio.wait_for(result, timeout) if timeout else await result
            return True, result
        except Exception as exc:
            event_name = payload.get("event", listener.event_name)
            self._errors[event_name] = self._errors.get(event_name, 0) + 1
            logger.error(
                "EventBus: listener failed",
                extra={
                    "event_name": event_name,
                    "listener_id": listener.identifier,
                    "priority": listener.priority.name,
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                },
                exc_info=True,
            )
            return False, None

    async def drain(self) -> None:
        """Wait for outstanding LOW-priority listeners."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------ #
    # Introspection
    # ------------------------------------------------------------------ #

    def get_listener_count(self, event_name: Optional[str] = None) -> int:
        if event_name is None:
            return sum(len(bucket) for bucket in self._listeners.values())
        return sum(
            len(bucket)
            for pattern, bucket in self._listeners.items()
            if pattern == event_name or fnmatchcase(event_name, pattern)
        )

    def get_metrics_summary(self) -> dict[str, Any]:
        return {
            "total_events_published": sum(self._published.values()),
            "events_by_type": dict(self._published),
            "total_errors": sum(self._errors.values()),
            "errors_by_event": dict(self._errors),
            "total_listeners": self.get_listener_count(),
        }
