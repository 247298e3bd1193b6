"""
Core event types for the Clerk EventBus.

Priority Levels
---------------
- CRITICAL (0): sequential, awaited, timeout-protected (e.g. the sync flush
  that must observe a disconnect before the session is forgotten)
- HIGH (10): sequential, awaited, timeout-protected
- NORMAL (50): concurrent, awaited (notifications)
- LOW (100): fire-and-forget (audit logging)
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

EventPayload = dict[str, Any]

CallbackType = Union[
    Callable[[EventPayload], Awaitable[Any]],
    Callable[[EventPayload], Any],
]


class ListenerPriority(Enum):
    CRITICAL = 0
    HIGH = 10
    NORMAL = 50
    LOW = 100

    @property
    def is_sequential(self) -> bool:
        return self in (ListenerPriority.CRITICAL, ListenerPriority.HIGH)


@dataclass(slots=True)
class EventListener:
    """A registered callback and its scheduling metadata."""

    event_name: str
    callback: CallbackType
    priority: ListenerPriority
    identifier: str
    once: bool = False

    @classmethod
    def from_callback(
        cls,
        event_name: str,
        callback: CallbackType,
        priority: ListenerPriority = ListenerPriority.NORMAL,
        identifier: Optional[str] = None,
        once: bool = False,
    ) -> "EventListener":
        if identifier is None:
            name = getattr(callback, "__qualname__", None) or getattr(callback, "__name__", "listener")
            identifier = f"{name}:{uuid.uuid4().hex[:8]}"
        return cls(
            event_name=event_name,
            callback=callback,
            priority=priority,
            identifier=identifier,
            once=once,
        )
