"""
Clerk event system.

In-process, priority-tiered publish/subscribe used to decouple the engine's
services. Cross-process invalidation uses Redis pub/sub instead.
"""

from clerk.core.event.bus import EventBus
from clerk.core.event.types import EventListener, EventPayload, ListenerPriority

__all__ = ["EventBus", "EventListener", "EventPayload", "ListenerPriority"]
