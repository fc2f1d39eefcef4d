"""
Event bus for internal pub/sub messaging.

Carries session state changes and the notification stream from the session
manager to the control surface without coupling the two.
"""

import asyncio
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from mdt_engine.logging import get_logger

logger = get_logger(__name__)


class EventType(str, Enum):
    """Types of events in the system."""

    # Lifecycle events
    ENGINE_STARTED = "engine.started"
    ENGINE_STOPPED = "engine.stopped"

    # Session events
    CONNECTION_STATUS_CHANGED = "session.connection_status"
    AUTH_STATUS_CHANGED = "session.auth_status"
    SUBSCRIPTIONS_CHANGED = "session.subscriptions"
    NOTIFICATION = "session.notification"

    # Data events
    MARKET_DATA_UPDATED = "data.market_updated"
    MARKET_DATA_REMOVED = "data.market_removed"


@dataclass
class Event:
    """A session or engine event with its JSON-ready payload."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_message(self) -> dict[str, Any]:
        """Flatten into a JSON-ready message for UI clients."""
        return {
            "type": self.type.value,
            "timestamp": self.timestamp.isoformat(),
            **self.data,
        }


# Type for event handlers
EventHandler = Callable[[Event], Coroutine[Any, Any, None]]


class EventBus:
    """
    Async event bus keyed by event type.

    Handlers for one event run concurrently; a failing handler is logged and
    never reaches the publisher, so the session manager is not affected by a
    broken UI client or log sink.
    """

    def __init__(self) -> None:
        self._handlers: dict[EventType, list[EventHandler]] = {}
        self._lock = asyncio.Lock()

    async def subscribe(self, event_type: EventType, handler: EventHandler) -> None:
        async with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)

    async def unsubscribe(self, event_type: EventType, handler: EventHandler) -> None:
        async with self._lock:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

    async def publish(self, event: Event) -> None:
        """
        Publish an event to all subscribers of its type.

        Args:
            event: Event to publish
        """
        async with self._lock:
            handlers = list(self._handlers.get(event.type, []))

        if not handlers:
            return

        results = await asyncio.gather(
            *[handler(event) for handler in handlers],
            return_exceptions=True,
        )
        for handler, result in zip(handlers, results):
            if isinstance(result, Exception):
                logger.warning(
                    "Handler %s failed on %s: %s",
                    getattr(handler, "__qualname__", handler),
                    event.type.value,
                    result,
                )


# Global event bus instance
_event_bus: EventBus | None = None


def get_event_bus() -> EventBus:
    """Get the global event bus instance."""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Reset the global event bus (for testing)."""
    global _event_bus
    _event_bus = None
