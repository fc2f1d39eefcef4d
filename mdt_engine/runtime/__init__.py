"""
Runtime utilities for the market data terminal engine.

Provides:
- Event bus for internal pub/sub
"""

from mdt_engine.runtime.event_bus import Event, EventBus, EventType

__all__ = [
    "Event",
    "EventBus",
    "EventType",
]
