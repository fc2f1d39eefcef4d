"""
Persistence of session state across restarts.
"""

from mdt_engine.persistence.store import (
    CREDENTIALS_KEY,
    LOGIN_FLAG_KEY,
    SUBSCRIPTIONS_KEY,
    InMemoryKeyValueStore,
    JsonFileKeyValueStore,
    KeyValueStore,
    SessionStateStore,
)

__all__ = [
    "CREDENTIALS_KEY",
    "SUBSCRIPTIONS_KEY",
    "LOGIN_FLAG_KEY",
    "KeyValueStore",
    "InMemoryKeyValueStore",
    "JsonFileKeyValueStore",
    "SessionStateStore",
]
