"""
Streaming session: connection and authentication lifecycle, subscriptions,
wire codec and WebSocket transport.

The manager itself lives in ``mdt_engine.session.manager``.
"""

from mdt_engine.session.errors import (
    DecodeError,
    NotAuthenticatedError,
    NotConnectedError,
    SessionError,
    TransportError,
)
from mdt_engine.session.models import (
    AuthStatus,
    ConnectionStatus,
    Credentials,
    Notification,
    NotificationKind,
    SessionSnapshot,
    StreamKind,
    SubscriptionKey,
)

__all__ = [
    # Models
    "AuthStatus",
    "ConnectionStatus",
    "Credentials",
    "Notification",
    "NotificationKind",
    "SessionSnapshot",
    "StreamKind",
    "SubscriptionKey",
    # Errors
    "SessionError",
    "TransportError",
    "NotConnectedError",
    "NotAuthenticatedError",
    "DecodeError",
]
