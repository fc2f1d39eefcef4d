"""
Session domain models.

Connection/auth statuses, stream kinds, credentials, subscription keys and
the notification entries emitted to the control surface.
"""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ConnectionStatus(str, Enum):
    """Transport connection status."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class AuthStatus(str, Enum):
    """Session authentication status."""

    LOGGED_OUT = "loggedOut"
    LOGGED_IN = "loggedIn"


class RequestType(str, Enum):
    """Outbound request type."""

    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"


class StreamKind(str, Enum):
    """
    Value of the ``streamingType`` field.

    LTPINFO and MARKET_PICTURE are data granularities that can be subscribed.
    LOGIN and LOGOUT only appear on the authentication handshake.
    """

    LTPINFO = "ltpinfo"
    MARKET_PICTURE = "marketPicture"
    LOGIN = "login"
    LOGOUT = "logout"

    @property
    def is_data_kind(self) -> bool:
        """True for kinds that can be held as subscriptions."""
        return self in DATA_STREAM_KINDS


DATA_STREAM_KINDS = frozenset({StreamKind.LTPINFO, StreamKind.MARKET_PICTURE})


class NotificationKind(str, Enum):
    """Kind of a notification entry."""

    SENT = "sent"
    RECEIVED = "received"
    ERROR = "error"
    SUCCESS = "success"
    INFO = "info"


class Credentials(BaseModel):
    """
    Session-identifying fields replayed into every outbound request.

    Values are opaque to the engine.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    gscid: str = Field(..., description="GSCID")
    gcid: str = Field(..., description="GCID")
    session_id: str = Field(..., alias="sessionId", description="Session id")
    device_id: str = Field(..., alias="deviceId", description="Device id")

    def redacted(self) -> dict[str, str]:
        """Credentials safe for logs and API responses."""
        return {
            "gscid": self.gscid,
            "gcid": self.gcid,
            "sessionId": "[REDACTED]",
            "deviceId": "[REDACTED]",
        }


class SubscriptionKey(BaseModel):
    """
    One active subscription: a token streamed at a given granularity.

    Persisted as ``{"token": ..., "type": ...}``.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    token: str = Field(..., min_length=1, description="Exchange-qualified token")
    kind: StreamKind = Field(..., alias="type", description="Stream kind")

    @field_validator("token")
    @classmethod
    def strip_token(cls, v: str) -> str:
        stripped = v.strip()
        if not stripped:
            raise ValueError("token must not be blank")
        return stripped

    @field_validator("kind")
    @classmethod
    def require_data_kind(cls, v: StreamKind) -> StreamKind:
        if not v.is_data_kind:
            raise ValueError(f"{v.value} cannot be subscribed")
        return v


class Notification(BaseModel):
    """A single entry of the notification stream."""

    kind: NotificationKind
    content: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class SessionSnapshot(BaseModel):
    """Observable session state."""

    connection_status: ConnectionStatus
    auth_status: AuthStatus
    subscriptions: list[SubscriptionKey] = Field(default_factory=list)
    market_symbols: list[str] = Field(default_factory=list)
    auto_login_pending: bool = False

    @property
    def logged_in(self) -> bool:
        return self.auth_status == AuthStatus.LOGGED_IN
