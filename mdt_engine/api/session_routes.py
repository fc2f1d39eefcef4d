"""
Session API routes.

Provides endpoints for:
- Connecting/disconnecting the streaming transport
- Logging in/out and managing credentials
- Subscribing/unsubscribing tokens
- Reading market records and the notification history
"""

from collections import deque
from typing import Any, NoReturn

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from mdt_engine.config import get_settings
from mdt_engine.logging import get_logger
from mdt_engine.persistence.store import JsonFileKeyValueStore, SessionStateStore
from mdt_engine.runtime.event_bus import Event
from mdt_engine.session.errors import (
    NotAuthenticatedError,
    NotConnectedError,
    SessionError,
    TransportError,
)
from mdt_engine.session.manager import SessionManager
from mdt_engine.session.models import (
    Credentials,
    Notification,
    NotificationKind,
    StreamKind,
)

router = APIRouter(prefix="/session", tags=["Session"])
logger = get_logger(__name__)


# =============================================================================
# Service State
# =============================================================================


class NotificationLog:
    """
    Bounded history of session notifications.

    Fed from NOTIFICATION events on the event bus; oldest entries drop first.
    """

    def __init__(self, max_entries: int = 500) -> None:
        self._entries: deque[Notification] = deque(maxlen=max_entries)

    async def record(self, event: Event) -> None:
        """Event bus handler."""
        self._entries.append(Notification.model_validate(event.data))

    def entries(self, limit: int | None = None) -> list[Notification]:
        """Entries oldest first, optionally only the most recent ``limit``."""
        items = list(self._entries)
        if limit is not None:
            items = items[-limit:] if limit > 0 else []
        return items

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


# Global instances
_session_manager: SessionManager | None = None
_notification_log: NotificationLog | None = None


def get_session_manager() -> SessionManager:
    """Get or create the session manager singleton."""
    global _session_manager
    if _session_manager is None:
        settings = get_settings()
        state_store = SessionStateStore(JsonFileKeyValueStore(settings.resolved_state_file))
        _session_manager = SessionManager(settings=settings, state_store=state_store)
    return _session_manager


def set_session_manager(manager: SessionManager) -> None:
    """Install a preconfigured session manager."""
    global _session_manager
    _session_manager = manager


def reset_session_manager() -> None:
    """Reset session manager (for testing)."""
    global _session_manager
    _session_manager = None


def get_notification_log() -> NotificationLog:
    """Get or create the notification log singleton."""
    global _notification_log
    if _notification_log is None:
        _notification_log = NotificationLog(get_settings().notification_log_size)
    return _notification_log


def reset_notification_log() -> None:
    """Reset notification log (for testing)."""
    global _notification_log
    _notification_log = None


def _raise_http(error: SessionError) -> NoReturn:
    """Translate a session error into an HTTP error."""
    if isinstance(error, (NotConnectedError, NotAuthenticatedError)):
        raise HTTPException(status_code=409, detail=str(error)) from error
    if isinstance(error, TransportError):
        raise HTTPException(status_code=502, detail=str(error)) from error
    raise HTTPException(status_code=400, detail=str(error)) from error


# =============================================================================
# Request/Response Models
# =============================================================================


class SubscriptionEntry(BaseModel):
    """Registered subscription as exposed by the API."""

    token: str
    type: StreamKind


class StatusResponse(BaseModel):
    """Session status response."""

    connection_status: str
    auth_status: str
    logged_in: bool
    auto_login_pending: bool
    ws_url: str
    subscriptions: list[SubscriptionEntry]
    market_symbols: list[str]


class CommandResponse(BaseModel):
    """Outcome of a session command."""

    ok: bool = True
    message: str = ""


class SubscribeRequest(BaseModel):
    """Request to subscribe tokens."""

    tokens: str | list[str] = Field(
        ...,
        description="Comma-delimited string or list of tokens",
    )
    kind: StreamKind = Field(
        default=StreamKind.LTPINFO,
        description="Stream kind: ltpinfo or marketPicture",
    )


class SubscribeResponse(BaseModel):
    """Response from subscribe operation."""

    ok: bool = True
    subscribed: list[str] = Field(default_factory=list)
    kind: StreamKind
    message: str = ""


class UnsubscribeRequest(BaseModel):
    """Request to unsubscribe one token."""

    token: str = Field(..., min_length=1, description="Token to unsubscribe")
    kind: StreamKind = Field(default=StreamKind.LTPINFO, description="Stream kind")


class UnsubscribeResponse(BaseModel):
    """Response from unsubscribe operation."""

    ok: bool = True
    token: str
    kind: StreamKind
    removed: bool
    message: str = ""


class SubscriptionsResponse(BaseModel):
    """Registered subscriptions."""

    subscriptions: list[SubscriptionEntry]
    count: int


class MarketResponse(BaseModel):
    """Latest market records."""

    records: dict[str, dict[str, Any]]
    count: int


class LogResponse(BaseModel):
    """Notification history."""

    entries: list[Notification]
    count: int


def _entries(manager: SessionManager, kind: StreamKind | None = None) -> list[SubscriptionEntry]:
    return [
        SubscriptionEntry(token=key.token, type=key.kind)
        for key in manager.subscriptions(kind)
    ]


# =============================================================================
# Routes
# =============================================================================


@router.get("/status", response_model=StatusResponse)
async def get_status(
    manager: SessionManager = Depends(get_session_manager),
) -> StatusResponse:
    """Get connection/auth status and subscriptions."""
    snapshot = manager.snapshot()
    return StatusResponse(
        connection_status=snapshot.connection_status.value,
        auth_status=snapshot.auth_status.value,
        logged_in=snapshot.logged_in,
        auto_login_pending=snapshot.auto_login_pending,
        ws_url=manager.ws_url,
        subscriptions=_entries(manager),
        market_symbols=snapshot.market_symbols,
    )


@router.post("/connect", response_model=CommandResponse)
async def connect(
    manager: SessionManager = Depends(get_session_manager),
) -> CommandResponse:
    """
    Open the streaming connection.

    Returns immediately; the connected status follows the open event.
    """
    started = await manager.connect()
    if not started:
        return CommandResponse(
            ok=False,
            message=f"Not started (status: {manager.connection_status.value})",
        )
    return CommandResponse(message="Connecting")


@router.post("/disconnect", response_model=CommandResponse)
async def disconnect(
    manager: SessionManager = Depends(get_session_manager),
) -> CommandResponse:
    """Close the connection and clear subscriptions, market data and saved intent."""
    await manager.disconnect()
    return CommandResponse(message="Disconnected")


@router.get("/credentials")
async def get_credentials(
    manager: SessionManager = Depends(get_session_manager),
) -> dict[str, str]:
    """Get current credentials (session and device ids redacted)."""
    return manager.credentials.redacted()


@router.put("/credentials", response_model=CommandResponse)
async def update_credentials(
    credentials: Credentials,
    manager: SessionManager = Depends(get_session_manager),
) -> CommandResponse:
    """Replace and persist the credentials used by subsequent requests."""
    manager.set_credentials(credentials)
    return CommandResponse(message="Credentials updated")


@router.post("/login", response_model=CommandResponse)
async def login(
    manager: SessionManager = Depends(get_session_manager),
) -> CommandResponse:
    """
    Send the login request.

    The session is logged in only once the server confirms.
    """
    try:
        sent = await manager.login()
    except SessionError as e:
        _raise_http(e)

    if not sent:
        return CommandResponse(ok=False, message="Already logged in")
    return CommandResponse(message="Login request sent")


@router.post("/logout", response_model=CommandResponse)
async def logout(
    manager: SessionManager = Depends(get_session_manager),
) -> CommandResponse:
    """Log out and clear subscriptions and market data."""
    try:
        await manager.logout()
    except SessionError as e:
        _raise_http(e)
    return CommandResponse(message="Logged out")


@router.post("/subscribe", response_model=SubscribeResponse)
async def subscribe(
    request: SubscribeRequest,
    manager: SessionManager = Depends(get_session_manager),
) -> SubscribeResponse:
    """
    Subscribe tokens at the given granularity.

    Requires a logged-in session.
    """
    try:
        subscribed = await manager.subscribe(request.tokens, request.kind)
    except SessionError as e:
        _raise_http(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    if not subscribed:
        return SubscribeResponse(
            ok=False,
            kind=request.kind,
            message="No tokens given",
        )

    return SubscribeResponse(
        subscribed=subscribed,
        kind=request.kind,
        message=f"Subscribed to {len(subscribed)} tokens",
    )


@router.post("/unsubscribe", response_model=UnsubscribeResponse)
async def unsubscribe(
    request: UnsubscribeRequest,
    manager: SessionManager = Depends(get_session_manager),
) -> UnsubscribeResponse:
    """Unsubscribe one token and drop its market record."""
    try:
        removed = await manager.unsubscribe(request.token, request.kind)
    except SessionError as e:
        _raise_http(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    return UnsubscribeResponse(
        token=request.token.strip(),
        kind=request.kind,
        removed=removed,
        message="Unsubscribed" if removed else "Token was not subscribed",
    )


@router.get("/subscriptions", response_model=SubscriptionsResponse)
async def list_subscriptions(
    kind: StreamKind | None = Query(None, description="Filter by stream kind"),
    manager: SessionManager = Depends(get_session_manager),
) -> SubscriptionsResponse:
    """List registered subscriptions in subscription order."""
    entries = _entries(manager, kind)
    return SubscriptionsResponse(subscriptions=entries, count=len(entries))


@router.get("/market", response_model=MarketResponse)
async def get_market(
    kind: StreamKind | None = Query(
        None,
        description="Only symbols subscribed with this stream kind",
    ),
    manager: SessionManager = Depends(get_session_manager),
) -> MarketResponse:
    """Get the latest record per symbol."""
    records = manager.market_data()

    if kind is not None:
        wanted = {key.token for key in manager.subscriptions(kind)}
        records = {symbol: record for symbol, record in records.items() if symbol in wanted}

    payload = {symbol: record.to_payload() for symbol, record in records.items()}
    return MarketResponse(records=payload, count=len(payload))


@router.get("/log", response_model=LogResponse)
async def get_log(
    limit: int = Query(100, ge=1, le=10000, description="Most recent entries to return"),
    kind: NotificationKind | None = Query(None, description="Filter by notification kind"),
    log: NotificationLog = Depends(get_notification_log),
) -> LogResponse:
    """Get recent notifications, oldest first."""
    entries = log.entries()
    if kind is not None:
        entries = [entry for entry in entries if entry.kind == kind]
    entries = entries[-limit:]
    return LogResponse(entries=entries, count=len(entries))
