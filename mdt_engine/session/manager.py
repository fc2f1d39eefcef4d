"""
Session & subscription manager.

Owns the connection and authentication statuses of a single streaming
session and drives every transition, from operator commands (connect,
disconnect, login, logout, subscribe, unsubscribe) and from transport events
(open, message, error, close).

Authentication is only ever confirmed by the server: sending the login
request changes nothing locally. Once confirmed, every registered
subscription is replayed so subscriptions survive a reconnect-and-relogin
cycle without operator action. There is no automatic reconnection.
"""

import asyncio
import json
from collections.abc import Iterable
from typing import Any

from mdt_engine.config import Settings
from mdt_engine.logging import (
    clear_connection_id,
    get_logger,
    redact_sensitive,
    set_connection_id,
)
from mdt_engine.market_data.models import MarketRecord
from mdt_engine.market_data.store import MarketDataStore
from mdt_engine.persistence.store import SessionStateStore
from mdt_engine.runtime.event_bus import Event, EventBus, EventType, get_event_bus
from mdt_engine.session.codec import (
    build_login_request,
    build_logout_request,
    build_subscribe_request,
    build_unsubscribe_request,
    decode_frame,
    encode_request,
    extract_market_data,
    is_login_confirmation,
)
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
from mdt_engine.session.registry import SubscriptionRegistry, split_tokens
from mdt_engine.session.transport import (
    Transport,
    TransportFactory,
    websocket_transport_factory,
)

logger = get_logger(__name__)


class _ConnectionListener:
    """
    Routes events of one transport back to the session.

    Each connect() gets a fresh listener so late events from a replaced
    transport can be recognised and dropped.
    """

    def __init__(self, session: "SessionManager", connection_id: str) -> None:
        self._session = session
        self.connection_id = connection_id

    async def on_open(self) -> None:
        await self._session._handle_open(self)

    async def on_message(self, payload: str) -> None:
        await self._session._handle_message(self, payload)

    async def on_error(self, error: TransportError) -> None:
        await self._session._handle_error(self, error)

    async def on_close(self) -> None:
        await self._session._handle_close(self)


class SessionManager:
    """
    Single owned streaming session.

    Lifecycle: construct, restore(), connect(), ..., disconnect() or
    dispose(). All mutation happens on the event loop, one command or
    transport event at a time.
    """

    def __init__(
        self,
        settings: Settings,
        state_store: SessionStateStore,
        transport_factory: TransportFactory | None = None,
        event_bus: EventBus | None = None,
    ):
        """
        Initialize session.

        Args:
            settings: Application settings (endpoint, auto-login delay, defaults)
            state_store: Persisted session state
            transport_factory: Builds the transport for each connect()
                               (defaults to the websockets transport)
            event_bus: Bus receiving state changes and notifications
                       (defaults to the global bus)
        """
        self._settings = settings
        self._state_store = state_store
        self._transport_factory = transport_factory or websocket_transport_factory(
            open_timeout_s=settings.ws_open_timeout_s,
            ping_interval_s=settings.ws_ping_interval_s,
        )
        self._event_bus = event_bus or get_event_bus()

        self._connection_status = ConnectionStatus.DISCONNECTED
        self._auth_status = AuthStatus.LOGGED_OUT
        self._credentials = Credentials(
            gscid=settings.default_gscid,
            gcid=settings.default_gcid,
            session_id=settings.default_session_id.get_secret_value(),
            device_id=settings.default_device_id,
        )
        self._login_flag = False

        self._registry = SubscriptionRegistry()
        self._store = MarketDataStore()

        self._transport: Transport | None = None
        self._listener: _ConnectionListener | None = None
        self._connection_seq = 0
        self._auto_login_task: asyncio.Task[None] | None = None

    # -------------------------------------------------------------------------
    # Observable state
    # -------------------------------------------------------------------------

    @property
    def connection_status(self) -> ConnectionStatus:
        return self._connection_status

    @property
    def auth_status(self) -> AuthStatus:
        return self._auth_status

    @property
    def is_logged_in(self) -> bool:
        return self._auth_status == AuthStatus.LOGGED_IN

    @property
    def is_connected(self) -> bool:
        """True while the status is connected and the transport is open."""
        return self._connection_status == ConnectionStatus.CONNECTED and self._transport_open

    @property
    def credentials(self) -> Credentials:
        return self._credentials

    @property
    def ws_url(self) -> str:
        return self._settings.ws_url

    @property
    def auto_login_pending(self) -> bool:
        task = self._auto_login_task
        return task is not None and not task.done()

    @property
    def auto_login_task(self) -> asyncio.Task[None] | None:
        """The scheduled auto-login, if any (exposed for awaiting in tests)."""
        return self._auto_login_task

    @property
    def _transport_open(self) -> bool:
        return self._transport is not None and self._transport.is_open

    def subscriptions(self, kind: StreamKind | None = None) -> list[SubscriptionKey]:
        """Registered subscriptions, optionally of one kind."""
        if kind is None:
            return self._registry.entries()
        return self._registry.by_kind(kind)

    def market_data(self) -> dict[str, MarketRecord]:
        """Copy of the symbol -> record mapping."""
        return self._store.snapshot()

    def get_record(self, symbol: str) -> MarketRecord | None:
        record = self._store.get(symbol)
        return record.model_copy(deep=True) if record is not None else None

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            connection_status=self._connection_status,
            auth_status=self._auth_status,
            subscriptions=self._registry.entries(),
            market_symbols=self._store.symbols(),
            auto_login_pending=self.auto_login_pending,
        )

    # -------------------------------------------------------------------------
    # Startup state
    # -------------------------------------------------------------------------

    def restore(self) -> None:
        """Load credentials, subscriptions and the login flag from persistence."""
        credentials = self._state_store.load_credentials()
        if credentials is not None:
            self._credentials = credentials

        saved = self._state_store.load_subscriptions()
        if saved:
            self._registry.replace(saved)

        self._login_flag = self._state_store.load_login_flag()

        logger.info(
            "Session restored: %d subscriptions, was_logged_in=%s",
            len(self._registry),
            self._login_flag,
        )

    def should_auto_connect(self) -> bool:
        """True when the last run ended logged in with credentials and subscriptions saved."""
        return (
            self._login_flag
            and self._state_store.has_credentials()
            and self._state_store.load_subscriptions() is not None
        )

    def set_credentials(self, credentials: Credentials) -> None:
        """Replace the session credentials and persist them."""
        self._credentials = credentials
        self._state_store.save_credentials(credentials)
        logger.info("Credentials updated: %s", credentials.redacted())

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    async def connect(self) -> bool:
        """
        Open the transport.

        Returns:
            True if a connection attempt was started, False if already
            connecting or connected
        """
        if self._connection_status in (ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED):
            message = f"Already {self._connection_status.value}"
            logger.info(message)
            await self._notify(NotificationKind.INFO, message)
            return False

        # A transport left behind by an error is retired before a new one starts
        if self._transport is not None:
            await self._close_transport()

        self._connection_seq += 1
        connection_id = f"conn-{self._connection_seq}"
        set_connection_id(connection_id)

        listener = _ConnectionListener(self, connection_id)
        transport = self._transport_factory(self._settings.ws_url, listener)
        self._listener = listener
        self._transport = transport

        await self._set_connection_status(ConnectionStatus.CONNECTING)
        logger.info("Connecting to %s", self._settings.ws_url)

        try:
            await transport.open()
        except TransportError as e:
            await self._notify(NotificationKind.ERROR, f"Connection failed: {e}")
            await self._handle_error(listener, e)
            await self._handle_close(listener)
            return False

        return True

    async def disconnect(self) -> None:
        """
        Close the transport and reset the session.

        Auth status, subscriptions, market data and persisted intent are
        cleared immediately; the connection status follows the close event.
        """
        self._cancel_auto_login()
        await self._close_transport()
        await self._reset_session_state()
        logger.info("Disconnected by operator")

    async def login(self) -> bool:
        """
        Send the login request.

        The session only becomes logged in when the server confirms.

        Returns:
            True if the request was sent, False if already logged in

        Raises:
            NotConnectedError: If the transport is not connected
            TransportError: If the send fails
        """
        if not self.is_connected:
            await self._reject(NotConnectedError())

        if self.is_logged_in:
            await self._notify(NotificationKind.INFO, "Already logged in")
            return False

        await self._send(build_login_request(self._credentials))
        logger.info("Login request sent for gscid=%s", self._credentials.gscid)
        return True

    async def logout(self) -> None:
        """
        Send the logout request and reset the session locally.

        Raises:
            NotConnectedError: If the transport is not connected
            TransportError: If the send fails (local reset still happens)
        """
        if not self.is_connected:
            await self._reject(NotConnectedError())

        self._cancel_auto_login()
        try:
            await self._send(build_logout_request(self._credentials))
        finally:
            await self._reset_session_state()
        await self._notify(NotificationKind.INFO, "Logged out")
        logger.info("Logged out")

    async def subscribe(
        self,
        tokens: str | Iterable[str],
        kind: StreamKind | str,
    ) -> list[str]:
        """
        Subscribe to one or more tokens.

        One request is sent per token even if it is already registered; the
        registry itself keeps a single entry per (token, kind).

        Args:
            tokens: Comma-delimited string or list of tokens
            kind: ltpinfo or marketPicture

        Returns:
            Tokens a request was sent for

        Raises:
            ValueError: If kind is not a data stream kind
            NotAuthenticatedError: If the session is not logged in
            NotConnectedError: If the transport is not open
            TransportError: If a send fails
        """
        stream_kind = self._data_kind(kind)

        if not self.is_logged_in:
            await self._reject(NotAuthenticatedError())
        if not self._transport_open:
            await self._reject(NotConnectedError())

        parsed = split_tokens(tokens)
        if not parsed:
            return []

        for token in parsed:
            await self._send(build_subscribe_request(token, stream_kind, self._credentials))

        added = self._registry.add(SubscriptionKey(token=token, kind=stream_kind) for token in parsed)
        logger.info(
            "Subscribed %d tokens (%s), %d new",
            len(parsed),
            stream_kind.value,
            len(added),
        )
        await self._subscriptions_changed()
        return parsed

    async def unsubscribe(self, token: str, kind: StreamKind | str) -> bool:
        """
        Unsubscribe one token and drop its market record.

        Only an open transport is required; login is not.

        Returns:
            True if a registry entry was removed

        Raises:
            NotConnectedError: If the transport is not open
            TransportError: If the send fails
        """
        stream_kind = self._data_kind(kind)
        token = token.strip()

        if not self._transport_open:
            await self._reject(NotConnectedError())

        await self._send(build_unsubscribe_request(token, stream_kind, self._credentials))

        removed = self._registry.remove(token, stream_kind)
        if self._store.remove(token):
            await self._publish(EventType.MARKET_DATA_REMOVED, {"symbols": [token]})

        logger.info("Unsubscribed %s (%s)", token, stream_kind.value)
        await self._subscriptions_changed()
        return removed

    async def dispose(self) -> None:
        """Stop timers and close the transport, keeping persisted intent."""
        self._cancel_auto_login()
        await self._close_transport()
        logger.info("Session disposed")

    # -------------------------------------------------------------------------
    # Transport events
    # -------------------------------------------------------------------------

    def _is_current(self, listener: _ConnectionListener) -> bool:
        if listener is not self._listener:
            logger.debug("Dropping event from retired connection %s", listener.connection_id)
            return False
        return True

    async def _handle_open(self, listener: _ConnectionListener) -> None:
        if not self._is_current(listener):
            return

        await self._set_connection_status(ConnectionStatus.CONNECTED)
        await self._notify(NotificationKind.SUCCESS, "WebSocket connected")

        if self._login_flag or len(self._registry) > 0:
            self._schedule_auto_login()

    async def _handle_message(self, listener: _ConnectionListener, payload: str) -> None:
        if not self._is_current(listener):
            return

        try:
            frame = decode_frame(payload)
        except DecodeError as e:
            logger.debug("Opaque inbound frame: %s", e)
            await self._notify(NotificationKind.RECEIVED, payload)
            return

        logger.debug("Received %s", redact_sensitive(frame))
        await self._notify(
            NotificationKind.RECEIVED,
            json.dumps(redact_sensitive(frame), indent=2),
        )

        if is_login_confirmation(frame):
            await self._handle_login_confirmed()

        market = extract_market_data(frame)
        if market is not None:
            symbol, fields = market
            record = self._store.ingest(symbol, fields)
            await self._publish(
                EventType.MARKET_DATA_UPDATED,
                {"symbol": symbol, "record": record.to_payload()},
            )

    async def _handle_error(self, listener: _ConnectionListener, error: TransportError) -> None:
        if not self._is_current(listener):
            return

        logger.warning("Transport error: %s", error)
        await self._set_connection_status(ConnectionStatus.ERROR)
        await self._set_auth_status(AuthStatus.LOGGED_OUT)
        await self._notify(NotificationKind.ERROR, f"WebSocket error occurred: {error}")

    async def _handle_close(self, listener: _ConnectionListener) -> None:
        if not self._is_current(listener):
            return

        self._transport = None
        self._listener = None
        self._cancel_auto_login()

        await self._set_connection_status(ConnectionStatus.DISCONNECTED)
        await self._set_auth_status(AuthStatus.LOGGED_OUT)
        await self._notify(NotificationKind.INFO, "WebSocket disconnected")
        clear_connection_id()

    # -------------------------------------------------------------------------
    # Internal: Authentication & Replay
    # -------------------------------------------------------------------------

    async def _handle_login_confirmed(self) -> None:
        self._cancel_auto_login()
        await self._set_auth_status(AuthStatus.LOGGED_IN)

        self._login_flag = True
        self._state_store.save_login_flag(True)
        self._state_store.save_credentials(self._credentials)
        self._state_store.save_subscriptions(self._registry.entries())

        await self._notify(
            NotificationKind.SUCCESS,
            f"Login successful - resubscribing {len(self._registry)} tokens",
        )
        await self._replay_subscriptions()

    async def _replay_subscriptions(self) -> None:
        """Send one subscribe request per registered subscription, with its own kind."""
        for key in self._registry.entries():
            request = build_subscribe_request(key.token, key.kind, self._credentials)
            try:
                await self._send(
                    request,
                    description=f"Auto-subscribe: {key.token} ({key.kind.value})",
                )
            except SessionError as e:
                logger.warning("Replay stopped at %s: %s", key.token, e)
                return

    def _schedule_auto_login(self) -> None:
        self._cancel_auto_login()
        delay = self._settings.auto_login_delay_s
        logger.info("Auto-login scheduled in %.3fs", delay)
        self._auto_login_task = asyncio.create_task(self._auto_login(delay))

    async def _auto_login(self, delay: float) -> None:
        await asyncio.sleep(delay)

        if not self.is_connected or self.is_logged_in:
            logger.debug("Auto-login skipped (status=%s)", self._connection_status.value)
            return

        try:
            await self.login()
        except SessionError as e:
            logger.warning("Auto-login failed: %s", e)

    def _cancel_auto_login(self) -> None:
        task = self._auto_login_task
        self._auto_login_task = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        logger.debug("Auto-login cancelled")

    # -------------------------------------------------------------------------
    # Internal: Helpers
    # -------------------------------------------------------------------------

    async def _send(self, request: dict[str, Any], description: str | None = None) -> None:
        """
        Encode and send one request.

        Raises:
            NotConnectedError: If there is no open transport
            TransportError: If the transport fails (status becomes error)
        """
        transport = self._transport
        if transport is None or not transport.is_open:
            raise NotConnectedError()

        try:
            await transport.send(encode_request(request))
        except TransportError as e:
            logger.error("Send failed: %s", e)
            await self._set_connection_status(ConnectionStatus.ERROR)
            await self._set_auth_status(AuthStatus.LOGGED_OUT)
            await self._notify(NotificationKind.ERROR, f"Send failed: {e}")
            raise

        redacted = redact_sensitive(request)
        logger.debug("Sent %s", redacted)
        await self._notify(
            NotificationKind.SENT,
            description or json.dumps(redacted, indent=2),
        )

    async def _close_transport(self) -> None:
        transport, listener = self._transport, self._listener
        if transport is None or listener is None:
            return

        try:
            await transport.close()
        except TransportError as e:
            logger.warning("Transport close failed: %s", e)

        # The close event normally clears the transport
        if self._transport is transport:
            await self._handle_close(listener)

    async def _reset_session_state(self) -> None:
        await self._set_auth_status(AuthStatus.LOGGED_OUT)

        self._registry.clear()
        removed = self._store.symbols()
        self._store.clear()

        self._login_flag = False
        self._state_store.clear_subscriptions()
        self._state_store.clear_login_flag()

        await self._publish(EventType.SUBSCRIPTIONS_CHANGED, {"subscriptions": []})
        if removed:
            await self._publish(EventType.MARKET_DATA_REMOVED, {"symbols": removed})

    async def _subscriptions_changed(self) -> None:
        entries = self._registry.entries()
        self._state_store.save_subscriptions(entries)
        await self._publish(
            EventType.SUBSCRIPTIONS_CHANGED,
            {"subscriptions": [key.model_dump(by_alias=True, mode="json") for key in entries]},
        )

    async def _reject(self, error: SessionError) -> None:
        """Report a rejected command and raise it."""
        logger.warning("Command rejected: %s", error)
        await self._notify(NotificationKind.ERROR, str(error))
        raise error

    @staticmethod
    def _data_kind(kind: StreamKind | str) -> StreamKind:
        stream_kind = StreamKind(kind)
        if not stream_kind.is_data_kind:
            raise ValueError(f"{stream_kind.value} is not a subscribable stream kind")
        return stream_kind

    async def _set_connection_status(self, status: ConnectionStatus) -> None:
        if status == self._connection_status:
            return
        logger.info("Connection status: %s -> %s", self._connection_status.value, status.value)
        self._connection_status = status
        await self._publish(EventType.CONNECTION_STATUS_CHANGED, {"status": status.value})

    async def _set_auth_status(self, status: AuthStatus) -> None:
        if status == self._auth_status:
            return
        logger.info("Auth status: %s -> %s", self._auth_status.value, status.value)
        self._auth_status = status
        await self._publish(
            EventType.AUTH_STATUS_CHANGED,
            {"status": status.value, "logged_in": status == AuthStatus.LOGGED_IN},
        )

    async def _notify(self, kind: NotificationKind, content: str) -> None:
        notification = Notification(kind=kind, content=content)
        await self._publish(
            EventType.NOTIFICATION,
            notification.model_dump(mode="json"),
        )

    async def _publish(self, event_type: EventType, data: dict[str, Any]) -> None:
        await self._event_bus.publish(Event(type=event_type, data=data))
