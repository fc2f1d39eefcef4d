"""
Shared session fixtures: an in-memory transport, a recording event bus and
a SessionManager wired to both.
"""

import json
from pathlib import Path
from typing import Any

import pytest

from mdt_engine.config import Settings
from mdt_engine.persistence.store import InMemoryKeyValueStore, SessionStateStore
from mdt_engine.runtime.event_bus import Event, EventBus, EventType
from mdt_engine.session.errors import TransportError
from mdt_engine.session.manager import SessionManager
from mdt_engine.session.transport import TransportListener


class FakeTransport:
    """
    In-memory transport.

    open() only records the call; tests drive lifecycle events explicitly
    with the simulate_* helpers.
    """

    def __init__(self, url: str, listener: TransportListener) -> None:
        self.url = url
        self.listener = listener
        self.sent: list[str] = []
        self.opened = False
        self.closed = False
        self.fail_open: TransportError | None = None
        self.fail_send: TransportError | None = None
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self) -> None:
        if self.fail_open is not None:
            raise self.fail_open
        self.opened = True

    async def send(self, text: str) -> None:
        if self.fail_send is not None:
            raise self.fail_send
        self.sent.append(text)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._open = False
        await self.listener.on_close()

    # Simulated server side

    async def simulate_open(self) -> None:
        self._open = True
        await self.listener.on_open()

    async def simulate_message(self, payload: dict[str, Any] | str) -> None:
        text = payload if isinstance(payload, str) else json.dumps(payload)
        await self.listener.on_message(text)

    async def simulate_login_confirmation(self) -> None:
        await self.simulate_message(
            {"response": {"svcName": "Broadcast", "streamingType": "login"}}
        )

    async def simulate_error(self, message: str = "boom") -> None:
        await self.listener.on_error(TransportError(message))

    async def simulate_close(self) -> None:
        self._open = False
        self.closed = True
        await self.listener.on_close()

    def requests(self) -> list[dict[str, Any]]:
        """Decoded ``request`` objects of every sent frame."""
        return [json.loads(text)["request"] for text in self.sent]

    def clear_sent(self) -> None:
        self.sent.clear()


class FakeTransportFactory:
    """Transport factory remembering every transport it built."""

    def __init__(self) -> None:
        self.transports: list[FakeTransport] = []
        self.open_error: TransportError | None = None

    def __call__(self, url: str, listener: TransportListener) -> FakeTransport:
        transport = FakeTransport(url, listener)
        transport.fail_open = self.open_error
        self.transports.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.transports[-1]


class RecordingEventBus(EventBus):
    """Event bus that keeps every published event."""

    def __init__(self) -> None:
        super().__init__()
        self.events: list[Event] = []

    async def publish(self, event: Event) -> None:
        self.events.append(event)
        await super().publish(event)

    def of_type(self, event_type: EventType) -> list[Event]:
        return [event for event in self.events if event.type == event_type]

    def notifications(self, kind: str | None = None) -> list[dict[str, Any]]:
        entries = [event.data for event in self.of_type(EventType.NOTIFICATION)]
        if kind is not None:
            entries = [entry for entry in entries if entry["kind"] == kind]
        return entries


def make_settings(data_dir: Path, **overrides: Any) -> Settings:
    """Settings for tests, isolated from any local .env file."""
    values: dict[str, Any] = {
        "data_dir": data_dir,
        "auto_login_delay_ms": 10,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


async def open_session(manager: SessionManager, factory: FakeTransportFactory) -> FakeTransport:
    """Connect and simulate the transport opening."""
    await manager.connect()
    transport = factory.last
    await transport.simulate_open()
    return transport


async def login_session(manager: SessionManager, factory: FakeTransportFactory) -> FakeTransport:
    """Connect, log in and confirm, leaving an empty sent log."""
    transport = await open_session(manager, factory)
    await manager.login()
    await transport.simulate_login_confirmation()
    transport.clear_sent()
    return transport


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def kv_store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def state_store(kv_store: InMemoryKeyValueStore) -> SessionStateStore:
    return SessionStateStore(kv_store)


@pytest.fixture
def transport_factory() -> FakeTransportFactory:
    return FakeTransportFactory()


@pytest.fixture
def event_bus() -> RecordingEventBus:
    return RecordingEventBus()


@pytest.fixture
def manager(
    settings: Settings,
    state_store: SessionStateStore,
    transport_factory: FakeTransportFactory,
    event_bus: RecordingEventBus,
) -> SessionManager:
    return SessionManager(
        settings=settings,
        state_store=state_store,
        transport_factory=transport_factory,
        event_bus=event_bus,
    )
