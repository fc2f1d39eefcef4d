"""
Tests for the websockets-backed transport.

The websockets client is replaced by in-memory fakes; no sockets are opened.
"""

import asyncio
from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest
from websockets.exceptions import ConnectionClosedError

from mdt_engine.session import transport as transport_module
from mdt_engine.session.errors import TransportError
from mdt_engine.session.transport import WebSocketTransport, websocket_transport_factory


class FakeWebSocket:
    """Stand-in for a websockets ClientConnection."""

    def __init__(
        self,
        messages: list[str | bytes] | None = None,
        end_error: Exception | None = None,
        hold_open: bool = False,
    ) -> None:
        self._messages = list(messages or [])
        self._end_error = end_error
        self._hold_open = hold_open
        self._closed_event = asyncio.Event()
        self.sent: list[str] = []
        self.send_error: Exception | None = None
        self.closed = False

    async def send(self, text: str) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(text)

    async def close(self) -> None:
        self.closed = True
        self._closed_event.set()

    def __aiter__(self) -> AsyncIterator[str | bytes]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[str | bytes]:
        for message in self._messages:
            yield message
        if self._end_error is not None:
            raise self._end_error
        if self._hold_open:
            await self._closed_event.wait()


class FakeConnect:
    """Async context manager returned by the patched ``connect``."""

    def __init__(
        self,
        websocket: FakeWebSocket | None = None,
        error: Exception | None = None,
        hang: bool = False,
    ) -> None:
        self._websocket = websocket
        self._error = error
        self._hang = hang

    async def __aenter__(self) -> FakeWebSocket:
        if self._hang:
            await asyncio.Event().wait()
        if self._error is not None:
            raise self._error
        assert self._websocket is not None
        return self._websocket

    async def __aexit__(self, *exc_info: Any) -> None:
        return None


class RecordingListener:
    """Listener collecting transport events in order."""

    def __init__(self) -> None:
        self.events: list[tuple[str, Any]] = []

    async def on_open(self) -> None:
        self.events.append(("open", None))

    async def on_message(self, payload: str) -> None:
        self.events.append(("message", payload))

    async def on_error(self, error: TransportError) -> None:
        self.events.append(("error", str(error)))

    async def on_close(self) -> None:
        self.events.append(("close", None))

    def kinds(self) -> list[str]:
        return [kind for kind, _ in self.events]


def patch_connect(monkeypatch: pytest.MonkeyPatch, fake: FakeConnect) -> list[dict[str, Any]]:
    calls: list[dict[str, Any]] = []

    def fake_connect(url: str, **kwargs: Any) -> FakeConnect:
        calls.append({"url": url, **kwargs})
        return fake

    monkeypatch.setattr(transport_module, "connect", fake_connect)
    return calls


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.001)


async def finish(transport: WebSocketTransport) -> None:
    task = transport._reader_task
    assert task is not None
    await asyncio.wait_for(task, timeout=1.0)


class TestWebSocketTransportEvents:
    """Tests for lifecycle event delivery."""

    @pytest.mark.asyncio
    async def test_open_messages_close_in_order(self, monkeypatch: pytest.MonkeyPatch) -> None:
        websocket = FakeWebSocket(messages=["one", b"two"])
        calls = patch_connect(monkeypatch, FakeConnect(websocket))
        listener = RecordingListener()
        transport = WebSocketTransport("ws://venue/ws", listener, open_timeout_s=3.0, ping_interval_s=None)

        await transport.open()
        await finish(transport)

        assert listener.events == [
            ("open", None),
            ("message", "one"),
            ("message", "two"),
            ("close", None),
        ]
        assert calls == [{"url": "ws://venue/ws", "open_timeout": 3.0, "ping_interval": None}]
        assert transport.is_open is False

    @pytest.mark.asyncio
    async def test_abnormal_close_reports_error(self, monkeypatch: pytest.MonkeyPatch) -> None:
        websocket = FakeWebSocket(messages=["one"], end_error=ConnectionClosedError(None, None))
        patch_connect(monkeypatch, FakeConnect(websocket))
        listener = RecordingListener()
        transport = WebSocketTransport("ws://venue/ws", listener)

        await transport.open()
        await finish(transport)

        assert listener.kinds() == ["open", "message", "error", "close"]

    @pytest.mark.asyncio
    async def test_listener_failure_keeps_stream(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """A handler error on one frame does not stop delivery of the next."""

        class FailingListener(RecordingListener):
            async def on_message(self, payload: str) -> None:
                if payload == "bad":
                    raise OverflowError("int too large to convert to float")
                await super().on_message(payload)

        websocket = FakeWebSocket(messages=["bad", "good"], hold_open=True)
        patch_connect(monkeypatch, FakeConnect(websocket))
        listener = FailingListener()
        transport = WebSocketTransport("ws://venue/ws", listener)

        await transport.open()
        await wait_until(lambda: ("message", "good") in listener.events)

        assert transport.is_open is True
        await transport.close()
        assert listener.kinds() == ["open", "message", "close"]

    @pytest.mark.asyncio
    async def test_connect_failure_reports_error_and_close(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        patch_connect(monkeypatch, FakeConnect(error=ConnectionRefusedError("refused")))
        listener = RecordingListener()
        transport = WebSocketTransport("ws://venue/ws", listener)

        await transport.open()
        await finish(transport)

        assert listener.kinds() == ["error", "close"]
        assert "refused" in listener.events[0][1]

    @pytest.mark.asyncio
    async def test_open_twice_starts_one_reader(self, monkeypatch: pytest.MonkeyPatch) -> None:
        calls = patch_connect(monkeypatch, FakeConnect(FakeWebSocket()))
        transport = WebSocketTransport("ws://venue/ws", RecordingListener())

        await transport.open()
        await transport.open()
        await finish(transport)

        assert len(calls) == 1


class TestWebSocketTransportSendClose:
    """Tests for sending and closing."""

    @pytest.mark.asyncio
    async def test_send_while_open(self, monkeypatch: pytest.MonkeyPatch) -> None:
        websocket = FakeWebSocket(hold_open=True)
        patch_connect(monkeypatch, FakeConnect(websocket))
        listener = RecordingListener()
        transport = WebSocketTransport("ws://venue/ws", listener)

        await transport.open()
        await wait_until(lambda: transport.is_open)
        await transport.send('{"request":{}}')
        await transport.close()

        assert websocket.sent == ['{"request":{}}']

    @pytest.mark.asyncio
    async def test_send_before_open_raises(self) -> None:
        transport = WebSocketTransport("ws://venue/ws", RecordingListener())

        with pytest.raises(TransportError):
            await transport.send("x")

    @pytest.mark.asyncio
    async def test_send_failure_wrapped(self, monkeypatch: pytest.MonkeyPatch) -> None:
        websocket = FakeWebSocket(hold_open=True)
        websocket.send_error = ConnectionClosedError(None, None)
        patch_connect(monkeypatch, FakeConnect(websocket))
        transport = WebSocketTransport("ws://venue/ws", RecordingListener())

        await transport.open()
        await wait_until(lambda: transport.is_open)

        with pytest.raises(TransportError):
            await transport.send("x")
        await transport.close()

    @pytest.mark.asyncio
    async def test_close_is_clean(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Operator close yields a close event and no error."""
        websocket = FakeWebSocket(hold_open=True)
        patch_connect(monkeypatch, FakeConnect(websocket))
        listener = RecordingListener()
        transport = WebSocketTransport("ws://venue/ws", listener)

        await transport.open()
        await wait_until(lambda: transport.is_open)
        await transport.close()

        assert websocket.closed is True
        assert listener.kinds() == ["open", "close"]
        assert transport.is_open is False

    @pytest.mark.asyncio
    async def test_close_during_handshake(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Closing before the socket opens cancels the attempt and still reports close."""
        patch_connect(monkeypatch, FakeConnect(hang=True))
        listener = RecordingListener()
        transport = WebSocketTransport("ws://venue/ws", listener)

        await transport.open()
        await asyncio.sleep(0.01)
        await asyncio.wait_for(transport.close(), timeout=1.0)

        assert listener.kinds() == ["close"]

    @pytest.mark.asyncio
    async def test_close_without_open(self) -> None:
        listener = RecordingListener()
        transport = WebSocketTransport("ws://venue/ws", listener)

        await transport.close()

        assert listener.events == []


class TestTransportFactory:
    """Tests for the transport factory."""

    def test_factory_builds_configured_transport(self) -> None:
        factory = websocket_transport_factory(open_timeout_s=2.0, ping_interval_s=5.0)

        transport = factory("wss://venue/ws", RecordingListener())

        assert isinstance(transport, WebSocketTransport)
        assert transport.url == "wss://venue/ws"
        assert transport._open_timeout_s == 2.0
        assert transport._ping_interval_s == 5.0
