import asyncio
import json

import pytest

from caller import signaling_client
from caller.errors import TransportError, TransportNotReady
from caller.reconnect import ReconnectionPolicy
from caller.signaling_client import SignalingTransport, TransportConnectionState
from fakes import wait_until
from signaling.protocol import MessageType, SignalingMessage


class DummySocket:
    def __init__(self) -> None:
        self.sent: list[str] = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send(self, text: str) -> None:
        self.sent.append(text)

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(None)

    def feed(self, text: str) -> None:
        self._incoming.put_nowait(text)

    def drop(self) -> None:
        self._incoming.put_nowait(None)

    def __aiter__(self) -> "DummySocket":
        return self

    async def __anext__(self) -> str:
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item


class DummyRelay:
    """Stands in for ``websockets.connect``; fails the first ``failures`` attempts."""

    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.attempts: list[str] = []
        self.sockets: list[DummySocket] = []

    async def __call__(self, url: str, open_timeout: float = 10.0) -> DummySocket:
        self.attempts.append(url)
        if self.failures > 0:
            self.failures -= 1
            raise OSError("connection refused")
        socket = DummySocket()
        self.sockets.append(socket)
        return socket


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def _transport() -> SignalingTransport:
    return SignalingTransport("ws://relay.test", policy=ReconnectionPolicy(base_delay=0.01, max_delay=0.01))


@pytest.mark.anyio
async def test_messages_are_dispatched_in_order_and_bad_frames_skipped(monkeypatch) -> None:
    relay = DummyRelay()
    monkeypatch.setattr(signaling_client, "connect", relay)
    transport = _transport()
    received = []
    transport.on_message(received.append)
    await transport.connect()
    assert transport.state == TransportConnectionState.OPEN

    socket = relay.sockets[0]
    socket.feed('{"type":"room-joined","roomId":"room42","occupants":1}')
    socket.feed("{not json")
    socket.feed('{"type":"user-joined","roomId":"room42"}')
    await wait_until(lambda: len(received) == 2)

    assert [message.type for message in received] == [MessageType.ROOM_JOINED, MessageType.USER_JOINED]
    await transport.close()


@pytest.mark.anyio
async def test_send_encodes_json_and_requires_open_transport(monkeypatch) -> None:
    relay = DummyRelay()
    monkeypatch.setattr(signaling_client, "connect", relay)
    transport = _transport()

    with pytest.raises(TransportNotReady):
        await transport.send(SignalingMessage.join_room("room42"))

    await transport.connect()
    await transport.send(SignalingMessage.join_room("room42"))
    assert json.loads(relay.sockets[0].sent[0]) == {"type": "join-room", "roomId": "room42"}
    await transport.close()


@pytest.mark.anyio
async def test_dropped_connection_reconnects_exactly_once(monkeypatch) -> None:
    relay = DummyRelay()
    monkeypatch.setattr(signaling_client, "connect", relay)
    transport = _transport()
    states = []
    transport.on_state_change(states.append)
    await transport.connect()

    relay.sockets[0].drop()
    await wait_until(lambda: len(relay.attempts) == 2 and transport.state == TransportConnectionState.OPEN)
    await asyncio.sleep(0.05)

    assert len(relay.attempts) == 2
    assert states == [
        TransportConnectionState.CONNECTING,
        TransportConnectionState.OPEN,
        TransportConnectionState.DISCONNECTED,
        TransportConnectionState.CONNECTING,
        TransportConnectionState.OPEN,
    ]
    assert transport.policy.attempts == 0
    await transport.close()


@pytest.mark.anyio
async def test_failed_connect_raises_and_keeps_retrying(monkeypatch) -> None:
    relay = DummyRelay(failures=2)
    monkeypatch.setattr(signaling_client, "connect", relay)
    transport = _transport()

    with pytest.raises(TransportError):
        await transport.connect()
    assert transport.state == TransportConnectionState.DISCONNECTED

    await wait_until(lambda: transport.state == TransportConnectionState.OPEN)
    assert len(relay.attempts) == 3
    await transport.close()


@pytest.mark.anyio
async def test_connect_is_idempotent_while_open(monkeypatch) -> None:
    relay = DummyRelay()
    monkeypatch.setattr(signaling_client, "connect", relay)
    transport = _transport()
    await transport.connect()
    await transport.connect()
    assert len(relay.attempts) == 1
    await transport.close()


@pytest.mark.anyio
async def test_close_does_not_reconnect(monkeypatch) -> None:
    relay = DummyRelay()
    monkeypatch.setattr(signaling_client, "connect", relay)
    transport = _transport()
    await transport.connect()
    await transport.close()
    await asyncio.sleep(0.05)

    assert transport.state == TransportConnectionState.DISCONNECTED
    assert relay.sockets[0].closed is True
    assert len(relay.attempts) == 1
    assert transport.policy.pending is False


@pytest.mark.anyio
async def test_failing_handler_does_not_stop_dispatch(monkeypatch) -> None:
    relay = DummyRelay()
    monkeypatch.setattr(signaling_client, "connect", relay)
    transport = _transport()
    received = []

    def broken(message: SignalingMessage) -> None:
        raise RuntimeError("handler bug")

    transport.on_message(broken)
    transport.on_message(received.append)
    await transport.connect()
    relay.sockets[0].feed('{"type":"user-left","roomId":"room42"}')
    await wait_until(lambda: len(received) == 1)
    await transport.close()


@pytest.mark.anyio
async def test_reconnect_waits_for_the_configured_delay(monkeypatch) -> None:
    relay = DummyRelay()
    monkeypatch.setattr(signaling_client, "connect", relay)
    transport = SignalingTransport(
        "ws://relay.test", policy=ReconnectionPolicy(base_delay=0.3, max_delay=0.3, multiplier=1.0)
    )
    await transport.connect()

    relay.sockets[0].drop()
    await wait_until(lambda: transport.state == TransportConnectionState.DISCONNECTED)
    await asyncio.sleep(0.1)
    assert len(relay.attempts) == 1
    assert transport.policy.pending is True

    await wait_until(lambda: transport.state == TransportConnectionState.OPEN)
    assert len(relay.attempts) == 2
    await transport.close()
