import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketState

from caller.app import CallerApp, WebSocketHub
from caller.errors import CallError, MediaAcquisitionError
from caller.signaling_client import TransportConnectionState
from caller.states import CallState, Role
from fakes import DummyEngineFactory, DummyMedia, DummyTransport


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def _app() -> tuple[CallerApp, DummyTransport, DummyMedia]:
    transport = DummyTransport()
    media = DummyMedia()
    app = CallerApp("ws://relay.test", media=media, transport=transport, engine_factory=DummyEngineFactory())
    return app, transport, media


@pytest.mark.anyio
async def test_control_message_starts_a_call() -> None:
    app, transport, _ = _app()
    await app._handle_ui_message({"type": "create_room", "roomId": "room42"})

    assert app.session is not None
    assert app.session.role == Role.INITIATOR
    assert app.session.state == CallState.JOINING_ROOM
    assert transport.sent_types() == ["join-room"]
    status = app._session_status()
    assert status["type"] == "session_status"
    assert status["payload"]["roomId"] == "room42"


@pytest.mark.anyio
async def test_only_one_call_at_a_time() -> None:
    app, _, _ = _app()
    await app.start_call("room42", Role.RESPONDER)
    with pytest.raises(CallError):
        await app.start_call("room43", Role.INITIATOR)

    await app._handle_ui_message({"type": "create_room", "roomId": "room43"})
    assert app.session.room_id == "room42"


@pytest.mark.anyio
async def test_new_call_allowed_after_hangup() -> None:
    app, transport, media = _app()
    await app.start_call("room42", Role.INITIATOR)
    await app._handle_ui_message({"type": "end_call"})
    assert app.session.state == CallState.ENDED
    assert len(media.released) == 2

    await app._handle_ui_message({"type": "join_room", "roomId": "room43"})
    assert app.session.room_id == "room43"
    assert app.session.role == Role.RESPONDER


@pytest.mark.anyio
async def test_blank_room_is_reported_not_raised() -> None:
    app, transport, _ = _app()
    await app._handle_ui_message({"type": "create_room", "roomId": "  "})
    assert app.session is None
    assert transport.sent == []
    assert app._session_status(message="Room ID must not be empty")["payload"] == {
        "state": "idle",
        "message": "Room ID must not be empty",
    }


@pytest.mark.anyio
async def test_transport_status_reflects_connection_state() -> None:
    app, transport, _ = _app()
    await transport.set_state(TransportConnectionState.DISCONNECTED)
    assert app._transport_status() == {
        "type": "transport_status",
        "payload": {"state": "disconnected", "relay_url": "ws://relay.test"},
    }


def test_http_routes_report_config_and_session() -> None:
    app, _, _ = _app()
    client = TestClient(app.app)

    config = client.get("/config").json()
    assert config["relay_url"] == "ws://relay.test"
    assert config["transport_state"] == "open"
    assert config["ice_servers"]

    assert client.get("/session").json() == {"state": "idle"}


def test_control_socket_starts_call_and_broadcasts_status() -> None:
    app, transport, _ = _app()
    client = TestClient(app.app)

    with client.websocket_connect("/ws/control") as ws:
        assert ws.receive_json()["type"] == "transport_status"
        assert ws.receive_json() == {"type": "session_status", "payload": {"state": "idle"}}

        ws.send_json({"type": "create_room", "roomId": "room42"})
        states = []
        while "joining_room" not in states:
            message = ws.receive_json()
            assert message["type"] == "session_status"
            states.append(message["payload"]["state"])

    assert states == ["awaiting_media", "joining_room"]
    assert transport.sent_types() == ["join-room"]
    assert client.get("/session").json()["roomId"] == "room42"


@pytest.mark.anyio
async def test_missing_capture_backend_is_reported(monkeypatch) -> None:
    import builtins

    real_import = builtins.__import__

    def fake_import(name, *args, **kwargs):
        if name == "devices" or name.endswith(".devices"):
            raise OSError("PortAudio library not found")
        return real_import(name, *args, **kwargs)

    transport = DummyTransport()
    app = CallerApp("ws://relay.test", transport=transport, engine_factory=DummyEngineFactory())
    monkeypatch.setattr(builtins, "__import__", fake_import)

    with pytest.raises(MediaAcquisitionError):
        await app.start_call("room42", Role.INITIATOR)

    await app._handle_ui_message({"type": "create_room", "roomId": "room42"})
    assert app.session is None
    assert transport.sent == []


class DummyControlSocket:
    def __init__(self, *, fail: bool = False, state: WebSocketState = WebSocketState.CONNECTED) -> None:
        self.fail = fail
        self.application_state = state
        self.sent: list = []

    async def accept(self) -> None:
        pass

    async def send_json(self, message) -> None:
        if self.fail:
            raise RuntimeError("socket write failed")
        self.sent.append(message)


@pytest.mark.anyio
async def test_hub_drops_sockets_that_fail_or_went_away() -> None:
    hub = WebSocketHub()
    healthy = DummyControlSocket()
    broken = DummyControlSocket(fail=True)
    gone = DummyControlSocket(state=WebSocketState.DISCONNECTED)
    for ws in (healthy, broken, gone):
        await hub.connect(ws)
    assert len(hub) == 3

    await hub.broadcast({"type": "session_status", "payload": {"state": "idle"}})
    await hub.broadcast({"type": "transport_status", "payload": {"state": "open"}})

    assert len(hub) == 1
    assert [message["type"] for message in healthy.sent] == ["session_status", "transport_status"]
    assert gone.sent == []
