from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Sequence

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from signaling.protocol import DEFAULT_RELAY_URL

from .engine import DEFAULT_ICE_SERVERS, AiortcEngine, EngineFactory, IceServer
from .errors import CallError, MediaAcquisitionError, TransportError
from .media import MediaCaptureProvider, MediaConstraints
from .session import Session, SessionStateMachine
from .signaling_client import SignalingTransport, TransportConnectionState
from .states import TERMINAL_STATES, Role

logger = logging.getLogger(__name__)


class WebSocketHub:
    """Control sockets that receive session and transport status pushes.

    A socket that is no longer connected, or whose send fails, is dropped
    from the hub so later broadcasts skip it.
    """

    def __init__(self) -> None:
        self._connections: List[WebSocket] = []
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._connections)

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        async with self._lock:
            self._connections.append(ws)

    async def disconnect(self, ws: WebSocket) -> None:
        async with self._lock:
            if ws in self._connections:
                self._connections.remove(ws)

    async def broadcast(self, message: Dict[str, object]) -> None:
        async with self._lock:
            stale: List[WebSocket] = []
            for ws in self._connections:
                if ws.application_state != WebSocketState.CONNECTED:
                    stale.append(ws)
                    continue
                try:
                    await ws.send_json(message)
                except Exception:
                    logger.warning("Dropping control socket after failed %s push", message.get("type"), exc_info=True)
                    stale.append(ws)
            for ws in stale:
                self._connections.remove(ws)


class CallerApp:
    """Caller runtime: one signaling transport, one call at a time, local control API."""

    def __init__(
        self,
        relay_url: str = DEFAULT_RELAY_URL,
        *,
        media: Optional[MediaCaptureProvider] = None,
        constraints: MediaConstraints = MediaConstraints(),
        ice_servers: Sequence[IceServer] = DEFAULT_ICE_SERVERS,
        engine_factory: EngineFactory = AiortcEngine,
        transport: Optional[SignalingTransport] = None,
        auto_room: Optional[str] = None,
        auto_role: Role = Role.INITIATOR,
    ) -> None:
        self._relay_url = relay_url
        self._transport = transport or SignalingTransport(relay_url)
        self._transport.on_state_change(self._on_transport_state)
        self._media = media
        self._constraints = constraints
        self._ice_servers = tuple(ice_servers)
        self._engine_factory = engine_factory
        self._auto_room = auto_room
        self._auto_role = auto_role
        self._machine: Optional[SessionStateMachine] = None
        self._ws_hub = WebSocketHub()
        self._uvicorn_server = None
        self._app = FastAPI()
        self._configure_routes()

    @property
    def app(self) -> FastAPI:
        return self._app

    @property
    def transport(self) -> SignalingTransport:
        return self._transport

    @property
    def session(self) -> Optional[Session]:
        return self._machine.session if self._machine else None

    def _configure_routes(self) -> None:
        @self._app.get("/config")
        async def config() -> Dict[str, object]:
            return {
                "relay_url": self._relay_url,
                "transport_state": self._transport.state.value,
                "ice_servers": [list(server.urls) for server in self._ice_servers],
                "video": self._constraints.video,
                "audio": self._constraints.audio,
            }

        @self._app.get("/session")
        async def session() -> Dict[str, object]:
            current = self.session
            if current is None:
                return {"state": "idle"}
            return current.to_dict()

        @self._app.websocket("/ws/control")
        async def ws_control(websocket: WebSocket) -> None:
            await self._ws_hub.connect(websocket)
            try:
                await websocket.send_json(self._transport_status())
                await websocket.send_json(self._session_status())
                while True:
                    data = await websocket.receive_json()
                    await self._handle_ui_message(data)
            except WebSocketDisconnect:
                pass
            finally:
                await self._ws_hub.disconnect(websocket)

    async def start_call(self, room_id: str, role: Role) -> Session:
        if self._machine is not None and self._machine.state not in TERMINAL_STATES and self._machine.session is not None:
            raise CallError("A call is already in progress")
        machine = SessionStateMachine(
            self._transport,
            self._media_provider(),
            constraints=self._constraints,
            ice_servers=self._ice_servers,
            engine_factory=self._engine_factory,
            on_state_change=self._on_session_change,
        )
        self._machine = machine
        if role == Role.INITIATOR:
            return await machine.create_room(room_id)
        return await machine.join_room(room_id)

    async def end_call(self) -> None:
        if self._machine is not None:
            await self._machine.end_call()

    async def _handle_ui_message(self, data: Dict[str, object]) -> None:
        """Handle messages coming from the control WebSocket."""

        kind = data.get("type")
        if kind in ("create_room", "join_room"):
            role = Role.INITIATOR if kind == "create_room" else Role.RESPONDER
            room_id = str(data.get("roomId") or "")
            try:
                await self.start_call(room_id, role)
            except (ValueError, CallError) as exc:
                logger.warning("Could not start call: %s", exc)
                await self._ws_hub.broadcast(self._session_status(message=str(exc)))
        elif kind == "end_call":
            await self.end_call()
        else:
            logger.debug("Unhandled control message: %s", kind)

    def _media_provider(self) -> MediaCaptureProvider:
        if self._media is None:
            # Device backends need PortAudio and a camera stack; load them on first use.
            try:
                from .devices import DeviceMediaProvider
            except (ImportError, OSError) as exc:
                raise MediaAcquisitionError(f"Capture devices unavailable: {exc}") from exc

            self._media = DeviceMediaProvider()
        return self._media

    async def _on_session_change(self, session: Session) -> None:
        await self._ws_hub.broadcast(self._session_status())

    async def _on_transport_state(self, state: TransportConnectionState) -> None:
        await self._ws_hub.broadcast(self._transport_status())

    def _session_status(self, *, message: Optional[str] = None) -> Dict[str, object]:
        current = self.session
        payload: Dict[str, object] = current.to_dict() if current else {"state": "idle"}
        if message is not None:
            payload["message"] = message
        return {"type": "session_status", "payload": payload}

    def _transport_status(self) -> Dict[str, object]:
        return {
            "type": "transport_status",
            "payload": {"state": self._transport.state.value, "relay_url": self._relay_url},
        }

    async def run(self, host: str = "127.0.0.1", port: int = 8100) -> None:
        import uvicorn

        config = uvicorn.Config(self._app, host=host, port=port, log_level="info")
        server = uvicorn.Server(config)
        self._uvicorn_server = server
        try:
            await self._transport.connect()
        except TransportError as exc:
            logger.warning("Relay not reachable yet, retrying in background: %s", exc)
        auto_task: Optional[asyncio.Task[None]] = None
        if self._auto_room:
            auto_task = asyncio.create_task(self._auto_start())
        try:
            await server.serve()
        finally:
            if auto_task is not None:
                auto_task.cancel()
            self._uvicorn_server = None
            await self.shutdown()

    async def _auto_start(self) -> None:
        while self._transport.state != TransportConnectionState.OPEN:
            await asyncio.sleep(0.5)
        try:
            await self.start_call(self._auto_room, self._auto_role)
        except (ValueError, CallError, MediaAcquisitionError) as exc:
            logger.error("Could not start call in room %s: %s", self._auto_room, exc)

    async def shutdown(self) -> None:
        try:
            await self.end_call()
        except Exception:
            logger.exception("Error ending call during shutdown")
        await self._transport.close()
