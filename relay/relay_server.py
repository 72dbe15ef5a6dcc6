from __future__ import annotations

import logging
from typing import List, Optional

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from signaling.protocol import (
    DEFAULT_RELAY_HOST,
    DEFAULT_RELAY_PORT,
    FORWARDED_TYPES,
    MessageType,
    ProtocolError,
    SignalingMessage,
    decode_message,
    encode_message,
)

from .room_manager import Occupant, RoomFull, RoomManager

logger = logging.getLogger(__name__)


class RelayServer:
    """WebSocket signaling relay pairing callers two to a room.

    Offers, answers and candidates are forwarded verbatim to the other
    occupant; the relay never inspects SDP.
    """

    def __init__(
        self,
        host: str = DEFAULT_RELAY_HOST,
        port: int = DEFAULT_RELAY_PORT,
        room_manager: Optional[RoomManager] = None,
    ) -> None:
        self._host = host
        self._port = port
        self._rooms = room_manager or RoomManager()
        self._server: Optional[Server] = None

    @property
    def rooms(self) -> RoomManager:
        return self._rooms

    @property
    def port(self) -> int:
        """Bound port; differs from the configured one when started on port 0."""
        if self._server is None:
            return self._port
        for sock in self._server.sockets:
            return sock.getsockname()[1]
        return self._port

    @property
    def url(self) -> str:
        return f"ws://{self._host}:{self.port}"

    async def start(self) -> None:
        self._server = await serve(self._handle_client, self._host, self._port)
        sockets = ", ".join(str(sock.getsockname()) for sock in self._server.sockets)
        logger.info("Signaling relay listening on %s", sockets)

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        await self._rooms.close()

    async def _handle_client(self, ws: ServerConnection) -> None:
        client_id = ws.id.hex[:12]
        logger.info("Incoming signaling connection %s from %s", client_id, ws.remote_address)
        try:
            async for frame in ws:
                try:
                    message = decode_message(frame)
                except ProtocolError as exc:
                    logger.warning("Malformed message from %s: %s", client_id, exc)
                    await self._send(ws, SignalingMessage.error(f"malformed message: {exc}"))
                    continue
                await self._handle_message(client_id, ws, message, frame)
        except ConnectionClosed:
            logger.debug("Connection %s closed", client_id)
        finally:
            await self._rooms.connection_lost(client_id, self._announce_departure)
            logger.info("Signaling connection %s closed", client_id)

    async def _handle_message(
        self,
        client_id: str,
        ws: ServerConnection,
        message: SignalingMessage,
        frame: str | bytes,
    ) -> None:
        if message.type == MessageType.JOIN_ROOM:
            await self._handle_join(client_id, ws, message.room_id)
        elif message.type == MessageType.LEAVE_ROOM:
            left = await self._rooms.leave(client_id)
            if left is None:
                await self._send(ws, SignalingMessage.error("not in a room", room_id=message.room_id))
                return
            await self._announce_departure(client_id, *left)
        elif message.type in FORWARDED_TYPES:
            await self._forward(client_id, ws, message, frame)
        else:
            await self._send(
                ws,
                SignalingMessage.error(f"unexpected message type {message.type.value}", room_id=message.room_id),
            )

    async def _handle_join(self, client_id: str, ws: ServerConnection, room_id: str) -> None:
        current = await self._rooms.room_of(client_id)
        if current is not None and current != room_id:
            left = await self._rooms.leave(client_id)
            if left is not None:
                await self._announce_departure(client_id, *left)
        try:
            result = await self._rooms.join(room_id, client_id, ws)
        except RoomFull:
            logger.info("Rejected %s: room %s is full", client_id, room_id)
            await self._send(ws, SignalingMessage.error("room full", room_id=room_id))
            return
        await self._send(ws, SignalingMessage.room_joined(room_id, occupants=result.occupants))
        if result.rejoined:
            return
        notice = encode_message(SignalingMessage.user_joined(room_id))
        for peer in result.peers:
            await self._send_raw(peer, notice)

    async def _forward(
        self,
        client_id: str,
        ws: ServerConnection,
        message: SignalingMessage,
        frame: str | bytes,
    ) -> None:
        try:
            peer = await self._rooms.peer_of(client_id, message.room_id)
        except LookupError:
            await self._send(ws, SignalingMessage.error("not in a room", room_id=message.room_id))
            return
        if peer is None:
            logger.debug("Dropping %s from %s: nobody else in room %s", message.type.value, client_id, message.room_id)
            return
        text = frame.decode("utf-8") if isinstance(frame, bytes) else frame
        await self._send_raw(peer, text)

    async def _announce_departure(self, client_id: str, room_id: str, remaining: List[Occupant]) -> None:
        notice = encode_message(SignalingMessage.user_left(room_id))
        for occupant in remaining:
            await self._send_raw(occupant, notice)

    async def _send(self, ws: ServerConnection, message: SignalingMessage) -> None:
        try:
            await ws.send(encode_message(message))
        except ConnectionClosed:
            logger.debug("Could not deliver %s; connection already closed", message.type.value)

    async def _send_raw(self, occupant: Occupant, text: str) -> None:
        try:
            await occupant.connection.send(text)
        except ConnectionClosed:
            logger.debug("Could not deliver to %s; connection already closed", occupant.client_id)
        except Exception:
            logger.exception("Failed to relay message to %s", occupant.client_id)
