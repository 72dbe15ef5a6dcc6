from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from signaling.protocol import ProtocolError, SignalingMessage, decode_message, encode_message

from .errors import TransportError, TransportNotReady
from .reconnect import ReconnectionPolicy

logger = logging.getLogger(__name__)

OPEN_TIMEOUT_SECONDS = 10.0

MessageCallback = Callable[[SignalingMessage], Awaitable[None] | None]


class TransportConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"


StateCallback = Callable[[TransportConnectionState], Awaitable[None] | None]


class SignalingTransport:
    """Persistent WebSocket connection to the signaling relay.

    Inbound frames are decoded and handed to every registered message handler
    one at a time, in arrival order. A dropped connection is retried through
    the :class:`ReconnectionPolicy`; an explicit :meth:`close` is not.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        *,
        policy: Optional[ReconnectionPolicy] = None,
        open_timeout: float = OPEN_TIMEOUT_SECONDS,
    ) -> None:
        self._url = url
        self._policy = policy or ReconnectionPolicy()
        self._open_timeout = open_timeout
        self._ws: Optional[ClientConnection] = None
        self._state = TransportConnectionState.DISCONNECTED
        self._recv_task: Optional[asyncio.Task[None]] = None
        self._message_handlers: List[MessageCallback] = []
        self._state_handlers: List[StateCallback] = []
        self._stop = False

    @property
    def url(self) -> Optional[str]:
        return self._url

    @property
    def state(self) -> TransportConnectionState:
        return self._state

    @property
    def policy(self) -> ReconnectionPolicy:
        return self._policy

    def on_message(self, handler: MessageCallback) -> None:
        if handler not in self._message_handlers:
            self._message_handlers.append(handler)

    def off_message(self, handler: MessageCallback) -> None:
        if handler in self._message_handlers:
            self._message_handlers.remove(handler)

    def on_state_change(self, handler: StateCallback) -> None:
        if handler not in self._state_handlers:
            self._state_handlers.append(handler)

    def off_state_change(self, handler: StateCallback) -> None:
        if handler in self._state_handlers:
            self._state_handlers.remove(handler)

    async def connect(self, url: Optional[str] = None) -> None:
        if url is not None:
            self._url = url
        if self._url is None:
            raise ValueError("No relay URL configured")
        if self._state in (TransportConnectionState.OPEN, TransportConnectionState.CONNECTING):
            return
        self._stop = False
        self._policy.cancel()
        await self._set_state(TransportConnectionState.CONNECTING)
        logger.info("Connecting to signaling relay %s", self._url)
        try:
            ws = await connect(self._url, open_timeout=self._open_timeout)
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            logger.warning("Could not reach signaling relay %s: %s", self._url, exc)
            await self._set_state(TransportConnectionState.DISCONNECTED)
            self._schedule_reconnect()
            raise TransportError(f"Could not connect to {self._url}") from exc

        if self._stop:
            # close() ran while the handshake was in flight.
            await ws.close()
            return
        self._ws = ws
        self._policy.reset()
        self._recv_task = asyncio.create_task(self._recv_loop(ws))
        await self._set_state(TransportConnectionState.OPEN)

    async def close(self) -> None:
        self._stop = True
        self._policy.cancel()
        ws = self._ws
        task = self._recv_task
        self._ws = None
        self._recv_task = None
        if ws is None and task is None:
            await self._set_state(TransportConnectionState.DISCONNECTED)
            return
        await self._set_state(TransportConnectionState.CLOSING)
        if ws is not None:
            try:
                await ws.close()
            except Exception:
                logger.debug("Error while closing signaling socket", exc_info=True)
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._set_state(TransportConnectionState.DISCONNECTED)

    async def send(self, message: SignalingMessage) -> None:
        ws = self._ws
        if self._state != TransportConnectionState.OPEN or ws is None:
            logger.warning("Cannot send %s: signaling transport is %s", message.type.value, self._state.value)
            raise TransportNotReady(f"Signaling transport is {self._state.value}")
        try:
            await ws.send(encode_message(message))
        except ConnectionClosed as exc:
            raise TransportError("Signaling connection closed while sending") from exc
        logger.debug("Sent %s", message.type.value)

    async def _recv_loop(self, ws: ClientConnection) -> None:
        reason = "server_closed"
        try:
            async for frame in ws:
                try:
                    message = decode_message(frame)
                except ProtocolError as exc:
                    logger.warning("Ignoring malformed signaling frame: %s", exc)
                    continue
                logger.debug("Received %s", message.type.value)
                await self._dispatch(message)
        except ConnectionClosed as exc:
            reason = f"connection_lost ({exc})"
        if self._ws is ws:
            self._ws = None
            self._recv_task = None
        if self._stop:
            return
        logger.warning("Signaling connection lost: %s", reason)
        await self._set_state(TransportConnectionState.DISCONNECTED)
        self._schedule_reconnect()

    async def _dispatch(self, message: SignalingMessage) -> None:
        for handler in list(self._message_handlers):
            try:
                result = handler(message)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Error while handling signaling message %s", message.type.value)

    async def _set_state(self, state: TransportConnectionState) -> None:
        if state == self._state:
            return
        previous = self._state
        self._state = state
        logger.debug("Signaling transport %s -> %s", previous.value, state.value)
        for handler in list(self._state_handlers):
            try:
                result = handler(state)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Transport state callback failed")

    def _schedule_reconnect(self) -> None:
        if self._stop:
            return
        self._policy.schedule(self._reconnect)

    async def _reconnect(self) -> None:
        if self._stop:
            return
        try:
            await self.connect()
        except TransportError:
            # connect() already queued the next attempt.
            pass
