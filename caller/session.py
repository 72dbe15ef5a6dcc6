"""Call-session orchestration.

:class:`SessionStateMachine` drives one :class:`Session` from ``IDLE`` to a
terminal state. It owns the :class:`PeerConnectionController` for the call,
routes relay messages into it, and sends the negotiation artefacts it
produces back through the shared :class:`SignalingTransport`.

Every await is a point where the user may hang up or the engine may be
replaced. The session's ``generation`` is bumped whenever that happens and
completions captured under an older generation are discarded.
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from signaling.protocol import MessageType, SignalingMessage

from .engine import DEFAULT_ICE_SERVERS, AiortcEngine, EngineFactory, IceServer
from .errors import CallError, MediaAcquisitionError, NegotiationError, PeerLost, TransportError, TransportNotReady
from .media import MediaCaptureProvider, MediaConstraints
from .peer_controller import PeerConnectionController
from .signaling_client import SignalingTransport, TransportConnectionState
from .states import TERMINAL_STATES, CallEvent, CallState, Role, next_state

logger = logging.getLogger(__name__)

MAX_NEGOTIATION_RESTARTS = 2
MAX_PEER_RESTARTS = 3

# States in which the relay knows about us and a rejoin is meaningful.
_JOINED_STATES = frozenset(
    {
        CallState.JOINING_ROOM,
        CallState.WAITING_FOR_PEER,
        CallState.NEGOTIATING,
        CallState.CONNECTED,
        CallState.RECONNECTING,
    }
)

SessionListener = Callable[["Session"], Awaitable[None] | None]


@dataclass(eq=False)
class Session:
    """One call. ``room_id`` and the requested ``role`` never change.

    ``negotiation_role`` starts equal to ``role`` and decides who sends
    offers; losing an offer collision turns it into ``RESPONDER``.
    """

    room_id: str
    role: Role
    state: CallState = CallState.IDLE
    local_tracks: List[Any] = field(default_factory=list)
    remote_tracks: List[Any] = field(default_factory=list)
    generation: int = 0
    signaling_degraded: bool = False
    error: Optional[CallError] = None
    end_reason: Optional[str] = None
    negotiation_role: Optional[Role] = None

    def __post_init__(self) -> None:
        if self.negotiation_role is None:
            self.negotiation_role = self.role

    def __setattr__(self, name: str, value: Any) -> None:
        if name in ("room_id", "role") and name in self.__dict__:
            raise AttributeError(f"{name} cannot change during a session")
        super().__setattr__(name, value)

    def to_dict(self) -> Dict[str, object]:
        return {
            "roomId": self.room_id,
            "role": self.role.value,
            "negotiationRole": self.negotiation_role.value,
            "state": self.state.value,
            "localTracks": [getattr(track, "kind", "unknown") for track in self.local_tracks],
            "remoteTracks": [getattr(track, "kind", "unknown") for track in self.remote_tracks],
            "signalingDegraded": self.signaling_degraded,
            "endReason": self.end_reason,
            "error": type(self.error).__name__ if self.error else None,
        }


class SessionStateMachine:
    """Runs exactly one call; build a new instance for the next one."""

    def __init__(
        self,
        transport: SignalingTransport,
        media: MediaCaptureProvider,
        *,
        constraints: MediaConstraints = MediaConstraints(),
        ice_servers: Sequence[IceServer] = DEFAULT_ICE_SERVERS,
        engine_factory: EngineFactory = AiortcEngine,
        max_negotiation_restarts: int = MAX_NEGOTIATION_RESTARTS,
        max_peer_restarts: int = MAX_PEER_RESTARTS,
        tie_breaker: Optional[int] = None,
        on_state_change: Optional[SessionListener] = None,
    ) -> None:
        self._transport = transport
        self._media = media
        self._constraints = constraints
        self._ice_servers = tuple(ice_servers)
        self._engine_factory = engine_factory
        self._max_negotiation_restarts = max_negotiation_restarts
        self._max_peer_restarts = max_peer_restarts
        self._tie_breaker = tie_breaker if tie_breaker is not None else random.getrandbits(53)
        self._listeners: List[SessionListener] = []
        if on_state_change is not None:
            self._listeners.append(on_state_change)
        self._session: Optional[Session] = None
        self._controller: Optional[PeerConnectionController] = None
        self._negotiation_restarts = 0
        self._peer_restarts = 0
        self._offer_in_flight = False
        self._joined = False
        self._leave_sent = False

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def state(self) -> CallState:
        return self._session.state if self._session else CallState.IDLE

    @property
    def controller(self) -> Optional[PeerConnectionController]:
        return self._controller

    @property
    def tie_breaker(self) -> int:
        return self._tie_breaker

    def add_listener(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    async def create_room(self, room_id: str) -> Session:
        return await self._start(room_id, Role.INITIATOR)

    async def join_room(self, room_id: str) -> Session:
        return await self._start(room_id, Role.RESPONDER)

    async def end_call(self, reason: str = "local hangup", *, error: Optional[CallError] = None) -> None:
        session = self._session
        if session is None or session.state in TERMINAL_STATES:
            return
        logger.info("Ending call in room %s: %s", session.room_id, reason)
        session.end_reason = reason
        session.error = error
        await self._apply(CallEvent.END)

    # ------------------------------------------------------------------
    # Call start
    # ------------------------------------------------------------------
    async def _start(self, room_id: str, role: Role) -> Session:
        room = (room_id or "").strip()
        if not room:
            raise ValueError("Room ID must not be empty")
        if self._session is not None:
            raise RuntimeError("This state machine already ran a call")
        if self._transport.state != TransportConnectionState.OPEN:
            raise TransportNotReady("Not connected to the signaling relay")

        session = Session(room_id=room, role=role)
        self._session = session
        controller = PeerConnectionController(
            session,
            self._transport,
            self._media,
            ice_servers=self._ice_servers,
            engine_factory=self._engine_factory,
        )
        controller.on_connection_state = self._on_engine_state
        controller.on_remote_track = self._on_remote_track
        self._controller = controller
        self._transport.on_message(self.handle_message)
        self._transport.on_state_change(self._on_transport_state)

        await self._apply(CallEvent.START)
        generation = session.generation
        try:
            tracks = await self._media.acquire(self._constraints)
        except Exception as exc:
            error = exc if isinstance(exc, MediaAcquisitionError) else MediaAcquisitionError(str(exc))
            if self._is_current(generation):
                logger.error("Media acquisition failed: %s", exc)
                session.end_reason = str(exc)
                session.error = error
                await self._apply(CallEvent.MEDIA_FAILED)
            if error is exc:
                raise
            raise error from exc
        if not self._is_current(generation):
            logger.info("Call ended while media was being acquired; releasing it")
            self._media.release(tracks)
            return session

        session.local_tracks.extend(tracks)
        try:
            await controller.setup()
        except NegotiationError as exc:
            logger.exception("Peer engine setup failed for room %s", session.room_id)
            session.end_reason = str(exc)
            session.error = exc
            await self._apply(CallEvent.SETUP_FAILED)
            raise
        await self._apply(CallEvent.MEDIA_ACQUIRED)
        await self._send_join()
        return session

    async def _send_join(self) -> None:
        session = self._session
        try:
            await self._transport.send(SignalingMessage.join_room(session.room_id))
        except TransportError as exc:
            logger.warning("Could not send join-room, will retry on reconnect: %s", exc)
            return
        self._joined = True

    # ------------------------------------------------------------------
    # Inbound signaling
    # ------------------------------------------------------------------
    async def handle_message(self, message: SignalingMessage) -> None:
        session = self._session
        if session is None or session.state in TERMINAL_STATES:
            return
        if message.room_id is not None and message.room_id != session.room_id:
            logger.debug("Ignoring %s for foreign room %s", message.type.value, message.room_id)
            return
        handler = {
            MessageType.ROOM_JOINED: self._on_room_joined,
            MessageType.USER_JOINED: self._on_user_joined,
            MessageType.USER_LEFT: self._on_user_left,
            MessageType.OFFER: self._on_offer,
            MessageType.ANSWER: self._on_answer,
            MessageType.ICE_CANDIDATE: self._on_ice_candidate,
            MessageType.ERROR: self._on_relay_error,
        }.get(message.type)
        if handler is None:
            logger.debug("Unhandled signaling message %s", message.type.value)
            return
        await handler(message)

    async def _on_room_joined(self, message: SignalingMessage) -> None:
        session = self._session
        await self._apply(CallEvent.ROOM_JOINED)
        already_occupied = (message.occupants or 0) > 1
        offers_first = session.negotiation_role == Role.INITIATOR
        if offers_first and already_occupied and session.state == CallState.WAITING_FOR_PEER:
            logger.info("Peer already waiting in room %s; sending offer", session.room_id)
            await self._begin_offer()

    async def _on_user_joined(self, message: SignalingMessage) -> None:
        session = self._session
        if session.state not in (CallState.JOINING_ROOM, CallState.WAITING_FOR_PEER):
            logger.debug("Ignoring user-joined in state %s", session.state.value)
            return
        if session.negotiation_role != Role.INITIATOR:
            logger.info("Peer joined room %s; waiting for their offer", session.room_id)
            return
        await self._begin_offer()

    async def _on_user_left(self, message: SignalingMessage) -> None:
        await self.end_call(reason="peer left", error=PeerLost("remote party left the room"))

    async def _on_relay_error(self, message: SignalingMessage) -> None:
        session = self._session
        text = message.text or "unknown relay error"
        if session.state == CallState.JOINING_ROOM:
            logger.error("Relay rejected room %s: %s", session.room_id, text)
            self._joined = False
            await self.end_call(reason=text)
            return
        logger.warning("Relay error in room %s: %s", session.room_id, text)

    async def _begin_offer(self) -> None:
        await self._apply(CallEvent.PEER_JOINED)
        await self._send_offer()

    async def _send_offer(self) -> None:
        session = self._session
        if self._offer_in_flight:
            logger.debug("Offer already being produced")
            return
        generation = session.generation
        self._offer_in_flight = True
        try:
            offer = await self._controller.create_offer()
        except NegotiationError as exc:
            if self._is_current(generation):
                await self._on_negotiation_error(exc)
            return
        finally:
            self._offer_in_flight = False
        if not self._is_current(generation):
            logger.debug("Discarding offer produced for a retired negotiation")
            return
        try:
            await self._transport.send(SignalingMessage.offer(session.room_id, offer, tie_breaker=self._tie_breaker))
        except TransportError as exc:
            logger.warning("Could not send offer, will resend on reconnect: %s", exc)
            return
        await self._apply(CallEvent.OFFER_SENT)

    async def _on_offer(self, message: SignalingMessage) -> None:
        session = self._session
        controller = self._controller
        if self._offer_in_flight or controller.has_local_offer:
            if self._wins_glare(message):
                logger.info(
                    "Offer collision in room %s: keeping ours (%s beats %s)",
                    session.room_id,
                    self._tie_breaker,
                    message.tie_breaker,
                )
                return
            logger.info("Offer collision in room %s: yielding to the remote offer", session.room_id)
            session.negotiation_role = Role.RESPONDER
            session.generation += 1
            await controller.reset(keep_pending=True)
        elif controller.has_remote_description:
            # The peer restarted its engine; start over with a fresh one.
            logger.info("Received a restart offer in room %s", session.room_id)
            session.generation += 1
            await controller.reset()

        await self._apply(CallEvent.OFFER_RECEIVED)
        generation = session.generation
        try:
            answer = await controller.accept_offer(message.description)
        except NegotiationError as exc:
            if self._is_current(generation):
                await self._on_negotiation_error(exc)
            return
        if not self._is_current(generation):
            logger.debug("Discarding answer produced for a retired negotiation")
            return
        try:
            await self._transport.send(SignalingMessage.answer(session.room_id, answer))
        except TransportError as exc:
            logger.warning("Could not send answer: %s", exc)

    def _wins_glare(self, message: SignalingMessage) -> bool:
        theirs = message.tie_breaker
        if theirs is None:
            return False
        if theirs != self._tie_breaker:
            return self._tie_breaker > theirs
        engine = self._controller.engine
        local = engine.local_description if engine is not None else None
        ours = local.sdp if local is not None else ""
        return ours > message.description.sdp

    async def _on_answer(self, message: SignalingMessage) -> None:
        session = self._session
        controller = self._controller
        if not controller.has_local_offer:
            logger.warning("Ignoring answer in room %s: no offer outstanding", session.room_id)
            return
        generation = session.generation
        try:
            await controller.accept_answer(message.description)
        except NegotiationError as exc:
            if self._is_current(generation):
                await self._on_negotiation_error(exc)
            return
        if self._is_current(generation):
            await self._apply(CallEvent.ANSWER_RECEIVED)

    async def _on_ice_candidate(self, message: SignalingMessage) -> None:
        try:
            await self._controller.add_remote_candidate(message.candidate)
        except NegotiationError as exc:
            logger.warning("Ignoring remote candidate: %s", exc)

    # ------------------------------------------------------------------
    # Engine and transport events
    # ------------------------------------------------------------------
    async def _on_engine_state(self, state: str) -> None:
        session = self._session
        if session is None or session.state in TERMINAL_STATES:
            return
        if state == "connected":
            self._peer_restarts = 0
            self._negotiation_restarts = 0
            await self._apply(CallEvent.ENGINE_CONNECTED)
        elif state == "failed":
            await self._recover("peer transport failed")
        elif state == "disconnected":
            await self._apply(CallEvent.ENGINE_DISCONNECTED)
        elif state == "closed":
            await self.end_call(reason="peer transport closed", error=PeerLost("peer transport closed"))

    async def _on_remote_track(self, track: Any) -> None:
        await self._notify()

    async def _on_transport_state(self, state: TransportConnectionState) -> None:
        session = self._session
        if session is None or session.state in TERMINAL_STATES:
            return
        if state == TransportConnectionState.DISCONNECTED:
            if not session.signaling_degraded:
                logger.warning("Signaling lost during call in room %s", session.room_id)
                session.signaling_degraded = True
                await self._notify()
        elif state == TransportConnectionState.OPEN:
            session.signaling_degraded = False
            if session.state in _JOINED_STATES:
                logger.info("Signaling restored; rejoining room %s", session.room_id)
                await self._send_join()
                await self._resend_pending_offer()
            await self._notify()

    async def _resend_pending_offer(self) -> None:
        session = self._session
        controller = self._controller
        engine = controller.engine
        if session.negotiation_role != Role.INITIATOR or not controller.has_local_offer or engine is None:
            return
        offer = engine.local_description
        try:
            await self._transport.send(SignalingMessage.offer(session.room_id, offer, tie_breaker=self._tie_breaker))
        except TransportError as exc:
            logger.warning("Could not resend offer: %s", exc)

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------
    async def _on_negotiation_error(self, exc: NegotiationError) -> None:
        session = self._session
        logger.warning("Negotiation error in room %s: %s", session.room_id, exc)
        if session.state == CallState.NEGOTIATING:
            await self._restart_negotiation(str(exc))
        elif session.state in (CallState.CONNECTED, CallState.RECONNECTING):
            await self._recover(str(exc))

    async def _recover(self, reason: str) -> None:
        session = self._session
        if session.state == CallState.NEGOTIATING:
            await self._restart_negotiation(reason)
            return
        if session.state not in (CallState.CONNECTED, CallState.RECONNECTING):
            logger.debug("Not recovering from '%s' in state %s", reason, session.state.value)
            return
        self._peer_restarts += 1
        if self._peer_restarts > self._max_peer_restarts:
            logger.error("Giving up on room %s after %s restarts", session.room_id, self._max_peer_restarts)
            session.end_reason = reason
            session.error = PeerLost(reason)
            await self._apply(CallEvent.RECOVERY_EXHAUSTED)
            return
        logger.warning(
            "Restarting peer transport for room %s (%s/%s): %s",
            session.room_id,
            self._peer_restarts,
            self._max_peer_restarts,
            reason,
        )
        await self._apply(CallEvent.ENGINE_FAILED)
        await self._resetup()

    async def _restart_negotiation(self, reason: str) -> None:
        session = self._session
        self._negotiation_restarts += 1
        if self._negotiation_restarts > self._max_negotiation_restarts:
            logger.error("Negotiation for room %s failed: %s", session.room_id, reason)
            session.end_reason = reason
            session.error = NegotiationError(reason)
            await self._apply(CallEvent.NEGOTIATION_FAILED)
            return
        logger.warning(
            "Restarting negotiation for room %s (%s/%s): %s",
            session.room_id,
            self._negotiation_restarts,
            self._max_negotiation_restarts,
            reason,
        )
        await self._resetup()

    async def _resetup(self) -> None:
        session = self._session
        session.generation += 1
        generation = session.generation
        await self._controller.reset()
        if not self._is_current(generation):
            return
        try:
            await self._controller.setup()
        except NegotiationError as exc:
            logger.exception("Could not rebuild peer engine for room %s", session.room_id)
            session.end_reason = str(exc)
            if session.state == CallState.NEGOTIATING:
                session.error = exc
                await self._apply(CallEvent.NEGOTIATION_FAILED)
            else:
                session.error = PeerLost(str(exc))
                await self._apply(CallEvent.RECOVERY_EXHAUSTED)
            return
        if self._is_current(generation) and session.negotiation_role == Role.INITIATOR:
            await self._send_offer()

    # ------------------------------------------------------------------
    # State bookkeeping
    # ------------------------------------------------------------------
    def _is_current(self, generation: int) -> bool:
        session = self._session
        return session is not None and session.generation == generation and session.state not in TERMINAL_STATES

    async def _apply(self, event: CallEvent) -> bool:
        session = self._session
        target = next_state(session.state, event)
        if target is None:
            logger.debug("Ignoring %s in state %s", event.value, session.state.value)
            return False
        if target == session.state:
            return True
        previous = session.state
        session.state = target
        logger.info("Room %s: %s -> %s (%s)", session.room_id, previous.value, target.value, event.value)
        if target in TERMINAL_STATES:
            await self._cleanup()
        await self._notify()
        return True

    async def _cleanup(self) -> None:
        session = self._session
        session.generation += 1
        self._transport.off_message(self.handle_message)
        self._transport.off_state_change(self._on_transport_state)
        await self._controller.teardown()
        if self._joined and not self._leave_sent and self._transport.state == TransportConnectionState.OPEN:
            self._leave_sent = True
            try:
                await self._transport.send(SignalingMessage.leave_room(session.room_id))
            except TransportError as exc:
                logger.warning("Could not send leave-room: %s", exc)

    async def _notify(self) -> None:
        session = self._session
        for listener in list(self._listeners):
            try:
                result = listener(session)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Session listener failed")
