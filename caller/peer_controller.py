from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Deque, List, Optional, Sequence

from signaling.protocol import IceCandidatePayload, SessionDescription, SignalingMessage

from .engine import DEFAULT_ICE_SERVERS, AiortcEngine, EngineCallbacks, EngineFactory, IceServer, PeerEngine
from .errors import NegotiationError, TransportError
from .media import MediaCaptureProvider
from .states import Role

if TYPE_CHECKING:
    from .session import Session
    from .signaling_client import SignalingTransport

logger = logging.getLogger(__name__)

ConnectionStateCallback = Callable[[str], Awaitable[None] | None]
RemoteTrackCallback = Callable[[Any], Awaitable[None] | None]


class PendingCandidateBuffer:
    """Remote candidates that arrived before a remote description was applied."""

    def __init__(self) -> None:
        self._items: Deque[IceCandidatePayload] = deque()

    def __len__(self) -> int:
        return len(self._items)

    def append(self, candidate: IceCandidatePayload) -> None:
        self._items.append(candidate)

    def popleft(self) -> IceCandidatePayload:
        return self._items.popleft()

    def snapshot(self) -> List[IceCandidatePayload]:
        return list(self._items)

    def clear(self) -> None:
        self._items.clear()


class PeerConnectionController:
    """Owns the peer engine of one session and mediates all negotiation traffic.

    Every engine gets a generation number; callbacks fired by an engine that
    has since been reset or torn down are dropped.
    """

    def __init__(
        self,
        session: "Session",
        transport: "SignalingTransport",
        media: MediaCaptureProvider,
        *,
        ice_servers: Sequence[IceServer] = DEFAULT_ICE_SERVERS,
        engine_factory: EngineFactory = AiortcEngine,
    ) -> None:
        self._session = session
        self._transport = transport
        self._media = media
        self._ice_servers = tuple(ice_servers)
        self._engine_factory = engine_factory
        self._engine: Optional[PeerEngine] = None
        self._engine_generation = 0
        self._pending = PendingCandidateBuffer()
        self._remote_applied = False
        self._lock = asyncio.Lock()
        self._torn_down = False
        self.on_connection_state: Optional[ConnectionStateCallback] = None
        self.on_remote_track: Optional[RemoteTrackCallback] = None

    @property
    def engine(self) -> Optional[PeerEngine]:
        return self._engine

    @property
    def has_remote_description(self) -> bool:
        return self._remote_applied

    @property
    def has_local_offer(self) -> bool:
        """True while our offer is set locally and still waiting for an answer."""
        if self._engine is None or self._remote_applied:
            return False
        local = self._engine.local_description
        return local is not None and local.type == "offer"

    @property
    def negotiating(self) -> bool:
        return self._lock.locked()

    @property
    def pending_candidates(self) -> List[IceCandidatePayload]:
        return self._pending.snapshot()

    async def setup(self, session: Optional["Session"] = None) -> None:
        if session is not None:
            self._session = session
        if self._torn_down:
            raise NegotiationError("Controller has been torn down")
        if self._engine is not None:
            await self._close_engine(keep_pending=True)
        self._engine_generation += 1
        generation = self._engine_generation
        callbacks = EngineCallbacks(
            on_local_candidate=lambda candidate: self._on_local_candidate(generation, candidate),
            on_track=lambda track: self._on_remote_track(generation, track),
            on_connection_state=lambda state: self._on_connection_state(generation, state),
        )
        try:
            engine = self._engine_factory(self._ice_servers, callbacks)
            for track in self._session.local_tracks:
                engine.add_track(track)
        except Exception as exc:
            raise NegotiationError(f"Could not set up peer engine: {exc}") from exc
        self._engine = engine
        logger.info(
            "Peer engine %s ready for room %s with %s local track(s)",
            generation,
            self._session.room_id,
            len(self._session.local_tracks),
        )

    async def create_offer(self) -> SessionDescription:
        if self._lock.locked():
            raise NegotiationError("Another negotiation step is already in progress")
        async with self._lock:
            engine = self._require_engine()
            if self._session.negotiation_role != Role.INITIATOR:
                raise NegotiationError("Only the initiator creates offers")
            if engine.local_description is not None:
                raise NegotiationError("A local description is already set")
            try:
                offer = await engine.create_offer()
                await engine.set_local_description(offer)
            except Exception as exc:
                raise NegotiationError(f"Could not create offer: {exc}") from exc
            logger.info("Created offer for room %s", self._session.room_id)
            return engine.local_description or offer

    async def accept_offer(self, description: SessionDescription) -> SessionDescription:
        async with self._lock:
            if self._engine is None:
                logger.info("Offer arrived before engine setup; setting up now")
                await self.setup()
            engine = self._require_engine()
            try:
                await engine.set_remote_description(description)
            except Exception as exc:
                raise NegotiationError(f"Could not apply remote offer: {exc}") from exc
            await self._drain_candidates(engine)
            try:
                answer = await engine.create_answer()
                await engine.set_local_description(answer)
            except Exception as exc:
                raise NegotiationError(f"Could not create answer: {exc}") from exc
            logger.info("Answered offer for room %s", self._session.room_id)
            return engine.local_description or answer

    async def accept_answer(self, description: SessionDescription) -> None:
        async with self._lock:
            engine = self._require_engine()
            if not self.has_local_offer:
                raise NegotiationError("Received an answer without an outstanding offer")
            try:
                await engine.set_remote_description(description)
            except Exception as exc:
                raise NegotiationError(f"Could not apply remote answer: {exc}") from exc
            await self._drain_candidates(engine)
            logger.info("Applied answer for room %s", self._session.room_id)

    async def add_remote_candidate(self, candidate: IceCandidatePayload) -> bool:
        """Apply ``candidate`` now, or buffer it until a remote description exists.

        Returns ``True`` when the candidate was handed to the engine.
        """
        engine = self._engine
        if engine is None or not self._remote_applied:
            self._pending.append(candidate)
            logger.debug("Buffered remote candidate (%s pending)", len(self._pending))
            return False
        try:
            await engine.add_ice_candidate(candidate)
        except Exception as exc:
            raise NegotiationError(f"Could not apply remote candidate: {exc}") from exc
        return True

    async def reset(self, *, keep_pending: bool = False) -> None:
        """Close the engine but keep local tracks for a fresh setup."""
        await self._close_engine(keep_pending=keep_pending)

    async def teardown(self) -> None:
        self._torn_down = True
        await self._close_engine(keep_pending=False)
        tracks = list(self._session.local_tracks)
        self._session.local_tracks.clear()
        self._session.remote_tracks.clear()
        if tracks:
            self._media.release(tracks)
            logger.info("Released %s local track(s)", len(tracks))

    async def _drain_candidates(self, engine: PeerEngine) -> None:
        # Candidates buffered while we drain are picked up by the same loop,
        # so arrival order holds until the buffer is bypassed.
        while self._pending:
            candidate = self._pending.popleft()
            try:
                await engine.add_ice_candidate(candidate)
            except Exception as exc:
                logger.warning("Dropping unusable buffered candidate: %s", exc)
        self._remote_applied = True

    async def _close_engine(self, *, keep_pending: bool) -> None:
        engine = self._engine
        self._engine = None
        self._engine_generation += 1
        self._remote_applied = False
        if not keep_pending:
            self._pending.clear()
        if engine is None:
            return
        try:
            await engine.close()
        except Exception:
            logger.exception("Error while closing peer engine")

    def _require_engine(self) -> PeerEngine:
        if self._engine is None:
            raise NegotiationError("Peer engine is not set up")
        return self._engine

    def _is_current(self, generation: int) -> bool:
        return generation == self._engine_generation and self._engine is not None

    async def _on_local_candidate(self, generation: int, candidate: IceCandidatePayload) -> None:
        if not self._is_current(generation):
            return
        try:
            await self._transport.send(SignalingMessage.ice_candidate(self._session.room_id, candidate))
        except TransportError as exc:
            logger.warning("Could not relay local candidate: %s", exc)

    async def _on_remote_track(self, generation: int, track: Any) -> None:
        if not self._is_current(generation):
            return
        self._session.remote_tracks.append(track)
        if self.on_remote_track is not None:
            result = self.on_remote_track(track)
            if asyncio.iscoroutine(result):
                await result

    async def _on_connection_state(self, generation: int, state: str) -> None:
        if not self._is_current(generation):
            logger.debug("Ignoring %s from a retired peer engine", state)
            return
        if self.on_connection_state is not None:
            result = self.on_connection_state(state)
            if asyncio.iscoroutine(result):
                await result
