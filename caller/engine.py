"""Peer transport engine contract and its aiortc implementation.

The call core only relies on :class:`PeerEngine`; the aiortc-backed
:class:`AiortcEngine` is the production implementation and tests swap in
in-memory fakes through the same factory signature.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence, Tuple

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp

from signaling.protocol import IceCandidatePayload, SessionDescription

logger = logging.getLogger(__name__)

DEFAULT_STUN_SERVERS: Tuple[str, ...] = (
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
    "stun:stun2.l.google.com:19302",
)


@dataclass(frozen=True)
class IceServer:
    """One STUN or TURN endpoint handed to the engine at setup time."""

    urls: Tuple[str, ...]
    username: Optional[str] = None
    credential: Optional[str] = None


def build_ice_servers(
    stun_urls: Optional[Sequence[str]] = None,
    *,
    turn_url: Optional[str] = None,
    turn_username: Optional[str] = None,
    turn_credential: Optional[str] = None,
) -> Tuple[IceServer, ...]:
    """Assemble the static ICE configuration: STUN endpoints plus an optional TURN relay."""

    urls = tuple(stun_urls) if stun_urls else DEFAULT_STUN_SERVERS
    servers = [IceServer(urls=(url,)) for url in urls]
    if turn_url:
        if not (turn_username and turn_credential):
            raise ValueError("TURN server requires both a username and a credential")
        servers.append(IceServer(urls=(turn_url,), username=turn_username, credential=turn_credential))
    return tuple(servers)


DEFAULT_ICE_SERVERS = build_ice_servers()


@dataclass
class EngineCallbacks:
    """Hooks the engine fires back into the controller."""

    on_local_candidate: Callable[[IceCandidatePayload], Awaitable[None] | None]
    on_track: Callable[[Any], Awaitable[None] | None]
    on_connection_state: Callable[[str], Awaitable[None] | None]


class PeerEngine(Protocol):
    """High-level contract of the peer transport negotiation primitive."""

    @property
    def connection_state(self) -> str: ...

    @property
    def local_description(self) -> Optional[SessionDescription]: ...

    @property
    def remote_description(self) -> Optional[SessionDescription]: ...

    def add_track(self, track: Any) -> None: ...

    async def create_offer(self) -> SessionDescription: ...

    async def create_answer(self) -> SessionDescription: ...

    async def set_local_description(self, description: SessionDescription) -> None: ...

    async def set_remote_description(self, description: SessionDescription) -> None: ...

    async def add_ice_candidate(self, candidate: IceCandidatePayload) -> None: ...

    async def close(self) -> None: ...


EngineFactory = Callable[[Sequence[IceServer], EngineCallbacks], PeerEngine]


async def _maybe_await(result: Awaitable[None] | None) -> None:
    if asyncio.iscoroutine(result):
        await result


def _to_description(description: Optional[RTCSessionDescription]) -> Optional[SessionDescription]:
    if description is None:
        return None
    return SessionDescription(type=description.type, sdp=description.sdp)


class AiortcEngine:
    """:class:`PeerEngine` backed by an aiortc ``RTCPeerConnection``.

    aiortc gathers every candidate during ``setLocalDescription`` and embeds
    them in the SDP instead of trickling them, so ``on_local_candidate`` is
    never fired; remote trickled candidates are still accepted.
    """

    def __init__(self, ice_servers: Sequence[IceServer], callbacks: EngineCallbacks) -> None:
        configuration = RTCConfiguration(
            iceServers=[
                RTCIceServer(urls=list(server.urls), username=server.username, credential=server.credential)
                for server in ice_servers
            ]
        )
        self._pc = RTCPeerConnection(configuration=configuration)
        self._callbacks = callbacks

        @self._pc.on("connectionstatechange")
        async def on_connection_state_change() -> None:
            state = self._pc.connectionState
            logger.info("Peer connection state: %s", state)
            await _maybe_await(self._callbacks.on_connection_state(state))

        @self._pc.on("iceconnectionstatechange")
        async def on_ice_connection_state_change() -> None:
            logger.debug("ICE connection state: %s", self._pc.iceConnectionState)

        @self._pc.on("track")
        async def on_track(track: MediaStreamTrack) -> None:
            logger.info("Received remote %s track", track.kind)
            await _maybe_await(self._callbacks.on_track(track))

    @property
    def connection_state(self) -> str:
        return self._pc.connectionState

    @property
    def local_description(self) -> Optional[SessionDescription]:
        return _to_description(self._pc.localDescription)

    @property
    def remote_description(self) -> Optional[SessionDescription]:
        return _to_description(self._pc.remoteDescription)

    def add_track(self, track: MediaStreamTrack) -> None:
        self._pc.addTrack(track)

    async def create_offer(self) -> SessionDescription:
        offer = await self._pc.createOffer()
        return SessionDescription(type=offer.type, sdp=offer.sdp)

    async def create_answer(self) -> SessionDescription:
        answer = await self._pc.createAnswer()
        return SessionDescription(type=answer.type, sdp=answer.sdp)

    async def set_local_description(self, description: SessionDescription) -> None:
        await self._pc.setLocalDescription(RTCSessionDescription(sdp=description.sdp, type=description.type))

    async def set_remote_description(self, description: SessionDescription) -> None:
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=description.sdp, type=description.type))

    async def add_ice_candidate(self, candidate: IceCandidatePayload) -> None:
        line = candidate.candidate
        if not line:
            logger.debug("Remote end-of-candidates marker received")
            return
        if line.startswith("candidate:"):
            line = line[len("candidate:"):]
        ice_candidate = candidate_from_sdp(line)
        ice_candidate.sdpMid = candidate.sdp_mid
        ice_candidate.sdpMLineIndex = candidate.sdp_mline_index
        await self._pc.addIceCandidate(ice_candidate)

    async def close(self) -> None:
        await self._pc.close()
