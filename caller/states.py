"""Call lifecycle states and the pure transition table that drives them."""
from __future__ import annotations

from enum import Enum
from typing import Dict, Optional, Tuple


class CallState(str, Enum):
    IDLE = "idle"
    AWAITING_MEDIA = "awaiting_media"
    JOINING_ROOM = "joining_room"
    WAITING_FOR_PEER = "waiting_for_peer"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ENDED = "ended"
    FAILED = "failed"


class Role(str, Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


class CallEvent(str, Enum):
    START = "start"
    MEDIA_ACQUIRED = "media_acquired"
    MEDIA_FAILED = "media_failed"
    SETUP_FAILED = "setup_failed"
    ROOM_JOINED = "room_joined"
    PEER_JOINED = "peer_joined"
    OFFER_SENT = "offer_sent"
    OFFER_RECEIVED = "offer_received"
    ANSWER_RECEIVED = "answer_received"
    ENGINE_CONNECTED = "engine_connected"
    ENGINE_DISCONNECTED = "engine_disconnected"
    ENGINE_FAILED = "engine_failed"
    RECOVERY_EXHAUSTED = "recovery_exhausted"
    NEGOTIATION_FAILED = "negotiation_failed"
    END = "end"


TERMINAL_STATES = frozenset({CallState.ENDED, CallState.FAILED})

_S = CallState
_E = CallEvent

_TRANSITIONS: Dict[Tuple[CallState, CallEvent], CallState] = {
    (_S.IDLE, _E.START): _S.AWAITING_MEDIA,
    (_S.AWAITING_MEDIA, _E.MEDIA_ACQUIRED): _S.JOINING_ROOM,
    (_S.AWAITING_MEDIA, _E.MEDIA_FAILED): _S.FAILED,
    (_S.AWAITING_MEDIA, _E.SETUP_FAILED): _S.FAILED,
    (_S.JOINING_ROOM, _E.ROOM_JOINED): _S.WAITING_FOR_PEER,
    (_S.JOINING_ROOM, _E.PEER_JOINED): _S.NEGOTIATING,
    (_S.JOINING_ROOM, _E.OFFER_RECEIVED): _S.NEGOTIATING,
    (_S.WAITING_FOR_PEER, _E.PEER_JOINED): _S.NEGOTIATING,
    (_S.WAITING_FOR_PEER, _E.OFFER_RECEIVED): _S.NEGOTIATING,
    (_S.NEGOTIATING, _E.OFFER_SENT): _S.NEGOTIATING,
    (_S.NEGOTIATING, _E.OFFER_RECEIVED): _S.NEGOTIATING,
    (_S.NEGOTIATING, _E.ANSWER_RECEIVED): _S.NEGOTIATING,
    (_S.NEGOTIATING, _E.ENGINE_CONNECTED): _S.CONNECTED,
    (_S.NEGOTIATING, _E.NEGOTIATION_FAILED): _S.FAILED,
    (_S.CONNECTED, _E.ENGINE_FAILED): _S.RECONNECTING,
    (_S.CONNECTED, _E.ENGINE_DISCONNECTED): _S.RECONNECTING,
    (_S.CONNECTED, _E.OFFER_RECEIVED): _S.RECONNECTING,
    (_S.RECONNECTING, _E.OFFER_SENT): _S.RECONNECTING,
    (_S.RECONNECTING, _E.OFFER_RECEIVED): _S.RECONNECTING,
    (_S.RECONNECTING, _E.ANSWER_RECEIVED): _S.RECONNECTING,
    (_S.RECONNECTING, _E.ENGINE_FAILED): _S.RECONNECTING,
    (_S.RECONNECTING, _E.ENGINE_CONNECTED): _S.CONNECTED,
    (_S.RECONNECTING, _E.RECOVERY_EXHAUSTED): _S.ENDED,
}


def next_state(state: CallState, event: CallEvent) -> Optional[CallState]:
    """Return the state ``event`` leads to from ``state``.

    ``None`` means the event does not apply in that state and should be
    ignored. ``END`` leads every live state to ``ENDED``; terminal states
    accept nothing.
    """

    if state in TERMINAL_STATES:
        return None
    if event == CallEvent.END:
        return CallState.ENDED
    return _TRANSITIONS.get((state, event))
