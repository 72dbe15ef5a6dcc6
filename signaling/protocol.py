"""Wire protocol shared between the caller and the signaling relay.

Every message is a single JSON object carried in one WebSocket text frame.
The relay only looks at ``type`` and ``roomId``; negotiation payloads are
forwarded verbatim. This module centralises serialization/deserialization
helpers and message schemas so both halves of the application remain in sync.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import json


class MessageType(str, Enum):
    """Signaling messages exchanged through the relay."""

    JOIN_ROOM = "join-room"
    ROOM_JOINED = "room-joined"
    USER_JOINED = "user-joined"
    USER_LEFT = "user-left"
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    LEAVE_ROOM = "leave-room"
    ERROR = "error"


# Message types the relay passes from one occupant to the other untouched.
FORWARDED_TYPES = frozenset({MessageType.OFFER, MessageType.ANSWER, MessageType.ICE_CANDIDATE})


class ProtocolError(ValueError):
    """Raised when a frame cannot be decoded into a signaling message."""


@dataclass(slots=True, frozen=True)
class SessionDescription:
    """An SDP offer or answer."""

    type: str
    sdp: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "sdp": self.sdp}

    @classmethod
    def from_dict(cls, data: Any) -> "SessionDescription":
        if not isinstance(data, dict):
            raise ProtocolError("session description must be an object")
        kind = data.get("type")
        sdp = data.get("sdp")
        if kind not in ("offer", "answer"):
            raise ProtocolError(f"unsupported session description type: {kind!r}")
        if not isinstance(sdp, str) or not sdp:
            raise ProtocolError("session description is missing sdp")
        return cls(type=kind, sdp=sdp)


@dataclass(slots=True, frozen=True)
class IceCandidatePayload:
    """A trickled ICE candidate in the browser-compatible shape."""

    candidate: str
    sdp_mid: Optional[str] = None
    sdp_mline_index: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "candidate": self.candidate,
            "sdpMid": self.sdp_mid,
            "sdpMLineIndex": self.sdp_mline_index,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "IceCandidatePayload":
        if not isinstance(data, dict):
            raise ProtocolError("candidate must be an object")
        candidate = data.get("candidate")
        if not isinstance(candidate, str):
            raise ProtocolError("candidate is missing its candidate line")
        index = data.get("sdpMLineIndex")
        try:
            mline_index = int(index) if index is not None else None
        except (TypeError, ValueError) as exc:
            raise ProtocolError(f"invalid sdpMLineIndex: {index!r}") from exc
        return cls(
            candidate=candidate,
            sdp_mid=data.get("sdpMid"),
            sdp_mline_index=mline_index,
        )


@dataclass(slots=True)
class SignalingMessage:
    """Tagged union over every message type of the relay protocol."""

    type: MessageType
    room_id: Optional[str] = None
    description: Optional[SessionDescription] = None
    candidate: Optional[IceCandidatePayload] = None
    text: Optional[str] = None
    tie_breaker: Optional[int] = None
    occupants: Optional[int] = None

    @classmethod
    def join_room(cls, room_id: str) -> "SignalingMessage":
        return cls(MessageType.JOIN_ROOM, room_id=room_id)

    @classmethod
    def leave_room(cls, room_id: str) -> "SignalingMessage":
        return cls(MessageType.LEAVE_ROOM, room_id=room_id)

    @classmethod
    def room_joined(cls, room_id: str, occupants: Optional[int] = None) -> "SignalingMessage":
        return cls(MessageType.ROOM_JOINED, room_id=room_id, occupants=occupants)

    @classmethod
    def user_joined(cls, room_id: str) -> "SignalingMessage":
        return cls(MessageType.USER_JOINED, room_id=room_id)

    @classmethod
    def user_left(cls, room_id: str) -> "SignalingMessage":
        return cls(MessageType.USER_LEFT, room_id=room_id)

    @classmethod
    def offer(
        cls,
        room_id: str,
        description: SessionDescription,
        tie_breaker: Optional[int] = None,
    ) -> "SignalingMessage":
        return cls(MessageType.OFFER, room_id=room_id, description=description, tie_breaker=tie_breaker)

    @classmethod
    def answer(cls, room_id: str, description: SessionDescription) -> "SignalingMessage":
        return cls(MessageType.ANSWER, room_id=room_id, description=description)

    @classmethod
    def ice_candidate(cls, room_id: str, candidate: IceCandidatePayload) -> "SignalingMessage":
        return cls(MessageType.ICE_CANDIDATE, room_id=room_id, candidate=candidate)

    @classmethod
    def error(cls, text: str, room_id: Optional[str] = None) -> "SignalingMessage":
        return cls(MessageType.ERROR, room_id=room_id, text=text)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type.value}
        if self.room_id is not None:
            data["roomId"] = self.room_id
        if self.type == MessageType.OFFER and self.description is not None:
            data["offer"] = self.description.to_dict()
            if self.tie_breaker is not None:
                data["tieBreaker"] = self.tie_breaker
        elif self.type == MessageType.ANSWER and self.description is not None:
            data["answer"] = self.description.to_dict()
        elif self.type == MessageType.ICE_CANDIDATE and self.candidate is not None:
            data["candidate"] = self.candidate.to_dict()
        elif self.type == MessageType.ERROR:
            data["message"] = self.text or ""
        elif self.type == MessageType.ROOM_JOINED and self.occupants is not None:
            data["occupants"] = self.occupants
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "SignalingMessage":
        if not isinstance(data, dict):
            raise ProtocolError("message must be a JSON object")
        try:
            kind = MessageType(data.get("type"))
        except ValueError as exc:
            raise ProtocolError(f"unknown message type: {data.get('type')!r}") from exc

        room_id = data.get("roomId")
        if room_id is not None and not isinstance(room_id, str):
            raise ProtocolError("roomId must be a string")
        if kind != MessageType.ERROR and not room_id:
            raise ProtocolError(f"{kind.value} requires a roomId")

        message = cls(kind, room_id=room_id)
        if kind == MessageType.OFFER:
            message.description = SessionDescription.from_dict(data.get("offer"))
            tie_breaker = data.get("tieBreaker")
            if isinstance(tie_breaker, int) and not isinstance(tie_breaker, bool):
                message.tie_breaker = tie_breaker
        elif kind == MessageType.ANSWER:
            message.description = SessionDescription.from_dict(data.get("answer"))
        elif kind == MessageType.ICE_CANDIDATE:
            message.candidate = IceCandidatePayload.from_dict(data.get("candidate"))
        elif kind == MessageType.ERROR:
            message.text = str(data.get("message") or "")
        elif kind == MessageType.ROOM_JOINED:
            occupants = data.get("occupants")
            if isinstance(occupants, int) and not isinstance(occupants, bool):
                message.occupants = occupants
        return message


def encode_message(message: SignalingMessage) -> str:
    """Serialize a message into a compact JSON text frame."""

    return json.dumps(message.to_dict(), separators=(",", ":"))


def decode_message(frame: str | bytes) -> SignalingMessage:
    """Decode one text frame, raising ``ProtocolError`` on malformed input."""

    if isinstance(frame, bytes):
        try:
            frame = frame.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProtocolError("frame is not valid UTF-8") from exc
    try:
        data = json.loads(frame)
    except json.JSONDecodeError as exc:
        raise ProtocolError(f"frame is not valid JSON: {exc.msg}") from exc
    return SignalingMessage.from_dict(data)


DEFAULT_RELAY_HOST = "127.0.0.1"
DEFAULT_RELAY_PORT = 8080
DEFAULT_RELAY_URL = f"ws://{DEFAULT_RELAY_HOST}:{DEFAULT_RELAY_PORT}"
