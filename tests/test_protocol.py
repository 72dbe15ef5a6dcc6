import json

import pytest

from signaling.protocol import (
    IceCandidatePayload,
    MessageType,
    ProtocolError,
    SessionDescription,
    SignalingMessage,
    decode_message,
    encode_message,
)


def test_offer_wire_shape_matches_relay_contract() -> None:
    offer = SessionDescription(type="offer", sdp="v=0\r\n")
    data = json.loads(encode_message(SignalingMessage.offer("room42", offer, tie_breaker=7)))
    assert data == {
        "type": "offer",
        "roomId": "room42",
        "offer": {"type": "offer", "sdp": "v=0\r\n"},
        "tieBreaker": 7,
    }


def test_ice_candidate_uses_camel_case_fields() -> None:
    candidate = IceCandidatePayload(candidate="candidate:1 1 udp 1 10.0.0.1 5000 typ host", sdp_mid="0", sdp_mline_index=0)
    data = json.loads(encode_message(SignalingMessage.ice_candidate("room42", candidate)))
    assert data["candidate"] == {
        "candidate": "candidate:1 1 udp 1 10.0.0.1 5000 typ host",
        "sdpMid": "0",
        "sdpMLineIndex": 0,
    }
    restored = decode_message(json.dumps(data))
    assert restored.candidate == candidate


def test_decode_accepts_bytes_and_optional_fields() -> None:
    message = decode_message(b'{"type":"room-joined","roomId":"room42","occupants":2}')
    assert message.type == MessageType.ROOM_JOINED
    assert message.room_id == "room42"
    assert message.occupants == 2

    bare = decode_message('{"type":"room-joined","roomId":"room42"}')
    assert bare.occupants is None


def test_offer_without_tie_breaker_decodes() -> None:
    message = decode_message('{"type":"offer","roomId":"r","offer":{"type":"offer","sdp":"v=0"}}')
    assert message.tie_breaker is None
    assert message.description == SessionDescription(type="offer", sdp="v=0")


def test_error_message_does_not_need_a_room() -> None:
    message = decode_message('{"type":"error","message":"room full"}')
    assert message.type == MessageType.ERROR
    assert message.text == "room full"
    assert message.room_id is None


@pytest.mark.parametrize(
    "frame",
    [
        "not json",
        "[1, 2]",
        '{"type":"shout","roomId":"r"}',
        '{"type":"join-room"}',
        '{"type":"join-room","roomId":5}',
        '{"type":"offer","roomId":"r"}',
        '{"type":"answer","roomId":"r","answer":{"type":"pranswer","sdp":"v=0"}}',
        '{"type":"offer","roomId":"r","offer":{"type":"offer","sdp":""}}',
        '{"type":"ice-candidate","roomId":"r","candidate":{"sdpMid":"0"}}',
        '{"type":"ice-candidate","roomId":"r","candidate":{"candidate":"c","sdpMLineIndex":"x"}}',
        b"\xff\xfe",
    ],
)
def test_malformed_frames_raise_protocol_error(frame) -> None:
    with pytest.raises(ProtocolError):
        decode_message(frame)
