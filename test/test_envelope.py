"""시그널링 envelope 인코딩/디코딩 테스트."""

import json

import pytest

from peercall.shared.errors import ProtocolViolation
from peercall.signaling.envelope import Envelope, EnvelopeKind, decode_envelope


def test_join_room_wire_format():
    assert json.loads(Envelope.join_room("room1").encode()) == {
        "type": "join_room",
        "payload": {"id": "room1"},
    }


def test_candidate_wire_format_keeps_init_dict():
    init = {"candidate": "candidate:1 1 udp 1 10.0.0.1 9 typ host", "sdpMid": "0", "sdpMLineIndex": 0}
    data = json.loads(Envelope.candidate("room1", init).encode())
    assert data["type"] == "candidate"
    assert data["payload"] == {"id": "room1", "candidate": init}


def test_decode_offer():
    envelope = decode_envelope('{"type": "offer", "payload": {"id": "r", "sdp": "v=0"}}')
    assert envelope.type == EnvelopeKind.OFFER
    assert envelope.require("sdp") == "v=0"
    assert envelope.get("message") is None


def test_decode_bytes_frame():
    envelope = decode_envelope(b'{"type": "peer_left"}')
    assert envelope.type == EnvelopeKind.PEER_LEFT
    assert envelope.payload is None


def test_decode_unwraps_description_object():
    frame = json.dumps({"type": "answer", "payload": {"sdp": {"type": "answer", "sdp": "v=0 answer"}}})
    assert decode_envelope(frame).require("sdp") == "v=0 answer"


def test_decode_ignores_extra_fields():
    frame = json.dumps({"type": "error", "payload": {"message": "Room full", "code": 7}, "ts": 1})
    envelope = decode_envelope(frame)
    assert envelope.get("message") == "Room full"


def test_unknown_type_is_ignored():
    assert decode_envelope('{"type": "chat", "payload": {"text": "hi"}}') is None


@pytest.mark.parametrize(
    "frame",
    [
        "not json",
        "[1, 2, 3]",
        '{"payload": {}}',
        '{"type": 5}',
        '{"type": "offer", "payload": "oops"}',
        b"\xff\xfe",
    ],
)
def test_malformed_frames_raise_protocol_violation(frame):
    with pytest.raises(ProtocolViolation):
        decode_envelope(frame)


def test_require_missing_field():
    envelope = Envelope.make(EnvelopeKind.OFFER, id="room1")
    with pytest.raises(ProtocolViolation):
        envelope.require("sdp")


def test_require_empty_field():
    envelope = Envelope.make(EnvelopeKind.ANSWER, sdp="")
    with pytest.raises(ProtocolViolation):
        envelope.require("sdp")
