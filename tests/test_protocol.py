import json
import struct

import pytest

from party_shared.protocol import (
    Action,
    ClientIdentity,
    ProtocolError,
    VideoRef,
    decode_stream,
    decode_stream_lenient,
    encode_message,
)


def test_encode_decode_control_roundtrip() -> None:
    payload = {"roomId": "AB12CD", "requestId": 7}
    encoded = encode_message(Action.JOIN_ROOM, payload)
    messages, remaining = decode_stream(encoded)
    assert remaining == b""
    assert len(messages) == 1
    assert messages[0]["action"] == Action.JOIN_ROOM.value
    assert messages[0]["data"] == payload


def test_partial_frame_is_left_in_buffer() -> None:
    first = encode_message(Action.HEARTBEAT, {})
    second = encode_message(Action.REQUEST_STATE, {"roomId": "AB12CD"})
    messages, remaining = decode_stream(first + second[:5])
    assert [m["action"] for m in messages] == ["heartbeat"]
    assert remaining == second[:5]

    messages, remaining = decode_stream(remaining + second[5:])
    assert messages[0]["data"] == {"roomId": "AB12CD"}
    assert remaining == b""


def _frame(raw: bytes) -> bytes:
    return struct.pack("!I", len(raw)) + raw


def test_strict_decode_rejects_non_envelope() -> None:
    with pytest.raises(ProtocolError):
        decode_stream(_frame(b"[1, 2, 3]"))


def test_lenient_decode_skips_bad_frames() -> None:
    good = encode_message(Action.LEAVE_ROOM, {"roomId": "AB12CD"})
    buffer = _frame(b"not json") + good + _frame(json.dumps({"action": "control", "data": 5}).encode())
    messages, errors, remaining = decode_stream_lenient(buffer)
    assert [m["action"] for m in messages] == ["leave_room"]
    assert len(errors) == 2
    assert remaining == b""


def test_missing_data_defaults_to_empty_object() -> None:
    messages, _ = decode_stream(_frame(json.dumps({"action": "create_room"}).encode()))
    assert messages[0]["data"] == {}


def test_video_ref_and_identity_serialization() -> None:
    video = VideoRef(provider="youtube", url="https://youtube.com/watch?v=X")
    assert VideoRef.from_dict(video.to_dict()) == video

    identity = ClientIdentity()
    assert "client_name" not in identity.to_dict()
    named = ClientIdentity.from_dict({"client_name": "living-room"})
    assert named.client_name == "living-room"
    assert named.client_version == "0.1.0"
