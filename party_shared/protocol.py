"""Wire protocol shared between the sync server and its clients.

Every control message is a length-prefixed JSON envelope carried over TCP.
This module centralises serialization/deserialization helpers and the small
payload schemas so both halves of the application remain in sync.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, TypedDict

import json
import struct


class Action(str, Enum):
    """Events exchanged over the control connection."""

    # handshake and liveness
    HELLO = "hello"
    WELCOME = "welcome"
    HEARTBEAT = "heartbeat"

    # client requests
    CREATE_ROOM = "create_room"
    JOIN_ROOM = "join_room"
    CLAIM_HOST = "claim_host"
    SET_VIDEO = "set_video"
    CONTROL = "control"
    REQUEST_STATE = "request_state"
    LEAVE_ROOM = "leave_room"

    # server replies and broadcasts
    ACK = "ack"
    ERROR = "error"
    HOST_UPDATE = "host_update"
    STATE_UPDATE = "state_update"


class PlaybackCommand(str, Enum):
    """Commands accepted by the ``control`` request."""

    PLAY = "play"
    PAUSE = "pause"
    SEEK = "seek"


REQUEST_ACTIONS = frozenset(
    {
        Action.CREATE_ROOM,
        Action.JOIN_ROOM,
        Action.CLAIM_HOST,
        Action.SET_VIDEO,
        Action.CONTROL,
        Action.REQUEST_STATE,
        Action.LEAVE_ROOM,
    }
)


class ProtocolError(ValueError):
    """Raised when a frame cannot be decoded into an envelope."""


@dataclass(slots=True, frozen=True)
class VideoRef:
    """Provider-qualified reference to the video a room is watching."""

    provider: str
    url: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "url": self.url,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VideoRef":
        return cls(
            provider=str(data["provider"]),
            url=str(data["url"]),
        )


@dataclass(slots=True)
class ClientIdentity:
    """Identity packet sent by a client in its ``hello``."""

    client_name: Optional[str] = None
    client_version: str = "0.1.0"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "client_version": self.client_version,
        }
        if self.client_name:
            data["client_name"] = self.client_name
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClientIdentity":
        return cls(
            client_name=data.get("client_name"),
            client_version=data.get("client_version", "0.1.0"),
        )


class Envelope(TypedDict):
    """Generic representation of control messages sent over TCP."""

    action: str
    data: Dict[str, Any]


def encode_message(action: Action, data: Dict[str, Any]) -> bytes:
    """Serialize a control message using length-prefixed JSON."""

    envelope: Envelope = {
        "action": action.value,
        "data": data,
    }
    payload = json.dumps(envelope, separators=(',', ':')).encode("utf-8")
    return struct.pack("!I", len(payload)) + payload


def decode_stream(buffer: bytes) -> tuple[list[Envelope], bytes]:
    """Decode as many complete control messages from the buffer as possible.

    Returns a tuple of (messages, remaining_buffer). A complete frame that is
    not a JSON object with an ``action`` string raises :class:`ProtocolError`
    after the frames preceding it have been consumed; callers that want to
    keep the connection alive should use :func:`decode_stream_lenient`.
    """

    offset = 0
    messages: list[Envelope] = []
    buf_len = len(buffer)

    while offset + 4 <= buf_len:
        (length,) = struct.unpack_from("!I", buffer, offset)
        if offset + 4 + length > buf_len:
            break
        start = offset + 4
        end = start + length
        messages.append(_parse_envelope(buffer[start:end]))
        offset = end

    return messages, buffer[offset:]


def decode_stream_lenient(buffer: bytes) -> tuple[list[Envelope], list[str], bytes]:
    """Like :func:`decode_stream` but collects bad frames instead of raising.

    Returns (messages, errors, remaining_buffer).
    """

    offset = 0
    messages: list[Envelope] = []
    errors: list[str] = []
    buf_len = len(buffer)

    while offset + 4 <= buf_len:
        (length,) = struct.unpack_from("!I", buffer, offset)
        if offset + 4 + length > buf_len:
            break
        start = offset + 4
        end = start + length
        try:
            messages.append(_parse_envelope(buffer[start:end]))
        except ProtocolError as exc:
            errors.append(str(exc))
        offset = end

    return messages, errors, buffer[offset:]


def _parse_envelope(frame: bytes) -> Envelope:
    try:
        envelope = json.loads(frame.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ProtocolError(f"malformed frame: {exc}") from exc
    if not isinstance(envelope, dict) or not isinstance(envelope.get("action"), str):
        raise ProtocolError("frame is not an envelope")
    data = envelope.get("data")
    if data is None:
        envelope["data"] = {}
    elif not isinstance(data, dict):
        raise ProtocolError("envelope data must be an object")
    return envelope  # type: ignore[return-value]


DEFAULT_TCP_PORT = 55000
DEFAULT_HEALTH_PORT = 8700
