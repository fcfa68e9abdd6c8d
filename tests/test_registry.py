import re

import pytest

from party_server.errors import CreateFailed
from party_server.registry import (
    ROOM_CODE_ALPHABET,
    RoomRegistry,
    generate_room_code,
    normalise_room_code,
)

CODE_RE = re.compile(r"^[A-Z0-9]{6}$")


class ScriptedCodes:
    """Returns the given codes in order, then repeats the last one."""

    def __init__(self, *codes: str) -> None:
        self._codes = list(codes)
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if len(self._codes) > 1:
            return self._codes.pop(0)
        return self._codes[0]


def test_generated_codes_match_format() -> None:
    for _ in range(50):
        code = generate_room_code()
        assert CODE_RE.match(code), f"Code {code!r} is not a 6-char uppercase code"
        assert all(ch in ROOM_CODE_ALPHABET for ch in code)


def test_normalise_room_code() -> None:
    assert normalise_room_code("  ab12cd ") == "AB12CD"
    assert normalise_room_code(None) == ""
    assert normalise_room_code(123) == "123"


def test_create_starts_with_empty_default_room() -> None:
    registry = RoomRegistry(clock=lambda: 5_000)
    room = registry.create()

    assert registry.get(room.room_id) is room
    assert room.participants == {}
    assert room.host_id is None
    assert room.host_secret
    assert room.pending_deletion is None
    assert room.playback.video is None
    assert room.playback.playing is False
    assert room.playback.position == 0.0
    assert room.playback.updated_ms == 5_000


def test_create_retries_on_collision() -> None:
    codes = ScriptedCodes("AAAAAA", "AAAAAA", "AAAAAA", "BBBBBB")
    registry = RoomRegistry(code_factory=codes)

    first = registry.create()
    second = registry.create()

    assert first.room_id == "AAAAAA"
    assert second.room_id == "BBBBBB"
    assert codes.calls == 4
    assert len(registry) == 2


def test_create_fails_when_no_code_is_free() -> None:
    registry = RoomRegistry(code_factory=lambda: "AAAAAA", max_attempts=5)
    registry.create()

    with pytest.raises(CreateFailed):
        registry.create()
    assert len(registry) == 1


def test_secrets_are_unique_per_room() -> None:
    registry = RoomRegistry()
    secrets = {registry.create().host_secret for _ in range(20)}
    assert len(secrets) == 20


def test_delete_only_removes_empty_rooms() -> None:
    registry = RoomRegistry()
    room = registry.create()
    room.participants["conn-1"] = None

    assert registry.delete(room.room_id) is False
    assert room.room_id in registry

    room.participants.clear()
    assert registry.delete(room.room_id) is True
    assert registry.get(room.room_id) is None
    assert registry.delete(room.room_id) is False


def test_summary_reports_membership() -> None:
    registry = RoomRegistry()
    room = registry.create()
    room.participants["conn-1"] = None
    room.host_id = "conn-1"

    summary = room.summary()
    assert summary["room_id"] == room.room_id
    assert summary["participants"] == ["conn-1"]
    assert summary["participant_count"] == 1
    assert summary["pending_deletion"] is False
