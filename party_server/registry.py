from __future__ import annotations

import asyncio
import logging
import secrets
import string
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, Optional

from .clock import PlaybackSnapshot, now_ms
from .errors import CreateFailed

logger = logging.getLogger(__name__)

ROOM_CODE_LENGTH = 6
ROOM_CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_room_code(length: int = ROOM_CODE_LENGTH) -> str:
    """Generate a single room code (not collision-checked)."""
    return "".join(secrets.choice(ROOM_CODE_ALPHABET) for _ in range(length))


def normalise_room_code(raw: object) -> str:
    """Normalise client input to uppercase, stripping whitespace."""
    if raw is None:
        return ""
    return str(raw).strip().upper()


@dataclass(slots=True)
class Room:
    room_id: str
    host_secret: str
    playback: PlaybackSnapshot
    host_id: Optional[str] = None
    # insertion ordered: the first key is the earliest-joined participant
    participants: Dict[str, None] = field(default_factory=dict)
    pending_deletion: Optional[asyncio.TimerHandle] = None
    created_ms: int = field(default_factory=now_ms)

    @property
    def is_empty(self) -> bool:
        return not self.participants

    def has_member(self, connection_id: str) -> bool:
        return connection_id in self.participants

    def summary(self) -> dict[str, object]:
        return {
            "room_id": self.room_id,
            "host_id": self.host_id,
            "participants": list(self.participants),
            "participant_count": len(self.participants),
            "pending_deletion": self.pending_deletion is not None,
            "created_ms": self.created_ms,
            "state": self.playback.to_wire(),
        }


class RoomRegistry:
    """Process-wide map of room code to :class:`Room`."""

    def __init__(
        self,
        *,
        clock: Callable[[], int] = now_ms,
        code_factory: Callable[[], str] = generate_room_code,
        max_attempts: int = 1000,
    ) -> None:
        self._rooms: Dict[str, Room] = {}
        self._clock = clock
        self._code_factory = code_factory
        self._max_attempts = max_attempts

    def create(self) -> Room:
        room_id = self._unique_code()
        room = Room(
            room_id=room_id,
            host_secret=secrets.token_urlsafe(16),
            playback=PlaybackSnapshot(updated_ms=self._clock()),
            created_ms=self._clock(),
        )
        self._rooms[room_id] = room
        logger.info("Created room %s", room_id)
        return room

    def get(self, room_id: str) -> Optional[Room]:
        return self._rooms.get(room_id)

    def delete(self, room_id: str) -> bool:
        """Remove ``room_id`` if it still exists and nobody has joined it since."""
        room = self._rooms.get(room_id)
        if room is None:
            return False
        if not room.is_empty:
            logger.debug("Skipping delete of room %s; it has %d participants", room_id, len(room.participants))
            return False
        del self._rooms[room_id]
        logger.info("Deleted room %s", room_id)
        return True

    def rooms(self) -> Iterator[Room]:
        return iter(list(self._rooms.values()))

    def __len__(self) -> int:
        return len(self._rooms)

    def __contains__(self, room_id: object) -> bool:
        return room_id in self._rooms

    def _unique_code(self) -> str:
        for _ in range(self._max_attempts):
            code = self._code_factory()
            if code not in self._rooms:
                return code
            logger.debug("Room code collision on %s; retrying", code)
        raise CreateFailed(f"no free room code after {self._max_attempts} attempts")
