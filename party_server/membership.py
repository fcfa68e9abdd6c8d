from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .clock import PlaybackSnapshot, materialize, now_ms
from .errors import Forbidden, RoomNotFound
from .lifecycle import RoomLifecycleManager
from .registry import Room, RoomRegistry

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LeaveOutcome:
    room_id: str
    host_id: Optional[str]
    host_changed: bool
    remaining: tuple[str, ...]

    @property
    def room_empty(self) -> bool:
        return not self.remaining


@dataclass(slots=True)
class JoinOutcome:
    room: Room
    host_id: Optional[str]
    host_changed: bool
    state: PlaybackSnapshot
    previous: Optional[LeaveOutcome] = None


class MembershipManager:
    """Tracks which connection sits in which room and who holds host."""

    def __init__(
        self,
        registry: RoomRegistry,
        lifecycle: RoomLifecycleManager,
        *,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._registry = registry
        self._lifecycle = lifecycle
        self._clock = clock
        self._room_by_connection: Dict[str, str] = {}

    def room_of(self, connection_id: str) -> Optional[str]:
        return self._room_by_connection.get(connection_id)

    def join(self, connection_id: str, room_id: str) -> JoinOutcome:
        room = self._registry.get(room_id)
        if room is None:
            raise RoomNotFound(f"room {room_id!r} does not exist")

        previous: Optional[LeaveOutcome] = None
        current = self._room_by_connection.get(connection_id)
        if current is not None and current != room_id:
            previous = self.leave(connection_id, current)

        room.participants[connection_id] = None
        self._room_by_connection[connection_id] = room_id
        self._lifecycle.cancel_deletion(room)

        host_changed = False
        if room.host_id is None:
            room.host_id = connection_id
            host_changed = True
            logger.info("Connection %s is now host of room %s", connection_id, room_id)

        logger.info("Connection %s joined room %s (%d participants)", connection_id, room_id, len(room.participants))
        return JoinOutcome(
            room=room,
            host_id=room.host_id,
            host_changed=host_changed,
            state=materialize(room.playback, self._clock()),
            previous=previous,
        )

    def leave(self, connection_id: str, room_id: str) -> Optional[LeaveOutcome]:
        room = self._registry.get(room_id)
        if room is None or not room.has_member(connection_id):
            return None

        del room.participants[connection_id]
        if self._room_by_connection.get(connection_id) == room_id:
            del self._room_by_connection[connection_id]

        host_changed = False
        if room.host_id == connection_id:
            room.host_id = next(iter(room.participants), None)
            host_changed = True
            logger.info("Host of room %s left; new host is %s", room_id, room.host_id)

        if room.is_empty:
            self._lifecycle.schedule_deletion(room)

        logger.info("Connection %s left room %s (%d participants)", connection_id, room_id, len(room.participants))
        return LeaveOutcome(
            room_id=room_id,
            host_id=room.host_id,
            host_changed=host_changed,
            remaining=tuple(room.participants),
        )

    def leave_all(self, connection_id: str) -> Optional[LeaveOutcome]:
        room_id = self._room_by_connection.get(connection_id)
        if room_id is None:
            return None
        outcome = self.leave(connection_id, room_id)
        # the room may have expired underneath a stale mapping
        self._room_by_connection.pop(connection_id, None)
        return outcome

    def claim_host(self, connection_id: str, room_id: str, secret: Optional[str]) -> Room:
        room = self._registry.get(room_id)
        if room is None:
            raise RoomNotFound(f"room {room_id!r} does not exist")
        if not room.has_member(connection_id):
            raise Forbidden("only room members may claim host")
        if not secret or not secrets.compare_digest(str(secret).encode("utf-8"), room.host_secret.encode("utf-8")):
            logger.warning("Rejected host claim by %s in room %s", connection_id, room_id)
            raise Forbidden("host secret does not match")
        if room.host_id != connection_id:
            room.host_id = connection_id
            logger.info("Connection %s reclaimed host of room %s", connection_id, room_id)
        return room
