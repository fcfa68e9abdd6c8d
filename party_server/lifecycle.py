from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from .registry import Room, RoomRegistry

logger = logging.getLogger(__name__)

DEFAULT_EMPTY_ROOM_TTL = 600.0  # seconds

ExpiryCallback = Callable[[str], None]


class RoomLifecycleManager:
    """Schedules deletion of rooms that stay empty for the idle grace period."""

    def __init__(
        self,
        registry: RoomRegistry,
        *,
        ttl_seconds: float = DEFAULT_EMPTY_ROOM_TTL,
        on_expired: Optional[ExpiryCallback] = None,
    ) -> None:
        self._registry = registry
        self._ttl = max(0.0, ttl_seconds)
        self._on_expired = on_expired

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def set_expiry_callback(self, callback: Optional[ExpiryCallback]) -> None:
        self._on_expired = callback

    def schedule_deletion(self, room: Room) -> None:
        self.cancel_deletion(room)
        loop = asyncio.get_running_loop()
        room.pending_deletion = loop.call_later(self._ttl, self._expire, room.room_id)
        logger.debug("Room %s is empty; deletion scheduled in %.1fs", room.room_id, self._ttl)

    def cancel_deletion(self, room: Room) -> bool:
        handle = room.pending_deletion
        if handle is None:
            return False
        handle.cancel()
        room.pending_deletion = None
        logger.debug("Cancelled pending deletion of room %s", room.room_id)
        return True

    def cancel_all(self) -> int:
        cancelled = 0
        for room in self._registry.rooms():
            if self.cancel_deletion(room):
                cancelled += 1
        return cancelled

    def _expire(self, room_id: str) -> None:
        room = self._registry.get(room_id)
        if room is None:
            return
        room.pending_deletion = None
        # the room may have been re-joined after the timer was armed
        if not self._registry.delete(room_id):
            return
        logger.info("Removed empty room %s after %.1fs idle", room_id, self._ttl)
        if self._on_expired is not None:
            try:
                self._on_expired(room_id)
            except Exception:
                logger.exception("Room expiry callback failed for %s", room_id)
