from __future__ import annotations

import logging
import math
import time
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Deque, Dict, Iterable, Optional, Protocol

from party_shared.protocol import Action, PlaybackCommand, VideoRef

from .clock import PlaybackSnapshot, materialize, now_ms
from .errors import CreateFailed, FeatureDisabled, Forbidden, InvalidRequest, RoomNotFound, SessionError
from .lifecycle import RoomLifecycleManager
from .membership import LeaveOutcome, MembershipManager
from .registry import Room, RoomRegistry, normalise_room_code

logger = logging.getLogger(__name__)

EVENT_LOG_LIMIT = 300


class Broadcaster(Protocol):
    def send_to(self, connection_id: str, action: Action, data: Dict[str, object]) -> bool: ...

    def broadcast(self, connection_ids: Iterable[str], action: Action, data: Dict[str, object]) -> int: ...


@dataclass(slots=True)
class HandlerResult:
    """Reply to a single request: success with a payload, or failure with a reason."""

    ok: bool
    payload: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @classmethod
    def success(cls, **payload: Any) -> "HandlerResult":
        return cls(ok=True, payload=payload)

    @classmethod
    def failure(cls, error: str) -> "HandlerResult":
        return cls(ok=False, error=error)

    def to_dict(self) -> Dict[str, Any]:
        if not self.ok:
            return {"ok": False, "error": self.error}
        return {"ok": True, **self.payload}


class SessionCoordinator:
    """Per-request entry point tying rooms, membership and broadcasts together.

    Every handler runs to completion on the event loop, so room mutation needs
    no locking. Handlers raise :class:`SessionError` subclasses; :meth:`dispatch`
    turns them into failed :class:`HandlerResult` replies.
    """

    def __init__(
        self,
        registry: RoomRegistry,
        lifecycle: RoomLifecycleManager,
        broadcaster: Broadcaster,
        *,
        clock: Callable[[], int] = now_ms,
        allow_host_claim: bool = True,
    ) -> None:
        self._registry = registry
        self._lifecycle = lifecycle
        self._broadcaster = broadcaster
        self._clock = clock
        self._allow_host_claim = allow_host_claim
        self._membership = MembershipManager(registry, lifecycle, clock=clock)
        self._event_log: Deque[dict[str, object]] = deque(maxlen=EVENT_LOG_LIMIT)
        self._handlers: Dict[Action, Callable[[str, Dict[str, Any]], Optional[HandlerResult]]] = {
            Action.CREATE_ROOM: self.create_room,
            Action.JOIN_ROOM: self.join_room,
            Action.CLAIM_HOST: self.claim_host,
            Action.SET_VIDEO: self.set_video,
            Action.CONTROL: self.control,
            Action.REQUEST_STATE: self.request_state,
            Action.LEAVE_ROOM: self.leave_room,
        }
        lifecycle.set_expiry_callback(self._on_room_expired)

    @property
    def registry(self) -> RoomRegistry:
        return self._registry

    @property
    def membership(self) -> MembershipManager:
        return self._membership

    def dispatch(self, connection_id: str, action: Action, payload: Dict[str, Any]) -> Optional[HandlerResult]:
        handler = self._handlers.get(action)
        if handler is None:
            return HandlerResult.failure(InvalidRequest.code)
        try:
            return handler(connection_id, payload)
        except SessionError as exc:
            logger.debug("%s from %s rejected: %s", action.value, connection_id, exc.message)
            return HandlerResult.failure(exc.code)
        except Exception:
            logger.exception("Unhandled error while processing %s from %s", action.value, connection_id)
            return HandlerResult.failure("internal_error")

    # -- handlers ---------------------------------------------------------

    def create_room(self, connection_id: str, payload: Dict[str, Any]) -> HandlerResult:
        room: Optional[Room] = None
        try:
            self._notify_leave(self._membership.leave_all(connection_id))
            room = self._registry.create()
            joined = self._membership.join(connection_id, room.room_id)
        except CreateFailed:
            raise
        except Exception as exc:
            logger.exception("Failed to create room for %s", connection_id)
            if room is not None:
                self._discard_room(connection_id, room)
            raise CreateFailed(str(exc)) from exc

        self._record_event("room_created", {"room_id": room.room_id, "host_id": connection_id})
        reply: Dict[str, Any] = {
            "roomId": room.room_id,
            "hostId": joined.host_id,
            "isHost": True,
            "state": joined.state.to_wire(),
        }
        if self._allow_host_claim:
            reply["hostSecret"] = room.host_secret
        return HandlerResult.success(**reply)

    def join_room(self, connection_id: str, payload: Dict[str, Any]) -> HandlerResult:
        room_id = normalise_room_code(payload.get("roomId"))
        joined = self._membership.join(connection_id, room_id)
        self._notify_leave(joined.previous)
        room = joined.room

        secret = payload.get("hostSecret")
        if secret and self._allow_host_claim and room.host_id != connection_id:
            try:
                self._membership.claim_host(connection_id, room_id, secret)
            except Forbidden:
                logger.info("Ignoring bad host secret from %s joining %s", connection_id, room_id)

        self._record_event("room_joined", {"room_id": room_id, "connection_id": connection_id})
        self._broadcast_host(room)
        return HandlerResult.success(
            roomId=room_id,
            hostId=room.host_id,
            isHost=room.host_id == connection_id,
            state=joined.state.to_wire(),
        )

    def claim_host(self, connection_id: str, payload: Dict[str, Any]) -> HandlerResult:
        if not self._allow_host_claim:
            raise FeatureDisabled("host claim is disabled")
        room_id = normalise_room_code(payload.get("roomId"))
        room = self._membership.claim_host(connection_id, room_id, payload.get("hostSecret"))
        self._record_event("host_claimed", {"room_id": room_id, "host_id": connection_id})
        self._broadcast_host(room)
        return HandlerResult.success(hostId=room.host_id, isHost=True)

    def request_state(self, connection_id: str, payload: Dict[str, Any]) -> HandlerResult:
        room = self._require_room(payload)
        return HandlerResult.success(
            hostId=room.host_id,
            state=self._materialized(room).to_wire(),
        )

    def set_video(self, connection_id: str, payload: Dict[str, Any]) -> HandlerResult:
        room = self._require_room(payload)
        self._require_host(room, connection_id)
        provider = payload.get("provider")
        url = payload.get("url")
        if not isinstance(provider, str) or not provider.strip():
            raise InvalidRequest("provider is required")
        if not isinstance(url, str) or not url.strip():
            raise InvalidRequest("url is required")

        room.playback = PlaybackSnapshot(
            video=VideoRef(provider=provider.strip(), url=url.strip()),
            playing=False,
            position=0.0,
            updated_ms=self._clock(),
        )
        logger.info("Room %s switched to %s video %s", room.room_id, provider, url)
        self._record_event("video_set", {"room_id": room.room_id, "provider": provider, "url": url})
        self._broadcast_state(room)
        return HandlerResult.success()

    def control(self, connection_id: str, payload: Dict[str, Any]) -> HandlerResult:
        room = self._require_room(payload)
        self._require_host(room, connection_id)
        try:
            command = PlaybackCommand(payload.get("action"))
        except ValueError as exc:
            raise InvalidRequest(f"unknown control action {payload.get('action')!r}") from exc
        seek_to = _parse_time(payload.get("time"))
        if command is PlaybackCommand.SEEK and seek_to is None:
            raise InvalidRequest("seek requires a time")

        now = self._clock()
        snapshot = materialize(room.playback, now)
        if seek_to is not None:
            snapshot = replace(snapshot, position=max(0.0, seek_to))
        if command is PlaybackCommand.PLAY:
            snapshot = replace(snapshot, playing=True)
        elif command is PlaybackCommand.PAUSE:
            snapshot = replace(snapshot, playing=False)
        room.playback = replace(snapshot, updated_ms=now)

        logger.debug("Room %s %s at %.2fs", room.room_id, command.value, room.playback.position)
        self._broadcast_state(room)
        return HandlerResult.success()

    def leave_room(self, connection_id: str, payload: Dict[str, Any]) -> None:
        room_id = normalise_room_code(payload.get("roomId"))
        self._notify_leave(self._membership.leave(connection_id, room_id))
        return None

    def disconnect(self, connection_id: str) -> None:
        self._notify_leave(self._membership.leave_all(connection_id))

    # -- diagnostics ------------------------------------------------------

    def snapshot(self) -> dict[str, object]:
        now = self._clock()
        rooms = []
        for room in self._registry.rooms():
            summary = room.summary()
            summary["state"] = materialize(room.playback, now).to_wire()
            rooms.append(summary)
        return {
            "rooms": rooms,
            "room_count": len(rooms),
            "participant_count": sum(len(room["participants"]) for room in rooms),  # type: ignore[arg-type]
            "events": list(self._event_log),
        }

    def recent_events(self, limit: int = 100) -> list[dict[str, object]]:
        if limit <= 0:
            return []
        return list(self._event_log)[-limit:]

    # -- helpers ----------------------------------------------------------

    def _require_room(self, payload: Dict[str, Any]) -> Room:
        room_id = normalise_room_code(payload.get("roomId"))
        room = self._registry.get(room_id)
        if room is None:
            raise RoomNotFound(f"room {room_id!r} does not exist")
        return room

    def _require_host(self, room: Room, connection_id: str) -> None:
        if room.host_id != connection_id:
            raise Forbidden(f"{connection_id} is not host of {room.room_id}")

    def _materialized(self, room: Room) -> PlaybackSnapshot:
        return materialize(room.playback, self._clock())

    def _broadcast_state(self, room: Room) -> None:
        self._broadcaster.broadcast(
            list(room.participants),
            Action.STATE_UPDATE,
            {"state": self._materialized(room).to_wire()},
        )

    def _broadcast_host(self, room: Room) -> None:
        self._broadcaster.broadcast(list(room.participants), Action.HOST_UPDATE, {"hostId": room.host_id})

    def _notify_leave(self, outcome: Optional[LeaveOutcome]) -> None:
        if outcome is None:
            return
        self._record_event("room_left", {"room_id": outcome.room_id, "remaining": len(outcome.remaining)})
        if outcome.host_changed and outcome.remaining:
            self._record_event("host_changed", {"room_id": outcome.room_id, "host_id": outcome.host_id})
            self._broadcaster.broadcast(outcome.remaining, Action.HOST_UPDATE, {"hostId": outcome.host_id})

    def _discard_room(self, connection_id: str, room: Room) -> None:
        self._membership.leave(connection_id, room.room_id)
        self._lifecycle.cancel_deletion(room)
        self._registry.delete(room.room_id)

    def _on_room_expired(self, room_id: str) -> None:
        self._record_event("room_expired", {"room_id": room_id})

    def _record_event(self, event_type: str, details: Dict[str, object]) -> None:
        self._event_log.append(
            {
                "type": event_type,
                "timestamp": time.time(),
                "details": details,
            }
        )


def _parse_time(raw: object) -> Optional[float]:
    if raw is None:
        return None
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise InvalidRequest("time must be a number")
    value = float(raw)
    if not math.isfinite(value):
        raise InvalidRequest("time must be finite")
    return value
