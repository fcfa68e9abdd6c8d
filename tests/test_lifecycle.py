import asyncio

import pytest

from party_server.lifecycle import RoomLifecycleManager
from party_server.membership import MembershipManager
from party_server.registry import RoomRegistry

TTL = 0.1


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.mark.anyio
async def test_empty_room_is_deleted_after_ttl() -> None:
    registry = RoomRegistry()
    expired: list[str] = []
    lifecycle = RoomLifecycleManager(registry, ttl_seconds=TTL, on_expired=expired.append)
    room = registry.create()

    lifecycle.schedule_deletion(room)
    await asyncio.sleep(TTL / 3)
    assert room.room_id in registry

    await asyncio.sleep(TTL * 2)
    assert room.room_id not in registry
    assert expired == [room.room_id]


@pytest.mark.anyio
async def test_rejoin_before_expiry_cancels_deletion() -> None:
    registry = RoomRegistry()
    lifecycle = RoomLifecycleManager(registry, ttl_seconds=TTL)
    membership = MembershipManager(registry, lifecycle)
    room = registry.create()

    membership.join("conn-1", room.room_id)
    membership.leave("conn-1", room.room_id)
    assert room.pending_deletion is not None

    await asyncio.sleep(TTL / 2)
    membership.join("conn-2", room.room_id)
    assert room.pending_deletion is None

    # well past the point the first timer would have fired
    await asyncio.sleep(TTL * 2)
    assert registry.get(room.room_id) is room


@pytest.mark.anyio
async def test_timer_rechecks_emptiness_when_it_fires() -> None:
    registry = RoomRegistry()
    expired: list[str] = []
    lifecycle = RoomLifecycleManager(registry, ttl_seconds=TTL, on_expired=expired.append)
    room = registry.create()

    lifecycle.schedule_deletion(room)
    room.participants["late-joiner"] = None

    await asyncio.sleep(TTL * 2)
    assert room.room_id in registry
    assert room.pending_deletion is None
    assert expired == []


@pytest.mark.anyio
async def test_rescheduling_replaces_previous_timer() -> None:
    registry = RoomRegistry()
    lifecycle = RoomLifecycleManager(registry, ttl_seconds=TTL)
    room = registry.create()

    lifecycle.schedule_deletion(room)
    first = room.pending_deletion
    lifecycle.schedule_deletion(room)

    assert first is not None and first.cancelled()
    assert room.pending_deletion is not first
    lifecycle.cancel_all()


@pytest.mark.anyio
async def test_cancel_all_keeps_rooms() -> None:
    registry = RoomRegistry()
    lifecycle = RoomLifecycleManager(registry, ttl_seconds=TTL)
    rooms = [registry.create() for _ in range(3)]
    for room in rooms[:2]:
        lifecycle.schedule_deletion(room)

    assert lifecycle.cancel_all() == 2
    await asyncio.sleep(TTL * 2)
    assert len(registry) == 3
    assert all(room.pending_deletion is None for room in rooms)


@pytest.mark.anyio
async def test_failing_expiry_callback_does_not_break_deletion() -> None:
    registry = RoomRegistry()

    def boom(room_id: str) -> None:
        raise RuntimeError(room_id)

    lifecycle = RoomLifecycleManager(registry, ttl_seconds=TTL / 2, on_expired=boom)
    room = registry.create()
    lifecycle.schedule_deletion(room)

    await asyncio.sleep(TTL * 2)
    assert room.room_id not in registry
