from datetime import datetime, timedelta, timezone

import pytest

from watchtogether.cleanup import cleanup_stale

from .conftest import GUEST, HOST


@pytest.mark.asyncio
async def test_away_participants_expire_after_grace_period(create_room, api_for, store):
    room = await create_room()
    await api_for(GUEST).join_watch_room(room.id)
    await store.set_presence(room.id, GUEST, "away")

    soon = await cleanup_stale(store, datetime.now(timezone.utc) + timedelta(minutes=1))
    assert soon["participants_offline"] == 0

    later = await cleanup_stale(store, datetime.now(timezone.utc) + timedelta(minutes=10))
    assert later == {"participants_offline": 1, "rooms_ended": []}

    participants = {p.user_id: p for p in await store.list_participants(room.id)}
    assert participants[GUEST].status == "offline"
    assert participants[GUEST].left_at is not None
    assert participants[HOST].status == "online"


@pytest.mark.asyncio
async def test_idle_rooms_without_anyone_online_are_ended(create_room, api_for, store):
    busy = await create_room(name="Busy")
    idle = await create_room(host="other-host", name="Idle")
    await api_for("other-host").leave_watch_room(idle.id)

    result = await cleanup_stale(store, datetime.now(timezone.utc) + timedelta(hours=13))

    assert result["rooms_ended"] == [idle.id]
    assert (await store.get_room(idle.id)).status == "ended"
    assert (await store.get_room(busy.id)).status == "waiting"


@pytest.mark.asyncio
async def test_recent_rooms_are_kept(create_room, api_for, store):
    room = await create_room()
    await api_for(HOST).leave_watch_room(room.id)

    result = await cleanup_stale(store)

    assert result["rooms_ended"] == []
    assert (await store.get_room(room.id)).status == "waiting"
