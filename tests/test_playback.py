import pytest

from watchtogether.exceptions import ControlsLockedError, SendError
from watchtogether.models import RoomSettings, SyncEvent
from watchtogether.orchestrator import RoomOrchestrator
from watchtogether.playback import (
    PAUSED,
    PLAYING,
    PlaybackController,
    reconcile,
    should_seek,
)

from .conftest import GUEST, HOST


@pytest.mark.parametrize("drift", [0, 0.5, 2.99, 3.0])
def test_drift_within_threshold_does_not_seek(make_player, drift):
    player = make_player(current_time=100)

    result = reconcile(player, "sync", 100 + drift, sync_threshold=3)

    assert player.seeks == []
    assert not result.changed


def test_negative_drift_within_threshold_does_not_seek(make_player):
    player = make_player(current_time=100)
    reconcile(player, "sync", 97.0, sync_threshold=3)
    assert player.seeks == []


@pytest.mark.parametrize("remote", [103.01, 110, 69])
def test_drift_beyond_threshold_seeks_to_remote(make_player, remote):
    player = make_player(current_time=100)

    result = reconcile(player, "sync", remote, sync_threshold=3)

    assert player.seeks == [remote]
    assert result.seeked_to == remote
    assert result.drift == pytest.approx(abs(100 - remote))


def test_should_seek_is_strict():
    assert not should_seek(3.0, 3)
    assert should_seek(3.0001, 3)
    assert not should_seek(1, 3, intent="seek")
    assert should_seek(1, 3, intent="seek", authoritative_seek=True)


def test_play_starts_a_paused_player(make_player):
    player = make_player(state=PAUSED)

    result = reconcile(player, "play", 0)

    assert result.played
    assert player.state == PLAYING


def test_play_is_a_noop_when_already_playing(make_player):
    player = make_player(state=PLAYING)

    result = reconcile(player, "play", 0)

    assert not result.changed
    assert player.calls == []


def test_buffering_counts_as_playing(make_player):
    player = make_player()
    player.buffer()

    assert not reconcile(player, "play", 0).played
    assert reconcile(player, "pause", 0).paused


def test_pause_is_a_noop_when_already_paused(make_player):
    player = make_player(state=PAUSED)
    assert not reconcile(player, "pause", 0).changed


@pytest.mark.parametrize("intent", ["seek", "sync"])
def test_seek_and_sync_leave_play_state_alone(make_player, intent):
    playing = make_player(state=PLAYING)
    paused = make_player(state=PAUSED)

    reconcile(playing, intent, 50)
    reconcile(paused, intent, 50)

    assert playing.state == PLAYING
    assert paused.state == PAUSED
    assert playing.seeks == paused.seeks == [50]


def test_remote_seek_beyond_duration_is_clamped(make_player):
    player = make_player(current_time=10, duration=120)

    result = reconcile(player, "seek", 500)

    assert player.seeks == [120]
    assert result.seeked_to == 120


def test_player_failure_is_not_retried(make_player, caplog):
    player = make_player(current_time=0)
    player.fail_on.add("seek_to")

    result = reconcile(player, "seek", 80)

    assert [c[0] for c in player.calls] == ["seek_to"]
    assert result.seeked_to is None
    assert "failed to seek" in caplog.text


def test_play_failure_still_checks_drift(make_player):
    player = make_player(current_time=0)
    player.fail_on.add("play")

    result = reconcile(player, "play", 80)

    assert not result.played
    assert player.seeks == [80]


# ============ CONTROLLER ============


@pytest.fixture(name="watch_room")
def watch_room_fixture(create_room, api_for, make_player):
    async def _setup(**room_overrides):
        room = await create_room(**room_overrides)
        await api_for(GUEST).join_watch_room(room.id)

        clients = {}
        for user in (HOST, GUEST):
            orchestrator = RoomOrchestrator(api_for(user), room.id)
            await orchestrator.load_room()
            controller = PlaybackController(make_player(), orchestrator)
            orchestrator.subscribe(controller.handlers())
            clients[user] = controller
        return room, clients

    return _setup


@pytest.mark.asyncio
async def test_guest_controls_locked_while_waiting(watch_room):
    _, clients = await watch_room()
    guest = clients[GUEST]

    assert not guest.can_control
    with pytest.raises(ControlsLockedError):
        await guest.play()
    with pytest.raises(ControlsLockedError):
        await guest.seek(30)

    assert guest.player.calls == []


@pytest.mark.asyncio
async def test_host_start_unlocks_guests(watch_room):
    _, clients = await watch_room()
    host, guest = clients[HOST], clients[GUEST]

    assert host.can_control
    await host.orchestrator.start()

    assert guest.can_control
    event = await guest.pause()
    assert event.type == "pause"
    assert event.user_id == GUEST


@pytest.mark.asyncio
async def test_host_seek_while_waiting_keeps_guests_locked(watch_room, api_for):
    room, clients = await watch_room()
    host, guest = clients[HOST], clients[GUEST]

    await host.seek(45)
    await host.pause()

    stored = await api_for(HOST).get_watch_room(room.id)
    assert stored.status == "waiting"
    assert stored.current_time == 45
    assert guest.orchestrator.room.status == "waiting"
    assert not guest.can_control
    with pytest.raises(ControlsLockedError):
        await guest.play()


@pytest.mark.asyncio
async def test_outsider_cannot_drive_players(watch_room, api_for):
    room, clients = await watch_room()
    await clients[HOST].orchestrator.start()

    with pytest.raises(SendError):
        await api_for("stranger").send_sync_event(room.id, "seek", 500)

    assert clients[GUEST].player.seeks == []
    assert clients[HOST].player.seeks == []


@pytest.mark.asyncio
async def test_long_video_without_known_duration_is_not_cut_short(watch_room, api_for):
    room, clients = await watch_room()
    host, guest = clients[HOST], clients[GUEST]
    host.player.duration = guest.player.duration = 3600
    await host.orchestrator.start()
    await host.play()

    await host.seek(1800)

    stored = await api_for(HOST).get_watch_room(room.id)
    assert stored.video_duration is None
    assert stored.current_time == 1800
    assert host.player.seeks == [1800]
    assert guest.player.seeks == [1800]


@pytest.mark.asyncio
async def test_host_seek_moves_guest(watch_room):
    _, clients = await watch_room()
    host, guest = clients[HOST], clients[GUEST]
    await host.orchestrator.start()

    await host.play()
    await host.seek(80)

    assert guest.player.state == PLAYING
    assert guest.player.seeks == [80]
    assert host.player.seeks == [80]
    assert guest.orchestrator.playback.current_time == 80


@pytest.mark.asyncio
async def test_scenario_seek_then_small_drift(watch_room):
    """Guest at 49s sees a seek to 80, then ignores an 81 sync within threshold."""
    _, clients = await watch_room()
    host, guest = clients[HOST], clients[GUEST]
    await host.orchestrator.start()
    guest.player.current_time = 49

    guest.apply_sync_event(SyncEvent(type="seek", current_time=80, user_id=HOST))
    assert guest.player.seeks == [80]

    guest.player.current_time = 79
    result = guest.apply_sync_event(SyncEvent(type="sync", current_time=81, user_id=HOST))
    assert result.drift == pytest.approx(2)
    assert guest.player.seeks == [80]


@pytest.mark.asyncio
async def test_seek_within_threshold_is_ignored_by_default(watch_room):
    _, clients = await watch_room()
    guest = clients[GUEST]
    guest.player.current_time = 80

    guest.apply_sync_event(SyncEvent(type="seek", current_time=81, user_id=HOST))

    assert guest.player.seeks == []


@pytest.mark.asyncio
async def test_authoritative_seek_always_jumps(watch_room):
    _, clients = await watch_room(room_settings=RoomSettings(authoritative_seek=True))
    guest = clients[GUEST]
    guest.player.current_time = 80

    guest.apply_sync_event(SyncEvent(type="seek", current_time=81, user_id=HOST))
    guest.apply_sync_event(SyncEvent(type="sync", current_time=82, user_id=HOST))

    assert guest.player.seeks == [81]


@pytest.mark.asyncio
async def test_own_echo_is_ignored(watch_room):
    _, clients = await watch_room()
    host = clients[HOST]

    assert host.apply_sync_event(SyncEvent(type="seek", current_time=300, user_id=HOST)) is None
    assert host.player.seeks == []


@pytest.mark.asyncio
async def test_room_snapshot_drives_play_state(watch_room, api_for):
    room, clients = await watch_room()
    guest = clients[GUEST]

    await api_for(HOST).update_playback_state(room.id, 200, True)

    assert guest.player.state == PLAYING
    assert guest.player.seeks == [200]
    assert guest.last_reconciliation.played


@pytest.mark.asyncio
async def test_waiting_snapshot_is_ignored(watch_room):
    _, clients = await watch_room()
    assert clients[GUEST].apply_room_update({"status": "waiting", "current_time": 90}) is None


@pytest.mark.asyncio
async def test_ended_snapshot_pauses(watch_room, api_for):
    room, clients = await watch_room()
    host, guest = clients[HOST], clients[GUEST]
    await host.orchestrator.start()
    await host.play()
    assert guest.player.state == PLAYING

    await api_for(HOST).end_room(room.id)

    assert guest.player.state == PAUSED


@pytest.mark.asyncio
async def test_toggle_and_skip(watch_room):
    _, clients = await watch_room()
    host = clients[HOST]
    host.player.current_time = 100

    first = await host.toggle()
    second = await host.toggle()
    skipped = await host.skip(-10)

    assert (first.type, second.type) == ("play", "pause")
    assert skipped.type == "seek"
    assert skipped.current_time == 90
    assert host.player.seeks == [90]


@pytest.mark.asyncio
async def test_skip_backwards_past_start_clamps_to_zero(watch_room):
    _, clients = await watch_room()
    host = clients[HOST]
    host.player.current_time = 5

    await host.skip(-10)

    assert host.player.seeks == [0]


@pytest.mark.asyncio
async def test_local_actions_persist_playback(watch_room, api_for):
    room, clients = await watch_room()
    host = clients[HOST]
    host.player.current_time = 33

    await host.play()

    stored = await api_for(HOST).get_watch_room(room.id)
    assert stored.status == "playing"
    assert stored.current_time == 33
    assert host.snapshot().is_playing


@pytest.mark.asyncio
async def test_volume_and_mute_are_local(watch_room):
    _, clients = await watch_room()
    host, guest = clients[HOST], clients[GUEST]

    host.set_volume(0.4)
    host.toggle_mute()

    assert host.player.volume == 40
    assert host.player.muted
    assert host.orchestrator.playback.muted
    assert guest.player.calls == []
    host.toggle_mute()
    assert not host.player.muted
