"""
Playback Controller: keeps one client's video player in step with the room.

Local actions drive the player and broadcast a sync event. Remote sync
events and room snapshots are reconciled against the player with a drift
threshold, so small network jitter never causes a visible jump. There is
no stale-event rejection: the last event received wins.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from watchtogether import config
from watchtogether.exceptions import ControlsLockedError
from watchtogether.models import PlaybackState, SyncEvent
from watchtogether.orchestrator import RoomHandlers, RoomOrchestrator

logger = logging.getLogger(__name__)

# YouTube IFrame player states
UNSTARTED = -1
ENDED = 0
PLAYING = 1
PAUSED = 2
BUFFERING = 3
CUED = 5


class VideoPlayer(Protocol):
    """The opaque player a controller drives (YouTube IFrame API shape)."""

    def play(self) -> None: ...

    def pause(self) -> None: ...

    def seek_to(self, seconds: float) -> None: ...

    def get_current_time(self) -> float: ...

    def get_duration(self) -> float: ...

    def get_player_state(self) -> int: ...

    def set_volume(self, volume: int) -> None: ...

    def mute(self) -> None: ...

    def un_mute(self) -> None: ...


@dataclass
class Reconciliation:
    """What a reconcile pass did to the local player."""
    played: bool = False
    paused: bool = False
    seeked_to: Optional[float] = None
    drift: Optional[float] = None

    @property
    def changed(self) -> bool:
        return self.played or self.paused or self.seeked_to is not None


def player_is_playing(player: VideoPlayer) -> bool:
    # Buffering counts as playing: the player resumes on its own
    return player.get_player_state() in (PLAYING, BUFFERING)


def clamp_to_duration(player: VideoPlayer, seconds: float) -> float:
    seconds = max(0.0, seconds)
    try:
        duration = player.get_duration()
    except Exception:
        return seconds
    if duration and duration > 0:
        seconds = min(seconds, duration)
    return seconds


def should_seek(drift: float, sync_threshold: float, intent: str = "sync",
                authoritative_seek: bool = False) -> bool:
    """Drift strictly above the threshold forces a seek."""
    if intent == "seek" and authoritative_seek:
        return drift > 0
    return drift > sync_threshold


def reconcile(player: VideoPlayer, intent: str, remote_time: float,
              sync_threshold: float = config.DEFAULT_SYNC_THRESHOLD,
              authoritative_seek: bool = False) -> Reconciliation:
    """
    Bring ``player`` in line with a remote playback intent.

    ``play`` starts a paused player and ``pause`` stops a playing one;
    either is a no-op when the player is already there. ``seek`` and
    ``sync`` leave play state alone. Independently, the position is forced
    to ``remote_time`` only when the drift exceeds ``sync_threshold``.

    Player failures are logged and not retried.
    """
    result = Reconciliation()

    try:
        playing = player_is_playing(player)
        if intent == "play" and not playing:
            player.play()
            result.played = True
        elif intent == "pause" and playing:
            player.pause()
            result.paused = True
    except Exception:
        logger.warning(f"Player failed to apply remote {intent}", exc_info=True)

    try:
        local_time = player.get_current_time()
    except Exception:
        logger.warning("Player position unavailable, skipping drift check", exc_info=True)
        return result

    result.drift = abs(local_time - remote_time)
    if should_seek(result.drift, sync_threshold, intent, authoritative_seek):
        target = clamp_to_duration(player, remote_time)
        try:
            player.seek_to(target)
            result.seeked_to = target
        except Exception:
            logger.warning(f"Player failed to seek to {target:.2f}s", exc_info=True)

    return result


STATUS_INTENT = {"playing": "play", "paused": "pause", "ended": "pause"}


class PlaybackController:
    """Drives one local player on behalf of a room orchestrator."""

    def __init__(self, player: VideoPlayer, orchestrator: RoomOrchestrator):
        self.player = player
        self.orchestrator = orchestrator
        self.last_reconciliation: Optional[Reconciliation] = None

    # ============ STATE ============

    @property
    def can_control(self) -> bool:
        """Non-hosts are locked out until the host starts the room."""
        room = self.orchestrator.room
        if room is None:
            return False
        return room.status != "waiting" or self.orchestrator.is_host

    def is_playing(self) -> bool:
        return player_is_playing(self.player)

    def current_time(self) -> float:
        return self.player.get_current_time()

    def snapshot(self) -> PlaybackState:
        state = self.orchestrator.playback
        return state.model_copy(update={
            "is_playing": self.is_playing(),
            "current_time": self.current_time(),
            "duration": self.player.get_duration() or 0,
        })

    def _require_control(self):
        if not self.can_control:
            raise ControlsLockedError("Waiting for the host to start the room")

    # ============ LOCAL ACTIONS ============

    async def play(self) -> Optional[SyncEvent]:
        self._require_control()
        self.player.play()
        return await self._broadcast("play", self.player.get_current_time(), True)

    async def pause(self) -> Optional[SyncEvent]:
        self._require_control()
        self.player.pause()
        return await self._broadcast("pause", self.player.get_current_time(), False)

    async def toggle(self) -> Optional[SyncEvent]:
        if self.is_playing():
            return await self.pause()
        return await self.play()

    async def seek(self, seconds: float) -> Optional[SyncEvent]:
        self._require_control()
        target = clamp_to_duration(self.player, seconds)
        self.player.seek_to(target)
        return await self._broadcast("seek", target, self.is_playing())

    async def skip(self, delta: float) -> Optional[SyncEvent]:
        return await self.seek(self.player.get_current_time() + delta)

    def set_volume(self, volume: float):
        """Local only; ``volume`` in [0, 1]."""
        volume = min(max(volume, 0.0), 1.0)
        self.player.set_volume(int(volume * 100))
        self.orchestrator.playback.volume = volume
        self.orchestrator.playback.muted = volume == 0

    def toggle_mute(self):
        if self.orchestrator.playback.muted:
            self.player.un_mute()
            self.orchestrator.playback.muted = False
        else:
            self.player.mute()
            self.orchestrator.playback.muted = True

    async def _broadcast(self, event_type: str, current_time: float,
                         is_playing: bool) -> Optional[SyncEvent]:
        # Both calls are best-effort and never raise
        event = await self.orchestrator.send_sync_event(event_type, current_time)
        await self.orchestrator.update_playback(current_time, is_playing)
        return event

    # ============ REMOTE RECONCILIATION ============

    def _settings(self):
        room = self.orchestrator.room
        if room is None:
            return config.DEFAULT_SYNC_THRESHOLD, False
        return room.room_settings.sync_threshold, room.room_settings.authoritative_seek

    def apply_sync_event(self, event: SyncEvent) -> Optional[Reconciliation]:
        """Reconcile against a broadcast event. Our own echoes are ignored."""
        if event.user_id == self.orchestrator.user_id:
            return None
        threshold, authoritative_seek = self._settings()
        result = reconcile(self.player, event.type, event.current_time,
                           threshold, authoritative_seek)
        self.last_reconciliation = result
        if result.changed:
            logger.debug(f"Reconciled {event.type} from {event.user_id}: {result}")
        return result

    def apply_room_update(self, fields: Dict[str, Any]) -> Optional[Reconciliation]:
        """Reconcile against a persisted room snapshot."""
        intent = STATUS_INTENT.get(fields.get("status"))
        if intent is None:
            return None
        remote_time = fields.get("current_time")
        if remote_time is None:
            remote_time = self.player.get_current_time()
        threshold, _ = self._settings()
        result = reconcile(self.player, intent, float(remote_time), threshold)
        self.last_reconciliation = result
        return result

    def handlers(self) -> RoomHandlers:
        return RoomHandlers(
            on_sync_event=self.apply_sync_event,
            on_playback_update=self.apply_room_update,
        )
