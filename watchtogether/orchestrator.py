"""
Room Orchestrator: one client's live view of a watch room.

Loads the room, keeps subscriptions open and merges persisted room
snapshots with ephemeral sync events into a single local state. Snapshot
persistence and sync emission are best-effort: failures are logged and the
broadcast path is never blocked on durability.
"""
import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from watchtogether import config
from watchtogether.api import WatchTogetherApi
from watchtogether.exceptions import LoadError, NotFoundError, WatchTogetherError
from watchtogether.models import (
    PlaybackState,
    SyncEvent,
    SyncEventType,
    WatchRoom,
    WatchRoomMessage,
    WatchRoomParticipant,
)

logger = logging.getLogger(__name__)


@dataclass
class RoomHandlers:
    """Callbacks invoked after each inbound event is merged into local state."""
    on_message: Optional[Callable[[WatchRoomMessage], Any]] = None
    on_participant_update: Optional[Callable[[WatchRoomParticipant], Any]] = None
    on_sync_event: Optional[Callable[[SyncEvent], Any]] = None
    on_playback_update: Optional[Callable[[Dict[str, Any]], Any]] = None


class RoomOrchestrator:
    """Coordinates load, subscriptions and playback persistence for a room."""

    def __init__(
        self,
        api: WatchTogetherApi,
        room_id: str,
        load_timeout: float = config.LOAD_TIMEOUT_SECONDS,
        load_retries: int = config.LOAD_RETRIES,
        retry_delay: float = 0.5,
        message_limit: int = config.MESSAGE_HISTORY_LIMIT,
    ):
        self.api = api
        self.room_id = room_id
        self.load_timeout = load_timeout
        self.load_retries = load_retries
        self.retry_delay = retry_delay
        self.message_limit = message_limit

        self.room: Optional[WatchRoom] = None
        self.participants: List[WatchRoomParticipant] = []
        self.messages: List[WatchRoomMessage] = []
        self.playback = PlaybackState()
        self.loading = False
        self.error: Optional[str] = None
        self.mounted = True

        self._teardown: Optional[Callable[[], None]] = None
        self._heartbeat: Optional[asyncio.Task] = None

    # ============ STATE ============

    @property
    def user_id(self) -> str:
        return self.api.user_id

    @property
    def is_host(self) -> bool:
        return self.room is not None and self.room.host_id == self.user_id

    @property
    def is_waiting(self) -> bool:
        return self.room is not None and self.room.status == "waiting"

    @property
    def sync_threshold(self) -> float:
        if self.room is None:
            return config.DEFAULT_SYNC_THRESHOLD
        return self.room.sync_threshold

    # ============ LOAD ============

    async def _fetch(self):
        return await asyncio.gather(
            self.api.get_watch_room(self.room_id),
            self.api.get_room_messages(self.room_id, self.message_limit),
        )

    async def load_room(self) -> Optional[WatchRoom]:
        """
        Fetch the room, its participants and recent messages.

        Each attempt is bounded by ``load_timeout`` and transport failures
        are retried ``load_retries`` times. Raises NotFoundError for an
        unknown room and LoadError once retries are exhausted. Results that
        arrive after :meth:`close` are discarded.
        """
        self.loading = True
        self.error = None
        last_error: Optional[LoadError] = None

        for attempt in range(self.load_retries + 1):
            if attempt:
                await asyncio.sleep(self.retry_delay * 2 ** (attempt - 1))
            try:
                room, messages = await asyncio.wait_for(self._fetch(), timeout=self.load_timeout)
                break
            except NotFoundError as e:
                self._load_failed(e.message)
                raise
            except asyncio.TimeoutError:
                last_error = LoadError("Timed out loading room data")
            except Exception as e:
                logger.warning(f"Loading room {self.room_id} failed (attempt {attempt + 1}): {e}")
                last_error = LoadError("Failed to load room data")
        else:
            self._load_failed(last_error.message)
            raise last_error

        if not self.mounted:
            self.loading = False
            return None

        self.room = room
        self.participants = list(room.participants or [])
        self.messages = messages
        self.playback = self.playback.model_copy(update={
            "is_playing": room.status == "playing",
            "current_time": room.current_time or 0,
            "duration": room.video_duration or 0,
        })
        self.loading = False
        return room

    def _load_failed(self, message: str):
        if not self.mounted:
            return
        self.error = message
        self.loading = False

    # ============ SUBSCRIPTIONS ============

    def subscribe(self, handlers: Optional[RoomHandlers] = None) -> Callable[[], None]:
        """
        Open the room's message, participant, sync and room-row feeds.

        Returns a teardown function that is safe to call repeatedly. A
        second subscribe replaces the first.
        """
        handlers = handlers or RoomHandlers()
        if self._teardown:
            self._teardown()

        async def on_message(message: WatchRoomMessage):
            if not self.mounted:
                return
            if all(m.id != message.id for m in self.messages):
                self.messages.append(message)
            await _maybe_await(handlers.on_message, message)

        async def on_participant(participant: WatchRoomParticipant):
            if not self.mounted:
                return
            self.participants = [p for p in self.participants if p.id != participant.id]
            self.participants.append(participant)
            await _maybe_await(handlers.on_participant_update, participant)

        async def on_sync(event: SyncEvent):
            if not self.mounted or event.user_id == self.user_id:
                return
            update: Dict[str, Any] = {"current_time": event.current_time}
            if event.type in ("play", "pause"):
                update["is_playing"] = event.type == "play"
            self.playback = self.playback.model_copy(update=update)
            await _maybe_await(handlers.on_sync_event, event)

        async def on_room(fields: Dict[str, Any]):
            if not self.mounted:
                return
            self._merge_room(fields)
            await _maybe_await(handlers.on_playback_update, fields)

        cleanup = self.api.subscribe_to_room(
            self.room_id,
            on_message=on_message,
            on_participant_update=on_participant,
            on_sync_event=on_sync,
            on_playback_update=on_room,
        )

        def teardown():
            cleanup()
            if self._teardown is teardown:
                self._teardown = None

        self._teardown = teardown
        return teardown

    def _merge_room(self, fields: Dict[str, Any]):
        if self.room is not None:
            data = self.room.model_dump()
            data.update({k: v for k, v in fields.items() if k in WatchRoom.model_fields})
            data["participants"] = [p.model_dump() for p in self.participants]
            self.room = WatchRoom.model_validate(data)

        update: Dict[str, Any] = {}
        if fields.get("current_time") is not None:
            update["current_time"] = fields["current_time"]
        if fields.get("status"):
            update["is_playing"] = fields["status"] == "playing"
        self.playback = self.playback.model_copy(update=update)

    # ============ ACTIONS ============

    async def send_message(self, text: str) -> WatchRoomMessage:
        """Direct user action: failures raise SendError for the caller to show."""
        message = await self.api.send_message(self.room_id, text)
        if self.mounted and all(m.id != message.id for m in self.messages):
            self.messages.append(message)
        return message

    async def update_playback(self, current_time: float, is_playing: bool) -> bool:
        """Persist a playback snapshot. Failures are logged, never raised."""
        try:
            await self.api.update_playback_state(self.room_id, current_time, is_playing)
        except Exception as e:
            logger.error(f"Failed to update playback state for {self.room_id}: {e}")
            return False
        if self.mounted:
            self.playback = self.playback.model_copy(update={
                "current_time": current_time,
                "is_playing": is_playing,
            })
        return True

    async def send_sync_event(self, event_type: SyncEventType,
                              current_time: float) -> Optional[SyncEvent]:
        """Fire-and-forget broadcast. Failures are logged, never raised."""
        try:
            return await self.api.send_sync_event(self.room_id, event_type, current_time)
        except Exception as e:
            logger.error(f"Failed to send sync event for {self.room_id}: {e}")
            return None

    async def start(self) -> WatchRoom:
        """Host starts the show for everyone."""
        room = await self.api.start_room(self.room_id)
        if self.mounted:
            self._merge_room(room.model_dump(exclude={"participants", "participant_count"}))
        return room

    async def leave(self):
        try:
            await self.api.leave_watch_room(self.room_id)
        except WatchTogetherError as e:
            logger.warning(f"Leaving room {self.room_id} failed: {e.message}")
        finally:
            self.close()

    # ============ HEARTBEAT ============

    async def heartbeat(self, controller, interval: float = config.HEARTBEAT_INTERVAL_SECONDS):
        """While hosting and playing, periodically broadcast and persist position."""
        while self.mounted:
            await asyncio.sleep(interval)
            if not (self.mounted and self.is_host and controller.is_playing()):
                continue
            current_time = controller.current_time()
            await self.send_sync_event("sync", current_time)
            await self.update_playback(current_time, True)

    def start_heartbeat(self, controller,
                        interval: float = config.HEARTBEAT_INTERVAL_SECONDS) -> asyncio.Task:
        if self._heartbeat is None or self._heartbeat.done():
            self._heartbeat = asyncio.create_task(self.heartbeat(controller, interval))
        return self._heartbeat

    def close(self):
        """Unmount: tear down subscriptions and ignore any late responses."""
        self.mounted = False
        if self._teardown:
            self._teardown()
        if self._heartbeat and not self._heartbeat.done():
            self._heartbeat.cancel()
        self._heartbeat = None


async def _maybe_await(handler: Optional[Callable[[Any], Any]], value: Any):
    if handler is None:
        return
    result = handler(value)
    if inspect.isawaitable(result):
        await result
