"""
Watch Together service API, bound to the calling user.

Thin layer over the room store and the realtime hub: validation, chat
rules, sync-event broadcast and per-room subscriptions.
"""
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import ValidationError

from watchtogether import config
from watchtogether.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    SendError,
)
from watchtogether.models import (
    CreateWatchRoomData,
    MessageType,
    SyncEvent,
    SyncEventType,
    WatchRoom,
    WatchRoomMessage,
    WatchRoomParticipant,
    now_ms,
)
from watchtogether.realtime import (
    RealtimeHub,
    Subscription,
    messages_topic,
    participants_topic,
    playback_topic,
    sync_topic,
)
from watchtogether.security import log_security_event, sanitize_input
from watchtogether.store import RoomStore
from watchtogether.utils.video import parse_video_url

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Union[None, Awaitable[None]]]


class WatchTogetherApi:
    """Room operations performed as ``user_id``."""

    def __init__(self, store: RoomStore, user_id: str):
        self.store = store
        self.user_id = user_id

    @property
    def hub(self) -> RealtimeHub:
        return self.store.hub

    # ============ ROOMS ============

    async def get_watch_rooms(self) -> List[WatchRoom]:
        return await self.store.list_rooms(public_only=True)

    async def get_watch_room(self, room_id: str) -> WatchRoom:
        return await self.store.get_room(room_id)

    async def create_watch_room(self, data: CreateWatchRoomData) -> WatchRoom:
        video = parse_video_url(data.video_url)
        return await self.store.create_room(self.user_id, data, video)

    async def join_watch_room(self, room_id: str, password: Optional[str] = None) -> WatchRoom:
        return await self.store.join_room(room_id, self.user_id, password)

    async def leave_watch_room(self, room_id: str):
        await self.store.leave_room(room_id, self.user_id)

    async def start_room(self, room_id: str) -> WatchRoom:
        """Host moves the room out of ``waiting``."""
        return await self.store.set_status(room_id, self.user_id, "playing")

    async def end_room(self, room_id: str) -> WatchRoom:
        return await self.store.set_status(room_id, self.user_id, "ended")

    async def update_playback_state(self, room_id: str, current_time: float,
                                    is_playing: bool) -> WatchRoom:
        return await self.store.update_playback_state(
            room_id, self.user_id, current_time, is_playing
        )

    # ============ SYNC EVENTS ============

    async def send_sync_event(self, room_id: str, event_type: SyncEventType,
                              current_time: float, timestamp: Optional[int] = None) -> SyncEvent:
        """
        Broadcast a playback intent to everyone subscribed to the room.

        Only active participants may broadcast, and only the host while the
        room is waiting. Ended rooms accept no playback intents.
        """
        try:
            event = SyncEvent(
                type=event_type,
                current_time=current_time,
                timestamp=timestamp or now_ms(),
                user_id=self.user_id,
            )
        except ValidationError as e:
            raise SendError(f"Invalid sync event: {e.errors()[0]['msg']}")

        try:
            room = await self.store.get_room(room_id)
        except NotFoundError:
            raise SendError("Room not found")
        if not any(p.user_id == self.user_id for p in room.active_participants):
            log_security_event("sync_not_participant", {"room": room_id, "user": self.user_id})
            raise SendError("Join the room to control playback")
        if room.status == "ended":
            raise InvalidTransitionError("The room has ended")
        if room.status == "waiting" and self.user_id != room.host_id:
            raise PermissionDeniedError("Waiting for the host to start the room")

        await self.hub.publish(sync_topic(room_id), "sync", event.to_payload())
        return event

    # ============ MESSAGES ============

    async def get_room_messages(self, room_id: str,
                                limit: int = config.MESSAGE_HISTORY_LIMIT) -> List[WatchRoomMessage]:
        return await self.store.get_messages(room_id, limit)

    async def send_message(self, room_id: str, message: str,
                           message_type: MessageType = "text") -> WatchRoomMessage:
        try:
            room = await self.store.get_room(room_id)
        except NotFoundError:
            raise SendError("Room not found")

        if not room.room_settings.allow_chat:
            raise SendError("Chat is disabled in this room")
        if not any(p.user_id == self.user_id for p in room.active_participants):
            raise SendError("Join the room to chat")

        content = sanitize_input(message or "", max_length=config.MAX_MESSAGE_LENGTH).strip()
        if not content:
            raise SendError("Message is empty")

        return await self.store.insert_message(room_id, self.user_id, content, message_type)

    # ============ SUBSCRIPTIONS ============

    def subscribe_to_room(
        self,
        room_id: str,
        on_message: Optional[Handler] = None,
        on_participant_update: Optional[Handler] = None,
        on_sync_event: Optional[Handler] = None,
        on_playback_update: Optional[Handler] = None,
    ) -> Callable[[], None]:
        """
        Subscribe to the room's realtime feeds.

        Only feeds with a handler are opened. Returns a teardown function
        that closes all of them and may be called any number of times.
        """
        subscriptions: List[Subscription] = []

        if on_message:
            async def message_received(event: str, payload: Dict[str, Any]):
                await _call(on_message, WatchRoomMessage(**payload))

            subscriptions.append(
                self.hub.subscribe(messages_topic(room_id), message_received, event="INSERT")
            )

        if on_participant_update:
            async def participant_changed(event: str, payload: Dict[str, Any]):
                await _call(on_participant_update, WatchRoomParticipant(**payload))

            subscriptions.append(
                self.hub.subscribe(participants_topic(room_id), participant_changed)
            )

        if on_sync_event:
            async def sync_received(event: str, payload: Dict[str, Any]):
                try:
                    sync_event = SyncEvent.model_validate(payload)
                except ValidationError:
                    logger.warning(f"Dropping malformed sync event in room {room_id}: {payload}")
                    return
                await _call(on_sync_event, sync_event)

            subscriptions.append(
                self.hub.subscribe(sync_topic(room_id), sync_received, event="sync")
            )

        if on_playback_update:
            async def room_updated(event: str, payload: Dict[str, Any]):
                await _call(on_playback_update, payload)

            subscriptions.append(
                self.hub.subscribe(playback_topic(room_id), room_updated, event="UPDATE")
            )

        def cleanup():
            for sub in subscriptions:
                sub.unsubscribe()

        return cleanup


async def _call(handler: Handler, value: Any):
    result = handler(value)
    if inspect.isawaitable(result):
        await result
