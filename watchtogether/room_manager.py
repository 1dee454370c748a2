"""
Room Manager - WebSocket relay between browser clients and the realtime hub.
Each connection subscribes to its room's feeds and forwards them as frames.
"""
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set

from fastapi import WebSocket
from pydantic import ValidationError

from watchtogether import config
from watchtogether.api import WatchTogetherApi
from watchtogether.exceptions import NotFoundError, WatchTogetherError
from watchtogether.models import SyncEvent, WatchRoom, WatchRoomMessage, WatchRoomParticipant
from watchtogether.room_models import ChatFrame, ServerFrame, SyncFrame
from watchtogether.security import log_security_event
from watchtogether.store import RoomStore

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class Connection:
    """One browser client attached to a room."""
    websocket: WebSocket
    room_id: str
    user_id: str
    api: WatchTogetherApi
    teardown: Optional[Callable[[], None]] = None
    frame_times: List[float] = field(default_factory=list)
    closed: bool = False


class ConnectionManager:
    """
    Manages WebSocket connections for watch rooms.
    Presence follows the socket: online on connect, away on disconnect.
    """

    def __init__(self):
        self.rooms: Dict[str, Set[Connection]] = {}
        self.store: Optional[RoomStore] = None

    def bind(self, store: RoomStore):
        self.store = store

    def connection_count(self, room_id: str) -> int:
        return len(self.rooms.get(room_id, ()))

    async def connect(self, websocket: WebSocket, room_id: str, user_id: str) -> Optional[Connection]:
        """
        Attach a joined participant to the room.
        Returns the Connection, or None after closing the socket if the room is
        unknown, the user never joined, or setup failed.
        """
        room = await self._admit(room_id, user_id)
        if room is None:
            await websocket.close(code=4001, reason="Room not found or not joined")
            return None

        api = WatchTogetherApi(self.store, user_id)
        await websocket.accept()
        conn = Connection(websocket=websocket, room_id=room_id, user_id=user_id, api=api)
        self.rooms.setdefault(room_id, set()).add(conn)

        try:
            conn.teardown = api.subscribe_to_room(
                room_id,
                on_message=lambda message: self._on_message(conn, message),
                on_participant_update=lambda participant: self._on_participant(conn, participant),
                on_sync_event=lambda event: self._on_sync(conn, event),
                on_playback_update=lambda fields: self._on_room(conn, fields),
            )

            await self.store.set_presence(room_id, user_id, "online")

            await self._send(conn, ServerFrame(
                type="room",
                data=room.model_dump(),
            ))
            history = await api.get_room_messages(room_id, config.MESSAGE_HISTORY_LIMIT)
            await self._send(conn, ServerFrame(
                type="history",
                data=[m.model_dump() for m in history],
            ))
        except Exception:
            logger.exception(f"Setting up {user_id} in watch room {room_id} failed")
            self._discard(conn)
            await websocket.close(code=1011)
            return None

        logger.info(f"{user_id} connected to watch room {room_id}")
        return conn

    async def _admit(self, room_id: str, user_id: str) -> Optional[WatchRoom]:
        if not user_id:
            return None
        try:
            room = await self.store.get_room(room_id)
        except NotFoundError:
            return None

        if room.status == "ended":
            return None
        if not any(p.user_id == user_id for p in room.active_participants):
            log_security_event("ws_not_participant", {"room": room_id, "user": user_id})
            return None
        return room

    def _discard(self, conn: Connection):
        conn.closed = True
        if conn.teardown:
            conn.teardown()

        conns = self.rooms.get(conn.room_id)
        if conns is not None:
            conns.discard(conn)
            if not conns:
                del self.rooms[conn.room_id]

    async def disconnect(self, conn: Connection):
        """Detach a connection; the participant stays in the room as away."""
        self._discard(conn)

        # Another tab may still hold the seat
        if any(c.user_id == conn.user_id for c in self.rooms.get(conn.room_id, ())):
            return
        try:
            participants = await self.store.list_participants(conn.room_id)
            if any(p.user_id == conn.user_id and p.status == "online" for p in participants):
                await self.store.set_presence(conn.room_id, conn.user_id, "away")
        except WatchTogetherError as e:
            logger.warning(f"Presence update on disconnect failed: {e.message}")

    # ============ INBOUND ============

    def _rate_limited(self, conn: Connection) -> bool:
        now = time.time()
        conn.frame_times = [t for t in conn.frame_times if now - t < config.WS_FRAME_WINDOW]
        if len(conn.frame_times) >= config.WS_FRAME_LIMIT:
            return True
        conn.frame_times.append(now)
        return False

    async def handle_frame(self, conn: Connection, data: str):
        """Dispatch one inbound text frame."""
        if self._rate_limited(conn):
            await self._send(conn, ServerFrame(type="error", data="Rate limit exceeded. Please slow down."))
            return

        try:
            frame = json.loads(data)
        except json.JSONDecodeError:
            return  # Ignore malformed frames
        if not isinstance(frame, dict):
            return

        frame_type = frame.get("type")
        try:
            if frame_type == "sync":
                sync = SyncFrame.model_validate(frame)
                await conn.api.send_sync_event(conn.room_id, sync.event, sync.current_time, sync.timestamp)
            elif frame_type == "chat":
                chat = ChatFrame.model_validate(frame)
                await conn.api.send_message(conn.room_id, chat.content, chat.message_type)
            else:
                log_security_event("unknown_ws_frame", {"room": conn.room_id, "type": str(frame_type)[:20]})
        except ValidationError as e:
            await self._send(conn, ServerFrame(type="error", data=f"Invalid {frame_type} frame"))
            logger.debug(f"Rejected frame from {conn.user_id}: {e}")
        except WatchTogetherError as e:
            await self._send(conn, ServerFrame(type="error", data=e.message))

    # ============ OUTBOUND ============

    async def _on_message(self, conn: Connection, message: WatchRoomMessage):
        await self._send(conn, ServerFrame(type="message", data=message.model_dump()))

    async def _on_participant(self, conn: Connection, participant: WatchRoomParticipant):
        await self._send(conn, ServerFrame(type="participant", data=participant.model_dump()))

    async def _on_sync(self, conn: Connection, event: SyncEvent):
        # Broadcasts are not echoed back to their sender
        if event.user_id == conn.user_id:
            return
        await self._send(conn, ServerFrame(type="sync", data=event.to_payload()))

    async def _on_room(self, conn: Connection, fields: dict):
        await self._send(conn, ServerFrame(type="room", data=fields))
        if fields.get("status") == "ended" and not conn.closed:
            conn.closed = True
            try:
                await conn.websocket.close(code=1000, reason="Room ended")
            except Exception:
                logger.debug("Socket already closed", exc_info=True)

    async def _send(self, conn: Connection, frame: ServerFrame):
        """Send with error handling."""
        if conn.closed:
            return
        try:
            await conn.websocket.send_text(frame.model_dump_json())
        except Exception:
            logger.debug(f"Dropping frame for {conn.user_id}, connection closing")


# Global connection manager instance
room_manager = ConnectionManager()
