"""
Room State Store: durable watch rooms, participants and messages.

Every write publishes a change notification on the room's realtime topics,
so subscribers see inserts and updates without polling.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Union

import aiosqlite

from watchtogether.database import get_db
from watchtogether.exceptions import (
    InvalidTransitionError,
    JoinError,
    NotFoundError,
    PermissionDeniedError,
)
from watchtogether.models import (
    CreateWatchRoomData,
    MessageType,
    PresenceStatus,
    VideoSource,
    WatchRoom,
    WatchRoomMessage,
    WatchRoomParticipant,
)
from watchtogether.realtime import (
    RealtimeHub,
    messages_topic,
    participants_topic,
    playback_topic,
)
from watchtogether.security import hash_password, log_security_event, verify_password
from watchtogether.utils.code_generator import ensure_unique_room_id

logger = logging.getLogger(__name__)

ACTIVE_COUNT_SQL = """
    (SELECT COUNT(*) FROM watch_room_participants
     WHERE room_id = ? AND status != 'offline')
"""


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def clamp_time(current_time: float, duration: Optional[float]) -> float:
    current_time = max(0.0, float(current_time))
    if duration:
        current_time = min(current_time, float(duration))
    return current_time


class RoomStore:
    """CRUD over watch rooms with change notifications."""

    def __init__(self, hub: RealtimeHub, db_path: Optional[Union[str, Path]] = None):
        self.hub = hub
        self.db_path = db_path
        # Serialises joins within this process; the SQL guard covers other writers
        self._join_lock = asyncio.Lock()

    async def _db(self) -> aiosqlite.Connection:
        return await get_db(self.db_path)

    # ============ READS ============

    async def list_rooms(self, public_only: bool = True) -> List[WatchRoom]:
        db = await self._db()
        try:
            cursor = await db.execute(
                f"""
                SELECT r.*, (
                    SELECT COUNT(*) FROM watch_room_participants p
                    WHERE p.room_id = r.id AND p.status != 'offline'
                ) AS participant_count
                FROM watch_rooms r
                {"WHERE r.is_public = 1" if public_only else ""}
                ORDER BY r.created_at DESC
                """
            )
            rows = await cursor.fetchall()
        finally:
            await db.close()
        return [WatchRoom.from_row(row) for row in rows]

    async def get_room(self, room_id: str, with_participants: bool = True) -> WatchRoom:
        """Fetch one room; raises NotFoundError when the id does not resolve."""
        db = await self._db()
        try:
            room = await self._fetch_room(db, room_id)
            if with_participants:
                room.participants = await self._fetch_participants(db, room_id)
                room.participant_count = len(room.active_participants)
        finally:
            await db.close()
        return room

    async def list_participants(self, room_id: str) -> List[WatchRoomParticipant]:
        db = await self._db()
        try:
            return await self._fetch_participants(db, room_id)
        finally:
            await db.close()

    async def get_messages(self, room_id: str, limit: int = 50) -> List[WatchRoomMessage]:
        """Most recent ``limit`` messages, oldest first."""
        db = await self._db()
        try:
            cursor = await db.execute(
                """
                SELECT id, room_id, user_id, message, message_type, created_at
                FROM watch_room_messages
                WHERE room_id = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (room_id, limit),
            )
            rows = await cursor.fetchall()
        finally:
            await db.close()
        return [WatchRoomMessage.from_row(row) for row in reversed(rows)]

    async def _fetch_room(self, db, room_id: str) -> WatchRoom:
        cursor = await db.execute("SELECT * FROM watch_rooms WHERE id = ?", (room_id,))
        row = await cursor.fetchone()
        if not row:
            raise NotFoundError("Room not found")
        return WatchRoom.from_row(row)

    async def _fetch_participants(self, db, room_id: str) -> List[WatchRoomParticipant]:
        cursor = await db.execute(
            "SELECT * FROM watch_room_participants WHERE room_id = ? ORDER BY joined_at",
            (room_id,),
        )
        return [WatchRoomParticipant.from_row(row) for row in await cursor.fetchall()]

    async def _fetch_participant(self, db, room_id: str, user_id: str) -> Optional[WatchRoomParticipant]:
        cursor = await db.execute(
            "SELECT * FROM watch_room_participants WHERE room_id = ? AND user_id = ?",
            (room_id, user_id),
        )
        row = await cursor.fetchone()
        return WatchRoomParticipant.from_row(row) if row else None

    # ============ ROOMS ============

    async def create_room(self, host_id: str, data: CreateWatchRoomData,
                          video: VideoSource) -> WatchRoom:
        """Insert a room in ``waiting`` status with the host as moderator."""
        now = utc_now()
        db = await self._db()
        try:
            room_id = await ensure_unique_room_id(db)
            await db.execute(
                """
                INSERT INTO watch_rooms (
                    id, name, description, host_id, is_public, password_hash, status,
                    scheduled_start, video_url, video_title, video_duration, "current_time",
                    max_participants, room_settings, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, 'waiting', ?, ?, ?, ?, 0, ?, ?, ?, ?)
                """,
                (
                    room_id, data.name, data.description, host_id, int(data.is_public),
                    hash_password(data.password) if data.password else None,
                    data.scheduled_start, video.url or None, video.title,
                    data.video_duration or video.duration,
                    data.max_participants, data.room_settings.model_dump_json(), now, now,
                ),
            )
            await db.execute(
                """
                INSERT INTO watch_room_participants
                    (id, room_id, user_id, joined_at, is_moderator, status, last_seen_at)
                VALUES (?, ?, ?, ?, 1, 'online', ?)
                """,
                (str(uuid.uuid4()), room_id, host_id, now, now),
            )
            await db.commit()
            room = await self._fetch_room(db, room_id)
            room.participants = await self._fetch_participants(db, room_id)
            room.participant_count = len(room.participants)
        finally:
            await db.close()

        logger.info(f"Watch room created: {room_id} by {host_id}")
        return room

    async def update_playback_state(self, room_id: str, user_id: str,
                                    current_time: float, is_playing: bool) -> WatchRoom:
        """
        Persist a coarse playback snapshot.

        Concurrent writers race and the last write wins. The offset is
        clamped to the video duration when known. Only playing starts a
        waiting room; a paused snapshot keeps it waiting.
        """
        db = await self._db()
        try:
            room = await self._fetch_room(db, room_id)
            if room.status == "ended":
                raise InvalidTransitionError("The room has ended")
            if room.status == "waiting" and user_id != room.host_id:
                raise PermissionDeniedError("Only the host can start playback")

            if is_playing:
                status = "playing"
            else:
                status = "waiting" if room.status == "waiting" else "paused"

            await db.execute(
                """
                UPDATE watch_rooms SET "current_time" = ?, status = ?, updated_at = ?
                WHERE id = ? AND status != 'ended'
                """,
                (
                    clamp_time(current_time, room.video_duration),
                    status,
                    utc_now(),
                    room_id,
                ),
            )
            await db.commit()
            room = await self._fetch_room(db, room_id)
        finally:
            await db.close()

        await self._publish_room(room)
        return room

    async def set_status(self, room_id: str, user_id: str, status: str) -> WatchRoom:
        """Host-only status transition. ``ended`` is terminal."""
        db = await self._db()
        try:
            room = await self._fetch_room(db, room_id)
            if user_id != room.host_id:
                log_security_event("non_host_status_change", {"room": room_id, "user": user_id})
                raise PermissionDeniedError("Only the host can change the room status")
            if room.status == "ended":
                raise InvalidTransitionError("The room has ended")
            if status == "waiting" and room.status != "waiting":
                raise InvalidTransitionError("A started room cannot go back to waiting")
            if room.status == status:
                return room

            await db.execute(
                "UPDATE watch_rooms SET status = ?, updated_at = ? WHERE id = ? AND status != 'ended'",
                (status, utc_now(), room_id),
            )
            await db.commit()
            room = await self._fetch_room(db, room_id)
        finally:
            await db.close()

        logger.info(f"Watch room {room_id} is now {room.status}")
        await self._publish_room(room)
        return room

    async def end_idle_rooms(self, cutoff: str) -> List[str]:
        """End rooms untouched since ``cutoff`` that have nobody online."""
        db = await self._db()
        try:
            cursor = await db.execute(
                """
                UPDATE watch_rooms SET status = 'ended', updated_at = ?
                WHERE status != 'ended' AND updated_at < ?
                  AND NOT EXISTS (
                    SELECT 1 FROM watch_room_participants p
                    WHERE p.room_id = watch_rooms.id AND p.status = 'online'
                  )
                RETURNING id
                """,
                (utc_now(), cutoff),
            )
            ended = [row["id"] for row in await cursor.fetchall()]
            await db.commit()
        finally:
            await db.close()

        for room_id in ended:
            try:
                await self._publish_room(await self.get_room(room_id, with_participants=False))
            except NotFoundError:
                continue
        return ended

    # ============ PARTICIPANTS ============

    async def join_room(self, room_id: str, user_id: str,
                        password: Optional[str] = None) -> WatchRoom:
        """
        Add ``user_id`` to the room or bring their existing row back online.

        The occupancy check and the write happen in a single statement, so a
        full room never gains a row.
        """
        async with self._join_lock:
            return await self._join_room(room_id, user_id, password)

    async def _join_room(self, room_id: str, user_id: str,
                         password: Optional[str]) -> WatchRoom:
        db = await self._db()
        try:
            room = await self._fetch_room(db, room_id)
            if room.status == "ended":
                raise JoinError("Room has ended")
            if not verify_password(password, room.password_hash):
                log_security_event("invalid_room_password", {"room": room_id, "user": user_id})
                raise JoinError("Invalid password")

            now = utc_now()
            existing = await self._fetch_participant(db, room_id, user_id)
            if existing and existing.status != "offline":
                cursor = await db.execute(
                    """
                    UPDATE watch_room_participants SET status = 'online', last_seen_at = ?
                    WHERE id = ?
                    """,
                    (now, existing.id),
                )
            elif existing:
                cursor = await db.execute(
                    f"""
                    UPDATE watch_room_participants
                    SET status = 'online', left_at = NULL, joined_at = ?, last_seen_at = ?
                    WHERE id = ? AND {ACTIVE_COUNT_SQL} < ?
                    """,
                    (now, now, existing.id, room_id, room.max_participants),
                )
            else:
                try:
                    cursor = await db.execute(
                        f"""
                        INSERT INTO watch_room_participants
                            (id, room_id, user_id, joined_at, is_moderator, status, last_seen_at)
                        SELECT ?, ?, ?, ?, 0, 'online', ?
                        WHERE {ACTIVE_COUNT_SQL} < ?
                        """,
                        (str(uuid.uuid4()), room_id, user_id, now, now,
                         room_id, room.max_participants),
                    )
                except aiosqlite.IntegrityError:
                    # A concurrent join for the same user already inserted the row
                    await db.rollback()
                    existing = await self._fetch_participant(db, room_id, user_id)
                    cursor = None

            if cursor is not None and cursor.rowcount == 0:
                await db.rollback()
                raise JoinError("Room is full")
            await db.commit()

            participant = await self._fetch_participant(db, room_id, user_id)
            room.participants = await self._fetch_participants(db, room_id)
            room.participant_count = len(room.active_participants)
        finally:
            await db.close()

        if participant is not None:
            await self.hub.publish(
                participants_topic(room_id), "UPDATE" if existing else "INSERT",
                participant.model_dump(),
            )
        if existing is None or existing.status == "offline":
            await self.insert_message(room_id, user_id, "joined the room", "system")
        return room

    async def set_presence(self, room_id: str, user_id: str,
                           status: PresenceStatus) -> Optional[WatchRoomParticipant]:
        """Update a participant's presence; ``offline`` also stamps ``left_at``."""
        now = utc_now()
        db = await self._db()
        try:
            before = await self._fetch_participant(db, room_id, user_id)
            if before is None or before.status == status:
                return before
            if status == "offline":
                await db.execute(
                    """
                    UPDATE watch_room_participants
                    SET status = 'offline', left_at = ?, last_seen_at = ?
                    WHERE id = ?
                    """,
                    (now, now, before.id),
                )
            else:
                await db.execute(
                    "UPDATE watch_room_participants SET status = ?, last_seen_at = ? WHERE id = ?",
                    (status, now, before.id),
                )
            await db.commit()
            participant = await self._fetch_participant(db, room_id, user_id)
        finally:
            await db.close()

        await self.hub.publish(participants_topic(room_id), "UPDATE", participant.model_dump())
        if status == "offline":
            await self.insert_message(room_id, user_id, "left the room", "system")
        return participant

    async def leave_room(self, room_id: str, user_id: str) -> Optional[WatchRoomParticipant]:
        return await self.set_presence(room_id, user_id, "offline")

    async def expire_away_participants(self, cutoff: str) -> int:
        """Mark participants ``away`` since before ``cutoff`` as offline."""
        db = await self._db()
        try:
            cursor = await db.execute(
                """
                SELECT room_id, user_id FROM watch_room_participants
                WHERE status = 'away' AND last_seen_at < ?
                """,
                (cutoff,),
            )
            stale = [(row["room_id"], row["user_id"]) for row in await cursor.fetchall()]
        finally:
            await db.close()

        for room_id, user_id in stale:
            await self.set_presence(room_id, user_id, "offline")
        return len(stale)

    # ============ MESSAGES ============

    async def insert_message(self, room_id: str, user_id: str, message: str,
                             message_type: MessageType = "text") -> WatchRoomMessage:
        record = WatchRoomMessage(
            id=str(uuid.uuid4()),
            room_id=room_id,
            user_id=user_id,
            message=message,
            message_type=message_type,
            created_at=utc_now(),
        )
        db = await self._db()
        try:
            await db.execute(
                """
                INSERT INTO watch_room_messages (id, room_id, user_id, message, message_type, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (record.id, record.room_id, record.user_id, record.message,
                 record.message_type, record.created_at),
            )
            await db.commit()
        finally:
            await db.close()

        await self.hub.publish(messages_topic(room_id), "INSERT", record.model_dump())
        return record

    async def _publish_room(self, room: WatchRoom):
        payload = room.model_dump(exclude={"participants", "participant_count"})
        await self.hub.publish(playback_topic(room.id), "UPDATE", payload)
