"""
Pydantic models for watch rooms, participants, messages and sync events.
"""
import json
import time
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from watchtogether import config

RoomStatus = Literal["waiting", "playing", "paused", "ended"]
PresenceStatus = Literal["online", "away", "offline"]
MessageType = Literal["text", "system", "reaction"]
SyncEventType = Literal["play", "pause", "seek", "sync"]


def now_ms() -> int:
    return int(time.time() * 1000)


class RoomSettings(BaseModel):
    """Per-room behaviour switches."""
    allow_chat: bool = True
    auto_play: bool = True
    sync_threshold: float = Field(default=config.DEFAULT_SYNC_THRESHOLD, ge=0)
    # Deliberate seeks jump regardless of drift when set
    authoritative_seek: bool = False


class WatchRoomParticipant(BaseModel):
    """Membership of a user in a room."""
    id: str
    room_id: str
    user_id: str
    joined_at: str
    left_at: Optional[str] = None
    is_moderator: bool = False
    status: PresenceStatus = "online"

    @classmethod
    def from_row(cls, row) -> "WatchRoomParticipant":
        return cls(
            id=row["id"],
            room_id=row["room_id"],
            user_id=row["user_id"],
            joined_at=row["joined_at"],
            left_at=row["left_at"],
            is_moderator=bool(row["is_moderator"]),
            status=row["status"],
        )


class WatchRoom(BaseModel):
    """A shared viewing session."""
    id: str
    name: str
    description: Optional[str] = None
    host_id: str
    is_public: bool = True
    password_hash: Optional[str] = Field(default=None, exclude=True)
    status: RoomStatus = "waiting"
    scheduled_start: Optional[str] = None
    video_url: Optional[str] = None
    video_title: Optional[str] = None
    video_duration: Optional[float] = None
    current_time: float = 0
    max_participants: int
    room_settings: RoomSettings = Field(default_factory=RoomSettings)
    created_at: str
    updated_at: str
    participants: Optional[List[WatchRoomParticipant]] = None
    participant_count: Optional[int] = None

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)

    @property
    def sync_threshold(self) -> float:
        return self.room_settings.sync_threshold

    @property
    def active_participants(self) -> List[WatchRoomParticipant]:
        return [p for p in self.participants or [] if p.status != "offline"]

    @classmethod
    def from_row(cls, row) -> "WatchRoom":
        data = dict(row)
        data["is_public"] = bool(data["is_public"])
        data["room_settings"] = json.loads(data.get("room_settings") or "{}")
        return cls(**data)


class WatchRoomMessage(BaseModel):
    """Chat entry scoped to a room."""
    id: str
    room_id: str
    user_id: str
    message: str
    message_type: MessageType = "text"
    created_at: str

    @classmethod
    def from_row(cls, row) -> "WatchRoomMessage":
        return cls(**dict(row))


class CreateWatchRoomData(BaseModel):
    """Request to create a new room."""
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=1000)
    is_public: bool = True
    password: Optional[str] = None
    scheduled_start: Optional[str] = None
    video_url: Optional[str] = None
    # Seconds, when the client already knows it; YouTube links carry no length
    video_duration: Optional[float] = Field(default=None, gt=0)
    max_participants: int = Field(default=20, ge=1, le=500)
    room_settings: RoomSettings = Field(default_factory=RoomSettings)

    @field_validator("scheduled_start", "password", "video_url")
    @classmethod
    def blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        # Empty form fields arrive as "" and must not be stored as timestamps
        if value is not None and not value.strip():
            return None
        return value


class JoinRequest(BaseModel):
    """Request to join a room."""
    password: Optional[str] = None


class PlaybackUpdate(BaseModel):
    """Coarse playback snapshot persisted on the room row."""
    current_time: float = Field(ge=0)
    is_playing: bool


class SendMessageRequest(BaseModel):
    """Chat message posted to a room."""
    message: str
    message_type: MessageType = "text"


class VideoSource(BaseModel):
    """Parsed video reference."""
    type: Literal["youtube", "file", "url"]
    url: str
    title: Optional[str] = None
    duration: Optional[float] = None
    thumbnail: Optional[str] = None


class PlaybackState(BaseModel):
    """One client's view of the room timeline."""
    is_playing: bool = False
    current_time: float = 0
    duration: float = 0
    buffered: float = 0
    volume: float = 1
    muted: bool = False


class SyncEvent(BaseModel):
    """Ephemeral broadcast describing a playback intent."""
    model_config = ConfigDict(populate_by_name=True)

    type: SyncEventType
    timestamp: int = Field(default_factory=now_ms)  # epoch ms
    current_time: float = Field(alias="currentTime", ge=0)
    user_id: str = Field(default="", alias="userId")

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)
