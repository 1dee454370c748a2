"""
Pydantic models for WebSocket frames on the watch room relay.
"""
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from watchtogether.models import SyncEventType


class SyncFrame(BaseModel):
    """Inbound playback intent from a browser client."""
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["sync"] = "sync"
    event: SyncEventType
    current_time: float = Field(alias="currentTime", ge=0)
    timestamp: Optional[int] = None  # epoch ms, stamped server-side when missing


class ChatFrame(BaseModel):
    """Inbound chat message."""
    type: Literal["chat"] = "chat"
    content: str
    message_type: Literal["text", "reaction"] = "text"


class ServerFrame(BaseModel):
    """Outbound frame: 'room', 'history', 'message', 'participant', 'sync' or 'error'."""
    type: str
    data: Any = None
