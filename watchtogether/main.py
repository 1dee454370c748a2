"""
FastAPI application for SkillForge Watch Together.
REST endpoints over the room store plus a WebSocket relay for live sync,
hardened with rate limiting, CORS, trusted hosts and security headers.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware

from watchtogether import config
from watchtogether.api import WatchTogetherApi
from watchtogether.cleanup import cleanup_loop
from watchtogether.database import init_db
from watchtogether.exceptions import WatchTogetherError
from watchtogether.models import (
    CreateWatchRoomData,
    JoinRequest,
    PlaybackUpdate,
    SendMessageRequest,
    SyncEvent,
    WatchRoom,
    WatchRoomMessage,
)
from watchtogether.realtime import RealtimeHub
from watchtogether.room_manager import room_manager
from watchtogether.security import sanitize_input
from watchtogether.store import RoomStore

# Configure logging
logging.basicConfig(level=logging.DEBUG if config.DEBUG else logging.INFO)
logger = logging.getLogger(__name__)

# Rate limiter setup
limiter = Limiter(key_func=get_remote_address, enabled=config.RATE_LIMIT_ENABLED)


# ============ LIFESPAN CONTEXT ============
@asynccontextmanager
async def lifespan(app):
    """Initialize database, realtime hub and the cleanup worker on startup."""
    await init_db()
    hub = RealtimeHub()
    store = RoomStore(hub)
    app.state.hub = hub
    app.state.store = store
    room_manager.bind(store)
    cleanup_task = asyncio.create_task(cleanup_loop(store))
    logger.info("Watch Together started successfully")
    yield
    cleanup_task.cancel()
    logger.info("Watch Together shutting down")


app = FastAPI(title="SkillForge Watch Together", docs_url=None, redoc_url=None, lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


async def watch_together_error_handler(request: Request, exc: WatchTogetherError):
    """Map room errors to JSON responses with their status code."""
    return JSONResponse({"detail": exc.message}, status_code=exc.status_code)


app.add_exception_handler(WatchTogetherError, watch_together_error_handler)

# CORS Configuration - production origins only
ALLOWED_ORIGINS = [
    f"https://{config.PRODUCTION_DOMAIN}",
    f"https://www.{config.PRODUCTION_DOMAIN}",
] + (["http://localhost:5173", "http://127.0.0.1:5173"] if config.DEBUG else [])

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT"],
    allow_headers=["*"],
)


# Security Headers Middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # The YouTube IFrame player is the only embedded origin
        response.headers["Content-Security-Policy"] = (
            "default-src 'self'; "
            "script-src 'self' https://www.youtube.com https://s.ytimg.com; "
            "img-src 'self' data: https://img.youtube.com https://i.ytimg.com; "
            "connect-src 'self' ws: wss:; "
            "frame-src https://www.youtube.com https://www.youtube-nocookie.com; "
            "frame-ancestors 'none';"
        )
        if not config.DEBUG:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


app.add_middleware(SecurityHeadersMiddleware)

# Trusted Host Middleware - prevent host header attacks
app.add_middleware(TrustedHostMiddleware, allowed_hosts=config.ALLOWED_HOSTS)


# ============ DEPENDENCIES ============

def get_store(request: Request) -> RoomStore:
    return request.app.state.store


def caller_id(x_user_id: Optional[str]) -> str:
    """Caller identity, as asserted by the auth gateway in front of this service."""
    return sanitize_input(x_user_id or "", max_length=64).strip()


def current_user(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    user_id = caller_id(x_user_id)
    if not user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user_id


def get_api(user_id: str = Depends(current_user),
            store: RoomStore = Depends(get_store)) -> WatchTogetherApi:
    return WatchTogetherApi(store, user_id)


# ============ ROOM ENDPOINTS ============

@app.get("/rooms", response_model=List[WatchRoom])
async def list_rooms(api: WatchTogetherApi = Depends(get_api)):
    """Public rooms, newest first."""
    return await api.get_watch_rooms()


@app.post("/rooms", response_model=WatchRoom, status_code=201)
@limiter.limit(config.ROOM_CREATE_RATE)
async def create_room(request: Request, data: CreateWatchRoomData,
                      api: WatchTogetherApi = Depends(get_api)):
    """Create a room; the caller becomes its host."""
    return await api.create_watch_room(data)


@app.get("/rooms/{room_id}", response_model=WatchRoom)
async def get_room(room_id: str, api: WatchTogetherApi = Depends(get_api)):
    return await api.get_watch_room(room_id)


@app.post("/rooms/{room_id}/join", response_model=WatchRoom)
@limiter.limit(config.ROOM_JOIN_RATE)
async def join_room(request: Request, room_id: str, body: Optional[JoinRequest] = None,
                    api: WatchTogetherApi = Depends(get_api)):
    return await api.join_watch_room(room_id, body.password if body else None)


@app.post("/rooms/{room_id}/leave", status_code=204)
async def leave_room(room_id: str, api: WatchTogetherApi = Depends(get_api)):
    await api.leave_watch_room(room_id)


@app.post("/rooms/{room_id}/start", response_model=WatchRoom)
async def start_room(room_id: str, api: WatchTogetherApi = Depends(get_api)):
    """Host only: start the show for everyone."""
    return await api.start_room(room_id)


@app.post("/rooms/{room_id}/end", response_model=WatchRoom)
async def end_room(room_id: str, api: WatchTogetherApi = Depends(get_api)):
    return await api.end_room(room_id)


@app.put("/rooms/{room_id}/playback", response_model=WatchRoom)
async def update_playback(room_id: str, body: PlaybackUpdate,
                          api: WatchTogetherApi = Depends(get_api)):
    return await api.update_playback_state(room_id, body.current_time, body.is_playing)


@app.post("/rooms/{room_id}/sync")
async def send_sync(room_id: str, event: SyncEvent, api: WatchTogetherApi = Depends(get_api)):
    """Broadcast a sync event; the sender's identity replaces any userId in the body."""
    sent = await api.send_sync_event(room_id, event.type, event.current_time, event.timestamp)
    return sent.to_payload()


@app.get("/rooms/{room_id}/messages", response_model=List[WatchRoomMessage])
async def get_messages(room_id: str,
                       limit: int = Query(config.MESSAGE_HISTORY_LIMIT, ge=1, le=200),
                       api: WatchTogetherApi = Depends(get_api)):
    return await api.get_room_messages(room_id, limit)


@app.post("/rooms/{room_id}/messages", response_model=WatchRoomMessage, status_code=201)
async def send_message(room_id: str, body: SendMessageRequest,
                       api: WatchTogetherApi = Depends(get_api)):
    return await api.send_message(room_id, body.message, body.message_type)


# ============ WEBSOCKET RELAY ============

@app.websocket("/ws/watch/{room_id}")
async def websocket_room(websocket: WebSocket, room_id: str,
                         x_user_id: Optional[str] = Header(None, alias="X-User-Id")):
    """
    WebSocket endpoint for live playback sync and chat.
    Connect to ws://host/ws/watch/ABC-123 after joining over HTTP; the caller
    is identified by the same X-User-Id header as the REST endpoints.
    """
    conn = await room_manager.connect(websocket, room_id, caller_id(x_user_id))
    if not conn:
        return

    try:
        while True:
            data = await websocket.receive_text()
            await room_manager.handle_frame(conn, data)
    except WebSocketDisconnect:
        pass
    finally:
        await room_manager.disconnect(conn)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
