"""
Background cleanup worker for stale presence and idle rooms.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from watchtogether import config
from watchtogether.store import RoomStore

logger = logging.getLogger(__name__)


async def cleanup_stale(store: RoomStore, now: Optional[datetime] = None) -> dict:
    """Drop away participants past the grace period and end idle rooms."""
    now = now or datetime.now(timezone.utc)

    away_cutoff = (now - timedelta(minutes=config.AWAY_TIMEOUT_MINUTES)).isoformat()
    expired = await store.expire_away_participants(away_cutoff)

    idle_cutoff = (now - timedelta(hours=config.IDLE_ROOM_HOURS)).isoformat()
    ended = await store.end_idle_rooms(idle_cutoff)

    if expired or ended:
        logger.info(f"Cleanup: {expired} participants set offline, {len(ended)} rooms ended")
    return {"participants_offline": expired, "rooms_ended": ended}


async def cleanup_loop(store: RoomStore):
    """Run cleanup every CLEANUP_INTERVAL_SECONDS."""
    while True:
        try:
            await cleanup_stale(store)
        except Exception as e:
            logger.error(f"Cleanup error: {e}")
        await asyncio.sleep(config.CLEANUP_INTERVAL_SECONDS)
