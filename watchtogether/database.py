"""
SQLite async database connection and initialization.
"""
from pathlib import Path
from typing import Optional, Union

import aiosqlite

from watchtogether import config

PathLike = Union[str, Path]


def _resolve(path: Optional[PathLike]) -> Path:
    resolved = Path(path) if path is not None else Path(config.DATABASE_PATH)
    resolved.parent.mkdir(parents=True, exist_ok=True)
    return resolved


async def get_db(path: Optional[PathLike] = None) -> aiosqlite.Connection:
    """Get database connection."""
    db = await aiosqlite.connect(_resolve(path))
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA foreign_keys = ON")
    return db


async def init_db(path: Optional[PathLike] = None):
    """Initialize database with required tables."""
    async with aiosqlite.connect(_resolve(path)) as db:
        # "current_time" is quoted everywhere: unquoted it is SQLite's CURRENT_TIME
        await db.execute("""
            CREATE TABLE IF NOT EXISTS watch_rooms (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                description TEXT,
                host_id TEXT NOT NULL,
                is_public INTEGER NOT NULL DEFAULT 1,
                password_hash TEXT,
                status TEXT NOT NULL DEFAULT 'waiting',
                scheduled_start TIMESTAMP,
                video_url TEXT,
                video_title TEXT,
                video_duration REAL,
                "current_time" REAL NOT NULL DEFAULT 0,
                max_participants INTEGER NOT NULL,
                room_settings TEXT NOT NULL DEFAULT '{}',
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL
            )
        """)
        await db.execute("""
            CREATE TABLE IF NOT EXISTS watch_room_participants (
                id TEXT PRIMARY KEY,
                room_id TEXT NOT NULL REFERENCES watch_rooms(id) ON DELETE CASCADE,
                user_id TEXT NOT NULL,
                joined_at TIMESTAMP NOT NULL,
                left_at TIMESTAMP,
                is_moderator INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL DEFAULT 'online',
                last_seen_at TIMESTAMP NOT NULL,
                UNIQUE (room_id, user_id)
            )
        """)
        await db.execute("""
            CREATE TABLE IF NOT EXISTS watch_room_messages (
                id TEXT PRIMARY KEY,
                room_id TEXT NOT NULL REFERENCES watch_rooms(id) ON DELETE CASCADE,
                user_id TEXT NOT NULL,
                message TEXT NOT NULL,
                message_type TEXT NOT NULL DEFAULT 'text',
                created_at TIMESTAMP NOT NULL
            )
        """)
        await db.execute("""
            CREATE INDEX IF NOT EXISTS idx_participants_room
            ON watch_room_participants(room_id, status)
        """)
        await db.execute("""
            CREATE INDEX IF NOT EXISTS idx_messages_room
            ON watch_room_messages(room_id, created_at)
        """)
        await db.execute("""
            CREATE INDEX IF NOT EXISTS idx_rooms_updated ON watch_rooms(status, updated_at)
        """)
        await db.commit()
