"""
Environment-driven configuration for the Watch Together service.
"""
import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


# ============ SERVER ============
DEBUG = _flag("DEBUG", "false")
PRODUCTION_DOMAIN = os.getenv("PRODUCTION_DOMAIN", "skillforge.app")
ALLOWED_HOSTS = [
    host.strip()
    for host in os.getenv(
        "ALLOWED_HOSTS",
        f"{PRODUCTION_DOMAIN},*.{PRODUCTION_DOMAIN},localhost,127.0.0.1",
    ).split(",")
    if host.strip()
]

# ============ STORAGE ============
DATA_DIR = Path(__file__).parent / "data"
DATABASE_PATH = Path(os.getenv("WATCH_DB_PATH", str(DATA_DIR / "watch_rooms.db")))

# ============ RATE LIMITS ============
RATE_LIMIT_ENABLED = _flag("RATE_LIMIT_ENABLED", "true")
ROOM_CREATE_RATE = os.getenv("ROOM_CREATE_RATE", "5/minute")
ROOM_JOIN_RATE = os.getenv("ROOM_JOIN_RATE", "30/minute")
WS_FRAME_LIMIT = 10  # inbound frames per window
WS_FRAME_WINDOW = 2.0  # seconds

# ============ PLAYBACK SYNC ============
DEFAULT_SYNC_THRESHOLD = float(os.getenv("DEFAULT_SYNC_THRESHOLD", "3"))
MESSAGE_HISTORY_LIMIT = int(os.getenv("MESSAGE_HISTORY_LIMIT", "50"))
MAX_MESSAGE_LENGTH = 5000
LOAD_TIMEOUT_SECONDS = float(os.getenv("LOAD_TIMEOUT_SECONDS", "10"))
LOAD_RETRIES = int(os.getenv("LOAD_RETRIES", "2"))
HEARTBEAT_INTERVAL_SECONDS = float(os.getenv("HEARTBEAT_INTERVAL_SECONDS", "5"))

# ============ CLEANUP ============
AWAY_TIMEOUT_MINUTES = int(os.getenv("AWAY_TIMEOUT_MINUTES", "5"))
IDLE_ROOM_HOURS = int(os.getenv("IDLE_ROOM_HOURS", "12"))
CLEANUP_INTERVAL_SECONDS = float(os.getenv("CLEANUP_INTERVAL_SECONDS", "60"))
