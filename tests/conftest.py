import os

# Must be set before watchtogether.config is imported
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["ALLOWED_HOSTS"] = "*"

import typing as t

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from watchtogether import config
from watchtogether.api import WatchTogetherApi
from watchtogether.database import init_db
from watchtogether.models import CreateWatchRoomData, RoomSettings, WatchRoom
from watchtogether.playback import BUFFERING, PAUSED, PLAYING
from watchtogether.realtime import RealtimeHub
from watchtogether.store import RoomStore

HOST = "host-user"
GUEST = "guest-user"


class FakePlayer:
    """Records every call; ``fail_on`` names methods that should raise."""

    def __init__(self, current_time: float = 0.0, duration: float = 600.0,
                 state: int = PAUSED):
        self.current_time = current_time
        self.duration = duration
        self.state = state
        self.volume = 100
        self.muted = False
        self.calls: t.List[tuple] = []
        self.fail_on: t.Set[str] = set()

    def _record(self, name: str, *args):
        self.calls.append((name, *args))
        if name in self.fail_on:
            raise RuntimeError(f"player {name} failed")

    def play(self):
        self._record("play")
        self.state = PLAYING

    def pause(self):
        self._record("pause")
        self.state = PAUSED

    def seek_to(self, seconds: float):
        self._record("seek_to", seconds)
        self.current_time = seconds

    def get_current_time(self) -> float:
        return self.current_time

    def get_duration(self) -> float:
        return self.duration

    def get_player_state(self) -> int:
        return self.state

    def set_volume(self, volume: int):
        self._record("set_volume", volume)
        self.volume = volume

    def mute(self):
        self._record("mute")
        self.muted = True

    def un_mute(self):
        self._record("un_mute")
        self.muted = False

    @property
    def seeks(self) -> t.List[float]:
        return [call[1] for call in self.calls if call[0] == "seek_to"]

    def buffer(self):
        self.state = BUFFERING


@pytest.fixture
def make_player() -> t.Callable[..., FakePlayer]:
    return FakePlayer


@pytest.fixture(name="db_path")
def db_path_fixture(tmp_path, monkeypatch):
    path = tmp_path / "watch_rooms.db"
    monkeypatch.setattr(config, "DATABASE_PATH", path)
    return path


@pytest_asyncio.fixture(name="store")
async def store_fixture(db_path) -> RoomStore:
    await init_db(db_path)
    return RoomStore(RealtimeHub(), db_path)


@pytest.fixture(name="api_for")
def api_for_fixture(store) -> t.Callable[[str], WatchTogetherApi]:
    def _api(user_id: str) -> WatchTogetherApi:
        return WatchTogetherApi(store, user_id)

    return _api


@pytest.fixture(name="create_room")
def create_room_fixture(api_for):
    async def _create(host: str = HOST, **overrides) -> WatchRoom:
        data = {
            "name": "Movie Night",
            "video_url": "https://www.youtube.com/watch?v=YoHD9XEInc0",
            "max_participants": 10,
            "room_settings": RoomSettings(sync_threshold=3),
        }
        data.update(overrides)
        return await api_for(host).create_watch_room(CreateWatchRoomData(**data))

    return _create


@pytest.fixture(name="client")
def client_fixture(db_path):
    from watchtogether.main import app

    with TestClient(app, base_url="http://localhost") as client:
        yield client
