import asyncio
from typing import Any, Dict, Generator, List, Optional
from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient

from core.database import create_db_and_tables, dispose_engine, init_engine
from core.exceptions import ExternalServiceError
from core.sessions import MemorySessionBackend, SessionStore
from core.settings import init_settings
from providers.music_provider import (
    SERVICE_NAME,
    ArtistSummary,
    MusicProvider,
    TokenPayload,
    TrackSummary,
)


class FakeMusicProvider(MusicProvider):
    """In-memory music API double that records every call."""

    def __init__(self):
        self.refresh_calls: List[str] = []
        self.exchange_calls: List[str] = []
        self.api_calls: List[str] = []
        self.failing: set = set()
        self.refresh_delay = 0.0
        self.expires_in = 3600
        self.rotate_refresh_token: Optional[str] = None
        self._issued = 0

    def _check(self, name: str):
        if name in self.failing:
            raise ExternalServiceError(SERVICE_NAME, f"{name} failed")

    def build_authorize_url(self, state: str) -> str:
        return f"https://music.test/authorize?client_id=test&state={state}"

    async def exchange_code(self, code: str) -> TokenPayload:
        self.exchange_calls.append(code)
        self._check("exchange_code")
        self._issued += 1
        return TokenPayload(
            access_token=f"access-{self._issued}",
            expires_in=self.expires_in,
            refresh_token=f"refresh-for-{code}",
        )

    async def refresh_access_token(self, refresh_token: str) -> TokenPayload:
        self.refresh_calls.append(refresh_token)
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        self._check("refresh_access_token")
        self._issued += 1
        return TokenPayload(
            access_token=f"access-{self._issued}",
            expires_in=self.expires_in,
            refresh_token=self.rotate_refresh_token,
        )

    async def get_track(self, access_token: str, track_id: str) -> TrackSummary:
        self.api_calls.append("get_track")
        self._check("get_track")
        return TrackSummary(
            id=track_id,
            name=f"Song {track_id}",
            artists=["The Testers"],
            album="Fixtures",
            image_url="https://img.test/album.png",
        )

    async def get_current_user_profile(self, access_token: str) -> Dict[str, Any]:
        self.api_calls.append("get_current_user_profile")
        self._check("get_current_user_profile")
        return {"id": "listener", "images": [{"url": "https://img.test/me.png"}]}

    async def get_top_tracks(self, access_token: str, limit: int = 10) -> List[TrackSummary]:
        self.api_calls.append("get_top_tracks")
        self._check("get_top_tracks")
        return [TrackSummary(id="t1", name="First", artists=["A"])]

    async def get_top_artists(self, access_token: str, limit: int = 10) -> List[ArtistSummary]:
        self.api_calls.append("get_top_artists")
        self._check("get_top_artists")
        return [ArtistSummary(id="a1", name="A", genres=["indie"])]


@pytest.fixture(autouse=True)
def setup_test_environment(monkeypatch, tmp_path):
    """Set up test environment variables."""
    monkeypatch.setenv("ENVIRONMENT", "test")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    monkeypatch.setenv("SESSION_BACKEND", "memory")
    monkeypatch.setenv("MUSIC_CLIENT_ID", "test-client")
    monkeypatch.setenv("MUSIC_CLIENT_SECRET", "test-secret")
    init_settings()
    yield
    init_settings()


@pytest.fixture
async def database(tmp_path):
    """Fresh credential store for one test."""
    init_engine(f"sqlite+aiosqlite:///{tmp_path / 'unit.db'}")
    await create_db_and_tables()
    yield
    await dispose_engine()


@pytest.fixture
def session_store() -> SessionStore:
    return SessionStore(MemorySessionBackend(), ttl_seconds=3600)


@pytest.fixture
def fake_provider() -> FakeMusicProvider:
    return FakeMusicProvider()


@pytest.fixture
def test_client(fake_provider) -> Generator[TestClient, None, None]:
    """Create a test client for the FastAPI app with the music API faked out."""
    from main import app
    from core.sessions import get_session_store
    from providers.music_provider import init_music_provider
    from services.token_manager import init_token_manager
    from services.user_service import persist_refresh_token

    with TestClient(app) as client:
        init_music_provider(fake_provider)
        init_token_manager(
            get_session_store(),
            fake_provider,
            refresh_token_sink=persist_refresh_token,
        )
        yield client


def register(client: TestClient, username: str, email: str, password: str = "pw1234"):
    return client.post(
        "/register",
        data={
            "username": username,
            "email": email,
            "password1": password,
            "password2": password,
        },
        follow_redirects=False,
    )


def login(client: TestClient, username: str, password: str = "pw1234"):
    return client.post(
        "/login",
        data={"username": username, "password": password},
        follow_redirects=False,
    )


def link_account(client: TestClient, code: str = "auth-code"):
    """Run the authorization code flow for the logged-in user."""
    response = client.get("/link", follow_redirects=False)
    state = response.headers["location"].split("state=")[1]
    return client.get(
        "/callback", params={"code": code, "state": state}, follow_redirects=False
    )


@pytest.fixture
def mock_logger():
    """Create a mock logger for testing."""
    logger = Mock()
    logger.info = Mock()
    logger.error = Mock()
    logger.warning = Mock()
    logger.debug = Mock()
    return logger
