"""
Music Provider Classes

Thin client for the third-party music-metadata API. The rest of the service
only sees the `MusicProvider` interface: authorization URL, code exchange,
token refresh, and the four metadata reads (track by id, current profile, top
tracks, top artists). Every non-2xx answer or transport failure, and any
malformed payload, surfaces as `ExternalServiceError`; nothing here retries.
"""

import asyncio
import base64
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict, field
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode

import aiohttp

from core.exceptions import ExternalServiceError
from core.logging_config import get_logger
from core.settings import Settings, get_settings

logger = get_logger(__name__)

SERVICE_NAME = "music_api"


@dataclass
class TokenPayload:
    """Result of a code exchange or refresh"""

    access_token: str
    expires_in: int
    refresh_token: Optional[str] = None
    scope: Optional[str] = None


@dataclass
class TrackSummary:
    id: str
    name: str
    artists: List[str] = field(default_factory=list)
    album: Optional[str] = None
    image_url: Optional[str] = None
    preview_url: Optional[str] = None
    external_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ArtistSummary:
    id: str
    name: str
    image_url: Optional[str] = None
    genres: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _first_image(images: Optional[List[Dict[str, Any]]]) -> Optional[str]:
    images = images or []
    return images[0].get("url") if images else None


def normalize_track(raw: Dict[str, Any]) -> TrackSummary:
    album = raw.get("album") or {}
    return TrackSummary(
        id=raw["id"],
        name=raw.get("name") or raw["id"],
        artists=[a.get("name") for a in raw.get("artists", []) if a.get("name")],
        album=album.get("name"),
        image_url=_first_image(album.get("images")),
        preview_url=raw.get("preview_url"),
        external_url=(raw.get("external_urls") or {}).get("spotify"),
    )


def normalize_artist(raw: Dict[str, Any]) -> ArtistSummary:
    return ArtistSummary(
        id=raw["id"],
        name=raw.get("name") or raw["id"],
        image_url=_first_image(raw.get("images")),
        genres=list(raw.get("genres") or []),
    )


def parse_payload(normalizer: Callable[[Dict[str, Any]], Any], raw: Any, path: str) -> Any:
    """Apply a normalizer, reporting a malformed payload as ExternalServiceError"""
    try:
        return normalizer(raw)
    except (KeyError, TypeError, AttributeError, ValueError) as e:
        logger.warning(f"Malformed payload from {path}: {e!r}")
        raise ExternalServiceError(SERVICE_NAME, f"Malformed response from {path}")


def parse_items(
    normalizer: Callable[[Dict[str, Any]], Any], data: Dict[str, Any], path: str
) -> List[Any]:
    items = data.get("items") or []
    if not isinstance(items, list):
        raise ExternalServiceError(SERVICE_NAME, f"Malformed response from {path}")
    # entries without an id are skipped
    return [
        parse_payload(normalizer, item, path)
        for item in items
        if isinstance(item, dict) and item.get("id")
    ]


def generate_oauth_state(length: int = 24) -> str:
    """Random state value sent through the authorization redirect"""
    return secrets.token_urlsafe(length)


class MusicProvider(ABC):
    """Abstract interface to the music-metadata API"""

    @abstractmethod
    def build_authorize_url(self, state: str) -> str:
        """URL the user is redirected to for linking their account"""
        pass

    @abstractmethod
    async def exchange_code(self, code: str) -> TokenPayload:
        """Exchange an authorization code for tokens"""
        pass

    @abstractmethod
    async def refresh_access_token(self, refresh_token: str) -> TokenPayload:
        """Exchange a refresh token for a new access token"""
        pass

    @abstractmethod
    async def get_track(self, access_token: str, track_id: str) -> TrackSummary:
        pass

    @abstractmethod
    async def get_current_user_profile(self, access_token: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def get_top_tracks(self, access_token: str, limit: int = 10) -> List[TrackSummary]:
        pass

    @abstractmethod
    async def get_top_artists(self, access_token: str, limit: int = 10) -> List[ArtistSummary]:
        pass


class SpotifyMusicProvider(MusicProvider):
    """Spotify Web API client over aiohttp"""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.timeout = aiohttp.ClientTimeout(total=self.settings.http_timeout_seconds)

    def build_authorize_url(self, state: str) -> str:
        params = {
            "client_id": self.settings.music_client_id or "",
            "response_type": "code",
            "redirect_uri": self.settings.music_redirect_uri,
            "scope": self.settings.music_scopes,
            "state": state,
        }
        return f"{self.settings.music_accounts_base}/authorize?{urlencode(params)}"

    def _basic_auth_header(self) -> Dict[str, str]:
        credentials = f"{self.settings.music_client_id}:{self.settings.music_client_secret}"
        encoded = base64.b64encode(credentials.encode()).decode()
        return {
            "Authorization": f"Basic {encoded}",
            "Content-Type": "application/x-www-form-urlencoded",
        }

    async def _post_token(self, form: Dict[str, str], action: str) -> TokenPayload:
        url = f"{self.settings.music_accounts_base}/api/token"
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(
                    url, data=form, headers=self._basic_auth_header()
                ) as response:
                    if response.status != 200:
                        body = await response.text()
                        logger.warning(
                            f"Token {action} rejected with status {response.status}",
                            extra={"status": response.status, "body": body[:200]},
                        )
                        raise ExternalServiceError(
                            SERVICE_NAME,
                            f"Token {action} failed with status {response.status}",
                        )
                    data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Token {action} transport error: {e}")
            raise ExternalServiceError(SERVICE_NAME, f"Token {action} failed: {e}")
        except ValueError as e:
            logger.error(f"Token {action} returned invalid JSON: {e}")
            raise ExternalServiceError(SERVICE_NAME, f"Token {action} returned invalid JSON")

        if not isinstance(data, dict) or not data.get("access_token"):
            raise ExternalServiceError(
                SERVICE_NAME, f"Token {action} returned no access token"
            )

        try:
            expires_in = int(data.get("expires_in", 3600))
        except (TypeError, ValueError):
            raise ExternalServiceError(
                SERVICE_NAME, f"Token {action} returned an invalid expiry"
            )

        return TokenPayload(
            access_token=data["access_token"],
            expires_in=expires_in,
            refresh_token=data.get("refresh_token"),
            scope=data.get("scope"),
        )

    async def exchange_code(self, code: str) -> TokenPayload:
        return await self._post_token(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.settings.music_redirect_uri,
            },
            "exchange",
        )

    async def refresh_access_token(self, refresh_token: str) -> TokenPayload:
        return await self._post_token(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            "refresh",
        )

    async def _get(
        self, access_token: str, path: str, params: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        url = f"{self.settings.music_api_base}/{path.lstrip('/')}"
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        }
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(url, headers=headers, params=params) as response:
                    if response.status != 200:
                        logger.warning(
                            f"GET {path} failed with status {response.status}",
                            extra={"status": response.status},
                        )
                        raise ExternalServiceError(
                            SERVICE_NAME,
                            f"Request to {path} failed with status {response.status}",
                        )
                    data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"GET {path} transport error: {e}")
            raise ExternalServiceError(SERVICE_NAME, f"Request to {path} failed: {e}")
        except ValueError as e:
            logger.error(f"GET {path} returned invalid JSON: {e}")
            raise ExternalServiceError(SERVICE_NAME, f"Request to {path} returned invalid JSON")

        if not isinstance(data, dict):
            raise ExternalServiceError(SERVICE_NAME, f"Request to {path} returned malformed data")
        return data

    async def get_track(self, access_token: str, track_id: str) -> TrackSummary:
        path = f"tracks/{track_id}"
        return parse_payload(normalize_track, await self._get(access_token, path), path)

    async def get_current_user_profile(self, access_token: str) -> Dict[str, Any]:
        return await self._get(access_token, "me")

    async def get_top_tracks(self, access_token: str, limit: int = 10) -> List[TrackSummary]:
        data = await self._get(access_token, "me/top/tracks", {"limit": limit})
        return parse_items(normalize_track, data, "me/top/tracks")

    async def get_top_artists(self, access_token: str, limit: int = 10) -> List[ArtistSummary]:
        data = await self._get(access_token, "me/top/artists", {"limit": limit})
        return parse_items(normalize_artist, data, "me/top/artists")


# Global provider instance
_music_provider: Optional[MusicProvider] = None


def get_music_provider() -> MusicProvider:
    global _music_provider
    if _music_provider is None:
        _music_provider = SpotifyMusicProvider()
    return _music_provider


def init_music_provider(provider: Optional[MusicProvider] = None) -> MusicProvider:
    global _music_provider
    _music_provider = provider or SpotifyMusicProvider()
    return _music_provider
