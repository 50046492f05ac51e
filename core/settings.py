"""
Application Settings.

All runtime configuration for the music-sharing service is read from
environment variables in one place. Modules obtain the active configuration
through `get_settings()`; tests (and the application lifespan) can rebuild it
with `init_settings()` after changing the environment.
"""

import os
from typing import List, Optional


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


class Settings:
    """Environment-driven configuration"""

    def __init__(self):
        self.environment = os.getenv("ENVIRONMENT", "development").lower()
        self.log_level = os.getenv("LOG_LEVEL", "INFO").upper()

        # Credential store
        self.database_url = os.getenv(
            "DATABASE_URL", "sqlite+aiosqlite:///./music_share.db"
        )

        # Session store
        self.session_backend = os.getenv("SESSION_BACKEND", "memory").lower()
        self.redis_url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
        self.session_ttl_seconds = _env_int("SESSION_TTL_SECONDS", 60 * 60 * 24 * 7)
        self.session_cookie_name = os.getenv("SESSION_COOKIE_NAME", "session_id")
        self.session_cookie_secure = _env_bool("SESSION_COOKIE_SECURE", False)

        # External music API
        self.music_client_id: Optional[str] = os.getenv("MUSIC_CLIENT_ID")
        self.music_client_secret: Optional[str] = os.getenv("MUSIC_CLIENT_SECRET")
        self.music_redirect_uri = os.getenv(
            "MUSIC_REDIRECT_URI", "http://localhost:8000/callback"
        )
        self.music_api_base = os.getenv(
            "MUSIC_API_BASE", "https://api.spotify.com/v1"
        ).rstrip("/")
        self.music_accounts_base = os.getenv(
            "MUSIC_ACCOUNTS_BASE", "https://accounts.spotify.com"
        ).rstrip("/")
        self.music_scopes = os.getenv(
            "MUSIC_SCOPES", "user-read-private user-read-email user-top-read"
        )
        self.token_expiry_skew_seconds = _env_int("TOKEN_EXPIRY_SKEW_SECONDS", 60)
        self.http_timeout_seconds = _env_int("HTTP_TIMEOUT_SECONDS", 10)

        # HTTP surface
        self.cors_origins = os.getenv(
            "CORS_ORIGINS", "http://localhost:3000,http://localhost:8000"
        )
        self.feed_max_amount = _env_int("FEED_MAX_AMOUNT", 100)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def get_cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get global settings"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def init_settings() -> Settings:
    """Re-read settings from the current environment"""
    global _settings
    _settings = Settings()
    return _settings
