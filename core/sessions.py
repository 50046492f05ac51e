"""
Server-side Session Store.

Sessions are referenced by an opaque identifier carried in the session cookie;
everything else (the authenticated user's identity and the cached music API
tokens) lives server side in a key-value backend. Identity and token state is
always scoped to one session record and never kept in process-level variables.

Key Components:
- `SessionData`: the pydantic record stored per session.
- `SessionBackend` (ABC): async key-value interface with TTL support.
- `MemorySessionBackend`: in-process dictionary with LRU eviction and TTL, for
  development, tests and single-instance deployments.
- `RedisSessionBackend`: `redis.asyncio` implementation for deployments where
  several worker processes must share sessions.
- `SessionStore`: facade used by the auth gate, the token manager and the auth
  endpoints (create, load, save, update tokens, destroy).

Architectural Design:
- Strategy Pattern: the backend is chosen at startup (`SESSION_BACKEND`)
  without changing any caller.
- Serialization: records are stored as JSON strings, so both backends hold the
  same bytes and a record survives a process restart on Redis.
- Idempotent teardown: destroying an unknown or already destroyed session is a
  no-op that returns False.
"""

import asyncio
import fnmatch
import secrets
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
from dataclasses import dataclass

import redis.asyncio as redis
from pydantic import BaseModel, Field

from core.logging_config import get_logger
from core.exceptions import SessionStoreError

logger = get_logger(__name__)

SESSION_KEY_PREFIX = "session:"


class SessionData(BaseModel):
    """Authenticated actor plus cached external credentials"""

    session_id: str
    user_id: int
    username: str
    email: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    # absolute epoch seconds
    expires_at: Optional[float] = None
    oauth_state: Optional[str] = None
    created_at: float = Field(default_factory=time.time)

    def has_valid_access_token(self, now: float) -> bool:
        return bool(self.access_token) and self.expires_at is not None and now < self.expires_at


@dataclass
class SessionEntry:
    """Stored value with expiry metadata"""

    value: str
    created_at: float
    expires_at: Optional[float] = None

    @property
    def is_expired(self) -> bool:
        if self.expires_at is None:
            return False
        return time.time() > self.expires_at


class SessionBackend(ABC):
    """Abstract base class for session backends"""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Get raw session record by key"""
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        """Store raw session record with optional TTL"""
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete session record"""
        pass

    @abstractmethod
    async def keys(self, pattern: str = "*") -> List[str]:
        """Get keys matching pattern"""
        pass

    @abstractmethod
    async def stats(self) -> Dict[str, Any]:
        """Get backend statistics"""
        pass

    async def close(self) -> None:
        """Release backend resources"""
        return None


class MemorySessionBackend(SessionBackend):
    """In-memory session backend with LRU eviction"""

    def __init__(self, max_size: int = 10000):
        self.max_size = max_size
        self.entries: Dict[str, SessionEntry] = {}
        self.access_order: List[str] = []  # For LRU tracking
        self.evictions = 0
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            entry = self.entries.get(key)
            if entry is None:
                return None

            if entry.is_expired:
                self._remove_key(key)
                logger.debug("Session record expired")
                return None

            if key in self.access_order:
                self.access_order.remove(key)
            self.access_order.append(key)
            return entry.value

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        async with self._lock:
            expires_at = None
            if ttl:
                expires_at = time.time() + ttl

            if key in self.entries:
                self._remove_key(key)

            self._ensure_capacity()

            self.entries[key] = SessionEntry(
                value=value, created_at=time.time(), expires_at=expires_at
            )
            self.access_order.append(key)
            return True

    async def delete(self, key: str) -> bool:
        async with self._lock:
            if key in self.entries:
                self._remove_key(key)
                return True
            return False

    async def keys(self, pattern: str = "*") -> List[str]:
        async with self._lock:
            return [
                key
                for key, entry in self.entries.items()
                if not entry.is_expired and fnmatch.fnmatch(key, pattern)
            ]

    async def stats(self) -> Dict[str, Any]:
        async with self._lock:
            return {
                "backend": "memory",
                "total_keys": len(self.entries),
                "max_size": self.max_size,
                "evictions": self.evictions,
            }

    def _remove_key(self, key: str) -> None:
        self.entries.pop(key, None)
        if key in self.access_order:
            self.access_order.remove(key)

    def _ensure_capacity(self) -> None:
        while len(self.entries) >= self.max_size and self.access_order:
            lru_key = self.access_order[0]
            self._remove_key(lru_key)
            self.evictions += 1
            logger.debug("Evicted least recently used session")


class RedisSessionBackend(SessionBackend):
    """Redis session backend shared by all worker processes"""

    def __init__(self, redis_url: str = "redis://localhost:6379/0", client=None):
        self.redis_url = redis_url
        self._redis = client or redis.from_url(redis_url, decode_responses=True)

    async def get(self, key: str) -> Optional[str]:
        return await self._redis.get(key)

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        if ttl:
            return bool(await self._redis.set(key, value, ex=ttl))
        return bool(await self._redis.set(key, value))

    async def delete(self, key: str) -> bool:
        return bool(await self._redis.delete(key))

    async def keys(self, pattern: str = "*") -> List[str]:
        return [key async for key in self._redis.scan_iter(match=pattern)]

    async def stats(self) -> Dict[str, Any]:
        return {"backend": "redis", "total_keys": await self._redis.dbsize()}

    async def close(self) -> None:
        await self._redis.aclose()


class SessionStore:
    """High-level session manager"""

    def __init__(self, backend: SessionBackend, ttl_seconds: int = 60 * 60 * 24 * 7):
        self.backend = backend
        self.ttl_seconds = ttl_seconds
        self.logger = get_logger(f"{__name__}.SessionStore")

    @staticmethod
    def _key(session_id: str) -> str:
        return f"{SESSION_KEY_PREFIX}{session_id}"

    async def create(
        self, user_id: int, username: str, email: str, refresh_token: Optional[str] = None
    ) -> SessionData:
        """Establish a new session for an authenticated user"""
        session = SessionData(
            session_id=secrets.token_urlsafe(32),
            user_id=user_id,
            username=username,
            email=email,
            refresh_token=refresh_token,
        )
        await self.save(session)
        self.logger.info(
            f"Session {session.session_id[:8]}... created for user {username}"
        )
        return session

    async def get(self, session_id: Optional[str]) -> Optional[SessionData]:
        """Load a session, None if unknown or expired"""
        if not session_id:
            return None
        try:
            raw = await self.backend.get(self._key(session_id))
        except Exception as e:
            self.logger.error(f"Session load failed: {e}")
            raise SessionStoreError("get", str(e))

        if raw is None:
            return None
        return SessionData.model_validate_json(raw)

    async def save(self, session: SessionData) -> SessionData:
        try:
            await self.backend.set(
                self._key(session.session_id),
                session.model_dump_json(),
                ttl=self.ttl_seconds,
            )
        except Exception as e:
            self.logger.error(f"Session save failed: {e}")
            raise SessionStoreError("save", str(e))
        return session

    async def update_tokens(
        self,
        session_id: str,
        access_token: str,
        expires_at: float,
        refresh_token: Optional[str] = None,
    ) -> Optional[SessionData]:
        """Persist a new access token pair into an existing session"""
        session = await self.get(session_id)
        if session is None:
            return None

        session.access_token = access_token
        session.expires_at = expires_at
        if refresh_token:
            session.refresh_token = refresh_token
        return await self.save(session)

    async def update_fields(self, session_id: str, **fields: Any) -> Optional[SessionData]:
        """Re-read a session and overwrite only the given fields"""
        session = await self.get(session_id)
        if session is None:
            return None
        return await self.save(session.model_copy(update=fields))

    async def destroy(self, session_id: Optional[str]) -> bool:
        """Remove a session; safe to call repeatedly"""
        if not session_id:
            return False
        try:
            removed = await self.backend.delete(self._key(session_id))
        except Exception as e:
            self.logger.error(f"Session destroy failed: {e}")
            raise SessionStoreError("destroy", str(e))
        if removed:
            self.logger.info(f"Session {session_id[:8]}... destroyed")
        return removed

    async def destroy_user_sessions(self, user_id: int) -> List[str]:
        """Remove every session belonging to a user, returns their ids"""
        destroyed = []
        for key in await self.backend.keys(f"{SESSION_KEY_PREFIX}*"):
            raw = await self.backend.get(key)
            if raw is None:
                continue
            session = SessionData.model_validate_json(raw)
            if session.user_id == user_id:
                await self.backend.delete(key)
                destroyed.append(session.session_id)

        self.logger.info(f"Destroyed {len(destroyed)} sessions for user {user_id}")
        return destroyed

    async def health_check(self) -> Dict[str, Any]:
        """Perform session backend health check"""
        try:
            test_key = "__health_check__"
            await self.backend.set(test_key, "ok", ttl=5)
            retrieved = await self.backend.get(test_key)
            await self.backend.delete(test_key)
            stats = await self.backend.stats()

            return {
                "status": "healthy" if retrieved == "ok" else "unhealthy",
                "backend_type": stats.get("backend", "unknown"),
                "stats": stats,
            }
        except Exception as e:
            self.logger.error(f"Session store health check failed: {e}")
            return {"status": "unhealthy", "backend_type": "unknown", "error": str(e)}


# Global session store instance
_session_store: Optional[SessionStore] = None


def create_backend(backend: str = "memory", redis_url: Optional[str] = None) -> SessionBackend:
    if backend == "redis":
        return RedisSessionBackend(redis_url or "redis://localhost:6379/0")
    if backend != "memory":
        raise ValueError(f"Unknown session backend: {backend}")
    return MemorySessionBackend()


def get_session_store() -> SessionStore:
    """Get the global session store"""
    global _session_store
    if _session_store is None:
        _session_store = SessionStore(MemorySessionBackend())
    return _session_store


def init_session_store(
    backend: Optional[SessionBackend] = None, ttl_seconds: int = 60 * 60 * 24 * 7
) -> SessionStore:
    """Initialize the global session store with a specific backend"""
    global _session_store
    _session_store = SessionStore(backend or MemorySessionBackend(), ttl_seconds)
    logger.info(
        f"Session store initialized ({type(_session_store.backend).__name__})"
    )
    return _session_store
