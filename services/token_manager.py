"""
External Token Manager.

Produces a usable music API access token for a session before any operation
that calls the music API. The cached token in the session is reused while it
is still valid; otherwise the session's refresh token is exchanged for a new
(access token, expiry) pair with one external call and the pair is written
back into the session.

Refreshes are single-flight per session: concurrent requests on the same
session serialize on a per-session `asyncio.Lock`, and every waiter re-reads
the session after acquiring it, so only the first one performs the exchange
and the rest reuse its result. Different sessions never wait on each other.

A failed exchange aborts the calling request with `ExternalServiceError` and
leaves the session exactly as it was.

The pending authorization `state` of the link flow is written and consumed
under the same lock, touching only that field, so it never overwrites a token
pair stored by a concurrent refresh.
"""

import asyncio
import time
import weakref
from typing import Awaitable, Callable, Optional

from core.exceptions import AccountNotLinkedError, NotAuthenticatedError
from core.logging_config import get_logger
from core.sessions import SessionData, SessionStore
from providers.music_provider import MusicProvider, TokenPayload

logger = get_logger(__name__)

RefreshTokenSink = Callable[[int, str], Awaitable[None]]


class TokenManager:
    """Session-scoped access token lifecycle"""

    def __init__(
        self,
        session_store: SessionStore,
        provider: MusicProvider,
        clock: Callable[[], float] = time.time,
        expiry_skew_seconds: int = 60,
        refresh_token_sink: Optional[RefreshTokenSink] = None,
    ):
        self.session_store = session_store
        self.provider = provider
        self.clock = clock
        self.expiry_skew_seconds = expiry_skew_seconds
        # persists a rotated refresh token into the credential store
        self.refresh_token_sink = refresh_token_sink
        # entries vanish once no request holds or awaits the lock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )
        self.refresh_count = 0

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def _expires_at(self, expires_in: int) -> float:
        lifetime = expires_in - self.expiry_skew_seconds
        if lifetime <= 0:
            lifetime = expires_in
        return self.clock() + max(lifetime, 1)

    async def _load(self, session_id: str) -> SessionData:
        session = await self.session_store.get(session_id)
        if session is None:
            raise NotAuthenticatedError()
        return session

    async def ensure_access_token(self, session_id: str) -> str:
        """
        Return a valid access token for the session, refreshing it first when
        it is absent or past its expiration.

        Raises:
            NotAuthenticatedError: the session no longer exists
            AccountNotLinkedError: the session holds no refresh token
            ExternalServiceError: the refresh exchange failed
        """
        session = await self._load(session_id)
        if session.has_valid_access_token(self.clock()):
            return session.access_token

        async with self._lock_for(session_id):
            # Another request may have refreshed while we waited
            session = await self._load(session_id)
            if session.has_valid_access_token(self.clock()):
                logger.debug("Reusing access token refreshed by a concurrent request")
                return session.access_token

            if not session.refresh_token:
                raise AccountNotLinkedError(session.username)

            payload = await self.provider.refresh_access_token(session.refresh_token)
            self.refresh_count += 1
            await self._store(session, payload)

            logger.info(
                f"Refreshed music access token for user {session.username}",
                extra={"user_id": session.user_id},
            )
            return payload.access_token

    async def install_tokens(self, session_id: str, payload: TokenPayload) -> SessionData:
        """Store tokens obtained from an authorization code exchange"""
        async with self._lock_for(session_id):
            session = await self._load(session_id)
            return await self._store(session, payload)

    async def _store(self, session: SessionData, payload: TokenPayload) -> SessionData:
        rotated = (
            payload.refresh_token is not None
            and payload.refresh_token != session.refresh_token
        )
        updated = await self.session_store.update_tokens(
            session.session_id,
            payload.access_token,
            self._expires_at(payload.expires_in),
            payload.refresh_token,
        )
        if updated is None:
            raise NotAuthenticatedError()

        if rotated and self.refresh_token_sink is not None:
            await self.refresh_token_sink(session.user_id, payload.refresh_token)
        return updated

    async def set_oauth_state(self, session_id: str, state: str) -> None:
        async with self._lock_for(session_id):
            updated = await self.session_store.update_fields(session_id, oauth_state=state)
            if updated is None:
                raise NotAuthenticatedError()

    async def take_oauth_state(self, session_id: str) -> Optional[str]:
        """Consume the pending authorization state, a one-time value"""
        async with self._lock_for(session_id):
            session = await self._load(session_id)
            if session.oauth_state is not None:
                await self.session_store.update_fields(session_id, oauth_state=None)
            return session.oauth_state

    def forget(self, session_id: str) -> None:
        """Drop per-session state once the session is gone"""
        self._locks.pop(session_id, None)


# Global token manager instance
_token_manager: Optional[TokenManager] = None


def get_token_manager() -> TokenManager:
    if _token_manager is None:
        raise RuntimeError("Token manager has not been initialized")
    return _token_manager


def init_token_manager(
    session_store: SessionStore,
    provider: MusicProvider,
    clock: Callable[[], float] = time.time,
    expiry_skew_seconds: int = 60,
    refresh_token_sink: Optional[RefreshTokenSink] = None,
) -> TokenManager:
    global _token_manager
    _token_manager = TokenManager(
        session_store,
        provider,
        clock=clock,
        expiry_skew_seconds=expiry_skew_seconds,
        refresh_token_sink=refresh_token_sink,
    )
    logger.info("Token manager initialized")
    return _token_manager
