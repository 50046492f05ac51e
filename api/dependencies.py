from typing import Any, Dict

from fastapi import Depends, Request

from core.exceptions import NotAuthenticatedError, ValidationError
from core.sessions import SessionData
from providers.music_provider import MusicProvider, get_music_provider
from services.profile_sync import ProfileSyncPipeline
from services.social_service import SocialService, get_social_service
from services.token_manager import TokenManager, get_token_manager
from services.user_service import (
    UserService,
    get_user_service,
    persist_profile_snapshot,
)


def get_current_session(request: Request) -> SessionData:
    """Session attached by the auth gate"""
    session = getattr(request.state, "session", None)
    if session is None:
        raise NotAuthenticatedError()
    return session


def get_users() -> UserService:
    return get_user_service()


def get_social() -> SocialService:
    return get_social_service()


def get_tokens() -> TokenManager:
    return get_token_manager()


def get_provider() -> MusicProvider:
    return get_music_provider()


def get_profile_sync(
    token_manager: TokenManager = Depends(get_tokens),
    provider: MusicProvider = Depends(get_provider),
) -> ProfileSyncPipeline:
    return ProfileSyncPipeline(token_manager, provider, persist_profile_snapshot)


async def read_payload(request: Request) -> Dict[str, Any]:
    """Request body as a dict, from either a JSON or a form submission"""
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            body = await request.json()
        except ValueError:
            raise ValidationError("body", "", "Request body is not valid JSON")
        if not isinstance(body, dict):
            raise ValidationError("body", "", "Request body must be an object")
        return body

    if content_type:
        form = await request.form()
        return dict(form)

    return {}
