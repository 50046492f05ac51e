"""
Social API Endpoints for the Music Share API.

This module defines the session-gated routes for the social side of the
service: the home feed, profiles, posting tracks, comments, likes and follows.
Every route here sits behind `SessionAuthMiddleware`; handlers obtain the
caller's identity from the session it attached and never from a process-level
variable.

Endpoints Provided:
- `GET /home/{amount}`: The newest `amount` posts from all users.
- `GET /profile`, `GET /profile/{user_id}`: Profile snapshot plus posts.
- `POST /profile`: Share a track by its music API id.
- `POST /profile/sync`: Re-run the profile sync pipeline.
- `GET/POST /post/comments/{post_id}`: List / add comments.
- `POST /post/like/{post_id}`, `POST /post/unlike/{post_id}`: Like edges.
- `POST /user/follow/{user_id}`, `POST /user/unfollow/{user_id}`: Follow edges.
- `POST /post/delete/{post_id}`: Remove one of the caller's own posts.
- `GET /track/{track_id}`: Track metadata from the music API.

Architectural Design:
- Dependency Injection: services, the token manager and the music provider are
  provided through FastAPI's `Depends`, so tests can swap any of them.
- Token before call: any handler that talks to the music API first obtains its
  access token from the `TokenManager`, which refreshes it at most once per
  session even under concurrent requests.
- Errors raised by the services are rendered by `ErrorHandlingMiddleware`.
"""

from typing import Any, Dict, List

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from api.dependencies import (
    get_current_session,
    get_profile_sync,
    get_provider,
    get_social,
    get_tokens,
    read_payload,
)
from core.logging_config import get_logger, log_function_call
from core.sessions import SessionData
from core.settings import get_settings
from core.validation import InputValidator
from providers.music_provider import MusicProvider
from services.profile_sync import ProfileSyncPipeline
from services.social_service import SocialService
from services.token_manager import TokenManager

logger = get_logger(__name__)

router = APIRouter(tags=["Social"])


class LikeResponse(BaseModel):
    post_id: int
    like_count: int
    liked: bool


class FollowResponse(BaseModel):
    user_id: int
    following: bool
    followers: int


class SyncResponse(BaseModel):
    ok: bool
    completed_steps: List[str]


@router.get("/home/{amount}")
@log_function_call(logger)
async def home_feed(
    amount: int,
    session: SessionData = Depends(get_current_session),
    social: SocialService = Depends(get_social),
) -> Dict[str, Any]:
    """Newest posts across the service"""
    amount = InputValidator.validate_integer(
        amount, "amount", min_val=1, max_val=get_settings().feed_max_amount
    )
    posts = await social.get_feed(session.user_id, amount)
    return {"amount": amount, "posts": posts}


@router.get("/profile")
@log_function_call(logger)
async def own_profile(
    session: SessionData = Depends(get_current_session),
    social: SocialService = Depends(get_social),
) -> Dict[str, Any]:
    return await social.get_profile(session.user_id, session.user_id)


@router.post("/profile", status_code=201)
@log_function_call(logger)
async def create_post(
    payload: Dict[str, Any] = Depends(read_payload),
    session: SessionData = Depends(get_current_session),
    social: SocialService = Depends(get_social),
    token_manager: TokenManager = Depends(get_tokens),
    provider: MusicProvider = Depends(get_provider),
) -> Dict[str, Any]:
    """Share a track"""
    track_id = InputValidator.validate_track_id(
        InputValidator.require(payload.get("track_id"), "track_id")
    )
    access_token = await token_manager.ensure_access_token(session.session_id)
    track = await provider.get_track(access_token, track_id)
    return await social.create_post(session.user_id, track, payload.get("caption"))


@router.post("/profile/sync", response_model=SyncResponse)
@log_function_call(logger)
async def sync_profile(
    session: SessionData = Depends(get_current_session),
    pipeline: ProfileSyncPipeline = Depends(get_profile_sync),
):
    """Refresh the music profile snapshot"""
    result = await pipeline.run(session.session_id, session.user_id)
    result.raise_for_failure()
    return SyncResponse(ok=True, completed_steps=result.completed_steps)


@router.get("/profile/{user_id}")
@log_function_call(logger)
async def user_profile(
    user_id: int,
    session: SessionData = Depends(get_current_session),
    social: SocialService = Depends(get_social),
) -> Dict[str, Any]:
    return await social.get_profile(user_id, session.user_id)


@router.get("/post/comments/{post_id}")
async def list_comments(
    post_id: int,
    session: SessionData = Depends(get_current_session),
    social: SocialService = Depends(get_social),
) -> Dict[str, Any]:
    return {"post_id": post_id, "comments": await social.list_comments(post_id)}


@router.post("/post/comments/{post_id}", status_code=201)
@log_function_call(logger)
async def add_comment(
    post_id: int,
    payload: Dict[str, Any] = Depends(read_payload),
    session: SessionData = Depends(get_current_session),
    social: SocialService = Depends(get_social),
) -> Dict[str, Any]:
    return await social.add_comment(session.user_id, post_id, payload.get("text"))


@router.post("/post/like/{post_id}", response_model=LikeResponse)
@log_function_call(logger)
async def like_post(
    post_id: int,
    session: SessionData = Depends(get_current_session),
    social: SocialService = Depends(get_social),
):
    like_count = await social.like_post(session.user_id, post_id)
    return LikeResponse(post_id=post_id, like_count=like_count, liked=True)


@router.post("/post/unlike/{post_id}", response_model=LikeResponse)
@log_function_call(logger)
async def unlike_post(
    post_id: int,
    session: SessionData = Depends(get_current_session),
    social: SocialService = Depends(get_social),
):
    like_count = await social.unlike_post(session.user_id, post_id)
    return LikeResponse(post_id=post_id, like_count=like_count, liked=False)


@router.post("/post/delete/{post_id}")
@log_function_call(logger)
async def delete_post(
    post_id: int,
    session: SessionData = Depends(get_current_session),
    social: SocialService = Depends(get_social),
) -> Dict[str, str]:
    await social.delete_post(session.user_id, post_id)
    return {"message": "Post deleted successfully"}


@router.post("/user/follow/{user_id}", response_model=FollowResponse)
@log_function_call(logger)
async def follow_user(
    user_id: int,
    session: SessionData = Depends(get_current_session),
    social: SocialService = Depends(get_social),
):
    counts = await social.follow_user(session.user_id, user_id)
    return FollowResponse(user_id=user_id, following=True, followers=counts["followers"])


@router.post("/user/unfollow/{user_id}", response_model=FollowResponse)
@log_function_call(logger)
async def unfollow_user(
    user_id: int,
    session: SessionData = Depends(get_current_session),
    social: SocialService = Depends(get_social),
):
    counts = await social.unfollow_user(session.user_id, user_id)
    return FollowResponse(user_id=user_id, following=False, followers=counts["followers"])


@router.get("/track/{track_id}")
@log_function_call(logger)
async def get_track(
    track_id: str,
    session: SessionData = Depends(get_current_session),
    token_manager: TokenManager = Depends(get_tokens),
    provider: MusicProvider = Depends(get_provider),
) -> Dict[str, Any]:
    track_id = InputValidator.validate_track_id(track_id)
    access_token = await token_manager.ensure_access_token(session.session_id)
    track = await provider.get_track(access_token, track_id)
    return track.to_dict()
