"""
Authentication and Account Endpoints for the Music Share API.

This module exposes the account lifecycle: registration, login with the
post-login profile sync, linking a music account through the authorization
code flow, logout and account deletion.

Endpoints Provided:
- `GET/POST /register`: Describe / submit the registration form. A successful
  registration redirects to `/login`; the user is not logged in automatically.
- `GET/POST /login`: Describe / submit the login form. Success creates a
  server-side session (the cookie only carries its opaque id). Accounts with a
  linked music account are synced and sent to `/profile`, others to `/link`.
- `GET /link` and `GET /callback`: Authorization code flow against the music
  API, protected by a one-time `state` value kept in the session.
- `GET /logout`: Destroys the session; safe to call repeatedly.
- `DELETE /delete/{username}` and `POST /profile/delete`: Remove the caller's
  own account and every session it still has.

Architectural Design:
- Form or JSON: request bodies are accepted either as form submissions or as
  JSON objects through `read_payload`.
- Error handling: service errors propagate as `MusicShareException` subclasses
  and are rendered by `ErrorHandlingMiddleware`; the one exception is a failed
  profile sync during login, whose error response must still carry the new
  session cookie.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse

from api.dependencies import (
    get_current_session,
    get_profile_sync,
    get_provider,
    get_tokens,
    get_users,
    read_payload,
)
from core.auth import clear_session_cookie, get_session_id, set_session_cookie
from core.exceptions import (
    ExternalServiceError,
    PermissionDeniedError,
    UserNotFoundError,
    ValidationError,
)
from core.logging_config import get_logger, log_function_call
from core.middleware import create_error_response
from core.sessions import SessionData, get_session_store
from providers.music_provider import SERVICE_NAME, MusicProvider, generate_oauth_state
from services.profile_sync import ProfileSyncPipeline
from services.token_manager import TokenManager
from services.user_service import UserService

logger = get_logger(__name__)

router = APIRouter(tags=["Authentication"])


@router.get("/register")
async def register_page() -> Dict[str, Any]:
    """Describe the registration form"""
    return {
        "page": "register",
        "action": "/register",
        "fields": ["username", "email", "password1", "password2"],
    }


@router.post("/register")
@log_function_call(logger)
async def register_user(
    payload: Dict[str, Any] = Depends(read_payload),
    users: UserService = Depends(get_users),
):
    """Register a new user"""
    await users.register(
        payload.get("username"),
        payload.get("email"),
        payload.get("password1"),
        payload.get("password2"),
    )
    return RedirectResponse("/login", status_code=302)


@router.get("/login")
async def login_page() -> Dict[str, Any]:
    """Describe the login form"""
    return {"page": "login", "action": "/login", "fields": ["username", "password"]}


@router.post("/login")
@log_function_call(logger)
async def login_user(
    request: Request,
    payload: Dict[str, Any] = Depends(read_payload),
    users: UserService = Depends(get_users),
    pipeline: ProfileSyncPipeline = Depends(get_profile_sync),
):
    """Authenticate user, establish a session and sync the music profile"""
    user = await users.authenticate(payload.get("username"), payload.get("password"))

    store = get_session_store()
    # Never reuse a session id presented before authentication
    await store.destroy(get_session_id(request))
    session = await store.create(
        user.id, user.username, user.email, refresh_token=user.refresh_token
    )
    logger.info(f"User logged in: {user.username}", extra={"user_id": user.id})

    if not user.refresh_token:
        response = RedirectResponse("/link", status_code=302)
        set_session_cookie(response, session.session_id)
        return response

    result = await pipeline.run(session.session_id, user.id)
    if result.ok:
        response = RedirectResponse("/profile", status_code=302)
    else:
        error = result.error
        response = create_error_response(
            type(error).__name__,
            error.error_code,
            result.message,
            status_code=error.status_code,
            correlation_id=getattr(request.state, "correlation_id", None),
            details={"step": result.failed_step},
        )
    set_session_cookie(response, session.session_id)
    return response


@router.get("/link")
@log_function_call(logger)
async def link_music_account(
    session: SessionData = Depends(get_current_session),
    provider: MusicProvider = Depends(get_provider),
    token_manager: TokenManager = Depends(get_tokens),
):
    """Send the user to the music service to authorize this app"""
    state = generate_oauth_state()
    await token_manager.set_oauth_state(session.session_id, state)
    return RedirectResponse(provider.build_authorize_url(state), status_code=302)


@router.get("/callback")
@log_function_call(logger)
async def music_callback(
    code: str = None,
    state: str = None,
    error: str = None,
    session: SessionData = Depends(get_current_session),
    provider: MusicProvider = Depends(get_provider),
    token_manager: TokenManager = Depends(get_tokens),
    pipeline: ProfileSyncPipeline = Depends(get_profile_sync),
):
    """Finish the authorization code flow"""
    # One-time value, consumed whatever the outcome
    expected_state = await token_manager.take_oauth_state(session.session_id)

    if error:
        raise ValidationError("code", error, "Music account authorization was denied.")
    if not state or state != expected_state:
        logger.warning(
            "Authorization callback with invalid state",
            extra={"user_id": session.user_id},
        )
        raise ValidationError("state", state or "", "Invalid authorization state.")
    if not code:
        raise ValidationError("code", "", "code is required")

    payload = await provider.exchange_code(code)
    if not payload.refresh_token:
        raise ExternalServiceError(SERVICE_NAME, "Authorization returned no refresh token")

    await token_manager.install_tokens(session.session_id, payload)
    logger.info(f"Music account linked for {session.username}", extra={"user_id": session.user_id})

    result = await pipeline.run(session.session_id, session.user_id)
    result.raise_for_failure()
    return RedirectResponse("/profile", status_code=302)


@router.get("/logout")
@log_function_call(logger)
async def logout_user(
    request: Request, token_manager: TokenManager = Depends(get_tokens)
):
    """Destroy the current session"""
    session_id = get_session_id(request)
    if await get_session_store().destroy(session_id):
        logger.info("User logged out")
    if session_id:
        token_manager.forget(session_id)

    response = JSONResponse({"message": "Logged out Successfully"})
    clear_session_cookie(response)
    return response


async def _delete_account(
    session: SessionData, users: UserService, token_manager: TokenManager
) -> JSONResponse:
    if not await users.delete_user(session.user_id):
        raise UserNotFoundError(session.username)

    destroyed = await get_session_store().destroy_user_sessions(session.user_id)
    for session_id in destroyed:
        token_manager.forget(session_id)

    logger.info(
        f"Account {session.username} deleted",
        extra={"user_id": session.user_id, "sessions_destroyed": len(destroyed)},
    )
    response = JSONResponse({"message": "User deleted successfully"})
    clear_session_cookie(response)
    return response


@router.delete("/delete/{username}")
@log_function_call(logger)
async def delete_user(
    username: str,
    session: SessionData = Depends(get_current_session),
    users: UserService = Depends(get_users),
    token_manager: TokenManager = Depends(get_tokens),
):
    """Delete the caller's own account by username"""
    if username.strip().lower() != session.username.lower():
        raise PermissionDeniedError("You can only delete your own account.")
    return await _delete_account(session, users, token_manager)


@router.post("/profile/delete")
@log_function_call(logger)
async def delete_own_account(
    session: SessionData = Depends(get_current_session),
    users: UserService = Depends(get_users),
    token_manager: TokenManager = Depends(get_tokens),
):
    """Delete the caller's own account"""
    return await _delete_account(session, users, token_manager)
