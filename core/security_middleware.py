"""Security Middleware

Provides the session auth gate and the security headers added to every
response.

The auth gate has exactly two outcomes for a protected path: the request
carries the cookie of a live session, in which case the session is attached to
`request.state.session` and the request proceeds; or it does not, in which case
the handler chain is short-circuited with a redirect to `/login`. The gate
keeps no state of its own.
"""

from typing import Iterable, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import RedirectResponse

from core.auth import clear_session_cookie, get_session_id
from core.logging_config import get_logger, correlation_id
from core.sessions import get_session_store

logger = get_logger(__name__)

PUBLIC_PATHS = (
    "/",
    "/login",
    "/register",
    "/logout",
    "/healthcheck",
    "/monitoring",
    "/docs",
    "/redoc",
    "/openapi.json",
)


def is_public_path(path: str, public_paths: Iterable[str] = PUBLIC_PATHS) -> bool:
    for public in public_paths:
        if public == "/":
            if path == "/":
                return True
        elif path == public or path.startswith(public + "/"):
            return True
    return False


class SessionAuthMiddleware(BaseHTTPMiddleware):
    """Redirects requests without a live session to the login page"""

    def __init__(self, app, public_paths: Optional[Iterable[str]] = None, login_url: str = "/login"):
        super().__init__(app)
        self.public_paths = tuple(public_paths or PUBLIC_PATHS)
        self.login_url = login_url

    async def dispatch(self, request: Request, call_next):
        # Skip CORS preflight requests
        if request.method == "OPTIONS":
            return await call_next(request)

        session_id = get_session_id(request)
        session = await get_session_store().get(session_id) if session_id else None
        request.state.session = session

        if session is not None or is_public_path(request.url.path, self.public_paths):
            return await call_next(request)

        logger.info(
            f"Unauthenticated request to {request.url.path} redirected to login",
            extra={"path": request.url.path, "stale_cookie": bool(session_id)},
        )
        response = RedirectResponse(self.login_url, status_code=302)
        if session_id:
            clear_session_cookie(response)
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Security headers middleware"""

    def __init__(self, app):
        super().__init__(app)
        self.security_headers = {
            "X-Content-Type-Options": "nosniff",
            "X-Frame-Options": "DENY",
            "X-XSS-Protection": "1; mode=block",
            "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
            "Referrer-Policy": "strict-origin-when-cross-origin",
            "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
        }

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        for header, value in self.security_headers.items():
            response.headers[header] = value

        corr_id = correlation_id.get()
        if corr_id:
            response.headers["X-Correlation-ID"] = corr_id

        return response
