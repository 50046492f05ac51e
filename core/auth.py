"""
Password Hashing and Session Cookie Helpers.

- `PasswordManager`: salted one-way hashing with bcrypt.
- Cookie helpers: the session cookie carries only the opaque session id; all
  identity and token state stays in the server-side session store.
"""

from typing import Optional

import bcrypt
from fastapi import Request, Response

from core.logging_config import get_logger
from core.settings import get_settings

logger = get_logger(__name__)


class PasswordManager:
    """Password hashing and verification"""

    @staticmethod
    def hash_password(password: str) -> str:
        """Hash password using bcrypt"""
        salt = bcrypt.gensalt()
        hashed = bcrypt.hashpw(password.encode("utf-8"), salt)
        return hashed.decode("utf-8")

    @staticmethod
    def verify_password(password: str, hashed: str) -> bool:
        """Verify password against hash"""
        try:
            return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
        except ValueError as e:
            logger.error(f"Password verification error: {e}")
            return False


def get_session_id(request: Request) -> Optional[str]:
    """Opaque session id from the request cookie"""
    return request.cookies.get(get_settings().session_cookie_name)


def set_session_cookie(response: Response, session_id: str) -> None:
    settings = get_settings()
    response.set_cookie(
        settings.session_cookie_name,
        session_id,
        max_age=settings.session_ttl_seconds,
        httponly=True,
        samesite="lax",
        secure=settings.session_cookie_secure,
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(get_settings().session_cookie_name)
