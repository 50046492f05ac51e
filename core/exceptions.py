"""
Custom Exception Classes for the Music Share API.

This module defines the exception hierarchy used throughout the service. Every
error condition a handler can hit is expressed as a subclass of
`MusicShareException`, carrying a stable `error_code`, a human readable
message, and an optional `details` dictionary.

Key Components:
- `MusicShareException`: The root of the hierarchy.
- Validation errors (`ValidationError`, `DuplicateAccountError`): bad or
  duplicate form input; no state is changed.
- Authentication/authorization errors (`AuthenticationError`,
  `NotAuthenticatedError`, `PermissionDeniedError`).
- Lookup errors (`UserNotFoundError`, `PostNotFoundError`).
- Precondition errors (`ConflictError`, `AccountNotLinkedError`): the request was
  well formed but the current state forbids it (already liked, not following).
- Dependency errors (`ExternalServiceError`, `DatabaseError`,
  `SessionStoreError`): the request was aborted because a collaborator failed.

Error codes map to HTTP status codes in a single table used by the error
handling middleware.
"""

from typing import Optional, Dict, Any


STATUS_CODE_MAP = {
    "VALIDATION_ERROR": 400,
    "DUPLICATE_ACCOUNT": 400,
    "AUTHENTICATION_ERROR": 401,
    "NOT_AUTHENTICATED": 401,
    "PERMISSION_DENIED": 403,
    "USER_NOT_FOUND": 404,
    "POST_NOT_FOUND": 404,
    "CONFLICT": 409,
    "MUSIC_ACCOUNT_NOT_LINKED": 409,
    "EXTERNAL_SERVICE_ERROR": 502,
    "DATABASE_ERROR": 500,
    "SESSION_STORE_ERROR": 500,
}


class MusicShareException(Exception):
    """Base exception class for the Music Share API"""

    def __init__(
        self,
        message: str,
        error_code: str = "MUSIC_SHARE_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        return STATUS_CODE_MAP.get(self.error_code, 500)


class ValidationError(MusicShareException):
    """Raised when input validation fails"""

    def __init__(self, field: str, value: Any, reason: str):
        super().__init__(
            reason,
            "VALIDATION_ERROR",
            {"field": field, "value": str(value), "reason": reason},
        )


class DuplicateAccountError(MusicShareException):
    """Raised when a username or email is already registered"""

    def __init__(self, field: str):
        super().__init__(
            "Username or email already exists. Please choose a different one.",
            "DUPLICATE_ACCOUNT",
            {"field": field},
        )


class AuthenticationError(MusicShareException):
    """Raised when credentials do not match"""

    def __init__(self, reason: str = "Incorrect username or password."):
        super().__init__(reason, "AUTHENTICATION_ERROR", {"reason": reason})


class NotAuthenticatedError(MusicShareException):
    """Raised when a protected operation runs without a session"""

    def __init__(self):
        super().__init__("Please log in to continue.", "NOT_AUTHENTICATED")


class PermissionDeniedError(MusicShareException):
    """Raised when the session user may not act on a resource"""

    def __init__(self, reason: str):
        super().__init__(reason, "PERMISSION_DENIED", {"reason": reason})


class UserNotFoundError(MusicShareException):
    """Raised when a user cannot be found"""

    def __init__(self, identifier: Any):
        super().__init__(
            "User not found. Please check your username.",
            "USER_NOT_FOUND",
            {"user": str(identifier)},
        )


class PostNotFoundError(MusicShareException):
    """Raised when a post cannot be found"""

    def __init__(self, post_id: int):
        super().__init__(
            f"Post {post_id} not found", "POST_NOT_FOUND", {"post_id": post_id}
        )


class ConflictError(MusicShareException):
    """Raised when a precondition on the current state is violated"""

    def __init__(self, reason: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(reason, "CONFLICT", details)


class AccountNotLinkedError(MusicShareException):
    """Raised when an operation needs a linked music account"""

    def __init__(self, username: str):
        super().__init__(
            "Link your music account to continue.",
            "MUSIC_ACCOUNT_NOT_LINKED",
            {"username": username},
        )


class ExternalServiceError(MusicShareException):
    """Raised when the music API or token exchange fails"""

    def __init__(self, service: str, reason: str):
        super().__init__(
            reason,
            "EXTERNAL_SERVICE_ERROR",
            {"service": service, "reason": reason},
        )


class DatabaseError(MusicShareException):
    """Raised when database operations fail"""

    def __init__(self, operation: str, reason: str):
        super().__init__(
            f"Database operation '{operation}' failed",
            "DATABASE_ERROR",
            {"operation": operation, "reason": reason},
        )


class SessionStoreError(MusicShareException):
    """Raised when the session store cannot be reached"""

    def __init__(self, operation: str, reason: str):
        super().__init__(
            f"Session store operation '{operation}' failed",
            "SESSION_STORE_ERROR",
            {"operation": operation, "reason": reason},
        )

