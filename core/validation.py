"""
Input Validation and Sanitization Utilities.

Validators for the values that arrive through registration, login, posting and
commenting. Each validator either returns the normalized value or raises
`ValidationError` naming the offending field, so handlers can surface the
message to the caller without changing any state.
"""

import re
from typing import Any, Optional

from email_validator import EmailNotValidError, validate_email as check_email

from core.logging_config import get_logger
from core.exceptions import ValidationError

logger = get_logger(__name__)


class InputValidator:
    """Input validation and sanitization"""

    USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]{3,30}$")
    TRACK_ID_PATTERN = re.compile(r"^[a-zA-Z0-9]{1,64}$")
    CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")

    # bcrypt only looks at the first 72 bytes
    MAX_PASSWORD_BYTES = 72

    @staticmethod
    def sanitize_string(
        value: Any,
        field: str = "input",
        max_length: int = 1000,
    ) -> str:
        """Strip control characters and surrounding whitespace; text is stored raw"""
        if not isinstance(value, str):
            raise ValidationError(field, value, f"{field} must be a string")

        value = InputValidator.CONTROL_CHARS.sub("", value).strip()

        if len(value) > max_length:
            raise ValidationError(
                field, value[:50], f"{field} must be no more than {max_length} characters"
            )

        return value

    @staticmethod
    def require(value: Optional[str], field: str) -> str:
        """Reject missing or blank values"""
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValidationError(field, "", f"{field} is required")
        return value

    @staticmethod
    def validate_email(email: str) -> str:
        """Validate email address"""
        email = InputValidator.sanitize_string(email, "email", max_length=254)

        try:
            checked = check_email(email, check_deliverability=False)
        except EmailNotValidError:
            raise ValidationError("email", email, "Invalid email format")

        return checked.normalized.lower()

    @staticmethod
    def validate_username(username: str) -> str:
        """Validate username"""
        username = InputValidator.sanitize_string(username, "username", max_length=30)

        if not InputValidator.USERNAME_PATTERN.match(username):
            raise ValidationError(
                "username",
                username,
                "Username must be 3-30 characters and contain only letters, numbers, dots, hyphens, and underscores",
            )

        return username

    @staticmethod
    def validate_password(password: str) -> str:
        """Validate password length; no composition rules are imposed"""
        if not isinstance(password, str) or not password:
            raise ValidationError("password", "***", "password is required")

        if len(password.encode("utf-8")) > InputValidator.MAX_PASSWORD_BYTES:
            raise ValidationError(
                "password",
                "***",
                f"Password must be no more than {InputValidator.MAX_PASSWORD_BYTES} bytes long",
            )

        return password

    @staticmethod
    def validate_track_id(track_id: str) -> str:
        """Validate external track identifier"""
        track_id = InputValidator.sanitize_string(track_id, "track_id", max_length=64)

        if not InputValidator.TRACK_ID_PATTERN.match(track_id):
            raise ValidationError("track_id", track_id, "Invalid track id")

        return track_id

    @staticmethod
    def validate_integer(
        value: Any, field: str, min_val: int = None, max_val: int = None
    ) -> int:
        """Validate integer input"""
        try:
            int_value = int(value)
        except (ValueError, TypeError):
            raise ValidationError(field, value, f"{field} must be an integer")

        if min_val is not None and int_value < min_val:
            raise ValidationError(field, value, f"{field} must be at least {min_val}")

        if max_val is not None and int_value > max_val:
            raise ValidationError(
                field, value, f"{field} must be no more than {max_val}"
            )

        return int_value


def validate_comment_text(text: str) -> str:
    """Validate comment body"""
    text = InputValidator.sanitize_string(
        InputValidator.require(text, "text"), "text", max_length=500
    )
    if not text:
        raise ValidationError("text", text, "text is required")
    return text


def validate_caption(caption: Optional[str]) -> Optional[str]:
    """Validate optional post caption"""
    if caption is None or not str(caption).strip():
        return None
    return InputValidator.sanitize_string(caption, "caption", max_length=280)
