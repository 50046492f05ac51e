"""
Account Management Service.

This module provides the `UserService`, which owns every write to the
credential store: registration, credential checks, the denormalized music
profile snapshot, the stored refresh token, and account deletion.

Key Components:
- `UserService.register`: validates the form, hashes the password with bcrypt
  in a worker thread and inserts the user. Case-insensitive uniqueness of
  username and email is enforced by unique columns; the pre-check only exists to pick the friendly
  message, the `IntegrityError` path is what actually guards concurrent
  registrations.
- `UserService.authenticate`: username lookup followed by password
  verification. Unknown usernames and wrong passwords raise different errors.
- `UserService.delete_user`: removes the account with its posts, comments,
  likes and follow edges in one transaction, adjusting the counters of every
  other user and post it touched.
- `persist_refresh_token` / `persist_profile_snapshot`: module-level sinks
  used by the token manager and the profile sync pipeline, which run outside
  of any request-scoped database session.

Architectural Design:
- Each public method opens and commits its own database session, so callers
  never see a half-applied change.
- Database failures are logged with traceback and surfaced as `DatabaseError`.
"""

import asyncio
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import select

from core.auth import PasswordManager
from core.database import get_session_factory
from core.exceptions import (
    AuthenticationError,
    DatabaseError,
    DuplicateAccountError,
    UserNotFoundError,
    ValidationError,
)
from core.logging_config import get_logger
from core.models import Comment, Follow, Like, Post, User, utcnow
from core.validation import InputValidator

logger = get_logger(__name__)


class UserService:
    """Service that manages registered accounts"""

    def __init__(self, password_manager: Optional[PasswordManager] = None):
        self.password_manager = password_manager or PasswordManager()

    async def register(
        self, username: Any, email: Any, password1: Any, password2: Any
    ) -> User:
        """
        Create a new account.

        Raises:
            ValidationError: a field is missing or malformed, or the passwords differ
            DuplicateAccountError: username or email already taken (any case)
        """
        username = InputValidator.validate_username(
            InputValidator.require(username, "username")
        )
        email = InputValidator.validate_email(InputValidator.require(email, "email"))
        password1 = InputValidator.validate_password(
            InputValidator.require(password1, "password1")
        )
        InputValidator.require(password2, "password2")
        if password1 != password2:
            raise ValidationError("password2", "***", "Passwords do not match.")

        username_key = username.lower()

        async with get_session_factory()() as session:
            existing = await session.execute(
                select(User).where(
                    or_(User.username_key == username_key, User.email == email)
                )
            )
            clash = existing.scalars().first()
            if clash is not None:
                field = "username" if clash.username_key == username_key else "email"
                logger.info(f"Registration rejected, duplicate {field}")
                raise DuplicateAccountError(field)

            password_hash = await asyncio.to_thread(
                self.password_manager.hash_password, password1
            )
            user = User(
                username=username,
                username_key=username_key,
                email=email,
                password_hash=password_hash,
            )
            session.add(user)
            try:
                await session.commit()
            except IntegrityError:
                # Lost a race with a concurrent registration
                await session.rollback()
                logger.info(f"Registration for {username} lost a uniqueness race")
                raise DuplicateAccountError("username")
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"Failed to register {username}: {e}", exc_info=True)
                raise DatabaseError("register", str(e))

            await session.refresh(user)

        logger.info(f"User registered: {username}", extra={"user_id": user.id})
        return user

    async def authenticate(self, username: Any, password: Any) -> User:
        """
        Check a username/password pair.

        Raises:
            UserNotFoundError: no account with that username
            AuthenticationError: the password does not match
        """
        username = InputValidator.require(username, "username")
        password = InputValidator.require(password, "password")

        user = await self.get_by_username(str(username))
        if user is None:
            raise UserNotFoundError(username)

        matches = await asyncio.to_thread(
            self.password_manager.verify_password, str(password), user.password_hash
        )
        if not matches:
            logger.info(f"Failed login for {user.username}")
            raise AuthenticationError()

        return user

    async def get_user(self, user_id: int) -> Optional[User]:
        async with get_session_factory()() as session:
            return await session.get(User, user_id)

    async def get_by_username(self, username: str) -> Optional[User]:
        async with get_session_factory()() as session:
            result = await session.execute(
                select(User).where(User.username_key == username.strip().lower())
            )
            return result.scalars().first()

    async def set_refresh_token(self, user_id: int, refresh_token: str) -> None:
        """Store the long-lived music API credential on the account"""
        async with get_session_factory()() as session:
            try:
                await session.execute(
                    update(User)
                    .where(User.id == user_id)
                    .values(refresh_token=refresh_token)
                )
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"Failed to store refresh token: {e}", exc_info=True)
                raise DatabaseError("set_refresh_token", str(e))

    async def update_profile_snapshot(
        self,
        user_id: int,
        profile_picture_url: Optional[str],
        top_tracks: List[Dict[str, Any]],
        top_artists: List[Dict[str, Any]],
    ) -> None:
        """Replace the denormalized copy of the linked music profile"""
        async with get_session_factory()() as session:
            try:
                await session.execute(
                    update(User)
                    .where(User.id == user_id)
                    .values(
                        profile_picture_url=profile_picture_url,
                        top_tracks=top_tracks,
                        top_artists=top_artists,
                        profile_synced_at=utcnow(),
                    )
                )
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"Failed to save profile snapshot: {e}", exc_info=True)
                raise DatabaseError("update_profile_snapshot", str(e))

    async def delete_user(self, user_id: int) -> bool:
        """
        Remove an account and everything it owns.

        Counters on other users and posts are decremented for the follow edges,
        likes and comments that disappear with the account. Returns False when
        the account does not exist.
        """
        async with get_session_factory()() as session:
            try:
                user = await session.get(User, user_id)
                if user is None:
                    return False

                own_posts = select(Post.id).where(Post.user_id == user_id)

                # Likes the user left on other people's posts
                await session.execute(
                    update(Post)
                    .where(
                        Post.id.in_(select(Like.post_id).where(Like.user_id == user_id)),
                        Post.user_id != user_id,
                    )
                    .values(like_count=Post.like_count - 1)
                )

                # Comments the user left on other people's posts
                comment_counts = await session.execute(
                    select(Comment.post_id, func.count(Comment.id))
                    .join(Post, Post.id == Comment.post_id)
                    .where(Comment.user_id == user_id, Post.user_id != user_id)
                    .group_by(Comment.post_id)
                )
                for post_id, count in comment_counts.all():
                    await session.execute(
                        update(Post)
                        .where(Post.id == post_id)
                        .values(comment_count=Post.comment_count - count)
                    )

                await session.execute(
                    update(User)
                    .where(
                        User.id.in_(
                            select(Follow.followee_id).where(Follow.follower_id == user_id)
                        )
                    )
                    .values(followers=User.followers - 1)
                )
                await session.execute(
                    update(User)
                    .where(
                        User.id.in_(
                            select(Follow.follower_id).where(Follow.followee_id == user_id)
                        )
                    )
                    .values(following=User.following - 1)
                )

                await session.execute(
                    delete(Like).where(
                        or_(Like.user_id == user_id, Like.post_id.in_(own_posts))
                    )
                )
                await session.execute(
                    delete(Comment).where(
                        or_(Comment.user_id == user_id, Comment.post_id.in_(own_posts))
                    )
                )
                await session.execute(
                    delete(Follow).where(
                        or_(Follow.follower_id == user_id, Follow.followee_id == user_id)
                    )
                )
                await session.execute(delete(Post).where(Post.user_id == user_id))
                await session.execute(delete(User).where(User.id == user_id))
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"Failed to delete user {user_id}: {e}", exc_info=True)
                raise DatabaseError("delete_user", str(e))

        logger.info(f"User {user_id} deleted")
        return True


# Global user service instance
_user_service: Optional[UserService] = None


def get_user_service() -> UserService:
    global _user_service
    if _user_service is None:
        _user_service = UserService()
    return _user_service


async def persist_refresh_token(user_id: int, refresh_token: str) -> None:
    await get_user_service().set_refresh_token(user_id, refresh_token)


async def persist_profile_snapshot(
    user_id: int,
    profile_picture_url: Optional[str],
    top_tracks: List[Dict[str, Any]],
    top_artists: List[Dict[str, Any]],
) -> None:
    await get_user_service().update_profile_snapshot(
        user_id, profile_picture_url, top_tracks, top_artists
    )
