"""
Social Graph and Engagement Service.

This module provides the `SocialService`, which implements posts, comments,
likes and follow edges on top of the credential store.

Key Components:
- Posts: created from a track looked up in the music API, listed in the home
  feed and on profiles, deletable by their owner only.
- Comments: appended to a post, each one incrementing `Post.comment_count`.
- Likes and follows: guarded writes whose precondition ("not already liked",
  "currently following", ...) is decided by the database itself.

Architectural Design:
- Atomic check-then-act: inserting an edge relies on the unique constraint
  (`uq_like_post_user`, `uq_follow_edge`) and treats `IntegrityError` as the
  precondition failure; removing an edge is a conditional `DELETE` whose
  rowcount decides whether the edge existed. Nothing is read first and
  written later.
- Counters: `like_count`, `followers` and `following` are stored, and each
  increment or decrement is issued as a relative `UPDATE` inside the same
  transaction as the edge change, so a committed edge always has its counter.
- A rejected write rolls back and raises `ConflictError` (409) with the
  counter untouched.
"""

from typing import Any, Dict, List, Optional, Set

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import select

from core.database import get_session_factory
from core.exceptions import (
    ConflictError,
    DatabaseError,
    PermissionDeniedError,
    PostNotFoundError,
    UserNotFoundError,
    ValidationError,
)
from core.logging_config import get_logger
from core.models import Comment, Follow, Like, Post, User
from core.validation import validate_caption, validate_comment_text
from providers.music_provider import TrackSummary

logger = get_logger(__name__)


def serialize_user(user: User) -> Dict[str, Any]:
    """Public view of an account"""
    return {
        "id": user.id,
        "username": user.username,
        "followers": user.followers,
        "following": user.following,
        "profile_picture_url": user.profile_picture_url,
        "top_tracks": user.top_tracks or [],
        "top_artists": user.top_artists or [],
        "music_linked": bool(user.refresh_token),
    }


def serialize_post(
    post: Post, username: Optional[str] = None, liked_by_me: bool = False
) -> Dict[str, Any]:
    return {
        "id": post.id,
        "user_id": post.user_id,
        "username": username,
        "track": {
            "id": post.track_id,
            "name": post.track_name,
            "artists": [a for a in post.artist_names.split(", ") if a],
            "album": post.album_name,
            "image_url": post.album_image_url,
            "preview_url": post.preview_url,
            "external_url": post.external_url,
        },
        "caption": post.caption,
        "like_count": post.like_count,
        "comment_count": post.comment_count,
        "liked_by_me": liked_by_me,
        "created_at": post.created_at.isoformat(),
    }


def serialize_comment(comment: Comment, username: Optional[str] = None) -> Dict[str, Any]:
    return {
        "id": comment.id,
        "post_id": comment.post_id,
        "user_id": comment.user_id,
        "username": username,
        "text": comment.text,
        "created_at": comment.created_at.isoformat(),
    }


class SocialService:
    """Service for posts, comments, likes and follows"""

    async def create_post(
        self, user_id: int, track: TrackSummary, caption: Optional[str] = None
    ) -> Dict[str, Any]:
        caption = validate_caption(caption)
        post = Post(
            user_id=user_id,
            track_id=track.id,
            track_name=track.name,
            artist_names=", ".join(track.artists),
            album_name=track.album,
            album_image_url=track.image_url,
            preview_url=track.preview_url,
            external_url=track.external_url,
            caption=caption,
        )
        async with get_session_factory()() as session:
            try:
                session.add(post)
                await session.commit()
                await session.refresh(post)
                author = await session.get(User, user_id)
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"Failed to create post: {e}", exc_info=True)
                raise DatabaseError("create_post", str(e))

        logger.info(
            f"Post {post.id} created for track {track.id}", extra={"user_id": user_id}
        )
        return serialize_post(post, author.username if author else None)

    async def delete_post(self, user_id: int, post_id: int) -> None:
        """Remove a post with its likes and comments; owner only"""
        async with get_session_factory()() as session:
            post = await session.get(Post, post_id)
            if post is None:
                raise PostNotFoundError(post_id)
            if post.user_id != user_id:
                raise PermissionDeniedError("You can only delete your own posts.")

            try:
                await session.execute(delete(Like).where(Like.post_id == post_id))
                await session.execute(delete(Comment).where(Comment.post_id == post_id))
                await session.execute(delete(Post).where(Post.id == post_id))
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"Failed to delete post {post_id}: {e}", exc_info=True)
                raise DatabaseError("delete_post", str(e))

        logger.info(f"Post {post_id} deleted", extra={"user_id": user_id})

    async def get_feed(self, viewer_id: int, amount: int) -> List[Dict[str, Any]]:
        """Newest posts from everyone"""
        async with get_session_factory()() as session:
            result = await session.execute(
                select(Post, User.username)
                .join(User, User.id == Post.user_id)
                .order_by(Post.created_at.desc(), Post.id.desc())
                .limit(amount)
            )
            rows = result.all()
            liked = await self._liked_post_ids(session, viewer_id, [p.id for p, _ in rows])

        return [serialize_post(post, username, post.id in liked) for post, username in rows]

    async def get_user_posts(self, user_id: int, viewer_id: int) -> List[Dict[str, Any]]:
        async with get_session_factory()() as session:
            result = await session.execute(
                select(Post, User.username)
                .join(User, User.id == Post.user_id)
                .where(Post.user_id == user_id)
                .order_by(Post.created_at.desc(), Post.id.desc())
            )
            rows = result.all()
            liked = await self._liked_post_ids(session, viewer_id, [p.id for p, _ in rows])

        return [serialize_post(post, username, post.id in liked) for post, username in rows]

    @staticmethod
    async def _liked_post_ids(session, viewer_id: int, post_ids: List[int]) -> Set[int]:
        if not post_ids:
            return set()
        result = await session.execute(
            select(Like.post_id).where(
                Like.user_id == viewer_id, Like.post_id.in_(post_ids)
            )
        )
        return set(result.scalars().all())

    async def get_profile(self, user_id: int, viewer_id: int) -> Dict[str, Any]:
        """Profile of any user as seen by the viewer"""
        async with get_session_factory()() as session:
            user = await session.get(User, user_id)
            if user is None:
                raise UserNotFoundError(user_id)
            profile = serialize_user(user)

        profile["is_self"] = user_id == viewer_id
        profile["is_following"] = (
            False if user_id == viewer_id else await self.is_following(viewer_id, user_id)
        )
        profile["posts"] = await self.get_user_posts(user_id, viewer_id)
        return profile

    async def add_comment(self, user_id: int, post_id: int, text: Any) -> Dict[str, Any]:
        text = validate_comment_text(text)
        async with get_session_factory()() as session:
            if await session.get(Post, post_id) is None:
                raise PostNotFoundError(post_id)

            comment = Comment(post_id=post_id, user_id=user_id, text=text)
            try:
                session.add(comment)
                await session.execute(
                    update(Post)
                    .where(Post.id == post_id)
                    .values(comment_count=Post.comment_count + 1)
                )
                await session.commit()
                await session.refresh(comment)
                author = await session.get(User, user_id)
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"Failed to add comment: {e}", exc_info=True)
                raise DatabaseError("add_comment", str(e))

        return serialize_comment(comment, author.username if author else None)

    async def list_comments(self, post_id: int) -> List[Dict[str, Any]]:
        async with get_session_factory()() as session:
            if await session.get(Post, post_id) is None:
                raise PostNotFoundError(post_id)
            result = await session.execute(
                select(Comment, User.username)
                .join(User, User.id == Comment.user_id)
                .where(Comment.post_id == post_id)
                .order_by(Comment.created_at, Comment.id)
            )
            return [serialize_comment(c, username) for c, username in result.all()]

    async def like_post(self, user_id: int, post_id: int) -> int:
        """Like a post, returns the new like count"""
        async with get_session_factory()() as session:
            if await session.get(Post, post_id) is None:
                raise PostNotFoundError(post_id)

            try:
                session.add(Like(post_id=post_id, user_id=user_id))
                await session.flush()
            except IntegrityError:
                await session.rollback()
                raise ConflictError(
                    "You have already liked this post.", {"post_id": post_id}
                )

            return await self._bump_like_count(session, post_id, 1)

    async def unlike_post(self, user_id: int, post_id: int) -> int:
        """Remove a like, returns the new like count"""
        async with get_session_factory()() as session:
            if await session.get(Post, post_id) is None:
                raise PostNotFoundError(post_id)

            result = await session.execute(
                delete(Like).where(Like.post_id == post_id, Like.user_id == user_id)
            )
            if result.rowcount == 0:
                await session.rollback()
                raise ConflictError(
                    "You have not liked this post.", {"post_id": post_id}
                )

            return await self._bump_like_count(session, post_id, -1)

    @staticmethod
    async def _bump_like_count(session, post_id: int, delta: int) -> int:
        try:
            await session.execute(
                update(Post)
                .where(Post.id == post_id)
                .values(like_count=Post.like_count + delta)
            )
            await session.commit()
            result = await session.execute(select(Post.like_count).where(Post.id == post_id))
            return result.scalar_one()
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error(f"Failed to update like count: {e}", exc_info=True)
            raise DatabaseError("update_like_count", str(e))

    async def follow_user(self, follower_id: int, followee_id: int) -> Dict[str, int]:
        if follower_id == followee_id:
            raise ValidationError("user_id", followee_id, "You cannot follow yourself.")

        async with get_session_factory()() as session:
            if await session.get(User, followee_id) is None:
                raise UserNotFoundError(followee_id)

            try:
                session.add(Follow(follower_id=follower_id, followee_id=followee_id))
                await session.flush()
            except IntegrityError:
                await session.rollback()
                raise ConflictError(
                    "You are already following this user.", {"user_id": followee_id}
                )

            return await self._bump_follow_counts(session, follower_id, followee_id, 1)

    async def unfollow_user(self, follower_id: int, followee_id: int) -> Dict[str, int]:
        if follower_id == followee_id:
            raise ValidationError("user_id", followee_id, "You cannot unfollow yourself.")

        async with get_session_factory()() as session:
            if await session.get(User, followee_id) is None:
                raise UserNotFoundError(followee_id)

            result = await session.execute(
                delete(Follow).where(
                    Follow.follower_id == follower_id, Follow.followee_id == followee_id
                )
            )
            if result.rowcount == 0:
                await session.rollback()
                raise ConflictError(
                    "You are not following this user.", {"user_id": followee_id}
                )

            return await self._bump_follow_counts(session, follower_id, followee_id, -1)

    @staticmethod
    async def _bump_follow_counts(
        session, follower_id: int, followee_id: int, delta: int
    ) -> Dict[str, int]:
        try:
            await session.execute(
                update(User)
                .where(User.id == followee_id)
                .values(followers=User.followers + delta)
            )
            await session.execute(
                update(User)
                .where(User.id == follower_id)
                .values(following=User.following + delta)
            )
            await session.commit()
            followers = await session.execute(
                select(User.followers).where(User.id == followee_id)
            )
            following = await session.execute(
                select(User.following).where(User.id == follower_id)
            )
            return {"followers": followers.scalar_one(), "following": following.scalar_one()}
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error(f"Failed to update follow counters: {e}", exc_info=True)
            raise DatabaseError("update_follow_counts", str(e))

    async def is_following(self, follower_id: int, followee_id: int) -> bool:
        async with get_session_factory()() as session:
            result = await session.execute(
                select(Follow.id).where(
                    Follow.follower_id == follower_id, Follow.followee_id == followee_id
                )
            )
            return result.first() is not None


# Global social service instance
_social_service: Optional[SocialService] = None


def get_social_service() -> SocialService:
    global _social_service
    if _social_service is None:
        _social_service = SocialService()
    return _social_service
