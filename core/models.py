"""
Core data models for the Music Share API

Defines the persisted tables (users, posts, comments, likes, follow edges).
Uniqueness rules that guard check-then-act sequences live in the schema:
`username_key` and `email` are unique, and a user can hold at most one like per
post and one follow edge per followee.
"""

from datetime import datetime, timezone
from typing import List, Optional
from sqlalchemy import Column, DateTime, JSON, UniqueConstraint
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def timestamp_column(nullable: bool = False, index: bool = False) -> Column:
    return Column(DateTime(timezone=True), nullable=nullable, index=index)


class User(SQLModel, table=True):
    """
    Registered account plus the denormalized snapshot of the linked music
    profile (picture, top tracks, top artists).
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(max_length=30)
    # lower-cased username, enforces case-insensitive uniqueness
    username_key: str = Field(max_length=30, unique=True, index=True)
    email: str = Field(max_length=254, unique=True, index=True)
    password_hash: str = Field(max_length=255)

    followers: int = Field(default=0)
    following: int = Field(default=0)

    profile_picture_url: Optional[str] = Field(default=None, max_length=1024)
    top_tracks: List[dict] = Field(default_factory=list, sa_column=Column(JSON))
    top_artists: List[dict] = Field(default_factory=list, sa_column=Column(JSON))
    refresh_token: Optional[str] = Field(default=None, max_length=1024)

    created_at: datetime = Field(default_factory=utcnow, sa_column=timestamp_column())
    profile_synced_at: Optional[datetime] = Field(
        default=None, sa_column=timestamp_column(nullable=True)
    )


class Post(SQLModel, table=True):
    """A shared track"""

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)

    track_id: str = Field(max_length=64)
    track_name: str = Field(max_length=512)
    artist_names: str = Field(default="", max_length=1024)
    album_name: Optional[str] = Field(default=None, max_length=512)
    album_image_url: Optional[str] = Field(default=None, max_length=1024)
    preview_url: Optional[str] = Field(default=None, max_length=1024)
    external_url: Optional[str] = Field(default=None, max_length=1024)
    caption: Optional[str] = Field(default=None, max_length=2048)

    like_count: int = Field(default=0)
    comment_count: int = Field(default=0)
    created_at: datetime = Field(
        default_factory=utcnow, sa_column=timestamp_column(index=True)
    )


class Comment(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    post_id: int = Field(foreign_key="post.id", index=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    text: str = Field(max_length=4096)
    created_at: datetime = Field(default_factory=utcnow, sa_column=timestamp_column())


class Like(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("post_id", "user_id", name="uq_like_post_user"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    post_id: int = Field(foreign_key="post.id", index=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_column=timestamp_column())


class Follow(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("follower_id", "followee_id", name="uq_follow_edge"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    follower_id: int = Field(foreign_key="user.id", index=True)
    followee_id: int = Field(foreign_key="user.id", index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_column=timestamp_column())
