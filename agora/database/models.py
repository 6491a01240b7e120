"""
agora.database.models — SQLAlchemy 2.0 Data Models
===================================================

Tables:
- users          — Identity mirror (mention resolution + actor rendering)
- posts          — Feed entries with reaction/comment counter caches
- comments       — Comments on posts and replies to comments
- reactions      — One row per (user, target), unique at the storage layer
- notifications  — Per-recipient inbox with a polymorphic source reference

Targets (reactionable / commentable / notifiable) are weak ``(type, id)``
pairs over the closed set in :class:`TargetKind`.  No foreign key backs
them, so readers must tolerate a source that no longer exists.
"""

from __future__ import annotations

import enum
from datetime import UTC, datetime

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Agora ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class TargetKind(enum.StrEnum):
    """Closed set of entities that can be reacted to, commented on, or be
    the source of a notification."""
    POST = "Post"
    COMMENT = "Comment"


class ReactionType(enum.StrEnum):
    LIKE = "like"
    LOVE = "love"
    DISLIKE = "dislike"


class NotificationType(enum.StrEnum):
    COMMENT_ON_POST = "comment_on_post"
    REPLY_TO_COMMENT = "reply_to_comment"
    MENTION = "mention"
    REACTION_ON_POST = "reaction_on_post"
    REACTION_ON_COMMENT = "reaction_on_comment"


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------
class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(30), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    profile_picture: Mapped[str | None] = mapped_column(String(500), default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    posts: Mapped[list[Post]] = relationship(back_populates="user")

    def __repr__(self) -> str:
        return f"<User id={self.id} username={self.username!r}>"


# ---------------------------------------------------------------------------
# Posts
# ---------------------------------------------------------------------------
class Post(Base):
    __tablename__ = "posts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    picture: Mapped[str | None] = mapped_column(String(500), default=None)
    reactions_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    comments_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    user: Mapped[User] = relationship(back_populates="posts")

    __table_args__ = (
        Index("ix_posts_user_id", "user_id"),
        Index("ix_posts_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Post id={self.id} title={self.title!r}>"


# ---------------------------------------------------------------------------
# Comments: on posts, or replies to other comments
# ---------------------------------------------------------------------------
class Comment(Base):
    __tablename__ = "comments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    commentable_type: Mapped[str] = mapped_column(String(20), nullable=False)
    commentable_id: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    reactions_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    comments_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    user: Mapped[User] = relationship()

    __table_args__ = (
        Index("ix_comments_commentable", "commentable_type", "commentable_id"),
        Index("ix_comments_user_id", "user_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<Comment id={self.id} on={self.commentable_type}:{self.commentable_id}>"
        )


# ---------------------------------------------------------------------------
# Reactions: at most one per (user, target), whatever the type
# ---------------------------------------------------------------------------
class Reaction(Base):
    __tablename__ = "reactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    reactionable_type: Mapped[str] = mapped_column(String(20), nullable=False)
    reactionable_id: Mapped[int] = mapped_column(Integer, nullable=False)
    reaction_type: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint(
            "user_id", "reactionable_type", "reactionable_id",
            name="uq_reactions_user_target",
        ),
        Index("ix_reactions_target", "reactionable_type", "reactionable_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<Reaction id={self.id} user={self.user_id} "
            f"{self.reactionable_type}:{self.reactionable_id} {self.reaction_type}>"
        )


# ---------------------------------------------------------------------------
# Notifications: recipient inbox
# ---------------------------------------------------------------------------
class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    actor_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    notification_type: Mapped[str] = mapped_column(String(30), nullable=False)
    notifiable_type: Mapped[str] = mapped_column(String(20), nullable=False)
    notifiable_id: Mapped[int] = mapped_column(Integer, nullable=False)
    read_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=None
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    actor: Mapped[User | None] = relationship(foreign_keys=[actor_id])

    __table_args__ = (
        # A recipient is mentioned at most once per source, however often
        # the source is re-processed.
        Index(
            "ux_notifications_mention_once",
            "user_id",
            "notifiable_type",
            "notifiable_id",
            unique=True,
            postgresql_where=text("notification_type = 'mention'"),
            sqlite_where=text("notification_type = 'mention'"),
        ),
        Index("ix_notifications_user_created", "user_id", "created_at"),
        Index("ix_notifications_user_read", "user_id", "read_at"),
        Index("ix_notifications_notifiable", "notifiable_type", "notifiable_id"),
    )

    @property
    def is_read(self) -> bool:
        return self.read_at is not None

    def __repr__(self) -> str:
        return (
            f"<Notification id={self.id} to={self.user_id} "
            f"type={self.notification_type} read={self.is_read}>"
        )
