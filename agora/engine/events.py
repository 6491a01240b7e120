"""
agora.engine.events — BroadcastEvent and Channel Naming
========================================================

The envelope every push event travels in, from the service that produced it
through the dispatcher (and optionally Postgres NOTIFY) to the gateway and
finally the client store.  On the wire it is::

    {"type": "reaction_changed", "channel": "posts",
     "payload": {"target_type": "Post", "target_id": 7, "reactions_count": 3}}

Channels:
- ``notifications:{user_id}`` — private, one per recipient
- ``posts``                   — shared feed channel
- ``comments:{post_id}``      — shared, per post thread
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any

from agora.database.models import TargetKind
from agora.engine.targets import TargetRef

__all__ = [
    "BroadcastEvent",
    "EventType",
    "POSTS_CHANNEL",
    "PRIVATE_EVENTS",
    "comments_channel",
    "is_private_channel",
    "is_shared_channel",
    "notifications_channel",
]

POSTS_CHANNEL = "posts"
NOTIFICATIONS_PREFIX = "notifications:"
COMMENTS_PREFIX = "comments:"


class EventType(enum.StrEnum):
    """Every event type that can appear on a broadcast channel."""
    NEW_NOTIFICATION = "new_notification"
    NOTIFICATION_READ = "notification_read"
    ALL_NOTIFICATIONS_READ = "all_notifications_read"
    POST_NEW = "post_new"
    POST_UPDATE = "post_update"
    POST_DELETE = "post_delete"
    REACTION_CHANGED = "reaction_changed"
    COMMENT_NEW = "comment_new"
    COMMENT_UPDATE = "comment_update"
    COMMENT_DELETE = "comment_delete"


# Events that may only travel on a recipient's private channel.  Everything
# else is shared and must stay viewer-agnostic.
PRIVATE_EVENTS: frozenset[EventType] = frozenset({
    EventType.NEW_NOTIFICATION,
    EventType.NOTIFICATION_READ,
    EventType.ALL_NOTIFICATIONS_READ,
})


# ---------------------------------------------------------------------------
# Channel naming
# ---------------------------------------------------------------------------
def notifications_channel(user_id: int) -> str:
    return f"{NOTIFICATIONS_PREFIX}{user_id}"


def comments_channel(post_id: int) -> str:
    return f"{COMMENTS_PREFIX}{post_id}"


def is_private_channel(channel: str) -> bool:
    return channel.startswith(NOTIFICATIONS_PREFIX)


def is_shared_channel(channel: str) -> bool:
    return channel == POSTS_CHANNEL or channel.startswith(COMMENTS_PREFIX)


# ---------------------------------------------------------------------------
# BroadcastEvent: the push envelope
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class BroadcastEvent:
    """One push event addressed to exactly one channel."""

    type: EventType
    channel: str
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def is_private(self) -> bool:
        return self.type in PRIVATE_EVENTS

    def to_envelope(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "channel": self.channel,
            "payload": self.payload,
        }

    @classmethod
    def from_envelope(cls, data: dict[str, Any]) -> BroadcastEvent:
        """Rebuild an event from its wire form.

        Raises ``ValueError`` for an unknown type or a missing channel.
        """
        channel = data.get("channel")
        if not channel:
            raise ValueError(f"Event envelope missing 'channel': {data!r}")
        return cls(
            type=EventType(data.get("type")),
            channel=str(channel),
            payload=dict(data.get("payload") or {}),
        )


# ---------------------------------------------------------------------------
# Constructors: one per wire event
# ---------------------------------------------------------------------------
def new_notification(recipient_id: int, notification: dict) -> BroadcastEvent:
    return BroadcastEvent(
        EventType.NEW_NOTIFICATION, notifications_channel(recipient_id), notification
    )


def notification_read(recipient_id: int, notification_id: int) -> BroadcastEvent:
    return BroadcastEvent(
        EventType.NOTIFICATION_READ,
        notifications_channel(recipient_id),
        {"notification_id": notification_id},
    )


def all_notifications_read(recipient_id: int) -> BroadcastEvent:
    return BroadcastEvent(
        EventType.ALL_NOTIFICATIONS_READ, notifications_channel(recipient_id), {}
    )


def post_new(post: dict) -> BroadcastEvent:
    return BroadcastEvent(EventType.POST_NEW, POSTS_CHANNEL, {"post": post})


def post_update(post: dict) -> BroadcastEvent:
    return BroadcastEvent(EventType.POST_UPDATE, POSTS_CHANNEL, {"post": post})


def post_delete(post_id: int) -> BroadcastEvent:
    return BroadcastEvent(EventType.POST_DELETE, POSTS_CHANNEL, {"post_id": post_id})


def reaction_changed(
    target: TargetRef, reactions_count: int, *, post_id: int | None = None
) -> BroadcastEvent:
    """Aggregate-only reaction update.

    Post targets go to the feed channel; comment targets go to the thread
    channel of their root post (*post_id*).
    """
    if target.kind == TargetKind.POST:
        channel = POSTS_CHANNEL
    else:
        if post_id is None:
            raise ValueError("post_id is required for comment reaction events")
        channel = comments_channel(post_id)
    return BroadcastEvent(
        EventType.REACTION_CHANGED,
        channel,
        {
            "target_type": target.kind.value,
            "target_id": target.id,
            "reactions_count": reactions_count,
        },
    )


def comment_new(post_id: int, comment: dict) -> BroadcastEvent:
    return BroadcastEvent(
        EventType.COMMENT_NEW, comments_channel(post_id), {"comment": comment}
    )


def comment_update(post_id: int, comment: dict) -> BroadcastEvent:
    return BroadcastEvent(
        EventType.COMMENT_UPDATE, comments_channel(post_id), {"comment": comment}
    )


def comment_delete(post_id: int, comment_id: int) -> BroadcastEvent:
    return BroadcastEvent(
        EventType.COMMENT_DELETE,
        comments_channel(post_id),
        {"comment_id": comment_id, "post_id": post_id},
    )
