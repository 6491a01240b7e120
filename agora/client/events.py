"""
agora.client.events — Typed Client Events & EventBus
=====================================================

Every wire envelope a client can receive decodes into exactly one frozen
event class, and handlers subscribe by class rather than by string key.

``PostCreatedOptimistically`` never comes off the wire: the store emits it
when the viewer creates a post locally, before the server has answered.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from agora.engine.events import EventType

logger = logging.getLogger(__name__)

__all__ = [
    "AllNotificationsRead",
    "ClientEvent",
    "CommentCreated",
    "CommentDeleted",
    "CommentUpdated",
    "EventBus",
    "NotificationCreated",
    "NotificationRead",
    "PostCreated",
    "PostCreatedOptimistically",
    "PostDeleted",
    "PostUpdated",
    "ReactionChanged",
    "decode_message",
]


# ---------------------------------------------------------------------------
# Variants
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class PostCreated:
    post: dict[str, Any]


@dataclass(frozen=True, slots=True)
class PostUpdated:
    post: dict[str, Any]


@dataclass(frozen=True, slots=True)
class PostDeleted:
    post_id: int


@dataclass(frozen=True, slots=True)
class ReactionChanged:
    """Aggregate count only.  Never says who reacted or how."""
    target_type: str
    target_id: int
    reactions_count: int


@dataclass(frozen=True, slots=True)
class CommentCreated:
    post_id: int
    comment: dict[str, Any]


@dataclass(frozen=True, slots=True)
class CommentUpdated:
    post_id: int
    comment: dict[str, Any]


@dataclass(frozen=True, slots=True)
class CommentDeleted:
    post_id: int
    comment_id: int


@dataclass(frozen=True, slots=True)
class NotificationCreated:
    notification: dict[str, Any]


@dataclass(frozen=True, slots=True)
class NotificationRead:
    notification_id: int


@dataclass(frozen=True, slots=True)
class AllNotificationsRead:
    pass


@dataclass(frozen=True, slots=True)
class PostCreatedOptimistically:
    correlation_id: str
    post: dict[str, Any] = field(default_factory=dict)


ClientEvent = (
    PostCreated
    | PostUpdated
    | PostDeleted
    | ReactionChanged
    | CommentCreated
    | CommentUpdated
    | CommentDeleted
    | NotificationCreated
    | NotificationRead
    | AllNotificationsRead
    | PostCreatedOptimistically
)


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------
def _comment_post_id(payload: dict[str, Any], channel: str) -> int:
    if payload.get("post_id") is not None:
        return int(payload["post_id"])
    comment = payload.get("comment") or {}
    if comment.get("post_id") is not None:
        return int(comment["post_id"])
    # comments:{post_id}
    return int(channel.rsplit(":", 1)[-1])


_DECODERS: dict[EventType, Callable[[dict[str, Any], str], Any]] = {
    EventType.POST_NEW: lambda p, _: PostCreated(dict(p["post"])),
    EventType.POST_UPDATE: lambda p, _: PostUpdated(dict(p["post"])),
    EventType.POST_DELETE: lambda p, _: PostDeleted(int(p["post_id"])),
    EventType.REACTION_CHANGED: lambda p, _: ReactionChanged(
        str(p["target_type"]), int(p["target_id"]), int(p["reactions_count"])
    ),
    EventType.COMMENT_NEW: lambda p, ch: CommentCreated(
        _comment_post_id(p, ch), dict(p["comment"])
    ),
    EventType.COMMENT_UPDATE: lambda p, ch: CommentUpdated(
        _comment_post_id(p, ch), dict(p["comment"])
    ),
    EventType.COMMENT_DELETE: lambda p, ch: CommentDeleted(
        _comment_post_id(p, ch), int(p["comment_id"])
    ),
    EventType.NEW_NOTIFICATION: lambda p, _: NotificationCreated(dict(p)),
    EventType.NOTIFICATION_READ: lambda p, _: NotificationRead(int(p["notification_id"])),
    EventType.ALL_NOTIFICATIONS_READ: lambda p, _: AllNotificationsRead(),
}


def decode_message(message: dict[str, Any]) -> ClientEvent:
    """Map a wire envelope ``{type, channel, payload}`` to its event class.

    Raises ``ValueError`` for an unknown type or a malformed payload.
    """
    try:
        etype = EventType(message.get("type"))
    except ValueError:
        raise ValueError(f"Unknown event type: {message.get('type')!r}") from None

    payload = message.get("payload") or {}
    channel = str(message.get("channel") or "")
    try:
        return _DECODERS[etype](payload, channel)
    except (KeyError, TypeError) as exc:
        raise ValueError(f"Malformed '{etype}' payload: {payload!r}") from exc


# ---------------------------------------------------------------------------
# EventBus
# ---------------------------------------------------------------------------
Handler = Callable[[Any], None]


class EventBus:
    """Synchronous typed pub/sub.

    Handlers run in subscription order on the emitting thread.  A handler
    that raises is logged and does not stop the others.
    """

    def __init__(self) -> None:
        self._handlers: dict[type, list[Handler]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event_cls: type, handler: Handler) -> None:
        with self._lock:
            self._handlers[event_cls].append(handler)

    def unsubscribe(self, event_cls: type, handler: Handler) -> None:
        with self._lock:
            handlers = self._handlers.get(event_cls)
            if handlers and handler in handlers:
                handlers.remove(handler)

    def emit(self, event: ClientEvent) -> None:
        with self._lock:
            handlers = list(self._handlers.get(type(event), ()))
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("Handler %r failed on %s", handler, type(event).__name__)
