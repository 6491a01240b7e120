"""
agora.client.store — ReconciliationStore
=========================================

Client-side working set of posts, comment threads and the notification
inbox, kept in sync from three sources:

1. **Bulk fetches** (``load_*`` / ``append_*``) from the REST side.
2. **Pushed events** from the gateway, via :meth:`ReconciliationStore.receive`.
3. **The viewer's own actions**, applied optimistically and later confirmed
   or rolled back by correlation id.

Merge rules:
- A shared-channel event never carries viewer-private fields
  (``user_reaction`` …).  Applying one to a held post keeps the private
  fields the viewer already had.
- A direct response to the viewer's own action may set private fields, but
  only the keys it actually supplies.
- Deleting something the store does not hold is a no-op.

Every mutation goes through a single serialised update queue.  An action
submitted while another is being applied (including from inside an event
handler) is queued and applied after it, never interleaved.
"""

from __future__ import annotations

import copy
import enum
import logging
import threading
import uuid
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from agora.client.events import (
    AllNotificationsRead,
    ClientEvent,
    CommentCreated,
    CommentDeleted,
    CommentUpdated,
    EventBus,
    NotificationCreated,
    NotificationRead,
    PostCreated,
    PostCreatedOptimistically,
    PostDeleted,
    PostUpdated,
    ReactionChanged,
    decode_message,
)
from agora.constants import VIEWER_PRIVATE_FIELDS
from agora.database.models import TargetKind

logger = logging.getLogger(__name__)

LOCAL_KEY_PREFIX = "local:"

PostKey = int | str


class OperationKind(enum.StrEnum):
    CREATE_POST = "create_post"
    TOGGLE_REACTION = "toggle_reaction"


@dataclass(slots=True)
class PendingOperation:
    """An optimistic action awaiting confirmation or rollback.

    ``snapshot`` is the entity as it was before the action (None when the
    action created it).  A reaction toggle records the counter change it
    applied as ``details["count_delta"]`` so a rollback can undo just that;
    a server count pushed in the meantime resets it to 0.
    """

    correlation_id: str
    kind: OperationKind
    key: PostKey
    snapshot: dict[str, Any] | None = None
    details: dict[str, Any] = field(default_factory=dict)


def _shared_merge(held: dict[str, Any], incoming: dict[str, Any]) -> dict[str, Any]:
    merged = dict(held)
    for key, value in incoming.items():
        if key not in VIEWER_PRIVATE_FIELDS:
            merged[key] = value
    return merged


def _direct_merge(held: dict[str, Any], incoming: dict[str, Any]) -> dict[str, Any]:
    return {**held, **incoming}


def _next_reaction(current: str | None, requested: str) -> tuple[str | None, int]:
    """Local mirror of the server toggle: (new reaction, counter delta)."""
    if current is None:
        return requested, 1
    if current == requested:
        return None, -1
    return requested, 0


class ReconciliationStore:
    """One viewer's synchronised view of the feed and inbox."""

    def __init__(self, bus: EventBus | None = None) -> None:
        self.bus = bus or EventBus()
        self._posts: dict[PostKey, dict[str, Any]] = {}
        self._comments: dict[int, dict[int, dict[str, Any]]] = {}
        self._notifications: list[dict[str, Any]] = []
        self._unread_count = 0
        self._pending: dict[str, PendingOperation] = {}

        self._updates: deque[Callable[[], None]] = deque()
        self._lock = threading.Lock()
        self._draining = False

        self.bus.subscribe(PostCreated, self._on_post_created)
        self.bus.subscribe(PostUpdated, self._on_post_updated)
        self.bus.subscribe(PostDeleted, self._on_post_deleted)
        self.bus.subscribe(ReactionChanged, self._on_reaction_changed)
        self.bus.subscribe(CommentCreated, self._on_comment_created)
        self.bus.subscribe(CommentUpdated, self._on_comment_updated)
        self.bus.subscribe(CommentDeleted, self._on_comment_deleted)
        self.bus.subscribe(NotificationCreated, self._on_notification_created)
        self.bus.subscribe(NotificationRead, self._on_notification_read)
        self.bus.subscribe(AllNotificationsRead, self._on_all_read)

    # -------------------------------------------------------------------
    # Read access (copies, so callers cannot mutate the working set)
    # -------------------------------------------------------------------
    @property
    def posts(self) -> list[dict[str, Any]]:
        return [copy.deepcopy(p) for p in self._posts.values()]

    def get_post(self, key: PostKey) -> dict[str, Any] | None:
        post = self._posts.get(key)
        return copy.deepcopy(post) if post is not None else None

    def comments(self, post_id: int) -> list[dict[str, Any]]:
        return [copy.deepcopy(c) for c in self._comments.get(post_id, {}).values()]

    @property
    def notifications(self) -> list[dict[str, Any]]:
        return [copy.deepcopy(n) for n in self._notifications]

    @property
    def unread_count(self) -> int:
        return self._unread_count

    def pending(self) -> list[PendingOperation]:
        return list(self._pending.values())

    # -------------------------------------------------------------------
    # Serialised update queue
    # -------------------------------------------------------------------
    def _submit(self, update: Callable[[], None]) -> None:
        with self._lock:
            self._updates.append(update)
            if self._draining:
                return
            self._draining = True

        while True:
            with self._lock:
                if not self._updates:
                    self._draining = False
                    return
                update = self._updates.popleft()
            try:
                update()
            except Exception:
                logger.exception("Store update failed")

    # -------------------------------------------------------------------
    # Bulk loads
    # -------------------------------------------------------------------
    def load_posts(self, posts: Iterable[dict[str, Any]]) -> None:
        """Replace the feed with a fresh fetch (direct response)."""
        posts = [dict(p) for p in posts]

        def update() -> None:
            self._posts = {p["id"]: p for p in posts}

        self._submit(update)

    def append_posts(self, page: Iterable[dict[str, Any]]) -> None:
        """Merge the next feed page; posts already held are not duplicated."""
        page = [dict(p) for p in page]

        def update() -> None:
            for post in page:
                held = self._posts.get(post["id"])
                self._posts[post["id"]] = _direct_merge(held, post) if held else post

        self._submit(update)

    def load_comments(self, post_id: int, comments: Iterable[dict[str, Any]]) -> None:
        comments = [dict(c) for c in comments]

        def update() -> None:
            self._comments[post_id] = {c["id"]: c for c in comments}

        self._submit(update)

    def load_notifications(
        self, notifications: Iterable[dict[str, Any]], unread_count: int
    ) -> None:
        notifications = [dict(n) for n in notifications]

        def update() -> None:
            self._notifications = notifications
            self._unread_count = max(0, unread_count)

        self._submit(update)

    def append_notifications(
        self, page: Iterable[dict[str, Any]], unread_count: int
    ) -> None:
        page = [dict(n) for n in page]

        def update() -> None:
            held = {n["id"] for n in self._notifications}
            self._notifications.extend(n for n in page if n["id"] not in held)
            self._unread_count = max(0, unread_count)

        self._submit(update)

    # -------------------------------------------------------------------
    # Pushed events
    # -------------------------------------------------------------------
    def receive(self, message: dict[str, Any]) -> ClientEvent:
        """Decode a wire envelope and apply it through the bus.

        Raises ``ValueError`` for an unknown event type.
        """
        event = decode_message(message)
        self._submit(lambda: self.bus.emit(event))
        return event

    def _prepend_post(self, key: PostKey, post: dict[str, Any]) -> None:
        self._posts = {key: post, **{k: v for k, v in self._posts.items() if k != key}}

    def _on_post_created(self, event: PostCreated) -> None:
        post_id = event.post["id"]
        held = self._posts.get(post_id)
        if held is not None:
            self._posts[post_id] = _shared_merge(held, event.post)
        else:
            self._prepend_post(post_id, _shared_merge({}, event.post))

    def _on_post_updated(self, event: PostUpdated) -> None:
        post_id = event.post["id"]
        held = self._posts.get(post_id)
        if held is not None:
            self._posts[post_id] = _shared_merge(held, event.post)
            if "reactions_count" in event.post:
                self._supersede_count(post_id)

    def _on_post_deleted(self, event: PostDeleted) -> None:
        self._posts.pop(event.post_id, None)
        self._comments.pop(event.post_id, None)

    def _on_reaction_changed(self, event: ReactionChanged) -> None:
        if event.target_type == TargetKind.POST:
            held = self._posts.get(event.target_id)
            if held is not None:
                held["reactions_count"] = event.reactions_count
                self._supersede_count(event.target_id)
            return
        for thread in self._comments.values():
            comment = thread.get(event.target_id)
            if comment is not None:
                comment["reactions_count"] = event.reactions_count
                return

    def _supersede_count(self, post_id: PostKey) -> None:
        # A server count replaces any optimistic delta still pending on it.
        for op in self._pending.values():
            if op.kind == OperationKind.TOGGLE_REACTION and op.key == post_id:
                op.details["count_delta"] = 0

    def _on_comment_created(self, event: CommentCreated) -> None:
        thread = self._comments.setdefault(event.post_id, {})
        held = thread.get(event.comment["id"])
        thread[event.comment["id"]] = _shared_merge(held or {}, event.comment)

    def _on_comment_updated(self, event: CommentUpdated) -> None:
        thread = self._comments.get(event.post_id, {})
        held = thread.get(event.comment["id"])
        if held is not None:
            thread[event.comment["id"]] = _shared_merge(held, event.comment)

    def _on_comment_deleted(self, event: CommentDeleted) -> None:
        self._comments.get(event.post_id, {}).pop(event.comment_id, None)

    def _on_notification_created(self, event: NotificationCreated) -> None:
        notification = event.notification
        if any(n["id"] == notification["id"] for n in self._notifications):
            return
        self._notifications.insert(0, dict(notification))
        if not notification.get("read"):
            self._unread_count += 1

    def _on_notification_read(self, event: NotificationRead) -> None:
        for notification in self._notifications:
            if notification["id"] == event.notification_id:
                if notification.get("read"):
                    return
                notification["read"] = True
                break
        self._unread_count = max(0, self._unread_count - 1)

    def _on_all_read(self, event: AllNotificationsRead) -> None:
        for notification in self._notifications:
            notification["read"] = True
        self._unread_count = 0

    # -------------------------------------------------------------------
    # Optimistic actions
    # -------------------------------------------------------------------
    def create_post_optimistic(self, fields: dict[str, Any]) -> str:
        """Show a post before the server has created it.

        The post is held under a temporary ``local:<uuid>`` key until
        :meth:`confirm_post_created` or :meth:`rollback`.
        """
        correlation_id = uuid.uuid4().hex
        key = f"{LOCAL_KEY_PREFIX}{correlation_id}"
        post = {
            "reactions_count": 0,
            "comments_count": 0,
            "user_reaction": None,
            **fields,
            "id": key,
            "pending": True,
        }

        def update() -> None:
            self._prepend_post(key, post)
            self._pending[correlation_id] = PendingOperation(
                correlation_id, OperationKind.CREATE_POST, key
            )
            self.bus.emit(PostCreatedOptimistically(correlation_id, copy.deepcopy(post)))

        self._submit(update)
        return correlation_id

    def confirm_post_created(self, correlation_id: str, post: dict[str, Any]) -> None:
        """Swap the temporary entry for the server's post.

        If the ``post_new`` broadcast already delivered the post, the two
        are merged into one entry.
        """
        post = dict(post)

        def update() -> None:
            op = self._pending.pop(correlation_id, None)
            if op is None or op.kind != OperationKind.CREATE_POST:
                logger.warning("No pending post creation for %s", correlation_id)
                return
            self._posts.pop(op.key, None)
            held = self._posts.get(post["id"])
            if held is not None:
                self._posts[post["id"]] = _direct_merge(held, post)
            else:
                self._prepend_post(post["id"], post)

        self._submit(update)

    def toggle_reaction_optimistic(self, post_id: int, reaction_type: str) -> str:
        """Apply the viewer's reaction toggle locally, ahead of the server."""
        correlation_id = uuid.uuid4().hex

        def update() -> None:
            held = self._posts.get(post_id)
            if held is None:
                logger.warning("Reaction on post %s not held; ignored", post_id)
                return
            snapshot = copy.deepcopy(held)
            reaction, delta = _next_reaction(held.get("user_reaction"), reaction_type)
            before = held.get("reactions_count", 0)
            held["user_reaction"] = reaction
            held["reactions_count"] = max(0, before + delta)
            self._pending[correlation_id] = PendingOperation(
                correlation_id,
                OperationKind.TOGGLE_REACTION,
                post_id,
                snapshot,
                {
                    "reaction_type": reaction_type,
                    "count_delta": held["reactions_count"] - before,
                },
            )

        self._submit(update)
        return correlation_id

    def confirm_reaction(self, correlation_id: str, response: dict[str, Any]) -> None:
        """Apply the server's answer to the viewer's own toggle.

        *response* carries ``reaction`` (the viewer's reaction after the
        toggle, or None) and ``reactions_count``.  This is the only path that
        sets ``user_reaction`` from server data.
        """
        response = dict(response)

        def update() -> None:
            op = self._pending.pop(correlation_id, None)
            if op is None or op.kind != OperationKind.TOGGLE_REACTION:
                logger.warning("No pending reaction for %s", correlation_id)
                return
            held = self._posts.get(op.key)
            if held is None:
                return
            direct: dict[str, Any] = {}
            if "reaction" in response:
                direct["user_reaction"] = response["reaction"]
            if "reactions_count" in response:
                direct["reactions_count"] = response["reactions_count"]
            self._posts[op.key] = _direct_merge(held, direct)

        self._submit(update)

    def rollback(self, correlation_id: str) -> None:
        """Undo a failed optimistic action."""

        def update() -> None:
            op = self._pending.pop(correlation_id, None)
            if op is None:
                logger.warning("Nothing to roll back for %s", correlation_id)
                return
            if op.kind == OperationKind.CREATE_POST:
                self._posts.pop(op.key, None)
            else:
                self._undo_reaction(op)
            logger.debug("Rolled back %s (%s)", correlation_id, op.kind)

        self._submit(update)

    def _undo_reaction(self, op: PendingOperation) -> None:
        # Only the viewer's reaction and this toggle's counter delta are
        # reverted; shared fields pushed since then stay as they are.
        held = self._posts.get(op.key)
        if held is None or op.snapshot is None:
            return
        held["user_reaction"] = op.snapshot.get("user_reaction")
        count = held.get("reactions_count", 0) - op.details.get("count_delta", 0)
        held["reactions_count"] = max(0, count)
