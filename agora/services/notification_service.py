"""
agora.services.notification_service — Notification Lifecycle
=============================================================

Creates notifications, moves them from unread to read, and renders them for
the recipient's inbox and push channel.

Lifecycle::

    (created) ──► Unread ──mark_read / mark_all_read──► Read
                    ▲                                      │
                    └──────────── mark_unread ─────────────┘  (internal only)

Every public operation opens its own :class:`Session`, commits, and only then
publishes on ``notifications:{recipient_id}``.  Publishing failures are logged
and never undo the write.

The notification's source (``notifiable_type`` / ``notifiable_id``) is a weak
reference.  Serialisation tolerates a source that no longer exists and
renders it as ``null``.
"""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from agora.constants import (
    DEFAULT_PER_PAGE,
    DELETED_USER_NAME,
    MAX_PER_PAGE,
    truncate_preview,
)
from agora.database.models import (
    Comment,
    Notification,
    NotificationType,
    Post,
    TargetKind,
    User,
    utcnow,
)
from agora.engine import events
from agora.engine.targets import TargetRef, resolve_target, root_post
from agora.errors import NotFoundError, ValidationError
from agora.services.broadcaster import publish_safely

if TYPE_CHECKING:
    from collections.abc import Iterable

    from sqlalchemy import Engine

    from agora.services.broadcaster import BroadcastDispatcher
    from agora.services.reaction_service import ToggleResult

logger = logging.getLogger(__name__)


def _coerce_type(notification_type: str) -> NotificationType:
    try:
        return NotificationType(notification_type)
    except ValueError:
        raise ValidationError(f"Unknown notification type: {notification_type!r}") from None


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------
def add_notification(
    session: Session,
    *,
    recipient_id: int,
    actor_id: int | None,
    notification_type: str,
    source: TargetRef,
) -> Notification:
    """Insert a notification inside the caller's transaction.

    Flushes but never commits or broadcasts; the caller does both once its
    transaction is safe.
    """
    ntype = _coerce_type(notification_type)
    if not isinstance(source, TargetRef):
        raise ValidationError(f"Notification source must be a TargetRef, got {source!r}")

    notification = Notification(
        user_id=recipient_id,
        actor_id=actor_id,
        notification_type=ntype.value,
        notifiable_type=source.kind.value,
        notifiable_id=source.id,
    )
    session.add(notification)
    session.flush()
    return notification


def create_notification(
    engine: Engine,
    *,
    recipient_id: int,
    actor_id: int | None,
    notification_type: str,
    source: TargetRef,
    dispatcher: BroadcastDispatcher | None = None,
) -> Notification:
    """Persist one notification, commit, then push it to the recipient.

    Raises
    ------
    ValidationError
        Unknown notification type or source kind.
    NotFoundError
        The recipient does not exist.
    """
    with Session(engine, expire_on_commit=False) as session:
        if session.get(User, recipient_id) is None:
            raise NotFoundError(f"User {recipient_id} not found")
        notification = add_notification(
            session,
            recipient_id=recipient_id,
            actor_id=actor_id,
            notification_type=notification_type,
            source=source,
        )
        session.commit()
        payload = serialize_notification(session, notification)

    logger.info(
        "Notification %d (%s) → user %d", notification.id, notification.notification_type,
        recipient_id,
    )
    publish_safely(dispatcher, events.new_notification(recipient_id, payload))
    return notification


def notify_for_comment(
    session: Session, comment: Comment, actor_id: int
) -> Notification | None:
    """Tell the owner of whatever *comment* answers that it was answered.

    ``comment_on_post`` for a top-level comment, ``reply_to_comment`` for a
    reply.  Nobody is notified about their own comment.  Runs inside the
    caller's transaction.
    """
    parent = resolve_target(
        session, TargetRef.parse(comment.commentable_type, comment.commentable_id)
    )
    if parent is None or parent.user_id == actor_id:
        return None

    ntype = (
        NotificationType.COMMENT_ON_POST
        if isinstance(parent, Post)
        else NotificationType.REPLY_TO_COMMENT
    )
    return add_notification(
        session,
        recipient_id=parent.user_id,
        actor_id=actor_id,
        notification_type=ntype,
        source=TargetRef.of(comment),
    )


def notify_for_reaction(
    engine: Engine,
    result: ToggleResult,
    actor_id: int,
    *,
    dispatcher: BroadcastDispatcher | None = None,
) -> Notification | None:
    """Notify the target's owner about a newly added reaction.

    Only an ``added`` toggle notifies; changing or removing a reaction does
    not.  Best-effort: failures are logged and return None.
    """
    from agora.services.reaction_service import ToggleAction

    if result.action != ToggleAction.ADDED:
        return None

    try:
        with Session(engine) as session:
            target = resolve_target(session, result.target)
            if target is None:
                return None
            owner_id = target.user_id
        if owner_id == actor_id:
            return None

        ntype = (
            NotificationType.REACTION_ON_POST
            if result.target.kind == TargetKind.POST
            else NotificationType.REACTION_ON_COMMENT
        )
        return create_notification(
            engine,
            recipient_id=owner_id,
            actor_id=actor_id,
            notification_type=ntype,
            source=result.target,
            dispatcher=dispatcher,
        )
    except Exception:
        logger.exception("Reaction notification failed for %s", result.target)
        return None


def delete_for_sources(session: Session, refs: Iterable[TargetRef]) -> int:
    """Delete every notification whose source is one of *refs*.

    Runs inside the caller's transaction.  Returns the number of rows removed.
    """
    removed = 0
    for ref in refs:
        result = session.execute(
            delete(Notification)
            .where(
                Notification.notifiable_type == ref.kind.value,
                Notification.notifiable_id == ref.id,
            )
        )
        removed += result.rowcount or 0
    return removed


# ---------------------------------------------------------------------------
# State transitions
# ---------------------------------------------------------------------------
def _owned_notification(session: Session, recipient_id: int, notification_id: int) -> Notification:
    notification = session.get(Notification, notification_id)
    if notification is None or notification.user_id != recipient_id:
        raise NotFoundError(f"Notification {notification_id} not found")
    return notification


def mark_read(
    engine: Engine,
    recipient_id: int,
    notification_id: int,
    *,
    dispatcher: BroadcastDispatcher | None = None,
) -> bool:
    """Mark one notification read.

    Returns True if it changed state.  Marking an already-read notification
    is a no-op that publishes nothing.
    """
    with Session(engine) as session:
        notification = _owned_notification(session, recipient_id, notification_id)
        if notification.read_at is not None:
            return False
        notification.read_at = utcnow()
        session.commit()

    publish_safely(dispatcher, events.notification_read(recipient_id, notification_id))
    return True


def mark_all_read(
    engine: Engine,
    recipient_id: int,
    *,
    dispatcher: BroadcastDispatcher | None = None,
) -> int:
    """Mark every unread notification of *recipient_id* read in one statement.

    Publishes a single ``all_notifications_read`` event if anything changed.
    """
    with Session(engine) as session:
        result = session.execute(
            update(Notification)
            .where(Notification.user_id == recipient_id, Notification.read_at.is_(None))
            .values(read_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        changed = result.rowcount or 0
        session.commit()

    if changed:
        publish_safely(dispatcher, events.all_notifications_read(recipient_id))
    logger.debug("Marked %d notification(s) read for user %d", changed, recipient_id)
    return changed


def mark_unread(engine: Engine, recipient_id: int, notification_id: int) -> bool:
    """Administrative reverse transition.  Not exposed to clients."""
    with Session(engine) as session:
        notification = _owned_notification(session, recipient_id, notification_id)
        if notification.read_at is None:
            return False
        notification.read_at = None
        session.commit()
    return True


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------
def _count_unread(session: Session, recipient_id: int) -> int:
    return session.scalar(
        select(func.count(Notification.id)).where(
            Notification.user_id == recipient_id, Notification.read_at.is_(None)
        )
    ) or 0


def unread_count(engine: Engine, recipient_id: int) -> int:
    with Session(engine) as session:
        return _count_unread(session, recipient_id)


def list_notifications(
    engine: Engine,
    recipient_id: int,
    *,
    page: int = 1,
    per_page: int = DEFAULT_PER_PAGE,
    unread: bool | None = None,
) -> dict[str, Any]:
    """One page of a recipient's inbox, newest first.

    *unread* filters to unread (True) or read (False) notifications.
    *per_page* is capped at :data:`MAX_PER_PAGE`.
    """
    page = max(1, page)
    per_page = min(max(1, per_page), MAX_PER_PAGE)

    filters = [Notification.user_id == recipient_id]
    if unread is True:
        filters.append(Notification.read_at.is_(None))
    elif unread is False:
        filters.append(Notification.read_at.is_not(None))

    with Session(engine) as session:
        total = session.scalar(select(func.count(Notification.id)).where(*filters)) or 0
        rows = session.scalars(
            select(Notification)
            .where(*filters)
            .order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
        ).all()
        return {
            "notifications": [serialize_notification(session, n) for n in rows],
            "unread_count": _count_unread(session, recipient_id),
            "meta": {
                "current_page": page,
                "per_page": per_page,
                "total_count": total,
                "total_pages": math.ceil(total / per_page) if total else 0,
            },
        }


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------
def _serialize_actor(actor: User | None) -> dict[str, Any]:
    if actor is None:
        return {"id": None, "name": DELETED_USER_NAME, "picture": None}
    return {"id": actor.id, "name": actor.name, "picture": actor.profile_picture}


def _serialize_source(session: Session, notification: Notification) -> dict[str, Any] | None:
    try:
        ref = TargetRef.parse(notification.notifiable_type, notification.notifiable_id)
    except ValidationError:
        logger.warning(
            "Notification %d has unknown source type %r",
            notification.id, notification.notifiable_type,
        )
        return None

    source = resolve_target(session, ref)
    if source is None:
        return None

    if isinstance(source, Post):
        return {"type": ref.kind.value, "id": source.id, "title": source.title, "post_id": source.id}

    post = root_post(session, source)
    if post is None:
        return None
    return {
        "type": ref.kind.value,
        "id": source.id,
        "description": truncate_preview(source.description),
        "post_id": post.id,
    }


def serialize_notification(session: Session, notification: Notification) -> dict[str, Any]:
    """Render *notification* for its recipient.

    Never raises for a missing source or actor: the former becomes
    ``notifiable: None``, the latter a "Deleted User" placeholder.
    """
    return {
        "id": notification.id,
        "notification_type": notification.notification_type,
        "read": notification.read_at is not None,
        "read_at": notification.read_at.isoformat() if notification.read_at else None,
        "created_at": notification.created_at.isoformat() if notification.created_at else None,
        "actor": _serialize_actor(notification.actor),
        "notifiable": _serialize_source(session, notification),
    }
