"""
agora.services.mention_service — @-Mention Resolution & Fan-Out
================================================================

Turns the @-mentions in a post or comment into ``mention`` notifications.

Pipeline (:func:`fan_out_mention_notifications`):

1. Load the source and take its mentionable text.
2. Extract identifiers and resolve them to users; drop the actor.
3. Drop users who already hold a mention notification for this source.
4. Insert one notification per remaining user, each in its own SAVEPOINT.
5. Commit, then push ``new_notification`` to each recipient.

The fan-out runs after the content write has committed, in its own session.
It never raises: a failing recipient is skipped, and a failing pipeline is
logged and yields ``[]``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from agora.database.models import Notification, NotificationType, User
from agora.engine import events
from agora.engine.mentions import extract_mentions, is_email_mention
from agora.engine.targets import TargetRef, mentionable_text, resolve_target
from agora.errors import AgoraError, FanOutPartialFailure
from agora.services import notification_service
from agora.services.broadcaster import publish_safely

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from agora.services.broadcaster import BroadcastDispatcher

logger = logging.getLogger(__name__)


def resolve_users(session: Session, identifiers: Iterable[str]) -> set[User]:
    """Map mention identifiers to users.

    E-mail identifiers match ``User.email`` (stored lower-case); the rest
    match ``User.username`` case-insensitively.  Unknown identifiers are
    ignored, and identifiers naming the same account collapse to one user.
    """
    emails: set[str] = set()
    usernames: set[str] = set()
    for ident in identifiers:
        if is_email_mention(ident):
            emails.add(ident.lower())
        else:
            usernames.add(ident.lower())

    clauses = []
    if emails:
        clauses.append(User.email.in_(emails))
    if usernames:
        clauses.append(func.lower(User.username).in_(usernames))
    if not clauses:
        return set()

    return set(session.scalars(select(User).where(or_(*clauses))).all())


def _already_mentioned(session: Session, source: TargetRef, user_ids: set[int]) -> set[int]:
    if not user_ids:
        return set()
    rows = session.scalars(
        select(Notification.user_id).where(
            Notification.notification_type == NotificationType.MENTION.value,
            Notification.notifiable_type == source.kind.value,
            Notification.notifiable_id == source.id,
            Notification.user_id.in_(user_ids),
        )
    ).all()
    return set(rows)


def _insert_mention(
    session: Session, recipient_id: int, actor_id: int, source: TargetRef
) -> Notification:
    try:
        with session.begin_nested():   # SAVEPOINT
            return notification_service.add_notification(
                session,
                recipient_id=recipient_id,
                actor_id=actor_id,
                notification_type=NotificationType.MENTION,
                source=source,
            )
    except (IntegrityError, AgoraError) as exc:
        raise FanOutPartialFailure(
            f"Mention of user {recipient_id} in {source} skipped: {exc}"
        ) from exc


def _fan_out(
    engine: Engine,
    source: TargetRef,
    actor_id: int,
    dispatcher: BroadcastDispatcher | None,
) -> list[Notification]:
    with Session(engine, expire_on_commit=False) as session:
        entity = resolve_target(session, source)
        if entity is None:
            logger.warning("Mention source %s no longer exists", source)
            return []

        identifiers = extract_mentions(mentionable_text(entity))
        if not identifiers:
            return []

        recipients = {u.id for u in resolve_users(session, identifiers)}
        recipients.discard(actor_id)
        recipients -= _already_mentioned(session, source, recipients)
        if not recipients:
            return []

        created: list[Notification] = []
        for recipient_id in sorted(recipients):
            try:
                created.append(_insert_mention(session, recipient_id, actor_id, source))
            except FanOutPartialFailure as exc:
                logger.warning("%s", exc)
        session.commit()

        payloads = [
            (n.user_id, notification_service.serialize_notification(session, n))
            for n in created
        ]

    for recipient_id, payload in payloads:
        publish_safely(dispatcher, events.new_notification(recipient_id, payload))

    logger.info("Mention fan-out for %s created %d notification(s)", source, len(created))
    return created


def fan_out_mention_notifications(
    engine: Engine,
    source: TargetRef,
    actor_id: int,
    *,
    dispatcher: BroadcastDispatcher | None = None,
) -> list[Notification]:
    """Create a ``mention`` notification for every user @-mentioned in *source*.

    Safe to re-run on the same source: users already notified for it are
    skipped.  Returns the notifications created by this call.
    """
    try:
        return _fan_out(engine, source, actor_id, dispatcher)
    except Exception:
        logger.exception("Mention fan-out failed for %s", source)
        return []
