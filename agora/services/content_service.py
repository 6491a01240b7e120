"""
agora.services.content_service — Posts & Comments
==================================================

The content side of the engagement core: creating, editing and deleting
posts, comments and replies, keeping the ``comments_count`` caches right,
and announcing every change on the shared channels.

After each content write has committed:
- the change is published (``post_*`` on ``posts``, ``comment_*`` on
  ``comments:{post_id}``);
- a new comment notifies the owner of what it answers;
- @-mentions in the new text are fanned out.  Fan-out failures never reach
  the caller.

Deleting a post or comment removes its whole reply thread, the reactions on
every removed entity, and the notifications sourced from them.
"""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from agora.constants import (
    COMMENT_DESCRIPTION_MAX,
    COMMENT_DESCRIPTION_MIN,
    DEFAULT_PER_PAGE,
    MAX_PER_PAGE,
    POST_DESCRIPTION_MAX,
    POST_DESCRIPTION_MIN,
    POST_TITLE_MAX,
    POST_TITLE_MIN,
)
from agora.database.models import Comment, Post, Reaction, TargetKind, User
from agora.engine import events
from agora.engine.targets import TARGET_MODELS, Target, TargetRef, require_target, root_post
from agora.errors import ForbiddenError, NotFoundError, ValidationError
from agora.services import mention_service, notification_service
from agora.services.broadcaster import publish_safely

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from agora.services.broadcaster import BroadcastDispatcher

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
def _check_length(field: str, value: str | None, low: int, high: int) -> str:
    value = (value or "").strip()
    if not low <= len(value) <= high:
        raise ValidationError(f"{field} must be {low}-{high} characters (got {len(value)})")
    return value


def validate_post(title: str | None, description: str | None) -> tuple[str, str]:
    return (
        _check_length("title", title, POST_TITLE_MIN, POST_TITLE_MAX),
        _check_length("description", description, POST_DESCRIPTION_MIN, POST_DESCRIPTION_MAX),
    )


def validate_comment(description: str | None) -> str:
    return _check_length(
        "description", description, COMMENT_DESCRIPTION_MIN, COMMENT_DESCRIPTION_MAX
    )


def _require_user(session: Session, user_id: int) -> User:
    user = session.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    return user


def _require_owned(session: Session, model: type[Post] | type[Comment], entity_id: int, user_id: int):
    entity = session.get(model, entity_id)
    if entity is None:
        raise NotFoundError(f"{model.__name__} {entity_id} not found")
    if entity.user_id != user_id:
        raise ForbiddenError(f"User {user_id} does not own {model.__name__} {entity_id}")
    return entity


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------
def _serialize_author(user: User | None) -> dict[str, Any] | None:
    if user is None:
        return None
    return {
        "id": user.id,
        "username": user.username,
        "name": user.name,
        "picture": user.profile_picture,
    }


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def serialize_post(post: Post) -> dict[str, Any]:
    """Viewer-agnostic post dict, safe for the shared ``posts`` channel."""
    return {
        "id": post.id,
        "title": post.title,
        "description": post.description,
        "picture": post.picture,
        "reactions_count": post.reactions_count,
        "comments_count": post.comments_count,
        "created_at": _iso(post.created_at),
        "updated_at": _iso(post.updated_at),
        "user": _serialize_author(post.user),
    }


def serialize_post_for_viewer(session: Session, post: Post, viewer_id: int | None) -> dict[str, Any]:
    """Post dict for a direct response, with the viewer's own reaction."""
    data = serialize_post(post)
    reaction = None
    if viewer_id is not None:
        reaction = session.scalar(
            select(Reaction.reaction_type).where(
                Reaction.user_id == viewer_id,
                Reaction.reactionable_type == TargetKind.POST.value,
                Reaction.reactionable_id == post.id,
            )
        )
    data["user_reaction"] = reaction
    return data


def serialize_comment(comment: Comment, post_id: int | None) -> dict[str, Any]:
    return {
        "id": comment.id,
        "post_id": post_id,
        "commentable_type": comment.commentable_type,
        "commentable_id": comment.commentable_id,
        "description": comment.description,
        "reactions_count": comment.reactions_count,
        "comments_count": comment.comments_count,
        "created_at": _iso(comment.created_at),
        "updated_at": _iso(comment.updated_at),
        "user": _serialize_author(comment.user),
    }


# ---------------------------------------------------------------------------
# Feed
# ---------------------------------------------------------------------------
def list_posts(
    engine: Engine,
    viewer_id: int | None = None,
    *,
    page: int = 1,
    per_page: int = DEFAULT_PER_PAGE,
) -> dict[str, Any]:
    """One page of the feed, newest first, rendered for *viewer_id*."""
    page = max(1, page)
    per_page = min(max(1, per_page), MAX_PER_PAGE)
    with Session(engine) as session:
        total = session.scalar(select(func.count(Post.id))) or 0
        posts = session.scalars(
            select(Post)
            .order_by(Post.created_at.desc(), Post.id.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
        ).all()
        return {
            "posts": [serialize_post_for_viewer(session, p, viewer_id) for p in posts],
            "meta": {
                "current_page": page,
                "per_page": per_page,
                "total_count": total,
                "total_pages": math.ceil(total / per_page) if total else 0,
            },
        }


# ---------------------------------------------------------------------------
# Posts
# ---------------------------------------------------------------------------
def create_post(
    engine: Engine,
    user_id: int,
    *,
    title: str,
    description: str,
    picture: str | None = None,
    dispatcher: BroadcastDispatcher | None = None,
) -> Post:
    title, description = validate_post(title, description)
    with Session(engine, expire_on_commit=False) as session:
        _require_user(session, user_id)
        post = Post(user_id=user_id, title=title, description=description, picture=picture)
        session.add(post)
        session.commit()
        payload = serialize_post(post)

    logger.info("Post %d created by user %d", post.id, user_id)
    publish_safely(dispatcher, events.post_new(payload))
    mention_service.fan_out_mention_notifications(
        engine, TargetRef.of(post), user_id, dispatcher=dispatcher
    )
    return post


def update_post(
    engine: Engine,
    user_id: int,
    post_id: int,
    *,
    title: str | None = None,
    description: str | None = None,
    picture: str | None = None,
    dispatcher: BroadcastDispatcher | None = None,
) -> Post:
    """Edit a post owned by *user_id*.  ``None`` leaves a field unchanged."""
    with Session(engine, expire_on_commit=False) as session:
        post = _require_owned(session, Post, post_id, user_id)
        new_title, new_description = validate_post(
            post.title if title is None else title,
            post.description if description is None else description,
        )
        post.title = new_title
        post.description = new_description
        if picture is not None:
            post.picture = picture
        session.commit()
        payload = serialize_post(post)

    publish_safely(dispatcher, events.post_update(payload))
    mention_service.fan_out_mention_notifications(
        engine, TargetRef.of(post), user_id, dispatcher=dispatcher
    )
    return post


def _thread_of(session: Session, root: TargetRef) -> list[Comment]:
    """Every comment below *root*, breadth first."""
    found: list[Comment] = []
    frontier = [root]
    while frontier:
        ref = frontier.pop(0)
        children = session.scalars(
            select(Comment).where(
                Comment.commentable_type == ref.kind.value,
                Comment.commentable_id == ref.id,
            )
        ).all()
        found.extend(children)
        frontier.extend(TargetRef.of(c) for c in children)
    return found


def _purge(session: Session, root: Target) -> list[TargetRef]:
    """Delete *root*, its thread, and everything attached to them."""
    refs = [TargetRef.of(root)] + [TargetRef.of(c) for c in _thread_of(session, TargetRef.of(root))]
    for ref in refs:
        session.execute(
            delete(Reaction).where(
                Reaction.reactionable_type == ref.kind.value,
                Reaction.reactionable_id == ref.id,
            )
        )
    notification_service.delete_for_sources(session, refs)
    for ref in reversed(refs):
        model = TARGET_MODELS[ref.kind]
        session.execute(delete(model).where(model.id == ref.id))
    return refs


def delete_post(
    engine: Engine,
    user_id: int,
    post_id: int,
    *,
    dispatcher: BroadcastDispatcher | None = None,
) -> None:
    with Session(engine) as session:
        post = _require_owned(session, Post, post_id, user_id)
        refs = _purge(session, post)
        session.commit()

    logger.info("Post %d deleted (%d entities removed)", post_id, len(refs))
    publish_safely(dispatcher, events.post_delete(post_id))


# ---------------------------------------------------------------------------
# Comments
# ---------------------------------------------------------------------------
def _bump_comments(session: Session, ref: TargetRef, delta: int) -> None:
    model = TARGET_MODELS[ref.kind]
    session.execute(
        update(model)
        .where(model.id == ref.id)
        .values(comments_count=model.comments_count + delta)
        .execution_options(synchronize_session=False)
    )


def create_comment(
    engine: Engine,
    user_id: int,
    parent: TargetRef,
    description: str,
    *,
    dispatcher: BroadcastDispatcher | None = None,
) -> Comment:
    """Comment on a post, or reply to a comment when *parent* is a Comment."""
    description = validate_comment(description)
    with Session(engine, expire_on_commit=False) as session:
        _require_user(session, user_id)
        parent_entity = require_target(session, parent)
        post = root_post(session, parent_entity)
        if post is None:
            raise NotFoundError(f"Thread of {parent} no longer exists")

        comment = Comment(
            user_id=user_id,
            commentable_type=parent.kind.value,
            commentable_id=parent.id,
            description=description,
        )
        session.add(comment)
        session.flush()
        _bump_comments(session, parent, +1)
        notification = notification_service.notify_for_comment(session, comment, user_id)
        session.commit()

        session.refresh(post)
        comment_payload = serialize_comment(comment, post.id)
        post_payload = serialize_post(post) if parent.kind == TargetKind.POST else None
        notification_payload = (
            notification_service.serialize_notification(session, notification)
            if notification is not None
            else None
        )
        post_id = post.id

    logger.info("Comment %d on %s by user %d", comment.id, parent, user_id)
    publish_safely(dispatcher, events.comment_new(post_id, comment_payload))
    if post_payload is not None:
        publish_safely(dispatcher, events.post_update(post_payload))
    if notification is not None:
        publish_safely(
            dispatcher, events.new_notification(notification.user_id, notification_payload)
        )
    mention_service.fan_out_mention_notifications(
        engine, TargetRef.of(comment), user_id, dispatcher=dispatcher
    )
    return comment


def update_comment(
    engine: Engine,
    user_id: int,
    comment_id: int,
    description: str,
    *,
    dispatcher: BroadcastDispatcher | None = None,
) -> Comment:
    description = validate_comment(description)
    with Session(engine, expire_on_commit=False) as session:
        comment = _require_owned(session, Comment, comment_id, user_id)
        comment.description = description
        session.commit()
        post = root_post(session, comment)
        payload = serialize_comment(comment, post.id if post else None)

    if post is not None:
        publish_safely(dispatcher, events.comment_update(post.id, payload))
    mention_service.fan_out_mention_notifications(
        engine, TargetRef.of(comment), user_id, dispatcher=dispatcher
    )
    return comment


def delete_comment(
    engine: Engine,
    user_id: int,
    comment_id: int,
    *,
    dispatcher: BroadcastDispatcher | None = None,
) -> None:
    """Delete a comment with its replies and decrement its parent's count."""
    with Session(engine, expire_on_commit=False) as session:
        comment = _require_owned(session, Comment, comment_id, user_id)
        parent = TargetRef.parse(comment.commentable_type, comment.commentable_id)
        post = root_post(session, comment)
        _purge(session, comment)
        _bump_comments(session, parent, -1)
        session.commit()

        post_payload = None
        if post is not None and parent.kind == TargetKind.POST:
            session.refresh(post)
            post_payload = serialize_post(post)

    if post is not None:
        publish_safely(dispatcher, events.comment_delete(post.id, comment_id))
    if post_payload is not None:
        publish_safely(dispatcher, events.post_update(post_payload))
