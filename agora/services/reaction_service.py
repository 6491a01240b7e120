"""
agora.services.reaction_service — Reaction Toggle
==================================================

One reaction per (user, target), whatever its type.  A toggle is a small
state machine over the user's current reaction:

=================  ============  ==============
current reaction   action        counter change
=================  ============  ==============
none               ``added``     +1
same type          ``removed``   -1
other type         ``changed``   0
=================  ============  ==============

Lock, lookup, write and counter update share one transaction.  The target
row is locked first (``SELECT ... FOR UPDATE``), so on Postgres toggles on
one target queue up.  Where that lock is unavailable, a lost race still
shows: the insert trips ``uq_reactions_user_target``, or the delete/update
of the looked-up row matches nothing.  Either way the counter is untouched,
the transaction rolls back, and the toggle re-runs once against fresh state
before giving up with :class:`ConflictError`.

The counter is updated with ``SET reactions_count = reactions_count ± 1`` so
toggles by different users never overwrite each other.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from agora.database.models import Reaction, ReactionType, TargetKind, User
from agora.engine import events
from agora.engine.targets import TARGET_MODELS, TargetRef, require_target, root_post
from agora.errors import ConflictError, NotFoundError, ValidationError
from agora.services import notification_service
from agora.services.broadcaster import publish_safely

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from agora.services.broadcaster import BroadcastDispatcher

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 2


class ToggleAction(enum.StrEnum):
    ADDED = "added"
    CHANGED = "changed"
    REMOVED = "removed"


@dataclass(frozen=True, slots=True)
class ToggleResult:
    """Outcome of one toggle.

    ``reaction`` is the surviving row (None after a removal) and
    ``reactions_count`` the target's counter after commit.
    """

    action: ToggleAction
    reaction: Reaction | None
    reactions_count: int
    target: TargetRef
    post_id: int | None = None

    def as_dict(self) -> dict:
        """Response for the reacting user (may carry their own reaction)."""
        return {
            "action": self.action.value,
            "reaction": self.reaction.reaction_type if self.reaction else None,
            "reactions_count": self.reactions_count,
            "target_type": self.target.kind.value,
            "target_id": self.target.id,
        }


def _coerce_reaction_type(reaction_type: str) -> ReactionType:
    try:
        return ReactionType(reaction_type)
    except ValueError:
        raise ValidationError(f"Unknown reaction type: {reaction_type!r}") from None


def _find_existing(session: Session, user_id: int, target: TargetRef) -> Reaction | None:
    return session.scalar(
        select(Reaction).where(
            Reaction.user_id == user_id,
            Reaction.reactionable_type == target.kind.value,
            Reaction.reactionable_id == target.id,
        )
    )


def _bump_counter(session: Session, target: TargetRef, delta: int) -> None:
    model = TARGET_MODELS[target.kind]
    session.execute(
        update(model)
        .where(model.id == target.id)
        .values(reactions_count=model.reactions_count + delta)
        .execution_options(synchronize_session=False)
    )


def _lock_target(session: Session, target: TargetRef) -> None:
    """Row-lock *target* so same-user toggles on it run one at a time.

    ``FOR UPDATE`` is dropped on SQLite; there the rowcount checks in
    :func:`_toggle_once` catch a lost race instead.
    """
    model = TARGET_MODELS[target.kind]
    session.execute(select(model.id).where(model.id == target.id).with_for_update())


def _expect_one(rowcount: int, what: str) -> None:
    if rowcount != 1:
        raise StaleDataError(f"{what} matched {rowcount} rows; reaction changed concurrently")


def _toggle_once(
    engine: Engine, user_id: int, target: TargetRef, rtype: ReactionType
) -> ToggleResult:
    with Session(engine, expire_on_commit=False) as session:
        if session.get(User, user_id) is None:
            raise NotFoundError(f"User {user_id} not found")
        entity = require_target(session, target)
        _lock_target(session, target)

        existing = _find_existing(session, user_id, target)
        if existing is None:
            reaction = Reaction(
                user_id=user_id,
                reactionable_type=target.kind.value,
                reactionable_id=target.id,
                reaction_type=rtype.value,
            )
            session.add(reaction)
            session.flush()
            _bump_counter(session, target, +1)
            action = ToggleAction.ADDED
        elif existing.reaction_type == rtype.value:
            removed = session.execute(
                delete(Reaction)
                .where(Reaction.id == existing.id)
                .execution_options(synchronize_session=False)
            )
            _expect_one(removed.rowcount, f"Removing reaction {existing.id}")
            session.expunge(existing)
            _bump_counter(session, target, -1)
            reaction = None
            action = ToggleAction.REMOVED
        else:
            changed = session.execute(
                update(Reaction)
                .where(
                    Reaction.id == existing.id,
                    Reaction.reaction_type == existing.reaction_type,
                )
                .values(reaction_type=rtype.value)
                .execution_options(synchronize_session=False)
            )
            _expect_one(changed.rowcount, f"Changing reaction {existing.id}")
            session.refresh(existing, ["reaction_type"])
            reaction = existing
            action = ToggleAction.CHANGED

        session.refresh(entity, ["reactions_count"])
        count = entity.reactions_count
        post_id = None
        if target.kind == TargetKind.COMMENT:
            post = root_post(session, entity)
            post_id = post.id if post is not None else None
        session.commit()

    return ToggleResult(action, reaction, count, target, post_id)


def toggle_reaction(
    engine: Engine,
    user_id: int,
    target: TargetRef,
    reaction_type: str,
    *,
    dispatcher: BroadcastDispatcher | None = None,
) -> ToggleResult:
    """Apply one reaction toggle by *user_id* on *target*.

    Raises
    ------
    ValidationError
        *reaction_type* is not a known reaction.
    NotFoundError
        The user or the target does not exist.
    ConflictError
        The toggle lost a race with another toggle by the same user twice
        in a row.
    """
    rtype = _coerce_reaction_type(reaction_type)

    result: ToggleResult | None = None
    for attempt in range(1, MAX_ATTEMPTS + 1):
        try:
            result = _toggle_once(engine, user_id, target, rtype)
            break
        except (IntegrityError, StaleDataError):
            if attempt == MAX_ATTEMPTS:
                raise ConflictError(
                    f"Reaction by user {user_id} on {target} conflicted {attempt} times"
                ) from None
            logger.warning(
                "Reaction race for user %d on %s — retrying (attempt %d/%d)",
                user_id, target, attempt, MAX_ATTEMPTS,
            )
    assert result is not None

    logger.info(
        "Reaction %s by user %d on %s → %d", result.action, user_id, target,
        result.reactions_count,
    )

    if target.kind == TargetKind.POST or result.post_id is not None:
        publish_safely(
            dispatcher,
            events.reaction_changed(target, result.reactions_count, post_id=result.post_id),
        )
    else:
        logger.warning("No root post for %s; reaction_changed not published", target)

    notification_service.notify_for_reaction(engine, result, user_id, dispatcher=dispatcher)
    return result


def reaction_summary(engine: Engine, target: TargetRef, viewer_id: int | None = None) -> dict:
    """Per-type counts for *target* plus the viewer's own reaction.

    For the viewer's direct fetch only.  Never broadcast this payload.
    """
    with Session(engine) as session:
        require_target(session, target)
        rows = session.execute(
            select(Reaction.reaction_type, func.count(Reaction.id))
            .where(
                Reaction.reactionable_type == target.kind.value,
                Reaction.reactionable_id == target.id,
            )
            .group_by(Reaction.reaction_type)
        ).all()
        counts = {rt.value: 0 for rt in ReactionType}
        counts.update({rtype: cnt for rtype, cnt in rows})

        user_reaction = None
        if viewer_id is not None:
            mine = _find_existing(session, viewer_id, target)
            user_reaction = mine.reaction_type if mine else None

    return {
        "target_type": target.kind.value,
        "target_id": target.id,
        "reactions_count": sum(counts.values()),
        "counts": counts,
        "user_reaction": user_reaction,
    }
