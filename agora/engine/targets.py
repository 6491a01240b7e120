"""
agora.engine.targets — Polymorphic Target References
=====================================================

A target is whatever a reaction, comment or notification attaches to.  The
set of kinds is closed ({Post, Comment}), so references are a small tagged
union resolved by explicit dispatch over :data:`TARGET_MODELS` rather than by
looking a class up from a stored type name.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from agora.database.models import Comment, Post, TargetKind
from agora.errors import NotFoundError, ValidationError

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

__all__ = [
    "TARGET_MODELS",
    "Target",
    "TargetRef",
    "mentionable_text",
    "require_target",
    "resolve_target",
    "root_post",
]

Target = Post | Comment

TARGET_MODELS: dict[TargetKind, type[Post] | type[Comment]] = {
    TargetKind.POST: Post,
    TargetKind.COMMENT: Comment,
}

_KINDS_BY_NAME: dict[str, TargetKind] = {k.value.lower(): k for k in TargetKind}

# Reply chains deeper than this are treated as broken.
MAX_REPLY_DEPTH = 64


@dataclass(frozen=True, slots=True)
class TargetRef:
    """Weak ``(kind, id)`` reference.  Implies no ownership."""

    kind: TargetKind
    id: int

    @classmethod
    def parse(cls, kind: str, target_id: int | str) -> TargetRef:
        """Build a reference from wire/storage values.

        Raises :class:`ValidationError` for a kind outside the closed set or
        a non-integer id.
        """
        resolved = _KINDS_BY_NAME.get(str(kind).lower())
        if resolved is None:
            raise ValidationError(f"Unknown target type: {kind!r}")
        try:
            return cls(resolved, int(target_id))
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid target id: {target_id!r}") from None

    @classmethod
    def of(cls, entity: Target) -> TargetRef:
        if isinstance(entity, Post):
            return cls(TargetKind.POST, entity.id)
        if isinstance(entity, Comment):
            return cls(TargetKind.COMMENT, entity.id)
        raise TypeError(f"Not a target entity: {entity!r}")

    def as_dict(self) -> dict:
        return {"type": self.kind.value, "id": self.id}

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.id}"


def resolve_target(session: Session, ref: TargetRef) -> Target | None:
    """Return the live entity for *ref*, or None if it no longer exists."""
    model = TARGET_MODELS[ref.kind]
    return session.get(model, ref.id)


def require_target(session: Session, ref: TargetRef) -> Target:
    entity = resolve_target(session, ref)
    if entity is None:
        raise NotFoundError(f"{ref.kind.value} {ref.id} not found")
    return entity


def root_post(session: Session, entity: Target) -> Post | None:
    """Walk a reply chain up to its post.

    Returns None when any link of the chain has been deleted.
    """
    current: Target | None = entity
    for _ in range(MAX_REPLY_DEPTH):
        if current is None or isinstance(current, Post):
            return current
        parent = TargetRef.parse(current.commentable_type, current.commentable_id)
        current = resolve_target(session, parent)
    return None


def mentionable_text(entity: Target) -> str:
    """Text scanned for @-mentions: title + description for posts,
    description only for comments."""
    if isinstance(entity, Post):
        return f"{entity.title or ''} {entity.description or ''}".strip()
    return entity.description or ""
