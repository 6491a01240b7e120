"""
agora.constants — Shared Constants & Helpers
=============================================

Single source of truth for content limits, payload budgets and the names of
viewer-private fields.  Import from here instead of duplicating in services,
the gateway and the client store.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Content limits
# ---------------------------------------------------------------------------
POST_TITLE_MIN = 3
POST_TITLE_MAX = 200
POST_DESCRIPTION_MIN = 10
POST_DESCRIPTION_MAX = 5000
COMMENT_DESCRIPTION_MIN = 1
COMMENT_DESCRIPTION_MAX = 2000

# Title + separator + description of the largest post, with headroom.
MAX_MENTIONABLE_TEXT = 7500

# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------
PREVIEW_LENGTH = 100
DELETED_USER_NAME = "Deleted User"

DEFAULT_PER_PAGE = 20
MAX_PER_PAGE = 100

# Fields that only ever describe the *viewing* user.  They may appear in a
# direct response to that user, never on a shared broadcast channel.
VIEWER_PRIVATE_FIELDS: frozenset[str] = frozenset({
    "user_reaction",
    "user_reactions",
    "read",
    "read_at",
})


def truncate_preview(text: str | None, limit: int = PREVIEW_LENGTH) -> str:
    """Return *text* cut to *limit* characters for a payload preview.

    An ellipsis is appended when anything was cut.  Previews are for
    payloads only and must never be written back to the stored entity.
    """
    if not text:
        return ""
    if len(text) <= limit:
        return text
    return text[:limit].rstrip() + "…"
