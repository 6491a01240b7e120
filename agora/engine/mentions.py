"""
agora.engine.mentions — @-Mention Extraction
=============================================

Pure text processing; no DB I/O.  Two mention forms are recognised:

* ``@user_name`` — 3-30 letters, digits or underscores.
* ``@someone@example.com`` — an e-mail address after the ``@``.

E-mail mentions are matched first and cut out of the text, so the local
part of ``@alice@example.com`` is never also read as a username.  An ``@``
glued to a preceding word character or ``@`` does not start a mention, which
keeps the domain of a plain ``bob@example.com`` out of the result.
"""

from __future__ import annotations

import re

from agora.constants import MAX_MENTIONABLE_TEXT
from agora.errors import ValidationError

__all__ = ["EMAIL_MENTION", "USERNAME_MENTION", "extract_mentions", "is_email_mention"]

EMAIL_MENTION = re.compile(
    r"(?<![\w@])@([A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,})"
)
USERNAME_MENTION = re.compile(r"(?<![\w@])@([A-Za-z0-9_]{3,30})\b")


def extract_mentions(text: str | None) -> set[str]:
    """Return the distinct mention identifiers found in *text*.

    Identifiers are returned without the leading ``@``.  Exact duplicates
    collapse; case variants (``@Alice`` / ``@alice``) are left for the
    resolver to merge.

    Raises
    ------
    ValidationError
        If *text* is longer than :data:`MAX_MENTIONABLE_TEXT`.
    """
    if not text or not text.strip():
        return set()
    if len(text) > MAX_MENTIONABLE_TEXT:
        raise ValidationError(
            f"Text too long for mention processing ({len(text)} chars, "
            f"max {MAX_MENTIONABLE_TEXT})"
        )

    mentions: set[str] = set()
    for match in EMAIL_MENTION.finditer(text):
        mentions.add(match.group(1))

    remainder = EMAIL_MENTION.sub(" ", text)
    for match in USERNAME_MENTION.finditer(remainder):
        mentions.add(match.group(1))

    return mentions


def is_email_mention(identifier: str) -> bool:
    return "@" in identifier
