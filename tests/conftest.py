"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import asyncio
import os

# ---------------------------------------------------------------------------
# Ensure a valid JWT_SECRET is always set for test runs.
# This must happen before any import of agora.api.deps which validates
# the secret at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from agora.database.engine import init_db  # noqa: E402
from agora.database.models import Comment, Post, User  # noqa: E402
from agora.services.broadcaster import BroadcastDispatcher  # noqa: E402


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all Agora tables.

    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in the gateway).
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    return engine


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a transactional session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


@pytest.fixture
def dispatcher():
    """A local dispatcher, closed after the test."""
    d = BroadcastDispatcher()
    yield d
    d.close()


class Recorder:
    """Dispatcher subscriber that records every envelope it receives."""

    def __init__(self) -> None:
        self.envelopes: list[dict] = []

    def __call__(self, envelope: dict) -> None:
        self.envelopes.append(envelope)

    def types(self) -> list[str]:
        return [e["type"] for e in self.envelopes]


def run_async(coro):
    """Run an async coroutine in a new event loop."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


# ---------------------------------------------------------------------------
# Seed helpers: each commits and returns the new row's id
# ---------------------------------------------------------------------------
def make_user(engine: Engine, username: str, *, name: str | None = None, email: str | None = None) -> int:
    with Session(engine) as session:
        user = User(
            username=username,
            name=name or username.title(),
            email=(email or f"{username}@example.com").lower(),
        )
        session.add(user)
        session.commit()
        return user.id


def make_post(
    engine: Engine,
    user_id: int,
    *,
    title: str = "Hello world",
    description: str = "A perfectly ordinary post body.",
) -> int:
    with Session(engine) as session:
        post = Post(user_id=user_id, title=title, description=description)
        session.add(post)
        session.commit()
        return post.id


def make_comment(
    engine: Engine,
    user_id: int,
    *,
    on: str,
    on_id: int,
    description: str = "Nice one",
) -> int:
    with Session(engine) as session:
        comment = Comment(
            user_id=user_id,
            commentable_type=on,
            commentable_id=on_id,
            description=description,
        )
        session.add(comment)
        session.commit()
        return comment.id


def make_token(user_id: int) -> str:
    """Create a gateway JWT for *user_id*."""
    import jwt

    from agora.api.deps import JWT_ALGORITHM, JWT_SECRET

    return jwt.encode({"sub": str(user_id)}, JWT_SECRET, algorithm=JWT_ALGORITHM)
