"""
agora.database.engine — Engine Factory & Async Bridge
======================================================

Engagement services are synchronous SQLAlchemy: each public operation opens
its own :class:`~sqlalchemy.orm.Session`, runs one transaction and commits.
The WebSocket gateway lives on an ``asyncio`` loop and reaches them through
:func:`run_db`::

    changed = await run_db(notification_service.mark_read, engine, user_id,
                           notification_id, dispatcher=dispatcher)
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from typing import ParamSpec, TypeVar

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import make_url

from agora.database.models import Base

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

# Connection pool for server databases (ignored for SQLite)
POOL_OPTIONS = {
    "pool_size": 5,
    "max_overflow": 10,
    "pool_timeout": 10,
    "pool_recycle": 3600,
    "pool_pre_ping": True,
}


def create_db_engine(url: str | None = None) -> Engine:
    """Engine for *url*, falling back to ``DATABASE_URL``.

    Raises
    ------
    RuntimeError
        Neither *url* nor ``DATABASE_URL`` is set.
    """
    url = url or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError(
            "DATABASE_URL is not set. Put a PostgreSQL URL in the environment "
            "or in .env (see .env.example)."
        )

    options = {} if make_url(url).get_backend_name() == "sqlite" else POOL_OPTIONS
    engine = create_engine(url, echo=False, **options)
    logger.info("Database engine ready (%s, host=%s)", engine.dialect.name, engine.url.host)
    return engine


def init_db(engine: Engine) -> None:
    """``create_all`` for development and tests; production runs
    ``alembic upgrade head`` instead."""
    Base.metadata.create_all(engine)
    logger.info("Schema ensured: %s", ", ".join(sorted(Base.metadata.tables)))


async def run_db(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """Await a blocking database call without stalling the event loop."""
    return await asyncio.to_thread(func, *args, **kwargs)
