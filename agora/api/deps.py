"""
agora.api.deps — FastAPI dependency injection
==============================================
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache

import jwt
from sqlalchemy import Engine

from agora.config import AgoraConfig, load_config
from agora.database.engine import create_db_engine
from agora.services.broadcaster import BroadcastDispatcher

logger = logging.getLogger(__name__)

_WEAK_SECRETS = frozenset({
    "agora-dev-secret-change-me",
    "change-me",
    "secret",
    "dev",
    "",
})

_MIN_SECRET_LENGTH = 32

JWT_ALGORITHM = "HS256"


def _load_jwt_secret() -> str:
    """Load and validate JWT_SECRET from the environment.

    Raises RuntimeError at import time if the secret is missing, blank,
    too short (< 32 chars), or a known weak default.
    """
    secret = os.getenv("JWT_SECRET", "")
    if not secret:
        raise RuntimeError(
            "JWT_SECRET environment variable is not set. "
            "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
        )
    if secret in _WEAK_SECRETS:
        raise RuntimeError(
            f"JWT_SECRET is set to a known weak default ('{secret}'). "
            "Please set a strong, unique secret."
        )
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"JWT_SECRET is too short ({len(secret)} chars). "
            f"Minimum length is {_MIN_SECRET_LENGTH} characters."
        )
    return secret


JWT_SECRET: str = _load_jwt_secret()


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> AgoraConfig:
    try:
        return load_config()
    except FileNotFoundError:
        logger.warning("config.yaml not found — using built-in defaults")
        return AgoraConfig(community_name="Agora", api_port=8000)


@lru_cache(maxsize=1)
def get_dispatcher() -> BroadcastDispatcher:
    return BroadcastDispatcher()


def authenticate_token(token: str | None) -> int | None:
    """Return the user id in *token*'s ``sub`` claim, or None if the token
    is missing, invalid or expired."""
    if not token:
        return None
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        return int(payload["sub"])
    except (jwt.InvalidTokenError, KeyError, TypeError, ValueError):
        return None
