"""
agora.config — YAML Configuration Loader
=========================================

Reads ``config.yaml`` for soft, non-secret settings (community identity,
gateway port, broadcast transport, log level).  Secrets and connection
strings (``DATABASE_URL``, ``JWT_SECRET``) come from the environment.

Usage::

    from agora.config import load_config

    cfg = load_config()             # reads ./config.yaml by default
    print(cfg.community_name)       # "Agora Dev"
    print(cfg.broadcast_transport)  # "local"
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml

from agora.constants import DEFAULT_PER_PAGE

VALID_TRANSPORTS = ("local", "postgres")


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class AgoraConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Identity
    community_name: str

    # Gateway
    api_port: int

    # Broadcast transport: "local" (in-process) or "postgres" (LISTEN/NOTIFY)
    broadcast_transport: str = "local"

    # Optional
    log_level: str = "INFO"
    notifications_per_page: int = DEFAULT_PER_PAGE


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> AgoraConfig:
    """Read *path* and return an :class:`AgoraConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
        Defaults to ``config.yaml`` in the current working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    ValueError
        If ``broadcast_transport`` is not a known transport.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    transport = str(raw.get("broadcast_transport", "local")).lower()
    if transport not in VALID_TRANSPORTS:
        raise ValueError(
            f"Unknown broadcast_transport '{transport}'. "
            f"Expected one of: {', '.join(VALID_TRANSPORTS)}"
        )

    return AgoraConfig(
        community_name=raw["community_name"],
        api_port=int(raw["api_port"]),
        broadcast_transport=transport,
        log_level=str(raw.get("log_level", "INFO")).upper(),
        notifications_per_page=int(
            raw.get("notifications_per_page", DEFAULT_PER_PAGE)
        ),
    )
