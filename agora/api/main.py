"""
agora.api.main — FastAPI application entry point
=================================================

Run with::

    uvicorn agora.api.main:app --port 8000

or ``agora-api``, which reads the port from ``config.yaml``.

With ``broadcast_transport: postgres`` the dispatcher publishes through
Postgres NOTIFY and every worker process LISTENs, so a socket held by one
worker sees events written by another.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

load_dotenv()

from agora.api.deps import get_config, get_dispatcher, get_engine  # noqa: E402
from agora.api.gateway import router as gateway_router  # noqa: E402
from agora.services.broadcaster import BroadcastDispatcher  # noqa: E402
from agora.services.pg_notify import PgNotifyBridge  # noqa: E402

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s"


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env with safe defaults.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) FRONTEND_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    frontend_url = os.getenv("FRONTEND_URL", "").strip()
    if frontend_url:
        return [frontend_url.rstrip("/")]

    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown — warm the engine, start the dispatcher and, for the
    postgres transport, the LISTEN thread."""
    config = get_config()
    logging.basicConfig(level=config.log_level, format=LOG_FORMAT, datefmt="%H:%M:%S")

    engine = get_engine()
    dispatcher = get_dispatcher()
    dispatcher.start()

    bridge: PgNotifyBridge | None = None
    if config.broadcast_transport == "postgres":
        bridge = PgNotifyBridge(engine, dispatcher)
        dispatcher.attach_transport(bridge)
        bridge.start_listener()
    app.state.bridge = bridge

    logger.info(
        "Agora API started for '%s' — transport=%s", config.community_name,
        config.broadcast_transport,
    )
    yield

    if bridge is not None:
        dispatcher.attach_transport(None)
        bridge.stop_listener()
    dispatcher.close()
    logger.info("Agora API shutting down")


app = FastAPI(
    title="Agora Engagement Gateway",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(gateway_router)


@app.get("/health")
def health(request: Request, dispatcher: BroadcastDispatcher = Depends(get_dispatcher)):
    bridge: PgNotifyBridge | None = getattr(request.app.state, "bridge", None)
    listener = None
    if bridge is not None:
        listener = {"healthy": bridge.listener_healthy, "failed": bridge.listener_failed}
    return {
        "status": "ok" if listener is None or not listener["failed"] else "degraded",
        "dispatcher": {
            "worker_alive": dispatcher.worker_alive,
            "subscribers": dispatcher.subscriber_count,
            "channels": len(dispatcher.channels()),
        },
        "listener": listener,
    }


def run() -> None:
    """Console entry point: serve the app on the configured port."""
    import uvicorn

    config = get_config()
    uvicorn.run(app, host=os.getenv("AGORA_HOST", "0.0.0.0"), port=config.api_port)
