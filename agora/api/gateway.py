"""
agora.api.gateway — WebSocket Push Gateway
===========================================

``/ws?token=<jwt>`` — one socket per signed-in client.

On connect the socket is subscribed to the shared ``posts`` channel and to
the user's private ``notifications:{user_id}`` channel.  Every event on
those channels is forwarded as its wire envelope.  A socket whose token is
missing or invalid is closed with code ``4401``.

Inbound frames are JSON commands::

    {"command": "follow_post",   "post_id": 7}    # subscribe comments:7
    {"command": "unfollow_post", "post_id": 7}
    {"command": "mark_read",     "notification_id": 12}
    {"command": "mark_all_read"}
    {"command": "list_notifications", "page": 1, "unread": true}
    {"command": "ping"}

Each command is answered with ``{"type": "ack", ...}`` or
``{"type": "error", ...}`` on the same socket.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from sqlalchemy import Engine

from agora.api.deps import authenticate_token, get_config, get_dispatcher, get_engine
from agora.config import AgoraConfig
from agora.database.engine import run_db
from agora.engine.events import POSTS_CHANNEL, comments_channel, notifications_channel
from agora.errors import AgoraError
from agora.services import notification_service
from agora.services.broadcaster import BroadcastDispatcher, Subscription

logger = logging.getLogger(__name__)

router = APIRouter()

UNAUTHORIZED_CLOSE_CODE = 4401


class _Connection:
    """Subscriptions and outbound queue for one socket."""

    def __init__(
        self,
        websocket: WebSocket,
        user_id: int,
        engine: Engine,
        dispatcher: BroadcastDispatcher,
        per_page: int,
    ) -> None:
        self.websocket = websocket
        self.user_id = user_id
        self.engine = engine
        self.dispatcher = dispatcher
        self.per_page = per_page
        self.loop = asyncio.get_running_loop()
        self.outbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self.subscriptions: dict[str, Subscription] = {}

    def _enqueue(self, envelope: dict[str, Any]) -> None:
        # Runs on the event loop (scheduled by the dispatcher thread).
        self.outbox.put_nowait(envelope)

    def follow(self, channel: str) -> None:
        if channel in self.subscriptions:
            return
        self.subscriptions[channel] = self.dispatcher.subscribe(
            channel, self._enqueue, loop=self.loop
        )

    def unfollow(self, channel: str) -> None:
        sub = self.subscriptions.pop(channel, None)
        if sub is not None:
            self.dispatcher.unsubscribe(sub)

    def close(self) -> None:
        for channel in list(self.subscriptions):
            self.unfollow(channel)

    async def send_loop(self) -> None:
        while True:
            envelope = await self.outbox.get()
            await self.websocket.send_json(envelope)

    # -------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------
    async def handle(self, frame: Any) -> dict[str, Any]:
        if not isinstance(frame, dict):
            return {"type": "error", "detail": "Expected a JSON object"}

        command = frame.get("command")
        try:
            if command == "ping":
                return {"type": "pong"}

            if command in ("follow_post", "unfollow_post"):
                channel = comments_channel(int(frame["post_id"]))
                if command == "follow_post":
                    self.follow(channel)
                else:
                    self.unfollow(channel)
                return {"type": "ack", "command": command, "channel": channel}

            if command == "mark_read":
                changed = await run_db(
                    notification_service.mark_read,
                    self.engine,
                    self.user_id,
                    int(frame["notification_id"]),
                    dispatcher=self.dispatcher,
                )
                return {"type": "ack", "command": command, "changed": changed}

            if command == "list_notifications":
                unread = frame.get("unread")
                listing = await run_db(
                    notification_service.list_notifications,
                    self.engine,
                    self.user_id,
                    page=int(frame.get("page", 1)),
                    per_page=self.per_page,
                    unread=None if unread is None else bool(unread),
                )
                return {"type": "ack", "command": command, **listing}

            if command == "mark_all_read":
                count = await run_db(
                    notification_service.mark_all_read,
                    self.engine,
                    self.user_id,
                    dispatcher=self.dispatcher,
                )
                return {"type": "ack", "command": command, "count": count}

        except (KeyError, TypeError, ValueError):
            return {"type": "error", "command": command, "detail": "Invalid arguments"}
        except AgoraError as exc:
            return {"type": "error", "command": command, "detail": str(exc)}

        return {"type": "error", "command": command, "detail": "Unknown command"}


async def _stop_sender(sender: asyncio.Task, user_id: int) -> None:
    """Cancel the outbound task and surface anything it died of."""
    sender.cancel()
    try:
        await sender
    except asyncio.CancelledError:
        pass
    except Exception:
        logger.exception("Gateway sender for user %d failed", user_id)


@router.websocket("/ws")
async def push_gateway(
    websocket: WebSocket,
    token: str | None = None,
    engine: Engine = Depends(get_engine),
    dispatcher: BroadcastDispatcher = Depends(get_dispatcher),
    config: AgoraConfig = Depends(get_config),
):
    await websocket.accept()

    user_id = authenticate_token(token)
    if user_id is None:
        await websocket.close(code=UNAUTHORIZED_CLOSE_CODE)
        return

    conn = _Connection(websocket, user_id, engine, dispatcher, config.notifications_per_page)
    conn.follow(POSTS_CHANNEL)
    conn.follow(notifications_channel(user_id))
    sender = asyncio.create_task(conn.send_loop())
    logger.info("Gateway connected: user %d", user_id)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                conn.outbox.put_nowait({"type": "error", "detail": "Invalid JSON"})
                continue
            conn.outbox.put_nowait(await conn.handle(frame))
    except WebSocketDisconnect:
        pass
    finally:
        conn.close()
        await _stop_sender(sender, user_id)
        logger.info("Gateway disconnected: user %d", user_id)
