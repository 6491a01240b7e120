"""
agora.services.broadcaster — In-Process Broadcast Dispatcher
=============================================================

Fans :class:`BroadcastEvent` envelopes out to the callbacks subscribed to
their channel.

Delivery rules:
- ``publish()`` never blocks on subscribers: events go onto one FIFO queue
  drained by a single daemon thread, so order within a channel is the order
  of publication.
- At-most-once.  A callback that raises is logged and skipped; nothing is
  retried and the publisher never sees the failure.  A subscriber that was
  offline must re-fetch, there is no replay.
- Private events (notification inbox) may only go to a
  ``notifications:{id}`` channel and shared events only to ``posts`` /
  ``comments:{id}``.  Shared payloads are stripped of viewer-private fields.

When a cross-process transport is attached (see :mod:`agora.services.pg_notify`)
``publish()`` hands the event to the transport instead, and the transport's
listener feeds it back in through :meth:`BroadcastDispatcher.deliver` in
every process.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import queue
import threading
import uuid
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from agora.constants import VIEWER_PRIVATE_FIELDS
from agora.engine.events import BroadcastEvent, is_private_channel, is_shared_channel
from agora.errors import DispatchFailure

logger = logging.getLogger(__name__)

DEFAULT_MAX_QUEUE = 10_000


class EventTransport(Protocol):
    """Anything that can carry an event to every dispatcher process."""

    def send(self, event: BroadcastEvent) -> None: ...


@dataclass(frozen=True, slots=True, eq=False)
class Subscription:
    """A callback attached to one channel.

    Attributes:
        channel: Channel name the callback listens on.
        callback: Called with the wire envelope dict.  May be a coroutine
            function, in which case *loop* is required.
        loop: Event loop the callback is scheduled on, if any.
    """

    channel: str
    callback: Callable[[dict[str, Any]], Any]
    loop: asyncio.AbstractEventLoop | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass(slots=True)
class _FlushMarker:
    done: threading.Event = field(default_factory=threading.Event)


# ---------------------------------------------------------------------------
# Payload hygiene
# ---------------------------------------------------------------------------
def strip_private_fields(value: Any) -> tuple[Any, bool]:
    """Return a copy of *value* without viewer-private keys at any depth,
    plus whether anything was removed."""
    if isinstance(value, dict):
        removed = False
        clean: dict[str, Any] = {}
        for key, item in value.items():
            if key in VIEWER_PRIVATE_FIELDS:
                removed = True
                continue
            clean[key], nested = strip_private_fields(item)
            removed = removed or nested
        return clean, removed
    if isinstance(value, list):
        items = [strip_private_fields(item) for item in value]
        return [item for item, _ in items], any(flag for _, flag in items)
    return value, False


def check_routing(event: BroadcastEvent) -> None:
    """Raise ``ValueError`` if *event* is addressed to the wrong audience."""
    if event.is_private and not is_private_channel(event.channel):
        raise ValueError(
            f"Private event '{event.type}' cannot be sent on channel '{event.channel}'"
        )
    if not event.is_private and not is_shared_channel(event.channel):
        raise ValueError(
            f"Shared event '{event.type}' cannot be sent on channel '{event.channel}'"
        )


class BroadcastDispatcher:
    """Thread-safe pub/sub fan-out with a single ordered delivery worker.

    Usage::

        dispatcher = BroadcastDispatcher()
        sub = dispatcher.subscribe("posts", on_event)
        dispatcher.publish(events.post_delete(7))   # returns immediately
        dispatcher.flush()                          # wait for delivery
        dispatcher.unsubscribe(sub)
        dispatcher.close()
    """

    def __init__(
        self,
        transport: EventTransport | None = None,
        *,
        max_queue: int = DEFAULT_MAX_QUEUE,
    ) -> None:
        self._transport = transport
        self._subscribers: dict[str, set[Subscription]] = defaultdict(set)
        self._lock = threading.Lock()
        self._queue: queue.Queue[BroadcastEvent | _FlushMarker | None] = queue.Queue(
            maxsize=max_queue
        )
        self._worker: threading.Thread | None = None
        self._closed = False

    # -------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------
    @property
    def subscriber_count(self) -> int:
        """Total number of subscriptions across all channels."""
        with self._lock:
            return sum(len(subs) for subs in self._subscribers.values())

    @property
    def worker_alive(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def attach_transport(self, transport: EventTransport | None) -> None:
        self._transport = transport

    def subscribe(
        self,
        channel: str,
        callback: Callable[[dict[str, Any]], Any],
        *,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> Subscription:
        """Register *callback* for every future event on *channel*."""
        if inspect.iscoroutinefunction(callback) and loop is None:
            raise ValueError("Coroutine callbacks need an event loop to run on")
        sub = Subscription(channel=channel, callback=callback, loop=loop)
        with self._lock:
            self._subscribers[channel].add(sub)
        logger.debug("Subscribed %s to '%s'", sub.id, channel)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        """Remove *sub*.  Unknown subscriptions are ignored."""
        with self._lock:
            subs = self._subscribers.get(sub.channel)
            if subs is None:
                return
            subs.discard(sub)
            if not subs:
                del self._subscribers[sub.channel]

    def get_subscribers(self, channel: str) -> frozenset[Subscription]:
        """Snapshot of the subscriptions for *channel* (no lock held on return)."""
        with self._lock:
            return frozenset(self._subscribers.get(channel, set()))

    def channels(self) -> frozenset[str]:
        """Channels with at least one subscriber."""
        with self._lock:
            return frozenset(self._subscribers.keys())

    # -------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------
    def publish(self, event: BroadcastEvent) -> None:
        """Queue *event* for delivery and return immediately.

        Raises ``ValueError`` only for a mis-addressed event (a programming
        error).  Transport and subscriber failures are logged and dropped.
        """
        check_routing(event)

        if not event.is_private:
            payload, removed = strip_private_fields(event.payload)
            if removed:
                logger.warning(
                    "Stripped viewer-private fields from '%s' on shared channel '%s'",
                    event.type, event.channel,
                )
                event = BroadcastEvent(event.type, event.channel, payload)

        if self._transport is not None:
            try:
                self._transport.send(event)
            except Exception:
                logger.exception(
                    "Transport failed to send '%s' on '%s' — event dropped",
                    event.type, event.channel,
                )
            return

        self.deliver(event)

    def deliver(self, event: BroadcastEvent) -> None:
        """Hand *event* to the local delivery worker (no transport hop)."""
        if self._closed:
            logger.debug("Dispatcher closed — dropping '%s'", event.type)
            return
        self.start()
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            logger.warning(
                "Broadcast queue full — dropping '%s' on '%s'",
                event.type, event.channel,
            )

    # -------------------------------------------------------------------
    # Worker lifecycle
    # -------------------------------------------------------------------
    def start(self) -> None:
        """Start the delivery thread (idempotent)."""
        with self._lock:
            if self._worker is not None and self._worker.is_alive():
                return
            thread = threading.Thread(
                target=self._run, daemon=True, name="broadcast-dispatcher"
            )
            self._worker = thread
        thread.start()
        logger.info("Broadcast dispatcher started")

    def flush(self, timeout: float = 5.0) -> bool:
        """Block until every event queued so far has been handed to its
        subscribers.  Returns False on timeout."""
        if not self.worker_alive:
            return self._queue.empty()
        marker = _FlushMarker()
        self._queue.put(marker)
        return marker.done.wait(timeout)

    def close(self, timeout: float = 5.0) -> None:
        """Stop accepting events, deliver what is queued, stop the worker."""
        self._closed = True
        if self._worker is None:
            return
        self._queue.put(None)
        self._worker.join(timeout=timeout)
        logger.info("Broadcast dispatcher stopped")

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is None:
                    return
                if isinstance(item, _FlushMarker):
                    item.done.set()
                    continue
                self._fan_out(item)
            finally:
                self._queue.task_done()

    def _fan_out(self, event: BroadcastEvent) -> None:
        envelope = event.to_envelope()
        for sub in self.get_subscribers(event.channel):
            try:
                self._invoke(sub, envelope)
            except Exception:
                logger.exception(
                    "Dropped '%s' for subscriber %s on '%s'",
                    event.type, sub.id, event.channel,
                )

    def _invoke(self, sub: Subscription, envelope: dict[str, Any]) -> None:
        if sub.loop is None:
            sub.callback(envelope)
            return

        if sub.loop.is_closed():
            raise DispatchFailure(f"Event loop for subscriber {sub.id} is closed")

        if inspect.iscoroutinefunction(sub.callback):
            future = asyncio.run_coroutine_threadsafe(sub.callback(envelope), sub.loop)
            future.add_done_callback(_log_async_failure)
        else:
            sub.loop.call_soon_threadsafe(sub.callback, envelope)


def _log_async_failure(future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error("Async subscriber failed: %r", exc)


def publish_safely(dispatcher: BroadcastDispatcher | None, event: BroadcastEvent) -> None:
    """Publish from a service after its write has committed.

    A missing dispatcher is a no-op.  Any failure is logged and dropped so the
    committed write is never reported as failed because of a broadcast.
    """
    if dispatcher is None:
        return
    try:
        dispatcher.publish(event)
    except Exception:
        logger.exception("Failed to publish '%s' on '%s'", event.type, event.channel)
