"""
agora.services.pg_notify — Cross-Process Broadcast via PG LISTEN/NOTIFY
========================================================================

With more than one API worker, an event published in one process must reach
WebSocket subscribers held by the others.  :class:`PgNotifyBridge` is the
dispatcher's transport for that case:

* ``send()`` issues ``pg_notify('agora_events', <json envelope>)`` on its own
  short-lived connection, after the triggering write has committed.
* A background thread LISTENs on the same channel and feeds every envelope to
  the local dispatcher's delivery queue.

Delivery stays best-effort: an oversized payload, a failed NOTIFY or a lost
LISTEN connection drops events rather than blocking writers.
"""

from __future__ import annotations

import json
import logging
import random
import select as _select
import threading
from typing import TYPE_CHECKING

from sqlalchemy import text

from agora.engine.events import BroadcastEvent
from agora.errors import DispatchFailure

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from agora.services.broadcaster import BroadcastDispatcher

logger = logging.getLogger(__name__)

EVENT_NOTIFY_CHANNEL = "agora_events"

# Postgres rejects NOTIFY payloads of 8000 bytes or more.
MAX_NOTIFY_BYTES = 7999

# LISTEN reconnect policy
RECONNECT_BASE_DELAY = 1.0
RECONNECT_MAX_DELAY = 60.0
RECONNECT_MAX_ATTEMPTS = 10
POLL_INTERVAL = 5.0


def encode_envelope(event: BroadcastEvent) -> str:
    """Serialise *event* for NOTIFY.

    Raises :class:`DispatchFailure` if the payload is too large for Postgres.
    """
    raw = json.dumps(event.to_envelope(), default=str, separators=(",", ":"))
    if len(raw.encode("utf-8")) > MAX_NOTIFY_BYTES:
        raise DispatchFailure(
            f"Event '{event.type}' is {len(raw)} bytes — too large for NOTIFY"
        )
    return raw


def decode_envelope(raw_payload: str) -> BroadcastEvent | None:
    """Parse a NOTIFY payload; None (with a warning) if it is malformed."""
    try:
        data = json.loads(raw_payload)
        return BroadcastEvent.from_envelope(data)
    except (json.JSONDecodeError, TypeError, ValueError, AttributeError):
        logger.warning("Invalid event payload on '%s': %s", EVENT_NOTIFY_CHANNEL, raw_payload)
        return None


def _backoff_delay(attempt: int) -> float:
    """Exponential delay for the *attempt*-th consecutive failure, plus up to
    50% jitter so several workers do not reconnect in lockstep."""
    delay = min(RECONNECT_BASE_DELAY * 2 ** (attempt - 1), RECONNECT_MAX_DELAY)
    return delay + random.uniform(0, delay / 2)


class PgNotifyBridge:
    """Postgres-backed :class:`~agora.services.broadcaster.EventTransport`."""

    def __init__(self, engine: Engine, dispatcher: BroadcastDispatcher) -> None:
        self._engine = engine
        self._dispatcher = dispatcher
        self._connected = False
        self._gave_up = False
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    # -------------------------------------------------------------------
    # Sending
    # -------------------------------------------------------------------
    def send(self, event: BroadcastEvent) -> None:
        payload = encode_envelope(event)
        with self._engine.connect() as conn:
            conn.execute(
                text("SELECT pg_notify(:channel, :payload)"),
                {"channel": EVENT_NOTIFY_CHANNEL, "payload": payload},
            )
            conn.commit()

    # -------------------------------------------------------------------
    # Receiving
    # -------------------------------------------------------------------
    def handle_notify(self, raw_payload: str) -> None:
        event = decode_envelope(raw_payload)
        if event is not None:
            self._dispatcher.deliver(event)

    @property
    def listener_healthy(self) -> bool:
        """True while the LISTEN connection is up."""
        return self._connected and not self._gave_up

    @property
    def listener_failed(self) -> bool:
        """True once reconnecting has been abandoned."""
        return self._gave_up

    def start_listener(self) -> None:
        """LISTEN on :data:`EVENT_NOTIFY_CHANNEL` from a daemon thread.

        Lost connections are re-opened after :func:`_backoff_delay`; after
        ``RECONNECT_MAX_ATTEMPTS`` failures in a row the bridge stops
        listening and reports ``listener_failed``.
        """
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run_listener, daemon=True, name="agora-pg-listener"
        )
        self._thread.start()
        logger.info("Broadcast listener started on '%s'", EVENT_NOTIFY_CHANNEL)

    def stop_listener(self) -> None:
        self._stop.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=5)
            logger.info("Broadcast listener stopped")

    def _dsn(self) -> str:
        # str(engine.url) masks the password; psycopg2 needs the real one.
        url = self._engine.url.set(drivername="postgresql")
        return url.render_as_string(hide_password=False)

    def _run_listener(self) -> None:
        failures = 0

        def reset() -> None:
            nonlocal failures
            failures = 0

        while not self._stop.is_set():
            try:
                self._listen_once(on_connected=reset)
            except Exception:
                self._connected = False
                failures += 1
                if failures >= RECONNECT_MAX_ATTEMPTS:
                    self._gave_up = True
                    logger.critical(
                        "Broadcast listener gave up after %d failed connections; "
                        "events from other workers will not be delivered here",
                        failures,
                    )
                    return
                delay = _backoff_delay(failures)
                logger.exception(
                    "Broadcast listener lost its connection (%d/%d); retrying in %.1fs",
                    failures, RECONNECT_MAX_ATTEMPTS, delay,
                )
                if self._stop.wait(timeout=delay):
                    return

    def _listen_once(self, on_connected) -> None:
        """Hold one LISTEN connection until stopped or it fails."""
        import psycopg2
        import psycopg2.extensions

        conn = psycopg2.connect(self._dsn())
        try:
            conn.set_isolation_level(psycopg2.extensions.ISOLATION_LEVEL_AUTOCOMMIT)
            with conn.cursor() as cur:
                cur.execute(f"LISTEN {EVENT_NOTIFY_CHANNEL};")
            self._connected = True
            on_connected()

            while not self._stop.is_set():
                readable, _, _ = _select.select([conn], [], [], POLL_INTERVAL)
                if readable:
                    conn.poll()
                    self._drain(conn)
        finally:
            self._connected = False
            try:
                conn.close()
            except Exception:
                logger.debug("Closing the LISTEN connection failed", exc_info=True)

    def _drain(self, conn) -> None:
        while conn.notifies:
            note = conn.notifies.pop(0)
            try:
                self.handle_notify(note.payload or "")
            except Exception:
                logger.exception("Failed to deliver NOTIFY payload: %s", note.payload)
