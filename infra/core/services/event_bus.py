"""
EventBus: thread-safe, in-process pub/sub with bounded replay.

The sequencer emits lifecycle events (registration, action, status)
here.  The bus folds each one into a RuntimeSnapshot and fans it out to
every SSE client of the control panel.  A client that reconnects with
``Last-Event-Id`` gets the events it missed from the ring buffer; one
that was away longer than the buffer reaches gets a ``state:snapshot``
instead.

Thread safety
─────────────
- ``_lock`` guards the sequence counter, ring buffer, subscriber list
  and snapshot.
- Every subscriber owns a bounded ``queue.Queue``.  Publishers push into
  all queues under the lock; a subscriber whose queue is full is
  dropped rather than blocking the publisher.

Envelope (v1)
─────────────
::

    {"v": 1, "ts": 1739648400.1, "seq": 47,
     "type": "service:status", "key": "nats", "data": {...}}

``type`` is ``<domain>:<action>``; ``key`` is the service ID or "".
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections import deque
from typing import Any, Generator

from infra.core.models.events import LifecycleEvent
from infra.core.models.state import RuntimeSnapshot, ServiceRuntimeState

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

HEARTBEAT = "sys:heartbeat"
READY = "sys:ready"
SNAPSHOT = "state:snapshot"


def _envelope(seq: int, event_type: str, key: str, data: dict, ts: float | None) -> dict[str, Any]:
    return {
        "v": SCHEMA_VERSION,
        "ts": time.time() if ts is None else ts,
        "seq": seq,
        "type": event_type,
        "key": key,
        "data": data,
    }


class EventBus:
    """Lifecycle event hub shared by the sequencer and the web panel.

    Args:
        buffer_size: Events kept for replay (heartbeats excluded).
        subscriber_queue_size: Backlog allowed per SSE client before it
            is dropped.
    """

    def __init__(self, *, buffer_size: int = 500, subscriber_queue_size: int = 200) -> None:
        self._lock = threading.Lock()
        self._seq = 0
        self._buffer: deque[dict] = deque(maxlen=buffer_size)
        self._subscribers: list[queue.Queue[dict]] = []
        self._queue_size = subscriber_queue_size
        self._snapshot = RuntimeSnapshot()
        self.instance_id = time.strftime("%Y-%m-%dT%H:%M:%S")

    @property
    def seq(self) -> int:
        with self._lock:
            return self._seq

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    # ── Publishing ──────────────────────────────────────────────

    def publish(
        self,
        event_type: str,
        *,
        key: str = "",
        data: dict[str, Any] | None = None,
        ts: float | None = None,
    ) -> dict:
        """Broadcast a raw event; returns the envelope with its ``seq``."""
        with self._lock:
            event = self._broadcast(event_type, key, data or {}, ts)
        if event_type != HEARTBEAT:
            logger.debug("event %s key=%s", event_type, key or "-")
        return event

    def emit(self, event: LifecycleEvent) -> dict:
        """Fold a lifecycle event into the snapshot, then broadcast it."""
        with self._lock:
            self._snapshot.apply(event)
            envelope = self._broadcast(event.event_type, event.id, event.payload(), event.ts)
        logger.debug("event %s key=%s", event.event_type, event.id)
        return envelope

    def _broadcast(self, event_type: str, key: str, data: dict, ts: float | None) -> dict:
        # _lock held
        self._seq += 1
        event = _envelope(self._seq, event_type, key, data, ts)
        if event_type != HEARTBEAT:
            self._buffer.append(event)

        alive = []
        for q in self._subscribers:
            try:
                q.put_nowait(event)
                alive.append(q)
            except queue.Full:
                logger.info("Dropped SSE subscriber with a full queue")
        self._subscribers = alive
        return event

    def _private(self, event_type: str, data: dict) -> dict:
        """Envelope sent to one client only; consumes a sequence number."""
        with self._lock:
            self._seq += 1
            return _envelope(self._seq, event_type, "", data, None)

    # ── Reading ─────────────────────────────────────────────────

    def replay(self, since: int = 0) -> list[dict]:
        """Buffered events with ``seq > since``."""
        with self._lock:
            return [e for e in self._buffer if e["seq"] > since]

    def snapshot(self) -> RuntimeSnapshot:
        with self._lock:
            return self._snapshot.model_copy(deep=True)

    def service_state(self, service_id: str) -> ServiceRuntimeState | None:
        with self._lock:
            entry = self._snapshot.services.get(service_id)
            return entry.model_copy() if entry else None

    # ── Subscribing ─────────────────────────────────────────────

    def subscribe(
        self,
        *,
        since: int = 0,
        heartbeat_interval: float = 30.0,
    ) -> Generator[dict, None, None]:
        """Event stream for one SSE client; blocks between events.

        The first event is always ``sys:ready``.  It is followed by a
        ``state:snapshot`` unless ``since`` is still covered by the ring
        buffer, in which case the missed events are replayed instead.
        ``sys:heartbeat`` is sent to this client alone after
        ``heartbeat_interval`` seconds of silence.
        """
        q, replayed = self._attach(since)
        logger.info(
            "SSE client connected (since=%d, replay=%s, subscribers=%d)",
            since, replayed, self.subscriber_count,
        )
        try:
            with self._lock:
                services = sorted(self._snapshot.services)
            yield self._private(READY, {"instance_id": self.instance_id, "services": services})

            if not replayed:
                with self._lock:
                    rows = [s.model_dump(mode="json") for s in self._snapshot.ordered()]
                yield self._private(SNAPSHOT, {"services": rows})

            while True:
                try:
                    yield q.get(timeout=heartbeat_interval)
                except queue.Empty:
                    yield self._private(HEARTBEAT, {})
        finally:
            self._detach(q)

    def _attach(self, since: int) -> tuple[queue.Queue[dict], bool]:
        """Register a subscriber queue, pre-filled with missed events when possible."""
        q: queue.Queue[dict] = queue.Queue(maxsize=self._queue_size)
        replayed = False
        with self._lock:
            oldest = self._buffer[0]["seq"] if self._buffer else None
            if since > 0 and oldest is not None and since >= oldest:
                missed = [e for e in self._buffer if e["seq"] > since]
                if len(missed) <= self._queue_size:
                    for event in missed:
                        q.put_nowait(event)
                    replayed = True
            self._subscribers.append(q)
        return q, replayed

    def _detach(self, q: queue.Queue[dict]) -> None:
        with self._lock:
            if q in self._subscribers:
                self._subscribers.remove(q)
            remaining = len(self._subscribers)
        logger.info("SSE client disconnected (subscribers=%d)", remaining)
