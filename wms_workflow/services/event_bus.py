"""
Event Bus: in-process publish/subscribe hub.

Document services publish ``SystemEvent``s; the rule engine is one subscriber
among others (audit trail, realtime push).  Subscribers are isolated from
each other and from the publisher: an exception in one is logged and the
rest still run.

Dispatch modes (``EVENT_DISPATCH_MODE``):
    - ``sync``:  subscribers run in the publisher's thread, in order, each in
                 a fresh app context with its own database session.
    - ``async``: N single-thread partitions; an event goes to the partition
                 chosen by a stable hash of ``(entity_type, entity_id)``, so
                 events for one document are handled in publish order while
                 different documents are handled in parallel.

Usage:
    bus = EventBus(app, mode="async", worker_count=4)
    bus.subscribe("document:status_changed", engine.on_event, name="rule-engine")
    bus.subscribe("*", audit_hook)
    bus.publish(SystemEvent(type="document:status_changed", entity_type="mrrv",
                            entity_id="42", action="status_change",
                            payload={"from": "received", "to": "stored"}))
"""

from __future__ import annotations

import logging
import queue
import threading
import uuid
import zlib
from dataclasses import dataclass, field
from typing import Any, Callable

from wms_workflow.utils.helpers import utc_now

logger = logging.getLogger(__name__)

WILDCARD = "*"
_STOP = object()


# ═══════════════════════════════════════════════════════════════════════════
#  Event
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class SystemEvent:
    """A domain event.  ``id`` is the identity used for idempotency checks."""
    type: str
    entity_type: str = ""
    entity_id: str = ""
    action: str = ""
    payload: dict = field(default_factory=dict)
    performed_by_id: str | None = None
    timestamp: str = field(default_factory=lambda: utc_now().isoformat())
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self):
        self.entity_id = "" if self.entity_id is None else str(self.entity_id)
        if self.payload is None:
            self.payload = {}

    @property
    def partition_key(self) -> str:
        return f"{self.entity_type}:{self.entity_id}"

    def to_context(self) -> dict:
        """Evaluation payload for condition trees (``payload.to``, ``entityType``...)."""
        return {
            "id": self.id,
            "type": self.type,
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "action": self.action,
            "performedById": self.performed_by_id,
            "timestamp": self.timestamp,
            "payload": self.payload,
        }

    def to_dict(self) -> dict:
        return self.to_context()

    @classmethod
    def from_dict(cls, data: dict) -> "SystemEvent":
        """Build from snake_case or camelCase keys (API bodies, tests)."""
        def pick(*keys, default=None):
            for key in keys:
                if key in data and data[key] is not None:
                    return data[key]
            return default

        kwargs = {
            "type": pick("type", default=""),
            "entity_type": pick("entity_type", "entityType", default=""),
            "entity_id": pick("entity_id", "entityId", default=""),
            "action": pick("action", default=""),
            "payload": pick("payload", default={}),
            "performed_by_id": pick("performed_by_id", "performedById"),
        }
        timestamp = pick("timestamp")
        if timestamp:
            kwargs["timestamp"] = str(timestamp)
        event_id = pick("id", "event_id", "eventId")
        if event_id:
            kwargs["id"] = str(event_id)
        return cls(**kwargs)


@dataclass(frozen=True)
class Subscription:
    event_type: str
    handler: Callable[[SystemEvent], Any]
    name: str


# ═══════════════════════════════════════════════════════════════════════════
#  Bus
# ═══════════════════════════════════════════════════════════════════════════

class EventBus:
    def __init__(self, app=None, *, mode: str = "sync", worker_count: int = 4):
        if mode not in ("sync", "async"):
            raise ValueError(f"unknown dispatch mode {mode!r}")
        self.app = app
        self.mode = mode
        self._lock = threading.Lock()
        # Copy-on-write: publishers read the current tuple without locking
        self._subscribers: dict[str, tuple[Subscription, ...]] = {}
        self._queues: list[queue.Queue] = []
        self._workers: list[threading.Thread] = []
        if mode == "async":
            self._start_workers(max(1, worker_count))

    # ── subscription ──────────────────────────────────────────────────────

    def subscribe(self, event_type: str, handler: Callable[[SystemEvent], Any],
                  name: str | None = None) -> Subscription:
        sub = Subscription(event_type=event_type, handler=handler,
                           name=name or getattr(handler, "__qualname__", repr(handler)))
        with self._lock:
            current = dict(self._subscribers)
            current[event_type] = current.get(event_type, ()) + (sub,)
            self._subscribers = current
        logger.debug("Subscribed %s to %s", sub.name, event_type)
        return sub

    def unsubscribe(self, subscription: Subscription) -> bool:
        with self._lock:
            existing = self._subscribers.get(subscription.event_type, ())
            remaining = tuple(s for s in existing if s is not subscription)
            if len(remaining) == len(existing):
                return False
            current = dict(self._subscribers)
            if remaining:
                current[subscription.event_type] = remaining
            else:
                current.pop(subscription.event_type, None)
            self._subscribers = current
        return True

    def subscribers_for(self, event_type: str) -> tuple[Subscription, ...]:
        snapshot = self._subscribers
        return snapshot.get(event_type, ()) + snapshot.get(WILDCARD, ())

    # ── publishing ────────────────────────────────────────────────────────

    def publish(self, event: SystemEvent | dict) -> SystemEvent | None:
        """Fire and forget.  Never raises to the publisher."""
        try:
            if isinstance(event, dict):
                event = SystemEvent.from_dict(event)
            logger.debug("Publish %s %s", event.type, event.partition_key,
                         extra={"event_type": event.type, "event_id": event.id})
            if self.mode == "sync":
                self._dispatch(event)
            else:
                self._queues[self._partition(event)].put(event)
            return event
        except Exception:
            logger.exception("Event publish failed")
            return None

    def _partition(self, event: SystemEvent) -> int:
        return zlib.crc32(event.partition_key.encode("utf-8")) % len(self._queues)

    def _dispatch(self, event: SystemEvent) -> None:
        for sub in self.subscribers_for(event.type):
            try:
                if self.app is not None:
                    # own app context, hence own db session; the publisher's
                    # pending work stays out of the subscriber's transaction
                    with self.app.app_context():
                        sub.handler(event)
                else:
                    sub.handler(event)
            except Exception:
                logger.exception(
                    "Subscriber %s failed on %s", sub.name, event.type,
                    extra={"event_type": event.type, "event_id": event.id,
                           "entity_type": event.entity_type, "entity_id": event.entity_id},
                )

    # ── async workers ─────────────────────────────────────────────────────

    def _start_workers(self, count: int) -> None:
        for i in range(count):
            q: queue.Queue = queue.Queue()
            worker = threading.Thread(target=self._worker_loop, args=(q,),
                                      name=f"wms-event-{i}", daemon=True)
            self._queues.append(q)
            self._workers.append(worker)
            worker.start()

    def _worker_loop(self, q: queue.Queue) -> None:
        while True:
            event = q.get()
            try:
                if event is _STOP:
                    return
                self._dispatch(event)
            finally:
                q.task_done()

    def join(self) -> None:
        """Block until every queued event has been dispatched."""
        for q in self._queues:
            q.join()

    def shutdown(self, timeout: float = 5.0) -> None:
        for q in self._queues:
            q.put(_STOP)
        for worker in self._workers:
            worker.join(timeout=timeout)
        self._queues.clear()
        self._workers.clear()
