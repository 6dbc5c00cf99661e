"""Fan-out of queue events to dashboards, displays and receptionists.

``publish`` only enqueues; a single dispatcher thread delivers events in
publish order, so every subscriber sees one unit's events in the order they
happened.  Services publish after their transaction commits.  Events are a
notification, not state: a subscriber that missed some re-reads the tickets.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import cache
from models import utcnow

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    ticket_created = "ticket_created"
    ticket_status_changed = "ticket_status_changed"
    system_reset = "system_reset"


@dataclass
class QueueEvent:
    type: EventType
    unit_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    at: str = field(default_factory=lambda: utcnow().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": EventType(self.type).value,
            "unit_id": self.unit_id,
            "data": self.payload,
            "timestamp": self.at,
        }


Handler = Callable[[QueueEvent], None]


@dataclass
class _Subscription:
    event_type: Optional[EventType]
    unit_id: Optional[str]
    handler: Handler

    def wants(self, event: QueueEvent) -> bool:
        if self.event_type is not None and self.event_type != event.type:
            return False
        return self.unit_id is None or self.unit_id == event.unit_id


class Channel:
    """Buffered per-unit feed for long-lived consumers such as SSE clients."""

    def __init__(self, broadcaster: "EventBroadcaster", unit_id: str, maxsize: int = 1000):
        self.unit_id = unit_id
        self._queue: "queue.Queue[QueueEvent]" = queue.Queue(maxsize=maxsize)
        self._broadcaster = broadcaster
        self._unsubscribe = broadcaster.subscribe(None, self._put, unit_id=unit_id)

    def _put(self, event: QueueEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            # Slow consumer: drop the oldest so the newest state still arrives.
            logger.warning("Channel for unit %s is full; dropping oldest event", self.unit_id)
            try:
                self._queue.get_nowait()
            except queue.Empty:
                pass
            self._queue.put_nowait(event)

    def get(self, timeout: Optional[float] = None) -> Optional[QueueEvent]:
        try:
            if timeout == 0:
                return self._queue.get_nowait()
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def get_message(self, timeout: Optional[float] = 0) -> Optional[Dict[str, Any]]:
        """Next event in wire form, same shape as the Redis feed delivers."""
        event = self.get(timeout=timeout)
        return event.to_dict() if event is not None else None

    def close(self) -> None:
        self._unsubscribe()


class EventBroadcaster:
    def __init__(self, asynchronous: bool = True, mirror_to_redis: bool = True):
        self.asynchronous = asynchronous
        self.mirror_to_redis = mirror_to_redis
        self._subscriptions: List[_Subscription] = []
        self._lock = threading.Lock()
        self._queue: "queue.Queue[Optional[QueueEvent]]" = queue.Queue()
        self._pending = 0
        self._idle = threading.Condition()
        self._thread: Optional[threading.Thread] = None
        if asynchronous:
            self._thread = threading.Thread(target=self._run, name="event-broadcaster", daemon=True)
            self._thread.start()

    def subscribe(
        self,
        event_type: Optional[EventType],
        handler: Handler,
        unit_id: Optional[str] = None,
    ) -> Callable[[], None]:
        """Register ``handler``; ``None`` for event_type means every type.

        Returns a callable that removes the subscription.
        """
        sub = _Subscription(
            EventType(event_type) if event_type is not None else None,
            unit_id,
            handler,
        )
        with self._lock:
            self._subscriptions.append(sub)

        def unsubscribe() -> None:
            with self._lock:
                if sub in self._subscriptions:
                    self._subscriptions.remove(sub)

        return unsubscribe

    def open_channel(self, unit_id: str) -> Channel:
        return Channel(self, unit_id)

    def publish(self, event: QueueEvent) -> None:
        if not self.asynchronous:
            self._deliver(event)
            return
        with self._idle:
            self._pending += 1
        self._queue.put(event)

    def drain(self, timeout: float = 5.0) -> bool:
        """Block until every published event has been delivered."""
        deadline = time.monotonic() + timeout
        with self._idle:
            while self._pending:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._idle.wait(remaining)
        return True

    def close(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            self._queue.put(None)
            self._thread.join(timeout=5)

    def _run(self) -> None:
        while True:
            event = self._queue.get()
            if event is None:
                break
            try:
                self._deliver(event)
            finally:
                with self._idle:
                    self._pending -= 1
                    self._idle.notify_all()

    def _deliver(self, event: QueueEvent) -> None:
        with self._lock:
            targets = [s for s in self._subscriptions if s.wants(event)]
        for sub in targets:
            try:
                sub.handler(event)
            except Exception:
                logger.exception("Subscriber failed handling %s for unit %s", event.type, event.unit_id)
        if self.mirror_to_redis:
            cache.publish_event(event.unit_id, event.to_dict())
