"""Per-owner publish/subscribe fan-out for real-time clients."""

from __future__ import annotations

import queue
import threading
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from loguru import logger

from flowwatch.shared.timeutil import to_iso, utc_now


class EventKind(str, Enum):
    INSTANCE_STATUS_CHANGED = "INSTANCE_STATUS_CHANGED"
    WORKFLOW_DELTA = "WORKFLOW_DELTA"
    ANALYSIS_COMPLETED = "ANALYSIS_COMPLETED"


@dataclass(frozen=True)
class Event:
    owner_id: str
    kind: EventKind
    payload: dict[str, Any]
    published_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind.value,
            "owner_id": self.owner_id,
            "payload": self.payload,
            "published_at": to_iso(self.published_at),
        }


class Subscription:
    """One real-time connection's channel; bounded so slow readers never block publishers."""

    def __init__(self, broadcaster: "EventBroadcaster", owner_id: str, max_pending: int = 100) -> None:
        self.id = uuid.uuid4().hex
        self.owner_id = owner_id
        self.dropped = 0
        self.closed = False
        self._broadcaster = broadcaster
        self._queue: queue.Queue[Event] = queue.Queue(maxsize=max(1, int(max_pending)))

    def offer(self, event: Event) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self.dropped += 1
            return False
        return True

    def get(self, timeout: float | None = None) -> Event | None:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[Event]:
        events: list[Event] = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def close(self) -> None:
        if not self.closed:
            self._broadcaster.unsubscribe(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class EventBroadcaster:
    """Best-effort delivery: no persistence or replay for disconnected subscribers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: dict[str, dict[str, Subscription]] = defaultdict(dict)

    def subscribe(self, owner_id: str, max_pending: int = 100) -> Subscription:
        subscription = Subscription(self, owner_id, max_pending=max_pending)
        with self._lock:
            self._subscriptions[owner_id][subscription.id] = subscription
        logger.debug("Subscriber attached", owner_id=owner_id, subscription_id=subscription.id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            owned = self._subscriptions.get(subscription.owner_id)
            if owned is not None:
                owned.pop(subscription.id, None)
                if not owned:
                    self._subscriptions.pop(subscription.owner_id, None)
            subscription.closed = True
        logger.debug(
            "Subscriber detached",
            owner_id=subscription.owner_id,
            subscription_id=subscription.id,
            dropped=subscription.dropped,
        )

    def publish(self, owner_id: str, kind: EventKind, payload: dict[str, Any]) -> int:
        event = Event(owner_id=owner_id, kind=kind, payload=payload)
        with self._lock:
            targets = list(self._subscriptions.get(owner_id, {}).values())
        delivered = 0
        for subscription in targets:
            if subscription.offer(event):
                delivered += 1
            else:
                logger.warning(
                    "Dropped event for slow subscriber",
                    owner_id=owner_id,
                    subscription_id=subscription.id,
                    kind=kind.value,
                )
        return delivered

    def subscriber_count(self, owner_id: str | None = None) -> int:
        with self._lock:
            if owner_id is not None:
                return len(self._subscriptions.get(owner_id, {}))
            return sum(len(owned) for owned in self._subscriptions.values())
