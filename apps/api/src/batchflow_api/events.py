from __future__ import annotations

import logging
import threading
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from batchflow_api.schemas import EventRead, EventType
from batchflow_api.store import InMemoryStore

logger = logging.getLogger(__name__)

EventHandler = Callable[[EventRead], None]


@dataclass(frozen=True)
class _Subscription:
    name: str
    handler: EventHandler
    event_types: frozenset[EventType] | None

    def accepts(self, event: EventRead) -> bool:
        return self.event_types is None or event.event_type in self.event_types


class EventBus:
    """Delivers the store's event log to in-process subscribers.

    The log is written inside the transaction that caused the event, and the bus
    only reads committed entries. Each subscriber owns a persisted cursor, so
    delivery is at-least-once and in log order. A handler that raises is retried on
    the next drain. After `max_attempts` failures the event is logged as dead and
    skipped for that subscriber.
    """

    def __init__(self, store: InMemoryStore, *, max_attempts: int = 3, page_size: int = 100) -> None:
        self._store = store
        self._max_attempts = max(1, max_attempts)
        self._page_size = page_size
        self._subscriptions: list[_Subscription] = []
        self._attempts: Counter[tuple[str, int]] = Counter()
        self._drain_lock = threading.Lock()
        self._drain_owner: int | None = None

    def subscribe(
        self,
        name: str,
        handler: EventHandler,
        *,
        event_types: Iterable[EventType] | None = None,
    ) -> None:
        if any(item.name == name for item in self._subscriptions):
            raise ValueError(f"subscriber '{name}' is already registered")
        if self._store.get_cursor(name) is None:
            self._store.set_cursor(name, self._store.last_event_id())
        types = frozenset(event_types) if event_types is not None else None
        self._subscriptions.append(_Subscription(name=name, handler=handler, event_types=types))
        logger.info("event_bus event=subscribed subscriber=%s event_types=%s", name, sorted(types or []))

    def publish_pending(self) -> int:
        """Drain committed events to every subscriber; returns the number of successful hand-offs.

        Only one thread drains at a time. A caller that finds a drain in progress
        returns 0 at once; the running drain picks up whatever was committed meanwhile.
        """
        if self._drain_owner == threading.get_ident():
            return 0

        delivered_total = 0
        while self._drain_lock.acquire(blocking=False):
            try:
                self._drain_owner = threading.get_ident()
                delivered, tail = self._drain()
                delivered_total += delivered
            finally:
                self._drain_owner = None
                self._drain_lock.release()
            # events committed by callers turned away during the drain
            if self._store.last_event_id() <= tail:
                break
        self._store.compact_events()
        return delivered_total

    def _drain(self) -> tuple[int, int]:
        delivered_total = 0
        stalled: set[str] = set()
        while True:
            tail = self._store.last_event_id()
            advanced = 0
            for subscription in list(self._subscriptions):
                if subscription.name in stalled:
                    continue
                delivered, moved, stalled_now = self._drain_subscription(subscription)
                if stalled_now:
                    stalled.add(subscription.name)
                delivered_total += delivered
                advanced += moved
            if advanced == 0:
                return delivered_total, tail

    def _drain_subscription(self, subscription: _Subscription) -> tuple[int, int, bool]:
        cursor = self._store.get_cursor(subscription.name) or 0
        start = cursor
        delivered = 0
        try:
            while True:
                events = self._store.list_events(after_id=cursor, limit=self._page_size)
                if not events:
                    break
                for event in events:
                    if subscription.accepts(event):
                        outcome = self._hand_off(subscription, event)
                        if outcome == "retry":
                            return delivered, cursor - start, True
                        if outcome == "delivered":
                            delivered += 1
                    cursor = event.id
        finally:
            if cursor != start:
                self._store.set_cursor(subscription.name, cursor)
        return delivered, cursor - start, False

    def _hand_off(self, subscription: _Subscription, event: EventRead) -> str:
        key = (subscription.name, event.id)
        try:
            subscription.handler(event)
        except Exception as exc:  # noqa: BLE001
            self._attempts[key] += 1
            attempts = self._attempts[key]
            if attempts >= self._max_attempts:
                del self._attempts[key]
                logger.error(
                    "event_bus event=dead_letter subscriber=%s event_id=%s event_type=%s attempts=%s error=%s",
                    subscription.name,
                    event.id,
                    event.event_type.value,
                    attempts,
                    exc,
                )
                return "dead"
            logger.warning(
                "event_bus event=handler_failed subscriber=%s event_id=%s attempts=%s error=%s",
                subscription.name,
                event.id,
                attempts,
                exc,
            )
            return "retry"
        self._attempts.pop(key, None)
        return "delivered"
