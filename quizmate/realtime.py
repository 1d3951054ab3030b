"""
In-process realtime change feed.

Write paths publish a ChangeEvent after they commit; readers subscribe by
table plus an optional equality filter on the row (``{"competition_id": 7}``)
and get a callback per matching change. Delivery is notification only: the
database stays the source of truth and subscribers re-fetch what they need.

Every subscription must be closed by its owner; ``subscriber_count`` exists so
leaks are observable.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional, Set

from sqlmodel import SQLModel

logger = logging.getLogger(__name__)

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"
ALL_EVENTS = frozenset({INSERT, UPDATE, DELETE})


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    type: str
    record: Dict[str, Any]
    old_record: Optional[Dict[str, Any]] = None


class Subscription:
    """Handle returned by ChangeFeed.subscribe; ``close()`` is idempotent."""

    def __init__(
        self,
        feed: "ChangeFeed",
        table: str,
        callback: Callable[[ChangeEvent], None],
        filter: Optional[Dict[str, Any]] = None,
        events: Iterable[str] = ALL_EVENTS
    ):
        self._feed = feed
        self.table = table
        self.callback = callback
        self.filter = dict(filter or {})
        self.events = frozenset(events)
        self.closed = False

    def matches(self, event: ChangeEvent) -> bool:
        if event.table != self.table or event.type not in self.events:
            return False
        # DELETE events only carry the old row
        row = event.record or event.old_record or {}
        return all(row.get(key) == value for key, value in self.filter.items())

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._feed._remove(self)


class ChangeFeed:
    def __init__(self):
        self._subscriptions: Dict[str, Set[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(
        self,
        table: str,
        callback: Callable[[ChangeEvent], None],
        filter: Optional[Dict[str, Any]] = None,
        events: Iterable[str] = ALL_EVENTS
    ) -> Subscription:
        subscription = Subscription(self, table, callback, filter, events)
        with self._lock:
            self._subscriptions.setdefault(table, set()).add(subscription)
        logger.debug("Subscribed to %s with filter %s", table, subscription.filter)
        return subscription

    def publish(
        self,
        table: str,
        event_type: str,
        record: Dict[str, Any],
        old_record: Optional[Dict[str, Any]] = None
    ) -> int:
        """Deliver a change to every matching subscriber. Returns the delivery count."""
        event = ChangeEvent(table=table, type=event_type, record=record, old_record=old_record)

        # Copy so callbacks may subscribe or unsubscribe while we iterate
        with self._lock:
            subscriptions = list(self._subscriptions.get(table, ()))

        delivered = 0
        for subscription in subscriptions:
            if subscription.closed or not subscription.matches(event):
                continue
            try:
                subscription.callback(event)
            except Exception:
                # One broken listener must not starve the others
                logger.exception("Change listener for %s failed", table)
            delivered += 1
        return delivered

    def publish_row(self, event_type: str, row: SQLModel) -> int:
        """Publish a change for a table model instance."""
        record = row.model_dump()
        if event_type == DELETE:
            return self.publish(row.__tablename__, event_type, {}, old_record=record)
        return self.publish(row.__tablename__, event_type, record)

    def subscriber_count(self, table: Optional[str] = None) -> int:
        with self._lock:
            if table is not None:
                return len(self._subscriptions.get(table, ()))
            return sum(len(subs) for subs in self._subscriptions.values())

    def close(self) -> None:
        """Drop every subscription (application shutdown)."""
        with self._lock:
            subscriptions = [sub for subs in self._subscriptions.values() for sub in subs]
            self._subscriptions.clear()
        for subscription in subscriptions:
            subscription.closed = True

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            subs = self._subscriptions.get(subscription.table)
            if subs is not None:
                subs.discard(subscription)
                if not subs:
                    del self._subscriptions[subscription.table]
