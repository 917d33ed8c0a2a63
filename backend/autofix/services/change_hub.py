import logging
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional
from uuid import uuid4

from autofix.models import ChangeEvent
from autofix.services.filters import Filters, row_matches

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[ChangeEvent], None]


@dataclass
class Subscription:
    collection: str
    event_types: FrozenSet[str]
    filters: Dict[str, object]
    callback: ChangeCallback
    id: str = field(default_factory=lambda: f"sub_{uuid4().hex[:10]}")
    active: bool = True

    def wants(self, event: ChangeEvent) -> bool:
        return (
            self.active
            and event.collection == self.collection
            and event.event_type in self.event_types
            and row_matches(event.new, self.filters)
        )

    def deliver(self, event: ChangeEvent) -> None:
        if self.active:
            self.callback(event)


def make_subscription(
    collection: str,
    event_types: Iterable[str],
    filters: Optional[Filters],
    callback: ChangeCallback,
) -> Subscription:
    return Subscription(
        collection=collection,
        event_types=frozenset(event.upper() for event in event_types),
        filters=dict(filters or {}),
        callback=callback,
    )


class ChangeHub:
    """Fans change events out to every subscription whose filter matches."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._subscriptions: Dict[str, Subscription] = {}

    def subscribe(
        self,
        collection: str,
        event_types: Iterable[str],
        filters: Optional[Filters],
        callback: ChangeCallback,
    ) -> Subscription:
        subscription = make_subscription(collection, event_types, filters, callback)
        with self._lock:
            self._subscriptions[subscription.id] = subscription
        logger.debug("Subscription %s opened on %s %s", subscription.id, collection, subscription.filters)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.active = False
        with self._lock:
            self._subscriptions.pop(subscription.id, None)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, event: ChangeEvent) -> int:
        with self._lock:
            targets: List[Subscription] = [sub for sub in self._subscriptions.values() if sub.wants(event)]
        for subscription in targets:
            try:
                subscription.deliver(event)
            except Exception:
                logger.exception("Change subscriber %s failed", subscription.id)
        return len(targets)
