"""
In-process publish/subscribe channel.

The bus is a notification fabric, not a transaction log: delivery is
synchronous, per-topic ordered, and a failing subscriber never affects
the publisher or the other subscribers.
"""

from __future__ import annotations

import itertools
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, DefaultDict, List

import structlog

from ..data.models.events import Event

logger = structlog.get_logger()

Handler = Callable[[Event], None]


@dataclass(frozen=True)
class Subscription:
    """Handle returned by ``subscribe``; pass it to ``unsubscribe``."""

    id: int
    topic: str
    handler: Handler


class EventBus:
    """Synchronous fan-out of events to topic subscribers.

    Subscribing to ``EventBus.WILDCARD`` receives every topic. For a
    single topic, delivery to all subscribers follows publish order even
    with concurrent publishers; there is no ordering across topics.
    """

    WILDCARD = "*"

    def __init__(self) -> None:
        self._subscriptions: DefaultDict[str, List[Subscription]] = defaultdict(list)
        self._registry_lock = threading.Lock()
        # Serialises every fan-out; reentrant so handlers may publish to any topic
        self._delivery_lock = threading.RLock()
        self._ids = itertools.count(1)
        self.failed_deliveries = 0

    def subscribe(self, topic: str, handler: Handler) -> Subscription:
        subscription = Subscription(id=next(self._ids), topic=topic, handler=handler)
        with self._registry_lock:
            self._subscriptions[topic].append(subscription)
        logger.debug("bus_subscribed", topic=topic, subscription_id=subscription.id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        """Remove a subscription. Returns False if it was already gone."""
        with self._registry_lock:
            handlers = self._subscriptions.get(subscription.topic, [])
            for i, existing in enumerate(handlers):
                if existing.id == subscription.id:
                    del handlers[i]
                    return True
        return False

    def subscriber_count(self, topic: str) -> int:
        with self._registry_lock:
            return len(self._subscriptions.get(topic, []))

    def publish(self, event: Event) -> int:
        """Deliver ``event`` to current subscribers of its topic.

        Returns:
            Number of handlers that ran without raising
        """
        with self._delivery_lock:
            with self._registry_lock:
                targets = list(self._subscriptions.get(event.topic, []))
                targets.extend(self._subscriptions.get(self.WILDCARD, []))

            delivered = 0
            for subscription in targets:
                try:
                    subscription.handler(event)
                    delivered += 1
                except Exception:
                    self.failed_deliveries += 1
                    logger.exception(
                        "bus_subscriber_failed",
                        topic=event.topic,
                        event_id=event.id,
                        workflow_id=event.workflow_id,
                        subscription_id=subscription.id,
                    )
        return delivered
