"""
Change broadcasting to live subscribers.

The engine only needs ``publish(account_id, event_kind, payload)``. Delivery
is best-effort and at-least-once; the engine never waits for
acknowledgment.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any, Protocol

from mailbox_sync.sync.models import BroadcastEvent

logger = logging.getLogger(__name__)

# Event kinds
COUNT_UPDATED = "count_updated"
MAILBOX_CHANGED = "mailbox_changed"

Subscriber = Callable[[BroadcastEvent], None]


class Broadcaster(Protocol):
    """Publish interface the engine calls into."""

    def publish(self, account_id: str, event_kind: str, payload: dict[str, Any]) -> None: ...


class LoggingBroadcaster:
    """Broadcaster that only records events in the log."""

    def publish(self, account_id: str, event_kind: str, payload: dict[str, Any]) -> None:
        logger.info(f"Broadcast {event_kind} for account {account_id}: {payload}")


class SubscriberBroadcaster:
    """
    In-process fan-out to registered subscriber callbacks.

    Subscribers are called in registration order on the publishing thread.
    A failing subscriber is logged and does not prevent delivery to the rest.

    Usage:
        broadcaster = SubscriberBroadcaster()
        unsubscribe = broadcaster.subscribe(lambda event: print(event.kind))
        ...
        unsubscribe()
    """

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """
        Register a subscriber.

        Returns:
            A function that removes the subscriber
        """
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, account_id: str, event_kind: str, payload: dict[str, Any]) -> None:
        event = BroadcastEvent(account_id=account_id, kind=event_kind, payload=payload)
        with self._lock:
            subscribers = list(self._subscribers)

        for subscriber in subscribers:
            try:
                subscriber(event)
            except Exception as e:
                logger.error(
                    f"Subscriber failed handling {event_kind} for account "
                    f"{account_id}: {e}"
                )
