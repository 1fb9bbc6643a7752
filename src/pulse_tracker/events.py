"""Synchronous event channel used to announce day rollovers."""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

EventT = TypeVar("EventT")


@dataclass(slots=True, frozen=True)
class DayChanged:
    """Emitted once when the local calendar date rolls over."""

    completed_date: str
    new_date: str


class EventChannel(Generic[EventT]):
    """Delivers each emitted event to every current subscriber, in subscription order."""

    def __init__(self) -> None:
        self._handlers: dict[int, Callable[[EventT], Any]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def subscribe(self, handler: Callable[[EventT], Any]) -> int:
        with self._lock:
            subscription_id = next(self._ids)
            self._handlers[subscription_id] = handler
        return subscription_id

    def unsubscribe(self, subscription_id: int) -> bool:
        with self._lock:
            return self._handlers.pop(subscription_id, None) is not None

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._handlers)

    def emit(self, event: EventT) -> int:
        """Call every subscriber; returns how many handled the event without raising."""
        with self._lock:
            handlers = list(self._handlers.items())
        delivered = 0
        for subscription_id, handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Subscriber %d failed handling %s", subscription_id, type(event).__name__
                )
            else:
                delivered += 1
        return delivered
