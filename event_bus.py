"""In-process publish/subscribe of run events, keyed by run id."""
from __future__ import annotations

import itertools
import logging
from typing import Callable, Dict

from events import StreamEvent

Subscriber = Callable[[StreamEvent], None]

logger = logging.getLogger("ranger.bus")


class EventBus:
    """Fans run events out to live subscribers.

    Events are delivered synchronously, in subscription order. A run with no
    subscribers silently drops its events.
    """

    def __init__(self):
        self._subscribers: Dict[str, Dict[int, Subscriber]] = {}
        self._tokens = itertools.count()

    def subscribe(self, run_id: str, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback`` for ``run_id``; returns an idempotent unsubscribe."""
        token = next(self._tokens)
        self._subscribers.setdefault(run_id, {})[token] = callback

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(run_id)
            if callbacks is None:
                return
            callbacks.pop(token, None)
            if not callbacks:
                del self._subscribers[run_id]

        return unsubscribe

    def broadcast(self, run_id: str, event: StreamEvent) -> None:
        callbacks = self._subscribers.get(run_id)
        if not callbacks:
            return
        # Subscribers may unsubscribe while being notified.
        for callback in list(callbacks.values()):
            try:
                callback(event)
            except Exception as exc:
                logger.error(f"Subscriber for run {run_id} failed on {event.type} event: {exc}")

    def subscriber_count(self, run_id: str) -> int:
        return len(self._subscribers.get(run_id, {}))
