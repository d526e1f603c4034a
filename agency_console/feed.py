"""In-process change feed for account rows."""
from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .models import ChangeEvent, ChangeKind

logger = logging.getLogger("agency_console.feed")

EventCallback = Callable[[ChangeEvent], None]
Unsubscribe = Callable[[], None]


@dataclass(frozen=True)
class _Subscription:
    on_insert: Optional[EventCallback]
    on_update: Optional[EventCallback]
    on_delete: Optional[EventCallback]

    def handler_for(self, kind: ChangeKind) -> Optional[EventCallback]:
        if kind is ChangeKind.INSERT:
            return self.on_insert
        if kind is ChangeKind.UPDATE:
            return self.on_update
        return self.on_delete


class ChangeFeed:
    """Deliver committed account changes to subscribers in commit order.

    The store publishes while it still holds its write lock, so every
    subscriber observes events in revision order.
    """

    def __init__(self) -> None:
        self._subscriptions: Dict[int, _Subscription] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def subscribe(
        self,
        on_insert: Optional[EventCallback] = None,
        on_update: Optional[EventCallback] = None,
        on_delete: Optional[EventCallback] = None,
    ) -> Unsubscribe:
        subscription = _Subscription(on_insert, on_update, on_delete)
        with self._lock:
            token = next(self._ids)
            self._subscriptions[token] = subscription

        def unsubscribe() -> None:
            with self._lock:
                self._subscriptions.pop(token, None)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, event: ChangeEvent) -> None:
        with self._lock:
            subscriptions = list(self._subscriptions.values())

        for subscription in subscriptions:
            handler = subscription.handler_for(event.kind)
            if handler is None:
                continue
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Change feed subscriber failed on %s for %s",
                    event.kind.value,
                    event.account.user_id,
                )


__all__ = ["ChangeFeed", "EventCallback", "Unsubscribe"]
