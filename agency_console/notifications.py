"""Bounded notification queue surfaced to administrators."""
from __future__ import annotations

import secrets
import threading
from datetime import datetime, timezone
from typing import Iterator, List, Optional

from .audit import describe_change
from .models import ChangeEvent, ChangeKind, Notification, NotificationType

DEFAULT_NOTIFICATION_LIMIT = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def notification_for_event(event: ChangeEvent, *, now: Optional[datetime] = None) -> Notification:
    """Build the notification announcing a change-feed event."""

    kind = NotificationType.NEW_ACCOUNT if event.kind is ChangeKind.INSERT else NotificationType.ACCOUNT_UPDATED
    return Notification(
        id=secrets.token_hex(8),
        message=describe_change(event),
        type=kind,
        timestamp=now or _utcnow(),
        account=event.account,
    )


class NotificationQueue:
    """Most-recent-first list of notifications capped at ``limit`` entries.

    Duplicate deliveries are not collapsed: pushing the same event twice shows
    two entries.
    """

    def __init__(self, *, limit: int = DEFAULT_NOTIFICATION_LIMIT) -> None:
        if limit < 1:
            raise ValueError("Notification limit must be at least 1")
        self._limit = limit
        self._items: List[Notification] = []
        self._lock = threading.Lock()

    @property
    def limit(self) -> int:
        return self._limit

    def push(self, notification: Notification) -> None:
        with self._lock:
            self._items.insert(0, notification)
            del self._items[self._limit:]

    def dismiss(self, notification_id: str) -> bool:
        with self._lock:
            for index, item in enumerate(self._items):
                if item.id == notification_id:
                    del self._items[index]
                    return True
        return False

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def snapshot(self) -> List[Notification]:
        with self._lock:
            return list(self._items)

    def __iter__(self) -> Iterator[Notification]:
        return iter(self.snapshot())

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


__all__ = [
    "DEFAULT_NOTIFICATION_LIMIT",
    "NotificationQueue",
    "notification_for_event",
]
