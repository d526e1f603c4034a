"""Client-side sessions that keep a local view of accounts up to date.

Two kinds of session exist:

* :class:`AdminConsoleSession` backs the admin panel. It keeps the full
  account list, the notification queue and the "new account" highlights.
* :class:`AccountViewSession` backs a single signed-in account and moves it
  to the right screen whenever its lifecycle state changes.

Both combine change-feed pushes with a periodic full refresh. Neither changes
local state optimistically: only committed store data is shown.
"""
from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Set

import anyio

from .config import ConsoleSettings
from .database import StoreError
from .feed import Unsubscribe
from .models import Account, AccountListing, ChangeEvent, ChangeKind, Notification
from .notifications import NotificationQueue, notification_for_event
from .reconcile import AccountSnapshot, apply_event, apply_listing
from .routing import Destination, navigation_target, resolve_destination
from .scheduling import format_remaining, hold_elapsed, time_remaining
from .service import LifecycleService
from .timers import TimerHandle, TimerScheduler

logger = logging.getLogger("agency_console.sessions")

NavigateCallback = Callable[[Destination], None]

_ADMIN_ACTIONS = frozenset(
    {"approve", "reject", "hold", "suspend", "activate", "change_role", "delete"}
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ActionOutcome:
    """Result of a submitted lifecycle action, reported back to its initiator."""

    ok: bool
    account: Optional[Account] = None
    error: Optional[Exception] = None

    @property
    def retryable(self) -> bool:
        return bool(getattr(self.error, "retryable", False))

    @property
    def message(self) -> Optional[str]:
        return str(self.error) if self.error is not None else None


async def _run_blocking(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    return await anyio.to_thread.run_sync(functools.partial(func, *args, **kwargs))


async def _submit(func: Callable[..., Account], *args: Any, **kwargs: Any) -> ActionOutcome:
    try:
        account = await _run_blocking(func, *args, **kwargs)
    except Exception as exc:
        logger.warning("Lifecycle action %s failed: %s", getattr(func, "__name__", func), exc)
        return ActionOutcome(ok=False, error=exc)
    return ActionOutcome(ok=True, account=account)


class _FeedBridge:
    """Marshals change-feed callbacks from writer threads onto the session loop."""

    def __init__(self, handler: Callable[[ChangeEvent], None]) -> None:
        self._handler = handler
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def __call__(self, event: ChangeEvent) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._handler(event)
        else:
            loop.call_soon_threadsafe(self._handler, event)


class AdminConsoleSession:
    """State behind one administrator's console."""

    def __init__(
        self,
        service: LifecycleService,
        *,
        actor_id: str,
        settings: Optional[ConsoleSettings] = None,
        scheduler: Optional[TimerScheduler] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._service = service
        self._actor_id = actor_id
        self._settings = settings or service.settings
        self._scheduler = scheduler or TimerScheduler()
        self._clock = clock
        self._snapshot = AccountSnapshot()
        self._notifications = NotificationQueue(limit=self._settings.notification_limit)
        self._highlights: Dict[str, TimerHandle] = {}
        self._bridge = _FeedBridge(self._handle_event)
        self._unsubscribe: Optional[Unsubscribe] = None
        self._refresh_handle: Optional[TimerHandle] = None
        self._closed = False

    @property
    def actor_id(self) -> str:
        return self._actor_id

    @property
    def snapshot(self) -> AccountSnapshot:
        return self._snapshot

    @property
    def accounts(self) -> List[Account]:
        return self._snapshot.ordered()

    @property
    def notifications(self) -> List[Notification]:
        return self._notifications.snapshot()

    @property
    def highlighted(self) -> Set[str]:
        return set(self._highlights)

    @property
    def closed(self) -> bool:
        return self._closed

    def counts(self) -> Dict[str, int]:
        """Number of accounts per lifecycle label, e.g. ``approved/active``."""

        totals: Dict[str, int] = {}
        for account in self._snapshot.accounts.values():
            totals[account.lifecycle_label] = totals.get(account.lifecycle_label, 0) + 1
        return totals

    async def start(self) -> None:
        if self._closed:
            raise RuntimeError("Session has been closed")
        self._bridge.bind(asyncio.get_running_loop())
        self._unsubscribe = self._service.subscribe_account_changes(
            self._bridge, self._bridge, self._bridge
        )
        await self.refresh()
        self._refresh_handle = self._scheduler.call_every(
            self._settings.refresh_interval, self.refresh, name="admin-refresh"
        )
        logger.info("Admin console session started for %s", self._actor_id)

    async def refresh(self) -> None:
        """Re-fetch the full account list and merge it into the snapshot."""

        try:
            listing: AccountListing = await _run_blocking(self._service.list_accounts)
        except StoreError as exc:
            logger.warning("Account refresh failed for %s: %s", self._actor_id, exc)
            return
        if self._closed:
            return
        self._snapshot = apply_listing(self._snapshot, listing)

    def dismiss_notification(self, notification_id: str) -> bool:
        return self._notifications.dismiss(notification_id)

    def clear_notifications(self) -> None:
        self._notifications.clear()

    async def submit(self, action: str, user_id: str, **params: Any) -> ActionOutcome:
        """Run an administrative action and report how it went."""

        if action not in _ADMIN_ACTIONS:
            raise ValueError(f"Unknown lifecycle action {action!r}")
        operation = getattr(self._service, action)
        return await _submit(operation, user_id, actor_id=self._actor_id, **params)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._scheduler.cancel_all()
        self._highlights.clear()
        logger.info("Admin console session closed for %s", self._actor_id)

    async def __aenter__(self) -> "AdminConsoleSession":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _handle_event(self, event: ChangeEvent) -> None:
        if self._closed:
            return
        self._snapshot = apply_event(self._snapshot, event)

        if event.kind is ChangeKind.DELETE:
            handle = self._highlights.pop(event.account.user_id, None)
            if handle is not None:
                handle.cancel()
            return

        self._notifications.push(notification_for_event(event, now=self._clock()))
        if event.kind is ChangeKind.INSERT:
            self._highlight(event.account.user_id)

    def _highlight(self, user_id: str) -> None:
        existing = self._highlights.pop(user_id, None)
        if existing is not None:
            existing.cancel()

        def expire() -> None:
            if self._highlights.get(user_id) is handle:
                del self._highlights[user_id]

        handle = self._scheduler.call_later(
            self._settings.highlight_seconds, expire, name=f"highlight-{user_id}"
        )
        self._highlights[user_id] = handle


class AccountViewSession:
    """Keeps one signed-in account on the screen its state calls for."""

    def __init__(
        self,
        service: LifecycleService,
        user_id: str,
        *,
        on_navigate: Optional[NavigateCallback] = None,
        current: Optional[Destination] = None,
        settings: Optional[ConsoleSettings] = None,
        scheduler: Optional[TimerScheduler] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._service = service
        self._user_id = user_id
        self._on_navigate = on_navigate
        self._current = current
        self._settings = settings or service.settings
        self._scheduler = scheduler or TimerScheduler()
        self._clock = clock
        self._account: Optional[Account] = None
        self._bridge = _FeedBridge(self._handle_event)
        self._unsubscribe: Optional[Unsubscribe] = None
        self._closed = False

    @property
    def account(self) -> Optional[Account]:
        return self._account

    @property
    def current(self) -> Optional[Destination]:
        return self._current

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self) -> Destination:
        """Load the account, navigate to its screen and start listening."""

        if self._closed:
            raise RuntimeError("Session has been closed")
        self._bridge.bind(asyncio.get_running_loop())
        self._unsubscribe = self._service.subscribe_account_changes(
            self._bridge, self._bridge, self._bridge
        )
        account = await _run_blocking(self._service.get_account, self._user_id)
        self._update(account, force=True)
        self._scheduler.call_every(self._settings.refresh_interval, self.refresh, name="account-refresh")
        return resolve_destination(account)

    async def refresh(self) -> None:
        try:
            account = await _run_blocking(self._service.get_account, self._user_id)
        except StoreError as exc:
            logger.warning("Refresh of %s failed: %s", self._user_id, exc)
            return
        if self._closed:
            return
        if account is not None and self._account is not None and account.revision < self._account.revision:
            return
        self._update(account)

    def hold_time_remaining(self) -> Optional[timedelta]:
        account = self._account
        if account is None or account.hold is None:
            return None
        return time_remaining(account.hold, self._clock())

    def hold_countdown(self) -> Optional[str]:
        remaining = self.hold_time_remaining()
        return format_remaining(remaining) if remaining is not None else None

    def can_self_activate(self) -> bool:
        account = self._account
        return account is not None and account.hold is not None and hold_elapsed(account.hold, self._clock())

    async def self_activate(self) -> ActionOutcome:
        return await _submit(self._service.self_activate, self._user_id)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._scheduler.cancel_all()

    async def __aenter__(self) -> "AccountViewSession":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _handle_event(self, event: ChangeEvent) -> None:
        if self._closed or event.account.user_id != self._user_id:
            return
        if self._account is not None and event.revision <= self._account.revision:
            return
        self._update(None if event.kind is ChangeKind.DELETE else event.account)

    def _update(self, account: Optional[Account], *, force: bool = False) -> None:
        previous = self._account
        self._account = account
        if force:
            target: Optional[Destination] = resolve_destination(account)
            if target is self._current:
                return
        else:
            target = navigation_target(self._current, previous, account)
        if target is None:
            return
        logger.info("Routing %s from %s to %s", self._user_id, self._current, target.value)
        self._current = target
        if self._on_navigate is not None:
            self._on_navigate(target)


__all__ = ["AccountViewSession", "ActionOutcome", "AdminConsoleSession", "NavigateCallback"]
