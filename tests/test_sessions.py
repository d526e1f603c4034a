from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List

import pytest

from agency_console.config import ConsoleSettings
from agency_console.database import Database
from agency_console.models import AccountStatus, NotificationType, Role
from agency_console.routing import Destination
from agency_console.service import LifecycleService
from agency_console.sessions import AccountViewSession, AdminConsoleSession
from agency_console.timers import TimerScheduler
from agency_console.transitions import MissingReason


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2024, 10, 7, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


SETTINGS = ConsoleSettings(refresh_interval=60.0, highlight_seconds=0.05)


def _service(tmp_path: Path, clock: _Clock) -> LifecycleService:
    database = Database(tmp_path / "console.sqlite3")
    database.initialize()
    service = LifecycleService(database, settings=SETTINGS, clock=clock)
    service.register("admin-1", user_name="Root Admin", role=Role.ADMIN)
    service.approve("admin-1", actor_id=None)
    return service


async def _drain() -> None:
    for _ in range(3):
        await asyncio.sleep(0)


def test_admin_session_highlights_and_notifies_new_accounts(tmp_path: Path) -> None:
    clock = _Clock()
    service = _service(tmp_path, clock)
    scheduler = TimerScheduler()

    async def scenario() -> None:
        session = AdminConsoleSession(
            service, actor_id="admin-1", settings=SETTINGS, scheduler=scheduler, clock=clock
        )
        await session.start()
        assert [account.user_id for account in session.accounts] == ["admin-1"]

        service.register("u-1", user_name="New Hire")
        assert session.highlighted == {"u-1"}
        assert session.snapshot.get("u-1") is not None
        notification = session.notifications[0]
        assert notification.type is NotificationType.NEW_ACCOUNT
        assert notification.message == "New account registration: New Hire"

        await asyncio.sleep(0.15)
        assert session.highlighted == set()

        assert session.dismiss_notification(notification.id) is True
        assert session.notifications == []

        await session.close()
        assert session.closed
        assert scheduler.active == 0

    asyncio.run(scenario())


def test_admin_session_submits_actions_and_reports_failures(tmp_path: Path) -> None:
    clock = _Clock()
    service = _service(tmp_path, clock)

    async def scenario() -> None:
        async with AdminConsoleSession(service, actor_id="admin-1", settings=SETTINGS, clock=clock) as session:
            service.register("u-1")

            outcome = await session.submit("approve", "u-1")
            await _drain()
            assert outcome.ok
            assert outcome.account.status is AccountStatus.ACTIVE
            assert session.snapshot.get("u-1").status is AccountStatus.ACTIVE
            assert session.notifications[0].message == "u-1 was approved"
            assert session.counts() == {"approved/active": 2}

            failed = await session.submit("suspend", "u-1", reason="  ")
            assert not failed.ok
            assert isinstance(failed.error, MissingReason)
            assert failed.retryable is False
            assert session.snapshot.get("u-1").status is AccountStatus.ACTIVE

            log = service.fetch_activity_log("u-1")
            assert log[0].actor_id == "admin-1"

            with pytest.raises(ValueError):
                await session.submit("promote", "u-1")

    asyncio.run(scenario())


def test_admin_session_drops_deleted_accounts(tmp_path: Path) -> None:
    clock = _Clock()
    service = _service(tmp_path, clock)

    async def scenario() -> None:
        async with AdminConsoleSession(service, actor_id="admin-1", settings=SETTINGS, clock=clock) as session:
            service.register("u-1")
            assert "u-1" in session.highlighted

            outcome = await session.submit("delete", "u-1", reason="Duplicate signup")
            await _drain()
            assert outcome.ok
            assert session.snapshot.get("u-1") is None
            assert "u-1" not in session.highlighted

    asyncio.run(scenario())


def test_admin_refresh_picks_up_changes_missed_by_the_feed(tmp_path: Path) -> None:
    clock = _Clock()
    service = _service(tmp_path, clock)
    # Another process writing to the same store, with its own feed.
    other = LifecycleService(Database(service.database.path), settings=SETTINGS, clock=clock)

    async def scenario() -> None:
        async with AdminConsoleSession(service, actor_id="admin-1", settings=SETTINGS, clock=clock) as session:
            other.register("remote-1")
            assert session.snapshot.get("remote-1") is None

            await session.refresh()
            assert session.snapshot.get("remote-1") is not None

    asyncio.run(scenario())


def test_account_view_follows_lifecycle(tmp_path: Path) -> None:
    clock = _Clock()
    service = _service(tmp_path, clock)
    service.register("u-1")
    scheduler = TimerScheduler()

    async def scenario() -> None:
        navigations: List[Destination] = []
        session = AccountViewSession(
            service,
            "u-1",
            on_navigate=navigations.append,
            settings=SETTINGS,
            scheduler=scheduler,
            clock=clock,
        )
        assert await session.start() is Destination.APPROVAL_PENDING

        service.approve("u-1", actor_id="admin-1")
        service.hold("u-1", "Licence renewal", actor_id="admin-1", days=1)
        assert navigations == [
            Destination.APPROVAL_PENDING,
            Destination.DASHBOARD,
            Destination.HOLD_PAGE,
        ]
        assert session.hold_time_remaining() == timedelta(days=1)
        assert session.hold_countdown() == "1d 00:00:00"
        assert not session.can_self_activate()

        early = await session.self_activate()
        assert not early.ok

        clock.now = clock.now + timedelta(days=1)
        assert session.hold_time_remaining() == timedelta(0)
        assert session.hold_countdown() == "00:00:00"
        assert session.can_self_activate()
        outcome = await session.self_activate()
        await _drain()
        assert outcome.ok
        assert session.current is Destination.DASHBOARD

        await session.close()
        assert scheduler.active == 0
        service.suspend("u-1", "After close", actor_id="admin-1")
        assert session.current is Destination.DASHBOARD

    asyncio.run(scenario())


def test_account_view_ignores_other_accounts_and_handles_deletion(tmp_path: Path) -> None:
    clock = _Clock()
    service = _service(tmp_path, clock)
    service.register("u-1")
    service.approve("u-1", actor_id="admin-1")
    service.register("u-2")

    async def scenario() -> None:
        navigations: List[Destination] = []
        async with AccountViewSession(
            service, "u-1", on_navigate=navigations.append, settings=SETTINGS, clock=clock
        ) as session:
            service.approve("u-2", actor_id="admin-1")
            assert navigations == [Destination.DASHBOARD]

            service.delete("u-1", "Left the agency", actor_id="admin-1")
            assert session.account is None
            assert navigations[-1] is Destination.PROFILE_COMPLETION

    asyncio.run(scenario())


def test_account_view_refresh_catches_external_changes(tmp_path: Path) -> None:
    clock = _Clock()
    service = _service(tmp_path, clock)
    service.register("u-1")
    service.approve("u-1", actor_id="admin-1")
    other = LifecycleService(Database(service.database.path), settings=SETTINGS, clock=clock)

    async def scenario() -> None:
        navigations: List[Destination] = []
        async with AccountViewSession(
            service, "u-1", on_navigate=navigations.append, settings=SETTINGS, clock=clock
        ) as session:
            other.suspend("u-1", "Investigation", actor_id="admin-1")
            assert session.current is Destination.DASHBOARD

            await session.refresh()
            assert session.current is Destination.SUSPENDED_PAGE
            assert navigations == [Destination.DASHBOARD, Destination.SUSPENDED_PAGE]

    asyncio.run(scenario())
