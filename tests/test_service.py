"""Tests for the lifecycle service and its identity provider integration."""

from __future__ import annotations

import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List

import httpx

from agency_console.config import ConsoleSettings
from agency_console.database import Database, StaleAccountVersion
from agency_console.identity import IdentityProviderClient, IdentityProviderError
from agency_console.models import AccountStatus, ApprovalStatus, Role
from agency_console.routing import Destination
from agency_console.service import InconsistentStateError, LifecycleService
from agency_console.transitions import (
    InvalidHoldWindow,
    InvalidStateForTransition,
    LastAdminProtected,
    MissingReason,
)


class _Clock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class LifecycleServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tempdir = tempfile.TemporaryDirectory()
        self.database = Database(Path(self._tempdir.name) / "console.sqlite3")
        self.database.initialize()
        self.clock = _Clock(datetime(2024, 9, 2, 8, 0, tzinfo=timezone.utc))
        self.idp_requests: List[httpx.Request] = []
        self.idp_status = 200
        self.present_during_revoke: List[bool] = []
        self.service = LifecycleService(
            self.database,
            settings=ConsoleSettings(),
            identity=self._identity(),
            clock=self.clock,
        )
        self.service.register("admin-1", user_name="Root Admin", role=Role.ADMIN)
        self.service.approve("admin-1", actor_id=None)

    def tearDown(self) -> None:
        self._tempdir.cleanup()

    def _identity(self) -> IdentityProviderClient:
        def handler(request: httpx.Request) -> httpx.Response:
            self.idp_requests.append(request)
            subject = request.url.path.rsplit("/", 1)[-1]
            self.present_during_revoke.append(self.database.get_account(subject) is not None)
            return httpx.Response(self.idp_status, json={})

        return IdentityProviderClient(
            "https://idp.example.com/",
            "service-key",
            transport=httpx.MockTransport(handler),
        )

    def test_registration_then_approval_routes_to_dashboard(self) -> None:
        pending = self.service.register("u-1", user_name="Lena Park", email="lena@example.com")
        self.assertEqual(self.service.resolve_destination(pending), Destination.APPROVAL_PENDING)

        approved = self.service.approve("u-1", actor_id="admin-1")
        self.assertIs(approved.approval_status, ApprovalStatus.APPROVED)
        self.assertIs(approved.status, AccountStatus.ACTIVE)
        self.assertEqual(self.service.resolve_destination(approved), Destination.DASHBOARD)

        log = self.service.fetch_activity_log("u-1")
        self.assertEqual([entry.action for entry in log], ["approve"])
        self.assertEqual(log[0].actor_id, "admin-1")

    def test_reject_without_reason_leaves_account_pending(self) -> None:
        self.service.register("u-1")
        with self.assertRaises(MissingReason):
            self.service.reject("u-1", " ", actor_id="admin-1")

        account = self.service.require_account("u-1")
        self.assertIs(account.approval_status, ApprovalStatus.PENDING)
        self.assertEqual(self.service.fetch_activity_log("u-1"), [])

        rejected = self.service.reject("u-1", "Incomplete documents", actor_id="admin-1")
        self.assertEqual(rejected.status_reason, "Incomplete documents")
        self.assertEqual(self.service.resolve_destination(rejected), Destination.REJECTED_PAGE)

    def test_hold_and_self_activation_after_expiry(self) -> None:
        self.service.register("u-1")
        self.service.approve("u-1", actor_id="admin-1")
        held = self.service.hold("u-1", "Compliance review", actor_id="admin-1", days=1)
        self.assertEqual(held.hold_days, 1)

        with self.assertRaises(InvalidHoldWindow):
            self.service.self_activate("u-1")

        self.clock.advance(days=1, seconds=1)
        active = self.service.self_activate("u-1")
        self.assertIs(active.status, AccountStatus.ACTIVE)
        self.assertIsNone(active.hold)
        self.assertEqual(self.service.fetch_activity_log("u-1")[0].actor_id, "u-1")

    def test_suspend_then_admin_activation(self) -> None:
        self.service.register("u-1")
        self.service.approve("u-1", actor_id="admin-1")
        self.service.suspend("u-1", "Policy breach", actor_id="admin-1")
        active = self.service.activate("u-1", actor_id="admin-1")
        self.assertTrue(active.status_reason.startswith("Account activated by admin on"))

        with self.assertRaises(InvalidStateForTransition):
            self.service.activate("u-1", actor_id="admin-1")

    def test_last_admin_cannot_be_demoted(self) -> None:
        with self.assertRaises(LastAdminProtected):
            self.service.change_role("admin-1", Role.EMPLOYEE, actor_id="admin-1")

        self.service.register("admin-2", role=Role.ADMIN)
        with self.assertRaises(LastAdminProtected):
            self.service.change_role("admin-1", Role.MANAGER, actor_id="admin-1")

        self.service.approve("admin-2", actor_id="admin-1")
        demoted = self.service.change_role("admin-1", Role.MANAGER, actor_id="admin-2")
        self.assertIs(demoted.role, Role.MANAGER)

    def test_delete_revokes_credential_before_removing_account(self) -> None:
        self.service.register("u-1")

        removed = self.service.delete("u-1", "Left the agency", actor_id="admin-1")
        self.assertEqual(removed.user_id, "u-1")
        self.assertIsNone(self.service.get_account("u-1"))
        self.assertEqual(len(self.idp_requests), 1)
        request = self.idp_requests[0]
        self.assertEqual(request.method, "DELETE")
        self.assertEqual(request.url.path, "/auth/v1/admin/users/u-1")
        self.assertEqual(request.headers["apikey"], "service-key")
        self.assertEqual(self.present_during_revoke, [True])

    def test_delete_keeps_account_when_identity_provider_fails(self) -> None:
        self.service.register("u-1")
        self.idp_status = 500

        with self.assertRaises(IdentityProviderError):
            self.service.delete("u-1", "Left the agency", actor_id="admin-1")
        self.assertIsNotNone(self.service.get_account("u-1"))

    def test_delete_tolerates_missing_credential(self) -> None:
        self.service.register("u-1")
        self.idp_status = 404
        self.service.delete("u-1", "Duplicate signup", actor_id="admin-1")
        self.assertIsNone(self.service.get_account("u-1"))

    def test_last_admin_cannot_be_deleted(self) -> None:
        with self.assertRaises(LastAdminProtected):
            self.service.delete("admin-1", "Cleanup", actor_id="admin-1")
        self.assertEqual(self.idp_requests, [])

    def test_pending_admin_registration_does_not_unlock_last_admin(self) -> None:
        self.service.register("applicant", role=Role.ADMIN)

        with self.assertRaises(LastAdminProtected):
            self.service.delete("admin-1", "Cleanup", actor_id="admin-1")
        with self.assertRaises(LastAdminProtected):
            self.service.change_role("admin-1", Role.MANAGER, actor_id="admin-1")
        self.assertEqual(self.idp_requests, [])
        self.assertIsNotNone(self.service.get_account("admin-1"))

        self.service.delete("applicant", "Not an employee", actor_id="admin-1")
        self.assertIsNone(self.service.get_account("applicant"))

    def test_concurrent_write_before_delete_keeps_credential(self) -> None:
        self.service.register("u-1")
        self.service.approve("u-1", actor_id="admin-1")
        original = self.database.count_admins

        def count_then_race() -> int:
            # Another admin changes the account after the service read it.
            del self.database.count_admins
            self.service.suspend("u-1", "Policy breach", actor_id="admin-1")
            return original()

        self.database.count_admins = count_then_race  # type: ignore[method-assign]
        with self.assertRaises(StaleAccountVersion):
            self.service.delete("u-1", "Left the agency", actor_id="admin-1")

        self.assertEqual(self.idp_requests, [])
        self.assertIs(self.service.require_account("u-1").status, AccountStatus.SUSPEND)

    def test_store_admin_check_runs_before_revocation(self) -> None:
        self.database.count_admins = lambda: 2  # type: ignore[method-assign]
        try:
            with self.assertRaises(LastAdminProtected):
                self.service.delete("admin-1", "Cleanup", actor_id="admin-1")
        finally:
            del self.database.count_admins

        self.assertEqual(self.idp_requests, [])
        self.assertIsNotNone(self.service.get_account("admin-1"))

    def test_verification_read_detects_lost_write(self) -> None:
        self.service.register("u-1")
        original = self.database.get_account

        calls = {"count": 0}

        def stale_read(user_id: str):
            calls["count"] += 1
            account = original(user_id)
            # First read loads the account; the verification read returns
            # what was stored before the write.
            if calls["count"] == 2 and account is not None:
                return account.evolve(
                    approval_status=ApprovalStatus.PENDING, status=None, hold=None, employee_id=None
                )
            return account

        self.database.get_account = stale_read  # type: ignore[method-assign]
        try:
            with self.assertRaises(InconsistentStateError):
                self.service.approve("u-1", actor_id="admin-1")
        finally:
            del self.database.get_account

    def test_subscribers_see_committed_changes(self) -> None:
        events = []
        unsubscribe = self.service.subscribe_account_changes(events.append, events.append)
        self.service.register("u-1")
        self.service.approve("u-1", actor_id="admin-1")
        unsubscribe()

        self.assertEqual([event.account.user_id for event in events], ["u-1", "u-1"])
        self.assertIs(events[-1].account.status, AccountStatus.ACTIVE)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
