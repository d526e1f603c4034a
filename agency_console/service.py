"""Lifecycle operations exposed to the UI layer."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from . import transitions
from .config import ConsoleSettings
from .database import AccountNotFoundError, Database, StoreError
from .feed import EventCallback, Unsubscribe
from .identity import IdentityProviderClient, IdentityProviderError
from .models import Account, AccountListing, ActivityLogEntry, Role
from .routing import Destination, resolve_destination
from .scheduling import format_remaining, time_remaining
from .transitions import EmployeeIdGenerator, LastAdminProtected, TransitionError, TransitionResult

logger = logging.getLogger("agency_console.service")

Compute = Callable[[Account, datetime], TransitionResult]


class InconsistentStateError(RuntimeError):
    """The verification read after a write did not match what was written."""

    def __init__(self, user_id: str, message: str) -> None:
        super().__init__(message)
        self.user_id = user_id


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _matches(expected: Account, stored: Account) -> bool:
    return (
        expected.lifecycle_key() == stored.lifecycle_key()
        and expected.status_reason == stored.status_reason
        and (expected.employee_id is None or expected.employee_id == stored.employee_id)
    )


class LifecycleService:
    """Validate lifecycle actions, persist them and confirm the stored result.

    Business-rule failures surface as :class:`~agency_console.transitions.TransitionError`.
    Storage failures surface as :class:`~agency_console.database.StoreError`.
    Neither is retried here; callers decide retry policy.
    """

    def __init__(
        self,
        database: Database,
        *,
        settings: Optional[ConsoleSettings] = None,
        identity: Optional[IdentityProviderClient] = None,
        clock: Callable[[], datetime] = _utcnow,
        employee_ids: Optional[Callable[[datetime], str]] = None,
    ) -> None:
        self._database = database
        self._settings = settings or ConsoleSettings()
        self._identity = identity
        self._clock = clock
        self._employee_ids = employee_ids or EmployeeIdGenerator(self._settings.employee_id_prefix)

    @property
    def database(self) -> Database:
        return self._database

    @property
    def settings(self) -> ConsoleSettings:
        return self._settings

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def hold_countdown(self, account: Optional[Account]) -> Optional[str]:
        """Remaining hold time as shown on the hold page, or ``None`` when not held."""

        if account is None or account.hold is None:
            return None
        return format_remaining(time_remaining(account.hold, self._clock()))

    def get_account(self, user_id: str) -> Optional[Account]:
        return self._database.get_account(user_id)

    def require_account(self, user_id: str) -> Account:
        account = self._database.get_account(user_id)
        if account is None:
            raise AccountNotFoundError(f"No account found for {user_id}")
        return account

    def list_accounts(self) -> AccountListing:
        return self._database.list_accounts()

    def fetch_activity_log(
        self,
        user_id: str,
        *,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[ActivityLogEntry]:
        return self._database.fetch_activity_log(user_id, limit=limit, offset=offset)

    def subscribe_account_changes(
        self,
        on_insert: Optional[EventCallback],
        on_update: Optional[EventCallback],
        on_delete: Optional[EventCallback] = None,
    ) -> Unsubscribe:
        return self._database.feed.subscribe(on_insert, on_update, on_delete)

    @staticmethod
    def resolve_destination(account: Optional[Account]) -> Destination:
        return resolve_destination(account)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------
    def register(
        self,
        user_id: str,
        *,
        user_name: Optional[str] = None,
        email: Optional[str] = None,
        role: Role = Role.EMPLOYEE,
    ) -> Account:
        account = self._database.create_account(user_id, user_name=user_name, email=email, role=role)
        logger.info("Registered account %s as %s (pending approval)", account.user_id, account.role.value)
        return account

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def approve(self, user_id: str, *, actor_id: Optional[str]) -> Account:
        return self._apply(
            "approve",
            user_id,
            actor_id,
            lambda account, now: transitions.approve(
                account, actor_id=actor_id, now=now, employee_ids=self._employee_ids
            ),
        )

    def reject(self, user_id: str, reason: Optional[str], *, actor_id: Optional[str]) -> Account:
        return self._apply(
            "reject",
            user_id,
            actor_id,
            lambda account, now: transitions.reject(account, reason, actor_id=actor_id, now=now),
        )

    def hold(
        self,
        user_id: str,
        reason: Optional[str],
        *,
        actor_id: Optional[str],
        days: Optional[int] = None,
        until: Optional[datetime] = None,
    ) -> Account:
        return self._apply(
            "hold",
            user_id,
            actor_id,
            lambda account, now: transitions.hold(
                account,
                reason,
                actor_id=actor_id,
                now=now,
                days=days,
                until=until,
                allowed_days=self._settings.hold_presets,
            ),
        )

    def suspend(self, user_id: str, reason: Optional[str], *, actor_id: Optional[str]) -> Account:
        return self._apply(
            "suspend",
            user_id,
            actor_id,
            lambda account, now: transitions.suspend(account, reason, actor_id=actor_id, now=now),
        )

    def activate(self, user_id: str, *, actor_id: Optional[str]) -> Account:
        return self._apply(
            "activate",
            user_id,
            actor_id,
            lambda account, now: transitions.activate(account, actor_id=actor_id, now=now),
        )

    def self_activate(self, user_id: str) -> Account:
        return self._apply(
            "self_activate",
            user_id,
            user_id,
            lambda account, now: transitions.self_activate(account, now=now),
        )

    def change_role(self, user_id: str, role: Role, *, actor_id: Optional[str]) -> Account:
        return self._apply(
            "change_role",
            user_id,
            actor_id,
            lambda account, now: transitions.change_role(
                account,
                role,
                actor_id=actor_id,
                now=now,
                admin_count=self._database.count_admins(),
            ),
        )

    def delete(self, user_id: str, reason: Optional[str], *, actor_id: Optional[str]) -> Account:
        """Permanently remove an account, its credential and its activity log.

        The credential is revoked from inside the store's delete transaction,
        after the version and last-admin checks, so a refused delete never
        leaves the account without a credential.
        """

        account = self.require_account(user_id)
        try:
            result = transitions.delete(
                account,
                reason,
                actor_id=actor_id,
                now=self._clock(),
                admin_count=self._database.count_admins(),
            )
        except TransitionError as exc:
            logger.warning("Refused to delete %s for %s: %s", user_id, actor_id, exc)
            raise

        revoked: List[str] = []

        def revoke_credential(current: Account) -> None:
            if self._identity is None:
                logger.warning("No identity provider configured; credential for %s was not revoked", user_id)
                return
            self._identity.delete_user(current.user_id)
            revoked.append(current.user_id)

        try:
            removed = self._database.delete_account(
                user_id,
                expected_version=account.version,
                before_commit=revoke_credential,
            )
        except LastAdminProtected as exc:
            logger.warning("Refused to delete %s for %s: %s", user_id, actor_id, exc)
            raise
        except IdentityProviderError as exc:
            logger.warning("Could not revoke credential for %s; account kept: %s", user_id, exc)
            raise
        except StoreError as exc:
            if revoked:
                logger.warning("Credential for %s was revoked but the account could not be deleted: %s", user_id, exc)
                raise InconsistentStateError(
                    user_id, f"Credential for {user_id} was revoked but the account was not deleted"
                ) from exc
            raise

        if self._database.get_account(user_id) is not None:
            logger.warning("Account %s still present after deletion", user_id)
            raise InconsistentStateError(user_id, f"Account {user_id} is still present after deletion")

        logger.info(
            "Deleted account %s (%s) by %s: %s",
            user_id,
            removed.lifecycle_label,
            actor_id,
            result.entry.reason,
        )
        return removed

    def _apply(self, action: str, user_id: str, actor_id: Optional[str], compute: Compute) -> Account:
        account = self.require_account(user_id)
        try:
            result = compute(account, self._clock())
        except TransitionError as exc:
            logger.warning("Refused %s of %s for %s: %s", action, user_id, actor_id, exc)
            raise

        if result.account is None:
            raise ValueError(f"{action} does not produce an account; use delete()")
        written = self._database.apply_transition(result, expected_version=account.version)
        self._verify(result.account, written)
        logger.info(
            "Account %s: %s -> %s (%s by %s)",
            user_id,
            account.lifecycle_label,
            written.lifecycle_label,
            action,
            actor_id,
        )
        return written

    def _verify(self, expected: Account, written: Account) -> None:
        stored = self._database.get_account(expected.user_id)
        if stored is None:
            logger.warning("Account %s disappeared right after a write", expected.user_id)
            raise InconsistentStateError(expected.user_id, f"Account {expected.user_id} disappeared after write")
        if stored.version > written.version:
            # A later write already superseded ours.
            return
        if not _matches(expected, stored):
            logger.warning(
                "Verification read for %s returned %s, expected %s",
                expected.user_id,
                stored.lifecycle_label,
                expected.lifecycle_label,
            )
            raise InconsistentStateError(
                expected.user_id,
                f"Account {expected.user_id} did not reach the expected state after write",
            )


__all__ = ["InconsistentStateError", "LifecycleService"]
