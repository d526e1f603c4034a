"""Resolve which screen an account should currently be looking at."""
from __future__ import annotations

from enum import Enum
from typing import Optional

from .models import Account, AccountStatus, ApprovalStatus, Role


class Destination(str, Enum):
    PROFILE_COMPLETION = "ProfileCompletion"
    APPROVAL_PENDING = "ApprovalPending"
    DASHBOARD = "Dashboard"
    ADMIN_PANEL = "AdminPanel"
    HOLD_PAGE = "HoldPage"
    SUSPENDED_PAGE = "SuspendedPage"
    REJECTED_PAGE = "RejectedPage"

    @property
    def path(self) -> str:
        return _PATHS[self]


_PATHS = {
    Destination.PROFILE_COMPLETION: "/profile-completion",
    Destination.APPROVAL_PENDING: "/approval-pending",
    Destination.DASHBOARD: "/",
    Destination.ADMIN_PANEL: "/admin",
    Destination.HOLD_PAGE: "/hold",
    Destination.SUSPENDED_PAGE: "/suspended",
    Destination.REJECTED_PAGE: "/rejected",
}

_STATUS_PAGES = {
    AccountStatus.ACTIVE: Destination.DASHBOARD,
    AccountStatus.HOLD: Destination.HOLD_PAGE,
    AccountStatus.SUSPEND: Destination.SUSPENDED_PAGE,
}

# Screens that only move on when a lifecycle field actually changes.
_STICKY = frozenset(
    {Destination.HOLD_PAGE, Destination.SUSPENDED_PAGE, Destination.REJECTED_PAGE}
)


def resolve_destination(account: Optional[Account]) -> Destination:
    """Map an account to exactly one destination; the first matching rule wins."""

    if account is None:
        return Destination.PROFILE_COMPLETION

    approval = account.approval_status
    if account.role is Role.ADMIN and approval is ApprovalStatus.APPROVED:
        return Destination.ADMIN_PANEL
    if approval is ApprovalStatus.PENDING:
        return Destination.APPROVAL_PENDING
    if approval is ApprovalStatus.REJECTED:
        return Destination.REJECTED_PAGE
    if approval is ApprovalStatus.APPROVED and account.status is not None:
        return _STATUS_PAGES.get(account.status, Destination.PROFILE_COMPLETION)
    return Destination.PROFILE_COMPLETION


def _lifecycle_changed(previous: Optional[Account], current: Optional[Account]) -> bool:
    if previous is None or current is None:
        return previous is not current
    return previous.lifecycle_key() != current.lifecycle_key()


def navigation_target(
    current: Optional[Destination],
    previous: Optional[Account],
    account: Optional[Account],
) -> Optional[Destination]:
    """Return where to navigate after an account change, or ``None`` to stay."""

    resolved = resolve_destination(account)
    if resolved is current:
        return None
    if current in _STICKY and not _lifecycle_changed(previous, account):
        return None
    return resolved


__all__ = ["Destination", "navigation_target", "resolve_destination"]
