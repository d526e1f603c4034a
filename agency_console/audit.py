"""Shaping of audit entries and administrator-facing change descriptions."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from .models import Account, AccountStatus, ActivityLogEntry, ApprovalStatus, ChangeEvent, ChangeKind


def build_entry(
    action: str,
    previous: Account,
    current: Optional[Account],
    *,
    actor_id: Optional[str],
    at: datetime,
    reason: Optional[str] = None,
) -> ActivityLogEntry:
    """Record the fields that changed between two versions of an account.

    ``current`` is ``None`` for deletions.
    """

    new_status = current.lifecycle_label if current is not None else None
    previous_status = previous.lifecycle_label
    status_changed = current is None or previous_status != new_status

    new_role = current.role if current is not None else None
    role_changed = current is not None and current.role is not previous.role

    hold = current.hold if current is not None else None

    return ActivityLogEntry(
        user_id=previous.user_id,
        action=action,
        actor_id=actor_id,
        created_at=at,
        previous_status=previous_status if status_changed else None,
        new_status=new_status if status_changed else None,
        previous_role=previous.role if role_changed else None,
        new_role=new_role if role_changed else None,
        reason=reason,
        hold_days=hold.days if hold else None,
        hold_end_date=hold.end if hold else None,
    )


def describe_change(event: ChangeEvent) -> str:
    """Return the one-line message shown in the admin notification queue."""

    account = event.account
    name = account.display_name

    if event.kind is ChangeKind.INSERT:
        return f"New account registration: {name}"
    if event.kind is ChangeKind.DELETE:
        return f"{name} was deleted"

    previous = event.previous
    if previous is None:
        return f"{name} was updated"

    if previous.approval_status is not account.approval_status:
        if account.approval_status is ApprovalStatus.APPROVED:
            return f"{name} was approved"
        if account.approval_status is ApprovalStatus.REJECTED:
            return f"{name} was rejected"
        return f"{name} is awaiting approval"

    if previous.status is not account.status:
        if account.status is AccountStatus.HOLD and account.hold is not None:
            return f"{name} was placed on hold for {account.hold.days} day(s)"
        if account.status is AccountStatus.SUSPEND:
            return f"{name} was suspended"
        if account.status is AccountStatus.ACTIVE:
            return f"{name} was activated"

    if previous.role is not account.role:
        return f"{name} role changed from {previous.role.value} to {account.role.value}"

    if previous.hold != account.hold and account.hold is not None:
        return f"{name} hold was updated"

    return f"{name} was updated"


__all__ = ["build_entry", "describe_change"]
