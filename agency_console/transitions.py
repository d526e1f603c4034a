"""Transition engine for account lifecycle changes.

Every operation takes the current :class:`Account`, validates the request and
returns a :class:`TransitionResult` holding the next record together with the
audit entry describing it. Nothing here performs I/O or reads the clock on
its own; callers pass ``now`` explicitly.
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Optional

from .audit import build_entry
from .models import Account, AccountStatus, ActivityLogEntry, ApprovalStatus, Role
from .scheduling import DEFAULT_HOLD_PRESETS, HoldWindowError, compute_hold_window, hold_elapsed

_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


class TransitionError(Exception):
    """Base class for business-rule failures raised by the engine."""

    code = "transition_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidStateForTransition(TransitionError):
    code = "invalid_state_for_transition"


class MissingReason(TransitionError):
    code = "missing_reason"


class InvalidHoldWindow(TransitionError):
    code = "invalid_hold_window"


class LastAdminProtected(TransitionError):
    code = "last_admin_protected"


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of a successful transition.

    ``account`` is ``None`` when the transition removes the record.
    """

    account: Optional[Account]
    entry: ActivityLogEntry


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


class EmployeeIdGenerator:
    """Issue unique, time-ordered employee identifiers.

    Identifiers embed the approval year and a strictly increasing millisecond
    counter, so two approvals in the same millisecond still differ.
    """

    def __init__(self, prefix: str = "EMP", *, clock: Callable[[], float] = time.time) -> None:
        self._prefix = prefix
        self._clock = clock
        self._last = 0
        self._lock = threading.Lock()

    def __call__(self, now: datetime) -> str:
        with self._lock:
            tick = max(int(self._clock() * 1000), self._last + 1)
            self._last = tick
        return f"{self._prefix}{now.year}-{_to_base36(tick)}"


def _require_reason(reason: Optional[str], action: str) -> str:
    cleaned = (reason or "").strip()
    if not cleaned:
        raise MissingReason(f"A reason is required to {action} an account")
    return cleaned


def _require_approval(account: Account, expected: ApprovalStatus, action: str) -> None:
    if account.approval_status is not expected:
        raise InvalidStateForTransition(
            f"Cannot {action} an account whose approval status is "
            f"{account.approval_status.value} (expected {expected.value})"
        )


def _commit(
    action: str,
    account: Account,
    updated: Account,
    *,
    actor_id: Optional[str],
    now: datetime,
    reason: Optional[str] = None,
) -> TransitionResult:
    entry = build_entry(action, account, updated, actor_id=actor_id, at=now, reason=reason)
    return TransitionResult(account=updated, entry=entry)


def approve(
    account: Account,
    *,
    actor_id: Optional[str],
    now: datetime,
    employee_ids: Callable[[datetime], str],
) -> TransitionResult:
    _require_approval(account, ApprovalStatus.PENDING, "approve")
    updated = account.evolve(
        approval_status=ApprovalStatus.APPROVED,
        status=AccountStatus.ACTIVE,
        status_reason=None,
        hold=None,
        employee_id=account.employee_id or employee_ids(now),
        joining_date=account.joining_date or now.date(),
        updated_at=now,
    )
    return _commit("approve", account, updated, actor_id=actor_id, now=now)


def reject(
    account: Account,
    reason: Optional[str],
    *,
    actor_id: Optional[str],
    now: datetime,
) -> TransitionResult:
    _require_approval(account, ApprovalStatus.PENDING, "reject")
    cleaned = _require_reason(reason, "reject")
    updated = account.evolve(
        approval_status=ApprovalStatus.REJECTED,
        status=None,
        hold=None,
        status_reason=cleaned,
        updated_at=now,
    )
    return _commit("reject", account, updated, actor_id=actor_id, now=now, reason=cleaned)


def hold(
    account: Account,
    reason: Optional[str],
    *,
    actor_id: Optional[str],
    now: datetime,
    days: Optional[int] = None,
    until: Optional[datetime] = None,
    allowed_days: Iterable[int] = DEFAULT_HOLD_PRESETS,
) -> TransitionResult:
    _require_approval(account, ApprovalStatus.APPROVED, "hold")
    cleaned = _require_reason(reason, "hold")
    try:
        window = compute_hold_window(now, days=days, until=until, allowed_days=allowed_days)
    except HoldWindowError as exc:
        raise InvalidHoldWindow(str(exc)) from exc

    updated = account.evolve(
        status=AccountStatus.HOLD,
        hold=window,
        status_reason=cleaned,
        updated_at=now,
    )
    return _commit("hold", account, updated, actor_id=actor_id, now=now, reason=cleaned)


def suspend(
    account: Account,
    reason: Optional[str],
    *,
    actor_id: Optional[str],
    now: datetime,
) -> TransitionResult:
    _require_approval(account, ApprovalStatus.APPROVED, "suspend")
    cleaned = _require_reason(reason, "suspend")
    updated = account.evolve(
        status=AccountStatus.SUSPEND,
        hold=None,
        status_reason=cleaned,
        updated_at=now,
    )
    return _commit("suspend", account, updated, actor_id=actor_id, now=now, reason=cleaned)


def _reactivate(account: Account, *, note: str, now: datetime) -> Account:
    return account.evolve(
        status=AccountStatus.ACTIVE,
        hold=None,
        status_reason=note,
        updated_at=now,
    )


def activate(
    account: Account,
    *,
    actor_id: Optional[str],
    now: datetime,
) -> TransitionResult:
    _require_approval(account, ApprovalStatus.APPROVED, "activate")
    if account.status not in (AccountStatus.HOLD, AccountStatus.SUSPEND):
        raise InvalidStateForTransition("Only held or suspended accounts can be activated")

    note = f"Account activated by admin on {now.isoformat(timespec='seconds')}"
    updated = _reactivate(account, note=note, now=now)
    return _commit("activate", account, updated, actor_id=actor_id, now=now, reason=note)


def self_activate(account: Account, *, now: datetime) -> TransitionResult:
    """Let a held account reactivate itself once its hold window has run out."""

    _require_approval(account, ApprovalStatus.APPROVED, "activate")
    if account.status is not AccountStatus.HOLD or account.hold is None:
        raise InvalidStateForTransition("Only held accounts can reactivate themselves")
    if not hold_elapsed(account.hold, now):
        raise InvalidHoldWindow("The hold period has not finished yet")

    note = f"Account activated by user on {now.isoformat(timespec='seconds')}"
    updated = _reactivate(account, note=note, now=now)
    return _commit("self_activate", account, updated, actor_id=account.user_id, now=now, reason=note)


def _guard_last_admin(account: Account, admin_count: int, action: str) -> None:
    # admin_count covers approved admins only; pending or rejected ones cannot sign in.
    approved_admin = account.role is Role.ADMIN and account.approval_status is ApprovalStatus.APPROVED
    if approved_admin and admin_count <= 1:
        raise LastAdminProtected(f"Cannot {action} the last remaining admin account")


def change_role(
    account: Account,
    new_role: Role,
    *,
    actor_id: Optional[str],
    now: datetime,
    admin_count: int,
) -> TransitionResult:
    if new_role is account.role:
        raise InvalidStateForTransition(f"Account already has the {new_role.value} role")
    _guard_last_admin(account, admin_count, "demote")
    updated = account.evolve(role=new_role, updated_at=now)
    return _commit("change_role", account, updated, actor_id=actor_id, now=now)


def delete(
    account: Account,
    reason: Optional[str],
    *,
    actor_id: Optional[str],
    now: datetime,
    admin_count: int,
) -> TransitionResult:
    cleaned = _require_reason(reason, "delete")
    _guard_last_admin(account, admin_count, "delete")
    entry = build_entry("delete", account, None, actor_id=actor_id, at=now, reason=cleaned)
    return TransitionResult(account=None, entry=entry)


__all__ = [
    "EmployeeIdGenerator",
    "InvalidHoldWindow",
    "InvalidStateForTransition",
    "LastAdminProtected",
    "MissingReason",
    "TransitionError",
    "TransitionResult",
    "activate",
    "approve",
    "change_role",
    "delete",
    "hold",
    "reject",
    "self_activate",
    "suspend",
]
