"""Domain models for the account lifecycle engine."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class Role(str, Enum):
    """Organisational role held by an account."""

    ADMIN = "admin"
    MANAGER = "manager"
    SUPERVISOR = "supervisor"
    EMPLOYEE = "employee"


class ApprovalStatus(str, Enum):
    """Whether an account may use the system at all."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class AccountStatus(str, Enum):
    """Operational availability of an approved account."""

    ACTIVE = "active"
    HOLD = "hold"
    SUSPEND = "suspend"


class NotificationType(str, Enum):
    NEW_ACCOUNT = "newAccount"
    ACCOUNT_UPDATED = "accountUpdated"


class ChangeKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class HoldWindow:
    """The hold triple: all three values exist together or not at all."""

    days: int
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.days < 1:
            raise ValueError("Hold windows must span at least one day")
        if self.end <= self.start:
            raise ValueError("Hold end must be after hold start")


@dataclass(frozen=True)
class Account:
    """Lifecycle record for one registered person.

    Invariants are checked on construction so an inconsistent record can
    never be handed to the resolver or written to the store.
    """

    id: int
    user_id: str
    role: Role
    approval_status: ApprovalStatus
    created_at: datetime
    updated_at: datetime
    status: Optional[AccountStatus] = None
    status_reason: Optional[str] = None
    employee_id: Optional[str] = None
    joining_date: Optional[date] = None
    hold: Optional[HoldWindow] = None
    user_name: Optional[str] = None
    email: Optional[str] = None
    version: int = 1
    revision: int = 0

    def __post_init__(self) -> None:
        approved = self.approval_status is ApprovalStatus.APPROVED
        if approved and self.status is None:
            raise ValueError("Approved accounts must carry an operational status")
        if not approved and self.status is not None:
            raise ValueError(
                f"Status is only meaningful for approved accounts (got {self.approval_status.value})"
            )
        if (self.status is AccountStatus.HOLD) != (self.hold is not None):
            raise ValueError("Hold window must be present exactly when status is hold")

    @property
    def hold_days(self) -> Optional[int]:
        return self.hold.days if self.hold else None

    @property
    def hold_start_date(self) -> Optional[datetime]:
        return self.hold.start if self.hold else None

    @property
    def hold_end_date(self) -> Optional[datetime]:
        return self.hold.end if self.hold else None

    @property
    def display_name(self) -> str:
        return self.user_name or self.email or self.user_id

    @property
    def lifecycle_label(self) -> str:
        """Single label combining approval and operational status."""

        if self.status is None:
            return self.approval_status.value
        return f"{self.approval_status.value}/{self.status.value}"

    def lifecycle_key(self) -> Tuple[Any, ...]:
        """Fields whose change should move an account between screens."""

        return (self.role, self.approval_status, self.status, self.hold)

    def evolve(self, **changes: Any) -> "Account":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "email": self.email,
            "role": self.role.value,
            "approval_status": self.approval_status.value,
            "status": self.status.value if self.status else None,
            "status_reason": self.status_reason,
            "employee_id": self.employee_id,
            "joining_date": self.joining_date.isoformat() if self.joining_date else None,
            "hold_days": self.hold_days,
            "hold_start_date": self.hold_start_date.isoformat() if self.hold else None,
            "hold_end_date": self.hold_end_date.isoformat() if self.hold else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "version": self.version,
            "revision": self.revision,
        }


@dataclass(frozen=True)
class ActivityLogEntry:
    """Immutable audit record written for every lifecycle transition."""

    user_id: str
    action: str
    actor_id: Optional[str]
    created_at: datetime
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    previous_role: Optional[Role] = None
    new_role: Optional[Role] = None
    reason: Optional[str] = None
    hold_days: Optional[int] = None
    hold_end_date: Optional[datetime] = None
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "action": self.action,
            "actor_id": self.actor_id,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "previous_role": self.previous_role.value if self.previous_role else None,
            "new_role": self.new_role.value if self.new_role else None,
            "reason": self.reason,
            "hold_days": self.hold_days,
            "hold_end_date": self.hold_end_date.isoformat() if self.hold_end_date else None,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class Notification:
    """Ephemeral, session-scoped message surfaced to administrators."""

    id: str
    message: str
    type: NotificationType
    timestamp: datetime
    account: Optional[Account] = None


@dataclass(frozen=True)
class ChangeEvent:
    """A committed row change delivered by the change feed."""

    kind: ChangeKind
    account: Account
    revision: int
    committed_at: datetime
    previous: Optional[Account] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "kind": self.kind.value,
            "revision": self.revision,
            "committed_at": self.committed_at.isoformat(),
            "account": self.account.to_dict(),
            "previous": self.previous.to_dict() if self.previous else None,
        }


@dataclass(frozen=True)
class AccountListing:
    """Full account list together with the store revision it was read at."""

    accounts: Tuple[Account, ...]
    revision: int = 0
    fetched_at: Optional[datetime] = field(default=None, compare=False)


__all__ = [
    "Account",
    "AccountListing",
    "AccountStatus",
    "ActivityLogEntry",
    "ApprovalStatus",
    "ChangeEvent",
    "ChangeKind",
    "HoldWindow",
    "Notification",
    "NotificationType",
    "Role",
]
