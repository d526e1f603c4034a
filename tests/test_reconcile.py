from __future__ import annotations

from datetime import datetime, timedelta, timezone

from agency_console.models import (
    Account,
    AccountListing,
    AccountStatus,
    ApprovalStatus,
    ChangeEvent,
    ChangeKind,
    Role,
)
from agency_console.reconcile import AccountSnapshot, apply_event, apply_listing

NOW = datetime(2024, 7, 1, 12, 0, tzinfo=timezone.utc)


def _account(user_id: str, revision: int, *, version: int = 1, approved: bool = False, offset: int = 0) -> Account:
    return Account(
        id=revision,
        user_id=user_id,
        role=Role.EMPLOYEE,
        approval_status=ApprovalStatus.APPROVED if approved else ApprovalStatus.PENDING,
        status=AccountStatus.ACTIVE if approved else None,
        created_at=NOW + timedelta(minutes=offset),
        updated_at=NOW,
        version=version,
        revision=revision,
    )


def _event(kind: ChangeKind, account: Account) -> ChangeEvent:
    return ChangeEvent(kind=kind, account=account, revision=account.revision, committed_at=NOW)


def test_events_are_applied_in_revision_order() -> None:
    snapshot = apply_event(AccountSnapshot(), _event(ChangeKind.INSERT, _account("a", 1)))
    snapshot = apply_event(snapshot, _event(ChangeKind.UPDATE, _account("a", 2, version=2, approved=True)))

    assert snapshot.get("a").approval_status is ApprovalStatus.APPROVED
    assert snapshot.revision == 2


def test_stale_event_is_ignored() -> None:
    snapshot = apply_event(AccountSnapshot(), _event(ChangeKind.UPDATE, _account("a", 5, version=3, approved=True)))
    unchanged = apply_event(snapshot, _event(ChangeKind.UPDATE, _account("a", 4, version=2)))
    assert unchanged is snapshot


def test_delete_leaves_tombstone_that_blocks_late_updates() -> None:
    snapshot = apply_event(AccountSnapshot(), _event(ChangeKind.INSERT, _account("a", 1)))
    snapshot = apply_event(snapshot, _event(ChangeKind.DELETE, _account("a", 3)))

    assert snapshot.get("a") is None
    late = apply_event(snapshot, _event(ChangeKind.UPDATE, _account("a", 2, version=2, approved=True)))
    assert late.get("a") is None


def test_listing_replaces_snapshot_wholesale() -> None:
    snapshot = apply_event(AccountSnapshot(), _event(ChangeKind.INSERT, _account("gone", 1)))
    listing = AccountListing(accounts=(_account("b", 2),), revision=2)

    merged = apply_listing(snapshot, listing)
    assert [account.user_id for account in merged.ordered()] == ["b"]
    assert merged.revision == 2


def test_listing_does_not_roll_back_newer_push() -> None:
    pushed = _account("a", 6, version=2, approved=True)
    snapshot = apply_event(AccountSnapshot(), _event(ChangeKind.UPDATE, pushed))
    listing = AccountListing(accounts=(_account("a", 1),), revision=5)

    merged = apply_listing(snapshot, listing)
    assert merged.get("a") == pushed


def test_listing_does_not_resurrect_newer_delete() -> None:
    snapshot = apply_event(AccountSnapshot(), _event(ChangeKind.DELETE, _account("a", 9)))
    listing = AccountListing(accounts=(_account("a", 4),), revision=8)

    merged = apply_listing(snapshot, listing)
    assert merged.get("a") is None
    assert merged.tombstones == {"a": 9}

    caught_up = apply_listing(merged, AccountListing(accounts=(), revision=9))
    assert caught_up.tombstones == {}


def test_ordered_lists_newest_first() -> None:
    listing = AccountListing(
        accounts=(_account("old", 1, offset=0), _account("new", 2, offset=10)),
        revision=2,
    )
    merged = apply_listing(AccountSnapshot(), listing)
    assert [account.user_id for account in merged.ordered()] == ["new", "old"]
