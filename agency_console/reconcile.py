"""Merge pushed change events and periodic full listings into one snapshot.

Both functions are pure: they never mutate their inputs and always return a
new :class:`AccountSnapshot`. The full listing is the unit of truth, except
that it can never roll back an entry the change feed has already advanced
past the listing's revision.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

from .models import Account, AccountListing, ChangeEvent, ChangeKind


@dataclass(frozen=True)
class AccountSnapshot:
    """Locally cached view of every account known to a session."""

    accounts: Mapping[str, Account] = field(default_factory=dict)
    revision: int = 0
    # user_id -> revision at which a pushed delete removed the account
    tombstones: Mapping[str, int] = field(default_factory=dict)

    def get(self, user_id: str) -> Optional[Account]:
        return self.accounts.get(user_id)

    def ordered(self) -> List[Account]:
        """Accounts newest first, the order the admin panel lists them in."""

        return sorted(
            self.accounts.values(),
            key=lambda account: (account.created_at, account.id),
            reverse=True,
        )

    def __len__(self) -> int:
        return len(self.accounts)


def apply_event(snapshot: AccountSnapshot, event: ChangeEvent) -> AccountSnapshot:
    """Fold a single change-feed event into the snapshot."""

    user_id = event.account.user_id
    accounts: Dict[str, Account] = dict(snapshot.accounts)
    tombstones: Dict[str, int] = dict(snapshot.tombstones)
    existing = accounts.get(user_id)

    if existing is not None and existing.revision >= event.revision:
        return snapshot
    if tombstones.get(user_id, 0) >= event.revision:
        return snapshot

    if event.kind is ChangeKind.DELETE:
        accounts.pop(user_id, None)
        tombstones[user_id] = event.revision
    else:
        accounts[user_id] = event.account
        tombstones.pop(user_id, None)

    return AccountSnapshot(
        accounts=accounts,
        revision=max(snapshot.revision, event.revision),
        tombstones=tombstones,
    )


def apply_listing(snapshot: AccountSnapshot, listing: AccountListing) -> AccountSnapshot:
    """Replace the snapshot with a full listing without regressing newer pushes."""

    accounts: Dict[str, Account] = {account.user_id: account for account in listing.accounts}

    for user_id, local in snapshot.accounts.items():
        if local.revision <= listing.revision:
            continue
        fetched = accounts.get(user_id)
        if fetched is None or fetched.revision < local.revision:
            accounts[user_id] = local

    tombstones = {
        user_id: revision
        for user_id, revision in snapshot.tombstones.items()
        if revision > listing.revision
    }
    for user_id in tombstones:
        accounts.pop(user_id, None)

    return AccountSnapshot(
        accounts=accounts,
        revision=max(snapshot.revision, listing.revision),
        tombstones=tombstones,
    )


__all__ = ["AccountSnapshot", "apply_event", "apply_listing"]
