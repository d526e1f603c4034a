"""SQLite-backed store for account lifecycle records and their audit trail."""
from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Callable, Iterator, List, Optional

from .feed import ChangeFeed
from .models import (
    Account,
    AccountListing,
    AccountStatus,
    ActivityLogEntry,
    ApprovalStatus,
    ChangeEvent,
    ChangeKind,
    HoldWindow,
    Role,
)
from .transitions import LastAdminProtected, TransitionResult


class StoreError(RuntimeError):
    """Base class for persistence failures."""

    retryable = False


class StoreUnavailableError(StoreError):
    """The database could not be reached or the write did not go through."""

    retryable = True


class AccountNotFoundError(StoreError, LookupError):
    """No account exists for the requested identity."""


class DuplicateAccountError(StoreError, ValueError):
    """An account already exists for the identity-provider subject."""


class StaleAccountVersion(StoreError):
    """The account changed between the read and the attempted write."""

    def __init__(self, user_id: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Account {user_id} is at version {actual}, expected {expected}; reload and retry"
        )
        self.user_id = user_id
        self.expected = expected
        self.actual = actual


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def resolve_database_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path for the account database."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "console.sqlite3").resolve(strict=False)


def _current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _parse_date(value: Optional[str]) -> Optional[date]:
    if value is None:
        return None
    return date.fromisoformat(value)


def _is_approved_admin(account: Account) -> bool:
    return account.role is Role.ADMIN and account.approval_status is ApprovalStatus.APPROVED


@dataclass
class _WriteBatch:
    conn: sqlite3.Connection
    events: List[ChangeEvent] = field(default_factory=list)


class Database:
    """Account record store.

    Writes are serialised with a process-wide lock and ``BEGIN IMMEDIATE``
    transactions. Each committed write bumps the account's ``version`` and the
    store-wide ``revision``, and is published on :attr:`feed` before the lock
    is released.
    """

    def __init__(
        self,
        path: Path,
        *,
        feed: Optional[ChangeFeed] = None,
        clock: Callable[[], datetime] = _current_timestamp,
    ) -> None:
        _ensure_directory(path)
        self._path = path
        self._clock = clock
        self._write_lock = threading.RLock()
        self.feed = feed or ChangeFeed()

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, check_same_thread=False, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"Unable to open account store: {exc}") from exc
        try:
            yield conn
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"Account store read failed: {exc}") from exc
        finally:
            conn.close()

    @contextmanager
    def _writer(self) -> Iterator[_WriteBatch]:
        with self._write_lock:
            with self._reader() as conn:
                batch = _WriteBatch(conn)
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield batch
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
            # Published after commit but before the lock is released.
            for event in batch.events:
                self.feed.publish(event)

    def initialize(self) -> None:
        """Create the required tables if they do not already exist."""

        with self._reader() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL UNIQUE,
                    user_name TEXT,
                    email TEXT,
                    role TEXT NOT NULL DEFAULT 'employee',
                    approval_status TEXT NOT NULL DEFAULT 'pending',
                    status TEXT,
                    status_reason TEXT,
                    employee_id TEXT UNIQUE,
                    joining_date TEXT,
                    hold_days INTEGER,
                    hold_start_date TEXT,
                    hold_end_date TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 1,
                    revision INTEGER NOT NULL DEFAULT 0,
                    CHECK ((approval_status = 'approved') = (status IS NOT NULL)),
                    CHECK (
                        (hold_days IS NULL AND hold_start_date IS NULL AND hold_end_date IS NULL)
                        OR (status = 'hold' AND hold_days IS NOT NULL
                            AND hold_start_date IS NOT NULL AND hold_end_date IS NOT NULL)
                    )
                );

                CREATE TABLE IF NOT EXISTS activity_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL REFERENCES accounts(user_id) ON DELETE CASCADE,
                    action TEXT NOT NULL,
                    actor_id TEXT,
                    previous_status TEXT,
                    new_status TEXT,
                    previous_role TEXT,
                    new_role TEXT,
                    reason TEXT,
                    hold_days INTEGER,
                    hold_end_date TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS store_meta (
                    key TEXT PRIMARY KEY,
                    value INTEGER NOT NULL
                );

                INSERT OR IGNORE INTO store_meta (key, value) VALUES ('revision', 0);

                CREATE INDEX IF NOT EXISTS idx_accounts_created_at ON accounts(created_at);
                CREATE INDEX IF NOT EXISTS idx_activity_log_user_id ON activity_log(user_id);
                """
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_account(self, user_id: str) -> Optional[Account]:
        with self._reader() as conn:
            row = conn.execute("SELECT * FROM accounts WHERE user_id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_account(row)

    def list_accounts(self) -> AccountListing:
        """Return every account, newest first, with the revision it reflects."""

        with self._reader() as conn:
            conn.execute("BEGIN")
            try:
                rows = conn.execute(
                    "SELECT * FROM accounts ORDER BY created_at DESC, id DESC"
                ).fetchall()
                revision = self._current_revision(conn)
            finally:
                conn.execute("COMMIT")
        return AccountListing(
            accounts=tuple(self._row_to_account(row) for row in rows),
            revision=revision,
            fetched_at=self._clock(),
        )

    def count_admins(self) -> int:
        with self._reader() as conn:
            return self._count_admins(conn)

    def fetch_activity_log(
        self,
        user_id: str,
        *,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[ActivityLogEntry]:
        """Return audit entries for an account, newest first."""

        query = "SELECT * FROM activity_log WHERE user_id = ? ORDER BY id DESC"
        params: List[object] = [user_id]
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        elif offset:
            query += " LIMIT -1 OFFSET ?"
            params.append(offset)

        with self._reader() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_entry(row) for row in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def create_account(
        self,
        user_id: str,
        *,
        user_name: Optional[str] = None,
        email: Optional[str] = None,
        role: Role = Role.EMPLOYEE,
    ) -> Account:
        """Register a new pending account for an identity-provider subject."""

        normalized_id = user_id.strip()
        if not normalized_id:
            raise ValueError("user_id must not be empty")
        normalized_email = email.strip().lower() if email else None
        normalized_name = user_name.strip() if user_name else None
        created_at = self._clock()

        with self._writer() as batch:
            conn = batch.conn
            revision = self._next_revision(conn)
            try:
                conn.execute(
                    """
                    INSERT INTO accounts (
                        user_id, user_name, email, role, approval_status,
                        created_at, updated_at, version, revision
                    )
                    VALUES (?, ?, ?, ?, 'pending', ?, ?, 1, ?)
                    """,
                    (
                        normalized_id,
                        normalized_name or None,
                        normalized_email,
                        role.value,
                        _serialize_datetime(created_at),
                        _serialize_datetime(created_at),
                        revision,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateAccountError(
                    f"An account already exists for {normalized_id}"
                ) from exc

            account = self._load_locked(conn, normalized_id)
            batch.events.append(self._event(ChangeKind.INSERT, account, revision))
        return account

    def apply_transition(
        self,
        result: TransitionResult,
        *,
        expected_version: Optional[int] = None,
    ) -> Account:
        """Persist the next account state and append its audit entry atomically."""

        updated = result.account
        if updated is None:
            raise ValueError("Use delete_account() for transitions that remove the record")

        with self._writer() as batch:
            conn = batch.conn
            current = self._load_locked(conn, updated.user_id)
            self._check_version(current, expected_version)
            if _is_approved_admin(current) and updated.role is not Role.ADMIN:
                if self._count_admins(conn) <= 1:
                    raise LastAdminProtected("Cannot demote the last remaining admin account")

            revision = self._next_revision(conn)
            hold = updated.hold
            try:
                conn.execute(
                    """
                    UPDATE accounts
                       SET role = ?, approval_status = ?, status = ?, status_reason = ?,
                           employee_id = COALESCE(employee_id, ?),
                           joining_date = COALESCE(joining_date, ?),
                           hold_days = ?, hold_start_date = ?, hold_end_date = ?,
                           updated_at = ?, version = version + 1, revision = ?
                     WHERE user_id = ?
                    """,
                    (
                        updated.role.value,
                        updated.approval_status.value,
                        updated.status.value if updated.status else None,
                        updated.status_reason,
                        updated.employee_id,
                        updated.joining_date.isoformat() if updated.joining_date else None,
                        hold.days if hold else None,
                        _serialize_datetime(hold.start) if hold else None,
                        _serialize_datetime(hold.end) if hold else None,
                        _serialize_datetime(updated.updated_at),
                        revision,
                        updated.user_id,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise StoreError(f"Rejected write for {updated.user_id}: {exc}") from exc

            self._append_entry(conn, result.entry)
            account = self._load_locked(conn, updated.user_id)
            batch.events.append(self._event(ChangeKind.UPDATE, account, revision, previous=current))
        return account

    def delete_account(
        self,
        user_id: str,
        *,
        expected_version: Optional[int] = None,
        before_commit: Optional[Callable[[Account], None]] = None,
    ) -> Account:
        """Remove an account; its audit entries are removed by cascade.

        ``before_commit`` runs inside the write transaction once the version and
        last-admin checks have passed. If it raises, nothing is deleted.
        """

        with self._writer() as batch:
            conn = batch.conn
            current = self._load_locked(conn, user_id)
            self._check_version(current, expected_version)
            if _is_approved_admin(current) and self._count_admins(conn) <= 1:
                raise LastAdminProtected("Cannot delete the last remaining admin account")

            if before_commit is not None:
                before_commit(current)

            revision = self._next_revision(conn)
            conn.execute("DELETE FROM accounts WHERE user_id = ?", (user_id,))
            batch.events.append(self._event(ChangeKind.DELETE, current, revision))
        return current

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _event(
        self,
        kind: ChangeKind,
        account: Account,
        revision: int,
        *,
        previous: Optional[Account] = None,
    ) -> ChangeEvent:
        return ChangeEvent(
            kind=kind,
            account=account,
            revision=revision,
            committed_at=self._clock(),
            previous=previous,
        )

    def _load_locked(self, conn: sqlite3.Connection, user_id: str) -> Account:
        row = conn.execute("SELECT * FROM accounts WHERE user_id = ?", (user_id,)).fetchone()
        if row is None:
            raise AccountNotFoundError(f"No account found for {user_id}")
        return self._row_to_account(row)

    @staticmethod
    def _check_version(current: Account, expected: Optional[int]) -> None:
        if expected is not None and current.version != expected:
            raise StaleAccountVersion(current.user_id, expected, current.version)

    @staticmethod
    def _count_admins(conn: sqlite3.Connection) -> int:
        row = conn.execute(
            "SELECT COUNT(*) AS total FROM accounts WHERE role = 'admin' AND approval_status = 'approved'"
        ).fetchone()
        return int(row["total"])

    @staticmethod
    def _current_revision(conn: sqlite3.Connection) -> int:
        row = conn.execute("SELECT value FROM store_meta WHERE key = 'revision'").fetchone()
        return int(row["value"]) if row is not None else 0

    def _next_revision(self, conn: sqlite3.Connection) -> int:
        conn.execute("UPDATE store_meta SET value = value + 1 WHERE key = 'revision'")
        return self._current_revision(conn)

    @staticmethod
    def _append_entry(conn: sqlite3.Connection, entry: ActivityLogEntry) -> None:
        conn.execute(
            """
            INSERT INTO activity_log (
                user_id, action, actor_id, previous_status, new_status,
                previous_role, new_role, reason, hold_days, hold_end_date, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.user_id,
                entry.action,
                entry.actor_id,
                entry.previous_status,
                entry.new_status,
                entry.previous_role.value if entry.previous_role else None,
                entry.new_role.value if entry.new_role else None,
                entry.reason,
                entry.hold_days,
                _serialize_datetime(entry.hold_end_date),
                _serialize_datetime(entry.created_at),
            ),
        )

    def _row_to_account(self, row: sqlite3.Row) -> Account:
        hold: Optional[HoldWindow] = None
        if row["hold_days"] is not None:
            hold = HoldWindow(
                days=int(row["hold_days"]),
                start=_parse_datetime(row["hold_start_date"]),
                end=_parse_datetime(row["hold_end_date"]),
            )
        return Account(
            id=int(row["id"]),
            user_id=str(row["user_id"]),
            user_name=row["user_name"],
            email=row["email"],
            role=Role(row["role"]),
            approval_status=ApprovalStatus(row["approval_status"]),
            status=AccountStatus(row["status"]) if row["status"] else None,
            status_reason=row["status_reason"],
            employee_id=row["employee_id"],
            joining_date=_parse_date(row["joining_date"]),
            hold=hold,
            created_at=_parse_datetime(str(row["created_at"])),
            updated_at=_parse_datetime(str(row["updated_at"])),
            version=int(row["version"]),
            revision=int(row["revision"]),
        )

    def _row_to_entry(self, row: sqlite3.Row) -> ActivityLogEntry:
        return ActivityLogEntry(
            id=int(row["id"]),
            user_id=str(row["user_id"]),
            action=str(row["action"]),
            actor_id=row["actor_id"],
            previous_status=row["previous_status"],
            new_status=row["new_status"],
            previous_role=Role(row["previous_role"]) if row["previous_role"] else None,
            new_role=Role(row["new_role"]) if row["new_role"] else None,
            reason=row["reason"],
            hold_days=row["hold_days"],
            hold_end_date=_parse_datetime(row["hold_end_date"]),
            created_at=_parse_datetime(str(row["created_at"])),
        )


__all__ = [
    "AccountNotFoundError",
    "Database",
    "DuplicateAccountError",
    "StaleAccountVersion",
    "StoreError",
    "StoreUnavailableError",
    "resolve_database_path",
]
