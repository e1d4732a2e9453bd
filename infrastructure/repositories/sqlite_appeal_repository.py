"""
Embedded backend for accounts and appeals.

Owns the authoritative account status and the appeal records, and enforces
the backend half of the appeal contract: one open appeal per subject
(checked and inserted in one transaction, backed by a partial unique
index), one-way resolution, and the status flip on approval committed
together with the decision.
"""

import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from use_cases.appeal_models import (
    Appeal,
    AppealFilter,
    AppealNotAllowedError,
    AppealNotFoundError,
    AppealAlreadyResolvedError,
    DuplicatePendingAppealError,
    PagedAppeals,
    ensure_transition,
    validate_new_appeal,
    validate_review,
)
from use_cases.session_models import IdentitySnapshot, format_timestamp, parse_timestamp
from use_cases.status_gate import BAN_RETENTION_DAYS, allowed_appeal_types, compute_mode

log = logging.getLogger(__name__)

REJECTION_APPEAL_OUTCOMES = ("PENDING", "APPROVED")

_APPEAL_COLUMNS = """
    id, subject_user_id, subject_provider_id, type, reason, details, status,
    admin_notes, reviewed_by, reviewed_at, created_at, updated_at
"""


def _row_to_appeal(row) -> Appeal:
    return Appeal(
        id=row[0],
        subject_user_id=row[1],
        subject_provider_id=row[2],
        type=row[3],
        reason=row[4],
        details=row[5],
        status=row[6],
        admin_notes=row[7],
        reviewed_by=row[8],
        reviewed_at=parse_timestamp(row[9]),
        created_at=parse_timestamp(row[10]),
        updated_at=parse_timestamp(row[11]),
    )


class SQLiteAppealRepository:
    def __init__(
        self,
        db_path: str,
        clock: Optional[Callable[[], datetime]] = None,
        rejection_appeal_outcome: str = "PENDING",
    ):
        if rejection_appeal_outcome not in REJECTION_APPEAL_OUTCOMES:
            raise ValueError(f"rejection_appeal_outcome must be one of {REJECTION_APPEAL_OUTCOMES}")
        self.db_path = db_path
        self.rejection_appeal_outcome = rejection_appeal_outcome
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _conn(self):
        return sqlite3.connect(self.db_path, timeout=10)

    @contextmanager
    def _transaction(self):
        """Write transaction taking the database lock up front (BEGIN IMMEDIATE)."""
        conn = sqlite3.connect(self.db_path, timeout=10, isolation_level=None)
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except Exception:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def _now_iso(self) -> str:
        return format_timestamp(self._clock())

    # --- schema ---

    def _migrate_v1(self, conn):
        conn.execute("""
            CREATE TABLE IF NOT EXISTS accounts (
                user_id TEXT PRIMARY KEY,
                email TEXT NOT NULL UNIQUE,
                name TEXT NOT NULL,
                role TEXT NOT NULL DEFAULT 'CUSTOMER',
                account_status TEXT NOT NULL DEFAULT 'ACTIVE',
                ban_reason TEXT,
                banned_at TEXT,
                provider_id TEXT,
                provider_status TEXT,
                rejection_reason TEXT
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS appeals (
                id TEXT PRIMARY KEY,
                subject_user_id TEXT NOT NULL,
                subject_provider_id TEXT,
                type TEXT NOT NULL,
                reason TEXT NOT NULL,
                details TEXT,
                status TEXT NOT NULL DEFAULT 'PENDING',
                admin_notes TEXT,
                reviewed_by TEXT,
                reviewed_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS uq_appeals_one_open_per_subject
            ON appeals (subject_user_id) WHERE status IN ('PENDING', 'UNDER_REVIEW')
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_appeals_created_at ON appeals (created_at)")

    def init_db(self):
        MIGRATIONS = [self._migrate_v1]

        with self._conn() as conn:
            conn.execute("CREATE TABLE IF NOT EXISTS schema_info (version INTEGER NOT NULL)")
            row = conn.execute("SELECT version FROM schema_info").fetchone()
            if row is None:
                conn.execute("INSERT INTO schema_info (version) VALUES (0)")
                current_version = 0
            else:
                current_version = row[0]

            for i in range(current_version, len(MIGRATIONS)):
                target_version = i + 1
                try:
                    MIGRATIONS[i](conn)
                    conn.execute("UPDATE schema_info SET version = ?", (target_version,))
                except Exception as e:
                    raise RuntimeError(f"Appeal database migration to v{target_version} failed: {e}") from e
            conn.commit()

    # --- accounts ---

    def upsert_account(self, identity: IdentitySnapshot):
        with self._conn() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO accounts
                (user_id, email, name, role, account_status, ban_reason, banned_at,
                 provider_id, provider_status, rejection_reason)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                identity.id, identity.email, identity.name, identity.role, identity.account_status,
                identity.ban_reason, format_timestamp(identity.banned_at), identity.provider_id,
                identity.provider_status, identity.rejection_reason,
            ))
            conn.commit()

    def _fetch_identity(self, conn, user_id: str) -> Optional[IdentitySnapshot]:
        row = conn.execute("""
            SELECT user_id, email, name, role, account_status, ban_reason, banned_at,
                   provider_id, provider_status, rejection_reason
            FROM accounts WHERE user_id = ?
        """, (user_id,)).fetchone()
        if not row:
            return None
        return IdentitySnapshot(
            id=row[0], email=row[1], name=row[2], role=row[3], account_status=row[4],
            ban_reason=row[5], banned_at=parse_timestamp(row[6]), provider_id=row[7],
            provider_status=row[8], rejection_reason=row[9],
        )

    def get_identity(self, user_id: str) -> Optional[IdentitySnapshot]:
        """The backend's view of /users/me for this account."""
        with self._conn() as conn:
            return self._fetch_identity(conn, user_id)

    def ban_account(self, user_id: str, reason: Optional[str] = None, banned_at: Optional[datetime] = None):
        banned_at = banned_at or self._clock()
        with self._conn() as conn:
            cur = conn.execute("""
                UPDATE accounts SET account_status = 'BANNED', ban_reason = ?, banned_at = ?
                WHERE user_id = ?
            """, (reason, format_timestamp(banned_at), user_id))
            conn.commit()
        if cur.rowcount == 0:
            raise KeyError(f"Unknown account: {user_id}")

    def set_provider_status(self, user_id: str, status: str, rejection_reason: Optional[str] = None):
        with self._conn() as conn:
            cur = conn.execute("""
                UPDATE accounts SET provider_status = ?, rejection_reason = ?
                WHERE user_id = ? AND role = 'PROVIDER'
            """, (status, rejection_reason, user_id))
            conn.commit()
        if cur.rowcount == 0:
            raise KeyError(f"Unknown provider account: {user_id}")

    def delete_expired_bans(self, now: Optional[datetime] = None, retention_days: int = BAN_RETENTION_DAYS) -> List[str]:
        """Purge accounts banned for the whole retention window. Appeals are kept as the audit trail."""
        cutoff = format_timestamp((now or self._clock()) - timedelta(days=retention_days))
        with self._transaction() as conn:
            rows = conn.execute("""
                SELECT user_id FROM accounts
                WHERE account_status = 'BANNED' AND banned_at IS NOT NULL AND banned_at <= ?
            """, (cutoff,)).fetchall()
            user_ids = [r[0] for r in rows]
            for user_id in user_ids:
                conn.execute("DELETE FROM accounts WHERE user_id = ?", (user_id,))
        return user_ids

    # --- appeals ---

    def create_appeal(self, subject: IdentitySnapshot, appeal_type: str, reason: str,
                      details: Optional[str] = None) -> Appeal:
        reason, details = validate_new_appeal(appeal_type, reason, details)
        now_iso = self._now_iso()
        appeal_id = uuid.uuid4().hex

        with self._transaction() as conn:
            current = self._fetch_identity(conn, subject.id)
            if current is None:
                raise AppealNotAllowedError("Account not found")
            mode = compute_mode(current)
            if appeal_type not in allowed_appeal_types(mode):
                raise AppealNotAllowedError(f"{appeal_type} is not allowed while {mode.value}")

            existing = conn.execute("""
                SELECT id FROM appeals
                WHERE subject_user_id = ? AND status IN ('PENDING', 'UNDER_REVIEW')
            """, (current.id,)).fetchone()
            if existing:
                raise DuplicatePendingAppealError("You already have a pending appeal")

            provider_id = current.provider_id if appeal_type in ("SUSPENSION_APPEAL", "REJECTION_APPEAL") else None
            try:
                conn.execute(f"""
                    INSERT INTO appeals ({_APPEAL_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, 'PENDING', NULL, NULL, NULL, ?, ?)
                """, (appeal_id, current.id, provider_id, appeal_type, reason, details, now_iso, now_iso))
            except sqlite3.IntegrityError as e:
                raise DuplicatePendingAppealError("You already have a pending appeal") from e

            row = conn.execute(f"SELECT {_APPEAL_COLUMNS} FROM appeals WHERE id = ?", (appeal_id,)).fetchone()

        log.info(f"Appeal {appeal_id} ({appeal_type}) created for user {current.id}")
        return _row_to_appeal(row)

    def get_my_appeals(self, subject: IdentitySnapshot) -> List[Appeal]:
        with self._conn() as conn:
            rows = conn.execute(f"""
                SELECT {_APPEAL_COLUMNS} FROM appeals
                WHERE subject_user_id = ?
                ORDER BY created_at DESC, rowid DESC
            """, (subject.id,)).fetchall()
        return [_row_to_appeal(r) for r in rows]

    def get_appeal(self, appeal_id: str) -> Appeal:
        with self._conn() as conn:
            row = conn.execute(f"SELECT {_APPEAL_COLUMNS} FROM appeals WHERE id = ?", (appeal_id,)).fetchone()
        if not row:
            raise AppealNotFoundError(f"Appeal not found: {appeal_id}")
        return _row_to_appeal(row)

    def list_appeals(self, appeal_filter: AppealFilter) -> PagedAppeals:
        appeal_filter.validate()
        where = " WHERE 1=1"
        params = []
        if appeal_filter.status:
            where += " AND status = ?"
            params.append(appeal_filter.status)
        if appeal_filter.type:
            where += " AND type = ?"
            params.append(appeal_filter.type)

        with self._conn() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM appeals{where}", tuple(params)).fetchone()[0]
            rows = conn.execute(
                f"SELECT {_APPEAL_COLUMNS} FROM appeals{where} ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
                tuple(params) + (appeal_filter.limit, appeal_filter.offset),
            ).fetchall()

        return PagedAppeals(
            data=tuple(_row_to_appeal(r) for r in rows),
            page=appeal_filter.page,
            limit=appeal_filter.limit,
            total=total,
        )

    def review_appeal(self, appeal_id: str, status: str, admin_notes: Optional[str],
                      reviewer: IdentitySnapshot) -> Appeal:
        admin_notes = validate_review(status, admin_notes)
        now_iso = self._now_iso()

        with self._transaction() as conn:
            row = conn.execute(f"SELECT {_APPEAL_COLUMNS} FROM appeals WHERE id = ?", (appeal_id,)).fetchone()
            if not row:
                raise AppealNotFoundError(f"Appeal not found: {appeal_id}")
            appeal = _row_to_appeal(row)
            ensure_transition(appeal.status, status)

            cur = conn.execute("""
                UPDATE appeals
                SET status = ?, admin_notes = ?, reviewed_by = ?, reviewed_at = ?, updated_at = ?
                WHERE id = ? AND status = ?
            """, (status, admin_notes, reviewer.id, now_iso, now_iso, appeal_id, appeal.status))
            if cur.rowcount != 1:
                raise AppealAlreadyResolvedError(f"Appeal {appeal_id} changed during review")

            if status == "APPROVED":
                self._apply_approval(conn, appeal)

            row = conn.execute(f"SELECT {_APPEAL_COLUMNS} FROM appeals WHERE id = ?", (appeal_id,)).fetchone()

        log.info(f"Appeal {appeal_id} reviewed by {reviewer.id}: {appeal.status} -> {status}")
        return _row_to_appeal(row)

    def _apply_approval(self, conn, appeal: Appeal):
        if appeal.type == "UNBAN_REQUEST":
            conn.execute("""
                UPDATE accounts SET account_status = 'ACTIVE', ban_reason = NULL, banned_at = NULL
                WHERE user_id = ?
            """, (appeal.subject_user_id,))
        elif appeal.type == "SUSPENSION_APPEAL":
            conn.execute("""
                UPDATE accounts SET provider_status = 'APPROVED'
                WHERE user_id = ? AND role = 'PROVIDER'
            """, (appeal.subject_user_id,))
        elif appeal.type == "REJECTION_APPEAL":
            conn.execute("""
                UPDATE accounts SET provider_status = ?, rejection_reason = NULL
                WHERE user_id = ? AND role = 'PROVIDER'
            """, (self.rejection_appeal_outcome, appeal.subject_user_id))
        # OTHER records the decision only; any status change is a manual operator action.
