"""
Audit trail for session and appeal events.

Writes never raise: a broken audit database is logged and the calling
operation carries on. Metadata is restricted to a small key whitelist and
values that look like credentials are dropped before they are stored.
"""

import json
import logging
import re
import sqlite3
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional

log = logging.getLogger(__name__)


class AuditAction(str, Enum):
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAIL = "LOGIN_FAIL"
    LOGOUT = "LOGOUT"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    TOKEN_REFRESH = "TOKEN_REFRESH"
    TOKEN_REFRESH_FAIL = "TOKEN_REFRESH_FAIL"
    RBAC_DENIED = "RBAC_DENIED"
    APPEAL_CREATE = "APPEAL_CREATE"
    APPEAL_DUPLICATE = "APPEAL_DUPLICATE"
    APPEAL_REVIEW = "APPEAL_REVIEW"
    BANNED_ACCOUNT_PURGE = "BANNED_ACCOUNT_PURGE"
    SYSTEM_ERROR = "SYSTEM_ERROR"


ALLOWED_METADATA_KEYS = frozenset({
    "reason", "mode", "appeal_type", "new_status", "old_status",
    "error_message", "target_action", "role", "status", "deleted",
})

MAX_METADATA_CHARS = 2000

_CREDENTIAL_WORDS = ("token", "password", "bearer", "secret")
_JWT_RE = re.compile(r"eyJ[\w-]+\.[\w-]+\.[\w-]+")


class AuditEntry(NamedTuple):
    id: int
    ts: str
    actor_user_id: str
    actor_role: Optional[str]
    action: str
    target_type: str
    target_id: Optional[str]
    metadata_json: Optional[str]
    result: str


def _looks_like_credential(value: Any) -> bool:
    text = str(value)
    lowered = text.lower()
    return any(word in lowered for word in _CREDENTIAL_WORDS) or bool(_JWT_RE.search(text))


def sanitize_metadata(metadata: Optional[Dict[str, Any]]) -> Optional[str]:
    """Whitelisted, credential-free JSON for the metadata column."""
    if metadata is None:
        return None
    safe = {
        k: v for k, v in metadata.items()
        if k in ALLOWED_METADATA_KEYS and not _looks_like_credential(v)
    }
    try:
        encoded = json.dumps(safe, default=str)
    except (TypeError, ValueError):
        return json.dumps({"error": "unserializable"})
    if len(encoded) > MAX_METADATA_CHARS:
        safe = {"truncated": True, "keys": sorted(safe)}
        encoded = json.dumps(safe)
    return encoded


def _clip(value: Any, limit: int) -> Optional[str]:
    return str(value)[:limit] if value is not None else None


class SQLiteAuditRepository:
    def __init__(self, db_path: str):
        self.db_path = db_path

    def _conn(self):
        return sqlite3.connect(self.db_path, timeout=10)

    def _migrate_v1(self, conn):
        conn.execute("""
            CREATE TABLE IF NOT EXISTS audit_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                ts TEXT NOT NULL,
                actor_user_id TEXT,
                actor_role TEXT,
                action TEXT NOT NULL,
                target_type TEXT NOT NULL,
                target_id TEXT,
                metadata_json TEXT,
                result TEXT NOT NULL
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_log_ts ON audit_log (ts)")

    def _migrate_v2(self, conn):
        """Lookups by actor and by action (session history, appeal review trail)."""
        conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_log_actor ON audit_log (actor_user_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_log_action ON audit_log (action)")

    def init_db(self):
        migrations = [self._migrate_v1, self._migrate_v2]

        with self._conn() as conn:
            conn.execute("CREATE TABLE IF NOT EXISTS schema_info (version INTEGER NOT NULL)")
            row = conn.execute("SELECT version FROM schema_info").fetchone()
            version = row[0] if row else 0
            if row is None:
                conn.execute("INSERT INTO schema_info (version) VALUES (0)")

            for target_version, migrate in enumerate(migrations[version:], start=version + 1):
                try:
                    migrate(conn)
                    conn.execute("UPDATE schema_info SET version = ?", (target_version,))
                except sqlite3.Error as e:
                    raise RuntimeError(f"Audit database migration to v{target_version} failed: {e}") from e
            conn.commit()

    def log_action(
        self,
        action: Any,
        target_type: str,
        actor_user_id: Optional[str] = None,
        actor_role: Optional[str] = None,
        target_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        result: str = "success"
    ):
        action_name = action.value if isinstance(action, AuditAction) else (str(action)[:50] or "UNKNOWN")
        try:
            row = (
                datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S"),
                _clip(actor_user_id, 64),
                _clip(actor_role, 20),
                action_name,
                _clip(target_type, 50) or "UNKNOWN",
                _clip(target_id, 100),
                sanitize_metadata(metadata),
                _clip(result, 20) or "unknown",
            )
            with self._conn() as conn:
                conn.execute("""
                    INSERT INTO audit_log
                    (ts, actor_user_id, actor_role, action, target_type, target_id, metadata_json, result)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """, row)
                conn.commit()
        except Exception as e:
            # Audit failures must not crash the main operation
            log.error(f"Audit log failed for action {action_name}: {e}", exc_info=True)

    def get_logs(self, limit: int = 100, action_filter: Optional[str] = None,
                 user_filter: Optional[str] = None) -> List[AuditEntry]:
        """Most recent entries first. Rows without an actor report 'SYSTEM'."""
        clauses, params = [], []
        if action_filter:
            clauses.append("action = ?")
            params.append(action_filter)
        if user_filter:
            clauses.append("actor_user_id = ?")
            params.append(str(user_filter))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        try:
            with self._conn() as conn:
                rows = conn.execute(f"""
                    SELECT id, ts, COALESCE(actor_user_id, 'SYSTEM'), actor_role, action,
                           target_type, target_id, metadata_json, result
                    FROM audit_log {where}
                    ORDER BY ts DESC, id DESC LIMIT ?
                """, (*params, limit)).fetchall()
        except sqlite3.Error as e:
            log.error(f"Failed to fetch audit logs: {e}", exc_info=True)
            return []
        return [AuditEntry(*r) for r in rows]
