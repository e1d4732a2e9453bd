import json
import sqlite3
from datetime import datetime, timezone
from typing import Optional, Tuple

from use_cases.session_models import IdentitySnapshot, TokenPair, format_timestamp, parse_timestamp


class SQLiteTokenRepository:
    """Durable storage for the current token pair and the last-known identity."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    def _conn(self):
        return sqlite3.connect(self.db_path)

    def _get_current_version(self, conn) -> int:
        row = conn.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='schema_info'").fetchone()
        if row:
            version_row = conn.execute("SELECT version FROM schema_info").fetchone()
            if version_row:
                return version_row[0]
        return 0

    def _migrate_v1(self, conn):
        """Baseline schema (v1). A single row holds the whole session."""
        conn.execute("""
            CREATE TABLE IF NOT EXISTS session_state (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                access_token TEXT NOT NULL,
                refresh_token TEXT,
                expires_in INTEGER,
                issued_at TEXT,
                identity_json TEXT,
                updated_at TEXT NOT NULL
            )
        """)

    def init_db(self):
        MIGRATIONS = [self._migrate_v1]

        with self._conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_info (
                    version INTEGER NOT NULL
                )
            """)
            current_version = self._get_current_version(conn)

            has_version_row = conn.execute("SELECT COUNT(*) FROM schema_info").fetchone()[0] > 0
            if not has_version_row:
                conn.execute("INSERT INTO schema_info (version) VALUES (?)", (current_version,))

            for i in range(current_version, len(MIGRATIONS)):
                target_version = i + 1
                try:
                    MIGRATIONS[i](conn)
                    conn.execute("UPDATE schema_info SET version = ?", (target_version,))
                except Exception as e:
                    raise RuntimeError(f"Session database migration to v{target_version} failed: {e}") from e

            conn.commit()

    def save(self, tokens: TokenPair, identity: Optional[IdentitySnapshot]):
        identity_json = json.dumps(identity.to_payload()) if identity is not None else None
        now_iso = datetime.now(timezone.utc).isoformat()
        with self._conn() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO session_state
                (id, access_token, refresh_token, expires_in, issued_at, identity_json, updated_at)
                VALUES (1, ?, ?, ?, ?, ?, ?)
            """, (
                tokens.access_token,
                tokens.refresh_token,
                tokens.expires_in,
                format_timestamp(tokens.issued_at),
                identity_json,
                now_iso,
            ))
            conn.commit()

    def load(self) -> Tuple[Optional[TokenPair], Optional[IdentitySnapshot]]:
        with self._conn() as conn:
            row = conn.execute("""
                SELECT access_token, refresh_token, expires_in, issued_at, identity_json
                FROM session_state WHERE id = 1
            """).fetchone()
        if not row:
            return None, None

        tokens = TokenPair(
            access_token=row[0],
            refresh_token=row[1],
            expires_in=row[2],
            issued_at=parse_timestamp(row[3]),
        )
        identity = None
        if row[4]:
            try:
                identity = IdentitySnapshot.from_payload(json.loads(row[4]))
            except ValueError:
                # Corrupted or outdated snapshot; /users/me will rehydrate it.
                identity = None
        return tokens, identity

    def clear(self):
        with self._conn() as conn:
            conn.execute("DELETE FROM session_state")
            conn.commit()
