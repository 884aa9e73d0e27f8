"""Low-level SQLite access."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


def _column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    cursor = conn.execute(f"PRAGMA table_info({table})")
    return any(row[1] == column for row in cursor.fetchall())


class Database:
    """Encapsulates access to the SQLite database file."""

    def __init__(self, path: Path, *, timeout: float = 5.0) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._timeout = timeout

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path, timeout=self._timeout)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def initialise(self) -> None:
        with self.connection() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS ussd_sessions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT NOT NULL,
                    phone_number TEXT NOT NULL,
                    app_id TEXT NOT NULL,
                    current_menu TEXT,
                    session_data TEXT NOT NULL DEFAULT '{}',
                    input_history TEXT NOT NULL DEFAULT '[]',
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    ended_at TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_ussd_sessions_session_active
                ON ussd_sessions (session_id, is_active)
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS session_variables (
                    session_id TEXT NOT NULL,
                    variable_name TEXT NOT NULL,
                    variable_value TEXT,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (session_id, variable_name)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS api_call_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT,
                    api_name TEXT NOT NULL,
                    attempt INTEGER NOT NULL DEFAULT 1,
                    request_data TEXT,
                    response_data TEXT,
                    status_code INTEGER,
                    error_message TEXT,
                    duration_ms INTEGER,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS ussd_audit_trail (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    kind TEXT NOT NULL,
                    session_id TEXT,
                    phone_number TEXT,
                    app_id TEXT,
                    menu_code TEXT,
                    menu_type TEXT,
                    user_input TEXT,
                    response_text TEXT,
                    api_calls_made TEXT NOT NULL DEFAULT '[]',
                    processing_time_ms INTEGER,
                    ip_address TEXT,
                    user_agent TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_audit_session
                ON ussd_audit_trail (session_id)
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS blocked_users (
                    phone_number TEXT PRIMARY KEY,
                    reason TEXT NOT NULL,
                    blocked_by TEXT NOT NULL,
                    blocked_at TEXT NOT NULL,
                    unblock_at TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS failed_attempts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    phone_number TEXT NOT NULL,
                    attempt_type TEXT NOT NULL,
                    menu_code TEXT,
                    session_id TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_failed_attempts_phone
                ON failed_attempts (phone_number, created_at)
                """
            )
            if not _column_exists(conn, "ussd_sessions", "end_reason"):
                conn.execute("ALTER TABLE ussd_sessions ADD COLUMN end_reason TEXT")
            conn.commit()
