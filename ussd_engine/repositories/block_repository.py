"""Persistence for blocked phone numbers and failed attempt counters."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from ..database import Database
from ..models import BlockRecord


def _stamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_block(row: Any) -> BlockRecord:
    return BlockRecord(
        phone_number=row["phone_number"],
        reason=row["reason"],
        blocked_by=row["blocked_by"],
        blocked_at=datetime.fromisoformat(row["blocked_at"]),
        unblock_at=_parse(row["unblock_at"]),
        is_active=bool(row["is_active"]),
    )


class BlockRepository:
    """Stores one block row per phone number and an append-only attempt log.

    Timestamps are always supplied by the caller so that rule windows can be
    evaluated against an injected clock.
    """

    def __init__(self, database: Database) -> None:
        self._db = database

    def get_active_block(self, phone_number: str, now: datetime) -> Optional[BlockRecord]:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT phone_number, reason, blocked_by, blocked_at, unblock_at, is_active
                FROM blocked_users
                WHERE phone_number = ?
                  AND is_active = 1
                  AND (unblock_at IS NULL OR unblock_at > ?)
                """,
                (phone_number, _stamp(now)),
            ).fetchone()
        return _row_to_block(row) if row else None

    def upsert_block(
        self,
        phone_number: str,
        reason: str,
        blocked_by: str,
        blocked_at: datetime,
        unblock_at: Optional[datetime],
    ) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO blocked_users (phone_number, reason, blocked_by, blocked_at, unblock_at, is_active)
                VALUES (?, ?, ?, ?, ?, 1)
                ON CONFLICT (phone_number)
                DO UPDATE SET reason = excluded.reason,
                              blocked_by = excluded.blocked_by,
                              blocked_at = excluded.blocked_at,
                              unblock_at = excluded.unblock_at,
                              is_active = 1
                """,
                (
                    phone_number,
                    reason,
                    blocked_by,
                    _stamp(blocked_at),
                    _stamp(unblock_at) if unblock_at else None,
                ),
            )
            conn.commit()

    def deactivate_block(self, phone_number: str) -> None:
        with self._db.connection() as conn:
            conn.execute("UPDATE blocked_users SET is_active = 0 WHERE phone_number = ?", (phone_number,))
            conn.commit()

    def save_failed_attempt(
        self,
        phone_number: str,
        attempt_type: str,
        created_at: datetime,
        *,
        menu_code: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO failed_attempts (phone_number, attempt_type, menu_code, session_id, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (phone_number, attempt_type, menu_code, session_id, _stamp(created_at)),
            )
            conn.commit()

    def count_attempts(
        self,
        phone_number: str,
        since: datetime,
        attempt_types: Optional[tuple] = None,
    ) -> int:
        sql = "SELECT COUNT(*) AS total FROM failed_attempts WHERE phone_number = ? AND created_at > ?"
        params: list = [phone_number, _stamp(since)]
        if attempt_types:
            placeholders = ", ".join("?" for _ in attempt_types)
            sql += f" AND attempt_type IN ({placeholders})"
            params.extend(attempt_types)
        with self._db.connection() as conn:
            row = conn.execute(sql, params).fetchone()
        return int(row["total"])
