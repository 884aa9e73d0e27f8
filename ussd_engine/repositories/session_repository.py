"""Persistence helpers for USSD session management."""

from __future__ import annotations

import json
from dataclasses import asdict, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..database import Database
from ..models import HistoryEntry, UssdSession

SESSION_COLUMNS = (
    "id, session_id, phone_number, app_id, current_menu, session_data, input_history, "
    "is_active, created_at, updated_at, ended_at, end_reason"
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(dt: Optional[datetime] = None) -> str:
    value = dt or _utcnow()
    return value.replace(microsecond=0).isoformat()


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _row_to_session(row: Any) -> UssdSession:
    history_raw = json.loads(row["input_history"] or "[]")
    history = tuple(
        HistoryEntry(input=str(item.get("input", "")), menu=str(item.get("menu", "")), timestamp=str(item.get("timestamp", "")))
        for item in history_raw
    )
    return UssdSession(
        id=row["id"],
        session_id=row["session_id"],
        phone_number=row["phone_number"],
        app_id=row["app_id"],
        current_menu=row["current_menu"],
        data=json.loads(row["session_data"] or "{}"),
        input_history=history,
        is_active=bool(row["is_active"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        ended_at=row["ended_at"],
        end_reason=row["end_reason"],
    )


class SessionRepository:
    """Provides CRUD operations over ussd_sessions."""

    def __init__(self, database: Database) -> None:
        self._db = database

    def create_session(self, session_id: str, phone_number: str, app_id: str) -> UssdSession:
        """Opens a fresh session row, discarding variables left by a previous session with the same id."""

        now = _isoformat()
        with self._db.connection() as conn:
            conn.execute("DELETE FROM session_variables WHERE session_id = ?", (session_id,))
            cursor = conn.execute(
                """
                INSERT INTO ussd_sessions (
                    session_id, phone_number, app_id, current_menu, session_data,
                    input_history, is_active, created_at, updated_at
                )
                VALUES (?, ?, ?, NULL, '{}', '[]', 1, ?, ?)
                """,
                (session_id, phone_number, app_id, now, now),
            )
            row_id = cursor.lastrowid
            conn.commit()
            row = conn.execute(
                f"SELECT {SESSION_COLUMNS} FROM ussd_sessions WHERE id = ?",
                (row_id,),
            ).fetchone()
        return _row_to_session(row)

    def get_active_session(self, session_id: str) -> Optional[UssdSession]:
        with self._db.connection() as conn:
            row = conn.execute(
                f"""
                SELECT {SESSION_COLUMNS}
                FROM ussd_sessions
                WHERE session_id = ? AND is_active = 1
                ORDER BY id DESC
                LIMIT 1
                """,
                (session_id,),
            ).fetchone()
        return _row_to_session(row) if row else None

    def get_latest_session(self, session_id: str) -> Optional[UssdSession]:
        with self._db.connection() as conn:
            row = conn.execute(
                f"""
                SELECT {SESSION_COLUMNS}
                FROM ussd_sessions
                WHERE session_id = ?
                ORDER BY id DESC
                LIMIT 1
                """,
                (session_id,),
            ).fetchone()
        return _row_to_session(row) if row else None

    def get_or_create(self, session_id: str, phone_number: str, app_id: str) -> Tuple[UssdSession, bool]:
        session = self.get_active_session(session_id)
        if session:
            return session, False
        return self.create_session(session_id, phone_number, app_id), True

    def save_progress(
        self,
        session: UssdSession,
        *,
        current_menu: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        input_history: Optional[Iterable[HistoryEntry]] = None,
    ) -> UssdSession:
        new_menu = current_menu if current_menu is not None else session.current_menu
        new_data = data if data is not None else session.data
        new_history = tuple(input_history) if input_history is not None else session.input_history
        updated_at = _isoformat()
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE ussd_sessions
                SET current_menu = ?,
                    session_data = ?,
                    input_history = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    new_menu,
                    json.dumps(new_data, default=str),
                    json.dumps([asdict(entry) for entry in new_history]),
                    updated_at,
                    session.id,
                ),
            )
            conn.commit()
        return replace(
            session,
            current_menu=new_menu,
            data=new_data,
            input_history=new_history,
            updated_at=updated_at,
        )

    def append_history(self, session: UssdSession, input_value: str, menu_code: str) -> UssdSession:
        entry = HistoryEntry(input=input_value, menu=menu_code, timestamp=_isoformat())
        return self.save_progress(session, input_history=session.input_history + (entry,))

    def end_session(self, session_id: str, reason: str) -> None:
        timestamp = _isoformat()
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE ussd_sessions
                SET is_active = 0,
                    updated_at = ?,
                    ended_at = COALESCE(ended_at, ?),
                    end_reason = COALESCE(end_reason, ?)
                WHERE session_id = ? AND is_active = 1
                """,
                (timestamp, timestamp, reason, session_id),
            )
            conn.commit()

    def cleanup_stale(self, timeout_seconds: int, *, now: Optional[datetime] = None) -> List[str]:
        """Deactivates sessions idle for longer than timeout_seconds and returns their ids."""

        reference = now or _utcnow()
        cutoff = _isoformat(reference - timedelta(seconds=timeout_seconds))
        ended_at = _isoformat(reference)
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT session_id FROM ussd_sessions WHERE is_active = 1 AND updated_at < ?",
                (cutoff,),
            ).fetchall()
            conn.execute(
                """
                UPDATE ussd_sessions
                SET is_active = 0,
                    ended_at = ?,
                    end_reason = 'stale'
                WHERE is_active = 1 AND updated_at < ?
                """,
                (ended_at, cutoff),
            )
            conn.commit()
        return [row["session_id"] for row in rows]
