"""Append-only persistence for the audit trail and outbound API call logs."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, List

from ..database import Database
from ..models import ApiCallLog, AuditEntry


def _isoformat() -> str:
    return datetime.now(timezone.utc).isoformat()


def _row_to_audit(row: Any) -> AuditEntry:
    return AuditEntry(
        kind=row["kind"],
        session_id=row["session_id"],
        phone_number=row["phone_number"],
        app_id=row["app_id"],
        menu_code=row["menu_code"],
        menu_type=row["menu_type"],
        user_input=row["user_input"],
        response_text=row["response_text"],
        api_calls_made=json.loads(row["api_calls_made"] or "[]"),
        processing_time_ms=row["processing_time_ms"],
        ip_address=row["ip_address"],
        user_agent=row["user_agent"],
        created_at=row["created_at"],
    )


class AuditRepository:
    """Writes audit entries and API attempts; rows are never updated."""

    def __init__(self, database: Database) -> None:
        self._db = database

    def save_audit_entry(self, entry: AuditEntry) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO ussd_audit_trail (
                    kind, session_id, phone_number, app_id, menu_code, menu_type,
                    user_input, response_text, api_calls_made, processing_time_ms,
                    ip_address, user_agent, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.kind,
                    entry.session_id,
                    entry.phone_number,
                    entry.app_id,
                    entry.menu_code,
                    entry.menu_type,
                    entry.user_input,
                    entry.response_text,
                    json.dumps(entry.api_calls_made),
                    entry.processing_time_ms,
                    entry.ip_address,
                    entry.user_agent,
                    entry.created_at or _isoformat(),
                ),
            )
            conn.commit()

    def fetch_session_trail(self, session_id: str) -> List[AuditEntry]:
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM ussd_audit_trail WHERE session_id = ? ORDER BY id",
                (session_id,),
            ).fetchall()
        return [_row_to_audit(row) for row in rows]

    def save_api_call(self, log: ApiCallLog) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO api_call_logs (
                    session_id, api_name, attempt, request_data, response_data,
                    status_code, error_message, duration_ms, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    log.session_id,
                    log.api_name,
                    log.attempt,
                    json.dumps(log.request_data, default=str),
                    json.dumps(log.response_data, default=str),
                    log.status_code,
                    log.error_message,
                    log.duration_ms,
                    _isoformat(),
                ),
            )
            conn.commit()

    def fetch_api_calls(self, session_id: str, limit: int = 10) -> List[ApiCallLog]:
        if limit <= 0:
            raise ValueError("limit must be positive")
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT session_id, api_name, attempt, request_data, response_data,
                       status_code, error_message, duration_ms
                FROM api_call_logs
                WHERE session_id = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (session_id, limit),
            ).fetchall()
        return [
            ApiCallLog(
                session_id=row["session_id"],
                api_name=row["api_name"],
                attempt=row["attempt"],
                request_data=json.loads(row["request_data"] or "null"),
                response_data=json.loads(row["response_data"] or "null"),
                status_code=row["status_code"],
                error_message=row["error_message"],
                duration_ms=row["duration_ms"],
            )
            for row in rows
        ]
