"""Per-session variable store backed by session_variables."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from ..database import Database


def encode_value(value: Any) -> str:
    """Stores structures as JSON and scalars as their text form."""

    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, default=str)
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


class VariableRepository:
    """Last-write-wins key/value pairs scoped to a session id."""

    def __init__(self, database: Database) -> None:
        self._db = database

    def set_variable(self, session_id: str, name: str, value: Any) -> None:
        self.set_variables(session_id, {name: value})

    def set_variables(self, session_id: str, values: Mapping[str, Any]) -> None:
        if not values:
            return
        now = datetime.now(timezone.utc).replace(microsecond=0).isoformat()
        rows = [(session_id, name, encode_value(value), now) for name, value in values.items()]
        with self._db.connection() as conn:
            conn.executemany(
                """
                INSERT INTO session_variables (session_id, variable_name, variable_value, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (session_id, variable_name)
                DO UPDATE SET variable_value = excluded.variable_value,
                              updated_at = excluded.updated_at
                """,
                rows,
            )
            conn.commit()

    def get_variable(self, session_id: str, name: str) -> Optional[str]:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT variable_value FROM session_variables WHERE session_id = ? AND variable_name = ?",
                (session_id, name),
            ).fetchone()
        return row["variable_value"] if row else None

    def get_variables(self, session_id: str) -> Dict[str, str]:
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT variable_name, variable_value FROM session_variables WHERE session_id = ?",
                (session_id,),
            ).fetchall()
        return {row["variable_name"]: row["variable_value"] for row in rows}
