from __future__ import annotations

import json
import uuid
from typing import Any

from .database import SQLiteMemoryDB
from .time_utils import to_iso, utc_now


def _json_dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


class PolicyAuditLog:
    def __init__(self, db: SQLiteMemoryDB) -> None:
        self._db = db

    def append_policy_event(
        self,
        *,
        user_id: str | None,
        session_key: str | None,
        event_type: str,
        topic: str | None,
        details: dict[str, Any],
    ) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO policy_events (id, user_id, session_key, event_type, topic, details_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    uuid.uuid4().hex,
                    user_id,
                    session_key,
                    event_type,
                    topic,
                    _json_dumps(details),
                    to_iso(utc_now()),
                ),
            )

    def list_events(self, user_id: str, *, event_type: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
        query = "SELECT event_type, topic, details_json, created_at FROM policy_events WHERE user_id = ?"
        params: list[Any] = [user_id]
        if event_type:
            query += " AND event_type = ?"
            params.append(event_type)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        with self._db.connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            {
                "event_type": row["event_type"],
                "topic": row["topic"],
                "details": json.loads(row["details_json"]),
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    def health_check(self) -> bool:
        return self._db.ping()
