from __future__ import annotations

import hashlib
import json
from typing import Any

from .database import SQLiteMemoryDB
from .time_utils import to_iso, utc_now


def _json_dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def _message_id(conversation_id: str, message: dict[str, Any]) -> str:
    base = f"{conversation_id}:{message.get('timestamp')}:{message.get('role')}:{message.get('text')}"
    return hashlib.sha1(base.encode("utf-8")).hexdigest()


class ConversationArchive:
    """Durable copy of committed conversation snapshots and their messages."""

    def __init__(self, db: SQLiteMemoryDB) -> None:
        self._db = db

    def save_snapshot(self, snapshot: dict[str, Any]) -> None:
        conversation_id = snapshot["conversation_id"]
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO conversation_snapshots (
                  conversation_id, user_id, session_id, status, current_topic, current_stage,
                  state_json, version, created_at, updated_at
                )
                VALUES (?, ?, ?, 'active', ?, ?, ?, ?, ?, ?)
                ON CONFLICT(conversation_id) DO UPDATE SET
                  status = 'active',
                  current_topic = excluded.current_topic,
                  current_stage = excluded.current_stage,
                  state_json = excluded.state_json,
                  version = excluded.version,
                  updated_at = excluded.updated_at
                WHERE excluded.version >= conversation_snapshots.version
                """,
                (
                    conversation_id,
                    snapshot["user_id"],
                    snapshot["session_id"],
                    snapshot.get("current_topic"),
                    snapshot["current_stage"],
                    _json_dumps(snapshot),
                    int(snapshot.get("version", 0)),
                    snapshot.get("created_at") or now,
                    now,
                ),
            )
            for message in snapshot.get("history", []):
                conn.execute(
                    """
                    INSERT OR IGNORE INTO conversation_messages (id, conversation_id, role, text, topic, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        _message_id(conversation_id, message),
                        conversation_id,
                        message["role"],
                        message["text"],
                        message.get("topic"),
                        message.get("timestamp") or now,
                    ),
                )

    def mark_expired(self, conversation_id: str) -> None:
        with self._db.connection() as conn:
            conn.execute(
                "UPDATE conversation_snapshots SET status = 'expired', updated_at = ? WHERE conversation_id = ?",
                (to_iso(utc_now()), conversation_id),
            )

    def get_snapshot(self, conversation_id: str) -> dict[str, Any] | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT status, state_json FROM conversation_snapshots WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchone()
        if not row:
            return None
        snapshot = json.loads(row["state_json"])
        snapshot["archive_status"] = row["status"]
        return snapshot

    def list_messages(self, conversation_id: str, limit: int = 100) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT role, text, topic, created_at
                FROM conversation_messages
                WHERE conversation_id = ?
                ORDER BY created_at ASC
                LIMIT ?
                """,
                (conversation_id, limit),
            ).fetchall()
        return [dict(row) for row in rows]
