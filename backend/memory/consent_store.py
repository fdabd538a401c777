from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta
from typing import Any

from .database import SQLiteMemoryDB
from .time_utils import parse_iso, to_iso


class ConsentStore:
    def __init__(self, db: SQLiteMemoryDB) -> None:
        self._db = db

    def record(
        self,
        *,
        user_id: str,
        consent_type: str,
        purpose: str,
        data_categories: list[str] | tuple[str, ...],
        legal_basis: str,
        granted: bool,
        capture_method: str,
        recorded_at: datetime,
        validity: timedelta | None,
    ) -> str:
        record_id = uuid.uuid4().hex
        expires_at = to_iso(recorded_at + validity) if granted and validity is not None else None
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO consent_records (
                  id, user_id, consent_type, purpose, data_categories_json, legal_basis,
                  granted, capture_method, recorded_at, expires_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record_id,
                    user_id,
                    consent_type,
                    purpose,
                    json.dumps(list(data_categories)),
                    legal_basis,
                    1 if granted else 0,
                    capture_method,
                    to_iso(recorded_at),
                    expires_at,
                ),
            )
        return record_id

    def latest(self, user_id: str, consent_type: str) -> dict[str, Any] | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT *
                FROM consent_records
                WHERE user_id = ? AND consent_type = ?
                ORDER BY recorded_at DESC
                LIMIT 1
                """,
                (user_id, consent_type),
            ).fetchone()
        if not row:
            return None
        return {
            "id": row["id"],
            "user_id": row["user_id"],
            "consent_type": row["consent_type"],
            "purpose": row["purpose"],
            "data_categories": json.loads(row["data_categories_json"]),
            "legal_basis": row["legal_basis"],
            "granted": bool(row["granted"]),
            "capture_method": row["capture_method"],
            "recorded_at": parse_iso(row["recorded_at"]),
            "expires_at": parse_iso(row["expires_at"]),
        }

    def ping(self) -> bool:
        return self._db.ping()
