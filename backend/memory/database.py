from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


class SQLiteMemoryDB:
    def __init__(self, db_path: str) -> None:
        self._path = Path(db_path).expanduser().resolve()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._path), timeout=30.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def ping(self) -> bool:
        with self.connection() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row["ok"] == 1)

    def _init_schema(self) -> None:
        with self._lock, self.connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS consent_records (
                  id TEXT PRIMARY KEY,
                  user_id TEXT NOT NULL,
                  consent_type TEXT NOT NULL,
                  purpose TEXT NOT NULL,
                  data_categories_json TEXT NOT NULL,
                  legal_basis TEXT NOT NULL,
                  granted INTEGER NOT NULL,
                  capture_method TEXT NOT NULL,
                  recorded_at TEXT NOT NULL,
                  expires_at TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_consent_records_user_type
                  ON consent_records(user_id, consent_type, recorded_at);

                CREATE TABLE IF NOT EXISTS policy_events (
                  id TEXT PRIMARY KEY,
                  user_id TEXT,
                  session_key TEXT,
                  event_type TEXT NOT NULL,
                  topic TEXT,
                  details_json TEXT NOT NULL,
                  created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_policy_events_user
                  ON policy_events(user_id, created_at);

                CREATE TABLE IF NOT EXISTS conversation_snapshots (
                  conversation_id TEXT PRIMARY KEY,
                  user_id TEXT NOT NULL,
                  session_id TEXT NOT NULL,
                  status TEXT NOT NULL DEFAULT 'active',
                  current_topic TEXT,
                  current_stage TEXT NOT NULL,
                  state_json TEXT NOT NULL,
                  version INTEGER NOT NULL,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS conversation_messages (
                  id TEXT PRIMARY KEY,
                  conversation_id TEXT NOT NULL,
                  role TEXT NOT NULL,
                  text TEXT NOT NULL,
                  topic TEXT,
                  created_at TEXT NOT NULL,
                  FOREIGN KEY (conversation_id) REFERENCES conversation_snapshots(conversation_id)
                    ON DELETE CASCADE
                );

                CREATE INDEX IF NOT EXISTS idx_conversation_messages_conversation
                  ON conversation_messages(conversation_id, created_at);
                """
            )
