"""SQLite persistence for the client session and its lifecycle events."""
from __future__ import annotations

import json
import sqlite3
import time
from pathlib import Path
from typing import Any

from .schemas import Session

# Only the token and identity survive a restart; permissions are re-fetched.
_PERSISTED_FIELDS = {"token", "identity"}


class SessionStore:
    """Keeps the current session (one row) and an append-only event log."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _init_db(self) -> None:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS session(
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    payload TEXT NOT NULL,
                    updated_ts REAL
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS events(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    ts REAL,
                    user_id INTEGER,
                    event_type TEXT,
                    event_data TEXT
                )
                """
            )
            conn.commit()

    def save(self, session: Session) -> None:
        """Persist the session, replacing whatever was stored before."""
        payload = session.model_dump(mode="json", include=_PERSISTED_FIELDS)
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """INSERT INTO session(id, payload, updated_ts) VALUES (1, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET payload=excluded.payload, updated_ts=excluded.updated_ts""",
                (json.dumps(payload), time.time()),
            )
            conn.commit()

    def load(self) -> Session | None:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT payload FROM session WHERE id = 1")
            row = cursor.fetchone()
        if row is None:
            return None
        return Session.model_validate(json.loads(row[0]))

    def clear(self) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM session")
            conn.commit()

    def log_event(self, event_type: str, event_data: dict[str, Any], user_id: int | None = None) -> None:
        """Log a session lifecycle event."""
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO events(ts, user_id, event_type, event_data)
                   VALUES (?,?,?,?)""",
                (time.time(), user_id, event_type, json.dumps(event_data)),
            )
            conn.commit()

    def get_events(self, event_type: str | None = None) -> list[dict[str, Any]]:
        with self._connect() as conn:
            conn.row_factory = sqlite3.Row
            cursor = conn.cursor()
            query = "SELECT * FROM events"
            params: list[Any] = []
            if event_type:
                query += " WHERE event_type=?"
                params.append(event_type)
            query += " ORDER BY id"
            cursor.execute(query, params)
            return [dict(row) for row in cursor.fetchall()]
