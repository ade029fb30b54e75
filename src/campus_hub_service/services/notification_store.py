"""SQLite-backed notification storage."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from threading import RLock
from typing import Any


class NotificationStore:
    """Per-user notifications. Only ``is_read`` changes after insert."""

    _COLUMNS: tuple[str, ...] = (
        "notification_id",
        "user_id",
        "message",
        "type",
        "related_task",
        "related_user",
        "is_read",
        "created_at",
    )
    _COLUMNS_SQL = ", ".join(_COLUMNS)
    _SELECT_BASE_SQL = "SELECT " + _COLUMNS_SQL + " FROM notifications"

    def __init__(self, db_path: str) -> None:
        self._lock = RLock()
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA busy_timeout=5000")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._db.executescript(
                """
                CREATE TABLE IF NOT EXISTS notifications (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    notification_id TEXT NOT NULL UNIQUE,
                    user_id TEXT NOT NULL,
                    message TEXT NOT NULL,
                    type TEXT NOT NULL,
                    related_task TEXT,
                    related_user TEXT,
                    is_read INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS ix_notifications_user
                    ON notifications(user_id, created_at);
                """
            )

    def _row_to_notification(self, row: sqlite3.Row) -> dict[str, Any]:
        record = {column: row[column] for column in self._COLUMNS}
        record["is_read"] = bool(record["is_read"])
        return record

    def insert_notification(self, data: dict[str, Any]) -> None:
        """Insert a notification row."""
        values = tuple(
            int(data[column]) if column == "is_read" else data[column] for column in self._COLUMNS
        )
        with self._lock:
            self._db.execute(
                "INSERT INTO notifications ("
                + self._COLUMNS_SQL
                + ") VALUES ("
                + ", ".join("?" for _ in self._COLUMNS)
                + ")",
                values,
            )

    def get_notification(self, notification_id: str) -> dict[str, Any] | None:
        """Fetch a notification by ID."""
        with self._lock:
            row = self._db.execute(
                self._SELECT_BASE_SQL + " WHERE notification_id = ?", (notification_id,)
            ).fetchone()
        return None if row is None else self._row_to_notification(row)

    def list_for_user(self, user_id: str, limit: int) -> list[dict[str, Any]]:
        """List a user's most recent notifications, newest first."""
        with self._lock:
            rows = self._db.execute(
                self._SELECT_BASE_SQL
                + " WHERE user_id = ? ORDER BY created_at DESC, seq DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        return [self._row_to_notification(row) for row in rows]

    def count_unread(self, user_id: str) -> int:
        """Count a user's unread notifications."""
        with self._lock:
            row = self._db.execute(
                "SELECT COUNT(*) FROM notifications WHERE user_id = ? AND is_read = 0",
                (user_id,),
            ).fetchone()
        return int(row[0]) if row is not None else 0

    def mark_read(self, notification_id: str, user_id: str) -> int:
        """Mark one notification read if owned by ``user_id``. Returns matched rows."""
        with self._lock:
            cursor = self._db.execute(
                "UPDATE notifications SET is_read = 1 WHERE notification_id = ? AND user_id = ?",
                (notification_id, user_id),
            )
        return int(cursor.rowcount)

    def mark_all_read(self, user_id: str) -> int:
        """Mark every unread notification of a user read. Returns changed rows."""
        with self._lock:
            cursor = self._db.execute(
                "UPDATE notifications SET is_read = 1 WHERE user_id = ? AND is_read = 0",
                (user_id,),
            )
        return int(cursor.rowcount)

    def delete_notification(self, notification_id: str, user_id: str) -> int:
        """Delete one notification if owned by ``user_id``. Returns deleted rows."""
        with self._lock:
            cursor = self._db.execute(
                "DELETE FROM notifications WHERE notification_id = ? AND user_id = ?",
                (notification_id, user_id),
            )
        return int(cursor.rowcount)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()
