"""SQLite-backed per-task chat message storage."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from threading import RLock
from typing import Any


class MessageStore:
    """Chat messages exchanged between a task's owner and its assignee."""

    _COLUMNS: tuple[str, ...] = (
        "message_id",
        "task_id",
        "sender_id",
        "sender_name",
        "content",
        "is_read",
        "created_at",
    )
    _COLUMNS_SQL = ", ".join(_COLUMNS)

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
                CREATE TABLE IF NOT EXISTS messages (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    message_id TEXT NOT NULL UNIQUE,
                    task_id TEXT NOT NULL,
                    sender_id TEXT NOT NULL,
                    sender_name TEXT NOT NULL,
                    content TEXT NOT NULL,
                    is_read INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS ix_messages_task ON messages(task_id, created_at);
                """
            )

    def _row_to_message(self, row: sqlite3.Row) -> dict[str, Any]:
        record = {column: row[column] for column in self._COLUMNS}
        record["is_read"] = bool(record["is_read"])
        return record

    def insert_message(self, data: dict[str, Any]) -> None:
        """Insert a message row."""
        values = tuple(
            int(data[column]) if column == "is_read" else data[column] for column in self._COLUMNS
        )
        with self._lock:
            self._db.execute(
                "INSERT INTO messages ("
                + self._COLUMNS_SQL
                + ") VALUES ("
                + ", ".join("?" for _ in self._COLUMNS)
                + ")",
                values,
            )

    def list_for_task(self, task_id: str) -> list[dict[str, Any]]:
        """List a task's messages, oldest first."""
        with self._lock:
            rows = self._db.execute(
                "SELECT " + self._COLUMNS_SQL + " FROM messages "
                "WHERE task_id = ? ORDER BY created_at, seq",
                (task_id,),
            ).fetchall()
        return [self._row_to_message(row) for row in rows]

    def mark_read(self, task_id: str, reader_id: str) -> int:
        """Mark messages sent to ``reader_id`` on a task as read. Returns changed rows."""
        with self._lock:
            cursor = self._db.execute(
                "UPDATE messages SET is_read = 1 "
                "WHERE task_id = ? AND sender_id != ? AND is_read = 0",
                (task_id, reader_id),
            )
        return int(cursor.rowcount)

    def delete_for_task(self, task_id: str) -> int:
        """Delete every message of a task."""
        with self._lock:
            cursor = self._db.execute("DELETE FROM messages WHERE task_id = ?", (task_id,))
        return int(cursor.rowcount)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()
