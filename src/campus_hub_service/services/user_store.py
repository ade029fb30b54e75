"""SQLite-backed user account storage."""

from __future__ import annotations

import contextlib
import sqlite3
from pathlib import Path
from threading import RLock
from typing import Any


class DuplicateUserError(Exception):
    """Raised when the email or phone number is already registered."""

    def __init__(self, field: str) -> None:
        super().__init__(f"A user with this {field.replace('_', ' ')} already exists")
        self.field = field


class UserStore:
    """Registered users with unique email and phone number."""

    _COLUMNS: tuple[str, ...] = (
        "user_id",
        "name",
        "email",
        "password_hash",
        "phone_number",
        "university",
        "course",
        "rating",
        "tasks_completed",
        "created_at",
    )
    _COLUMNS_SQL = ", ".join(_COLUMNS)
    _SELECT_BASE_SQL = "SELECT " + _COLUMNS_SQL + " FROM users"

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
                CREATE TABLE IF NOT EXISTS users (
                    user_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    email TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    phone_number TEXT NOT NULL UNIQUE,
                    university TEXT,
                    course TEXT,
                    rating REAL NOT NULL DEFAULT 0 CHECK (rating >= 0 AND rating <= 5),
                    tasks_completed INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                );
                """
            )

    def _row_to_user(self, row: sqlite3.Row) -> dict[str, Any]:
        return {column: row[column] for column in self._COLUMNS}

    def insert_user(self, data: dict[str, Any]) -> None:
        """
        Insert a user row.

        Raises:
            DuplicateUserError: Email or phone number already registered.
        """
        values = tuple(data[column] for column in self._COLUMNS)
        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                self._db.execute(
                    "INSERT INTO users ("
                    + self._COLUMNS_SQL
                    + ") VALUES ("
                    + ", ".join("?" for _ in self._COLUMNS)
                    + ")",
                    values,
                )
                self._db.execute("COMMIT")
            except sqlite3.IntegrityError as exc:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                error_text = str(exc)
                if "users.email" in error_text:
                    raise DuplicateUserError("email") from exc
                if "users.phone_number" in error_text:
                    raise DuplicateUserError("phone_number") from exc
                raise
            except Exception:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise

    def get_user(self, user_id: str) -> dict[str, Any] | None:
        """Fetch a user by ID."""
        with self._lock:
            row = self._db.execute(
                self._SELECT_BASE_SQL + " WHERE user_id = ?", (user_id,)
            ).fetchone()
        return None if row is None else self._row_to_user(row)

    def get_user_by_email(self, email: str) -> dict[str, Any] | None:
        """Fetch a user by lower-cased email."""
        with self._lock:
            row = self._db.execute(
                self._SELECT_BASE_SQL + " WHERE email = ?", (email.lower(),)
            ).fetchone()
        return None if row is None else self._row_to_user(row)

    def increment_tasks_completed(self, user_id: str) -> int:
        """Add one to a user's completed-task counter."""
        with self._lock:
            cursor = self._db.execute(
                "UPDATE users SET tasks_completed = tasks_completed + 1 WHERE user_id = ?",
                (user_id,),
            )
        return int(cursor.rowcount)

    def count_users(self) -> int:
        """Count registered users."""
        with self._lock:
            row = self._db.execute("SELECT COUNT(*) FROM users").fetchone()
        return int(row[0]) if row is not None else 0

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()
