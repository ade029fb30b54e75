"""SQLite-backed task storage."""

from __future__ import annotations

import contextlib
import sqlite3
from datetime import UTC, datetime
from pathlib import Path
from threading import RLock
from typing import Any


class DuplicateTaskError(Exception):
    """Raised when attempting to insert a task with a duplicate task_id."""


class DuplicateApplicantError(Exception):
    """Raised when a user applies to the same task twice."""


def now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


class TaskStore:
    """SQLite-backed storage for tasks and their applicants."""

    _TASK_COLUMNS: tuple[str, ...] = (
        "task_id",
        "title",
        "description",
        "budget",
        "category",
        "status",
        "payment_status",
        "deadline",
        "posted_by",
        "assigned_to",
        "completed_at",
        "paid_at",
        "funded_at",
        "created_at",
        "updated_at",
    )
    _TASK_COLUMNS_SQL = ", ".join(_TASK_COLUMNS)
    _TASK_INSERT_SQL = (
        "INSERT INTO tasks ("
        + _TASK_COLUMNS_SQL
        + ") VALUES ("
        + ", ".join("?" for _ in _TASK_COLUMNS)
        + ")"
    )
    _TASK_SELECT_BASE_SQL = "SELECT " + _TASK_COLUMNS_SQL + " FROM tasks"

    def __init__(self, db_path: str) -> None:
        self._lock = RLock()
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA foreign_keys=ON")
        self._db.execute("PRAGMA busy_timeout=5000")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._db.executescript(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    task_id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    description TEXT NOT NULL,
                    budget REAL NOT NULL CHECK (budget > 0),
                    category TEXT NOT NULL DEFAULT 'Other',
                    status TEXT NOT NULL DEFAULT 'open',
                    payment_status TEXT NOT NULL DEFAULT 'unpaid',
                    deadline TEXT,
                    posted_by TEXT NOT NULL,
                    assigned_to TEXT,
                    completed_at TEXT,
                    paid_at TEXT,
                    funded_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS applicants (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    task_id TEXT NOT NULL REFERENCES tasks(task_id) ON DELETE CASCADE,
                    user_id TEXT NOT NULL,
                    message TEXT,
                    applied_at TEXT NOT NULL,
                    UNIQUE(task_id, user_id)
                );

                CREATE INDEX IF NOT EXISTS ix_tasks_posted_by ON tasks(posted_by, created_at);
                CREATE INDEX IF NOT EXISTS ix_tasks_assigned_to ON tasks(assigned_to, status);
                CREATE INDEX IF NOT EXISTS ix_applicants_user ON applicants(user_id);
                """
            )

    def _row_to_task(self, row: sqlite3.Row) -> dict[str, Any]:
        return {column: row[column] for column in self._TASK_COLUMNS}

    def _attach_applicants(self, task: dict[str, Any]) -> dict[str, Any]:
        task["applicants"] = self.get_applicants(str(task["task_id"]))
        return task

    def insert_task(self, task_data: dict[str, Any]) -> None:
        """Insert a new task row."""
        values = tuple(task_data[column] for column in self._TASK_COLUMNS)

        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                self._db.execute(self._TASK_INSERT_SQL, values)
                self._db.execute("COMMIT")
            except sqlite3.IntegrityError as exc:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                if "unique" in str(exc).lower():
                    raise DuplicateTaskError(
                        f"A task with task_id={task_data['task_id']} already exists"
                    ) from exc
                raise
            except Exception:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise

    def get_task(self, task_id: str) -> dict[str, Any] | None:
        """Fetch a task by ID, including its applicants."""
        with self._lock:
            row = self._db.execute(
                self._TASK_SELECT_BASE_SQL + " WHERE task_id = ?", (task_id,)
            ).fetchone()
            if row is None:
                return None
            return self._attach_applicants(self._row_to_task(row))

    def update_task(
        self,
        task_id: str,
        updates: dict[str, Any],
        *,
        expected_status: str | None,
    ) -> int:
        """
        Update task columns and return the number of affected rows.

        When ``expected_status`` is given the update only applies if the
        stored status still equals it, so a zero return means another
        writer moved the task first.
        """
        if len(updates) == 0:
            return 0

        if any(column not in self._TASK_COLUMNS for column in updates):
            msg = "Attempted to update unknown task column"
            raise ValueError(msg)

        updates = {**updates, "updated_at": now_iso()}
        set_clause = ", ".join(f"{column} = ?" for column in updates)
        params: list[object] = list(updates.values())

        query = "UPDATE tasks SET " + set_clause + " WHERE task_id = ?"  # nosec B608
        params.append(task_id)
        if expected_status is not None:
            query += " AND status = ?"
            params.append(expected_status)

        with self._lock:
            cursor = self._db.execute(query, params)
        return int(cursor.rowcount)

    def delete_task(self, task_id: str) -> int:
        """Delete a task and its applicants. Returns affected rows."""
        with self._lock:
            cursor = self._db.execute("DELETE FROM tasks WHERE task_id = ?", (task_id,))
        return int(cursor.rowcount)

    def insert_applicant(
        self,
        task_id: str,
        user_id: str,
        message: str | None,
        applied_at: str,
        *,
        expected_status: str,
    ) -> bool:
        """
        Append an applicant if the task is still in ``expected_status``.

        Returns False when the status check fails.

        Raises:
            DuplicateApplicantError: The user already applied to this task.
        """
        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                row = self._db.execute(
                    "SELECT status FROM tasks WHERE task_id = ?", (task_id,)
                ).fetchone()
                if row is None or row["status"] != expected_status:
                    self._db.execute("ROLLBACK")
                    return False
                self._db.execute(
                    "INSERT INTO applicants (task_id, user_id, message, applied_at) "
                    "VALUES (?, ?, ?, ?)",
                    (task_id, user_id, message, applied_at),
                )
                self._db.execute(
                    "UPDATE tasks SET updated_at = ? WHERE task_id = ?", (applied_at, task_id)
                )
                self._db.execute("COMMIT")
            except sqlite3.IntegrityError as exc:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                if "unique" in str(exc).lower():
                    raise DuplicateApplicantError("User already applied to this task") from exc
                raise
            except Exception:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise
        return True

    def get_applicants(self, task_id: str) -> list[dict[str, Any]]:
        """Fetch applicants for a task in application order."""
        with self._lock:
            rows = self._db.execute(
                "SELECT user_id, message, applied_at FROM applicants "
                "WHERE task_id = ? ORDER BY seq",
                (task_id,),
            ).fetchall()
        return [
            {
                "user_id": row["user_id"],
                "message": row["message"],
                "applied_at": row["applied_at"],
            }
            for row in rows
        ]

    def list_tasks(
        self,
        *,
        posted_by: str | None = None,
        assigned_to: str | None = None,
        applicant_id: str | None = None,
        participant_id: str | None = None,
        statuses: tuple[str, ...] | None = None,
        exclude_assigned_to: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[dict[str, Any]]:
        """List tasks with optional filters, newest first. All filters use AND logic."""
        query = self._TASK_SELECT_BASE_SQL
        clauses: list[str] = []
        params: list[object] = []

        if posted_by is not None:
            clauses.append("posted_by = ?")
            params.append(posted_by)
        if assigned_to is not None:
            clauses.append("assigned_to = ?")
            params.append(assigned_to)
        if applicant_id is not None:
            clauses.append(
                "EXISTS (SELECT 1 FROM applicants a "
                "WHERE a.task_id = tasks.task_id AND a.user_id = ?)"
            )
            params.append(applicant_id)
        if participant_id is not None:
            clauses.append("(posted_by = ? OR assigned_to = ?)")
            params.extend([participant_id, participant_id])
        if exclude_assigned_to is not None:
            clauses.append("(assigned_to IS NULL OR assigned_to != ?)")
            params.append(exclude_assigned_to)
        if statuses:
            clauses.append("status IN (" + ", ".join("?" for _ in statuses) + ")")
            params.extend(statuses)

        if len(clauses) > 0:
            query += " WHERE " + " AND ".join(clauses)

        query += " ORDER BY created_at DESC"

        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
            if offset is not None:
                query += " OFFSET ?"
                params.append(offset)

        with self._lock:
            rows = self._db.execute(query, params).fetchall()
            return [self._attach_applicants(self._row_to_task(row)) for row in rows]

    def count_tasks(self) -> int:
        """Count total tasks."""
        with self._lock:
            row = self._db.execute("SELECT COUNT(*) FROM tasks").fetchone()
        return int(row[0]) if row is not None else 0

    def count_tasks_by_status(self) -> dict[str, int]:
        """Count tasks grouped by status."""
        with self._lock:
            rows = self._db.execute("SELECT status, COUNT(*) FROM tasks GROUP BY status").fetchall()
        return {str(row[0]): int(row[1]) for row in rows}

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()
