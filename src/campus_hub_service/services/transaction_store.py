"""SQLite-backed ledger of payment gateway transactions."""

from __future__ import annotations

import contextlib
import json
import sqlite3
from pathlib import Path
from threading import RLock
from typing import Any

from campus_hub_service.services.task_store import now_iso


class DuplicatePayoutError(Exception):
    """Raised when a task already has a pending or completed payout."""


class TransactionStore:
    """
    SQLite-backed storage for collection, payout and reversal transactions.

    Status transitions out of ``pending`` are conditional updates, so a
    transaction reaches a terminal state at most once.
    """

    _COLUMNS: tuple[str, ...] = (
        "transaction_id",
        "transaction_type",
        "gateway_transaction_id",
        "gateway_receipt_number",
        "conversation_id",
        "originator_conversation_id",
        "amount",
        "commission",
        "net_amount",
        "phone_number",
        "from_user",
        "to_user",
        "task_id",
        "status",
        "response_code",
        "response_description",
        "error_message",
        "callback_received",
        "callback_data",
        "initiated_at",
        "completed_at",
        "created_at",
        "updated_at",
    )
    _IMMUTABLE_COLUMNS = frozenset(
        {"transaction_id", "transaction_type", "amount", "commission", "net_amount", "task_id"}
    )
    _COLUMNS_SQL = ", ".join(_COLUMNS)
    _INSERT_SQL = (
        "INSERT INTO transactions ("
        + _COLUMNS_SQL
        + ") VALUES ("
        + ", ".join("?" for _ in _COLUMNS)
        + ")"
    )
    _SELECT_BASE_SQL = "SELECT " + _COLUMNS_SQL + " FROM transactions"

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
                CREATE TABLE IF NOT EXISTS transactions (
                    transaction_id TEXT PRIMARY KEY,
                    transaction_type TEXT NOT NULL
                        CHECK (transaction_type IN ('collection', 'payout', 'reversal')),
                    gateway_transaction_id TEXT,
                    gateway_receipt_number TEXT,
                    conversation_id TEXT,
                    originator_conversation_id TEXT,
                    amount REAL NOT NULL CHECK (amount >= 0),
                    commission REAL NOT NULL DEFAULT 0 CHECK (commission >= 0),
                    net_amount REAL,
                    phone_number TEXT NOT NULL,
                    from_user TEXT,
                    to_user TEXT,
                    task_id TEXT,
                    status TEXT NOT NULL DEFAULT 'pending',
                    response_code TEXT,
                    response_description TEXT,
                    error_message TEXT,
                    callback_received INTEGER NOT NULL DEFAULT 0,
                    callback_data TEXT,
                    initiated_at TEXT NOT NULL,
                    completed_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE UNIQUE INDEX IF NOT EXISTS ux_active_payout_task
                    ON transactions(task_id)
                    WHERE transaction_type = 'payout' AND status IN ('pending', 'completed');

                CREATE INDEX IF NOT EXISTS ix_transactions_task ON transactions(task_id);
                CREATE INDEX IF NOT EXISTS ix_transactions_conversation
                    ON transactions(conversation_id);
                CREATE INDEX IF NOT EXISTS ix_transactions_originator
                    ON transactions(originator_conversation_id);
                CREATE INDEX IF NOT EXISTS ix_transactions_created ON transactions(created_at);
                """
            )

    def _row_to_transaction(self, row: sqlite3.Row) -> dict[str, Any]:
        record = {column: row[column] for column in self._COLUMNS}
        record["callback_received"] = bool(record["callback_received"])
        if record["callback_data"] is not None:
            record["callback_data"] = json.loads(record["callback_data"])
        return record

    def insert_transaction(self, data: dict[str, Any]) -> None:
        """
        Insert a new transaction row.

        Raises:
            DuplicatePayoutError: A pending or completed payout already exists for the task.
        """
        values = tuple(
            json.dumps(data[column]) if column == "callback_data" and data[column] is not None
            else data[column]
            for column in self._COLUMNS
        )
        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                self._db.execute(self._INSERT_SQL, values)
                self._db.execute("COMMIT")
            except sqlite3.IntegrityError as exc:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                if "ux_active_payout_task" in str(exc) or "transactions.task_id" in str(exc):
                    raise DuplicatePayoutError(
                        f"Task {data['task_id']} already has an active payout"
                    ) from exc
                raise
            except Exception:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise

    def get_transaction(self, transaction_id: str) -> dict[str, Any] | None:
        """Fetch a transaction by ID."""
        with self._lock:
            row = self._db.execute(
                self._SELECT_BASE_SQL + " WHERE transaction_id = ?", (transaction_id,)
            ).fetchone()
        return None if row is None else self._row_to_transaction(row)

    def update_transaction(
        self,
        transaction_id: str,
        updates: dict[str, Any],
        *,
        expected_status: str | None,
    ) -> int:
        """
        Update mutable transaction columns and return the number of affected rows.

        Amount, commission and net amount are fixed at creation and cannot be updated.
        """
        if len(updates) == 0:
            return 0
        if any(column not in self._COLUMNS for column in updates):
            msg = "Attempted to update unknown transaction column"
            raise ValueError(msg)
        if any(column in self._IMMUTABLE_COLUMNS for column in updates):
            msg = "Attempted to update an immutable transaction column"
            raise ValueError(msg)

        updates = {**updates, "updated_at": now_iso()}
        if updates.get("callback_data") is not None:
            updates["callback_data"] = json.dumps(updates["callback_data"])
        if "callback_received" in updates:
            updates["callback_received"] = int(bool(updates["callback_received"]))

        set_clause = ", ".join(f"{column} = ?" for column in updates)
        params: list[object] = list(updates.values())
        query = "UPDATE transactions SET " + set_clause + " WHERE transaction_id = ?"  # nosec B608
        params.append(transaction_id)
        if expected_status is not None:
            query += " AND status = ?"
            params.append(expected_status)

        with self._lock:
            cursor = self._db.execute(query, params)
        return int(cursor.rowcount)

    def find_for_task(
        self,
        task_id: str,
        transaction_type: str,
        statuses: tuple[str, ...] | None = None,
    ) -> list[dict[str, Any]]:
        """List a task's transactions of one type, oldest first."""
        query = self._SELECT_BASE_SQL + " WHERE task_id = ? AND transaction_type = ?"
        params: list[object] = [task_id, transaction_type]
        if statuses:
            query += " AND status IN (" + ", ".join("?" for _ in statuses) + ")"
            params.extend(statuses)
        query += " ORDER BY created_at, rowid"
        with self._lock:
            rows = self._db.execute(query, params).fetchall()
        return [self._row_to_transaction(row) for row in rows]

    def find_by_conversation(
        self,
        conversation_id: str | None,
        originator_conversation_id: str | None,
        transaction_type: str,
    ) -> dict[str, Any] | None:
        """Find a transaction by either gateway conversation identifier."""
        if not conversation_id and not originator_conversation_id:
            return None
        with self._lock:
            row = self._db.execute(
                self._SELECT_BASE_SQL
                + " WHERE transaction_type = ? AND ("
                "(conversation_id IS NOT NULL AND conversation_id = ?) OR "
                "(originator_conversation_id IS NOT NULL AND originator_conversation_id = ?)"
                ") ORDER BY created_at DESC LIMIT 1",
                (transaction_type, conversation_id, originator_conversation_id),
            ).fetchone()
        return None if row is None else self._row_to_transaction(row)

    def list_for_user(
        self,
        user_id: str,
        *,
        task_id: str | None,
        transaction_type: str | None,
        limit: int,
        offset: int,
    ) -> tuple[list[dict[str, Any]], int]:
        """List transactions where the user is payer or payee, newest first, with a total."""
        where = " WHERE (from_user = ? OR to_user = ?)"
        params: list[object] = [user_id, user_id]
        if task_id is not None:
            where += " AND task_id = ?"
            params.append(task_id)
        if transaction_type is not None:
            where += " AND transaction_type = ?"
            params.append(transaction_type)

        with self._lock:
            rows = self._db.execute(
                self._SELECT_BASE_SQL + where + " ORDER BY created_at DESC LIMIT ? OFFSET ?",
                [*params, limit, offset],
            ).fetchall()
            total_row = self._db.execute(
                "SELECT COUNT(*) FROM transactions" + where, params
            ).fetchone()
        total = int(total_row[0]) if total_row is not None else 0
        return [self._row_to_transaction(row) for row in rows], total

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()
