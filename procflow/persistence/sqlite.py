"""SQLite implementation of the instance store."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from pathlib import Path
from typing import Any

from ..errors import InstanceNotFoundError, PersistenceError
from ..state import InstanceState
from .repository import InstanceStore


class SQLiteInstanceStore(InstanceStore):
    """Persist instance state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()
        with self._lock:
            self._connection()

    # ------------------------------------------------------------------
    # Connection and schema management
    def _connection(self) -> sqlite3.Connection:
        """Open the database on first use, or again after :meth:`close`.

        Callers hold ``_lock``.
        """
        if self._conn is None:
            try:
                conn = sqlite3.connect(self.db_path, check_same_thread=False)
                conn.row_factory = sqlite3.Row
                self._ensure_schema(conn)
            except sqlite3.Error as e:
                raise PersistenceError(f"SQLite open failed: {e}") from e
            self._conn = conn
        return self._conn

    @staticmethod
    def _ensure_schema(conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS instances (
                instance_id TEXT PRIMARY KEY,
                process_type TEXT NOT NULL,
                status TEXT NOT NULL,
                version INTEGER NOT NULL,
                state TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> None:
        with self._lock:
            conn = self._connection()
            try:
                cur = conn.cursor()
                cur.execute(query, params)
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise PersistenceError(f"SQLite write failed: {e}") from e

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            conn = self._connection()
            try:
                cur = conn.cursor()
                cur.execute(query, params)
                return cur.fetchone()
            except sqlite3.Error as e:
                raise PersistenceError(f"SQLite read failed: {e}") from e

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            conn = self._connection()
            try:
                cur = conn.cursor()
                cur.execute(query, params)
                return cur.fetchall()
            except sqlite3.Error as e:
                raise PersistenceError(f"SQLite read failed: {e}") from e

    # ------------------------------------------------------------------
    # Store API
    async def save(self, state: InstanceState) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO instances (instance_id, process_type, status, version, state, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(instance_id) DO UPDATE SET
                process_type = excluded.process_type,
                status = excluded.status,
                version = excluded.version,
                state = excluded.state,
                updated_at = excluded.updated_at
            """,
            state.instance_id,
            state.process_type,
            state.status.value,
            state.version,
            state.to_json(),
            state.updated_at.isoformat(),
        )

    async def load(self, instance_id: str) -> InstanceState:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT state FROM instances WHERE instance_id = ?",
            instance_id,
        )
        if not row:
            raise InstanceNotFoundError(instance_id)
        return InstanceState.from_json(row["state"])

    async def list_instances(self) -> list[InstanceState]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT state FROM instances ORDER BY updated_at",
        )
        return [InstanceState.from_json(row["state"]) for row in rows]

    async def delete(self, instance_id: str) -> None:
        await asyncio.to_thread(
            self._execute,
            "DELETE FROM instances WHERE instance_id = ?",
            instance_id,
        )

    async def close(self) -> None:
        """Close the connection; the next call reopens it."""
        await asyncio.to_thread(self._disconnect)

    def _disconnect(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
