"""PostgreSQL implementation of the instance store."""

from __future__ import annotations

import asyncpg

from ..errors import InstanceNotFoundError, PersistenceError
from ..state import InstanceState
from .repository import InstanceStore


class PostgresInstanceStore(InstanceStore):
    """Persist instance state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        try:
            conn = await asyncpg.connect(self._dsn)
            if not self._initialized:
                await self._ensure_schema(conn)
                self._initialized = True
        except (asyncpg.PostgresError, OSError) as e:
            raise PersistenceError(f"Postgres unavailable: {e}") from e
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS instances (
                instance_id TEXT PRIMARY KEY,
                process_type TEXT NOT NULL,
                status TEXT NOT NULL,
                version INTEGER NOT NULL,
                state JSONB NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )

    # ------------------------------------------------------------------
    async def save(self, state: InstanceState) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO instances (instance_id, process_type, status, version, state, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6)
                ON CONFLICT (instance_id) DO UPDATE SET
                    process_type = EXCLUDED.process_type,
                    status = EXCLUDED.status,
                    version = EXCLUDED.version,
                    state = EXCLUDED.state,
                    updated_at = EXCLUDED.updated_at
                """,
                state.instance_id,
                state.process_type,
                state.status.value,
                state.version,
                state.to_json(),
                state.updated_at,
            )
        except asyncpg.PostgresError as e:
            raise PersistenceError(f"Failed to save instance {state.instance_id}: {e}") from e
        finally:
            await conn.close()

    async def load(self, instance_id: str) -> InstanceState:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT state FROM instances WHERE instance_id = $1",
                instance_id,
            )
        except asyncpg.PostgresError as e:
            raise PersistenceError(f"Failed to load instance {instance_id}: {e}") from e
        finally:
            await conn.close()
        if not row:
            raise InstanceNotFoundError(instance_id)
        return _decode(row["state"])

    async def list_instances(self) -> list[InstanceState]:
        conn = await self._connect()
        try:
            rows = await conn.fetch("SELECT state FROM instances ORDER BY updated_at")
        except asyncpg.PostgresError as e:
            raise PersistenceError(f"Failed to list instances: {e}") from e
        finally:
            await conn.close()
        return [_decode(r["state"]) for r in rows]

    async def delete(self, instance_id: str) -> None:
        conn = await self._connect()
        try:
            await conn.execute("DELETE FROM instances WHERE instance_id = $1", instance_id)
        except asyncpg.PostgresError as e:
            raise PersistenceError(f"Failed to delete instance {instance_id}: {e}") from e
        finally:
            await conn.close()

    async def close(self) -> None:
        # connections are opened per call
        return None


def _decode(value: str | dict) -> InstanceState:
    # asyncpg hands JSONB back as text unless a codec is registered
    if isinstance(value, str):
        return InstanceState.from_json(value)
    return InstanceState.model_validate(value)
