"""In-memory implementation of the instance store."""

from __future__ import annotations

from typing import Dict

from ..errors import InstanceNotFoundError
from ..state import InstanceState
from .repository import InstanceStore


class InMemoryInstanceStore(InstanceStore):
    """Store instance state in local memory.

    Useful for tests or when no database is configured. Records are kept as
    serialised JSON so every ``load`` returns an independent copy. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._records: Dict[str, str] = {}

    async def save(self, state: InstanceState) -> None:
        self._records[state.instance_id] = state.to_json()

    async def load(self, instance_id: str) -> InstanceState:
        record = self._records.get(instance_id)
        if record is None:
            raise InstanceNotFoundError(instance_id)
        return InstanceState.from_json(record)

    async def list_instances(self) -> list[InstanceState]:
        return [InstanceState.from_json(record) for record in self._records.values()]

    async def delete(self, instance_id: str) -> None:
        self._records.pop(instance_id, None)

    async def close(self) -> None:
        return None
