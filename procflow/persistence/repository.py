"""Store abstraction for instance state persistence."""

from __future__ import annotations

from typing import Protocol

from ..state import InstanceState


class InstanceStore(Protocol):
    """Protocol for instance persistence backends.

    ``save`` must replace the whole record of one instance atomically so that
    readers never observe a partially written state.
    """

    async def save(self, state: InstanceState) -> None:
        """Persist ``state``, replacing any previous record for its id."""

    async def load(self, instance_id: str) -> InstanceState:
        """Return the stored state or raise ``InstanceNotFoundError``."""

    async def list_instances(self) -> list[InstanceState]:
        """Return every stored instance."""

    async def delete(self, instance_id: str) -> None:
        """Remove an instance record if present."""

    async def close(self) -> None:
        """Release connections held by the backend."""
