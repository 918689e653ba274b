"""Mutable per-instance execution state."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from .errors import InstanceTerminatedError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InstanceStatus(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            InstanceStatus.COMPLETED,
            InstanceStatus.FAILED,
            InstanceStatus.CANCELLED,
        )


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    SUSPENDED = "suspended"


class HistoryEntry(BaseModel):
    """One task attempt (or external completion) recorded for audit."""

    step_id: str
    attempt: int = 1
    outcome: Outcome
    timestamp: datetime = Field(default_factory=_utcnow)
    error: Optional[str] = None
    reason: Optional[str] = Field(default=None, description="Why the step suspended")
    branch: Optional[str] = None


class BranchState(BaseModel):
    """Progress of one branch of a fork that is still open.

    ``cursor`` is the step the branch stands on. ``step_done`` marks that the
    cursor step has completed (externally, through a resume) and only its
    outgoing transitions remain to be resolved. While a nested split is open
    the cursor stays on that split and ``nested`` holds its branches.
    """

    label: str
    cursor: Optional[str] = None
    context: dict[str, Any] = Field(default_factory=dict)
    history: list[HistoryEntry] = Field(default_factory=list)
    step_done: bool = False
    waiting: bool = False
    done: bool = False
    error: Optional[str] = None
    nested: Optional["ForkState"] = None


class ForkState(BaseModel):
    """Checkpoint of a fork with at least one branch waiting on a resume."""

    split: str
    join: Optional[str] = None
    base: dict[str, Any] = Field(default_factory=dict)
    branches: list[BranchState] = Field(default_factory=list)

    def history(self) -> list[HistoryEntry]:
        """History of every branch, in declared branch order."""
        entries: list[HistoryEntry] = []
        for branch in self.branches:
            entries.extend(branch.history)
            if branch.nested is not None:
                entries.extend(branch.nested.history())
        return entries

    def live_steps(self) -> list[str]:
        steps: list[str] = []
        for branch in self.branches:
            if branch.done:
                continue
            if branch.nested is not None:
                steps.extend(branch.nested.live_steps())
            elif branch.cursor is not None:
                steps.append(branch.cursor)
        return steps

    def waiting_steps(self) -> list[str]:
        steps: list[str] = []
        for branch in self.branches:
            if branch.waiting and branch.cursor is not None:
                steps.append(branch.cursor)
            elif branch.nested is not None:
                steps.extend(branch.nested.waiting_steps())
        return steps

    def find_waiting(self, step_id: str) -> Optional[BranchState]:
        """The waiting branch standing on ``step_id``, searching nested forks."""
        for branch in self.branches:
            if branch.waiting and branch.cursor == step_id:
                return branch
            if branch.nested is not None:
                found = branch.nested.find_waiting(step_id)
                if found is not None:
                    return found
        return None


BranchState.model_rebuild()


class InstanceSummary(BaseModel):
    """Read-only view returned to callers polling an instance."""

    instance_id: str
    process_type: str
    status: InstanceStatus
    active_steps: list[str]
    waiting_step: Optional[str] = None
    error: Optional[str] = None
    history_length: int
    created_at: datetime
    updated_at: datetime


class InstanceState(BaseModel):
    """Persisted record of one process instance.

    The definition itself is not part of the record; the engine holds one
    shared definition per ``process_type``.
    """

    instance_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    process_type: str
    status: InstanceStatus = InstanceStatus.CREATED
    active_steps: list[str] = Field(default_factory=list)
    context: dict[str, Any] = Field(default_factory=dict)
    history: list[HistoryEntry] = Field(default_factory=list)
    waiting_step: Optional[str] = None
    open_fork: Optional[ForkState] = None
    error: Optional[str] = None
    version: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def ensure_mutable(self) -> None:
        if self.is_terminal:
            raise InstanceTerminatedError(self.instance_id, self.status.value)

    def summary(self) -> InstanceSummary:
        return InstanceSummary(
            instance_id=self.instance_id,
            process_type=self.process_type,
            status=self.status,
            active_steps=list(self.active_steps),
            waiting_step=self.waiting_step,
            error=self.error,
            history_length=len(self.history),
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "InstanceState":
        return cls.model_validate_json(data)


__all__ = [
    "InstanceStatus",
    "Outcome",
    "BranchState",
    "ForkState",
    "HistoryEntry",
    "InstanceSummary",
    "InstanceState",
]
