"""Exception hierarchy for procflow."""

from __future__ import annotations

from typing import Any, Optional, Sequence


class ProcflowError(Exception):
    """Base class for all procflow errors."""


class DefinitionError(ProcflowError):
    """A process definition is invalid or cannot be instantiated."""


class AmbiguousTransitionError(DefinitionError):
    """More than one transition matched on a step that is not a split."""

    def __init__(self, step_id: str, targets: Sequence[str]) -> None:
        self.step_id = step_id
        self.targets = tuple(targets)
        super().__init__(
            f"Step {step_id!r} is not a split but transitions to "
            f"{', '.join(self.targets)} all matched"
        )


class UnknownTaskError(DefinitionError):
    """A step references a task that is not registered."""

    def __init__(self, task_refs: Sequence[str]) -> None:
        self.task_refs = tuple(task_refs)
        super().__init__(f"Unknown task reference(s): {', '.join(self.task_refs)}")


class DefinitionNotFoundError(DefinitionError):
    """No definition exists for a process type."""

    def __init__(self, process_type: str) -> None:
        self.process_type = process_type
        super().__init__(f"Process definition {process_type!r} not found")


class TaskExecutionError(ProcflowError):
    """A task failed or timed out after exhausting its retries."""

    def __init__(self, step_id: str, error: Optional[str]) -> None:
        self.step_id = step_id
        self.error = error
        super().__init__(f"Step {step_id!r} failed: {error}")


class ForkFailedError(TaskExecutionError):
    """At least one branch of a parallel fork failed."""

    def __init__(
        self,
        split_id: str,
        branch: str,
        cause: BaseException,
        history: Optional[list[Any]] = None,
    ) -> None:
        self.split_id = split_id
        self.branch = branch
        self.cause = cause
        self.history = history or []
        super().__init__(split_id, f"branch {branch!r} failed: {cause}")


class NoViableTransitionError(ProcflowError):
    """No outgoing transition matched on a non-terminal step."""

    def __init__(self, step_id: str, context: dict[str, Any]) -> None:
        self.step_id = step_id
        self.context = context
        super().__init__(f"No viable transition from step {step_id!r}")


class PersistenceError(ProcflowError):
    """The instance store could not complete an operation."""


class InstanceNotFoundError(ProcflowError):
    """No stored instance exists for an id."""

    def __init__(self, instance_id: str) -> None:
        self.instance_id = instance_id
        super().__init__(f"Instance {instance_id!r} not found")


class InstanceStateError(ProcflowError):
    """An operation is not allowed in the instance's current status."""


class InstanceTerminatedError(InstanceStateError):
    """The instance is completed, failed or cancelled and is read-only."""

    def __init__(self, instance_id: str, status: str) -> None:
        self.instance_id = instance_id
        self.status = status
        super().__init__(f"Instance {instance_id!r} is {status} and can no longer change")


class InstanceCancelledError(ProcflowError):
    """Raised inside a running tick once cancellation has been requested.

    ``history`` holds the attempts that ran before the tick was interrupted.
    """

    def __init__(self, instance_id: str, history: Optional[list[Any]] = None) -> None:
        self.instance_id = instance_id
        self.history = history or []
        super().__init__(f"Instance {instance_id!r} was cancelled")


__all__ = [
    "ProcflowError",
    "DefinitionError",
    "AmbiguousTransitionError",
    "UnknownTaskError",
    "DefinitionNotFoundError",
    "TaskExecutionError",
    "ForkFailedError",
    "NoViableTransitionError",
    "PersistenceError",
    "InstanceNotFoundError",
    "InstanceStateError",
    "InstanceTerminatedError",
    "InstanceCancelledError",
]
