"""The instance state machine: one tick at a time."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .coordinator import ForkResult, ParallelCoordinator
from .definition import ProcessDefinition, Step
from .errors import (
    AmbiguousTransitionError,
    ForkFailedError,
    InstanceCancelledError,
    InstanceStateError,
    NoViableTransitionError,
    ProcflowError,
    TaskExecutionError,
)
from .executor import ResumeResult, TaskExecutor, external_result
from .resolver import TransitionResolver
from .state import HistoryEntry, InstanceState, InstanceStatus

logger = logging.getLogger(__name__)


class InstanceLocks:
    """One ``asyncio.Lock`` per instance id."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, instance_id: str) -> asyncio.Lock:
        lock = self._locks.get(instance_id)
        if lock is None:
            lock = self._locks[instance_id] = asyncio.Lock()
        return lock

    def discard(self, instance_id: str) -> None:
        lock = self._locks.get(instance_id)
        if lock is not None and not lock.locked():
            del self._locks[instance_id]

    def __len__(self) -> int:
        return len(self._locks)


class InstanceScheduler:
    """Advances an :class:`InstanceState` through its definition.

    Every method works on a deep copy and returns the new state; the state
    passed in is never modified, so a caller that fails to persist the result
    still holds the last checkpoint. Callers serialise calls per instance.
    """

    def __init__(
        self,
        executor: TaskExecutor,
        resolver: TransitionResolver,
        coordinator: ParallelCoordinator,
    ) -> None:
        self._executor = executor
        self._resolver = resolver
        self._coordinator = coordinator

    async def tick(
        self,
        state: InstanceState,
        definition: ProcessDefinition,
        is_cancelled: Callable[[], bool] = lambda: False,
    ) -> InstanceState:
        """Execute the active step, resolve what follows and advance."""
        state.ensure_mutable()
        if state.status is InstanceStatus.WAITING:
            raise InstanceStateError(
                f"Instance {state.instance_id} is waiting on {state.waiting_step}"
            )

        new = state.model_copy(deep=True)
        if new.status is InstanceStatus.CREATED:
            new.status = InstanceStatus.RUNNING
            if not new.active_steps:
                new.active_steps = [definition.start_step.id]
            logger.info(f"Instance {new.instance_id} ({new.process_type}) running")

        step = definition.step(new.active_steps[0])
        result = await self._executor.execute(step, new.context)
        new.history.extend(result.history)

        if result.suspended:
            new.status = InstanceStatus.WAITING
            new.waiting_step = step.id
            logger.info(
                f"Instance {new.instance_id} waiting on {step.id}: {result.suspend_reason}"
            )
            return new

        if not result.succeeded:
            self._handle_failure(new, definition, step, TaskExecutionError(step.id, result.error))
            return new

        new.context = result.context
        try:
            return await self._advance(new, definition, step, is_cancelled)
        except InstanceCancelledError as e:
            e.history = new.history[len(state.history):] + e.history
            raise

    async def resume(
        self,
        state: InstanceState,
        definition: ProcessDefinition,
        step_id: str,
        result: ResumeResult = None,
        is_cancelled: Callable[[], bool] = lambda: False,
    ) -> InstanceState:
        """Complete the step a waiting instance is blocked on.

        When the instance waits inside an open fork, ``step_id`` may name any
        suspended branch step; the fork continues and joins once every branch
        has reached the join.
        """
        state.ensure_mutable()
        if state.status is not InstanceStatus.WAITING:
            raise InstanceStateError(
                f"Instance {state.instance_id} is {state.status.value}, not waiting"
            )
        if state.open_fork is not None:
            if state.open_fork.find_waiting(step_id) is None:
                raise InstanceStateError(
                    f"Instance {state.instance_id} is waiting on "
                    f"{', '.join(state.open_fork.waiting_steps())}, not {step_id}"
                )
        elif state.waiting_step != step_id:
            raise InstanceStateError(
                f"Instance {state.instance_id} is waiting on {state.waiting_step}, not {step_id}"
            )

        new = state.model_copy(deep=True)
        new.status = InstanceStatus.RUNNING
        new.waiting_step = None
        logger.info(f"Instance {new.instance_id} resumed at {step_id}")

        if new.open_fork is not None:
            split = definition.step(new.open_fork.split)
            try:
                return await self._join(
                    new,
                    definition,
                    split,
                    self._coordinator.resume(
                        definition,
                        new.open_fork,
                        step_id,
                        result,
                        new.instance_id,
                        is_cancelled,
                    ),
                )
            except InstanceCancelledError as e:
                e.history = new.history[len(state.history):] + e.history
                raise

        step = definition.step(step_id)
        attempt = next(
            (e.attempt for e in reversed(new.history) if e.step_id == step_id),
            1,
        )
        completed = external_result(step_id, new.context, result, attempt=attempt)
        new.history.extend(completed.history)
        if not completed.succeeded:
            self._handle_failure(
                new, definition, step, TaskExecutionError(step_id, completed.error)
            )
            return new

        new.context = completed.context
        try:
            return await self._advance(new, definition, step, is_cancelled)
        except InstanceCancelledError as e:
            e.history = new.history[len(state.history):] + e.history
            raise

    def cancel(
        self,
        state: InstanceState,
        interrupted: Optional[list[HistoryEntry]] = None,
    ) -> InstanceState:
        """Mark ``state`` cancelled.

        ``interrupted`` is the history of a tick that cancellation cut short;
        otherwise the history of a fork left open by suspended branches is
        kept.
        """
        state.ensure_mutable()
        new = state.model_copy(deep=True)
        if interrupted:
            new.history.extend(interrupted)
        elif new.open_fork is not None:
            new.history.extend(new.open_fork.history())
        new.status = InstanceStatus.CANCELLED
        new.waiting_step = None
        new.open_fork = None
        logger.info(f"Instance {new.instance_id} cancelled")
        return new

    # ------------------------------------------------------------------
    async def _advance(
        self,
        new: InstanceState,
        definition: ProcessDefinition,
        step: Step,
        is_cancelled: Callable[[], bool],
    ) -> InstanceState:
        try:
            next_steps = self._resolver.resolve(step.id, new.context, definition)
            if next_steps.is_empty:
                self._complete(new)
            elif next_steps.fork:
                new.active_steps = list(next_steps.step_ids)
                await self._join(
                    new,
                    definition,
                    step,
                    self._coordinator.fork(
                        definition,
                        step,
                        next_steps,
                        new.context,
                        new.instance_id,
                        is_cancelled,
                    ),
                )
            else:
                self._move_to(new, definition, next_steps.step_ids[0])
        except (NoViableTransitionError, AmbiguousTransitionError) as e:
            self._fail(new, e)
        return new

    async def _join(
        self,
        new: InstanceState,
        definition: ProcessDefinition,
        split: Step,
        pending: Awaitable[ForkResult],
    ) -> InstanceState:
        try:
            fork = await pending
        except ForkFailedError as e:
            new.open_fork = None
            new.active_steps = [split.id]
            new.history.extend(e.history)
            self._handle_failure(new, definition, split, e)
            return new

        if fork.is_open:
            new.open_fork = fork.pending
            new.status = InstanceStatus.WAITING
            new.active_steps = fork.pending.live_steps()
            new.waiting_step = fork.pending.waiting_steps()[0]
            logger.info(
                f"Instance {new.instance_id} waiting inside fork {split.id} on "
                f"{', '.join(fork.pending.waiting_steps())}"
            )
            return new

        new.open_fork = None
        new.history.extend(fork.history)
        new.context = fork.context
        if fork.join is None:
            self._complete(new)
        else:
            self._move_to(new, definition, fork.join)
        return new

    def _move_to(self, new: InstanceState, definition: ProcessDefinition, step_id: str) -> None:
        new.active_steps = [step_id]
        if definition.is_terminal(step_id) and definition.step(step_id).is_marker:
            self._complete(new)

    def _handle_failure(
        self,
        new: InstanceState,
        definition: ProcessDefinition,
        step: Step,
        error: TaskExecutionError,
    ) -> None:
        target = self._resolver.failure_target(step.id, definition)
        if target is None:
            self._fail(new, error)
            return
        logger.warning(
            f"Instance {new.instance_id}: {step.id} failed ({error.error}); "
            f"taking failure transition to {target}"
        )
        new.error = str(error)
        self._move_to(new, definition, target)

    def _complete(self, new: InstanceState) -> None:
        new.status = InstanceStatus.COMPLETED
        new.active_steps = []
        new.error = None
        logger.info(f"Instance {new.instance_id} completed")

    def _fail(self, new: InstanceState, error: ProcflowError) -> None:
        new.status = InstanceStatus.FAILED
        new.error = str(error)
        logger.error(f"Instance {new.instance_id} failed: {error}")


__all__ = ["InstanceLocks", "InstanceScheduler"]
