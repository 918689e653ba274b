"""Runs the branches opened by a split and merges them at the join."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .context import copy_context, merge_branches
from .definition import ProcessDefinition, Step
from .errors import (
    ForkFailedError,
    InstanceCancelledError,
    InstanceStateError,
    ProcflowError,
    TaskExecutionError,
)
from .executor import ExecutionResult, ResumeResult, TaskExecutor, external_result
from .resolver import NextStepSet, TransitionResolver
from .state import BranchState, ForkState, HistoryEntry

logger = logging.getLogger(__name__)


@dataclass
class ForkResult:
    """Outcome of driving a fork as far as it can go.

    When every branch reached the join, ``context`` is the merged context and
    ``join`` is the step the instance continues from (``None`` when the split
    declares no join and every branch ran to a terminal step). When a branch
    suspended, ``pending`` holds the checkpoint to resume from and
    ``context`` is the context the fork was opened with.
    """

    context: dict[str, Any]
    history: list[HistoryEntry]
    join: Optional[str]
    pending: Optional[ForkState] = None

    @property
    def is_open(self) -> bool:
        return self.pending is not None


class ParallelCoordinator:
    """Dispatch fork branches concurrently and wait for all of them.

    Branch contexts are merged in declared branch order (later branches win
    conflicting keys) once every branch has reported. If any branch fails the
    whole fork fails and nothing is merged; work already done by sibling
    branches is not undone. A branch whose task suspends stops where it is;
    its siblings run on to the join and the fork is returned open, to be
    continued with :meth:`resume`.
    """

    def __init__(self, executor: TaskExecutor, resolver: TransitionResolver) -> None:
        self._executor = executor
        self._resolver = resolver

    def open(
        self,
        split: Step,
        branches: NextStepSet,
        context: dict[str, Any],
        parent: Optional[str] = None,
    ) -> ForkState:
        """Build the initial checkpoint of a fork, one branch per target."""
        return ForkState(
            split=split.id,
            join=split.join,
            base=copy_context(context),
            branches=[
                BranchState(
                    label=f"{parent}/{start}" if parent else start,
                    cursor=start,
                    context=copy_context(context),
                    done=start == split.join,
                )
                for start in branches.step_ids
            ],
        )

    async def fork(
        self,
        definition: ProcessDefinition,
        split: Step,
        branches: NextStepSet,
        context: dict[str, Any],
        instance_id: str = "",
        is_cancelled: Callable[[], bool] = lambda: False,
        parent: Optional[str] = None,
    ) -> ForkResult:
        fork = self.open(split, branches, context, parent)
        logger.info(
            f"Forking {len(fork.branches)} branch(es) at {split.id} for instance {instance_id}"
        )
        return await self.advance(definition, fork, instance_id, is_cancelled)

    async def resume(
        self,
        definition: ProcessDefinition,
        fork: ForkState,
        step_id: str,
        result: ResumeResult = None,
        instance_id: str = "",
        is_cancelled: Callable[[], bool] = lambda: False,
    ) -> ForkResult:
        """Complete the suspended step of one branch and drive the fork on."""
        fork = fork.model_copy(deep=True)
        branch = fork.find_waiting(step_id)
        if branch is None:
            raise InstanceStateError(
                f"No branch of split {fork.split} is waiting on {step_id}"
            )
        attempt = next(
            (e.attempt for e in reversed(branch.history) if e.step_id == step_id),
            1,
        )
        logger.info(f"Branch {branch.label} of instance {instance_id} resumed at {step_id}")
        branch.waiting = False
        completed = external_result(
            step_id, branch.context, result, attempt=attempt, branch=branch.label
        )
        branch.history.extend(completed.history)
        self._apply(definition, branch, step_id, completed)
        return await self.advance(definition, fork, instance_id, is_cancelled)

    async def advance(
        self,
        definition: ProcessDefinition,
        fork: ForkState,
        instance_id: str = "",
        is_cancelled: Callable[[], bool] = lambda: False,
    ) -> ForkResult:
        """Run every branch that is neither finished nor waiting."""
        fork = fork.model_copy(deep=True)
        movable = [b for b in fork.branches if not b.done and not b.waiting]
        runs = [
            asyncio.create_task(
                self._run_branch(definition, branch, fork.join, instance_id, is_cancelled)
            )
            for branch in movable
        ]
        outcomes = await asyncio.gather(*runs, return_exceptions=True)

        errors: dict[str, BaseException] = {}
        for branch, outcome in zip(movable, outcomes):
            if outcome is not None:
                errors[branch.label] = outcome

        history = fork.history()
        if any(isinstance(e, InstanceCancelledError) for e in errors.values()):
            raise InstanceCancelledError(instance_id, history)
        for branch in fork.branches:
            error = errors.get(branch.label)
            if error is not None:
                logger.error(
                    f"Branch {branch.label} of split {fork.split} failed for "
                    f"instance {instance_id}: {error}"
                )
                raise ForkFailedError(fork.split, branch.label, error, history)

        if not all(branch.done for branch in fork.branches):
            logger.info(
                f"Fork at {fork.split} of instance {instance_id} waiting on "
                f"{', '.join(fork.waiting_steps())}"
            )
            return ForkResult(
                context=copy_context(fork.base), history=[], join=fork.join, pending=fork
            )

        merged = merge_branches(fork.base, [branch.context for branch in fork.branches])
        return ForkResult(context=merged, history=history, join=fork.join)

    async def _run_branch(
        self,
        definition: ProcessDefinition,
        branch: BranchState,
        join: Optional[str],
        instance_id: str,
        is_cancelled: Callable[[], bool],
    ) -> Optional[BaseException]:
        """Move ``branch`` in place until it is done, waiting or failed."""
        try:
            while not branch.done:
                if branch.nested is None and branch.cursor == join:
                    branch.done = True
                    continue
                if branch.nested is not None:
                    nested = await self.advance(
                        definition, branch.nested, instance_id, is_cancelled
                    )
                    if nested.is_open:
                        branch.nested = nested.pending
                        return None
                    branch.nested = None
                    branch.history.extend(nested.history)
                    branch.context = nested.context
                    if nested.join is None:
                        branch.done = True
                    else:
                        branch.cursor = nested.join
                    continue

                if branch.error is not None:
                    raise TaskExecutionError(branch.cursor, branch.error)

                step = definition.step(branch.cursor)
                if not branch.step_done:
                    if is_cancelled():
                        raise InstanceCancelledError(instance_id)
                    result = await self._executor.execute(
                        step, branch.context, branch=branch.label
                    )
                    branch.history.extend(result.history)
                    if result.suspended:
                        branch.waiting = True
                        return None
                    self._apply(definition, branch, step.id, result)
                    continue

                branch.step_done = False
                next_steps = self._resolver.resolve(step.id, branch.context, definition)
                if next_steps.is_empty:
                    branch.done = True
                elif next_steps.fork:
                    branch.nested = self.open(
                        step, next_steps, branch.context, parent=branch.label
                    )
                else:
                    branch.cursor = next_steps.step_ids[0]
        except (ForkFailedError, InstanceCancelledError) as e:
            branch.nested = None
            branch.history.extend(e.history)
            return e
        except ProcflowError as e:
            return e
        return None

    def _apply(
        self,
        definition: ProcessDefinition,
        branch: BranchState,
        step_id: str,
        result: ExecutionResult,
    ) -> None:
        if result.succeeded:
            branch.context = result.context
            branch.step_done = True
            return
        target = self._resolver.failure_target(step_id, definition)
        if target is None:
            branch.error = result.error
        else:
            branch.cursor = target
            branch.step_done = False


__all__ = ["ForkResult", "ParallelCoordinator"]
