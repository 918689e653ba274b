"""Runs a step's task with timeout and retry policy."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Union

from .context import copy_context
from .definition import Step
from .retry import RetryPolicy, schedule_retry
from .state import HistoryEntry, Outcome
from .tasks import Failure, Success, Suspend, Task, TaskRegistry, TaskResult, Timeout

logger = logging.getLogger(__name__)

ResumeResult = Union[Mapping[str, Any], Success, Failure, Timeout, None]


@dataclass
class ExecutionResult:
    """What one logical step execution produced."""

    context: dict[str, Any]
    outcome: Outcome
    error: Optional[str] = None
    history: list[HistoryEntry] = field(default_factory=list)
    suspend_reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    @property
    def suspended(self) -> bool:
        return self.outcome is Outcome.SUSPENDED


class TaskExecutor:
    """Execute a step's task, retrying failures and timeouts per policy."""

    def __init__(
        self,
        registry: TaskRegistry,
        default_policy: Optional[RetryPolicy] = None,
        default_timeout: Optional[float] = None,
    ) -> None:
        self._registry = registry
        self._default_policy = default_policy or RetryPolicy()
        self._default_timeout = default_timeout

    async def execute(
        self,
        step: Step,
        context: dict[str, Any],
        policy: Optional[RetryPolicy] = None,
        timeout: Optional[float] = None,
        branch: Optional[str] = None,
    ) -> ExecutionResult:
        """Run ``step`` against ``context``.

        The input context is never modified. One history entry is produced
        per attempt. After the last failed attempt the outcome is
        ``FAILURE`` carrying the last error, whether the attempts failed or
        timed out.
        """
        if step.task is None:
            return ExecutionResult(context=copy_context(context), outcome=Outcome.SUCCESS)

        task = self._registry.get(step.task)
        policy = policy or step.retry or self._default_policy
        timeout = timeout or step.timeout or self._default_timeout
        history: list[HistoryEntry] = []
        last_error: Optional[str] = None

        for attempt in range(1, policy.max_attempts + 1):
            result = await self._attempt(task, context, timeout)

            if isinstance(result, Success):
                history.append(
                    HistoryEntry(step_id=step.id, attempt=attempt, outcome=Outcome.SUCCESS, branch=branch)
                )
                return ExecutionResult(
                    context=result.context, outcome=Outcome.SUCCESS, history=history
                )

            if isinstance(result, Suspend):
                history.append(
                    HistoryEntry(
                        step_id=step.id,
                        attempt=attempt,
                        outcome=Outcome.SUSPENDED,
                        reason=result.reason,
                        branch=branch,
                    )
                )
                return ExecutionResult(
                    context=copy_context(context),
                    outcome=Outcome.SUSPENDED,
                    history=history,
                    suspend_reason=result.reason,
                )

            outcome = Outcome.TIMEOUT if isinstance(result, Timeout) else Outcome.FAILURE
            last_error = result.error
            history.append(
                HistoryEntry(
                    step_id=step.id,
                    attempt=attempt,
                    outcome=outcome,
                    error=last_error,
                    branch=branch,
                )
            )
            if attempt < policy.max_attempts:
                logger.warning(
                    f"Step {step.id} attempt {attempt}/{policy.max_attempts} "
                    f"{outcome.value}: {last_error}; retrying"
                )
                await schedule_retry(policy, attempt)

        logger.error(
            f"Step {step.id} failed after {policy.max_attempts} attempt(s): {last_error}"
        )
        return ExecutionResult(
            context=copy_context(context),
            outcome=Outcome.FAILURE,
            error=last_error,
            history=history,
        )

    async def _attempt(
        self, task: Task, context: dict[str, Any], timeout: Optional[float]
    ) -> TaskResult:
        try:
            return await asyncio.wait_for(task.execute(copy_context(context)), timeout=timeout)
        except asyncio.TimeoutError:
            return Timeout(error=f"timed out after {timeout}s")
        except Exception as e:
            return Failure(error=f"{type(e).__name__}: {e}")


def external_result(
    step_id: str,
    context: dict[str, Any],
    result: ResumeResult = None,
    attempt: int = 1,
    branch: Optional[str] = None,
) -> ExecutionResult:
    """Turn the completion of a suspended step into an execution result.

    A mapping is merged into a copy of ``context``; a ``Success`` replaces
    it. ``attempt`` is the attempt number that suspended.
    """
    if isinstance(result, (Failure, Timeout)):
        outcome = Outcome.TIMEOUT if isinstance(result, Timeout) else Outcome.FAILURE
        return ExecutionResult(
            context=copy_context(context),
            outcome=Outcome.FAILURE,
            error=result.error,
            history=[
                HistoryEntry(
                    step_id=step_id,
                    attempt=attempt,
                    outcome=outcome,
                    error=result.error,
                    branch=branch,
                )
            ],
        )

    if isinstance(result, Success):
        new_context = copy_context(result.context)
    else:
        new_context = copy_context(context)
        if result is not None:
            new_context.update(copy_context(result))
    return ExecutionResult(
        context=new_context,
        outcome=Outcome.SUCCESS,
        history=[
            HistoryEntry(step_id=step_id, attempt=attempt, outcome=Outcome.SUCCESS, branch=branch)
        ],
    )


__all__ = ["ExecutionResult", "ResumeResult", "TaskExecutor", "external_result"]
