"""Task results, the task capability and the registry that resolves task references."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, Union

from pydantic import BaseModel, Field

from .context import copy_context
from .definition import ProcessDefinition
from .errors import UnknownTaskError

logger = logging.getLogger(__name__)


class Success(BaseModel):
    """The task finished; ``context`` is its full output context."""

    context: Dict[str, Any] = Field(default_factory=dict)


class Failure(BaseModel):
    error: str


class Timeout(BaseModel):
    error: str = "timed out"


class Suspend(BaseModel):
    """The task is blocked on an external event; the instance should wait."""

    reason: Optional[str] = None


TaskResult = Union[Success, Failure, Timeout, Suspend]


class Task(Protocol):
    """Capability implemented by every unit of work a step can run."""

    async def execute(self, context: Dict[str, Any]) -> TaskResult:
        ...


class FunctionTask:
    """Adapt a plain function to :class:`Task`.

    Coroutine functions are awaited; regular functions run on a worker thread.
    The function receives its own copy of the context. A returned mapping is
    merged into that copy, ``None`` leaves it unchanged and a
    :data:`TaskResult` is used as-is. Any exception becomes a
    :class:`Failure`.
    """

    def __init__(self, func: Callable[..., Any], name: Optional[str] = None) -> None:
        self.func = func
        self.name = name or getattr(func, "__name__", repr(func))

    async def execute(self, context: Dict[str, Any]) -> TaskResult:
        working = copy_context(context)
        try:
            if inspect.iscoroutinefunction(self.func):
                result = await self.func(working)
            else:
                result = await asyncio.to_thread(self.func, working)
                if inspect.isawaitable(result):
                    result = await result
        except Exception as e:
            return Failure(error=f"{type(e).__name__}: {e}")
        return _to_result(result, working)


def _to_result(result: Any, context: Dict[str, Any]) -> TaskResult:
    if isinstance(result, (Success, Failure, Timeout, Suspend)):
        return result
    if result is None:
        return Success(context=context)
    if isinstance(result, Mapping):
        context.update(result)
        return Success(context=context)
    return Failure(error=f"Task returned unsupported value of type {type(result).__name__}")


class TaskRegistry:
    """Maps task references used in definitions to executable tasks."""

    def __init__(self) -> None:
        self._tasks: Dict[str, Task] = {}

    def register(
        self, ref: str, task: Union[Task, Callable[..., Any]]
    ) -> Task:
        """Register ``task`` under ``ref``; plain callables are wrapped."""
        if not hasattr(task, "execute"):
            task = FunctionTask(task, name=ref)
        if ref in self._tasks:
            logger.warning(f"Task reference {ref!r} re-registered")
        self._tasks[ref] = task
        return task

    def task(self, ref: Optional[str] = None) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator form of :meth:`register`."""

        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            self.register(ref or func.__name__, func)
            return func

        return decorator

    def get(self, ref: str) -> Task:
        try:
            return self._tasks[ref]
        except KeyError:
            raise UnknownTaskError([ref]) from None

    def __contains__(self, ref: object) -> bool:
        return ref in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    def validate(self, definition: ProcessDefinition) -> None:
        """Raise :class:`UnknownTaskError` for references nothing provides."""
        missing = sorted(ref for ref in definition.task_refs() if ref not in self._tasks)
        if missing:
            raise UnknownTaskError(missing)


__all__ = [
    "Success",
    "Failure",
    "Timeout",
    "Suspend",
    "TaskResult",
    "Task",
    "FunctionTask",
    "TaskRegistry",
]
