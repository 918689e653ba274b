"""Public entry point for creating and driving process instances."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from .cache import InstanceCache, get_cache
from .config import ProcflowConfig, load_config
from .context import copy_context
from .coordinator import ParallelCoordinator
from .definition import ProcessDefinition
from .errors import InstanceCancelledError, InstanceStateError, PersistenceError
from .executor import ResumeResult, TaskExecutor
from .persistence import InstanceStore, get_store
from .resolver import TransitionResolver
from .scheduler import InstanceLocks, InstanceScheduler
from .sources import DefinitionSource
from .state import HistoryEntry, InstanceState, InstanceStatus, InstanceSummary
from .tasks import TaskRegistry

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Drives process instances against a store.

    Each instance is advanced by at most one tick at a time: every tick,
    resume and cancellation takes the instance's lock, loads the last
    checkpoint from the store, computes the new state and saves it before
    releasing the lock. Different instances run concurrently.

    Example:
        engine = WorkflowEngine(InMemoryDefinitionSource(definition), registry)
        instance_id = await engine.create_instance("approval", {"amount": 120})
        summary = await engine.run(instance_id)
    """

    def __init__(
        self,
        definitions: DefinitionSource,
        tasks: TaskRegistry,
        store: Optional[InstanceStore] = None,
        cache: Optional[InstanceCache] = None,
        config: Optional[ProcflowConfig] = None,
    ) -> None:
        self._config = config or load_config()
        self._definitions = definitions
        self._tasks = tasks
        self._store = store or get_store(config=self._config)
        self._cache = cache or get_cache(config=self._config)
        self._loaded: Dict[str, ProcessDefinition] = {}
        self._locks = InstanceLocks()
        self._cancel_requested: set[str] = set()
        self._interrupted: Dict[str, list[HistoryEntry]] = {}
        self._running: Dict[str, asyncio.Task] = {}
        self._slots = asyncio.Semaphore(self._config.engine.max_concurrent_instances)

        executor = TaskExecutor(
            tasks,
            default_policy=self._config.retry,
            default_timeout=self._config.engine.default_timeout,
        )
        resolver = TransitionResolver()
        self._scheduler = InstanceScheduler(
            executor, resolver, ParallelCoordinator(executor, resolver)
        )

    async def definition(self, process_type: str) -> ProcessDefinition:
        """Load a definition once per process type and share it afterwards."""
        definition = self._loaded.get(process_type)
        if definition is None:
            definition = await self._definitions.load(process_type)
            self._loaded[process_type] = definition
        return definition

    # ------------------------------------------------------------------
    # Instance lifecycle
    async def create_instance(
        self, process_type: str, initial_context: Optional[Dict[str, Any]] = None
    ) -> str:
        """Instantiate ``process_type`` and persist it with status ``created``.

        Raises:
            DefinitionError: The definition is missing, invalid or references
                tasks the registry does not provide.
            PersistenceError: The initial checkpoint could not be written.
        """
        definition = await self.definition(process_type)
        self._tasks.validate(definition)
        state = InstanceState(
            process_type=process_type,
            context=copy_context(initial_context or {}),
            active_steps=[definition.start_step.id],
        )
        await self._checkpoint(state)
        logger.info(f"Created instance {state.instance_id} of {process_type}")
        return state.instance_id

    async def get_status(self, instance_id: str) -> InstanceSummary:
        """Summary of an instance, served from the cache when possible."""
        cached = await self._cache.get(instance_id)
        if cached is not None:
            return cached.summary()
        state = await self._store.load(instance_id)
        await self._cache.set(state)
        return state.summary()

    async def get_instance(self, instance_id: str) -> InstanceState:
        """Full state straight from the store."""
        return await self._store.load(instance_id)

    async def list_instances(self) -> list[InstanceSummary]:
        return [state.summary() for state in await self._store.list_instances()]

    async def tick(self, instance_id: str) -> InstanceSummary:
        """Run exactly one tick of ``instance_id``."""
        async with self._locks.get(instance_id):
            state = await self._store.load(instance_id)
            state = await self._tick_locked(state)
        return state.summary()

    async def run(self, instance_id: str) -> InstanceSummary:
        """Tick until the instance is terminal, waiting or cancelled."""
        state: Optional[InstanceState] = None
        while instance_id not in self._cancel_requested:
            async with self._locks.get(instance_id):
                state = await self._store.load(instance_id)
                if state.is_terminal or state.status is InstanceStatus.WAITING:
                    break
                try:
                    state = await self._tick_locked(state)
                except InstanceCancelledError:
                    logger.info(f"Tick of {instance_id} interrupted by cancellation")
                    break
            if state.is_terminal or state.status is InstanceStatus.WAITING:
                break
        if state is None:
            logger.info(f"Run of {instance_id} skipped: cancellation requested")
            state = await self._store.load(instance_id)
        if state.is_terminal:
            self._locks.discard(instance_id)
        return state.summary()

    def start(self, instance_id: str) -> asyncio.Task:
        """Run ``instance_id`` in the background, bounded by the worker limit.

        Raises ``InstanceStateError`` while an earlier background run of the
        same instance is still going.
        """
        if instance_id in self._running:
            raise InstanceStateError(f"Instance {instance_id} is already running")
        task = asyncio.create_task(self._run_slot(instance_id))
        self._running[instance_id] = task
        task.add_done_callback(lambda t: self._on_run_done(instance_id, t))
        return task

    async def drain(self) -> None:
        """Wait for every background run started with :meth:`start`."""
        while self._running:
            await asyncio.gather(*list(self._running.values()), return_exceptions=True)

    async def resume(
        self,
        instance_id: str,
        step_id: str,
        result: ResumeResult = None,
        run: bool = True,
    ) -> InstanceSummary:
        """Unblock a waiting instance with the completion of ``step_id``.

        ``result`` is either a mapping merged into the context, a ``Success``
        carrying the full new context, or a ``Failure``/``Timeout``. With
        ``run`` the instance keeps running until it stops again.
        """
        async with self._locks.get(instance_id):
            state = await self._store.load(instance_id)
            definition = await self.definition(state.process_type)
            try:
                new = await self._scheduler.resume(
                    state,
                    definition,
                    step_id,
                    result,
                    is_cancelled=lambda: instance_id in self._cancel_requested,
                )
            except InstanceCancelledError as e:
                self._interrupted[instance_id] = e.history
                raise
            await self._checkpoint(new, previous=state)
        if run and new.status is InstanceStatus.RUNNING:
            return await self.run(instance_id)
        return new.summary()

    async def cancel(self, instance_id: str) -> InstanceSummary:
        """Cancel an instance.

        Running branches finish their current attempt; no further step is
        scheduled. Raises ``InstanceTerminatedError`` for finished instances.
        """
        self._cancel_requested.add(instance_id)
        try:
            async with self._locks.get(instance_id):
                state = await self._store.load(instance_id)
                new = self._scheduler.cancel(
                    state, interrupted=self._interrupted.pop(instance_id, None)
                )
                await self._checkpoint(new, previous=state)
        finally:
            self._cancel_requested.discard(instance_id)
            self._interrupted.pop(instance_id, None)
        self._locks.discard(instance_id)
        return new.summary()

    async def purge_finished(self, older_than: Optional[timedelta] = None) -> list[str]:
        """Delete terminal instances last updated more than ``older_than`` ago.

        ``older_than`` defaults to ``engine.retention`` from the configuration.
        Instances that are created, running or waiting are never removed.
        Returns the ids that were deleted.
        """
        if older_than is None:
            older_than = self._config.engine.retention
        if older_than is None:
            raise ValueError("No retention period given and engine.retention is not set")

        cutoff = datetime.now(timezone.utc) - older_than
        purged: list[str] = []
        for candidate in await self._store.list_instances():
            if not candidate.is_terminal or candidate.updated_at > cutoff:
                continue
            instance_id = candidate.instance_id
            async with self._locks.get(instance_id):
                await self._store.delete(instance_id)
                await self._cache.invalidate(instance_id)
            self._locks.discard(instance_id)
            purged.append(instance_id)
        logger.info(f"Purged {len(purged)} instance(s) finished before {cutoff.isoformat()}")
        return purged

    async def aclose(self) -> None:
        """Release the cache connection and the store."""
        await self._cache.disconnect()
        await self._store.close()

    # ------------------------------------------------------------------
    async def _tick_locked(self, state: InstanceState) -> InstanceState:
        definition = await self.definition(state.process_type)
        try:
            new = await self._scheduler.tick(
                state,
                definition,
                is_cancelled=lambda: state.instance_id in self._cancel_requested,
            )
        except InstanceCancelledError as e:
            self._interrupted[state.instance_id] = e.history
            raise
        await self._checkpoint(new, previous=state)
        return new

    async def _checkpoint(
        self, state: InstanceState, previous: Optional[InstanceState] = None
    ) -> None:
        if previous is not None:
            state.version = previous.version + 1
        state.updated_at = datetime.now(timezone.utc)
        try:
            await self._store.save(state)
        except PersistenceError as e:
            logger.error(
                f"Checkpoint of {state.instance_id} failed, last saved version "
                f"{previous.version if previous else 'none'} remains current: {e}"
            )
            await self._cache.invalidate(state.instance_id)
            raise
        await self._cache.set(state)

    async def _run_slot(self, instance_id: str) -> InstanceSummary:
        async with self._slots:
            return await self.run(instance_id)

    def _on_run_done(self, instance_id: str, task: asyncio.Task) -> None:
        if self._running.get(instance_id) is task:
            del self._running[instance_id]
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background run of {instance_id} stopped: {error!r}")


__all__ = ["WorkflowEngine"]
