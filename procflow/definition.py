"""Immutable process definitions: steps, transitions and graph validation."""

from __future__ import annotations

from collections import deque
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, model_validator

from .errors import DefinitionError
from .retry import RetryPolicy

ConditionFn = Callable[[Mapping[str, Any]], bool]


class StepKind(str, Enum):
    TASK = "task"
    SPLIT = "split"
    JOIN = "join"


class Step(BaseModel):
    """One node of a process graph."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    task: Optional[str] = Field(default=None, description="Task registry reference")
    kind: StepKind = StepKind.TASK
    join: Optional[str] = Field(default=None, description="Join step closing a split")
    reentrant: bool = False
    timeout: Optional[float] = Field(default=None, gt=0)
    retry: Optional[RetryPolicy] = None

    @property
    def is_split(self) -> bool:
        return self.kind is StepKind.SPLIT

    @property
    def is_join(self) -> bool:
        return self.kind is StepKind.JOIN

    @property
    def is_marker(self) -> bool:
        """``True`` for steps that carry no task."""
        return self.task is None


class Transition(BaseModel):
    """Directed edge between two steps, guarded by an optional condition."""

    model_config = ConfigDict(frozen=True)

    source: str
    target: str
    condition: Optional[ConditionFn] = None
    on_failure: bool = False

    @property
    def is_unconditional(self) -> bool:
        return self.condition is None

    def matches(self, context: Mapping[str, Any]) -> bool:
        if self.condition is None:
            return True
        return bool(self.condition(context))


class ProcessDefinition(BaseModel):
    """Validated, immutable process graph.

    Steps are kept in a stable tuple and transitions refer to them by index
    through lookup tables built once at construction, so a definition can be
    shared read-only by every instance of its process type.
    """

    model_config = ConfigDict(frozen=True)

    process_type: str
    name: str = ""
    start: Optional[str] = None
    steps: tuple[Step, ...]
    transitions: tuple[Transition, ...] = ()

    _index: dict[str, int] = PrivateAttr(default_factory=dict)
    _outgoing: tuple[tuple[int, ...], ...] = PrivateAttr(default=())
    _failure: tuple[Optional[int], ...] = PrivateAttr(default=())

    @model_validator(mode="after")
    def validate_graph(self) -> "ProcessDefinition":
        if not self.steps:
            raise DefinitionError(f"Process {self.process_type!r} has no steps")

        index: dict[str, int] = {}
        for position, step in enumerate(self.steps):
            if not step.id:
                raise DefinitionError("Step ids must be non-empty")
            if step.id in index:
                raise DefinitionError(f"Duplicate step id {step.id!r}")
            index[step.id] = position

        start = self.start or self.steps[0].id
        if start not in index:
            raise DefinitionError(f"Start step {start!r} does not exist")

        outgoing: list[list[int]] = [[] for _ in self.steps]
        failure: list[Optional[int]] = [None for _ in self.steps]
        for position, transition in enumerate(self.transitions):
            for ref in (transition.source, transition.target):
                if ref not in index:
                    raise DefinitionError(
                        f"Transition {transition.source!r} -> {transition.target!r} "
                        f"references unknown step {ref!r}"
                    )
            source = index[transition.source]
            if transition.on_failure:
                if failure[source] is not None:
                    raise DefinitionError(
                        f"Step {transition.source!r} has more than one failure transition"
                    )
                failure[source] = position
            else:
                outgoing[source].append(position)

        self._index = index
        self._outgoing = tuple(tuple(items) for items in outgoing)
        self._failure = tuple(failure)

        self._check_splits()
        self._check_static_ambiguity()
        self._check_reachable(start)
        self._check_cycles()
        self._check_dead_ends()
        return self

    # ------------------------------------------------------------------
    # Queries
    @property
    def start_step(self) -> Step:
        return self.steps[self._index[self.start or self.steps[0].id]]

    def step(self, step_id: str) -> Step:
        try:
            return self.steps[self._index[step_id]]
        except KeyError:
            raise DefinitionError(
                f"Step {step_id!r} not in process {self.process_type!r}"
            ) from None

    def outgoing(self, step_id: str) -> tuple[Transition, ...]:
        """Normal outgoing transitions of ``step_id`` in declared order."""
        self.step(step_id)
        return tuple(
            self.transitions[i] for i in self._outgoing[self._index[step_id]]
        )

    def failure_transition(self, step_id: str) -> Optional[Transition]:
        self.step(step_id)
        position = self._failure[self._index[step_id]]
        return self.transitions[position] if position is not None else None

    def is_terminal(self, step_id: str) -> bool:
        """A step with no normal outgoing transitions ends its line."""
        self.step(step_id)
        return not self._outgoing[self._index[step_id]]

    def task_refs(self) -> set[str]:
        return {step.task for step in self.steps if step.task is not None}

    # ------------------------------------------------------------------
    # Validation helpers
    def _successors(self, position: int) -> Iterable[int]:
        for t in self._outgoing[position]:
            yield self._index[self.transitions[t].target]
        if self._failure[position] is not None:
            yield self._index[self.transitions[self._failure[position]].target]

    def _check_splits(self) -> None:
        for position, step in enumerate(self.steps):
            if step.is_split:
                if not self._outgoing[position]:
                    raise DefinitionError(
                        f"Split {step.id!r} has no outgoing transitions"
                    )
                if step.join is not None:
                    if step.join not in self._index:
                        raise DefinitionError(
                            f"Split {step.id!r} joins at unknown step {step.join!r}"
                        )
                    if not self.steps[self._index[step.join]].is_join:
                        raise DefinitionError(
                            f"Split {step.id!r} joins at {step.join!r}, "
                            "which is not a join step"
                        )
                    join = self._index[step.join]
                    for t in self._outgoing[position]:
                        target = self.transitions[t].target
                        if join not in self._reach(self._index[target]):
                            raise DefinitionError(
                                f"Branch {target!r} of split {step.id!r} has no path "
                                f"to join {step.join!r}"
                            )
            elif step.join is not None:
                raise DefinitionError(
                    f"Step {step.id!r} declares a join but is not a split"
                )

    def _check_static_ambiguity(self) -> None:
        # Arbitrary predicates cannot be compared, but an unconditional
        # transition next to any sibling always overlaps with it.
        for position, step in enumerate(self.steps):
            if step.is_split or len(self._outgoing[position]) < 2:
                continue
            if any(self.transitions[t].is_unconditional for t in self._outgoing[position]):
                targets = [self.transitions[t].target for t in self._outgoing[position]]
                raise DefinitionError(
                    f"Step {step.id!r} has an unconditional transition alongside "
                    f"others ({', '.join(targets)}); only splits may fan out"
                )

    def _reach(self, position: int) -> set[int]:
        """Positions reachable from ``position``, itself included."""
        seen = {position}
        queue = deque(seen)
        while queue:
            for nxt in self._successors(queue.popleft()):
                if nxt not in seen:
                    seen.add(nxt)
                    queue.append(nxt)
        return seen

    def _check_reachable(self, start: str) -> None:
        seen = self._reach(self._index[start])
        unreachable = [s.id for i, s in enumerate(self.steps) if i not in seen]
        if unreachable:
            raise DefinitionError(
                f"Steps unreachable from {start!r}: {', '.join(unreachable)}"
            )

    def _check_cycles(self) -> None:
        # A cycle is legal only through a re-entrant step, so the graph
        # restricted to non-re-entrant steps must be acyclic.
        candidates = [i for i, s in enumerate(self.steps) if not s.reentrant]
        allowed = set(candidates)
        state: dict[int, int] = {}

        for root in candidates:
            if root in state:
                continue
            state[root] = 1
            stack = [(root, iter(self._successors(root)))]
            while stack:
                node, children = stack[-1]
                for child in children:
                    if child not in allowed:
                        continue
                    if state.get(child) == 1:
                        raise DefinitionError(
                            f"Cycle through {self.steps[child].id!r} has no step "
                            "marked reentrant"
                        )
                    if child not in state:
                        state[child] = 1
                        stack.append((child, iter(self._successors(child))))
                        break
                else:
                    state[node] = 2
                    stack.pop()

    def _check_dead_ends(self) -> None:
        predecessors: list[list[int]] = [[] for _ in self.steps]
        for position in range(len(self.steps)):
            for nxt in self._successors(position):
                predecessors[nxt].append(position)

        alive = {i for i in range(len(self.steps)) if not self._outgoing[i]}
        queue = deque(alive)
        while queue:
            for prev in predecessors[queue.popleft()]:
                if prev not in alive:
                    alive.add(prev)
                    queue.append(prev)
        stuck = [s.id for i, s in enumerate(self.steps) if i not in alive]
        if stuck:
            raise DefinitionError(
                f"Steps with no path to a terminal step: {', '.join(stuck)}"
            )


__all__ = ["ConditionFn", "StepKind", "Step", "Transition", "ProcessDefinition"]
