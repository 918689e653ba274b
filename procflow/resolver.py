"""Selects the next step set from a step's outgoing transitions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from .definition import ProcessDefinition, Transition
from .errors import AmbiguousTransitionError, NoViableTransitionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NextStepSet:
    """Outcome of resolving one step.

    Empty when the step is terminal; several ids only when ``fork`` is set.
    """

    source: str
    step_ids: tuple[str, ...] = ()
    fork: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.step_ids


class TransitionResolver:
    """Evaluates transition conditions in declared order."""

    def resolve(
        self,
        step_id: str,
        context: Mapping[str, Any],
        definition: ProcessDefinition,
    ) -> NextStepSet:
        step = definition.step(step_id)
        transitions = definition.outgoing(step_id)
        if not transitions:
            return NextStepSet(source=step_id)

        matched = [t.target for t in transitions if self._matches(t, context)]

        if not matched:
            logger.error(
                f"No viable transition from {step_id} in {definition.process_type}; "
                f"context={dict(context)!r}"
            )
            raise NoViableTransitionError(step_id, dict(context))
        if step.is_split:
            return NextStepSet(source=step_id, step_ids=tuple(matched), fork=True)
        if len(matched) > 1:
            logger.error(
                f"Ambiguous transitions from {step_id} in {definition.process_type}: "
                f"{matched}; context={dict(context)!r}"
            )
            raise AmbiguousTransitionError(step_id, matched)
        return NextStepSet(source=step_id, step_ids=(matched[0],))

    def failure_target(
        self, step_id: str, definition: ProcessDefinition
    ) -> Optional[str]:
        transition = definition.failure_transition(step_id)
        return transition.target if transition is not None else None

    def _matches(self, transition: Transition, context: Mapping[str, Any]) -> bool:
        try:
            return transition.matches(context)
        except Exception as e:
            logger.warning(
                f"Condition on {transition.source} -> {transition.target} raised {e!r}; "
                "treating as false"
            )
            return False
