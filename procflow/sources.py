"""Definition sources: where the engine gets process definitions from."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

import yaml
from pydantic import ValidationError

from .conditions import compile_condition
from .definition import ProcessDefinition, Step, Transition
from .errors import DefinitionError, DefinitionNotFoundError

logger = logging.getLogger(__name__)


class DefinitionSource(Protocol):
    async def load(self, process_type: str) -> ProcessDefinition:
        """Return the definition or raise ``DefinitionNotFoundError``."""


class InMemoryDefinitionSource(DefinitionSource):
    """Definitions registered in code."""

    def __init__(self, *definitions: ProcessDefinition) -> None:
        self._definitions: Dict[str, ProcessDefinition] = {}
        for definition in definitions:
            self.register(definition)

    def register(self, definition: ProcessDefinition) -> None:
        self._definitions[definition.process_type] = definition

    async def load(self, process_type: str) -> ProcessDefinition:
        try:
            return self._definitions[process_type]
        except KeyError:
            raise DefinitionNotFoundError(process_type) from None


class YamlDefinitionSource(DefinitionSource):
    """Definitions stored as ``<process_type>.yaml`` files in a directory."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def _path_for(self, process_type: str) -> Optional[Path]:
        for suffix in (".yaml", ".yml"):
            candidate = self.directory / f"{process_type}{suffix}"
            if candidate.is_file():
                return candidate
        return None

    async def load(self, process_type: str) -> ProcessDefinition:
        path = self._path_for(process_type)
        if path is None:
            raise DefinitionNotFoundError(process_type)
        definition = await asyncio.to_thread(load_definition_file, path)
        if definition.process_type != process_type:
            raise DefinitionError(
                f"{path} declares process_type {definition.process_type!r}, "
                f"expected {process_type!r}"
            )
        return definition


def load_definition_file(path: str | Path) -> ProcessDefinition:
    """Read and validate one YAML definition file."""
    path = Path(path)
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    data.setdefault("process_type", path.stem)
    logger.debug(f"Loading definition {data['process_type']} from {path}")
    return definition_from_dict(data)


def definition_from_dict(data: Dict[str, Any]) -> ProcessDefinition:
    """Build a :class:`ProcessDefinition` from plain data.

    Transition ``condition`` values are expression strings compiled with
    :func:`procflow.conditions.compile_condition`.
    """
    try:
        steps = [Step(**step) for step in data.get("steps") or []]
        transitions = [
            Transition(
                source=item["source"],
                target=item["target"],
                condition=compile_condition(item["condition"])
                if item.get("condition") is not None
                else None,
                on_failure=bool(item.get("on_failure", False)),
            )
            for item in data.get("transitions") or []
        ]
        return ProcessDefinition(
            process_type=data["process_type"],
            name=data.get("name", ""),
            start=data.get("start"),
            steps=steps,
            transitions=transitions,
        )
    except KeyError as e:
        raise DefinitionError(f"Definition is missing required field {e}") from e
    except ValidationError as e:
        raise DefinitionError(f"Invalid definition: {e}") from e


__all__ = [
    "DefinitionSource",
    "InMemoryDefinitionSource",
    "YamlDefinitionSource",
    "load_definition_file",
    "definition_from_dict",
]
