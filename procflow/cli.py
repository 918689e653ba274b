"""Command line interface for inspecting and driving procflow instances."""

from __future__ import annotations

import asyncio
import json
from datetime import timedelta
from importlib import import_module
from pathlib import Path
from typing import Optional

import typer

from procflow import TaskRegistry, WorkflowEngine, get_store
from procflow.config import load_config
from procflow.errors import DefinitionError, InstanceNotFoundError, ProcflowError
from procflow.state import InstanceState, InstanceSummary
from procflow.sources import YamlDefinitionSource, load_definition_file

app = typer.Typer(help="CLI for procflow process instances")

# Command groups
instance_app = typer.Typer(help="Commands for managing process instances")
definition_app = typer.Typer(help="Commands for process definitions")

app.add_typer(instance_app, name="instance")
app.add_typer(definition_app, name="definition")


@app.callback()
def main() -> None:
    """procflow CLI entry point."""
    pass


def _load_registry(spec: str) -> TaskRegistry:
    """Import ``module[:attribute]`` and return the TaskRegistry it names."""
    module_name, _, attribute = spec.partition(":")
    module = import_module(module_name)
    registry = getattr(module, attribute or "registry", None)
    if not isinstance(registry, TaskRegistry):
        raise typer.BadParameter(
            f"{spec} does not point at a TaskRegistry", param_hint="--tasks"
        )
    return registry


def _engine(definitions: Optional[Path], registry: TaskRegistry) -> WorkflowEngine:
    config = load_config()
    directory = definitions or Path(config.definitions_path or ".")
    return WorkflowEngine(
        YamlDefinitionSource(directory), registry, store=get_store(), config=config
    )


@instance_app.command("list")
def instance_list() -> None:
    """
    List all instances with their process type and status.

    Example:
        procflow instance list
        # Output: 3f2c...    approval    completed
    """
    store = get_store()

    async def _list() -> list[InstanceState]:
        try:
            return await store.list_instances()
        finally:
            await store.close()

    instances = asyncio.run(_list())
    if not instances:
        typer.echo("No instances found")
        return
    for state in instances:
        typer.echo(f"{state.instance_id}\t{state.process_type}\t{state.status.value}")


@instance_app.command("show")
def instance_show(instance_id: str) -> None:
    """
    Show status, context and execution history of one instance.

    Args:
        instance_id: Instance to inspect (get from 'instance list')
    """
    store = get_store()

    async def _load() -> InstanceState:
        try:
            return await store.load(instance_id)
        finally:
            await store.close()

    try:
        state = asyncio.run(_load())
    except InstanceNotFoundError:
        typer.echo("Instance not found")
        raise typer.Exit(code=1)
    typer.echo(f"Instance {state.instance_id} ({state.process_type}): {state.status.value}")
    if state.active_steps:
        typer.echo(f"Active: {', '.join(state.active_steps)}")
    if state.waiting_step:
        typer.echo(f"Waiting on: {state.waiting_step}")
    if state.open_fork is not None:
        typer.echo(f"Open fork at {state.open_fork.split}:")
        for branch in state.open_fork.branches:
            if branch.done:
                progress = "done"
            elif branch.waiting:
                progress = f"waiting on {branch.cursor}"
            else:
                progress = f"at {branch.cursor}"
            typer.echo(f"  [{branch.label}] {progress}")
    if state.error:
        typer.echo(f"Error: {state.error}")
    typer.echo(f"Context: {json.dumps(state.context, default=str)}")
    for entry in state.history:
        line = f"- {entry.step_id} #{entry.attempt}: {entry.outcome.value} ({entry.timestamp})"
        if entry.branch:
            line += f" [{entry.branch}]"
        if entry.reason:
            line += f" {entry.reason}"
        if entry.error:
            line += f" {entry.error}"
        typer.echo(line)


@instance_app.command("cancel")
def instance_cancel(instance_id: str) -> None:
    """Cancel a created, running or waiting instance."""
    engine = _engine(None, TaskRegistry())

    async def _cancel() -> InstanceSummary:
        try:
            return await engine.cancel(instance_id)
        finally:
            await engine.aclose()

    try:
        summary = asyncio.run(_cancel())
    except InstanceNotFoundError:
        typer.echo("Instance not found")
        raise typer.Exit(code=1)
    except ProcflowError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Instance {summary.instance_id}: {summary.status.value}")


@instance_app.command("purge")
def instance_purge(
    older_than: Optional[float] = typer.Option(
        None,
        "--older-than",
        help="Seconds since a finished instance last changed (default: engine.retention)",
    ),
) -> None:
    """
    Delete completed, failed and cancelled instances past their retention.

    Example:
        procflow instance purge --older-than 86400
    """
    engine = _engine(None, TaskRegistry())
    period = timedelta(seconds=older_than) if older_than is not None else None

    async def _purge() -> list[str]:
        try:
            return await engine.purge_finished(period)
        finally:
            await engine.aclose()

    try:
        purged = asyncio.run(_purge())
    except ValueError as e:
        typer.secho(f"{e}; pass --older-than", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Purged {len(purged)} instance(s)")


@instance_app.command("start")
def instance_start(
    process_type: str,
    tasks: str = typer.Option(..., help="module[:attribute] holding a TaskRegistry"),
    definitions: Optional[Path] = typer.Option(
        None, help="Directory of YAML definitions (default: config or current dir)"
    ),
    context: str = typer.Option("{}", help="Initial context as a JSON object"),
) -> None:
    """
    Create an instance of PROCESS_TYPE and run it until it stops.

    Example:
        procflow instance start approval --tasks myapp.tasks --context '{"amount": 120}'
    """
    try:
        initial = json.loads(context)
    except json.JSONDecodeError as e:
        raise typer.BadParameter(f"Invalid JSON: {e}", param_hint="--context")
    if not isinstance(initial, dict):
        raise typer.BadParameter("Context must be a JSON object", param_hint="--context")

    engine = _engine(definitions, _load_registry(tasks))

    async def _start() -> None:
        try:
            instance_id = await engine.create_instance(process_type, initial)
            typer.echo(f"Created instance {instance_id}")
            summary = await engine.run(instance_id)
        finally:
            await engine.aclose()
        typer.echo(f"Instance {instance_id}: {summary.status.value}")
        if summary.error:
            typer.echo(f"Error: {summary.error}")

    try:
        asyncio.run(_start())
    except ProcflowError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(code=1)


@definition_app.command("validate")
def definition_validate(path: Path) -> None:
    """Load a YAML definition and report whether it is valid."""
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    try:
        definition = load_definition_file(path)
    except DefinitionError as e:
        typer.secho(f"Invalid definition: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(
        f"Definition {definition.process_type} is valid: "
        f"{len(definition.steps)} steps, {len(definition.transitions)} transitions"
    )
