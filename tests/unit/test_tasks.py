"""Task registry and function task tests."""

import pytest

from procflow import Failure, ProcessDefinition, Step, Success, TaskRegistry, Transition
from procflow.errors import UnknownTaskError
from procflow.tasks import FunctionTask


@pytest.mark.asyncio
async def test_sync_function_result_merged_into_context():
    task = FunctionTask(lambda context: {"b": context["a"] + 1})
    result = await task.execute({"a": 1})
    assert isinstance(result, Success)
    assert result.context == {"a": 1, "b": 2}


@pytest.mark.asyncio
async def test_none_leaves_context_unchanged():
    async def noop(context):
        return None

    result = await FunctionTask(noop).execute({"a": 1})
    assert result == Success(context={"a": 1})


@pytest.mark.asyncio
async def test_exception_becomes_failure():
    def boom(context):
        raise ValueError("bad input")

    result = await FunctionTask(boom).execute({})
    assert result == Failure(error="ValueError: bad input")


@pytest.mark.asyncio
async def test_unsupported_return_value_is_failure():
    result = await FunctionTask(lambda context: 42).execute({})
    assert isinstance(result, Failure)
    assert "int" in result.error


def test_registry_lookup():
    registry = TaskRegistry()

    @registry.task()
    def charge(context):
        return None

    assert "charge" in registry
    assert len(registry) == 1
    assert isinstance(registry.get("charge"), FunctionTask)
    with pytest.raises(UnknownTaskError):
        registry.get("refund")


def test_registry_keeps_task_objects():
    class Custom:
        async def execute(self, context):
            return Success(context=context)

    registry = TaskRegistry()
    custom = Custom()
    assert registry.register("custom", custom) is custom


def test_validate_reports_every_missing_reference():
    definition = ProcessDefinition(
        process_type="p",
        steps=[Step(id="a", task="zeta"), Step(id="b", task="alpha"), Step(id="c", task="ok")],
        transitions=[
            Transition(source="a", target="b"),
            Transition(source="b", target="c"),
        ],
    )
    registry = TaskRegistry()
    registry.register("ok", lambda context: None)

    with pytest.raises(UnknownTaskError) as exc:
        registry.validate(definition)
    assert exc.value.task_refs == ("alpha", "zeta")
