"""Definitions and tasks shared by engine and CLI tests."""

from procflow import ProcessDefinition, Step, StepKind, TaskRegistry, Transition


def always(context):
    return True


def linear_definition() -> ProcessDefinition:
    """A -> B -> C where C is a terminal marker."""
    return ProcessDefinition(
        process_type="linear",
        steps=[
            Step(id="A", task="noop"),
            Step(id="B", task="noop"),
            Step(id="C"),
        ],
        transitions=[
            Transition(source="A", target="B", condition=always),
            Transition(source="B", target="C", condition=always),
        ],
    )


def fork_definition() -> ProcessDefinition:
    """S splits into X and Y, which meet again at J."""
    return ProcessDefinition(
        process_type="fork",
        steps=[
            Step(id="S", kind=StepKind.SPLIT, join="J"),
            Step(id="X", task="write_x"),
            Step(id="Y", task="write_y"),
            Step(id="J", kind=StepKind.JOIN),
            Step(id="END"),
        ],
        transitions=[
            Transition(source="S", target="X"),
            Transition(source="S", target="Y"),
            Transition(source="X", target="J"),
            Transition(source="Y", target="J"),
            Transition(source="J", target="END"),
        ],
    )


registry = TaskRegistry()


@registry.task("noop")
def noop(context):
    return None


@registry.task("write_x")
def write_x(context):
    return {"a": 1}


@registry.task("write_y")
def write_y(context):
    return {"a": 2, "b": 1}
