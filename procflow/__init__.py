"""procflow: durable process instance execution engine."""

from .definition import ProcessDefinition, Step, StepKind, Transition
from .engine import WorkflowEngine
from .persistence import get_store
from .cache import get_cache
from .retry import RetryPolicy
from .sources import InMemoryDefinitionSource, YamlDefinitionSource
from .state import InstanceState, InstanceStatus, InstanceSummary
from .tasks import Failure, Success, Suspend, TaskRegistry, Timeout

__version__ = "0.1.0"
__all__ = [
    "ProcessDefinition",
    "Step",
    "StepKind",
    "Transition",
    "WorkflowEngine",
    "get_store",
    "get_cache",
    "RetryPolicy",
    "InMemoryDefinitionSource",
    "YamlDefinitionSource",
    "InstanceState",
    "InstanceStatus",
    "InstanceSummary",
    "Success",
    "Failure",
    "Suspend",
    "Timeout",
    "TaskRegistry",
]
