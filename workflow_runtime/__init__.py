"""workflow-runtime: workflow instance and task lifecycle for the reporting backend."""

from .contracts import EventEnvelope, InstanceDTO, TaskDTO
from .dispatch import EventDispatcher
from .domain import WorkflowInstance, WorkflowTask
from .errors import ErrorKind, WorkflowRuntimeError
from .handlers import HandlerResult
from .persistence import get_repositories
from .runtime import WorkflowRuntime
from .sweeper import SlaSweeper, SweepReport
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "ErrorKind",
    "EventDispatcher",
    "EventEnvelope",
    "HandlerResult",
    "InstanceDTO",
    "SlaSweeper",
    "SweepReport",
    "TaskDTO",
    "WorkflowInstance",
    "WorkflowRuntime",
    "WorkflowRuntimeError",
    "WorkflowTask",
    "get_repositories",
    "get_transport",
]
