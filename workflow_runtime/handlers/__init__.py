"""Orchestration handlers: validate, load, transition, save, dispatch."""

from .base import BaseHandler, ErrorInfo, HandlerResult, coerce_command
from .instances import (
    CreateInstanceHandler,
    ExecuteWorkflowHandler,
    GetInstanceHandler,
    ListInstancesHandler,
    PerformInstanceActionHandler,
    RetryInstanceHandler,
    StepAdvancer,
    UpdateInstanceHandler,
)
from .tasks import (
    CompleteTaskHandler,
    CreateTaskHandler,
    GetTaskHandler,
    ListTasksHandler,
    PerformTaskActionHandler,
    UpdateTaskHandler,
)

__all__ = [
    "BaseHandler",
    "CompleteTaskHandler",
    "CreateInstanceHandler",
    "CreateTaskHandler",
    "ErrorInfo",
    "ExecuteWorkflowHandler",
    "GetInstanceHandler",
    "GetTaskHandler",
    "HandlerResult",
    "ListInstancesHandler",
    "ListTasksHandler",
    "PerformInstanceActionHandler",
    "PerformTaskActionHandler",
    "RetryInstanceHandler",
    "StepAdvancer",
    "UpdateInstanceHandler",
    "UpdateTaskHandler",
    "coerce_command",
]
