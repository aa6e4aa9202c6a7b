"""Workflow aggregates, their enums and domain events."""

from .enums import (
    AssignmentType,
    InstanceStatus,
    Priority,
    TaskStatus,
    TaskType,
    TriggerType,
)
from .events import DomainEvent, DomainEventUnion
from .ids import InstanceId, TaskId
from .instance import WorkflowInstance
from .payloads import Attachment, Comment
from .task import WorkflowTask

__all__ = [
    "AssignmentType",
    "Attachment",
    "Comment",
    "DomainEvent",
    "DomainEventUnion",
    "InstanceId",
    "InstanceStatus",
    "Priority",
    "TaskId",
    "TaskStatus",
    "TaskType",
    "TriggerType",
    "WorkflowInstance",
    "WorkflowTask",
]
