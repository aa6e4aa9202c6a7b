"""Closed enumerations used by the workflow aggregates."""

from __future__ import annotations

from enum import Enum


class InstanceStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


INSTANCE_TERMINAL_STATUSES = frozenset(
    {InstanceStatus.COMPLETED, InstanceStatus.FAILED, InstanceStatus.CANCELLED}
)
INSTANCE_ACTIVE_STATUSES = frozenset({InstanceStatus.RUNNING, InstanceStatus.PAUSED})


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


TASK_TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.REJECTED, TaskStatus.CANCELLED}
)
TASK_ACTIVE_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.IN_PROGRESS})


class TriggerType(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    WEBHOOK = "webhook"
    EVENT = "event"


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return PRIORITY_RANK[self]


PRIORITY_RANK = {
    Priority.LOW: 0,
    Priority.NORMAL: 1,
    Priority.HIGH: 2,
    Priority.URGENT: 3,
}


class TaskType(str, Enum):
    MANUAL = "manual"
    APPROVAL = "approval"
    REVIEW = "review"
    FORM = "form"
    AUTOMATED = "automated"


class AssignmentType(str, Enum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"
    ROLE_BASED = "role_based"
