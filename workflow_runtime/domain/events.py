"""Domain events emitted by the workflow aggregates.

Every event is an immutable pydantic model tagged by ``name``. Aggregates
append events to their own outbox; the orchestration handler drains it once
per persisted change.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .clock import utcnow

_ENVELOPE_FIELDS = {"name", "aggregate_id", "emitted_at"}


class DomainEvent(BaseModel):
    """Base event: ``name``, the aggregate it concerns and when it happened."""

    model_config = ConfigDict(frozen=True)

    name: str
    aggregate_id: str
    emitted_at: datetime = Field(default_factory=utcnow)

    @property
    def payload(self) -> dict[str, Any]:
        """Variant-specific fields, without the envelope metadata."""
        return self.model_dump(mode="json", exclude=_ENVELOPE_FIELDS)


# ----------------------------------------------------------------------
# Instance events
class WorkflowInstanceStarted(DomainEvent):
    name: Literal["WorkflowInstanceStarted"] = "WorkflowInstanceStarted"
    workflow_id: str


class WorkflowInstanceCompleted(DomainEvent):
    name: Literal["WorkflowInstanceCompleted"] = "WorkflowInstanceCompleted"
    workflow_id: str
    duration: int


class WorkflowInstanceFailed(DomainEvent):
    name: Literal["WorkflowInstanceFailed"] = "WorkflowInstanceFailed"
    workflow_id: str
    error_message: str
    error_step: Optional[str] = None


class WorkflowInstanceCancelled(DomainEvent):
    name: Literal["WorkflowInstanceCancelled"] = "WorkflowInstanceCancelled"
    workflow_id: str


class WorkflowInstancePaused(DomainEvent):
    name: Literal["WorkflowInstancePaused"] = "WorkflowInstancePaused"
    workflow_id: str


class WorkflowInstanceResumed(DomainEvent):
    name: Literal["WorkflowInstanceResumed"] = "WorkflowInstanceResumed"
    workflow_id: str


# ----------------------------------------------------------------------
# Task events
class WorkflowTaskCreated(DomainEvent):
    name: Literal["WorkflowTaskCreated"] = "WorkflowTaskCreated"
    instance_id: str
    task_name: str


class WorkflowTaskAssigned(DomainEvent):
    name: Literal["WorkflowTaskAssigned"] = "WorkflowTaskAssigned"
    instance_id: str
    assignee_id: str
    assigned_by: str


class WorkflowTaskStarted(DomainEvent):
    name: Literal["WorkflowTaskStarted"] = "WorkflowTaskStarted"
    instance_id: str
    started_by: str


class WorkflowTaskCompleted(DomainEvent):
    name: Literal["WorkflowTaskCompleted"] = "WorkflowTaskCompleted"
    instance_id: str
    completed_by: str


class WorkflowTaskRejected(DomainEvent):
    name: Literal["WorkflowTaskRejected"] = "WorkflowTaskRejected"
    instance_id: str
    rejected_by: str
    reason: str


class WorkflowTaskCancelled(DomainEvent):
    name: Literal["WorkflowTaskCancelled"] = "WorkflowTaskCancelled"
    instance_id: str


DomainEventUnion = Annotated[
    Union[
        WorkflowInstanceStarted,
        WorkflowInstanceCompleted,
        WorkflowInstanceFailed,
        WorkflowInstanceCancelled,
        WorkflowInstancePaused,
        WorkflowInstanceResumed,
        WorkflowTaskCreated,
        WorkflowTaskAssigned,
        WorkflowTaskStarted,
        WorkflowTaskCompleted,
        WorkflowTaskRejected,
        WorkflowTaskCancelled,
    ],
    Field(discriminator="name"),
]


class EventOutbox:
    """Pending events of one aggregate, drained once per persisted batch."""

    def __init__(self) -> None:
        self._pending_events: list[DomainEvent] = []

    def _record(self, event: DomainEvent) -> None:
        self._pending_events.append(event)

    def get_uncommitted_events(self) -> tuple[DomainEvent, ...]:
        return tuple(self._pending_events)

    def clear_events(self) -> None:
        self._pending_events = []
