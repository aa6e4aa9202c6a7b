"""Command, query and message contracts for the workflow runtime."""

from __future__ import annotations

import math
import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, JsonValue, StringConstraints, model_validator

from .domain.enums import (
    AssignmentType,
    InstanceStatus,
    Priority,
    TaskStatus,
    TaskType,
    TriggerType,
)
from .domain.events import DomainEventUnion
from .domain.instance import WorkflowInstance
from .domain.payloads import Attachment, Comment
from .domain.task import WorkflowTask
from .persistence.models import InstanceFilters, Page, Pagination, TaskFilters

AggregateIdField = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


# ----------------------------------------------------------------------
# Instance commands
class CreateInstanceCommand(BaseModel):
    """Open a new workflow instance."""

    workflow_id: str = Field(min_length=1)
    data: Dict[str, JsonValue] = Field(default_factory=dict)
    variables: Dict[str, JsonValue] = Field(default_factory=dict)
    context: Dict[str, JsonValue] = Field(default_factory=dict)
    triggered_by: Optional[str] = None
    trigger_type: TriggerType = TriggerType.MANUAL
    trigger_data: Dict[str, JsonValue] = Field(default_factory=dict)
    priority: Priority = Priority.NORMAL
    sla_deadline: Optional[datetime] = None


class ExecuteWorkflowCommand(BaseModel):
    """Start a workflow by hand with the given input."""

    workflow_id: str = Field(min_length=1)
    input: Dict[str, JsonValue] = Field(default_factory=dict)
    variables: Dict[str, JsonValue] = Field(default_factory=dict)
    context: Dict[str, JsonValue] = Field(default_factory=dict)
    triggered_by: Optional[str] = None
    priority: Priority = Priority.NORMAL
    sla_deadline: Optional[datetime] = None


class UpdateInstanceCommand(BaseModel):
    """Replace any of the given payloads or move the current step."""

    instance_id: AggregateIdField
    current_step_id: Optional[str] = None
    data: Optional[Dict[str, JsonValue]] = None
    variables: Optional[Dict[str, JsonValue]] = None
    context: Optional[Dict[str, JsonValue]] = None


InstanceAction = Literal["pause", "resume", "cancel", "complete", "fail"]


class InstanceActionCommand(BaseModel):
    instance_id: AggregateIdField
    action: InstanceAction
    reason: Optional[str] = Field(default=None, max_length=1000)
    error_step: Optional[str] = None
    performed_by: Optional[str] = None

    @model_validator(mode="after")
    def _fail_needs_reason(self) -> "InstanceActionCommand":
        if self.action == "fail" and not self.reason:
            raise ValueError("reason is required to fail an instance")
        return self


class RetryInstanceCommand(BaseModel):
    instance_id: AggregateIdField
    triggered_by: Optional[str] = None


class GetInstanceQuery(BaseModel):
    instance_id: AggregateIdField


class ListInstancesQuery(BaseModel):
    filters: InstanceFilters = Field(default_factory=InstanceFilters)
    pagination: Pagination = Field(default_factory=Pagination)


# ----------------------------------------------------------------------
# Task commands
class CreateTaskCommand(BaseModel):
    """Create a human task for one step of an instance."""

    instance_id: AggregateIdField
    step_id: str = Field(min_length=1)
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)
    task_type: TaskType = TaskType.MANUAL
    priority: Priority = Priority.NORMAL
    assignment_type: AssignmentType = AssignmentType.MANUAL
    assignee_id: Optional[str] = None
    assigned_by: Optional[str] = None
    form_data: Dict[str, JsonValue] = Field(default_factory=dict)
    attachments: List[str] = Field(default_factory=list)
    due_date: Optional[datetime] = None
    sla_hours: Optional[int] = Field(default=None, ge=0)
    sla_deadline: Optional[datetime] = None


class CompleteTaskCommand(BaseModel):
    """Complete an in-progress task with an outcome."""

    task_id: AggregateIdField
    user_id: str = Field(min_length=1)
    outcome: str = Field(min_length=1)
    completion_note: Optional[str] = Field(default=None, max_length=1000)
    form_data: Optional[Dict[str, JsonValue]] = None

    @property
    def result(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"outcome": self.outcome}
        if self.completion_note is not None:
            result["completion_note"] = self.completion_note
        if self.form_data is not None:
            result["form_data"] = self.form_data
        return result


class UpdateTaskCommand(BaseModel):
    """Exactly one of ``form_data``, ``comment`` or ``attachment_url``."""

    task_id: AggregateIdField
    form_data: Optional[Dict[str, JsonValue]] = None
    comment: Optional[str] = Field(default=None, min_length=1)
    attachment_url: Optional[str] = Field(default=None, min_length=1)

    @model_validator(mode="after")
    def _exactly_one_change(self) -> "UpdateTaskCommand":
        provided = [
            name
            for name in ("form_data", "comment", "attachment_url")
            if getattr(self, name) is not None
        ]
        if len(provided) != 1:
            raise ValueError(
                "exactly one of form_data, comment or attachment_url must be given"
            )
        return self


TaskAction = Literal["assign", "start", "reject", "cancel"]


class TaskActionCommand(BaseModel):
    task_id: AggregateIdField
    action: TaskAction
    user_id: str = Field(min_length=1)
    assignee_id: Optional[str] = None
    reason: Optional[str] = Field(default=None, max_length=1000)

    @model_validator(mode="after")
    def _action_arguments(self) -> "TaskActionCommand":
        if self.action == "assign" and not self.assignee_id:
            raise ValueError("assignee_id is required to assign a task")
        if self.action == "reject" and not self.reason:
            raise ValueError("reason is required to reject a task")
        return self


class GetTaskQuery(BaseModel):
    task_id: AggregateIdField


class ListTasksQuery(BaseModel):
    filters: TaskFilters = Field(default_factory=TaskFilters)
    pagination: Pagination = Field(default_factory=Pagination)
    now: Optional[datetime] = None


# ----------------------------------------------------------------------
# Read models
class InstanceDTO(BaseModel):
    id: str
    workflow_id: str
    status: InstanceStatus
    current_step_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    variables: Dict[str, Any] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(default_factory=dict)
    triggered_by: Optional[str] = None
    trigger_type: TriggerType
    trigger_data: Dict[str, Any] = Field(default_factory=dict)
    started_at: datetime
    completed_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    duration: Optional[int] = None
    error_message: Optional[str] = None
    error_step: Optional[str] = None
    retry_count: int = 0
    priority: Priority
    sla_deadline: Optional[datetime] = None
    version: int

    @classmethod
    def from_aggregate(cls, instance: WorkflowInstance) -> "InstanceDTO":
        return cls(
            id=instance.id.value,
            workflow_id=instance.workflow_id,
            status=instance.status,
            current_step_id=instance.current_step_id,
            data=instance.data,
            variables=instance.variables,
            context=instance.context,
            triggered_by=instance.triggered_by,
            trigger_type=instance.trigger_type,
            trigger_data=instance.trigger_data,
            started_at=instance.started_at,
            completed_at=instance.completed_at,
            paused_at=instance.paused_at,
            duration=instance.duration,
            error_message=instance.error_message,
            error_step=instance.error_step,
            retry_count=instance.retry_count,
            priority=instance.priority,
            sla_deadline=instance.sla_deadline,
            version=instance.version,
        )


class TaskDTO(BaseModel):
    id: str
    instance_id: str
    step_id: str
    name: str
    description: Optional[str] = None
    task_type: TaskType
    status: TaskStatus
    priority: Priority
    assignee_id: Optional[str] = None
    assigned_by: Optional[str] = None
    assignment_type: AssignmentType
    form_data: Dict[str, Any] = Field(default_factory=dict)
    attachments: List[Attachment] = Field(default_factory=list)
    comments: List[Comment] = Field(default_factory=list)
    created_at: datetime
    assigned_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    due_date: Optional[datetime] = None
    sla_hours: Optional[int] = None
    sla_deadline: Optional[datetime] = None
    result: Optional[Dict[str, Any]] = None
    completed_by: Optional[str] = None
    rejected_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    version: int

    @classmethod
    def from_aggregate(cls, task: WorkflowTask) -> "TaskDTO":
        return cls(
            id=task.id.value,
            instance_id=task.instance_id,
            step_id=task.step_id,
            name=task.name,
            description=task.description,
            task_type=task.task_type,
            status=task.status,
            priority=task.priority,
            assignee_id=task.assignee_id,
            assigned_by=task.assigned_by,
            assignment_type=task.assignment_type,
            form_data=task.form_data,
            attachments=task.attachments,
            comments=task.comments,
            created_at=task.created_at,
            assigned_at=task.assigned_at,
            started_at=task.started_at,
            completed_at=task.completed_at,
            due_date=task.due_date,
            sla_hours=task.sla_hours,
            sla_deadline=task.sla_deadline,
            result=task.result,
            completed_by=task.completed_by,
            rejected_by=task.rejected_by,
            rejection_reason=task.rejection_reason,
            version=task.version,
        )


class InstancePage(BaseModel):
    items: List[InstanceDTO] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 10

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.total else 0

    @classmethod
    def from_page(cls, page: Page[WorkflowInstance], pagination: Pagination) -> "InstancePage":
        return cls(
            items=[InstanceDTO.from_aggregate(i) for i in page.items],
            total=page.total,
            page=pagination.page,
            limit=pagination.limit,
        )


class TaskPage(BaseModel):
    items: List[TaskDTO] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 10

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.total else 0

    @classmethod
    def from_page(cls, page: Page[WorkflowTask], pagination: Pagination) -> "TaskPage":
        return cls(
            items=[TaskDTO.from_aggregate(t) for t in page.items],
            total=page.total,
            page=pagination.page,
            limit=pagination.limit,
        )


# ----------------------------------------------------------------------
# Bus message
class EventEnvelope(BaseModel):
    """
    Envelope exchanged over the bus. Wraps one domain event with delivery metadata.
    """

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    published_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    event: DomainEventUnion
    spec_version: str = "1.0"

    @property
    def topic(self) -> str:
        return self.event.name

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "EventEnvelope":
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)
