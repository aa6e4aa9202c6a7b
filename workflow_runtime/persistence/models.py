"""Query models and the storage-edge normalization of persisted records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Generic, Literal, Mapping, Optional, Type, TypeVar

from pydantic import BaseModel, Field

from ..domain.clock import ensure_utc, utcnow
from ..domain.enums import (
    AssignmentType,
    InstanceStatus,
    Priority,
    TaskStatus,
    TaskType,
    TriggerType,
)
from ..domain.instance import WorkflowInstance
from ..domain.task import WorkflowTask

T = TypeVar("T")
E = TypeVar("E", bound=Enum)

SortOrder = Literal["asc", "desc"]

INSTANCE_COLUMNS: tuple[str, ...] = (
    "id",
    "workflow_id",
    "status",
    "current_step_id",
    "data",
    "variables",
    "context",
    "triggered_by",
    "trigger_type",
    "trigger_data",
    "started_at",
    "completed_at",
    "paused_at",
    "duration",
    "error_message",
    "error_step",
    "retry_count",
    "priority",
    "sla_deadline",
    "version",
)

TASK_COLUMNS: tuple[str, ...] = (
    "id",
    "instance_id",
    "step_id",
    "name",
    "description",
    "task_type",
    "status",
    "priority",
    "assignee_id",
    "assigned_by",
    "assignment_type",
    "form_data",
    "attachments",
    "comments",
    "created_at",
    "assigned_at",
    "started_at",
    "completed_at",
    "due_date",
    "sla_hours",
    "sla_deadline",
    "result",
    "completed_by",
    "rejected_by",
    "rejection_reason",
    "version",
)

INSTANCE_DATETIME_COLUMNS = ("started_at", "completed_at", "paused_at", "sla_deadline")
TASK_DATETIME_COLUMNS = (
    "created_at",
    "assigned_at",
    "started_at",
    "completed_at",
    "due_date",
    "sla_deadline",
)


class Pagination(BaseModel):
    """Page-based pagination; ``limit`` is capped at 100."""

    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, ge=1, le=100)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


@dataclass
class Page(Generic[T]):
    items: list[T] = field(default_factory=list)
    total: int = 0


class InstanceFilters(BaseModel):
    workflow_id: Optional[str] = None
    status: Optional[InstanceStatus] = None
    triggered_by: Optional[str] = None
    priority: Optional[Priority] = None
    started_from: Optional[datetime] = None
    started_to: Optional[datetime] = None
    sort_by: Literal["started_at", "completed_at", "priority"] = "started_at"
    sort_order: SortOrder = "desc"

    def matches(self, instance: WorkflowInstance) -> bool:
        if self.workflow_id and instance.workflow_id != self.workflow_id:
            return False
        if self.status and instance.status is not self.status:
            return False
        if self.triggered_by and instance.triggered_by != self.triggered_by:
            return False
        if self.priority and instance.priority is not self.priority:
            return False
        if self.started_from and instance.started_at < ensure_utc(self.started_from):
            return False
        if self.started_to and instance.started_at > ensure_utc(self.started_to):
            return False
        return True


class TaskFilters(BaseModel):
    instance_id: Optional[str] = None
    assignee_id: Optional[str] = None
    status: Optional[TaskStatus] = None
    task_type: Optional[TaskType] = None
    priority: Optional[Priority] = None
    is_overdue: bool = False
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None
    sort_by: Literal["created_at", "due_date", "priority"] = "created_at"
    sort_order: SortOrder = "desc"

    def matches(self, task: WorkflowTask, now: Optional[datetime] = None) -> bool:
        if self.instance_id and task.instance_id != self.instance_id:
            return False
        if self.assignee_id and task.assignee_id != self.assignee_id:
            return False
        if self.status and task.status is not self.status:
            return False
        if self.task_type and task.task_type is not self.task_type:
            return False
        if self.priority and task.priority is not self.priority:
            return False
        if self.is_overdue and (task.is_terminal() or not task.is_overdue(now)):
            return False
        if self.created_from and task.created_at < ensure_utc(self.created_from):
            return False
        if self.created_to and task.created_at > ensure_utc(self.created_to):
            return False
        return True


def sort_aggregates(items: list[T], sort_by: str, sort_order: SortOrder) -> list[T]:
    """Sort in memory the way the SQL backends do: missing values last."""

    def value(item: Any) -> Any:
        raw = getattr(item, sort_by)
        return raw.rank if isinstance(raw, Priority) else raw

    # id ASC breaks ties; the stable second sort keeps it under equal keys
    by_id = sorted(items, key=lambda item: item.id.value)
    present = [item for item in by_id if value(item) is not None]
    missing = [item for item in by_id if value(item) is None]
    present.sort(key=value, reverse=sort_order == "desc")
    return present + missing


# ----------------------------------------------------------------------
# Storage-edge normalization
def normalize_enum(enum_cls: Type[E], raw: Any) -> E:
    """Map a loosely stored enum value (any case, padded) onto ``enum_cls``."""
    if isinstance(raw, enum_cls):
        return raw
    return enum_cls(str(raw).strip().lower())


def parse_datetime(raw: Any) -> Optional[datetime]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return ensure_utc(raw)
    return ensure_utc(datetime.fromisoformat(str(raw)))


def _normalize(
    row: Mapping[str, Any],
    enums: Mapping[str, Type[Enum]],
    datetime_columns: tuple[str, ...],
) -> dict[str, Any]:
    record = dict(row)
    for column, enum_cls in enums.items():
        if record.get(column) is not None:
            record[column] = normalize_enum(enum_cls, record[column]).value
    for column in datetime_columns:
        record[column] = parse_datetime(record.get(column))
    return record


def instance_record_from_row(row: Mapping[str, Any]) -> dict[str, Any]:
    return _normalize(
        row,
        {"status": InstanceStatus, "trigger_type": TriggerType, "priority": Priority},
        INSTANCE_DATETIME_COLUMNS,
    )


def task_record_from_row(row: Mapping[str, Any]) -> dict[str, Any]:
    return _normalize(
        row,
        {
            "status": TaskStatus,
            "task_type": TaskType,
            "priority": Priority,
            "assignment_type": AssignmentType,
        },
        TASK_DATETIME_COLUMNS,
    )


def encode_record(
    record: Mapping[str, Any],
    columns: tuple[str, ...],
    encode_datetime: Callable[[datetime], Any],
) -> list[Any]:
    """Column-ordered values ready to bind into an INSERT/UPDATE."""
    values = []
    for column in columns:
        value = record.get(column)
        if isinstance(value, datetime):
            value = encode_datetime(value)
        values.append(value)
    return values


def default_now(now: Optional[datetime]) -> datetime:
    return ensure_utc(now) or utcnow()
