"""WorkflowTask aggregate: one unit of work spawned by a workflow instance."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Optional

from ..errors import InvalidTransitionError, PermissionDeniedError
from . import payloads
from .clock import ensure_utc, utcnow
from .enums import (
    TASK_ACTIVE_STATUSES,
    TASK_TERMINAL_STATUSES,
    AssignmentType,
    Priority,
    TaskStatus,
    TaskType,
)
from .events import (
    EventOutbox,
    WorkflowTaskAssigned,
    WorkflowTaskCancelled,
    WorkflowTaskCompleted,
    WorkflowTaskCreated,
    WorkflowTaskRejected,
    WorkflowTaskStarted,
)
from .ids import TaskId
from .payloads import Attachment, Comment


class WorkflowTask(EventOutbox):
    """Aggregate root for a task belonging to a workflow instance.

    ``instance_id`` is a weak reference: the task never loads or mutates its
    instance. Only the user captured by :meth:`assign_to` may start, complete
    or reject the task.
    """

    def __init__(
        self,
        task_id: TaskId,
        *,
        instance_id: str,
        step_id: str,
        name: str,
        status: TaskStatus,
        created_at: datetime,
        description: Optional[str] = None,
        task_type: TaskType = TaskType.MANUAL,
        priority: Priority = Priority.NORMAL,
        assignee_id: Optional[str] = None,
        assigned_by: Optional[str] = None,
        assignment_type: AssignmentType = AssignmentType.MANUAL,
        form_data: Optional[dict[str, Any]] = None,
        attachments: Optional[list[Attachment]] = None,
        comments: Optional[list[Comment]] = None,
        assigned_at: Optional[datetime] = None,
        started_at: Optional[datetime] = None,
        completed_at: Optional[datetime] = None,
        due_date: Optional[datetime] = None,
        sla_hours: Optional[int] = None,
        sla_deadline: Optional[datetime] = None,
        result: Optional[dict[str, Any]] = None,
        completed_by: Optional[str] = None,
        rejected_by: Optional[str] = None,
        rejection_reason: Optional[str] = None,
        version: int = 0,
    ) -> None:
        super().__init__()
        self._id = task_id
        self._instance_id = instance_id
        self._step_id = step_id
        self._name = name
        self._description = description
        self._task_type = TaskType(task_type)
        self._status = TaskStatus(status)
        self._priority = Priority(priority)
        self._assignee_id = assignee_id
        self._assigned_by = assigned_by
        self._assignment_type = AssignmentType(assignment_type)
        self._form_data = dict(form_data or {})
        self._attachments = list(attachments or [])
        self._comments = list(comments or [])
        self._created_at = ensure_utc(created_at)
        self._assigned_at = ensure_utc(assigned_at)
        self._started_at = ensure_utc(started_at)
        self._completed_at = ensure_utc(completed_at)
        self._due_date = ensure_utc(due_date)
        self._sla_hours = sla_hours
        self._sla_deadline = ensure_utc(sla_deadline)
        self._result = dict(result) if result is not None else None
        self._completed_by = completed_by
        self._rejected_by = rejected_by
        self._rejection_reason = rejection_reason
        self._version = version

    # ------------------------------------------------------------------
    # Factories
    @classmethod
    def create(
        cls,
        *,
        instance_id: str,
        step_id: str,
        name: str,
        description: Optional[str] = None,
        task_type: TaskType = TaskType.MANUAL,
        priority: Priority = Priority.NORMAL,
        assignment_type: AssignmentType = AssignmentType.MANUAL,
        form_data: Optional[dict[str, Any]] = None,
        attachments: Optional[list[Attachment]] = None,
        due_date: Optional[datetime] = None,
        sla_hours: Optional[int] = None,
        sla_deadline: Optional[datetime] = None,
        created_at: Optional[datetime] = None,
    ) -> "WorkflowTask":
        """Create a PENDING task and record ``WorkflowTaskCreated``."""
        created = ensure_utc(created_at) or utcnow()
        task = cls(
            TaskId.generate(),
            instance_id=instance_id,
            step_id=step_id,
            name=name,
            description=description,
            task_type=task_type,
            status=TaskStatus.PENDING,
            priority=priority,
            assignment_type=assignment_type,
            form_data=form_data,
            attachments=attachments,
            created_at=created,
            due_date=due_date,
            sla_hours=sla_hours,
            sla_deadline=sla_deadline,
        )
        task._record(
            WorkflowTaskCreated(
                aggregate_id=task.id.value,
                instance_id=instance_id,
                task_name=name,
                emitted_at=created,
            )
        )
        return task

    @classmethod
    def reconstitute(
        cls,
        task_id: TaskId | str,
        record: Mapping[str, Any],
        *,
        strict: bool = True,
    ) -> "WorkflowTask":
        """Rebuild a task from a stored record without emitting events."""
        return cls(
            TaskId.from_value(task_id),
            instance_id=record["instance_id"],
            step_id=record["step_id"],
            name=record["name"],
            description=record.get("description"),
            task_type=TaskType(record.get("task_type") or TaskType.MANUAL),
            status=TaskStatus(record["status"]),
            priority=Priority(record.get("priority") or Priority.NORMAL),
            assignee_id=record.get("assignee_id"),
            assigned_by=record.get("assigned_by"),
            assignment_type=AssignmentType(record.get("assignment_type") or AssignmentType.MANUAL),
            form_data=payloads.load_object(record.get("form_data"), "form_data", strict),
            attachments=payloads.load_attachments(record.get("attachments"), strict),
            comments=payloads.load_comments(record.get("comments"), strict),
            created_at=record["created_at"],
            assigned_at=record.get("assigned_at"),
            started_at=record.get("started_at"),
            completed_at=record.get("completed_at"),
            due_date=record.get("due_date"),
            sla_hours=record.get("sla_hours"),
            sla_deadline=record.get("sla_deadline"),
            result=payloads.load_optional_object(record.get("result"), "result", strict),
            completed_by=record.get("completed_by"),
            rejected_by=record.get("rejected_by"),
            rejection_reason=record.get("rejection_reason"),
            version=record.get("version") or 0,
        )

    def to_persistence(self) -> dict[str, Any]:
        """Flat record of primitive and serialized fields."""
        return {
            "id": self._id.value,
            "instance_id": self._instance_id,
            "step_id": self._step_id,
            "name": self._name,
            "description": self._description,
            "task_type": self._task_type.value,
            "status": self._status.value,
            "priority": self._priority.value,
            "assignee_id": self._assignee_id,
            "assigned_by": self._assigned_by,
            "assignment_type": self._assignment_type.value,
            "form_data": payloads.dump_object(self._form_data),
            "attachments": payloads.dump_models(self._attachments),
            "comments": payloads.dump_models(self._comments),
            "created_at": self._created_at,
            "assigned_at": self._assigned_at,
            "started_at": self._started_at,
            "completed_at": self._completed_at,
            "due_date": self._due_date,
            "sla_hours": self._sla_hours,
            "sla_deadline": self._sla_deadline,
            "result": payloads.dump_optional_object(self._result),
            "completed_by": self._completed_by,
            "rejected_by": self._rejected_by,
            "rejection_reason": self._rejection_reason,
            "version": self._version,
        }

    # ------------------------------------------------------------------
    # Getters
    @property
    def id(self) -> TaskId:
        return self._id

    @property
    def instance_id(self) -> str:
        return self._instance_id

    @property
    def step_id(self) -> str:
        return self._step_id

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> Optional[str]:
        return self._description

    @property
    def task_type(self) -> TaskType:
        return self._task_type

    @property
    def status(self) -> TaskStatus:
        return self._status

    @property
    def priority(self) -> Priority:
        return self._priority

    @property
    def assignee_id(self) -> Optional[str]:
        return self._assignee_id

    @property
    def assigned_by(self) -> Optional[str]:
        return self._assigned_by

    @property
    def assignment_type(self) -> AssignmentType:
        return self._assignment_type

    @property
    def form_data(self) -> dict[str, Any]:
        return dict(self._form_data)

    @property
    def attachments(self) -> list[Attachment]:
        return list(self._attachments)

    @property
    def comments(self) -> list[Comment]:
        return list(self._comments)

    @property
    def created_at(self) -> datetime:
        return self._created_at

    @property
    def assigned_at(self) -> Optional[datetime]:
        return self._assigned_at

    @property
    def started_at(self) -> Optional[datetime]:
        return self._started_at

    @property
    def completed_at(self) -> Optional[datetime]:
        return self._completed_at

    @property
    def due_date(self) -> Optional[datetime]:
        return self._due_date

    @property
    def sla_hours(self) -> Optional[int]:
        return self._sla_hours

    @property
    def sla_deadline(self) -> Optional[datetime]:
        return self._sla_deadline

    @property
    def result(self) -> Optional[dict[str, Any]]:
        return dict(self._result) if self._result is not None else None

    @property
    def completed_by(self) -> Optional[str]:
        return self._completed_by

    @property
    def rejected_by(self) -> Optional[str]:
        return self._rejected_by

    @property
    def rejection_reason(self) -> Optional[str]:
        return self._rejection_reason

    @property
    def version(self) -> int:
        return self._version

    def mark_saved(self, version: int) -> None:
        """Record the version the repository just stored."""
        self._version = version

    # ------------------------------------------------------------------
    # Transitions
    def _require_assignee(self, user_id: str) -> None:
        if self._assignee_id is None or self._assignee_id != user_id:
            raise PermissionDeniedError("Task is not assigned to this user")

    def assign_to(
        self, assignee_id: str, assigned_by: str, now: Optional[datetime] = None
    ) -> None:
        if self._status is not TaskStatus.PENDING:
            raise InvalidTransitionError(f"Cannot assign task with status {self._status.value}")
        if self._assignee_id is not None:
            # reassignment is modelled as cancel + recreate
            raise InvalidTransitionError(f"Task is already assigned to {self._assignee_id}")

        assigned_at = ensure_utc(now) or utcnow()
        self._assignee_id = assignee_id
        self._assigned_by = assigned_by
        self._assigned_at = assigned_at
        self._record(
            WorkflowTaskAssigned(
                aggregate_id=self._id.value,
                instance_id=self._instance_id,
                assignee_id=assignee_id,
                assigned_by=assigned_by,
                emitted_at=assigned_at,
            )
        )

    def start(self, user_id: str, now: Optional[datetime] = None) -> None:
        # a non-assignee is refused before the status is looked at
        self._require_assignee(user_id)
        if self._status is not TaskStatus.PENDING:
            raise InvalidTransitionError(f"Cannot start task with status {self._status.value}")

        started_at = ensure_utc(now) or utcnow()
        self._status = TaskStatus.IN_PROGRESS
        self._started_at = started_at
        self._record(
            WorkflowTaskStarted(
                aggregate_id=self._id.value,
                instance_id=self._instance_id,
                started_by=user_id,
                emitted_at=started_at,
            )
        )

    def complete(
        self,
        user_id: str,
        result: Optional[dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> None:
        if self._status is not TaskStatus.IN_PROGRESS:
            raise InvalidTransitionError(f"Cannot complete task with status {self._status.value}")
        self._require_assignee(user_id)

        completed_at = ensure_utc(now) or utcnow()
        self._status = TaskStatus.COMPLETED
        self._completed_at = completed_at
        self._completed_by = user_id
        if result:
            self._result = dict(result)
        self._record(
            WorkflowTaskCompleted(
                aggregate_id=self._id.value,
                instance_id=self._instance_id,
                completed_by=user_id,
                emitted_at=completed_at,
            )
        )

    def reject(self, user_id: str, reason: str, now: Optional[datetime] = None) -> None:
        if self._status not in TASK_ACTIVE_STATUSES:
            raise InvalidTransitionError(f"Cannot reject task with status {self._status.value}")
        self._require_assignee(user_id)

        rejected_at = ensure_utc(now) or utcnow()
        self._status = TaskStatus.REJECTED
        self._completed_at = rejected_at
        self._rejected_by = user_id
        self._rejection_reason = reason
        self._record(
            WorkflowTaskRejected(
                aggregate_id=self._id.value,
                instance_id=self._instance_id,
                rejected_by=user_id,
                reason=reason,
                emitted_at=rejected_at,
            )
        )

    def cancel(self, now: Optional[datetime] = None) -> None:
        if self._status in TASK_TERMINAL_STATUSES:
            return

        self._status = TaskStatus.CANCELLED
        self._record(
            WorkflowTaskCancelled(
                aggregate_id=self._id.value,
                instance_id=self._instance_id,
                emitted_at=ensure_utc(now) or utcnow(),
            )
        )

    def update_form_data(self, form_data: dict[str, Any]) -> None:
        self._form_data = dict(form_data)

    def add_comment(self, text: str, now: Optional[datetime] = None) -> None:
        self._comments.append(Comment(text=text, timestamp=ensure_utc(now) or utcnow()))

    def add_attachment(self, url: str, now: Optional[datetime] = None) -> None:
        self._attachments.append(Attachment(url=url, timestamp=ensure_utc(now) or utcnow()))

    # ------------------------------------------------------------------
    # Predicates
    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        if self._due_date is None:
            return False
        return (ensure_utc(now) or utcnow()) > self._due_date

    def has_exceeded_sla(self, now: Optional[datetime] = None) -> bool:
        if self._sla_deadline is None:
            return False
        return (ensure_utc(now) or utcnow()) > self._sla_deadline

    def is_assigned_to(self, user_id: str) -> bool:
        return self._assignee_id is not None and self._assignee_id == user_id

    def is_pending(self) -> bool:
        return self._status is TaskStatus.PENDING

    def is_in_progress(self) -> bool:
        return self._status is TaskStatus.IN_PROGRESS

    def is_completed(self) -> bool:
        return self._status is TaskStatus.COMPLETED

    def is_rejected(self) -> bool:
        return self._status is TaskStatus.REJECTED

    def is_cancelled(self) -> bool:
        return self._status is TaskStatus.CANCELLED

    def is_active(self) -> bool:
        return self._status in TASK_ACTIVE_STATUSES

    def is_terminal(self) -> bool:
        return self._status in TASK_TERMINAL_STATUSES

    def __repr__(self) -> str:
        return (
            f"WorkflowTask(id={self._id.value!r}, instance_id={self._instance_id!r}, "
            f"status={self._status.value!r})"
        )
