"""WorkflowInstance aggregate: the runtime state of one process execution."""

from __future__ import annotations

import math
from datetime import datetime
from typing import Any, Mapping, Optional

from ..errors import InvalidTransitionError
from . import payloads
from .clock import ensure_utc, utcnow
from .enums import (
    INSTANCE_ACTIVE_STATUSES,
    INSTANCE_TERMINAL_STATUSES,
    InstanceStatus,
    Priority,
    TriggerType,
)
from .events import (
    EventOutbox,
    WorkflowInstanceCancelled,
    WorkflowInstanceCompleted,
    WorkflowInstanceFailed,
    WorkflowInstancePaused,
    WorkflowInstanceResumed,
    WorkflowInstanceStarted,
)
from .ids import InstanceId


class WorkflowInstance(EventOutbox):
    """Aggregate root for a single workflow execution.

    Status transitions only happen through the methods below. Each successful
    transition appends one event to the outbox; idempotent no-ops append
    nothing.
    """

    def __init__(
        self,
        instance_id: InstanceId,
        *,
        workflow_id: str,
        status: InstanceStatus,
        started_at: datetime,
        current_step_id: Optional[str] = None,
        data: Optional[dict[str, Any]] = None,
        variables: Optional[dict[str, Any]] = None,
        context: Optional[dict[str, Any]] = None,
        triggered_by: Optional[str] = None,
        trigger_type: TriggerType = TriggerType.MANUAL,
        trigger_data: Optional[dict[str, Any]] = None,
        completed_at: Optional[datetime] = None,
        paused_at: Optional[datetime] = None,
        duration: Optional[int] = None,
        error_message: Optional[str] = None,
        error_step: Optional[str] = None,
        retry_count: int = 0,
        priority: Priority = Priority.NORMAL,
        sla_deadline: Optional[datetime] = None,
        version: int = 0,
    ) -> None:
        super().__init__()
        self._id = instance_id
        self._workflow_id = workflow_id
        self._status = InstanceStatus(status)
        self._current_step_id = current_step_id
        self._data = dict(data or {})
        self._variables = dict(variables or {})
        self._context = dict(context or {})
        self._triggered_by = triggered_by
        self._trigger_type = TriggerType(trigger_type)
        self._trigger_data = dict(trigger_data or {})
        self._started_at = ensure_utc(started_at)
        self._completed_at = ensure_utc(completed_at)
        self._paused_at = ensure_utc(paused_at)
        self._duration = duration
        self._error_message = error_message
        self._error_step = error_step
        self._retry_count = retry_count
        self._priority = Priority(priority)
        self._sla_deadline = ensure_utc(sla_deadline)
        self._version = version

    # ------------------------------------------------------------------
    # Factories
    @classmethod
    def create(
        cls,
        *,
        workflow_id: str,
        data: Optional[dict[str, Any]] = None,
        variables: Optional[dict[str, Any]] = None,
        context: Optional[dict[str, Any]] = None,
        triggered_by: Optional[str] = None,
        trigger_type: TriggerType = TriggerType.MANUAL,
        trigger_data: Optional[dict[str, Any]] = None,
        priority: Priority = Priority.NORMAL,
        sla_deadline: Optional[datetime] = None,
        retry_count: int = 0,
        started_at: Optional[datetime] = None,
    ) -> "WorkflowInstance":
        """Open a new RUNNING instance and record ``WorkflowInstanceStarted``."""
        started = ensure_utc(started_at) or utcnow()
        instance = cls(
            InstanceId.generate(),
            workflow_id=workflow_id,
            status=InstanceStatus.RUNNING,
            started_at=started,
            data=data,
            variables=variables,
            context=context,
            triggered_by=triggered_by,
            trigger_type=trigger_type,
            trigger_data=trigger_data,
            priority=priority,
            sla_deadline=sla_deadline,
            retry_count=retry_count,
        )
        instance._record(
            WorkflowInstanceStarted(
                aggregate_id=instance.id.value,
                workflow_id=workflow_id,
                emitted_at=started,
            )
        )
        return instance

    @classmethod
    def reconstitute(
        cls,
        instance_id: InstanceId | str,
        record: Mapping[str, Any],
        *,
        strict: bool = True,
    ) -> "WorkflowInstance":
        """Rebuild an instance from a stored record without emitting events."""
        return cls(
            InstanceId.from_value(instance_id),
            workflow_id=record["workflow_id"],
            status=InstanceStatus(record["status"]),
            current_step_id=record.get("current_step_id"),
            data=payloads.load_object(record.get("data"), "data", strict),
            variables=payloads.load_object(record.get("variables"), "variables", strict),
            context=payloads.load_object(record.get("context"), "context", strict),
            triggered_by=record.get("triggered_by"),
            trigger_type=TriggerType(record.get("trigger_type") or TriggerType.MANUAL),
            trigger_data=payloads.load_object(record.get("trigger_data"), "trigger_data", strict),
            started_at=record["started_at"],
            completed_at=record.get("completed_at"),
            paused_at=record.get("paused_at"),
            duration=record.get("duration"),
            error_message=record.get("error_message"),
            error_step=record.get("error_step"),
            retry_count=record.get("retry_count") or 0,
            priority=Priority(record.get("priority") or Priority.NORMAL),
            sla_deadline=record.get("sla_deadline"),
            version=record.get("version") or 0,
        )

    def to_persistence(self) -> dict[str, Any]:
        """Flat record of primitive and serialized fields."""
        return {
            "id": self._id.value,
            "workflow_id": self._workflow_id,
            "status": self._status.value,
            "current_step_id": self._current_step_id,
            "data": payloads.dump_object(self._data),
            "variables": payloads.dump_object(self._variables),
            "context": payloads.dump_object(self._context),
            "triggered_by": self._triggered_by,
            "trigger_type": self._trigger_type.value,
            "trigger_data": payloads.dump_object(self._trigger_data),
            "started_at": self._started_at,
            "completed_at": self._completed_at,
            "paused_at": self._paused_at,
            "duration": self._duration,
            "error_message": self._error_message,
            "error_step": self._error_step,
            "retry_count": self._retry_count,
            "priority": self._priority.value,
            "sla_deadline": self._sla_deadline,
            "version": self._version,
        }

    # ------------------------------------------------------------------
    # Getters
    @property
    def id(self) -> InstanceId:
        return self._id

    @property
    def workflow_id(self) -> str:
        return self._workflow_id

    @property
    def status(self) -> InstanceStatus:
        return self._status

    @property
    def current_step_id(self) -> Optional[str]:
        return self._current_step_id

    @property
    def data(self) -> dict[str, Any]:
        return dict(self._data)

    @property
    def variables(self) -> dict[str, Any]:
        return dict(self._variables)

    @property
    def context(self) -> dict[str, Any]:
        return dict(self._context)

    @property
    def triggered_by(self) -> Optional[str]:
        return self._triggered_by

    @property
    def trigger_type(self) -> TriggerType:
        return self._trigger_type

    @property
    def trigger_data(self) -> dict[str, Any]:
        return dict(self._trigger_data)

    @property
    def started_at(self) -> datetime:
        return self._started_at

    @property
    def completed_at(self) -> Optional[datetime]:
        return self._completed_at

    @property
    def paused_at(self) -> Optional[datetime]:
        return self._paused_at

    @property
    def duration(self) -> Optional[int]:
        return self._duration

    @property
    def error_message(self) -> Optional[str]:
        return self._error_message

    @property
    def error_step(self) -> Optional[str]:
        return self._error_step

    @property
    def retry_count(self) -> int:
        return self._retry_count

    @property
    def priority(self) -> Priority:
        return self._priority

    @property
    def sla_deadline(self) -> Optional[datetime]:
        return self._sla_deadline

    @property
    def version(self) -> int:
        return self._version

    def mark_saved(self, version: int) -> None:
        """Record the version the repository just stored."""
        self._version = version

    # ------------------------------------------------------------------
    # Transitions
    def complete(self, now: Optional[datetime] = None) -> None:
        if self._status is InstanceStatus.COMPLETED:
            return
        if self._status not in INSTANCE_ACTIVE_STATUSES:
            raise InvalidTransitionError(
                f"Cannot complete workflow instance with status {self._status.value}"
            )

        completed_at = ensure_utc(now) or utcnow()
        self._status = InstanceStatus.COMPLETED
        self._completed_at = completed_at
        self._paused_at = None
        self._duration = math.floor((completed_at - self._started_at).total_seconds())
        self._record(
            WorkflowInstanceCompleted(
                aggregate_id=self._id.value,
                workflow_id=self._workflow_id,
                duration=self._duration,
                emitted_at=completed_at,
            )
        )

    def fail(
        self,
        error_message: str,
        error_step: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        if self._status is InstanceStatus.COMPLETED:
            raise InvalidTransitionError("Cannot fail a completed workflow instance")

        failed_at = ensure_utc(now) or utcnow()
        self._status = InstanceStatus.FAILED
        self._error_message = error_message
        self._error_step = error_step
        self._completed_at = failed_at
        self._paused_at = None
        self._record(
            WorkflowInstanceFailed(
                aggregate_id=self._id.value,
                workflow_id=self._workflow_id,
                error_message=error_message,
                error_step=error_step,
                emitted_at=failed_at,
            )
        )

    def cancel(self, now: Optional[datetime] = None) -> None:
        if self._status in (InstanceStatus.COMPLETED, InstanceStatus.CANCELLED):
            return
        if self._status is InstanceStatus.FAILED:
            raise InvalidTransitionError(
                f"Cannot cancel workflow instance with status {self._status.value}"
            )

        cancelled_at = ensure_utc(now) or utcnow()
        self._status = InstanceStatus.CANCELLED
        self._completed_at = cancelled_at
        self._paused_at = None
        self._record(
            WorkflowInstanceCancelled(
                aggregate_id=self._id.value,
                workflow_id=self._workflow_id,
                emitted_at=cancelled_at,
            )
        )

    def pause(self, now: Optional[datetime] = None) -> None:
        if self._status is not InstanceStatus.RUNNING:
            raise InvalidTransitionError(
                f"Cannot pause workflow instance with status {self._status.value}"
            )

        paused_at = ensure_utc(now) or utcnow()
        self._status = InstanceStatus.PAUSED
        self._paused_at = paused_at
        self._record(
            WorkflowInstancePaused(
                aggregate_id=self._id.value,
                workflow_id=self._workflow_id,
                emitted_at=paused_at,
            )
        )

    def resume(self, now: Optional[datetime] = None) -> None:
        if self._status is not InstanceStatus.PAUSED:
            raise InvalidTransitionError(
                f"Cannot resume workflow instance with status {self._status.value}"
            )

        self._status = InstanceStatus.RUNNING
        self._paused_at = None
        self._record(
            WorkflowInstanceResumed(
                aggregate_id=self._id.value,
                workflow_id=self._workflow_id,
                emitted_at=ensure_utc(now) or utcnow(),
            )
        )

    def update_current_step(self, step_id: str) -> None:
        if self._status is not InstanceStatus.RUNNING:
            raise InvalidTransitionError(
                f"Cannot update step for workflow instance with status {self._status.value}"
            )
        self._current_step_id = step_id

    def increment_retry_count(self) -> None:
        self._retry_count += 1

    # Payload setters apply in every status, terminal ones included.
    def update_data(self, data: dict[str, Any]) -> None:
        self._data = dict(data)

    def update_variables(self, variables: dict[str, Any]) -> None:
        self._variables = dict(variables)

    def update_context(self, context: dict[str, Any]) -> None:
        self._context = dict(context)

    # ------------------------------------------------------------------
    # Predicates
    def has_exceeded_sla(self, now: Optional[datetime] = None) -> bool:
        if self._sla_deadline is None:
            return False
        return (ensure_utc(now) or utcnow()) > self._sla_deadline

    def is_running(self) -> bool:
        return self._status is InstanceStatus.RUNNING

    def is_paused(self) -> bool:
        return self._status is InstanceStatus.PAUSED

    def is_completed(self) -> bool:
        return self._status is InstanceStatus.COMPLETED

    def is_failed(self) -> bool:
        return self._status is InstanceStatus.FAILED

    def is_cancelled(self) -> bool:
        return self._status is InstanceStatus.CANCELLED

    def is_active(self) -> bool:
        return self._status in INSTANCE_ACTIVE_STATUSES

    def is_terminal(self) -> bool:
        return self._status in INSTANCE_TERMINAL_STATUSES

    def __repr__(self) -> str:
        return (
            f"WorkflowInstance(id={self._id.value!r}, workflow_id={self._workflow_id!r}, "
            f"status={self._status.value!r})"
        )
