"""Repository ports consumed by the orchestration handlers."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from ..domain.enums import InstanceStatus, TaskStatus
from ..domain.ids import InstanceId, TaskId
from ..domain.instance import WorkflowInstance
from ..domain.task import WorkflowTask
from .models import InstanceFilters, Page, Pagination, TaskFilters


class InstanceRepository(Protocol):
    """Protocol for workflow instance persistence backends."""

    async def save(self, instance: WorkflowInstance) -> None:
        """Insert or update the instance.

        Raises ``ConcurrencyConflictError`` when the stored version differs
        from ``instance.version``. On success the instance's version is
        advanced to the stored one.
        """

    async def find_by_id(self, instance_id: InstanceId) -> WorkflowInstance | None:
        """Return the instance or ``None`` when no record exists."""

    async def find_all(
        self,
        filters: Optional[InstanceFilters] = None,
        pagination: Optional[Pagination] = None,
    ) -> Page[WorkflowInstance]:
        """Return one page of matching instances and the total match count."""

    async def delete(self, instance_id: InstanceId) -> None:
        """Remove the stored record if present."""

    async def exists(self, instance_id: InstanceId) -> bool:
        """Return ``True`` when a record exists for ``instance_id``."""

    async def count_by_status(self, status: Optional[InstanceStatus] = None) -> int:
        """Count instances, optionally restricted to one status."""

    async def find_active(self, limit: Optional[int] = None) -> list[WorkflowInstance]:
        """Running or paused instances, newest first."""

    async def find_exceeding_sla(
        self, now: Optional[datetime] = None, limit: Optional[int] = None
    ) -> list[WorkflowInstance]:
        """Active instances whose SLA deadline has passed, earliest deadline first."""

    async def find_failed_with_retry_count(
        self, max_retry_count: int, limit: Optional[int] = None
    ) -> list[WorkflowInstance]:
        """Failed instances with ``retry_count < max_retry_count``, fewest retries first."""


class TaskRepository(Protocol):
    """Protocol for workflow task persistence backends."""

    async def save(self, task: WorkflowTask) -> None:
        """Insert or update the task with the same version check as instances."""

    async def find_by_id(self, task_id: TaskId) -> WorkflowTask | None:
        """Return the task or ``None`` when no record exists."""

    async def find_all(
        self,
        filters: Optional[TaskFilters] = None,
        pagination: Optional[Pagination] = None,
        now: Optional[datetime] = None,
    ) -> Page[WorkflowTask]:
        """Return one page of matching tasks and the total match count."""

    async def find_by_instance(
        self, instance_id: str, status: Optional[TaskStatus] = None
    ) -> list[WorkflowTask]:
        """Tasks of one instance in creation order."""

    async def delete(self, task_id: TaskId) -> None:
        """Remove the stored record if present."""

    async def exists(self, task_id: TaskId) -> bool:
        """Return ``True`` when a record exists for ``task_id``."""

    async def count_by_status(self, status: Optional[TaskStatus] = None) -> int:
        """Count tasks, optionally restricted to one status."""

    async def find_active(self, limit: Optional[int] = None) -> list[WorkflowTask]:
        """Pending or in-progress tasks, newest first."""

    async def find_overdue(
        self,
        now: Optional[datetime] = None,
        assignee_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[WorkflowTask]:
        """Non-terminal tasks past their due date, earliest due date first."""

    async def find_exceeding_sla(
        self, now: Optional[datetime] = None, limit: Optional[int] = None
    ) -> list[WorkflowTask]:
        """Active tasks whose SLA deadline has passed, earliest deadline first."""
