"""In-memory implementation of the workflow repositories."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from ..domain.enums import INSTANCE_ACTIVE_STATUSES, InstanceStatus, TaskStatus
from ..domain.ids import InstanceId, TaskId
from ..domain.instance import WorkflowInstance
from ..domain.task import WorkflowTask
from ..errors import ConcurrencyConflictError
from .models import (
    InstanceFilters,
    Page,
    Pagination,
    TaskFilters,
    default_now,
    sort_aggregates,
)
from .repository import InstanceRepository, TaskRepository


def _check_version(
    records: Dict[str, dict[str, Any]], aggregate_id: str, expected: int
) -> None:
    stored = records.get(aggregate_id)
    stored_version = stored["version"] if stored else 0
    if stored_version != expected:
        raise ConcurrencyConflictError(aggregate_id, expected)


def _paginate(items: list, pagination: Optional[Pagination]) -> Page:
    pagination = pagination or Pagination()
    window = items[pagination.offset : pagination.offset + pagination.limit]
    return Page(items=window, total=len(items))


def _limit(items: list, limit: Optional[int]) -> list:
    return items[:limit] if limit is not None else items


class InMemoryInstanceRepository(InstanceRepository):
    """Store instance snapshots in local memory.

    Useful for tests or when no database is configured. Every read
    reconstitutes a fresh aggregate, so callers never share live objects.
    """

    def __init__(self, strict_payloads: bool = True) -> None:
        self._records: Dict[str, dict[str, Any]] = {}
        self._strict = strict_payloads

    def _hydrate(self, record: dict[str, Any]) -> WorkflowInstance:
        return WorkflowInstance.reconstitute(record["id"], record, strict=self._strict)

    def _all(self) -> list[WorkflowInstance]:
        return [self._hydrate(record) for record in self._records.values()]

    # ------------------------------------------------------------------
    async def save(self, instance: WorkflowInstance) -> None:
        _check_version(self._records, instance.id.value, instance.version)
        record = instance.to_persistence()
        record["version"] = instance.version + 1
        self._records[instance.id.value] = record
        instance.mark_saved(record["version"])

    async def find_by_id(self, instance_id: InstanceId) -> WorkflowInstance | None:
        record = self._records.get(InstanceId.from_value(instance_id).value)
        return self._hydrate(record) if record else None

    async def find_all(
        self,
        filters: Optional[InstanceFilters] = None,
        pagination: Optional[Pagination] = None,
    ) -> Page[WorkflowInstance]:
        filters = filters or InstanceFilters()
        matching = [i for i in self._all() if filters.matches(i)]
        return _paginate(sort_aggregates(matching, filters.sort_by, filters.sort_order), pagination)

    async def delete(self, instance_id: InstanceId) -> None:
        self._records.pop(InstanceId.from_value(instance_id).value, None)

    async def exists(self, instance_id: InstanceId) -> bool:
        return InstanceId.from_value(instance_id).value in self._records

    async def count_by_status(self, status: Optional[InstanceStatus] = None) -> int:
        if status is None:
            return len(self._records)
        return sum(1 for r in self._records.values() if r["status"] == status.value)

    async def find_active(self, limit: Optional[int] = None) -> list[WorkflowInstance]:
        active = [i for i in self._all() if i.is_active()]
        return _limit(sort_aggregates(active, "started_at", "desc"), limit)

    async def find_exceeding_sla(
        self, now: Optional[datetime] = None, limit: Optional[int] = None
    ) -> list[WorkflowInstance]:
        now = default_now(now)
        late = [
            i
            for i in self._all()
            if i.status in INSTANCE_ACTIVE_STATUSES and i.has_exceeded_sla(now)
        ]
        return _limit(sort_aggregates(late, "sla_deadline", "asc"), limit)

    async def find_failed_with_retry_count(
        self, max_retry_count: int, limit: Optional[int] = None
    ) -> list[WorkflowInstance]:
        failed = [
            i for i in self._all() if i.is_failed() and i.retry_count < max_retry_count
        ]
        return _limit(sort_aggregates(failed, "retry_count", "asc"), limit)


class InMemoryTaskRepository(TaskRepository):
    """Store task snapshots in local memory."""

    def __init__(self, strict_payloads: bool = True) -> None:
        self._records: Dict[str, dict[str, Any]] = {}
        self._strict = strict_payloads

    def _hydrate(self, record: dict[str, Any]) -> WorkflowTask:
        return WorkflowTask.reconstitute(record["id"], record, strict=self._strict)

    def _all(self) -> list[WorkflowTask]:
        return [self._hydrate(record) for record in self._records.values()]

    # ------------------------------------------------------------------
    async def save(self, task: WorkflowTask) -> None:
        _check_version(self._records, task.id.value, task.version)
        record = task.to_persistence()
        record["version"] = task.version + 1
        self._records[task.id.value] = record
        task.mark_saved(record["version"])

    async def find_by_id(self, task_id: TaskId) -> WorkflowTask | None:
        record = self._records.get(TaskId.from_value(task_id).value)
        return self._hydrate(record) if record else None

    async def find_all(
        self,
        filters: Optional[TaskFilters] = None,
        pagination: Optional[Pagination] = None,
        now: Optional[datetime] = None,
    ) -> Page[WorkflowTask]:
        filters = filters or TaskFilters()
        now = default_now(now)
        matching = [t for t in self._all() if filters.matches(t, now)]
        return _paginate(sort_aggregates(matching, filters.sort_by, filters.sort_order), pagination)

    async def find_by_instance(
        self, instance_id: str, status: Optional[TaskStatus] = None
    ) -> list[WorkflowTask]:
        tasks = [
            t
            for t in self._all()
            if t.instance_id == instance_id and (status is None or t.status is status)
        ]
        return sort_aggregates(tasks, "created_at", "asc")

    async def delete(self, task_id: TaskId) -> None:
        self._records.pop(TaskId.from_value(task_id).value, None)

    async def exists(self, task_id: TaskId) -> bool:
        return TaskId.from_value(task_id).value in self._records

    async def count_by_status(self, status: Optional[TaskStatus] = None) -> int:
        if status is None:
            return len(self._records)
        return sum(1 for r in self._records.values() if r["status"] == status.value)

    async def find_active(self, limit: Optional[int] = None) -> list[WorkflowTask]:
        active = [t for t in self._all() if t.is_active()]
        return _limit(sort_aggregates(active, "created_at", "desc"), limit)

    async def find_overdue(
        self,
        now: Optional[datetime] = None,
        assignee_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[WorkflowTask]:
        now = default_now(now)
        overdue = [
            t
            for t in self._all()
            if not t.is_terminal()
            and t.is_overdue(now)
            and (assignee_id is None or t.assignee_id == assignee_id)
        ]
        return _limit(sort_aggregates(overdue, "due_date", "asc"), limit)

    async def find_exceeding_sla(
        self, now: Optional[datetime] = None, limit: Optional[int] = None
    ) -> list[WorkflowTask]:
        now = default_now(now)
        late = [t for t in self._all() if t.is_active() and t.has_exceeded_sla(now)]
        return _limit(sort_aggregates(late, "sla_deadline", "asc"), limit)
