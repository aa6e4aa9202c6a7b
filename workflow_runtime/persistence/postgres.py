"""PostgreSQL implementation of the workflow repositories."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import asyncpg

from ..domain.clock import ensure_utc
from ..domain.enums import InstanceStatus, TaskStatus
from ..domain.ids import InstanceId, TaskId
from ..domain.instance import WorkflowInstance
from ..domain.task import WorkflowTask
from ..errors import ConcurrencyConflictError
from . import queries
from .models import (
    INSTANCE_COLUMNS,
    TASK_COLUMNS,
    InstanceFilters,
    Page,
    Pagination,
    TaskFilters,
    default_now,
    encode_record,
    instance_record_from_row,
    task_record_from_row,
)
from .repository import InstanceRepository, TaskRepository

DIALECT = queries.Dialect(placeholder=lambda n: f"${n}", encode_datetime=ensure_utc)

_SCHEMA = (
    f"""
    CREATE TABLE IF NOT EXISTS {queries.INSTANCES_TABLE} (
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        status TEXT NOT NULL,
        current_step_id TEXT,
        data JSONB,
        variables JSONB,
        context JSONB,
        triggered_by TEXT,
        trigger_type TEXT NOT NULL,
        trigger_data JSONB,
        started_at TIMESTAMPTZ NOT NULL,
        completed_at TIMESTAMPTZ,
        paused_at TIMESTAMPTZ,
        duration INTEGER,
        error_message TEXT,
        error_step TEXT,
        retry_count INTEGER NOT NULL DEFAULT 0,
        priority TEXT NOT NULL,
        sla_deadline TIMESTAMPTZ,
        version INTEGER NOT NULL
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {queries.TASKS_TABLE} (
        id TEXT PRIMARY KEY,
        instance_id TEXT NOT NULL,
        step_id TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT,
        task_type TEXT NOT NULL,
        status TEXT NOT NULL,
        priority TEXT NOT NULL,
        assignee_id TEXT,
        assigned_by TEXT,
        assignment_type TEXT NOT NULL,
        form_data JSONB,
        attachments JSONB,
        comments JSONB,
        created_at TIMESTAMPTZ NOT NULL,
        assigned_at TIMESTAMPTZ,
        started_at TIMESTAMPTZ,
        completed_at TIMESTAMPTZ,
        due_date TIMESTAMPTZ,
        sla_hours INTEGER,
        sla_deadline TIMESTAMPTZ,
        result JSONB,
        completed_by TEXT,
        rejected_by TEXT,
        rejection_reason TEXT,
        version INTEGER NOT NULL
    )
    """,
    f"CREATE INDEX IF NOT EXISTS idx_tasks_instance ON {queries.TASKS_TABLE} (instance_id)",
)


class _PostgresStore:
    """Connection handling shared by the instance and task repositories."""

    def __init__(self, dsn: str, strict_payloads: bool = True):
        self._dsn = dsn
        self._strict = strict_payloads
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        for statement in _SCHEMA:
            await conn.execute(statement)

    # ------------------------------------------------------------------
    async def _execute(self, query: str, *params: Any) -> str:
        conn = await self._connect()
        try:
            return await conn.execute(query, *params)
        finally:
            await conn.close()

    async def _fetchrow(self, query: str, *params: Any) -> asyncpg.Record | None:
        conn = await self._connect()
        try:
            return await conn.fetchrow(query, *params)
        finally:
            await conn.close()

    async def _fetch(self, query: str, *params: Any) -> list[asyncpg.Record]:
        conn = await self._connect()
        try:
            return await conn.fetch(query, *params)
        finally:
            await conn.close()

    async def _count(self, query: str, params: list[Any]) -> int:
        conn = await self._connect()
        try:
            return await conn.fetchval(query, *params) or 0
        finally:
            await conn.close()

    async def _save_record(
        self, table: str, columns: tuple[str, ...], record: dict[str, Any], expected: int
    ) -> int:
        new_version = expected + 1
        record = {**record, "version": new_version}
        values = encode_record(record, columns, ensure_utc)
        if expected == 0:
            try:
                await self._execute(queries.insert_statement(table, columns, DIALECT), *values)
            except asyncpg.UniqueViolationError as exc:
                raise ConcurrencyConflictError(record["id"], expected) from exc
            return new_version

        set_values = [v for c, v in zip(columns, values) if c != "id"]
        status = await self._execute(
            queries.update_statement(table, columns, DIALECT),
            *set_values,
            record["id"],
            expected,
        )
        if status == "UPDATE 0":
            raise ConcurrencyConflictError(record["id"], expected)
        return new_version


class PostgresInstanceRepository(_PostgresStore, InstanceRepository):
    """Persist workflow instances using PostgreSQL."""

    def _hydrate(self, row: asyncpg.Record) -> WorkflowInstance:
        record = instance_record_from_row(dict(row))
        return WorkflowInstance.reconstitute(record["id"], record, strict=self._strict)

    async def _select(self, query: str, params: list[Any]) -> list[WorkflowInstance]:
        return [self._hydrate(row) for row in await self._fetch(query, *params)]

    # ------------------------------------------------------------------
    async def save(self, instance: WorkflowInstance) -> None:
        version = await self._save_record(
            queries.INSTANCES_TABLE,
            INSTANCE_COLUMNS,
            instance.to_persistence(),
            instance.version,
        )
        instance.mark_saved(version)

    async def find_by_id(self, instance_id: InstanceId) -> WorkflowInstance | None:
        row = await self._fetchrow(
            queries.select_by_id(queries.INSTANCES_TABLE, INSTANCE_COLUMNS, DIALECT),
            InstanceId.from_value(instance_id).value,
        )
        return self._hydrate(row) if row else None

    async def find_all(
        self,
        filters: Optional[InstanceFilters] = None,
        pagination: Optional[Pagination] = None,
    ) -> Page[WorkflowInstance]:
        filters = filters or InstanceFilters()
        pagination = pagination or Pagination()
        sql, params, count_sql, count_params = queries.instance_page(
            filters, pagination.limit, pagination.offset, DIALECT
        )
        items = await self._select(sql, params)
        return Page(items=items, total=await self._count(count_sql, count_params))

    async def delete(self, instance_id: InstanceId) -> None:
        await self._execute(
            f"DELETE FROM {queries.INSTANCES_TABLE} WHERE id = $1",
            InstanceId.from_value(instance_id).value,
        )

    async def exists(self, instance_id: InstanceId) -> bool:
        row = await self._fetchrow(
            f"SELECT 1 FROM {queries.INSTANCES_TABLE} WHERE id = $1",
            InstanceId.from_value(instance_id).value,
        )
        return row is not None

    async def count_by_status(self, status: Optional[InstanceStatus] = None) -> int:
        sql, params = queries.instance_count(status.value if status else None, DIALECT)
        return await self._count(sql, params)

    async def find_active(self, limit: Optional[int] = None) -> list[WorkflowInstance]:
        return await self._select(*queries.instances_active(limit, DIALECT))

    async def find_exceeding_sla(
        self, now: Optional[datetime] = None, limit: Optional[int] = None
    ) -> list[WorkflowInstance]:
        return await self._select(
            *queries.instances_exceeding_sla(default_now(now), limit, DIALECT)
        )

    async def find_failed_with_retry_count(
        self, max_retry_count: int, limit: Optional[int] = None
    ) -> list[WorkflowInstance]:
        return await self._select(
            *queries.instances_failed_with_retry_count(max_retry_count, limit, DIALECT)
        )


class PostgresTaskRepository(_PostgresStore, TaskRepository):
    """Persist workflow tasks using PostgreSQL."""

    def _hydrate(self, row: asyncpg.Record) -> WorkflowTask:
        record = task_record_from_row(dict(row))
        return WorkflowTask.reconstitute(record["id"], record, strict=self._strict)

    async def _select(self, query: str, params: list[Any]) -> list[WorkflowTask]:
        return [self._hydrate(row) for row in await self._fetch(query, *params)]

    # ------------------------------------------------------------------
    async def save(self, task: WorkflowTask) -> None:
        version = await self._save_record(
            queries.TASKS_TABLE, TASK_COLUMNS, task.to_persistence(), task.version
        )
        task.mark_saved(version)

    async def find_by_id(self, task_id: TaskId) -> WorkflowTask | None:
        row = await self._fetchrow(
            queries.select_by_id(queries.TASKS_TABLE, TASK_COLUMNS, DIALECT),
            TaskId.from_value(task_id).value,
        )
        return self._hydrate(row) if row else None

    async def find_all(
        self,
        filters: Optional[TaskFilters] = None,
        pagination: Optional[Pagination] = None,
        now: Optional[datetime] = None,
    ) -> Page[WorkflowTask]:
        filters = filters or TaskFilters()
        pagination = pagination or Pagination()
        sql, params, count_sql, count_params = queries.task_page(
            filters, default_now(now), pagination.limit, pagination.offset, DIALECT
        )
        items = await self._select(sql, params)
        return Page(items=items, total=await self._count(count_sql, count_params))

    async def find_by_instance(
        self, instance_id: str, status: Optional[TaskStatus] = None
    ) -> list[WorkflowTask]:
        return await self._select(
            *queries.tasks_by_instance(instance_id, status.value if status else None, DIALECT)
        )

    async def delete(self, task_id: TaskId) -> None:
        await self._execute(
            f"DELETE FROM {queries.TASKS_TABLE} WHERE id = $1",
            TaskId.from_value(task_id).value,
        )

    async def exists(self, task_id: TaskId) -> bool:
        row = await self._fetchrow(
            f"SELECT 1 FROM {queries.TASKS_TABLE} WHERE id = $1",
            TaskId.from_value(task_id).value,
        )
        return row is not None

    async def count_by_status(self, status: Optional[TaskStatus] = None) -> int:
        sql, params = queries.task_count(status.value if status else None, DIALECT)
        return await self._count(sql, params)

    async def find_active(self, limit: Optional[int] = None) -> list[WorkflowTask]:
        return await self._select(*queries.tasks_active(limit, DIALECT))

    async def find_overdue(
        self,
        now: Optional[datetime] = None,
        assignee_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[WorkflowTask]:
        return await self._select(
            *queries.tasks_overdue(default_now(now), assignee_id, limit, DIALECT)
        )

    async def find_exceeding_sla(
        self, now: Optional[datetime] = None, limit: Optional[int] = None
    ) -> list[WorkflowTask]:
        return await self._select(*queries.tasks_exceeding_sla(default_now(now), limit, DIALECT))
