"""SQLite implementation of the workflow repositories."""

from __future__ import annotations

import asyncio
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

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


def _encode_datetime(value: datetime) -> str:
    # fixed-width UTC text so that string comparison orders chronologically
    return ensure_utc(value).isoformat(timespec="microseconds")


DIALECT = queries.Dialect(placeholder=lambda _: "?", encode_datetime=_encode_datetime)


class _SQLiteStore:
    """Connection handling shared by the instance and task repositories."""

    def __init__(self, db_path: str | Path, strict_payloads: bool = True):
        self.db_path = str(db_path)
        self._strict = strict_payloads
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {queries.INSTANCES_TABLE} (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                status TEXT NOT NULL,
                current_step_id TEXT,
                data TEXT,
                variables TEXT,
                context TEXT,
                triggered_by TEXT,
                trigger_type TEXT NOT NULL,
                trigger_data TEXT,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                paused_at TEXT,
                duration INTEGER,
                error_message TEXT,
                error_step TEXT,
                retry_count INTEGER NOT NULL DEFAULT 0,
                priority TEXT NOT NULL,
                sla_deadline TEXT,
                version INTEGER NOT NULL
            )
            """
        )
        cur.execute(
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
                form_data TEXT,
                attachments TEXT,
                comments TEXT,
                created_at TEXT NOT NULL,
                assigned_at TEXT,
                started_at TEXT,
                completed_at TEXT,
                due_date TEXT,
                sla_hours INTEGER,
                sla_deadline TEXT,
                result TEXT,
                completed_by TEXT,
                rejected_by TEXT,
                rejection_reason TEXT,
                version INTEGER NOT NULL
            )
            """
        )
        cur.execute(
            f"CREATE INDEX IF NOT EXISTS idx_tasks_instance ON {queries.TASKS_TABLE} (instance_id)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        cur = self._conn.cursor()
        cur.execute(query, params)
        self._conn.commit()
        return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    async def _count(self, query: str, params: list[Any]) -> int:
        row = await asyncio.to_thread(self._fetchone, query, *params)
        return row[0] if row else 0

    async def _save_record(
        self, table: str, columns: tuple[str, ...], record: dict[str, Any], expected: int
    ) -> int:
        """Write ``record`` if the stored version is ``expected``; return the new version."""
        new_version = expected + 1
        record = {**record, "version": new_version}
        values = encode_record(record, columns, _encode_datetime)
        if expected == 0:
            try:
                await asyncio.to_thread(
                    self._execute, queries.insert_statement(table, columns, DIALECT), *values
                )
            except sqlite3.IntegrityError as exc:
                raise ConcurrencyConflictError(record["id"], expected) from exc
            return new_version

        # SET values are every column but id, then the WHERE id/version pair
        set_values = [v for c, v in zip(columns, values) if c != "id"]
        updated = await asyncio.to_thread(
            self._execute,
            queries.update_statement(table, columns, DIALECT),
            *set_values,
            record["id"],
            expected,
        )
        if updated == 0:
            raise ConcurrencyConflictError(record["id"], expected)
        return new_version

    def close(self) -> None:
        self._conn.close()


class SQLiteInstanceRepository(_SQLiteStore, InstanceRepository):
    """Persist workflow instances using SQLite."""

    def _hydrate(self, row: sqlite3.Row) -> WorkflowInstance:
        record = instance_record_from_row(dict(row))
        return WorkflowInstance.reconstitute(record["id"], record, strict=self._strict)

    async def _select(self, query: str, params: list[Any]) -> list[WorkflowInstance]:
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [self._hydrate(row) for row in rows]

    # ------------------------------------------------------------------
    # Repository API
    async def save(self, instance: WorkflowInstance) -> None:
        version = await self._save_record(
            queries.INSTANCES_TABLE,
            INSTANCE_COLUMNS,
            instance.to_persistence(),
            instance.version,
        )
        instance.mark_saved(version)

    async def find_by_id(self, instance_id: InstanceId) -> WorkflowInstance | None:
        row = await asyncio.to_thread(
            self._fetchone,
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
        await asyncio.to_thread(
            self._execute,
            f"DELETE FROM {queries.INSTANCES_TABLE} WHERE id = ?",
            InstanceId.from_value(instance_id).value,
        )

    async def exists(self, instance_id: InstanceId) -> bool:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT 1 FROM {queries.INSTANCES_TABLE} WHERE id = ?",
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


class SQLiteTaskRepository(_SQLiteStore, TaskRepository):
    """Persist workflow tasks using SQLite."""

    def _hydrate(self, row: sqlite3.Row) -> WorkflowTask:
        record = task_record_from_row(dict(row))
        return WorkflowTask.reconstitute(record["id"], record, strict=self._strict)

    async def _select(self, query: str, params: list[Any]) -> list[WorkflowTask]:
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [self._hydrate(row) for row in rows]

    # ------------------------------------------------------------------
    # Repository API
    async def save(self, task: WorkflowTask) -> None:
        version = await self._save_record(
            queries.TASKS_TABLE, TASK_COLUMNS, task.to_persistence(), task.version
        )
        task.mark_saved(version)

    async def find_by_id(self, task_id: TaskId) -> WorkflowTask | None:
        row = await asyncio.to_thread(
            self._fetchone,
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
        await asyncio.to_thread(
            self._execute,
            f"DELETE FROM {queries.TASKS_TABLE} WHERE id = ?",
            TaskId.from_value(task_id).value,
        )

    async def exists(self, task_id: TaskId) -> bool:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT 1 FROM {queries.TASKS_TABLE} WHERE id = ?",
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
