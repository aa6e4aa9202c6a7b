"""SQL shared by the SQLite and PostgreSQL repositories.

The two backends differ only in placeholder syntax and in how timestamps are
bound, so statements are assembled here against a small dialect object.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from ..domain.enums import (
    INSTANCE_ACTIVE_STATUSES,
    TASK_ACTIVE_STATUSES,
    TASK_TERMINAL_STATUSES,
    PRIORITY_RANK,
)
from .models import INSTANCE_COLUMNS, TASK_COLUMNS, InstanceFilters, TaskFilters

INSTANCES_TABLE = "workflow_instances"
TASKS_TABLE = "workflow_tasks"

_PRIORITY_ORDER = "CASE priority {} END".format(
    " ".join(f"WHEN '{p.value}' THEN {rank}" for p, rank in PRIORITY_RANK.items())
)


@dataclass(frozen=True)
class Dialect:
    placeholder: Callable[[int], str]
    encode_datetime: Callable[[datetime], Any]


class _Params:
    """Collect bound values and hand out dialect placeholders."""

    def __init__(self, dialect: Dialect) -> None:
        self._dialect = dialect
        self.values: list[Any] = []

    def add(self, value: Any) -> str:
        if isinstance(value, datetime):
            value = self._dialect.encode_datetime(value)
        self.values.append(value)
        return self._dialect.placeholder(len(self.values))

    def add_many(self, values: list[Any]) -> str:
        return ", ".join(self.add(v) for v in values)


def _where(clauses: list[str]) -> str:
    return f" WHERE {' AND '.join(clauses)}" if clauses else ""


def _order(sort_by: str, sort_order: str) -> str:
    column = _PRIORITY_ORDER if sort_by == "priority" else sort_by
    direction = "ASC" if sort_order == "asc" else "DESC"
    return f" ORDER BY {column} {direction} NULLS LAST, id ASC"


def _limit(params: _Params, limit: Optional[int], offset: Optional[int] = None) -> str:
    sql = ""
    if limit is not None:
        sql += f" LIMIT {params.add(limit)}"
    if offset:
        sql += f" OFFSET {params.add(offset)}"
    return sql


# ----------------------------------------------------------------------
# Writes
def insert_statement(table: str, columns: tuple[str, ...], dialect: Dialect) -> str:
    placeholders = ", ".join(dialect.placeholder(i + 1) for i in range(len(columns)))
    return f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"


def update_statement(table: str, columns: tuple[str, ...], dialect: Dialect) -> str:
    """UPDATE guarded by the expected version.

    Bind order: every non-id column (``version`` carrying the new value),
    then ``id``, then the expected version.
    """
    settable = [c for c in columns if c != "id"]
    assignments = ", ".join(f"{c} = {dialect.placeholder(i + 1)}" for i, c in enumerate(settable))
    n = len(settable)
    return (
        f"UPDATE {table} SET {assignments} "
        f"WHERE id = {dialect.placeholder(n + 1)} AND version = {dialect.placeholder(n + 2)}"
    )


def select_by_id(table: str, columns: tuple[str, ...], dialect: Dialect) -> str:
    return f"SELECT {', '.join(columns)} FROM {table} WHERE id = {dialect.placeholder(1)}"


# ----------------------------------------------------------------------
# Instance reads
def instance_page(
    filters: InstanceFilters, limit: int, offset: int, dialect: Dialect
) -> tuple[str, list[Any], str, list[Any]]:
    """Return (select sql, params, count sql, params) for a filtered page."""
    select = _instance_query(filters, dialect, "SELECT " + ", ".join(INSTANCE_COLUMNS))
    count = _instance_query(filters, dialect, "SELECT COUNT(*)")
    params = select[1]
    sql = select[0] + _order(filters.sort_by, filters.sort_order)
    tail = _Params(dialect)
    tail.values = params
    sql += _limit(tail, limit, offset)
    return sql, tail.values, count[0], count[1]


def _instance_query(
    filters: InstanceFilters, dialect: Dialect, head: str
) -> tuple[str, list[Any]]:
    params = _Params(dialect)
    clauses = []
    if filters.workflow_id:
        clauses.append(f"workflow_id = {params.add(filters.workflow_id)}")
    if filters.status:
        clauses.append(f"status = {params.add(filters.status.value)}")
    if filters.triggered_by:
        clauses.append(f"triggered_by = {params.add(filters.triggered_by)}")
    if filters.priority:
        clauses.append(f"priority = {params.add(filters.priority.value)}")
    if filters.started_from:
        clauses.append(f"started_at >= {params.add(filters.started_from)}")
    if filters.started_to:
        clauses.append(f"started_at <= {params.add(filters.started_to)}")
    return f"{head} FROM {INSTANCES_TABLE}{_where(clauses)}", params.values


def instance_count(status: Optional[str], dialect: Dialect) -> tuple[str, list[Any]]:
    params = _Params(dialect)
    clauses = [f"status = {params.add(status)}"] if status else []
    return f"SELECT COUNT(*) FROM {INSTANCES_TABLE}{_where(clauses)}", params.values


def instances_active(limit: Optional[int], dialect: Dialect) -> tuple[str, list[Any]]:
    params = _Params(dialect)
    statuses = params.add_many([s.value for s in INSTANCE_ACTIVE_STATUSES])
    sql = (
        f"SELECT {', '.join(INSTANCE_COLUMNS)} FROM {INSTANCES_TABLE} "
        f"WHERE status IN ({statuses})" + _order("started_at", "desc")
    )
    return sql + _limit(params, limit), params.values


def instances_exceeding_sla(
    now: datetime, limit: Optional[int], dialect: Dialect
) -> tuple[str, list[Any]]:
    params = _Params(dialect)
    statuses = params.add_many([s.value for s in INSTANCE_ACTIVE_STATUSES])
    sql = (
        f"SELECT {', '.join(INSTANCE_COLUMNS)} FROM {INSTANCES_TABLE} "
        f"WHERE status IN ({statuses}) AND sla_deadline IS NOT NULL "
        f"AND sla_deadline < {params.add(now)}" + _order("sla_deadline", "asc")
    )
    return sql + _limit(params, limit), params.values


def instances_failed_with_retry_count(
    max_retry_count: int, limit: Optional[int], dialect: Dialect
) -> tuple[str, list[Any]]:
    params = _Params(dialect)
    sql = (
        f"SELECT {', '.join(INSTANCE_COLUMNS)} FROM {INSTANCES_TABLE} "
        f"WHERE status = {params.add('failed')} AND retry_count < {params.add(max_retry_count)}"
        + _order("retry_count", "asc")
    )
    return sql + _limit(params, limit), params.values


# ----------------------------------------------------------------------
# Task reads
def task_page(
    filters: TaskFilters, now: datetime, limit: int, offset: int, dialect: Dialect
) -> tuple[str, list[Any], str, list[Any]]:
    select_sql, select_params = _task_query(
        filters, now, dialect, "SELECT " + ", ".join(TASK_COLUMNS)
    )
    count_sql, count_params = _task_query(filters, now, dialect, "SELECT COUNT(*)")
    tail = _Params(dialect)
    tail.values = select_params
    sql = select_sql + _order(filters.sort_by, filters.sort_order) + _limit(tail, limit, offset)
    return sql, tail.values, count_sql, count_params


def _task_query(
    filters: TaskFilters, now: datetime, dialect: Dialect, head: str
) -> tuple[str, list[Any]]:
    params = _Params(dialect)
    clauses = []
    if filters.instance_id:
        clauses.append(f"instance_id = {params.add(filters.instance_id)}")
    if filters.assignee_id:
        clauses.append(f"assignee_id = {params.add(filters.assignee_id)}")
    if filters.status:
        clauses.append(f"status = {params.add(filters.status.value)}")
    if filters.task_type:
        clauses.append(f"task_type = {params.add(filters.task_type.value)}")
    if filters.priority:
        clauses.append(f"priority = {params.add(filters.priority.value)}")
    if filters.is_overdue:
        # positional placeholders: clause text must follow bind order
        clauses.append(
            f"status NOT IN ({params.add_many([s.value for s in TASK_TERMINAL_STATUSES])})"
        )
        clauses.append(f"due_date IS NOT NULL AND due_date < {params.add(now)}")
    if filters.created_from:
        clauses.append(f"created_at >= {params.add(filters.created_from)}")
    if filters.created_to:
        clauses.append(f"created_at <= {params.add(filters.created_to)}")
    return f"{head} FROM {TASKS_TABLE}{_where(clauses)}", params.values


def tasks_by_instance(
    instance_id: str, status: Optional[str], dialect: Dialect
) -> tuple[str, list[Any]]:
    params = _Params(dialect)
    clauses = [f"instance_id = {params.add(instance_id)}"]
    if status:
        clauses.append(f"status = {params.add(status)}")
    sql = (
        f"SELECT {', '.join(TASK_COLUMNS)} FROM {TASKS_TABLE}{_where(clauses)}"
        + _order("created_at", "asc")
    )
    return sql, params.values


def task_count(status: Optional[str], dialect: Dialect) -> tuple[str, list[Any]]:
    params = _Params(dialect)
    clauses = [f"status = {params.add(status)}"] if status else []
    return f"SELECT COUNT(*) FROM {TASKS_TABLE}{_where(clauses)}", params.values


def tasks_active(limit: Optional[int], dialect: Dialect) -> tuple[str, list[Any]]:
    params = _Params(dialect)
    statuses = params.add_many([s.value for s in TASK_ACTIVE_STATUSES])
    sql = (
        f"SELECT {', '.join(TASK_COLUMNS)} FROM {TASKS_TABLE} "
        f"WHERE status IN ({statuses})" + _order("created_at", "desc")
    )
    return sql + _limit(params, limit), params.values


def tasks_overdue(
    now: datetime, assignee_id: Optional[str], limit: Optional[int], dialect: Dialect
) -> tuple[str, list[Any]]:
    params = _Params(dialect)
    terminal = params.add_many([s.value for s in TASK_TERMINAL_STATUSES])
    clauses = [
        f"status NOT IN ({terminal})",
        "due_date IS NOT NULL",
        f"due_date < {params.add(now)}",
    ]
    if assignee_id:
        clauses.append(f"assignee_id = {params.add(assignee_id)}")
    sql = (
        f"SELECT {', '.join(TASK_COLUMNS)} FROM {TASKS_TABLE}{_where(clauses)}"
        + _order("due_date", "asc")
    )
    return sql + _limit(params, limit), params.values


def tasks_exceeding_sla(
    now: datetime, limit: Optional[int], dialect: Dialect
) -> tuple[str, list[Any]]:
    params = _Params(dialect)
    statuses = params.add_many([s.value for s in TASK_ACTIVE_STATUSES])
    sql = (
        f"SELECT {', '.join(TASK_COLUMNS)} FROM {TASKS_TABLE} "
        f"WHERE status IN ({statuses}) AND sla_deadline IS NOT NULL "
        f"AND sla_deadline < {params.add(now)}" + _order("sla_deadline", "asc")
    )
    return sql + _limit(params, limit), params.values
