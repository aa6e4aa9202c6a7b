"""Persistence layer for workflow instances and tasks."""

from __future__ import annotations

import os
from typing import NamedTuple, Optional

from ..config import RuntimeConfig, load_config
from .inmemory import InMemoryInstanceRepository, InMemoryTaskRepository
from .models import InstanceFilters, Page, Pagination, TaskFilters
from .repository import InstanceRepository, TaskRepository
from .sqlite import SQLiteInstanceRepository, SQLiteTaskRepository

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresInstanceRepository, PostgresTaskRepository
except ImportError:  # pragma: no cover - optional dependency
    PostgresInstanceRepository = None  # type: ignore
    PostgresTaskRepository = None  # type: ignore


class Repositories(NamedTuple):
    instances: InstanceRepository
    tasks: TaskRepository


_repositories: Repositories | None = None


def get_repositories(
    database_url: Optional[str] = None, config: Optional[RuntimeConfig] = None
) -> Repositories:
    """Factory function to obtain the instance and task repositories.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``WORKFLOW_RUNTIME_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, in-memory repositories are returned.
    """

    global _repositories
    if _repositories is not None and database_url is None and config is None:
        return _repositories

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("WORKFLOW_RUNTIME_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )
    strict = config.persistence.strict_payloads

    if not database_url:
        _repositories = Repositories(
            InMemoryInstanceRepository(strict), InMemoryTaskRepository(strict)
        )
        return _repositories

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repositories = Repositories(
            SQLiteInstanceRepository(path, strict), SQLiteTaskRepository(path, strict)
        )
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresInstanceRepository is None:
            raise RuntimeError("Postgres support not available")
        _repositories = Repositories(
            PostgresInstanceRepository(database_url, strict),
            PostgresTaskRepository(database_url, strict),
        )
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repositories


def reset_repositories() -> None:
    """Drop the cached repositories so the next call rebuilds them."""
    global _repositories
    _repositories = None


__all__ = [
    "InstanceFilters",
    "InstanceRepository",
    "InMemoryInstanceRepository",
    "InMemoryTaskRepository",
    "Page",
    "Pagination",
    "PostgresInstanceRepository",
    "PostgresTaskRepository",
    "Repositories",
    "SQLiteInstanceRepository",
    "SQLiteTaskRepository",
    "TaskFilters",
    "TaskRepository",
    "get_repositories",
    "reset_repositories",
]
