"""Handlers that drive the WorkflowTask aggregate."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Callable, Optional

from ..config import HandlerConfig
from ..contracts import (
    CompleteTaskCommand,
    CreateTaskCommand,
    GetTaskQuery,
    ListTasksQuery,
    TaskActionCommand,
    TaskDTO,
    TaskPage,
    UpdateTaskCommand,
)
from ..dispatch import EventDispatcher
from ..domain.clock import utcnow
from ..domain.ids import InstanceId, TaskId
from ..domain.payloads import Attachment
from ..domain.task import WorkflowTask
from ..errors import NotFoundError
from ..persistence.repository import InstanceRepository, TaskRepository
from .base import BaseHandler

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


class _TaskHandler(BaseHandler):
    def __init__(
        self,
        tasks: TaskRepository,
        dispatcher: Optional[EventDispatcher] = None,
        config: Optional[HandlerConfig] = None,
    ) -> None:
        super().__init__(dispatcher, config)
        self._tasks = tasks

    async def _load(self, task_id: str) -> WorkflowTask:
        task = await self._tasks.find_by_id(TaskId.from_value(task_id))
        if task is None:
            raise NotFoundError("Workflow task", task_id)
        return task

    async def _mutate(
        self, task_id: str, change: Callable[[WorkflowTask], None]
    ) -> WorkflowTask:
        async def attempt() -> WorkflowTask:
            task = await self._load(task_id)
            change(task)
            await self._tasks.save(task)
            return task

        task = await self._with_conflict_retry(attempt)
        await self._dispatch(task)
        return task


class CreateTaskHandler(_TaskHandler):
    """Create a PENDING task, assigning it right away when an assignee is given.

    With an instance repository the owning instance must exist. The SLA
    deadline is ``created_at + sla_hours`` unless one is given explicitly.
    """

    command_type = CreateTaskCommand

    def __init__(
        self,
        tasks: TaskRepository,
        dispatcher: Optional[EventDispatcher] = None,
        config: Optional[HandlerConfig] = None,
        instances: Optional[InstanceRepository] = None,
    ) -> None:
        super().__init__(tasks, dispatcher, config)
        self._instances = instances

    async def _execute(self, command: CreateTaskCommand) -> TaskDTO:
        if self._instances is not None and not await self._instances.exists(
            InstanceId.from_value(command.instance_id)
        ):
            raise NotFoundError("Workflow instance", command.instance_id)

        now = utcnow()
        sla_deadline = command.sla_deadline
        if sla_deadline is None and command.sla_hours is not None:
            sla_deadline = now + timedelta(hours=command.sla_hours)

        task = WorkflowTask.create(
            instance_id=command.instance_id,
            step_id=command.step_id,
            name=command.name,
            description=command.description,
            task_type=command.task_type,
            priority=command.priority,
            assignment_type=command.assignment_type,
            form_data=command.form_data,
            attachments=[Attachment(url=url, timestamp=now) for url in command.attachments],
            due_date=command.due_date,
            sla_hours=command.sla_hours,
            sla_deadline=sla_deadline,
            created_at=now,
        )
        if command.assignee_id:
            task.assign_to(command.assignee_id, command.assigned_by or SYSTEM_ACTOR, now=now)

        await self._tasks.save(task)
        await self._dispatch(task)
        logger.info(f"Created task {task.id} '{task.name}' for instance {task.instance_id}")
        return TaskDTO.from_aggregate(task)


class CompleteTaskHandler(_TaskHandler):
    command_type = CompleteTaskCommand

    async def _execute(self, command: CompleteTaskCommand) -> TaskDTO:
        task = await self._mutate(
            command.task_id, lambda t: t.complete(command.user_id, command.result)
        )
        logger.info(f"Task {task.id} completed by {command.user_id}: {command.outcome}")
        return TaskDTO.from_aggregate(task)


class UpdateTaskHandler(_TaskHandler):
    """Change form data, add a comment or add an attachment; one per command."""

    command_type = UpdateTaskCommand

    async def _execute(self, command: UpdateTaskCommand) -> TaskDTO:
        def change(task: WorkflowTask) -> None:
            if command.form_data is not None:
                task.update_form_data(command.form_data)
            elif command.comment is not None:
                task.add_comment(command.comment)
            else:
                task.add_attachment(command.attachment_url)

        task = await self._mutate(command.task_id, change)
        return TaskDTO.from_aggregate(task)


class PerformTaskActionHandler(_TaskHandler):
    command_type = TaskActionCommand

    async def _execute(self, command: TaskActionCommand) -> TaskDTO:
        def change(task: WorkflowTask) -> None:
            if command.action == "assign":
                task.assign_to(command.assignee_id, command.user_id)
            elif command.action == "start":
                task.start(command.user_id)
            elif command.action == "reject":
                task.reject(command.user_id, command.reason)
            elif command.action == "cancel":
                task.cancel()

        task = await self._mutate(command.task_id, change)
        logger.info(
            f"Task {task.id}: {command.action} by {command.user_id} -> {task.status.value}"
        )
        return TaskDTO.from_aggregate(task)


class GetTaskHandler(_TaskHandler):
    command_type = GetTaskQuery

    async def _execute(self, command: GetTaskQuery) -> TaskDTO:
        return TaskDTO.from_aggregate(await self._load(command.task_id))


class ListTasksHandler(_TaskHandler):
    command_type = ListTasksQuery

    async def _execute(self, command: ListTasksQuery) -> TaskPage:
        page = await self._tasks.find_all(command.filters, command.pagination, command.now)
        return TaskPage.from_page(page, command.pagination)
