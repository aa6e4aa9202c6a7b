"""Handlers that drive the WorkflowInstance aggregate."""

from __future__ import annotations

import logging
from typing import Callable, Optional, Protocol

from ..config import HandlerConfig
from ..contracts import (
    CreateInstanceCommand,
    ExecuteWorkflowCommand,
    GetInstanceQuery,
    InstanceActionCommand,
    InstanceDTO,
    InstancePage,
    ListInstancesQuery,
    RetryInstanceCommand,
    UpdateInstanceCommand,
)
from ..dispatch import EventDispatcher
from ..domain.enums import TriggerType
from ..domain.ids import InstanceId
from ..domain.instance import WorkflowInstance
from ..errors import InvalidTransitionError, NotFoundError
from ..persistence.repository import InstanceRepository
from .base import BaseHandler

logger = logging.getLogger(__name__)


class StepAdvancer(Protocol):
    """Moves a freshly started instance along its workflow definition.

    No implementation ships with the runtime; ``ExecuteWorkflowHandler``
    calls one when it is given.
    """

    async def advance(self, instance: WorkflowInstance) -> None: ...


class _InstanceHandler(BaseHandler):
    def __init__(
        self,
        instances: InstanceRepository,
        dispatcher: Optional[EventDispatcher] = None,
        config: Optional[HandlerConfig] = None,
    ) -> None:
        super().__init__(dispatcher, config)
        self._instances = instances

    async def _load(self, instance_id: str) -> WorkflowInstance:
        instance = await self._instances.find_by_id(InstanceId.from_value(instance_id))
        if instance is None:
            raise NotFoundError("Workflow instance", instance_id)
        return instance

    async def _mutate(
        self, instance_id: str, change: Callable[[WorkflowInstance], None]
    ) -> WorkflowInstance:
        """Load, apply ``change``, save; retried from a fresh load on conflict."""

        async def attempt() -> WorkflowInstance:
            instance = await self._load(instance_id)
            change(instance)
            await self._instances.save(instance)
            return instance

        instance = await self._with_conflict_retry(attempt)
        await self._dispatch(instance)
        return instance


class CreateInstanceHandler(_InstanceHandler):
    command_type = CreateInstanceCommand

    async def _execute(self, command: CreateInstanceCommand) -> InstanceDTO:
        instance = WorkflowInstance.create(
            workflow_id=command.workflow_id,
            data=command.data,
            variables=command.variables,
            context=command.context,
            triggered_by=command.triggered_by,
            trigger_type=command.trigger_type,
            trigger_data=command.trigger_data,
            priority=command.priority,
            sla_deadline=command.sla_deadline,
        )
        await self._instances.save(instance)
        await self._dispatch(instance)
        logger.info(
            f"Started instance {instance.id} of workflow {instance.workflow_id} "
            f"({instance.trigger_type.value})"
        )
        return InstanceDTO.from_aggregate(instance)


class ExecuteWorkflowHandler(_InstanceHandler):
    """Open a RUNNING instance for a manual run of a workflow.

    The handler does not walk the workflow's step graph. When a
    :class:`StepAdvancer` is supplied it is invoked once on the new instance
    before the instance is saved.
    """

    command_type = ExecuteWorkflowCommand

    def __init__(
        self,
        instances: InstanceRepository,
        dispatcher: Optional[EventDispatcher] = None,
        config: Optional[HandlerConfig] = None,
        advancer: Optional[StepAdvancer] = None,
    ) -> None:
        super().__init__(instances, dispatcher, config)
        self._advancer = advancer

    async def _execute(self, command: ExecuteWorkflowCommand) -> InstanceDTO:
        instance = WorkflowInstance.create(
            workflow_id=command.workflow_id,
            data=command.input,
            variables=command.variables,
            context=command.context,
            triggered_by=command.triggered_by,
            trigger_type=TriggerType.MANUAL,
            trigger_data={"input": command.input},
            priority=command.priority,
            sla_deadline=command.sla_deadline,
        )
        if self._advancer is not None:
            await self._advancer.advance(instance)
        await self._instances.save(instance)
        await self._dispatch(instance)
        logger.info(f"Executing workflow {instance.workflow_id} as instance {instance.id}")
        return InstanceDTO.from_aggregate(instance)


class UpdateInstanceHandler(_InstanceHandler):
    command_type = UpdateInstanceCommand

    async def _execute(self, command: UpdateInstanceCommand) -> InstanceDTO:
        def change(instance: WorkflowInstance) -> None:
            if command.data is not None:
                instance.update_data(command.data)
            if command.variables is not None:
                instance.update_variables(command.variables)
            if command.context is not None:
                instance.update_context(command.context)
            if command.current_step_id is not None:
                instance.update_current_step(command.current_step_id)

        instance = await self._mutate(command.instance_id, change)
        return InstanceDTO.from_aggregate(instance)


class PerformInstanceActionHandler(_InstanceHandler):
    """Apply pause, resume, cancel, complete or fail to one instance."""

    command_type = InstanceActionCommand

    async def _execute(self, command: InstanceActionCommand) -> InstanceDTO:
        previous = {}

        def change(instance: WorkflowInstance) -> None:
            previous["status"] = instance.status
            if command.action == "pause":
                instance.pause()
            elif command.action == "resume":
                instance.resume()
            elif command.action == "cancel":
                instance.cancel()
            elif command.action == "complete":
                instance.complete()
            elif command.action == "fail":
                instance.fail(command.reason, command.error_step)

        instance = await self._mutate(command.instance_id, change)
        logger.info(
            f"Instance {instance.id}: {command.action} "
            f"{previous['status'].value} -> {instance.status.value}"
            + (f" (reason: {command.reason})" if command.reason else "")
            + (f" by {command.performed_by}" if command.performed_by else "")
        )
        return InstanceDTO.from_aggregate(instance)


class RetryInstanceHandler(_InstanceHandler):
    """Re-run a failed instance as a new RUNNING instance.

    The failed instance keeps its FAILED status and has its retry count
    bumped; the new instance carries the same payloads and that count.
    Retries stop once ``max_instance_retries`` is reached.

    The new instance is saved before the count is bumped, so a failed save
    of the new instance leaves the retry unspent.
    """

    command_type = RetryInstanceCommand

    async def _execute(self, command: RetryInstanceCommand) -> InstanceDTO:
        limit = self._config.max_instance_retries
        failed = await self._load(command.instance_id)
        if not failed.is_failed():
            raise InvalidTransitionError(
                f"Cannot retry workflow instance with status {failed.status.value}"
            )
        if failed.retry_count >= limit:
            raise InvalidTransitionError(
                f"Workflow instance {failed.id} has reached the retry limit of {limit}"
            )

        retried = WorkflowInstance.create(
            workflow_id=failed.workflow_id,
            data=failed.data,
            variables=failed.variables,
            context=failed.context,
            triggered_by=command.triggered_by or failed.triggered_by,
            trigger_type=failed.trigger_type,
            trigger_data=failed.trigger_data,
            priority=failed.priority,
            retry_count=failed.retry_count + 1,
        )
        await self._instances.save(retried)
        await self._mutate(command.instance_id, lambda instance: instance.increment_retry_count())
        await self._dispatch(retried)
        logger.info(
            f"Retrying instance {failed.id} as {retried.id} "
            f"(attempt {retried.retry_count}/{limit})"
        )
        return InstanceDTO.from_aggregate(retried)


class GetInstanceHandler(_InstanceHandler):
    command_type = GetInstanceQuery

    async def _execute(self, command: GetInstanceQuery) -> InstanceDTO:
        return InstanceDTO.from_aggregate(await self._load(command.instance_id))


class ListInstancesHandler(_InstanceHandler):
    command_type = ListInstancesQuery

    async def _execute(self, command: ListInstancesQuery) -> InstancePage:
        page = await self._instances.find_all(command.filters, command.pagination)
        return InstancePage.from_page(page, command.pagination)
