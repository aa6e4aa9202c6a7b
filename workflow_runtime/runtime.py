"""Wiring of repositories, dispatcher and handlers into one object."""

from __future__ import annotations

from typing import Optional

from .config import RuntimeConfig, load_config
from .dispatch import EventDispatcher
from .errors import EventDispatchError
from .handlers import (
    CompleteTaskHandler,
    CreateInstanceHandler,
    CreateTaskHandler,
    ExecuteWorkflowHandler,
    GetInstanceHandler,
    GetTaskHandler,
    HandlerResult,
    ListInstancesHandler,
    ListTasksHandler,
    PerformInstanceActionHandler,
    PerformTaskActionHandler,
    RetryInstanceHandler,
    StepAdvancer,
    UpdateInstanceHandler,
    UpdateTaskHandler,
)
from .persistence import InstanceRepository, TaskRepository, get_repositories
from .sweeper import SlaSweeper
from .transports import BaseTransport, get_transport


class WorkflowRuntime:
    """All handlers of the runtime, sharing one set of repositories and one dispatcher."""

    def __init__(
        self,
        instances: InstanceRepository,
        tasks: TaskRepository,
        transport: BaseTransport,
        config: Optional[RuntimeConfig] = None,
        advancer: Optional[StepAdvancer] = None,
    ) -> None:
        self.config = config or RuntimeConfig()
        self.instances = instances
        self.tasks = tasks
        self.transport = transport
        self.dispatcher = EventDispatcher(
            transport, self.config.dispatch, self.config.handlers
        )

        handler_config = self.config.handlers
        args = (self.dispatcher, handler_config)
        self.create_instance = CreateInstanceHandler(instances, *args)
        self.execute_workflow = ExecuteWorkflowHandler(instances, *args, advancer=advancer)
        self.update_instance = UpdateInstanceHandler(instances, *args)
        self.perform_instance_action = PerformInstanceActionHandler(instances, *args)
        self.retry_instance = RetryInstanceHandler(instances, *args)
        self.get_instance = GetInstanceHandler(instances, config=handler_config)
        self.list_instances = ListInstancesHandler(instances, config=handler_config)

        self.create_task = CreateTaskHandler(tasks, *args, instances=instances)
        self.complete_task = CompleteTaskHandler(tasks, *args)
        self.update_task = UpdateTaskHandler(tasks, *args)
        self.perform_task_action = PerformTaskActionHandler(tasks, *args)
        self.get_task = GetTaskHandler(tasks, config=handler_config)
        self.list_tasks = ListTasksHandler(tasks, config=handler_config)

        self.sweeper = SlaSweeper(
            instances, tasks, self.perform_instance_action, self.config.sweeper
        )

    @classmethod
    def from_config(
        cls,
        config: Optional[RuntimeConfig] = None,
        database_url: Optional[str] = None,
        transport_backend: Optional[str] = None,
        advancer: Optional[StepAdvancer] = None,
    ) -> "WorkflowRuntime":
        """Build a runtime from configuration and the backend factories."""
        repositories = get_repositories(database_url, config)
        config = config or load_config()
        transport = get_transport(transport_backend, config)
        return cls(
            repositories.instances, repositories.tasks, transport, config, advancer
        )

    async def redeliver(self, result: HandlerResult) -> HandlerResult:
        """Publish the events a handler saved but failed to dispatch.

        Returns a success carrying the published envelopes, or a DISPATCH
        failure whose ``undelivered_events`` are what is still pending.
        """
        try:
            envelopes = await self.dispatcher.redeliver(result.undelivered_events)
        except EventDispatchError as e:
            return HandlerResult.failure(e)
        return HandlerResult.success(envelopes)
