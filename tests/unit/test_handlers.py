"""Orchestration handler tests over the in-memory backends."""

from datetime import datetime, timedelta, timezone

import pytest

from workflow_runtime.config import DispatchConfig, HandlerConfig
from workflow_runtime.contracts import CreateInstanceCommand, InstanceDTO, TaskDTO
from workflow_runtime.dispatch import EventDispatcher
from workflow_runtime.domain import InstanceStatus, TaskStatus, TriggerType
from workflow_runtime.errors import ErrorKind, NotFoundError
from workflow_runtime.handlers import (
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
    UpdateInstanceHandler,
    UpdateTaskHandler,
)
from workflow_runtime.persistence import InMemoryInstanceRepository, InMemoryTaskRepository
from workflow_runtime.transports.inmemory import InMemoryTransport

CONFIG = HandlerConfig(retry_base_delay=0, retry_jitter=0, max_instance_retries=2)


class RacingInstanceRepository(InMemoryInstanceRepository):
    """Lets another writer slip in before each of the next ``races`` updates."""

    def __init__(self, races: int) -> None:
        super().__init__()
        self.races = races

    async def save(self, instance):
        if self.races and instance.version > 0:
            self.races -= 1
            other = await self.find_by_id(instance.id)
            other.update_variables({"touched_by": "other-writer"})
            await super().save(other)
        await super().save(instance)


class BrokenInstanceRepository(InMemoryInstanceRepository):
    async def find_by_id(self, instance_id):
        raise RuntimeError("disk on fire")


class DownTransport(InMemoryTransport):
    async def publish(self, topic, message):
        raise ConnectionError("broker unavailable")


class SwitchableTransport(InMemoryTransport):
    def __init__(self) -> None:
        super().__init__()
        self.down = False

    async def publish(self, topic, message):
        if self.down:
            raise ConnectionError("broker unavailable")
        await super().publish(topic, message)


class FailingInsertRepository(InMemoryInstanceRepository):
    """Refuses to insert new instances once ``fail_inserts`` is set."""

    fail_inserts = False

    async def save(self, instance):
        if self.fail_inserts and instance.version == 0:
            raise RuntimeError("insert failed")
        await super().save(instance)


def _dispatcher(transport=None) -> EventDispatcher:
    return EventDispatcher(transport or InMemoryTransport(), DispatchConfig(), CONFIG)


async def _create_instance(instances, dispatcher, **overrides) -> InstanceDTO:
    command = {"workflow_id": "wf-1", **overrides}
    result = await CreateInstanceHandler(instances, dispatcher, CONFIG).handle(command)
    return result.unwrap()


# ----------------------------------------------------------------------
# Result plumbing
def test_handler_result_unwrap():
    assert HandlerResult.success(5).unwrap() == 5
    failed = HandlerResult.failure(NotFoundError("Workflow task", "t-1"))
    assert not failed.ok
    assert failed.error_info.kind is ErrorKind.NOT_FOUND
    with pytest.raises(NotFoundError):
        failed.unwrap()


@pytest.mark.asyncio
async def test_invalid_command_becomes_validation_failure():
    handler = CreateInstanceHandler(InMemoryInstanceRepository(), _dispatcher(), CONFIG)

    result = await handler.handle({"workflow_id": "", "priority": "critical"})

    assert not result.ok
    assert result.error_info.kind is ErrorKind.VALIDATION
    assert "workflow_id" in result.error.fields
    assert "priority" in result.error.fields


@pytest.mark.asyncio
async def test_non_mapping_command_is_rejected():
    handler = GetInstanceHandler(InMemoryInstanceRepository())

    result = await handler.handle("inst-1")

    assert result.error_info.kind is ErrorKind.VALIDATION


@pytest.mark.asyncio
async def test_unexpected_errors_propagate():
    handler = GetInstanceHandler(BrokenInstanceRepository())

    with pytest.raises(RuntimeError, match="disk on fire"):
        await handler.handle({"instance_id": "inst-1"})


@pytest.mark.asyncio
async def test_blank_ids_are_validation_failures():
    instance_result = await GetInstanceHandler(InMemoryInstanceRepository()).handle(
        {"instance_id": " "}
    )
    task_result = await UpdateTaskHandler(InMemoryTaskRepository(), _dispatcher(), CONFIG).handle(
        {"task_id": "\t", "comment": "x"}
    )

    assert instance_result.error_info.kind is ErrorKind.VALIDATION
    assert "instance_id" in instance_result.error.fields
    assert task_result.error_info.kind is ErrorKind.VALIDATION
    assert "task_id" in task_result.error.fields


@pytest.mark.asyncio
async def test_non_json_payload_is_rejected():
    instances = InMemoryInstanceRepository()
    handler = CreateInstanceHandler(instances, _dispatcher(), CONFIG)

    result = await handler.handle(
        {"workflow_id": "wf-1", "data": {"when": datetime(2024, 3, 1, tzinfo=timezone.utc)}}
    )

    assert result.error_info.kind is ErrorKind.VALIDATION
    assert any(field.startswith("data") for field in result.error.fields)
    assert await instances.count_by_status() == 0


# ----------------------------------------------------------------------
# Instances
@pytest.mark.asyncio
async def test_create_instance_saves_and_publishes():
    instances = InMemoryInstanceRepository()
    transport = InMemoryTransport()
    handler = CreateInstanceHandler(instances, _dispatcher(transport), CONFIG)

    result = await handler.handle(
        CreateInstanceCommand(workflow_id="wf-1", data={"a": 1}, trigger_type="webhook")
    )

    dto = result.unwrap()
    assert dto.status is InstanceStatus.RUNNING
    assert dto.trigger_type is TriggerType.WEBHOOK
    assert dto.version == 1
    assert await instances.exists(dto.id)
    published = transport.pending("WorkflowInstanceStarted")
    assert [e.event.aggregate_id for e in published] == [dto.id]


@pytest.mark.asyncio
async def test_execute_workflow_runs_advancer_before_saving():
    instances = InMemoryInstanceRepository()
    seen = []

    class FirstStep:
        async def advance(self, instance):
            seen.append(instance.version)
            instance.update_current_step("extract")

    handler = ExecuteWorkflowHandler(instances, _dispatcher(), CONFIG, advancer=FirstStep())

    dto = (
        await handler.handle({"workflow_id": "wf-etl", "input": {"day": "2024-03-01"}, "triggered_by": "u1"})
    ).unwrap()

    assert seen == [0]
    assert dto.current_step_id == "extract"
    assert dto.trigger_type is TriggerType.MANUAL
    assert dto.trigger_data == {"input": {"day": "2024-03-01"}}
    assert dto.data == {"day": "2024-03-01"}
    stored = await instances.find_by_id(dto.id)
    assert stored.current_step_id == "extract"


@pytest.mark.asyncio
async def test_update_instance_replaces_payloads_and_step():
    instances = InMemoryInstanceRepository()
    dispatcher = _dispatcher()
    created = await _create_instance(instances, dispatcher, data={"old": True})

    result = await UpdateInstanceHandler(instances, dispatcher, CONFIG).handle(
        {"instance_id": created.id, "data": {"new": True}, "current_step_id": "load"}
    )

    dto = result.unwrap()
    assert dto.data == {"new": True}
    assert dto.current_step_id == "load"
    assert dto.version == 2


@pytest.mark.asyncio
async def test_instance_actions_follow_state_machine():
    instances = InMemoryInstanceRepository()
    transport = InMemoryTransport()
    dispatcher = _dispatcher(transport)
    created = await _create_instance(instances, dispatcher)
    actions = PerformInstanceActionHandler(instances, dispatcher, CONFIG)

    paused = (await actions.handle({"instance_id": created.id, "action": "pause"})).unwrap()
    assert paused.status is InstanceStatus.PAUSED

    again = await actions.handle({"instance_id": created.id, "action": "pause"})
    assert again.error_info.kind is ErrorKind.INVALID_TRANSITION
    assert "Cannot pause workflow instance with status paused" in again.error_info.message

    resumed = (await actions.handle({"instance_id": created.id, "action": "resume"})).unwrap()
    assert resumed.status is InstanceStatus.RUNNING

    failed = (
        await actions.handle(
            {"instance_id": created.id, "action": "fail", "reason": "timeout", "error_step": "load"}
        )
    ).unwrap()
    assert failed.status is InstanceStatus.FAILED
    assert failed.error_message == "timeout"
    assert failed.error_step == "load"
    assert len(transport.pending("WorkflowInstanceFailed")) == 1


@pytest.mark.asyncio
async def test_fail_action_requires_reason():
    handler = PerformInstanceActionHandler(InMemoryInstanceRepository(), _dispatcher(), CONFIG)

    result = await handler.handle({"instance_id": "inst-1", "action": "fail"})

    assert result.error_info.kind is ErrorKind.VALIDATION


@pytest.mark.asyncio
async def test_action_on_missing_instance_is_not_found():
    handler = PerformInstanceActionHandler(InMemoryInstanceRepository(), _dispatcher(), CONFIG)

    result = await handler.handle({"instance_id": "nope", "action": "cancel"})

    assert result.error_info.kind is ErrorKind.NOT_FOUND
    assert result.error_info.message == "Workflow instance nope not found"


@pytest.mark.asyncio
async def test_conflicting_update_is_retried_from_fresh_state():
    instances = RacingInstanceRepository(races=1)
    dispatcher = _dispatcher()
    created = await _create_instance(instances, dispatcher)

    result = await PerformInstanceActionHandler(instances, dispatcher, CONFIG).handle(
        {"instance_id": created.id, "action": "complete"}
    )

    dto = result.unwrap()
    assert dto.status is InstanceStatus.COMPLETED
    assert dto.variables == {"touched_by": "other-writer"}
    assert dto.version == 3


@pytest.mark.asyncio
async def test_persistent_conflict_surfaces_as_conflict():
    instances = RacingInstanceRepository(races=10)
    dispatcher = _dispatcher()
    created = await _create_instance(instances, dispatcher)

    result = await PerformInstanceActionHandler(instances, dispatcher, CONFIG).handle(
        {"instance_id": created.id, "action": "pause"}
    )

    assert result.error_info.kind is ErrorKind.CONFLICT
    assert instances.races == 10 - CONFIG.max_conflict_retries


@pytest.mark.asyncio
async def test_dispatch_failure_reported_after_save():
    instances = InMemoryInstanceRepository()
    dispatcher = EventDispatcher(DownTransport(), DispatchConfig(max_publish_attempts=1), CONFIG)

    result = await CreateInstanceHandler(instances, dispatcher, CONFIG).handle({"workflow_id": "wf-1"})

    assert result.error_info.kind is ErrorKind.DISPATCH
    assert await instances.count_by_status(InstanceStatus.RUNNING) == 1


@pytest.mark.asyncio
async def test_events_of_failed_dispatch_are_redelivered_once():
    instances = InMemoryInstanceRepository()
    transport = SwitchableTransport()
    dispatcher = EventDispatcher(transport, DispatchConfig(max_publish_attempts=1), CONFIG)
    created = await _create_instance(instances, dispatcher)
    actions = PerformInstanceActionHandler(instances, dispatcher, CONFIG)

    transport.down = True
    failed = await actions.handle({"instance_id": created.id, "action": "complete"})
    assert failed.error_info.kind is ErrorKind.DISPATCH
    assert [e.name for e in failed.undelivered_events] == ["WorkflowInstanceCompleted"]

    transport.down = False
    again = (await actions.handle({"instance_id": created.id, "action": "complete"})).unwrap()
    assert again.status is InstanceStatus.COMPLETED
    assert transport.pending("WorkflowInstanceCompleted") == []

    await dispatcher.redeliver(failed.undelivered_events)

    published = transport.pending("WorkflowInstanceCompleted")
    assert len(published) == 1
    assert published[0].event.aggregate_id == created.id


@pytest.mark.asyncio
async def test_retry_keeps_count_when_new_instance_cannot_be_saved():
    instances = FailingInsertRepository()
    dispatcher = _dispatcher()
    created = await _create_instance(instances, dispatcher)
    await PerformInstanceActionHandler(instances, dispatcher, CONFIG).handle(
        {"instance_id": created.id, "action": "fail", "reason": "boom"}
    )
    instances.fail_inserts = True

    with pytest.raises(RuntimeError, match="insert failed"):
        await RetryInstanceHandler(instances, dispatcher, CONFIG).handle(
            {"instance_id": created.id}
        )

    original = await instances.find_by_id(created.id)
    assert original.retry_count == 0
    assert await instances.count_by_status(InstanceStatus.RUNNING) == 0


@pytest.mark.asyncio
async def test_retry_creates_new_instance_and_counts_attempts():
    instances = InMemoryInstanceRepository()
    dispatcher = _dispatcher()
    created = await _create_instance(
        instances, dispatcher, data={"batch": 7}, variables={"v": 1}, priority="high"
    )
    actions = PerformInstanceActionHandler(instances, dispatcher, CONFIG)
    retry = RetryInstanceHandler(instances, dispatcher, CONFIG)

    not_failed = await retry.handle({"instance_id": created.id})
    assert not_failed.error_info.kind is ErrorKind.INVALID_TRANSITION

    await actions.handle({"instance_id": created.id, "action": "fail", "reason": "boom"})
    first = (await retry.handle({"instance_id": created.id, "triggered_by": "ops"})).unwrap()

    assert first.id != created.id
    assert first.status is InstanceStatus.RUNNING
    assert first.retry_count == 1
    assert first.data == {"batch": 7}
    assert first.variables == {"v": 1}
    assert first.priority.value == "high"
    assert first.triggered_by == "ops"
    original = await instances.find_by_id(created.id)
    assert original.status is InstanceStatus.FAILED
    assert original.retry_count == 1

    await retry.handle({"instance_id": created.id})
    exhausted = await retry.handle({"instance_id": created.id})
    assert exhausted.error_info.kind is ErrorKind.INVALID_TRANSITION
    assert "retry limit of 2" in exhausted.error_info.message


@pytest.mark.asyncio
async def test_get_and_list_instances():
    instances = InMemoryInstanceRepository()
    dispatcher = _dispatcher()
    for n in range(3):
        await _create_instance(instances, dispatcher, triggered_by=f"user-{n % 2}")

    page = (
        await ListInstancesHandler(instances).handle(
            {"filters": {"triggered_by": "user-0"}, "pagination": {"page": 1, "limit": 1}}
        )
    ).unwrap()
    assert page.total == 2
    assert page.total_pages == 2
    assert len(page.items) == 1

    bad_limit = await ListInstancesHandler(instances).handle({"pagination": {"limit": 500}})
    assert bad_limit.error_info.kind is ErrorKind.VALIDATION

    fetched = (await GetInstanceHandler(instances).handle({"instance_id": page.items[0].id})).unwrap()
    assert fetched.id == page.items[0].id


# ----------------------------------------------------------------------
# Tasks
def _task_handlers(instances=None, transport=None):
    tasks = InMemoryTaskRepository()
    dispatcher = _dispatcher(transport)
    return (
        tasks,
        CreateTaskHandler(tasks, dispatcher, CONFIG, instances=instances),
        PerformTaskActionHandler(tasks, dispatcher, CONFIG),
        CompleteTaskHandler(tasks, dispatcher, CONFIG),
        UpdateTaskHandler(tasks, dispatcher, CONFIG),
    )


def _task_command(**overrides):
    return {"instance_id": "inst-1", "step_id": "approve", "name": "Approve", **overrides}


@pytest.mark.asyncio
async def test_create_task_assigns_and_derives_sla():
    transport = InMemoryTransport()
    _, create, *_ = _task_handlers(transport=transport)
    before = datetime.now(timezone.utc)

    dto: TaskDTO = (
        await create.handle(
            _task_command(assignee_id="u1", sla_hours=4, attachments=["https://x.example/a.pdf"])
        )
    ).unwrap()

    assert dto.status is TaskStatus.PENDING
    assert dto.assignee_id == "u1"
    assert dto.assigned_by == "system"
    assert dto.sla_deadline == dto.created_at + timedelta(hours=4)
    assert dto.created_at >= before
    assert [a.url for a in dto.attachments] == ["https://x.example/a.pdf"]
    assert len(transport.pending("WorkflowTaskCreated")) == 1
    assert len(transport.pending("WorkflowTaskAssigned")) == 1


@pytest.mark.asyncio
async def test_create_task_requires_existing_instance():
    instances = InMemoryInstanceRepository()
    _, create, *_ = _task_handlers(instances=instances)

    missing = await create.handle(_task_command(instance_id="ghost"))
    assert missing.error_info.kind is ErrorKind.NOT_FOUND

    created = await _create_instance(instances, _dispatcher())
    assert (await create.handle(_task_command(instance_id=created.id))).ok


@pytest.mark.asyncio
async def test_create_task_validates_fields():
    _, create, *_ = _task_handlers()

    result = await create.handle(_task_command(name="x" * 256, sla_hours=-1))

    assert result.error_info.kind is ErrorKind.VALIDATION
    assert set(result.error.fields) >= {"name", "sla_hours"}


@pytest.mark.asyncio
async def test_task_lifecycle_through_handlers():
    tasks, create, action, complete, _ = _task_handlers()
    task = (await create.handle(_task_command())).unwrap()

    assigned = (
        await action.handle({"task_id": task.id, "action": "assign", "user_id": "lead", "assignee_id": "u1"})
    ).unwrap()
    assert assigned.assignee_id == "u1"
    assert assigned.assigned_by == "lead"

    too_early = await complete.handle({"task_id": task.id, "user_id": "u1", "outcome": "approved"})
    assert too_early.error_info.kind is ErrorKind.INVALID_TRANSITION
    assert too_early.error_info.message == "Cannot complete task with status pending"

    intruder = await action.handle({"task_id": task.id, "action": "start", "user_id": "u2"})
    assert intruder.error_info.kind is ErrorKind.PERMISSION_DENIED

    started = (await action.handle({"task_id": task.id, "action": "start", "user_id": "u1"})).unwrap()
    assert started.status is TaskStatus.IN_PROGRESS

    done = (
        await complete.handle(
            {
                "task_id": task.id,
                "user_id": "u1",
                "outcome": "approved",
                "completion_note": "all good",
                "form_data": {"amount": 3},
            }
        )
    ).unwrap()
    assert done.status is TaskStatus.COMPLETED
    assert done.completed_by == "u1"
    assert done.result == {"outcome": "approved", "completion_note": "all good", "form_data": {"amount": 3}}
    assert (await tasks.find_by_id(task.id)).version == 4


@pytest.mark.asyncio
async def test_task_action_arguments_are_validated():
    _, create, action, *_ = _task_handlers()
    task = (await create.handle(_task_command(assignee_id="u1"))).unwrap()

    no_assignee = await action.handle({"task_id": task.id, "action": "assign", "user_id": "lead"})
    assert no_assignee.error_info.kind is ErrorKind.VALIDATION

    no_reason = await action.handle({"task_id": task.id, "action": "reject", "user_id": "u1"})
    assert no_reason.error_info.kind is ErrorKind.VALIDATION

    unknown = await action.handle({"task_id": task.id, "action": "escalate", "user_id": "u1"})
    assert unknown.error_info.kind is ErrorKind.VALIDATION

    rejected = (
        await action.handle({"task_id": task.id, "action": "reject", "user_id": "u1", "reason": "wrong data"})
    ).unwrap()
    assert rejected.status is TaskStatus.REJECTED
    assert rejected.rejection_reason == "wrong data"

    cancelled = (await action.handle({"task_id": task.id, "action": "cancel", "user_id": "lead"})).unwrap()
    assert cancelled.status is TaskStatus.REJECTED


@pytest.mark.asyncio
async def test_update_task_applies_exactly_one_change():
    _, create, _, _, update = _task_handlers()
    task = (await create.handle(_task_command())).unwrap()

    both = await update.handle({"task_id": task.id, "comment": "hi", "form_data": {"a": 1}})
    assert both.error_info.kind is ErrorKind.VALIDATION
    neither = await update.handle({"task_id": task.id})
    assert neither.error_info.kind is ErrorKind.VALIDATION

    await update.handle({"task_id": task.id, "comment": "first"})
    await update.handle({"task_id": task.id, "comment": "second"})
    await update.handle({"task_id": task.id, "attachment_url": "s3://bucket/file.csv"})
    dto = (await update.handle({"task_id": task.id, "form_data": {"a": 1}})).unwrap()

    assert [c.text for c in dto.comments] == ["first", "second"]
    assert [a.url for a in dto.attachments] == ["s3://bucket/file.csv"]
    assert dto.form_data == {"a": 1}

    missing = await update.handle({"task_id": "ghost", "comment": "x"})
    assert missing.error_info.message == "Workflow task ghost not found"


@pytest.mark.asyncio
async def test_get_and_list_tasks():
    tasks, create, *_ = _task_handlers()
    now = datetime.now(timezone.utc)
    late = (await create.handle(_task_command(assignee_id="u1", due_date=now - timedelta(hours=1)))).unwrap()
    await create.handle(_task_command(assignee_id="u2", due_date=now + timedelta(days=1)))

    mine = (await ListTasksHandler(tasks).handle({"filters": {"assignee_id": "u1"}})).unwrap()
    assert [t.id for t in mine.items] == [late.id]

    overdue = (await ListTasksHandler(tasks).handle({"filters": {"is_overdue": True}})).unwrap()
    assert [t.id for t in overdue.items] == [late.id]

    fetched = (await GetTaskHandler(tasks).handle({"task_id": late.id})).unwrap()
    assert fetched.due_date == late.due_date
