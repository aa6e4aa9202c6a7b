from datetime import datetime, timedelta, timezone

import pytest

from workflow_runtime.domain import InstanceStatus, Priority, TaskStatus, WorkflowInstance, WorkflowTask
from workflow_runtime.errors import ConcurrencyConflictError
from workflow_runtime.persistence import (
    InMemoryInstanceRepository,
    InMemoryTaskRepository,
    InstanceFilters,
    Pagination,
    SQLiteInstanceRepository,
    SQLiteTaskRepository,
    TaskFilters,
)

T0 = datetime(2024, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["inmemory", "sqlite"])
def instances(request, tmp_path):
    if request.param == "inmemory":
        return InMemoryInstanceRepository()
    return SQLiteInstanceRepository(tmp_path / "runtime.db")


@pytest.fixture(params=["inmemory", "sqlite"])
def tasks(request, tmp_path):
    if request.param == "inmemory":
        return InMemoryTaskRepository()
    return SQLiteTaskRepository(tmp_path / "runtime.db")


def _instance(minutes: int = 0, **kwargs) -> WorkflowInstance:
    kwargs.setdefault("workflow_id", "wf-1")
    return WorkflowInstance.create(started_at=T0 + timedelta(minutes=minutes), **kwargs)


def _task(minutes: int = 0, **kwargs) -> WorkflowTask:
    kwargs.setdefault("instance_id", "inst-1")
    kwargs.setdefault("step_id", "review")
    kwargs.setdefault("name", "Review")
    return WorkflowTask.create(created_at=T0 + timedelta(minutes=minutes), **kwargs)


# ----------------------------------------------------------------------
# Instances
@pytest.mark.asyncio
async def test_save_and_find_instance(instances):
    instance = _instance(data={"rows": [1, 2]}, priority=Priority.HIGH, sla_deadline=T0 + timedelta(hours=1))

    await instances.save(instance)

    assert instance.version == 1
    loaded = await instances.find_by_id(instance.id)
    assert loaded is not None
    assert loaded.id == instance.id
    assert loaded.status is InstanceStatus.RUNNING
    assert loaded.data == {"rows": [1, 2]}
    assert loaded.priority is Priority.HIGH
    assert loaded.started_at == T0
    assert loaded.sla_deadline == T0 + timedelta(hours=1)
    assert loaded.version == 1
    assert loaded.get_uncommitted_events() == ()


@pytest.mark.asyncio
async def test_find_missing_instance_returns_none(instances):
    assert await instances.find_by_id("does-not-exist") is None
    assert not await instances.exists("does-not-exist")


@pytest.mark.asyncio
async def test_update_advances_version(instances):
    instance = _instance()
    await instances.save(instance)

    loaded = await instances.find_by_id(instance.id)
    loaded.complete(now=T0 + timedelta(seconds=30))
    await instances.save(loaded)

    stored = await instances.find_by_id(instance.id)
    assert stored.version == 2
    assert stored.status is InstanceStatus.COMPLETED
    assert stored.duration == 30


@pytest.mark.asyncio
async def test_stale_save_raises_conflict(instances):
    instance = _instance()
    await instances.save(instance)

    first = await instances.find_by_id(instance.id)
    second = await instances.find_by_id(instance.id)
    first.pause()
    await instances.save(first)

    second.cancel()
    with pytest.raises(ConcurrencyConflictError):
        await instances.save(second)
    assert second.version == 1

    stored = await instances.find_by_id(instance.id)
    assert stored.status is InstanceStatus.PAUSED
    assert stored.version == 2


@pytest.mark.asyncio
async def test_inserting_same_id_twice_conflicts(instances):
    instance = _instance()
    await instances.save(instance)

    duplicate = WorkflowInstance.reconstitute(instance.id, {**instance.to_persistence(), "version": 0})
    with pytest.raises(ConcurrencyConflictError):
        await instances.save(duplicate)


@pytest.mark.asyncio
async def test_delete_and_exists(instances):
    instance = _instance()
    await instances.save(instance)
    assert await instances.exists(instance.id)

    await instances.delete(instance.id)

    assert not await instances.exists(instance.id)
    await instances.delete(instance.id)


@pytest.mark.asyncio
async def test_find_all_filters_sorts_and_paginates(instances):
    for minutes in range(5):
        await instances.save(_instance(minutes, triggered_by="alice"))
    await instances.save(_instance(10, workflow_id="wf-2", triggered_by="bob"))

    page = await instances.find_all(
        InstanceFilters(workflow_id="wf-1"), Pagination(page=1, limit=2)
    )
    assert page.total == 5
    assert [i.started_at for i in page.items] == [T0 + timedelta(minutes=4), T0 + timedelta(minutes=3)]

    last = await instances.find_all(InstanceFilters(workflow_id="wf-1"), Pagination(page=3, limit=2))
    assert [i.started_at for i in last.items] == [T0]

    ascending = await instances.find_all(InstanceFilters(sort_order="asc"))
    assert ascending.items[0].started_at == T0
    assert ascending.total == 6

    bob = await instances.find_all(InstanceFilters(triggered_by="bob"))
    assert [i.workflow_id for i in bob.items] == ["wf-2"]

    window = await instances.find_all(
        InstanceFilters(started_from=T0 + timedelta(minutes=1), started_to=T0 + timedelta(minutes=3))
    )
    assert window.total == 3


@pytest.mark.asyncio
async def test_find_all_sorts_by_priority_rank(instances):
    for minutes, priority in enumerate([Priority.LOW, Priority.URGENT, Priority.NORMAL, Priority.HIGH]):
        await instances.save(_instance(minutes, priority=priority))

    page = await instances.find_all(InstanceFilters(sort_by="priority", sort_order="desc"))

    assert [i.priority for i in page.items] == [
        Priority.URGENT,
        Priority.HIGH,
        Priority.NORMAL,
        Priority.LOW,
    ]


@pytest.mark.asyncio
async def test_status_finders(instances):
    running = _instance(0)
    paused = _instance(1)
    paused.pause()
    done = _instance(2)
    done.complete()
    failed_once = _instance(3)
    failed_once.fail("boom")
    failed_once.increment_retry_count()
    failed_fresh = _instance(4)
    failed_fresh.fail("boom")
    exhausted = _instance(5)
    exhausted.fail("boom")
    for _ in range(3):
        exhausted.increment_retry_count()
    for instance in (running, paused, done, failed_once, failed_fresh, exhausted):
        await instances.save(instance)

    active = await instances.find_active()
    assert [i.id for i in active] == [paused.id, running.id]
    assert len(await instances.find_active(limit=1)) == 1

    retryable = await instances.find_failed_with_retry_count(3)
    assert [i.id for i in retryable] == [failed_fresh.id, failed_once.id]

    assert await instances.count_by_status() == 6
    assert await instances.count_by_status(InstanceStatus.FAILED) == 3
    assert await instances.count_by_status(InstanceStatus.CANCELLED) == 0


@pytest.mark.asyncio
async def test_find_exceeding_sla_only_returns_active_late_instances(instances):
    late = _instance(0, sla_deadline=T0 + timedelta(hours=1))
    later = _instance(1, sla_deadline=T0 + timedelta(minutes=30))
    on_time = _instance(2, sla_deadline=T0 + timedelta(hours=5))
    finished = _instance(3, sla_deadline=T0 + timedelta(minutes=10))
    finished.complete()
    no_sla = _instance(4)
    for instance in (late, later, on_time, finished, no_sla):
        await instances.save(instance)

    found = await instances.find_exceeding_sla(now=T0 + timedelta(hours=2))

    assert [i.id for i in found] == [later.id, late.id]


# ----------------------------------------------------------------------
# Tasks
@pytest.mark.asyncio
async def test_save_and_find_task(tasks):
    task = _task(description="check", due_date=T0 + timedelta(days=1))
    task.assign_to("u1", "manager", now=T0)
    task.add_comment("note", now=T0)
    task.add_attachment("https://files.example.com/a.pdf", now=T0)

    await tasks.save(task)

    loaded = await tasks.find_by_id(task.id.value)
    assert loaded.assignee_id == "u1"
    assert loaded.description == "check"
    assert loaded.due_date == T0 + timedelta(days=1)
    assert [c.text for c in loaded.comments] == ["note"]
    assert [a.url for a in loaded.attachments] == ["https://files.example.com/a.pdf"]
    assert loaded.result is None
    assert loaded.version == 1


@pytest.mark.asyncio
async def test_stale_task_save_raises_conflict(tasks):
    task = _task()
    task.assign_to("u1", "manager")
    await tasks.save(task)

    first = await tasks.find_by_id(task.id)
    second = await tasks.find_by_id(task.id)
    first.start("u1")
    await tasks.save(first)

    second.cancel()
    with pytest.raises(ConcurrencyConflictError):
        await tasks.save(second)
    assert (await tasks.find_by_id(task.id)).status is TaskStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_find_by_instance_in_creation_order(tasks):
    first = _task(0)
    second = _task(1)
    other = _task(2, instance_id="inst-2")
    second.cancel()
    for task in (second, other, first):
        await tasks.save(task)

    found = await tasks.find_by_instance("inst-1")
    assert [t.id for t in found] == [first.id, second.id]

    pending = await tasks.find_by_instance("inst-1", TaskStatus.PENDING)
    assert [t.id for t in pending] == [first.id]


@pytest.mark.asyncio
async def test_task_find_all_filters(tasks):
    mine = _task(0, priority=Priority.HIGH)
    mine.assign_to("u1", "manager")
    theirs = _task(1)
    theirs.assign_to("u2", "manager")
    overdue = _task(2, due_date=T0 + timedelta(hours=1))
    closed_overdue = _task(3, due_date=T0 + timedelta(hours=1))
    closed_overdue.cancel()
    for task in (mine, theirs, overdue, closed_overdue):
        await tasks.save(task)

    by_assignee = await tasks.find_all(TaskFilters(assignee_id="u1"))
    assert [t.id for t in by_assignee.items] == [mine.id]

    by_priority = await tasks.find_all(TaskFilters(priority=Priority.HIGH))
    assert by_priority.total == 1

    late = await tasks.find_all(TaskFilters(is_overdue=True), now=T0 + timedelta(hours=2))
    assert [t.id for t in late.items] == [overdue.id]
    assert late.total == 1

    paged = await tasks.find_all(TaskFilters(sort_order="asc"), Pagination(page=2, limit=3))
    assert [t.id for t in paged.items] == [closed_overdue.id]
    assert paged.total == 4


@pytest.mark.asyncio
async def test_task_due_date_sort_puts_missing_last(tasks):
    no_due = _task(0)
    due_late = _task(1, due_date=T0 + timedelta(days=3))
    due_soon = _task(2, due_date=T0 + timedelta(days=1))
    for task in (no_due, due_late, due_soon):
        await tasks.save(task)

    page = await tasks.find_all(TaskFilters(sort_by="due_date", sort_order="asc"))

    assert [t.id for t in page.items] == [due_soon.id, due_late.id, no_due.id]


@pytest.mark.asyncio
async def test_task_overdue_and_sla_finders(tasks):
    now = T0 + timedelta(days=2)
    overdue_u1 = _task(0, due_date=T0 + timedelta(days=1))
    overdue_u1.assign_to("u1", "manager")
    overdue_u2 = _task(1, due_date=T0 + timedelta(hours=12))
    overdue_u2.assign_to("u2", "manager")
    not_due = _task(2, due_date=T0 + timedelta(days=5))
    late_sla = _task(3, sla_deadline=T0 + timedelta(hours=8))
    done_late = _task(4, sla_deadline=T0 + timedelta(hours=1), due_date=T0)
    done_late.cancel()
    for task in (overdue_u1, overdue_u2, not_due, late_sla, done_late):
        await tasks.save(task)

    overdue = await tasks.find_overdue(now=now)
    assert [t.id for t in overdue] == [overdue_u2.id, overdue_u1.id]

    assert [t.id for t in await tasks.find_overdue(now=now, assignee_id="u1")] == [overdue_u1.id]
    assert len(await tasks.find_overdue(now=now, limit=1)) == 1

    assert [t.id for t in await tasks.find_exceeding_sla(now=now)] == [late_sla.id]

    active = await tasks.find_active()
    assert done_late.id not in [t.id for t in active]
    assert len(active) == 4

    assert await tasks.count_by_status(TaskStatus.CANCELLED) == 1
    assert await tasks.count_by_status() == 5


@pytest.mark.asyncio
async def test_task_delete(tasks):
    task = _task()
    await tasks.save(task)

    await tasks.delete(task.id)

    assert await tasks.find_by_id(task.id) is None
    assert not await tasks.exists(task.id)


@pytest.mark.asyncio
async def test_equal_sort_keys_page_by_id(tasks):
    saved = [_task(priority=Priority.HIGH) for _ in range(5)]
    for task in saved:
        await tasks.save(task)
    expected = sorted(task.id.value for task in saved)

    for order in ("asc", "desc"):
        first = await tasks.find_all(TaskFilters(sort_order=order), Pagination(page=1, limit=3))
        second = await tasks.find_all(TaskFilters(sort_order=order), Pagination(page=2, limit=3))
        assert [t.id.value for t in first.items + second.items] == expected

    by_priority = await tasks.find_all(TaskFilters(sort_by="priority"), Pagination(limit=5))
    assert [t.id.value for t in by_priority.items] == expected
