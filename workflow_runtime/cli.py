"""Command line interface for inspecting and driving workflow instances and tasks."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import typer

from .config import RuntimeConfig, load_config
from .domain.enums import InstanceStatus, Priority, TaskStatus, TaskType, TriggerType
from .handlers import HandlerResult
from .logging_setup import configure_logging
from .persistence import get_repositories
from .runtime import WorkflowRuntime
from .transports import get_transport

app = typer.Typer(help="CLI for the workflow runtime")

# Command groups
instance_app = typer.Typer(help="Commands for workflow instances")
task_app = typer.Typer(help="Commands for workflow tasks")

app.add_typer(instance_app, name="instance")
app.add_typer(task_app, name="task")


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(None, "--config", help="Path to a YAML config file"),
    log_level: Optional[str] = typer.Option(None, help="Override the configured log level"),
) -> None:
    """Workflow runtime CLI entry point."""
    runtime_config = load_config(str(config) if config is not None else None)
    configure_logging(log_level or runtime_config.log_level)
    ctx.obj = runtime_config
    ctx.meta["explicit_config"] = config is not None


def _runtime(ctx: typer.Context) -> WorkflowRuntime:
    config: RuntimeConfig = ctx.obj or load_config()
    if ctx.meta.get("explicit_config"):
        repositories = get_repositories(config=config)
    else:
        repositories = get_repositories()
    return WorkflowRuntime(
        repositories.instances, repositories.tasks, get_transport(config=config), config
    )


def _json_option(raw: Optional[str], name: str) -> Optional[dict[str, Any]]:
    if raw is None:
        return None
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"{name} must be valid JSON: {exc}") from exc
    if not isinstance(value, dict):
        raise typer.BadParameter(f"{name} must be a JSON object")
    return value


def _unwrap(result: HandlerResult) -> Any:
    """Return the value or print the error and exit with code 1."""
    if not result.ok:
        info = result.error_info
        typer.secho(f"Error ({info.kind.value}): {info.message}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return result.value


def _echo_instance(dto) -> None:
    typer.echo(f"Instance {dto.id}: {dto.status.value}")
    typer.echo(f"  Workflow: {dto.workflow_id}")
    typer.echo(f"  Priority: {dto.priority.value}  Retries: {dto.retry_count}")
    typer.echo(f"  Started: {dto.started_at.isoformat()}")
    if dto.current_step_id:
        typer.echo(f"  Current step: {dto.current_step_id}")
    if dto.completed_at:
        typer.echo(f"  Finished: {dto.completed_at.isoformat()}")
    if dto.duration is not None:
        typer.echo(f"  Duration: {dto.duration}s")
    if dto.error_message:
        typer.echo(f"  Error: {dto.error_message}" + (f" at {dto.error_step}" if dto.error_step else ""))
    if dto.sla_deadline:
        typer.echo(f"  SLA deadline: {dto.sla_deadline.isoformat()}")
    if dto.data:
        typer.echo(f"  Data: {json.dumps(dto.data, default=str)}")


def _echo_task(dto) -> None:
    typer.echo(f"Task {dto.id}: {dto.status.value}")
    typer.echo(f"  Name: {dto.name}")
    typer.echo(f"  Instance: {dto.instance_id}  Step: {dto.step_id}")
    typer.echo(f"  Type: {dto.task_type.value}  Priority: {dto.priority.value}")
    typer.echo(f"  Assignee: {dto.assignee_id or '(unassigned)'}")
    if dto.due_date:
        typer.echo(f"  Due: {dto.due_date.isoformat()}")
    if dto.result:
        typer.echo(f"  Result: {json.dumps(dto.result, default=str)}")
    if dto.rejection_reason:
        typer.echo(f"  Rejected by {dto.rejected_by}: {dto.rejection_reason}")
    for comment in dto.comments:
        typer.echo(f"  - {comment.timestamp.isoformat()} {comment.text}")


# ----------------------------------------------------------------------
# Instances
@instance_app.command("list")
def instance_list(
    ctx: typer.Context,
    workflow_id: Optional[str] = None,
    status: Optional[InstanceStatus] = None,
    priority: Optional[Priority] = None,
    triggered_by: Optional[str] = None,
    sort_by: str = typer.Option("started_at", help="started_at, completed_at or priority"),
    sort_order: str = typer.Option("desc", help="asc or desc"),
    page: int = 1,
    limit: int = 10,
) -> None:
    """
    List workflow instances with their current status.

    Example:
        workflow-runtime instance list --status running
        # Output: 6f1c...    running    monthly-report
    """
    runtime = _runtime(ctx)
    query = {
        "filters": {
            "workflow_id": workflow_id,
            "status": status,
            "priority": priority,
            "triggered_by": triggered_by,
            "sort_by": sort_by,
            "sort_order": sort_order,
        },
        "pagination": {"page": page, "limit": limit},
    }
    result = _unwrap(asyncio.run(runtime.list_instances.handle(query)))
    if not result.items:
        typer.echo("No instances found")
        return
    for dto in result.items:
        typer.echo(f"{dto.id}\t{dto.status.value}\t{dto.workflow_id}")
    typer.echo(f"Page {result.page}/{result.total_pages} ({result.total} total)")


@instance_app.command("show")
def instance_show(ctx: typer.Context, instance_id: str) -> None:
    """Show detailed information for a workflow instance."""
    runtime = _runtime(ctx)
    dto = _unwrap(asyncio.run(runtime.get_instance.handle({"instance_id": instance_id})))
    _echo_instance(dto)


@instance_app.command("create")
def instance_create(
    ctx: typer.Context,
    workflow_id: str,
    data: Optional[str] = typer.Option(None, help="JSON object"),
    variables: Optional[str] = typer.Option(None, help="JSON object"),
    context: Optional[str] = typer.Option(None, help="JSON object"),
    triggered_by: Optional[str] = None,
    trigger_type: TriggerType = TriggerType.MANUAL,
    priority: Priority = Priority.NORMAL,
    sla_deadline: Optional[datetime] = None,
) -> None:
    """Open a new RUNNING instance of a workflow and print its id."""
    runtime = _runtime(ctx)
    command = {
        "workflow_id": workflow_id,
        "data": _json_option(data, "data") or {},
        "variables": _json_option(variables, "variables") or {},
        "context": _json_option(context, "context") or {},
        "triggered_by": triggered_by,
        "trigger_type": trigger_type,
        "priority": priority,
        "sla_deadline": sla_deadline,
    }
    dto = _unwrap(asyncio.run(runtime.create_instance.handle(command)))
    typer.echo(f"Created instance {dto.id} ({dto.status.value})")


@instance_app.command("action")
def instance_action(
    ctx: typer.Context,
    instance_id: str,
    action: str = typer.Argument(..., help="pause, resume, cancel, complete or fail"),
    reason: Optional[str] = None,
    error_step: Optional[str] = None,
    by: Optional[str] = typer.Option(None, "--by", help="Who performs the action"),
) -> None:
    """Pause, resume, cancel, complete or fail an instance."""
    runtime = _runtime(ctx)
    command = {
        "instance_id": instance_id,
        "action": action,
        "reason": reason,
        "error_step": error_step,
        "performed_by": by,
    }
    dto = _unwrap(asyncio.run(runtime.perform_instance_action.handle(command)))
    typer.echo(f"Instance {dto.id}: {dto.status.value}")


@instance_app.command("retry")
def instance_retry(
    ctx: typer.Context,
    instance_id: str,
    by: Optional[str] = typer.Option(None, "--by", help="Who triggers the retry"),
) -> None:
    """Re-run a failed instance as a new instance."""
    runtime = _runtime(ctx)
    dto = _unwrap(
        asyncio.run(
            runtime.retry_instance.handle({"instance_id": instance_id, "triggered_by": by})
        )
    )
    typer.echo(f"Retried {instance_id} as {dto.id} (retry {dto.retry_count})")


# ----------------------------------------------------------------------
# Tasks
@task_app.command("list")
def task_list(
    ctx: typer.Context,
    instance_id: Optional[str] = None,
    assignee_id: Optional[str] = None,
    status: Optional[TaskStatus] = None,
    task_type: Optional[TaskType] = None,
    priority: Optional[Priority] = None,
    overdue: bool = typer.Option(False, "--overdue", help="Only overdue open tasks"),
    sort_by: str = typer.Option("created_at", help="created_at, due_date or priority"),
    sort_order: str = typer.Option("desc", help="asc or desc"),
    page: int = 1,
    limit: int = 10,
) -> None:
    """List workflow tasks."""
    runtime = _runtime(ctx)
    query = {
        "filters": {
            "instance_id": instance_id,
            "assignee_id": assignee_id,
            "status": status,
            "task_type": task_type,
            "priority": priority,
            "is_overdue": overdue,
            "sort_by": sort_by,
            "sort_order": sort_order,
        },
        "pagination": {"page": page, "limit": limit},
    }
    result = _unwrap(asyncio.run(runtime.list_tasks.handle(query)))
    if not result.items:
        typer.echo("No tasks found")
        return
    for dto in result.items:
        typer.echo(
            f"{dto.id}\t{dto.status.value}\t{dto.name}\t{dto.assignee_id or '-'}"
        )
    typer.echo(f"Page {result.page}/{result.total_pages} ({result.total} total)")


@task_app.command("show")
def task_show(ctx: typer.Context, task_id: str) -> None:
    """Show detailed information for a task."""
    runtime = _runtime(ctx)
    dto = _unwrap(asyncio.run(runtime.get_task.handle({"task_id": task_id})))
    _echo_task(dto)


@task_app.command("create")
def task_create(
    ctx: typer.Context,
    instance_id: str,
    step_id: str,
    name: str,
    description: Optional[str] = None,
    task_type: TaskType = TaskType.MANUAL,
    priority: Priority = Priority.NORMAL,
    assignee: Optional[str] = None,
    assigned_by: Optional[str] = None,
    due_date: Optional[datetime] = None,
    sla_hours: Optional[int] = None,
    form_data: Optional[str] = typer.Option(None, help="JSON object"),
) -> None:
    """Create a task for one step of an instance."""
    runtime = _runtime(ctx)
    command = {
        "instance_id": instance_id,
        "step_id": step_id,
        "name": name,
        "description": description,
        "task_type": task_type,
        "priority": priority,
        "assignee_id": assignee,
        "assigned_by": assigned_by,
        "due_date": due_date,
        "sla_hours": sla_hours,
        "form_data": _json_option(form_data, "form_data") or {},
    }
    dto = _unwrap(asyncio.run(runtime.create_task.handle(command)))
    typer.echo(f"Created task {dto.id} ({dto.status.value})")


@task_app.command("complete")
def task_complete(
    ctx: typer.Context,
    task_id: str,
    user: str = typer.Option(..., "--user", help="Assignee completing the task"),
    outcome: str = typer.Option(..., help="Outcome recorded on the task"),
    note: Optional[str] = None,
    form_data: Optional[str] = typer.Option(None, help="JSON object"),
) -> None:
    """Complete an in-progress task."""
    runtime = _runtime(ctx)
    command = {
        "task_id": task_id,
        "user_id": user,
        "outcome": outcome,
        "completion_note": note,
        "form_data": _json_option(form_data, "form_data"),
    }
    dto = _unwrap(asyncio.run(runtime.complete_task.handle(command)))
    typer.echo(f"Task {dto.id}: {dto.status.value}")


@task_app.command("action")
def task_action(
    ctx: typer.Context,
    task_id: str,
    action: str = typer.Argument(..., help="assign, start, reject or cancel"),
    user: str = typer.Option(..., "--user", help="Acting user"),
    assignee: Optional[str] = None,
    reason: Optional[str] = None,
) -> None:
    """Assign, start, reject or cancel a task."""
    runtime = _runtime(ctx)
    command = {
        "task_id": task_id,
        "action": action,
        "user_id": user,
        "assignee_id": assignee,
        "reason": reason,
    }
    dto = _unwrap(asyncio.run(runtime.perform_task_action.handle(command)))
    typer.echo(f"Task {dto.id}: {dto.status.value}")


# ----------------------------------------------------------------------
@app.command("sweep")
def sweep(
    ctx: typer.Context,
    loop: bool = typer.Option(False, "--loop", help="Keep sweeping every interval"),
    lifespan: Optional[float] = typer.Option(None, help="Stop looping after this many seconds"),
) -> None:
    """
    Enforce SLA deadlines and report overdue tasks.

    A single sweep fails instances past their SLA deadline (or only reports
    them when sweeper.sla_action is 'report') and lists overdue or late tasks.

    Example:
        workflow-runtime sweep
        workflow-runtime sweep --loop --lifespan 3600
    """
    runtime = _runtime(ctx)
    if loop:
        sweeps = asyncio.run(runtime.sweeper.run(lifespan=lifespan))
        typer.echo(f"Completed {sweeps} sweeps")
        return

    report = asyncio.run(runtime.sweeper.run_once())
    typer.echo(f"Late instances: {len(report.late_instances)}")
    for instance_id in report.late_instances:
        marker = "failed" if instance_id in report.failed_instances else "reported"
        typer.echo(f"  {instance_id}\t{marker}")
    typer.echo(f"Overdue tasks: {len(report.overdue_tasks)}")
    for task_id in report.overdue_tasks:
        typer.echo(f"  {task_id}")
    typer.echo(f"Late tasks: {len(report.late_tasks)}")
    for task_id in report.late_tasks:
        typer.echo(f"  {task_id}")
    for instance_id, message in report.errors.items():
        typer.secho(f"  {instance_id}: {message}", fg=typer.colors.RED)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
