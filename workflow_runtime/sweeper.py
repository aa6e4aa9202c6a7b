"""Periodic SLA and due-date enforcement.

The aggregates only expose predicates. The sweeper asks the repositories
for late work, fails late instances through the regular action handler (or
only reports them) and reports overdue or late tasks.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from .config import SweeperConfig
from .contracts import InstanceActionCommand
from .handlers.instances import PerformInstanceActionHandler
from .persistence.models import default_now
from .persistence.repository import InstanceRepository, TaskRepository

logger = logging.getLogger(__name__)

SLA_EXCEEDED_MESSAGE = "SLA deadline exceeded"
SWEEPER_ACTOR = "sla-sweeper"


@dataclass
class SweepReport:
    swept_at: datetime
    late_instances: list[str] = field(default_factory=list)
    failed_instances: list[str] = field(default_factory=list)
    overdue_tasks: list[str] = field(default_factory=list)
    late_tasks: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def is_clean(self) -> bool:
        return not (self.late_instances or self.overdue_tasks or self.late_tasks)


class SlaSweeper:
    def __init__(
        self,
        instances: InstanceRepository,
        tasks: TaskRepository,
        actions: PerformInstanceActionHandler,
        config: Optional[SweeperConfig] = None,
    ) -> None:
        self._instances = instances
        self._tasks = tasks
        self._actions = actions
        self._config = config or SweeperConfig()

    async def run_once(self, now: Optional[datetime] = None) -> SweepReport:
        """Sweep once and describe what was found and done."""
        now = default_now(now)
        limit = self._config.batch_limit
        report = SweepReport(swept_at=now)

        for instance in await self._instances.find_exceeding_sla(now, limit):
            report.late_instances.append(instance.id.value)
            if self._config.sla_action != "fail":
                logger.warning(
                    f"Instance {instance.id} exceeded its SLA deadline {instance.sla_deadline}"
                )
                continue
            result = await self._actions.handle(
                InstanceActionCommand(
                    instance_id=instance.id.value,
                    action="fail",
                    reason=SLA_EXCEEDED_MESSAGE,
                    performed_by=SWEEPER_ACTOR,
                )
            )
            if result.ok:
                report.failed_instances.append(instance.id.value)
            else:
                report.errors[instance.id.value] = result.error.message
                logger.warning(f"Could not fail late instance {instance.id}: {result.error.message}")

        for task in await self._tasks.find_overdue(now, limit=limit):
            report.overdue_tasks.append(task.id.value)
            logger.warning(f"Task {task.id} is overdue (due {task.due_date})")

        for task in await self._tasks.find_exceeding_sla(now, limit):
            report.late_tasks.append(task.id.value)
            logger.warning(f"Task {task.id} exceeded its SLA deadline {task.sla_deadline}")

        logger.info(
            f"SLA sweep: {len(report.late_instances)} late instances "
            f"({len(report.failed_instances)} failed), {len(report.overdue_tasks)} overdue "
            f"tasks, {len(report.late_tasks)} late tasks"
        )
        return report

    async def run(self, lifespan: Optional[float] = None) -> int:
        """Sweep every ``interval`` seconds until ``lifespan`` elapses.

        Args:
            lifespan: Maximum time in seconds to keep sweeping. If None, runs indefinitely.

        Returns:
            Number of completed sweeps.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        sweeps = 0

        while True:
            await self.run_once()
            sweeps += 1

            delay = self._config.interval
            if lifespan is not None:
                remaining = lifespan - (loop.time() - start_time)
                if remaining <= 0:
                    break
                delay = min(delay, remaining)
            await asyncio.sleep(delay)
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break

        return sweeps
