"""Cron triggers for enabled task definitions."""
from __future__ import annotations

import logging
from typing import List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from crawler.errors import QueueShutdownError, TaskDisabledError, TaskNotFoundError

from .execution import TriggerType
from .manager import TaskQueueManager

LOGGER = logging.getLogger(__name__)


class CronScheduler:
    """Registers one APScheduler job per definition with a cron expression.

    A firing job enqueues an execution with trigger type CRON. Definitions
    disabled after registration are skipped at fire time.
    """

    def __init__(self, manager: TaskQueueManager, timezone: str = "UTC", poll_seconds: Optional[float] = None) -> None:
        self.manager = manager
        self.poll_seconds = poll_seconds
        self.scheduler = AsyncIOScheduler(timezone=timezone)

    def register_all(self) -> List[str]:
        registered: List[str] = []
        for definition in self.manager.store.list_definitions():
            if not definition.enabled or not definition.cron:
                continue
            try:
                trigger = CronTrigger.from_crontab(definition.cron, timezone=self.scheduler.timezone)
            except ValueError as exc:
                LOGGER.error("Invalid cron %r for %s: %s", definition.cron, definition.name, exc)
                continue
            self.scheduler.add_job(
                self._fire,
                trigger=trigger,
                args=[definition.id],
                id=f"task:{definition.id}",
                name=f"Scheduled run of {definition.name}",
                replace_existing=True,
                misfire_grace_time=300,
                coalesce=True,
                max_instances=1,
            )
            registered.append(definition.id)
        LOGGER.info("Registered %d cron job(s)", len(registered))
        return registered

    async def _fire(self, definition_id: str) -> None:
        try:
            execution = await self.manager.enqueue(definition_id, TriggerType.CRON)
        except (TaskNotFoundError, TaskDisabledError, QueueShutdownError) as exc:
            LOGGER.warning("Cron trigger for %s skipped: %s", definition_id, exc)
            return
        LOGGER.info("Cron queued execution %s for %s", execution.id, definition_id)

    def start(self) -> None:
        self.register_all()
        if self.poll_seconds:
            # Executions queued by other processes (CLI enqueue) share the store.
            self.scheduler.add_job(
                self.manager.sync_from_store,
                trigger="interval",
                seconds=self.poll_seconds,
                id="queue:sync",
                name="Pick up externally queued executions",
                replace_existing=True,
                coalesce=True,
                max_instances=1,
            )
        self.scheduler.start()

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
