"""In-process task queue: FIFO dispatch with bounded concurrency."""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from crawler.errors import (
    InvalidTransitionError,
    QueueShutdownError,
    TaskDisabledError,
    TaskNotFoundError,
)
from crawler.models import LogLevel, TaskDefinition

from .execution import TaskExecution, TaskStatus, TriggerType
from .store import TaskStore

LOGGER = logging.getLogger(__name__)

Runner = Callable[..., Awaitable[Any]]
ReporterFactory = Callable[[str], Any]


class TaskQueueManager:
    """Creates executions, dispatches them in FIFO order and finalizes them.

    At most ``max_concurrent_tasks`` executions run at once. Unless
    ``allow_concurrent_runs`` is set, executions of one definition run one
    after another; a blocked head does not hold back other definitions.

    The runner is awaited as ``runner(definition, execution, reporter,
    cancel_event)`` and returns an object with ``status`` and ``metrics``.
    """

    def __init__(
        self,
        store: TaskStore,
        runner: Runner,
        settings,
        reporter_factory: Optional[ReporterFactory] = None,
    ) -> None:
        self.store = store
        self.runner = runner
        self.reporter_factory = reporter_factory
        self.max_concurrent_tasks = settings.max_concurrent_tasks
        self.allow_concurrent_runs = settings.allow_concurrent_runs
        self.task_timeout_seconds = settings.task_timeout_seconds
        self.shutdown_timeout_seconds = settings.shutdown_timeout_seconds

        self._pending: Deque[str] = deque()
        self._running: Dict[str, asyncio.Task] = {}
        self._running_definitions: Dict[str, str] = {}
        self._cancel_events: Dict[str, asyncio.Event] = {}
        self._done_events: Dict[str, asyncio.Event] = {}
        self._accepting = True

    # -- lifecycle ------------------------------------------------------

    async def initialize(self) -> int:
        """Restore executions left QUEUED by a previous process.

        Executions left RUNNING cannot be resumed and are marked FAILED.
        """
        for execution in self.store.list_executions(TaskStatus.RUNNING):
            execution.transition(TaskStatus.FAILED, error="Interrupted by process restart")
            self.store.update_execution(execution)
            LOGGER.warning("Marked interrupted execution %s as FAILED", execution.id)
        return self.sync_from_store()

    def sync_from_store(self) -> int:
        """Pick up QUEUED executions created outside this process."""
        restored = 0
        for execution in self.store.list_executions(TaskStatus.QUEUED):
            if execution.id not in self._pending and execution.id not in self._running:
                self._pending.append(execution.id)
                self._done_events.setdefault(execution.id, asyncio.Event())
                restored += 1
        if restored:
            LOGGER.info("Picked up %d queued execution(s)", restored)
        self._dispatch_ready()
        return restored

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop accepting work, wait for running executions, then cancel them."""
        self._accepting = False
        timeout = self.shutdown_timeout_seconds if timeout is None else timeout
        tasks = list(self._running.values())
        if not tasks:
            return
        LOGGER.info("Waiting up to %.0fs for %d running execution(s)", timeout, len(tasks))
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for execution_id in list(self._running):
            self._cancel_events[execution_id].set()
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        LOGGER.info("Queue shut down (%d finished, %d cancelled)", len(done), len(pending))

    # -- public operations ----------------------------------------------

    async def enqueue(self, ref: str, trigger_type: TriggerType = TriggerType.MANUAL) -> TaskExecution:
        """Create a QUEUED execution for definition ``ref`` (id or name).

        Raises
        ------
        QueueShutdownError
            If the manager is shutting down
        TaskNotFoundError
            If no definition matches ``ref``
        TaskDisabledError
            If the definition is disabled
        """
        if not self._accepting:
            raise QueueShutdownError("Task queue is shutting down")
        definition = self.store.get_definition(ref)
        if definition is None:
            raise TaskNotFoundError(f"Task definition {ref!r} not found")
        if not definition.enabled:
            raise TaskDisabledError(f"Task definition {definition.name!r} is disabled")

        execution = TaskExecution(definition_id=definition.id, trigger_type=trigger_type)
        self.store.create_execution(execution)
        self._pending.append(execution.id)
        self._done_events[execution.id] = asyncio.Event()
        LOGGER.info("Queued execution %s for %s (%s)", execution.id, definition.name, trigger_type.value)
        self._dispatch_ready()
        return execution

    async def cancel(self, execution_id: str) -> TaskExecution:
        """Cancel a queued or running execution.

        Queued executions are cancelled at once; running ones stop at the
        next page boundary. Terminal executions are returned unchanged.
        """
        execution = self.store.get_execution(execution_id)
        if execution is None:
            raise TaskNotFoundError(f"Execution {execution_id} not found")
        if execution.is_terminal:
            return execution

        if execution_id in self._pending:
            self._pending.remove(execution_id)
            execution.transition(TaskStatus.CANCELLED, error="Cancelled before start")
            self.store.update_execution(execution)
            self._publish_status(execution)
            self._mark_done(execution_id)
            LOGGER.info("Cancelled queued execution %s", execution_id)
            return execution

        event = self._cancel_events.get(execution_id)
        if event is not None:
            event.set()
            LOGGER.info("Cancellation requested for running execution %s", execution_id)
        return execution

    def set_max_concurrent_tasks(self, value: int) -> None:
        if value < 1:
            raise ValueError("max_concurrent_tasks must be at least 1")
        self.max_concurrent_tasks = value
        self._dispatch_ready()

    def queue_status(self) -> Dict[str, Any]:
        return {
            "accepting": self._accepting,
            "maxConcurrentTasks": self.max_concurrent_tasks,
            "allowConcurrentRuns": self.allow_concurrent_runs,
            "queued": list(self._pending),
            "running": list(self._running),
            "stats": self.store.get_stats(),
        }

    async def wait_for_execution(self, execution_id: str, timeout: Optional[float] = None) -> Optional[TaskExecution]:
        """Wait until ``execution_id`` reaches a terminal status."""
        event = self._done_events.get(execution_id)
        if event is not None:
            await asyncio.wait_for(event.wait(), timeout)
        return self.store.get_execution(execution_id)

    # -- dispatch ---------------------------------------------------------

    def _dispatch_ready(self) -> None:
        """Start pending executions while slots are free, oldest first."""
        if not self._accepting:
            return
        skipped: List[str] = []
        while self._pending and len(self._running) < self.max_concurrent_tasks:
            execution_id = self._pending.popleft()
            execution = self.store.get_execution(execution_id)
            if execution is None or execution.status != TaskStatus.QUEUED:
                self._mark_done(execution_id)
                continue
            if not self.allow_concurrent_runs and execution.definition_id in self._running_definitions.values():
                skipped.append(execution_id)
                continue
            self._start(execution)
        self._pending.extendleft(reversed(skipped))

    def _start(self, execution: TaskExecution) -> None:
        definition = self.store.get_definition(execution.definition_id)
        if definition is None:
            execution.transition(TaskStatus.FAILED, error=f"Task definition {execution.definition_id} no longer exists")
            self.store.update_execution(execution)
            self._publish_status(execution)
            self._mark_done(execution.id)
            return

        claimed = self.store.claim_execution(execution.id)
        if claimed is None:
            LOGGER.info("Execution %s was claimed elsewhere", execution.id)
            self._mark_done(execution.id)
            return

        cancel_event = asyncio.Event()
        self._cancel_events[claimed.id] = cancel_event
        self._running_definitions[claimed.id] = definition.id
        task = asyncio.create_task(self._run(definition, claimed, cancel_event), name=f"execution-{claimed.id}")
        self._running[claimed.id] = task
        task.add_done_callback(lambda _t, execution_id=claimed.id: self._on_finished(execution_id))

    def _on_finished(self, execution_id: str) -> None:
        self._running.pop(execution_id, None)
        self._running_definitions.pop(execution_id, None)
        self._cancel_events.pop(execution_id, None)
        self._mark_done(execution_id)
        self._dispatch_ready()

    def _mark_done(self, execution_id: str) -> None:
        event = self._done_events.pop(execution_id, None)
        if event is not None:
            event.set()

    async def _run(self, definition: TaskDefinition, execution: TaskExecution, cancel_event: asyncio.Event) -> None:
        reporter = self.reporter_factory(execution.id) if self.reporter_factory else None
        if reporter is not None:
            reporter.status(TaskStatus.RUNNING.value)
            reporter.info(f"Execution started for {definition.name}", site=definition.site)
        LOGGER.info("Running execution %s (%s)", execution.id, definition.name)

        status = TaskStatus.FAILED
        error: Optional[str] = None
        metrics: Dict[str, Any] = {}
        try:
            result = await asyncio.wait_for(
                self.runner(definition, execution, reporter, cancel_event),
                timeout=self.task_timeout_seconds,
            )
            status = result.status
            metrics = dict(result.metrics or {})
            if status == TaskStatus.CANCELLED:
                error = "Cancelled by request"
        except asyncio.TimeoutError:
            status = TaskStatus.CANCELLED
            error = f"Execution exceeded timeout of {self.task_timeout_seconds}s"
        except asyncio.CancelledError:
            self._finalize(execution.id, TaskStatus.CANCELLED, "Execution cancelled during shutdown", metrics, reporter)
            raise
        except Exception as exc:
            LOGGER.exception("Execution %s failed", execution.id)
            status = TaskStatus.FAILED
            error = f"{type(exc).__name__}: {exc}"

        if reporter is not None and error:
            reporter.log(LogLevel.ERROR if status == TaskStatus.FAILED else LogLevel.WARN, error)
        if reporter is not None:
            await reporter.flush()
        self._finalize(execution.id, status, error, metrics, reporter)

    def _finalize(
        self,
        execution_id: str,
        status: TaskStatus,
        error: Optional[str],
        metrics: Dict[str, Any],
        reporter,
    ) -> None:
        execution = self.store.get_execution(execution_id)
        if execution is None:
            return
        try:
            execution.transition(status, error=error, metrics=metrics)
            self.store.update_execution(execution)
        except InvalidTransitionError as exc:
            LOGGER.error("Could not finalize execution %s: %s", execution_id, exc)
            return
        LOGGER.info("Execution %s finished with %s", execution_id, status.value)
        if reporter is not None:
            reporter.status(status.value, finished=True, error=execution.error_message)
        else:
            self._publish_status(execution)

    def _publish_status(self, execution: TaskExecution) -> None:
        if self.reporter_factory is None:
            return
        reporter = self.reporter_factory(execution.id)
        reporter.status(execution.status.value, finished=execution.is_terminal, error=execution.error_message)
