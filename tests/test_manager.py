import asyncio
from types import SimpleNamespace

import pytest

from crawler.errors import TaskDisabledError, TaskNotFoundError
from crawler.models import TaskDefinition
from crawler.progress import ConnectionRegistry, ProgressReporter
from crawler.settings import Settings
from crawler.tasks import InMemoryTaskStore, TaskExecution, TaskQueueManager, TaskStatus, TriggerType


def _store():
    return InMemoryTaskStore(
        [
            TaskDefinition(id="a", name="Task A", site="fmtc"),
            TaskDefinition(id="b", name="Task B", site="mytheresa"),
            TaskDefinition(id="off", name="Disabled", site="fmtc", enabled=False),
        ]
    )


def _done(status=TaskStatus.COMPLETED, **metrics):
    return SimpleNamespace(status=status, metrics=metrics)


def test_enqueue_validates_definition():
    async def main():
        manager = TaskQueueManager(_store(), None, Settings())
        with pytest.raises(TaskNotFoundError):
            await manager.enqueue("nope")
        with pytest.raises(TaskDisabledError):
            await manager.enqueue("off")
        return manager.store.list_executions()

    assert asyncio.run(main()) == []


def test_runs_in_fifo_order_with_bounded_concurrency():
    started = []
    release = None

    async def runner(definition, execution, reporter, cancel_event):
        started.append(definition.id)
        await release.wait()
        return _done(records_extracted=1)

    async def main():
        nonlocal release
        release = asyncio.Event()
        manager = TaskQueueManager(_store(), runner, Settings(max_concurrent_tasks=1))
        first = await manager.enqueue("a")
        second = await manager.enqueue("b", TriggerType.API)
        await asyncio.sleep(0.01)
        assert started == ["a"]
        assert manager.queue_status()["queued"] == [second.id]
        release.set()
        await manager.wait_for_execution(second.id, timeout=1)
        return manager.store.get_execution(first.id), manager.store.get_execution(second.id)

    first, second = asyncio.run(main())
    assert started == ["a", "b"]
    assert first.status == TaskStatus.COMPLETED
    assert first.metrics == {"records_extracted": 1}
    assert second.trigger_type == TriggerType.API
    assert second.started_at >= first.finished_at


def test_same_definition_waits_while_others_run():
    started = []
    gates = {}

    async def runner(definition, execution, reporter, cancel_event):
        started.append(definition.id)
        await gates[definition.id].wait()
        return _done()

    async def main():
        gates.update(a=asyncio.Event(), b=asyncio.Event())
        manager = TaskQueueManager(_store(), runner, Settings(max_concurrent_tasks=2))
        await manager.enqueue("a")
        second_a = await manager.enqueue("a")
        await manager.enqueue("b")
        await asyncio.sleep(0.01)
        assert started == ["a", "b"]
        gates["a"].set()
        gates["b"].set()
        return await manager.wait_for_execution(second_a.id, timeout=1)

    finished = asyncio.run(main())
    assert started == ["a", "b", "a"]
    assert finished.status == TaskStatus.COMPLETED


def test_cancel_queued_and_running_executions():
    async def runner(definition, execution, reporter, cancel_event):
        await cancel_event.wait()
        return _done(TaskStatus.CANCELLED)

    async def main():
        manager = TaskQueueManager(_store(), runner, Settings())
        running = await manager.enqueue("a")
        queued = await manager.enqueue("a")
        await asyncio.sleep(0.01)

        cancelled_queued = await manager.cancel(queued.id)
        await manager.cancel(running.id)
        await manager.wait_for_execution(running.id, timeout=1)
        again = await manager.cancel(running.id)
        return cancelled_queued, manager.store.get_execution(running.id), again

    cancelled_queued, running, again = asyncio.run(main())
    assert cancelled_queued.status == TaskStatus.CANCELLED
    assert cancelled_queued.started_at is None
    assert running.status == TaskStatus.CANCELLED
    assert running.error_message == "Cancelled by request"
    assert again.status == TaskStatus.CANCELLED


def test_runner_failure_and_timeout():
    async def failing(definition, execution, reporter, cancel_event):
        raise RuntimeError("browser crashed")

    async def slow(definition, execution, reporter, cancel_event):
        await asyncio.sleep(5)
        return _done()

    async def run_one(runner, settings):
        manager = TaskQueueManager(_store(), runner, settings)
        execution = await manager.enqueue("a")
        return await manager.wait_for_execution(execution.id, timeout=2)

    failed = asyncio.run(run_one(failing, Settings()))
    assert failed.status == TaskStatus.FAILED
    assert failed.error_message == "RuntimeError: browser crashed"

    timed_out = asyncio.run(run_one(slow, Settings(task_timeout_seconds=0.05)))
    assert timed_out.status == TaskStatus.CANCELLED
    assert "timeout" in timed_out.error_message


def test_status_is_published_and_logged():
    registry = ConnectionRegistry()
    store = _store()

    async def runner(definition, execution, reporter, cancel_event):
        reporter.info("working")
        return _done()

    async def main():
        manager = TaskQueueManager(
            store,
            runner,
            Settings(),
            reporter_factory=lambda execution_id: ProgressReporter(execution_id, registry, store),
        )
        execution = await manager.enqueue("a")
        subscription = registry.subscribe(execution.id)
        await manager.wait_for_execution(execution.id, timeout=1)
        events = []
        while not subscription.queue.empty():
            events.append(subscription.queue.get_nowait())
        return execution, events

    execution, events = asyncio.run(main())
    statuses = [payload["status"] for name, payload in events if name == "status"]
    assert statuses == ["RUNNING", "COMPLETED"]
    messages = [entry.message for entry in store.list_logs(execution.id)]
    assert "working" in messages


def test_initialize_restores_queued_and_fails_interrupted():
    store = _store()
    interrupted = TaskExecution(definition_id="a")
    store.create_execution(interrupted)
    store.claim_execution(interrupted.id)
    waiting = TaskExecution(definition_id="b")
    store.create_execution(waiting)

    async def runner(definition, execution, reporter, cancel_event):
        return _done()

    async def main():
        manager = TaskQueueManager(store, runner, Settings())
        restored = await manager.initialize()
        await manager.wait_for_execution(waiting.id, timeout=1)
        return restored

    assert asyncio.run(main()) == 1
    assert store.get_execution(interrupted.id).status == TaskStatus.FAILED
    assert store.get_execution(waiting.id).status == TaskStatus.COMPLETED


def test_max_concurrency_must_be_positive():
    manager = TaskQueueManager(_store(), None, Settings())
    with pytest.raises(ValueError):
        manager.set_max_concurrent_tasks(0)
