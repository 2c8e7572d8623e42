from datetime import timedelta

import pytest

from crawler.errors import InvalidTransitionError, TaskNotFoundError
from crawler.models import ExtractedRecord, LogEntry, TaskDefinition
from crawler.tasks import InMemoryTaskStore, TaskExecution, TaskStatus, TriggerType, can_transition


def _store():
    return InMemoryTaskStore(
        [
            TaskDefinition(id="fmtc-daily", name="FMTC daily", site="fmtc"),
            TaskDefinition(id="mt-weekly", name="Mytheresa weekly", site="mytheresa", enabled=False),
        ]
    )


def test_happy_path_sets_timestamps():
    execution = TaskExecution(definition_id="fmtc-daily")
    assert execution.status == TaskStatus.QUEUED
    execution.transition(TaskStatus.RUNNING)
    assert execution.started_at is not None
    execution.transition(TaskStatus.COMPLETED, metrics={"records_extracted": 5})
    assert execution.finished_at >= execution.started_at
    assert execution.metrics == {"records_extracted": 5}
    assert execution.is_terminal


@pytest.mark.parametrize("terminal", [TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED])
def test_terminal_states_are_final(terminal):
    execution = TaskExecution(definition_id="fmtc-daily")
    execution.transition(TaskStatus.RUNNING)
    execution.transition(terminal)
    for target in TaskStatus:
        with pytest.raises(InvalidTransitionError):
            execution.transition(target)


def test_queued_can_be_cancelled_but_not_completed():
    assert can_transition(TaskStatus.QUEUED, TaskStatus.CANCELLED)
    assert not can_transition(TaskStatus.QUEUED, TaskStatus.COMPLETED)
    assert not can_transition(TaskStatus.RUNNING, TaskStatus.QUEUED)


def test_error_message_is_truncated():
    execution = TaskExecution(definition_id="fmtc-daily")
    execution.transition(TaskStatus.FAILED, error="x" * 5000)
    assert len(execution.error_message) < 2000


def test_to_dict_uses_camel_case():
    execution = TaskExecution(definition_id="fmtc-daily", trigger_type=TriggerType.CRON)
    data = execution.to_dict()
    assert data["definitionId"] == "fmtc-daily"
    assert data["triggerType"] == "CRON"
    assert data["status"] == "QUEUED"
    assert data["startedAt"] is None


def test_store_resolves_definitions_by_id_or_name():
    store = _store()
    assert store.get_definition("fmtc-daily").name == "FMTC daily"
    assert store.get_definition("Mytheresa weekly").id == "mt-weekly"
    assert store.get_definition("missing") is None


def test_store_rejects_backward_updates():
    store = _store()
    execution = TaskExecution(definition_id="fmtc-daily")
    store.create_execution(execution)
    claimed = store.claim_execution(execution.id)
    assert claimed.status == TaskStatus.RUNNING
    assert store.claim_execution(execution.id) is None

    claimed.transition(TaskStatus.COMPLETED)
    store.update_execution(claimed)

    stale = store.get_execution(execution.id)
    stale.status = TaskStatus.RUNNING
    with pytest.raises(InvalidTransitionError):
        store.update_execution(stale)


def test_store_update_unknown_execution():
    with pytest.raises(TaskNotFoundError):
        _store().update_execution(TaskExecution(definition_id="fmtc-daily"))


def test_records_only_saved_while_running():
    store = _store()
    execution = TaskExecution(definition_id="fmtc-daily")
    store.create_execution(execution)
    record = ExtractedRecord(url="https://account.fmtc.co/m/1", site="fmtc", name="Alpha")

    with pytest.raises(InvalidTransitionError):
        store.save_records(execution.id, [record])

    store.claim_execution(execution.id)
    assert store.save_records(execution.id, [record, record]) == 2
    saved = store.list_records(execution.id)
    assert len(saved) == 1
    assert saved[0].execution_id == execution.id


def test_log_cursor_paging():
    store = _store()
    for index in range(5):
        store.append_log(LogEntry(execution_id="e1", message=f"line {index}"))
    store.append_log(LogEntry(execution_id="e2", message="other"))

    first = store.list_logs("e1", after_id=0, limit=3)
    assert [entry.message for entry in first] == ["line 0", "line 1", "line 2"]
    rest = store.list_logs("e1", after_id=first[-1].id)
    assert [entry.message for entry in rest] == ["line 3", "line 4"]


def test_stats_and_purge():
    store = _store()
    done = TaskExecution(definition_id="fmtc-daily")
    store.create_execution(done)
    done.transition(TaskStatus.CANCELLED)
    done.finished_at = done.finished_at - timedelta(days=10)
    store.update_execution(done)
    store.create_execution(TaskExecution(definition_id="fmtc-daily"))

    assert store.get_stats() == {"CANCELLED": 1, "QUEUED": 1}
    assert store.purge_finished(7) == 1
    assert store.get_stats() == {"QUEUED": 1}
