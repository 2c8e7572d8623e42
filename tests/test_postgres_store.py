import os

import psycopg2
import pytest

from crawler.errors import InvalidTransitionError
from crawler.models import ExtractedRecord, LogEntry, TaskDefinition
from crawler.tasks import PostgresTaskStore, TaskExecution, TaskStatus

DATABASE_URL = os.getenv("DATABASE_URL")

pytestmark = pytest.mark.skipif(not DATABASE_URL, reason="DATABASE_URL is not set")


@pytest.fixture(scope="module")
def store():
    store = PostgresTaskStore(DATABASE_URL)
    conn = psycopg2.connect(DATABASE_URL)
    with conn.cursor() as cur:
        cur.execute("TRUNCATE scraper_records, scraper_execution_logs, scraper_task_executions, scraper_task_definitions")
    conn.commit()
    conn.close()
    store.add_definition(TaskDefinition(id="fmtc-daily", name="FMTC daily", site="fmtc", cron="0 6 * * *"))
    return store


def _running(store):
    execution = TaskExecution(definition_id="fmtc-daily")
    store.create_execution(execution)
    return store.claim_execution(execution.id)


def test_definition_upsert_and_lookup(store):
    assert store.get_definition("FMTC daily").cron == "0 6 * * *"
    store.add_definition(TaskDefinition(id="fmtc-daily", name="FMTC daily", site="fmtc", enabled=False))
    definition = store.get_definition("fmtc-daily")
    assert definition.enabled is False
    assert definition.cron is None
    store.add_definition(TaskDefinition(id="fmtc-daily", name="FMTC daily", site="fmtc", cron="0 6 * * *"))


def test_claim_is_exclusive(store):
    execution = TaskExecution(definition_id="fmtc-daily")
    store.create_execution(execution)
    claimed = store.claim_execution(execution.id)
    assert claimed.status == TaskStatus.RUNNING
    assert claimed.started_at is not None
    assert store.claim_execution(execution.id) is None


def test_terminal_rows_are_not_rewritten(store):
    execution = _running(store)
    execution.transition(TaskStatus.COMPLETED, metrics={"records_extracted": 2})
    store.update_execution(execution)

    stale = store.get_execution(execution.id)
    assert stale.metrics == {"records_extracted": 2}
    stale.status = TaskStatus.RUNNING
    with pytest.raises(InvalidTransitionError):
        store.update_execution(stale)
    assert store.get_execution(execution.id).status == TaskStatus.COMPLETED


def test_records_upsert_on_site_and_url(store):
    execution = _running(store)
    first = ExtractedRecord(url="https://example.test/p/1", site="fmtc", name="Alpha")
    renamed = ExtractedRecord(url="https://example.test/p/1", site="fmtc", name="Alpha Store")
    assert store.save_records(execution.id, [first]) == 1
    store.save_records(execution.id, [renamed])

    records = store.list_records(execution.id)
    assert [r.name for r in records] == ["Alpha Store"]
    assert records[0].execution_id == execution.id


def test_records_rejected_after_finish(store):
    execution = _running(store)
    execution.transition(TaskStatus.CANCELLED)
    store.update_execution(execution)
    with pytest.raises(InvalidTransitionError):
        store.save_records(execution.id, [ExtractedRecord(url="https://example.test/p/9", site="fmtc")])


def test_logs_are_paged_by_id(store):
    execution = _running(store)
    for n in range(3):
        store.append_log(LogEntry(execution_id=execution.id, message=f"line {n}", context={"n": n}))

    first = store.list_logs(execution.id, limit=2)
    assert [e.message for e in first] == ["line 0", "line 1"]
    rest = store.list_logs(execution.id, after_id=first[-1].id)
    assert [e.context for e in rest] == [{"n": 2}]


def test_stats_count_by_status(store):
    stats = store.get_stats()
    assert stats.get("RUNNING", 0) >= 1
    assert stats.get("COMPLETED", 0) >= 1
