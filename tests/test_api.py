from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from crawler.models import TaskDefinition
from crawler.services import build_services
from crawler.settings import Settings
from crawler.tasks import InMemoryTaskStore, TaskStatus

SECRET = "s3cret"


async def fake_runner(definition, execution, reporter, cancel_event):
    return SimpleNamespace(status=TaskStatus.COMPLETED, metrics={"records_extracted": 0})


def _services(tmp_path, secret=SECRET):
    settings = Settings(cron_trigger_secret=secret, storage_dir=tmp_path)
    store = InMemoryTaskStore(
        [
            TaskDefinition(id="fmtc-daily", name="FMTC daily", site="fmtc"),
            TaskDefinition(id="mt-weekly", name="Mytheresa weekly", site="mytheresa", enabled=False),
        ]
    )
    return build_services(settings, store=store, runner=fake_runner)


@pytest.fixture
def services(tmp_path):
    return _services(tmp_path)


@pytest.fixture
def client(services):
    with TestClient(create_app(services=services)) as test_client:
        yield test_client


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_trigger_requires_secret(client):
    assert client.post("/trigger/fmtc-daily").status_code == 401
    assert client.post("/trigger/fmtc-daily", headers={"x-cron-trigger-secret": "wrong"}).status_code == 401


def test_trigger_without_configured_secret(tmp_path):
    with TestClient(create_app(services=_services(tmp_path, secret=None))) as client:
        response = client.post("/trigger/fmtc-daily", headers={"x-cron-trigger-secret": SECRET})
    assert response.status_code == 500


def test_trigger_unknown_definition(client):
    response = client.post("/trigger/nope", headers={"x-cron-trigger-secret": SECRET})
    assert response.status_code == 404


def test_trigger_disabled_definition_creates_no_execution(client, services):
    response = client.post("/trigger/Mytheresa weekly", headers={"x-cron-trigger-secret": SECRET})
    assert response.status_code == 200
    assert response.json()["executionId"] is None
    assert "disabled" in response.json()["message"]
    assert services.store.list_executions() == []


def test_trigger_queues_execution(client, services):
    response = client.post("/trigger/fmtc-daily", headers={"x-cron-trigger-secret": SECRET})
    assert response.status_code == 202
    execution_id = response.json()["executionId"]

    execution = client.get(f"/executions/{execution_id}").json()
    assert execution["definitionId"] == "fmtc-daily"
    assert execution["triggerType"] == "API"
    assert execution["status"] in {"QUEUED", "RUNNING", "COMPLETED"}


def test_unknown_execution(client):
    assert client.get("/executions/missing").status_code == 404
    assert client.post("/executions/missing/cancel").status_code == 404
    assert client.get("/progress/missing").status_code == 404


def test_progress_push_updates_registry(client, services):
    response = client.post(
        "/progress/e-42",
        json={"executionId": "ignored", "phase": "scraping", "currentPage": 4, "recordsExtracted": 12},
        headers={"x-cron-trigger-secret": SECRET},
    )
    assert response.status_code == 204
    snapshot = services.registry.latest_snapshot("e-42")
    assert snapshot.execution_id == "e-42"
    assert snapshot.current_page == 4


def test_progress_push_checks_secret(client):
    response = client.post("/progress/e-42", json={"executionId": "e-42"}, headers={"x-cron-trigger-secret": "no"})
    assert response.status_code == 401


def test_log_ingestion(client, services):
    response = client.post(
        "/logs",
        json=[
            {"id": 99, "executionId": "e-7", "level": "INFO", "message": "Opened listing"},
            {"executionId": "e-7", "level": "ERROR", "message": "Login failed", "context": {"attempt": 3}},
        ],
        headers={"x-cron-trigger-secret": SECRET},
    )
    assert response.status_code == 202
    assert response.json() == {"accepted": 2}
    stored = services.store.list_logs("e-7")
    assert [entry.message for entry in stored] == ["Opened listing", "Login failed"]
    assert stored[0].id != 99


def test_queue_status(client):
    body = client.get("/queue/status").json()
    assert body["maxConcurrentTasks"] == 1
    assert body["accepting"] is True
