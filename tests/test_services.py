import asyncio
from types import SimpleNamespace

from click.testing import CliRunner

from crawler import cli as cli_module
from crawler.models import TaskDefinition
from crawler.services import build_services, run_definition_once
from crawler.settings import Settings
from crawler.tasks import InMemoryTaskStore, TaskExecution, TaskStatus


async def _until_cancelled(definition, execution, reporter, cancel_event):
    await cancel_event.wait()
    return SimpleNamespace(status=TaskStatus.CANCELLED, metrics={"pages_processed": 1})


def _services(tmp_path, runner):
    store = InMemoryTaskStore([TaskDefinition(id="fmtc-daily", name="FMTC daily", site="fmtc")])
    return build_services(Settings(storage_dir=tmp_path), store=store, runner=runner)


def test_run_once_cancels_when_timeout_expires(tmp_path):
    services = _services(tmp_path, _until_cancelled)
    execution = asyncio.run(run_definition_once("fmtc-daily", timeout=0.05, services=services))

    assert execution.status == TaskStatus.CANCELLED
    assert execution.error_message == "Cancelled by request"
    assert execution.metrics == {"pages_processed": 1}


def test_run_once_returns_finished_execution(tmp_path):
    async def quick(definition, execution, reporter, cancel_event):
        return SimpleNamespace(status=TaskStatus.COMPLETED, metrics={"records_extracted": 2})

    services = _services(tmp_path, quick)
    execution = asyncio.run(run_definition_once("FMTC daily", timeout=5, services=services))
    assert execution.status == TaskStatus.COMPLETED
    assert execution.metrics == {"records_extracted": 2}


def test_cli_run_reports_timeout_without_traceback(monkeypatch):
    async def fake_run(definition, settings, timeout=None):
        execution = TaskExecution(definition_id=definition)
        execution.transition(TaskStatus.RUNNING)
        execution.transition(TaskStatus.CANCELLED, error="Cancelled by request")
        return execution

    monkeypatch.setattr(cli_module, "run_definition_once", fake_run)
    result = CliRunner().invoke(cli_module.cli, ["run", "fmtc-daily", "--timeout", "5"])

    assert result.exit_code == 1
    assert result.exception is None or isinstance(result.exception, SystemExit)
    assert "Timed out after 5s" in result.output
    assert '"status": "CANCELLED"' in result.output


def test_cli_run_turns_wait_timeout_into_click_error(monkeypatch):
    async def fake_run(definition, settings, timeout=None):
        raise asyncio.TimeoutError()

    monkeypatch.setattr(cli_module, "run_definition_once", fake_run)
    result = CliRunner().invoke(cli_module.cli, ["run", "fmtc-daily", "--timeout", "2"])

    assert result.exit_code == 1
    assert "Error: Timed out after 2.0s" in result.output
