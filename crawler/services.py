"""Wiring of stores, queue, scraper and progress for CLI, API and flows."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from crawler.antibot.captcha import TwoCaptchaSolver
from crawler.antibot.storage import SessionManager
from crawler.progress import ConnectionRegistry, ProgressReporter
from crawler.scraper.orchestrator import SiteScraper
from crawler.settings import Settings
from crawler.tasks import (
    InMemoryTaskStore,
    PostgresTaskStore,
    TaskExecution,
    TaskQueueManager,
    TaskStore,
    TriggerType,
    load_definitions,
)
from crawler.tasks.manager import Runner

LOGGER = logging.getLogger(__name__)


def build_store(settings: Settings) -> TaskStore:
    """Postgres when ``DATABASE_URL`` is configured, else in-process.

    Definitions from ``TASK_DEFINITIONS_FILE`` are upserted into either.
    """
    definitions = load_definitions(settings.definitions_file) if settings.definitions_file else []
    if settings.database_url:
        store: TaskStore = PostgresTaskStore(settings.database_url)
        for definition in definitions:
            store.add_definition(definition)
        LOGGER.info("Using Postgres task store (%d definition(s) synced)", len(definitions))
        return store
    LOGGER.info("Using in-memory task store")
    return InMemoryTaskStore(definitions)


def build_captcha_provider(settings: Settings) -> Optional[TwoCaptchaSolver]:
    if settings.captcha_mode != "auto":
        return None
    if not settings.captcha_api_key:
        LOGGER.warning("CAPTCHA_MODE=auto but TWOCAPTCHA_API_KEY is not set; CAPTCHAs will fail")
        return None
    return TwoCaptchaSolver(settings.captcha_api_key)


def build_sessions(settings: Settings) -> SessionManager:
    return SessionManager(settings.storage_dir, max_age_seconds=settings.session_max_age_seconds)


@dataclass
class EngineServices:
    settings: Settings
    store: TaskStore
    registry: ConnectionRegistry
    sessions: SessionManager
    manager: TaskQueueManager

    def reporter(self, execution_id: str) -> ProgressReporter:
        return ProgressReporter(execution_id, self.registry, self.store, self.settings.log_api_endpoint)


def build_services(
    settings: Optional[Settings] = None,
    *,
    store: Optional[TaskStore] = None,
    runner: Optional[Runner] = None,
    registry: Optional[ConnectionRegistry] = None,
) -> EngineServices:
    """Assemble the engine.

    ``store`` and ``runner`` default to :func:`build_store` and a
    :class:`SiteScraper`; tests pass fakes.
    """
    settings = settings or Settings.from_env()
    store = store if store is not None else build_store(settings)
    registry = registry or ConnectionRegistry()
    sessions = build_sessions(settings)
    if runner is None:
        runner = SiteScraper(settings, store, sessions, captcha_provider=build_captcha_provider(settings))

    def reporter_factory(execution_id: str) -> ProgressReporter:
        return ProgressReporter(execution_id, registry, store, settings.log_api_endpoint)

    manager = TaskQueueManager(store, runner, settings, reporter_factory=reporter_factory)
    return EngineServices(settings=settings, store=store, registry=registry, sessions=sessions, manager=manager)


async def run_definition_once(
    ref: str,
    settings: Optional[Settings] = None,
    *,
    timeout: Optional[float] = None,
    services: Optional[EngineServices] = None,
) -> TaskExecution:
    """Queue one execution of ``ref``, wait for it to finish and return it.

    When ``timeout`` expires first the execution is cancelled and returned
    in its final state.
    """
    services = services or build_services(settings)
    await services.manager.initialize()
    execution = await services.manager.enqueue(ref, TriggerType.MANUAL)
    try:
        await services.manager.wait_for_execution(execution.id, timeout)
    except asyncio.TimeoutError:
        LOGGER.warning("Execution %s still running after %.0fs; cancelling", execution.id, timeout)
        await services.manager.cancel(execution.id)
    finally:
        await services.manager.shutdown()
    return services.store.get_execution(execution.id) or execution
