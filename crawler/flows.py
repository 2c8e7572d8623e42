"""Prefect flow wiring for ad-hoc scrape runs."""
from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, Optional

from prefect import flow, get_run_logger, task

from crawler.services import build_services, run_definition_once
from crawler.settings import Settings


@task(retries=1, retry_delay_seconds=60)
def scrape_task(definition: str, timeout: Optional[float] = None) -> Dict[str, Any]:
    """Run one execution of ``definition`` to completion."""
    logger = get_run_logger()
    settings = Settings.from_env()
    services = build_services(settings)
    execution = asyncio.run(run_definition_once(definition, settings, timeout=timeout, services=services))
    logger.info("scrape_task definition=%s execution=%s status=%s", definition, execution.id, execution.status.value)
    if execution.status.value == "FAILED":
        raise RuntimeError(f"Execution {execution.id} failed: {execution.error_message}")
    return execution.to_dict()


@task
def cleanup_task(days: int) -> Dict[str, int]:
    """Purge finished executions and expired browser sessions."""
    services = build_services(Settings.from_env())
    purged = services.store.purge_finished(days)
    sessions = services.sessions.cleanup_expired()
    get_run_logger().info("cleanup_task executions=%s sessions=%s", purged, sessions)
    return {"purged_executions": purged, "expired_sessions": sessions}


@flow(name="scrape-flow")
def scrape_flow(definition: str, timeout: Optional[float] = None, purge_days: int = 30) -> Dict[str, Any]:
    """Scrape one task definition, then tidy old executions."""
    execution = scrape_task(definition, timeout)
    cleanup = cleanup_task(purge_days)
    summary = {"execution": execution, **cleanup}
    get_run_logger().info("scrape_flow summary=%s", json.dumps(summary, default=str))
    return summary
