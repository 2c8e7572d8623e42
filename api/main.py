"""FastAPI control plane: triggers, live progress, executions and log ingestion."""
from __future__ import annotations

import asyncio
import hmac
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, Header, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from crawler import __version__
from crawler.errors import QueueShutdownError, TaskNotFoundError
from crawler.models import LogEntry, ProgressSnapshot
from crawler.progress import StreamTimings, progress_event_stream
from crawler.services import EngineServices, build_services
from crawler.settings import Settings
from crawler.tasks import TriggerType
from crawler.tasks.scheduler import CronScheduler

LOGGER = logging.getLogger(__name__)

SECRET_HEADER = "x-cron-trigger-secret"
STORE_POLL_SECONDS = 10.0


def _secret_matches(expected: str, provided: Optional[str]) -> bool:
    if not provided:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def create_app(settings: Optional[Settings] = None, services: Optional[EngineServices] = None) -> FastAPI:
    """Build the API around one set of engine services.

    The lifespan restores queued executions, starts the cron scheduler and
    drains the queue on shutdown.
    """
    settings = settings or (services.settings if services else Settings.from_env())
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await services.manager.initialize()
        scheduler = CronScheduler(
            services.manager,
            poll_seconds=STORE_POLL_SECONDS if settings.database_url else None,
        )
        scheduler.start()
        LOGGER.info("Control plane started (version %s)", __version__)
        try:
            yield
        finally:
            scheduler.shutdown()
            await services.manager.shutdown()
            LOGGER.info("Control plane stopped")

    app = FastAPI(title="Scraper Control Plane", version=__version__, lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def require_secret(provided: Optional[str], *, optional: bool = False) -> None:
        expected = settings.cron_trigger_secret
        if not expected:
            if optional:
                return
            raise HTTPException(status_code=500, detail="CRON_TRIGGER_SECRET is not configured")
        if not _secret_matches(expected, provided):
            raise HTTPException(status_code=401, detail="Invalid trigger secret")

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {"status": "ok", "version": __version__, "queue": services.manager.queue_status()}

    @app.post("/trigger/{ref}")
    async def trigger(ref: str, secret: Optional[str] = Header(default=None, alias=SECRET_HEADER)) -> JSONResponse:
        require_secret(secret)
        definition = services.store.get_definition(ref)
        if definition is None:
            raise HTTPException(status_code=404, detail=f"Task definition {ref!r} not found")
        if not definition.enabled:
            LOGGER.info("Trigger for disabled definition %s ignored", definition.name)
            return JSONResponse(
                status_code=200,
                content={"executionId": None, "message": f"Task definition {definition.name!r} is disabled"},
            )
        try:
            execution = await services.manager.enqueue(definition.id, TriggerType.API)
        except QueueShutdownError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return JSONResponse(status_code=202, content={"executionId": execution.id})

    @app.get("/progress/{execution_id}")
    async def progress_stream(execution_id: str, request: Request) -> StreamingResponse:
        if services.store.get_execution(execution_id) is None and not services.registry.has_channel(execution_id):
            raise HTTPException(status_code=404, detail=f"Execution {execution_id} not found")
        stream = progress_event_stream(
            execution_id,
            services.registry,
            services.store,
            timings=StreamTimings.from_settings(settings),
            is_disconnected=request.is_disconnected,
        )
        return StreamingResponse(
            stream,
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.post("/progress/{execution_id}", status_code=204, response_class=Response)
    def push_progress(
        execution_id: str,
        snapshot: ProgressSnapshot,
        secret: Optional[str] = Header(default=None, alias=SECRET_HEADER),
    ) -> Response:
        require_secret(secret, optional=True)
        services.registry.publish_progress(snapshot.model_copy(update={"execution_id": execution_id}))
        return Response(status_code=204)

    @app.post("/logs", status_code=202)
    async def ingest_logs(
        entries: List[LogEntry],
        secret: Optional[str] = Header(default=None, alias=SECRET_HEADER),
    ) -> Dict[str, int]:
        require_secret(secret, optional=True)
        stored = 0
        for entry in entries:
            # Ids are assigned by the store; incoming ids belong to the sender.
            await asyncio.to_thread(services.store.append_log, entry.model_copy(update={"id": None}))
            stored += 1
        return {"accepted": stored}

    @app.get("/executions/{execution_id}")
    def get_execution(execution_id: str) -> Dict[str, Any]:
        execution = services.store.get_execution(execution_id)
        if execution is None:
            raise HTTPException(status_code=404, detail=f"Execution {execution_id} not found")
        return execution.to_dict()

    @app.post("/executions/{execution_id}/cancel")
    async def cancel_execution(execution_id: str) -> Dict[str, Any]:
        try:
            execution = await services.manager.cancel(execution_id)
        except TaskNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return execution.to_dict()

    @app.get("/queue/status")
    def queue_status() -> Dict[str, Any]:
        return services.manager.queue_status()

    return app
