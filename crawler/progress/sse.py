"""Server-sent event stream for one execution."""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from pydantic import BaseModel

from crawler.models import utcnow
from crawler.tasks.execution import TaskStatus

from .registry import ConnectionRegistry

LOGGER = logging.getLogger(__name__)

HEARTBEAT = ": heartbeat\n\n"


@dataclass(frozen=True)
class StreamTimings:
    heartbeat_seconds: float = 30.0
    log_poll_seconds: float = 2.0
    log_batch_size: int = 50
    close_grace_seconds: float = 5.0
    max_connection_seconds: float = 1800.0

    @classmethod
    def from_settings(cls, settings) -> "StreamTimings":
        return cls(
            heartbeat_seconds=settings.sse_heartbeat_seconds,
            log_poll_seconds=settings.sse_log_poll_seconds,
            log_batch_size=settings.sse_log_batch_size,
            close_grace_seconds=settings.sse_close_grace_seconds,
            max_connection_seconds=settings.sse_max_connection_seconds,
        )


def format_sse(event: str, data: Any) -> str:
    """Render one SSE frame: ``event: <name>\\ndata: <json>\\n\\n``."""
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json", by_alias=True)
    return f"event: {event}\ndata: {json.dumps(data, default=str, ensure_ascii=False)}\n\n"


def _is_finished(status: Optional[str]) -> bool:
    try:
        return TaskStatus(status).is_terminal
    except ValueError:
        return False


async def progress_event_stream(
    execution_id: str,
    registry: ConnectionRegistry,
    store=None,
    timings: StreamTimings = StreamTimings(),
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
) -> AsyncIterator[str]:
    """Yield SSE frames until the execution finishes or the connection expires.

    The first ``progress`` frame a subscriber sees is the latest snapshot
    published before it connected. Log lines are read from ``store`` by id
    cursor so a reconnecting client never sees a line twice per stream.
    """
    subscription = registry.subscribe(execution_id)
    loop = asyncio.get_running_loop()
    started = loop.time()
    last_heartbeat = started
    next_log_poll = started
    close_at: Optional[float] = None
    log_cursor = 0

    async def poll_logs() -> Optional[str]:
        nonlocal log_cursor
        if store is None:
            return None
        entries = await asyncio.to_thread(store.list_logs, execution_id, log_cursor, timings.log_batch_size)
        if not entries:
            return None
        log_cursor = max(entry.id or log_cursor for entry in entries)
        return format_sse("logs", [entry.model_dump(mode="json", by_alias=True) for entry in entries])

    try:
        yield format_sse("connected", {"executionId": execution_id, "timestamp": utcnow().isoformat()})

        if store is not None:
            execution = await asyncio.to_thread(store.get_execution, execution_id)
            if execution is not None and execution.is_terminal:
                subscription.offer(
                    ("status", {"status": execution.status.value, "error": execution.error_message})
                )

        while True:
            now = loop.time()
            if now - started >= timings.max_connection_seconds:
                LOGGER.info("SSE stream for %s reached max connection time", execution_id)
                break
            if close_at is not None and now >= close_at:
                frame = await poll_logs()
                if frame:
                    yield frame
                yield format_sse("completed", {"executionId": execution_id})
                break
            if is_disconnected is not None and await is_disconnected():
                LOGGER.debug("SSE client for %s disconnected", execution_id)
                break

            deadlines = [next_log_poll, last_heartbeat + timings.heartbeat_seconds, started + timings.max_connection_seconds]
            if close_at is not None:
                deadlines.append(close_at)
            wait = max(0.0, min(deadlines) - now)

            event = await subscription.get(timeout=wait)
            if event is not None:
                name, payload = event
                if name == "status":
                    if close_at is None:
                        yield format_sse("status", payload)
                        if _is_finished(payload.get("status")):
                            close_at = loop.time() + timings.close_grace_seconds
                else:
                    yield format_sse(name, payload)

            now = loop.time()
            if now >= next_log_poll:
                frame = await poll_logs()
                if frame:
                    yield frame
                next_log_poll = now + timings.log_poll_seconds
            if now - last_heartbeat >= timings.heartbeat_seconds:
                yield HEARTBEAT
                last_heartbeat = now
    finally:
        registry.unsubscribe(subscription)
