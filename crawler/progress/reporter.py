"""Per-execution progress and log reporting."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx
from tenacity import retry, stop_after_attempt, wait_random

from crawler.models import LogEntry, LogLevel, ProgressPhase, ProgressSnapshot, utcnow

from .registry import ConnectionRegistry

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT = httpx.Timeout(10.0)

_PY_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


@retry(stop=stop_after_attempt(3), wait=wait_random(1, 3))
async def push_logs(client: httpx.AsyncClient, endpoint: str, entries: List[LogEntry]) -> None:
    """POST a batch of log entries to the control plane."""
    payload = [entry.model_dump(mode="json", by_alias=True) for entry in entries]
    response = await client.post(endpoint, json=payload)
    response.raise_for_status()
    LOGGER.debug("Pushed %d log entr(ies) to %s (status=%s)", len(entries), endpoint, response.status_code)


class ProgressReporter:
    """Publishes snapshots to the registry and persists log lines.

    Counters are cumulative: each :meth:`progress` call updates only the
    counters it names and republishes the full snapshot. Log lines are
    stored immediately so SSE listeners can page through them by id; the
    optional HTTP push happens in :meth:`flush`.
    """

    def __init__(
        self,
        execution_id: str,
        registry: ConnectionRegistry,
        store=None,
        log_endpoint: Optional[str] = None,
    ) -> None:
        self.execution_id = execution_id
        self.registry = registry
        self.store = store
        self.log_endpoint = log_endpoint
        self.snapshot = ProgressSnapshot(execution_id=execution_id)
        self.entries: List[LogEntry] = []
        self._pending: List[LogEntry] = []

    def progress(self, phase: Optional[ProgressPhase] = None, message: Optional[str] = None, **counters: Any) -> ProgressSnapshot:
        update: Dict[str, Any] = {"updated_at": utcnow()}
        if phase is not None:
            update["phase"] = phase
        if message is not None:
            update["message"] = message
        for key, value in counters.items():
            if key not in ProgressSnapshot.model_fields:
                raise ValueError(f"Unknown progress counter {key!r}")
            update[key] = value
        self.snapshot = self.snapshot.model_copy(update=update)
        self.registry.publish_progress(self.snapshot)
        return self.snapshot

    def log(self, level: LogLevel, message: str, context: Optional[Dict[str, Any]] = None) -> LogEntry:
        entry = LogEntry(execution_id=self.execution_id, level=level, message=message, context=context)
        if self.store is not None:
            try:
                entry = self.store.append_log(entry)
            except Exception as exc:
                LOGGER.error("Failed to store log line for %s: %s", self.execution_id, exc)
        LOGGER.log(_PY_LEVELS[level], "[%s] %s", self.execution_id, message)
        self.entries.append(entry)
        if self.log_endpoint:
            self._pending.append(entry)
        return entry

    def info(self, message: str, **context: Any) -> LogEntry:
        return self.log(LogLevel.INFO, message, context or None)

    def warn(self, message: str, **context: Any) -> LogEntry:
        return self.log(LogLevel.WARN, message, context or None)

    def error(self, message: str, **context: Any) -> LogEntry:
        return self.log(LogLevel.ERROR, message, context or None)

    def status(self, status: str, *, finished: bool = False, error: Optional[str] = None) -> None:
        self.registry.publish_status(self.execution_id, status, finished=finished, error=error)

    async def flush(self) -> int:
        """Push pending log lines to ``log_endpoint``.

        Delivery failures are logged and the batch is dropped; the lines
        are already in the store.
        """
        if not self.log_endpoint or not self._pending:
            return 0
        batch, self._pending = self._pending, []
        try:
            async with httpx.AsyncClient(timeout=DEFAULT_TIMEOUT) as client:
                await push_logs(client, self.log_endpoint, batch)
        except Exception as exc:
            LOGGER.warning("Log push for %s failed after retries: %s", self.execution_id, exc)
            return 0
        return len(batch)
