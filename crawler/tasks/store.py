"""Persistence for task definitions, executions, logs and extracted records.

Two backends share the :class:`TaskStore` protocol: an in-process store
(tests, single-node runs driven by a YAML definitions file) and Postgres.
"""
from __future__ import annotations

import copy
import json
import logging
import threading
from datetime import timedelta
from typing import Any, Dict, List, Optional, Protocol, Sequence

import psycopg2
from psycopg2.extras import RealDictCursor

from crawler.errors import InvalidTransitionError, TaskNotFoundError
from crawler.models import ExtractedRecord, LogEntry, TaskDefinition, utcnow

from .execution import TaskExecution, TaskStatus, TriggerType, can_transition

LOGGER = logging.getLogger(__name__)


class TaskStore(Protocol):
    """Storage interface used by the queue manager, reporter and API."""

    def add_definition(self, definition: TaskDefinition) -> None:
        ...

    def get_definition(self, ref: str) -> Optional[TaskDefinition]:
        """Look a definition up by id, then by name."""
        ...

    def list_definitions(self) -> List[TaskDefinition]:
        ...

    def create_execution(self, execution: TaskExecution) -> None:
        ...

    def get_execution(self, execution_id: str) -> Optional[TaskExecution]:
        ...

    def list_executions(self, status: Optional[TaskStatus] = None) -> List[TaskExecution]:
        """Executions ordered by creation time."""
        ...

    def claim_execution(self, execution_id: str) -> Optional[TaskExecution]:
        """Atomically move a QUEUED execution to RUNNING; None if not QUEUED."""
        ...

    def update_execution(self, execution: TaskExecution) -> None:
        """Persist ``execution``; rejects moves against the state machine."""
        ...

    def save_records(self, execution_id: str, records: Sequence[ExtractedRecord]) -> int:
        """Persist records of a RUNNING execution, overwriting re-scrapes."""
        ...

    def list_records(self, execution_id: str) -> List[ExtractedRecord]:
        ...

    def append_log(self, entry: LogEntry) -> LogEntry:
        """Store ``entry`` and return it with its monotonic id."""
        ...

    def list_logs(self, execution_id: str, after_id: int = 0, limit: int = 50) -> List[LogEntry]:
        ...

    def get_stats(self) -> Dict[str, int]:
        ...

    def purge_finished(self, older_than_days: int = 7) -> int:
        ...


def _check_update(current: TaskStatus, new: TaskStatus, execution_id: str) -> None:
    if current != new and not can_transition(current, new):
        raise InvalidTransitionError(
            f"Execution {execution_id}: stored status {current.value} cannot become {new.value}"
        )


class InMemoryTaskStore:
    """Thread-safe in-process store."""

    def __init__(self, definitions: Sequence[TaskDefinition] = ()) -> None:
        self._lock = threading.Lock()
        self._definitions: Dict[str, TaskDefinition] = {}
        self._executions: Dict[str, TaskExecution] = {}
        self._records: Dict[str, Dict[str, ExtractedRecord]] = {}
        self._logs: List[LogEntry] = []
        self._next_log_id = 1
        for definition in definitions:
            self.add_definition(definition)

    def add_definition(self, definition: TaskDefinition) -> None:
        with self._lock:
            self._definitions[definition.id] = definition

    def get_definition(self, ref: str) -> Optional[TaskDefinition]:
        with self._lock:
            if ref in self._definitions:
                return self._definitions[ref]
            for definition in self._definitions.values():
                if definition.name == ref:
                    return definition
        return None

    def list_definitions(self) -> List[TaskDefinition]:
        with self._lock:
            return list(self._definitions.values())

    def create_execution(self, execution: TaskExecution) -> None:
        with self._lock:
            self._executions[execution.id] = copy.deepcopy(execution)

    def get_execution(self, execution_id: str) -> Optional[TaskExecution]:
        with self._lock:
            execution = self._executions.get(execution_id)
            return copy.deepcopy(execution) if execution else None

    def list_executions(self, status: Optional[TaskStatus] = None) -> List[TaskExecution]:
        with self._lock:
            items = [e for e in self._executions.values() if status is None or e.status == status]
            return [copy.deepcopy(e) for e in sorted(items, key=lambda e: e.created_at)]

    def claim_execution(self, execution_id: str) -> Optional[TaskExecution]:
        with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None or execution.status != TaskStatus.QUEUED:
                return None
            execution.transition(TaskStatus.RUNNING)
            return copy.deepcopy(execution)

    def update_execution(self, execution: TaskExecution) -> None:
        with self._lock:
            current = self._executions.get(execution.id)
            if current is None:
                raise TaskNotFoundError(f"Execution {execution.id} not found")
            _check_update(current.status, execution.status, execution.id)
            self._executions[execution.id] = copy.deepcopy(execution)

    def save_records(self, execution_id: str, records: Sequence[ExtractedRecord]) -> int:
        with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None or execution.status != TaskStatus.RUNNING:
                raise InvalidTransitionError(f"Execution {execution_id} is not RUNNING; records rejected")
            bucket = self._records.setdefault(execution_id, {})
            for record in records:
                bucket[record.url] = record.model_copy(update={"execution_id": execution_id})
            return len(records)

    def list_records(self, execution_id: str) -> List[ExtractedRecord]:
        with self._lock:
            return list(self._records.get(execution_id, {}).values())

    def append_log(self, entry: LogEntry) -> LogEntry:
        with self._lock:
            stored = entry.model_copy(update={"id": self._next_log_id})
            self._next_log_id += 1
            self._logs.append(stored)
            return stored

    def list_logs(self, execution_id: str, after_id: int = 0, limit: int = 50) -> List[LogEntry]:
        with self._lock:
            result = [e for e in self._logs if e.execution_id == execution_id and (e.id or 0) > after_id]
            return result[:limit]

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            stats: Dict[str, int] = {}
            for execution in self._executions.values():
                stats[execution.status.value] = stats.get(execution.status.value, 0) + 1
            return stats

    def purge_finished(self, older_than_days: int = 7) -> int:
        cutoff = utcnow() - timedelta(days=older_than_days)
        with self._lock:
            stale = [
                e.id
                for e in self._executions.values()
                if e.is_terminal and e.finished_at is not None and e.finished_at < cutoff
            ]
            for execution_id in stale:
                del self._executions[execution_id]
                self._records.pop(execution_id, None)
            self._logs = [entry for entry in self._logs if entry.execution_id not in stale]
        if stale:
            LOGGER.info("Purged %d finished execution(s)", len(stale))
        return len(stale)


class PostgresTaskStore:
    """Postgres-backed store using one short-lived connection per call."""

    def __init__(self, conn_string: str) -> None:
        self.conn_string = conn_string
        self._ensure_tables()

    def _get_connection(self):
        return psycopg2.connect(self.conn_string)

    def _ensure_tables(self) -> None:
        create_sql = """
        CREATE TABLE IF NOT EXISTS scraper_task_definitions (
            id VARCHAR(100) PRIMARY KEY,
            name VARCHAR(200) UNIQUE NOT NULL,
            site VARCHAR(50) NOT NULL,
            enabled BOOLEAN DEFAULT TRUE,
            cron VARCHAR(100),
            payload JSONB NOT NULL,
            updated_at TIMESTAMPTZ DEFAULT NOW()
        );

        CREATE TABLE IF NOT EXISTS scraper_task_executions (
            id VARCHAR(64) PRIMARY KEY,
            definition_id VARCHAR(100) NOT NULL,
            status VARCHAR(20) NOT NULL DEFAULT 'QUEUED',
            trigger_type VARCHAR(20) NOT NULL,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            started_at TIMESTAMPTZ,
            finished_at TIMESTAMPTZ,
            error_message VARCHAR(2000),
            metrics JSONB
        );

        CREATE INDEX IF NOT EXISTS idx_executions_status_created
            ON scraper_task_executions(status, created_at);

        CREATE TABLE IF NOT EXISTS scraper_execution_logs (
            id BIGSERIAL PRIMARY KEY,
            execution_id VARCHAR(64) NOT NULL,
            level VARCHAR(10) NOT NULL,
            message TEXT NOT NULL,
            context JSONB,
            ts TIMESTAMPTZ DEFAULT NOW()
        );

        CREATE INDEX IF NOT EXISTS idx_logs_execution
            ON scraper_execution_logs(execution_id, id);

        CREATE TABLE IF NOT EXISTS scraper_records (
            id BIGSERIAL PRIMARY KEY,
            site VARCHAR(50) NOT NULL,
            url TEXT NOT NULL,
            execution_id VARCHAR(64) NOT NULL,
            source_id VARCHAR(200),
            payload JSONB NOT NULL,
            scraped_at TIMESTAMPTZ NOT NULL,

            CONSTRAINT uq_record_site_url UNIQUE (site, url)
        );
        """
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(create_sql)
                conn.commit()
        LOGGER.info("Ensured scraper tables exist")

    # -- definitions ---------------------------------------------------

    def add_definition(self, definition: TaskDefinition) -> None:
        upsert_sql = """
        INSERT INTO scraper_task_definitions (id, name, site, enabled, cron, payload)
        VALUES (%s, %s, %s, %s, %s, %s)
        ON CONFLICT (id) DO UPDATE
        SET name = EXCLUDED.name,
            site = EXCLUDED.site,
            enabled = EXCLUDED.enabled,
            cron = EXCLUDED.cron,
            payload = EXCLUDED.payload,
            updated_at = NOW()
        """
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    upsert_sql,
                    (
                        definition.id,
                        definition.name,
                        definition.site,
                        definition.enabled,
                        definition.cron,
                        definition.model_dump_json(),
                    ),
                )
                conn.commit()

    def get_definition(self, ref: str) -> Optional[TaskDefinition]:
        select_sql = """
        SELECT payload, enabled FROM scraper_task_definitions
        WHERE id = %s OR name = %s
        ORDER BY (id = %s) DESC
        LIMIT 1
        """
        with self._get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(select_sql, (ref, ref, ref))
                row = cur.fetchone()
        if not row:
            return None
        return self._definition_from_row(row)

    def list_definitions(self) -> List[TaskDefinition]:
        with self._get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute("SELECT payload, enabled FROM scraper_task_definitions ORDER BY name")
                rows = cur.fetchall()
        return [self._definition_from_row(row) for row in rows]

    @staticmethod
    def _definition_from_row(row: Dict[str, Any]) -> TaskDefinition:
        definition = TaskDefinition.model_validate(row["payload"])
        # The enabled column is what operators toggle.
        return definition.model_copy(update={"enabled": bool(row["enabled"])})

    # -- executions ----------------------------------------------------

    _EXECUTION_COLUMNS = (
        "id, definition_id, status, trigger_type, created_at, started_at, finished_at, error_message, metrics"
    )

    @staticmethod
    def _execution_from_row(row: Dict[str, Any]) -> TaskExecution:
        return TaskExecution(
            id=row["id"],
            definition_id=row["definition_id"],
            status=TaskStatus(row["status"]),
            trigger_type=TriggerType(row["trigger_type"]),
            created_at=row["created_at"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            error_message=row["error_message"],
            metrics=row["metrics"] or {},
        )

    def create_execution(self, execution: TaskExecution) -> None:
        insert_sql = f"""
        INSERT INTO scraper_task_executions ({self._EXECUTION_COLUMNS})
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
        """
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    insert_sql,
                    (
                        execution.id,
                        execution.definition_id,
                        execution.status.value,
                        execution.trigger_type.value,
                        execution.created_at,
                        execution.started_at,
                        execution.finished_at,
                        execution.error_message,
                        json.dumps(execution.metrics),
                    ),
                )
                conn.commit()

    def get_execution(self, execution_id: str) -> Optional[TaskExecution]:
        with self._get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"SELECT {self._EXECUTION_COLUMNS} FROM scraper_task_executions WHERE id = %s",
                    (execution_id,),
                )
                row = cur.fetchone()
        return self._execution_from_row(row) if row else None

    def list_executions(self, status: Optional[TaskStatus] = None) -> List[TaskExecution]:
        query = f"SELECT {self._EXECUTION_COLUMNS} FROM scraper_task_executions"
        params: tuple = ()
        if status is not None:
            query += " WHERE status = %s"
            params = (status.value,)
        query += " ORDER BY created_at ASC"
        with self._get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, params)
                rows = cur.fetchall()
        return [self._execution_from_row(row) for row in rows]

    def claim_execution(self, execution_id: str) -> Optional[TaskExecution]:
        # Row lock + status guard: only one worker process wins the claim.
        claim_sql = f"""
        UPDATE scraper_task_executions
        SET status = 'RUNNING',
            started_at = NOW()
        WHERE id IN (
            SELECT id FROM scraper_task_executions
            WHERE id = %s AND status = 'QUEUED'
            FOR UPDATE SKIP LOCKED
        )
        RETURNING {self._EXECUTION_COLUMNS}
        """
        with self._get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(claim_sql, (execution_id,))
                row = cur.fetchone()
                conn.commit()
        return self._execution_from_row(row) if row else None

    def update_execution(self, execution: TaskExecution) -> None:
        # The WHERE clause refuses to touch terminal rows, so a late writer
        # cannot move an execution out of a terminal state.
        update_sql = """
        UPDATE scraper_task_executions
        SET status = %s,
            started_at = %s,
            finished_at = %s,
            error_message = %s,
            metrics = %s
        WHERE id = %s
          AND (status = %s OR status NOT IN ('COMPLETED', 'FAILED', 'CANCELLED'))
        """
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT status FROM scraper_task_executions WHERE id = %s", (execution.id,))
                row = cur.fetchone()
                if not row:
                    raise TaskNotFoundError(f"Execution {execution.id} not found")
                _check_update(TaskStatus(row[0]), execution.status, execution.id)
                cur.execute(
                    update_sql,
                    (
                        execution.status.value,
                        execution.started_at,
                        execution.finished_at,
                        execution.error_message,
                        json.dumps(execution.metrics),
                        execution.id,
                        execution.status.value,
                    ),
                )
                conn.commit()

    # -- records and logs ----------------------------------------------

    def save_records(self, execution_id: str, records: Sequence[ExtractedRecord]) -> int:
        upsert_sql = """
        INSERT INTO scraper_records (site, url, execution_id, source_id, payload, scraped_at)
        SELECT %s, %s, %s, %s, %s, %s
        WHERE EXISTS (
            SELECT 1 FROM scraper_task_executions WHERE id = %s AND status = 'RUNNING'
        )
        ON CONFLICT (site, url) DO UPDATE
        SET execution_id = EXCLUDED.execution_id,
            source_id = EXCLUDED.source_id,
            payload = EXCLUDED.payload,
            scraped_at = EXCLUDED.scraped_at
        """
        saved = 0
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                for record in records:
                    record = record.model_copy(update={"execution_id": execution_id})
                    cur.execute(
                        upsert_sql,
                        (
                            record.site,
                            record.url,
                            execution_id,
                            record.source_id,
                            record.model_dump_json(),
                            record.scraped_at,
                            execution_id,
                        ),
                    )
                    saved += cur.rowcount
                conn.commit()
        if saved < len(records):
            raise InvalidTransitionError(f"Execution {execution_id} is not RUNNING; records rejected")
        return saved

    def list_records(self, execution_id: str) -> List[ExtractedRecord]:
        with self._get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    "SELECT payload FROM scraper_records WHERE execution_id = %s ORDER BY id",
                    (execution_id,),
                )
                rows = cur.fetchall()
        return [ExtractedRecord.model_validate(row["payload"]) for row in rows]

    def append_log(self, entry: LogEntry) -> LogEntry:
        insert_sql = """
        INSERT INTO scraper_execution_logs (execution_id, level, message, context, ts)
        VALUES (%s, %s, %s, %s, %s)
        RETURNING id
        """
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    insert_sql,
                    (
                        entry.execution_id,
                        entry.level.value,
                        entry.message,
                        json.dumps(entry.context) if entry.context else None,
                        entry.timestamp,
                    ),
                )
                log_id = cur.fetchone()[0]
                conn.commit()
        return entry.model_copy(update={"id": log_id})

    def list_logs(self, execution_id: str, after_id: int = 0, limit: int = 50) -> List[LogEntry]:
        select_sql = """
        SELECT id, execution_id, level, message, context, ts
        FROM scraper_execution_logs
        WHERE execution_id = %s AND id > %s
        ORDER BY id ASC
        LIMIT %s
        """
        with self._get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(select_sql, (execution_id, after_id, limit))
                rows = cur.fetchall()
        return [
            LogEntry(
                id=row["id"],
                execution_id=row["execution_id"],
                level=row["level"],
                message=row["message"],
                context=row["context"],
                timestamp=row["ts"],
            )
            for row in rows
        ]

    def get_stats(self) -> Dict[str, int]:
        with self._get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute("SELECT status, COUNT(*) AS count FROM scraper_task_executions GROUP BY status")
                rows = cur.fetchall()
        return {row["status"]: row["count"] for row in rows}

    def purge_finished(self, older_than_days: int = 7) -> int:
        delete_sql = """
        WITH stale AS (
            DELETE FROM scraper_task_executions
            WHERE status IN ('COMPLETED', 'FAILED', 'CANCELLED')
              AND finished_at < NOW() - make_interval(days => %s)
            RETURNING id
        )
        DELETE FROM scraper_execution_logs WHERE execution_id IN (SELECT id FROM stale)
        """
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT COUNT(*) FROM scraper_task_executions "
                    "WHERE status IN ('COMPLETED', 'FAILED', 'CANCELLED') "
                    "AND finished_at < NOW() - make_interval(days => %s)",
                    (older_than_days,),
                )
                count = cur.fetchone()[0]
                cur.execute(delete_sql, (older_than_days,))
                conn.commit()
        if count:
            LOGGER.info("Purged %d finished execution(s)", count)
        return count
