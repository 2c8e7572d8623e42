"""Task execution record and its forward-only state machine."""
from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from crawler.errors import InvalidTransitionError
from crawler.models import utcnow

LOGGER = logging.getLogger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 1999


class TaskStatus(str, Enum):
    """Task execution status."""

    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class TriggerType(str, Enum):
    MANUAL = "MANUAL"
    CRON = "CRON"
    API = "API"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})

ALLOWED_TRANSITIONS: Dict[TaskStatus, frozenset] = {
    # QUEUED may also end without running: cancelled before dispatch or
    # rejected at dispatch time.
    TaskStatus.QUEUED: frozenset({TaskStatus.RUNNING, TaskStatus.CANCELLED, TaskStatus.FAILED}),
    TaskStatus.RUNNING: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


def can_transition(current: TaskStatus, new: TaskStatus) -> bool:
    return new in ALLOWED_TRANSITIONS[current]


@dataclass
class TaskExecution:
    """One concrete run of a task definition."""

    definition_id: str
    trigger_type: TriggerType = TriggerType.MANUAL
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: TaskStatus = TaskStatus.QUEUED
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error_message: Optional[str] = None
    metrics: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition(
        self,
        new_status: TaskStatus,
        *,
        error: Optional[str] = None,
        metrics: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Move to ``new_status`` or raise :class:`InvalidTransitionError`.

        Timestamps are set as a side effect: ``started_at`` on RUNNING and
        ``finished_at`` on any terminal status.
        """
        if not can_transition(self.status, new_status):
            raise InvalidTransitionError(
                f"Execution {self.id}: {self.status.value} -> {new_status.value} is not allowed"
            )

        now = utcnow()
        if new_status == TaskStatus.RUNNING:
            self.started_at = now
        if new_status in TERMINAL_STATUSES:
            self.finished_at = now
        if error is not None:
            self.error_message = error[:MAX_ERROR_MESSAGE_LENGTH]
        if metrics:
            self.metrics.update(metrics)

        LOGGER.debug("Execution %s: %s -> %s", self.id, self.status.value, new_status.value)
        self.status = new_status

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the camelCase dictionary the API returns."""
        data = asdict(self)
        return {
            "id": data["id"],
            "definitionId": data["definition_id"],
            "status": self.status.value,
            "triggerType": self.trigger_type.value,
            "createdAt": self.created_at.isoformat(),
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "errorMessage": self.error_message,
            "metrics": data["metrics"],
        }
