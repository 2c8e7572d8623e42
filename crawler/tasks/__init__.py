"""Task definitions, executions, persistence and the queue manager."""
from .definitions import load_definitions
from .execution import TaskExecution, TaskStatus, TriggerType, can_transition
from .manager import TaskQueueManager
from .store import InMemoryTaskStore, PostgresTaskStore, TaskStore

__all__ = [
    "InMemoryTaskStore",
    "PostgresTaskStore",
    "TaskExecution",
    "TaskQueueManager",
    "TaskStatus",
    "TaskStore",
    "TriggerType",
    "can_transition",
    "load_definitions",
]
