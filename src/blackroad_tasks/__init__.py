"""Task marketplace coordination core."""

from blackroad_tasks.coordination.coordinator import Coordinator
from blackroad_tasks.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    TaskMarketError,
    ValidationError,
)
from blackroad_tasks.storage.models import Task, TaskFilter, TaskResult

__all__ = [
    "ConflictError",
    "Coordinator",
    "ForbiddenError",
    "NotFoundError",
    "Task",
    "TaskFilter",
    "TaskMarketError",
    "TaskResult",
    "ValidationError",
]
