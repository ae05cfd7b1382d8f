"""Task store backends and models."""

from blackroad_tasks.storage.base import TaskStorage, TaskView
from blackroad_tasks.storage.memory import InMemoryTaskStorage
from blackroad_tasks.storage.models import Task, TaskFilter, TaskResult
from blackroad_tasks.storage.postgres import PostgresTaskStorage

__all__ = [
    "InMemoryTaskStorage",
    "PostgresTaskStorage",
    "Task",
    "TaskFilter",
    "TaskResult",
    "TaskStorage",
    "TaskView",
]
