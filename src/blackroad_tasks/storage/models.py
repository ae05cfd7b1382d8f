"""Task models shared by the coordinator, API and persistence backends."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

# Task lifecycle states. `completed` and `failed` are terminal.
TaskStatus = Literal["open", "claimed", "completed", "failed"]
TaskPriority = Literal["low", "normal", "high", "urgent"]

TASK_PRIORITIES: frozenset[str] = frozenset({"low", "normal", "high", "urgent"})
TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed"})

# Every legal (from, to) edge of the task state machine.
ALLOWED_TRANSITIONS: frozenset[tuple[str, str]] = frozenset(
    {
        ("open", "claimed"),
        ("claimed", "open"),
        ("claimed", "completed"),
        ("claimed", "failed"),
    }
)


class TaskResult(BaseModel):
    """Outcome recorded when a task reaches a terminal state."""

    # Short indicator such as "success", "partial" or "failed".
    status: str = Field(min_length=1)
    notes: str | None = None


class Task(BaseModel):
    """Canonical task record returned by storage, coordinator and API."""

    task_id: str
    title: str
    description: str
    priority: TaskPriority = "normal"
    tags: set[str] = Field(default_factory=set)
    status: TaskStatus = "open"
    # Owning agent; present only while status is not "open".
    claimed_by: str | None = None
    result: TaskResult | None = None
    # Bumped on every committed transition; doubles as the per-task event sequence.
    version: int = 1
    created_at: datetime
    updated_at: datetime
    claimed_at: datetime | None = None
    completed_at: datetime | None = None


class TaskFilter(BaseModel):
    """Criteria for listing tasks. Unset fields match everything."""

    priority: TaskPriority | None = None
    status: TaskStatus | None = None
    # A task matches when it carries every tag listed here.
    tags: set[str] = Field(default_factory=set)

    @field_validator("tags", mode="before")
    @classmethod
    def _normalize_tags(cls, value: Any) -> Any:
        if value is None:
            return set()
        if isinstance(value, str):
            return {value}
        return value

    def matches(self, task: Task) -> bool:
        if self.priority is not None and task.priority != self.priority:
            return False
        if self.status is not None and task.status != self.status:
            return False
        return self.tags.issubset(task.tags)
