"""Storage interface for the task lifecycle plus helpers shared by backends."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator
from datetime import datetime
from typing import Any, Protocol

from blackroad_tasks.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    TaskMarketError,
    ValidationError,
)
from blackroad_tasks.storage.models import (
    ALLOWED_TRANSITIONS,
    TASK_PRIORITIES,
    TERMINAL_STATUSES,
    Task,
    TaskFilter,
)

# Fields a caller may set through transition(); timestamps and version are store-owned.
TRANSITION_FIELDS = frozenset({"claimed_by", "result"})


class TaskView:
    """Lazily evaluated, restartable view over the tasks matching a filter.

    Nothing is read until iteration starts, and every new iteration reads the
    store again, so a view can be kept and re-walked to observe later changes.
    """

    def __init__(self, scan: Callable[[TaskFilter], Iterable[Task]], task_filter: TaskFilter) -> None:
        self._scan = scan
        self.task_filter = task_filter

    def __iter__(self) -> Iterator[Task]:
        return iter(self._scan(self.task_filter))

    def __repr__(self) -> str:
        return f"TaskView(filter={self.task_filter.model_dump(exclude_defaults=True)!r})"


class TaskStorage(Protocol):
    def migrate(self) -> None: ...

    def create_task(
        self,
        title: str,
        description: str,
        priority: str = "normal",
        tags: Iterable[str] | None = None,
    ) -> Task: ...

    def get_task(self, task_id: str) -> Task: ...

    def list_tasks(self, task_filter: TaskFilter | None = None) -> TaskView: ...

    def transition(
        self,
        task_id: str,
        from_status: str,
        to_status: str,
        *,
        fields: dict[str, Any] | None = None,
        expected_claimant: str | None = None,
    ) -> Task: ...


def normalize_new_task(
    title: str,
    description: str,
    priority: str,
    tags: Iterable[str] | None,
) -> tuple[str, str, str, set[str]]:
    """Validate create_task input and return stripped values."""
    clean_title = (title or "").strip()
    clean_description = (description or "").strip()
    if not clean_title:
        raise ValidationError("title is required")
    if not clean_description:
        raise ValidationError("description is required")
    if priority not in TASK_PRIORITIES:
        raise ValidationError(
            f"priority must be one of {sorted(TASK_PRIORITIES)}, got {priority!r}"
        )
    if isinstance(tags, str):
        raise ValidationError("tags must be a collection of strings, not a string")
    clean_tags: set[str] = set()
    for tag in tags or ():
        if not isinstance(tag, str):
            raise ValidationError(f"tags must be strings, got {type(tag).__name__}")
        if tag.strip():
            clean_tags.add(tag.strip())
    return clean_title, clean_description, priority, clean_tags


def check_transition_request(from_status: str, to_status: str, fields: dict[str, Any]) -> None:
    """Reject requests that can never succeed, whatever the stored state."""
    if (from_status, to_status) not in ALLOWED_TRANSITIONS:
        raise ValidationError(f"Illegal transition {from_status} -> {to_status}")
    unknown = set(fields) - TRANSITION_FIELDS
    if unknown:
        raise ValidationError(f"Unsupported transition fields: {sorted(unknown)}")
    if "result" in fields and to_status not in TERMINAL_STATUSES:
        raise ValidationError("result can only be recorded on a terminal transition")
    # claimed_by is set iff the task leaves "open".
    if to_status == "claimed" and not fields.get("claimed_by"):
        raise ValidationError("claimed_by is required to claim a task")
    if to_status == "open" and fields.get("claimed_by", "") is not None:
        raise ValidationError("claimed_by must be cleared when reopening a task")
    if to_status in TERMINAL_STATUSES and "claimed_by" in fields:
        raise ValidationError("claimed_by cannot change on a terminal transition")


def transition_error(
    current: Task | None,
    task_id: str,
    from_status: str,
    expected_claimant: str | None,
) -> TaskMarketError | None:
    """Return the error explaining why a guarded transition cannot apply, if any.

    The claimant guard is checked before the status guard so that a caller who
    does not hold the claim is always told so, whatever the task status.
    """
    if current is None:
        return NotFoundError(f"Task {task_id} not found")
    if expected_claimant is not None and current.claimed_by != expected_claimant:
        return ForbiddenError(f"Agent {expected_claimant} does not hold the claim on task {task_id}")
    if current.status != from_status:
        return ConflictError(
            f"Task {task_id} is {current.status}, expected {from_status}",
            current_status=current.status,
        )
    return None


def transition_timestamps(to_status: str, now: datetime) -> dict[str, Any]:
    """Timestamp columns stamped (or cleared) by entering `to_status`."""
    if to_status == "claimed":
        return {"claimed_at": now}
    if to_status == "open":
        return {"claimed_at": None}
    return {"completed_at": now}


def check_claimant_invariant(task: Task) -> None:
    if (task.status != "open") != (task.claimed_by is not None):
        raise ValidationError(
            f"Task {task.task_id} would be {task.status} with claimed_by={task.claimed_by!r}"
        )


def monotonic_now(now: datetime, previous: datetime) -> datetime:
    """Clamp a wall-clock reading so task timestamps never go backwards."""
    return now if now >= previous else previous
