"""In-memory storage backend, used when no database is configured and in tests."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Iterator
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from blackroad_tasks.errors import NotFoundError
from blackroad_tasks.storage.base import (
    TaskView,
    check_claimant_invariant,
    check_transition_request,
    monotonic_now,
    normalize_new_task,
    transition_error,
    transition_timestamps,
)
from blackroad_tasks.storage.models import Task, TaskFilter

logger = logging.getLogger(__name__)


class InMemoryTaskStorage:
    """Thread-safe dict-backed task store.

    All reads and writes go through one lock. The lock is held only for the
    check-then-set of a transition and for snapshotting, never across I/O.
    Returned tasks are copies; callers cannot mutate stored records.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}
        self._lock = threading.Lock()

    def migrate(self) -> None:
        return None

    def create_task(
        self,
        title: str,
        description: str,
        priority: str = "normal",
        tags: Iterable[str] | None = None,
    ) -> Task:
        clean_title, clean_description, priority, clean_tags = normalize_new_task(
            title, description, priority, tags
        )
        now = datetime.now(UTC)
        record = Task(
            task_id=str(uuid4()),
            title=clean_title,
            description=clean_description,
            priority=priority,
            tags=clean_tags,
            status="open",
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._tasks[record.task_id] = record
        logger.debug("task_store event=created task_id=%s priority=%s", record.task_id, priority)
        return record.model_copy(deep=True)

    def get_task(self, task_id: str) -> Task:
        with self._lock:
            current = self._tasks.get(task_id)
        if current is None:
            raise NotFoundError(f"Task {task_id} not found")
        return current.model_copy(deep=True)

    def list_tasks(self, task_filter: TaskFilter | None = None) -> TaskView:
        return TaskView(self._scan, task_filter or TaskFilter())

    def transition(
        self,
        task_id: str,
        from_status: str,
        to_status: str,
        *,
        fields: dict[str, Any] | None = None,
        expected_claimant: str | None = None,
    ) -> Task:
        fields = dict(fields or {})
        check_transition_request(from_status, to_status, fields)
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                raise NotFoundError(f"Task {task_id} not found")
            error = transition_error(current, task_id, from_status, expected_claimant)
            if error is not None:
                raise error
            now = monotonic_now(datetime.now(UTC), current.updated_at)
            update: dict[str, Any] = {
                **fields,
                **transition_timestamps(to_status, now),
                "status": to_status,
                "version": current.version + 1,
                "updated_at": now,
            }
            updated = Task.model_validate({**current.model_dump(), **update})
            check_claimant_invariant(updated)
            self._tasks[task_id] = updated
        logger.debug(
            "task_store event=transition task_id=%s from=%s to=%s version=%s",
            task_id,
            from_status,
            to_status,
            updated.version,
        )
        return updated.model_copy(deep=True)

    def _scan(self, task_filter: TaskFilter) -> Iterator[Task]:
        with self._lock:
            snapshot = list(self._tasks.values())
        for task in snapshot:
            if task_filter.matches(task):
                yield task.model_copy(deep=True)
