"""PostgreSQL-backed task storage with automatic table migration.

Transitions are a single conditional UPDATE, so the status guard holds across
processes sharing the database, not only across threads of one process.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from collections.abc import Iterable, Iterator
from datetime import UTC, datetime
from typing import Any

from blackroad_tasks.errors import ConflictError, NotFoundError
from blackroad_tasks.storage.base import (
    TaskView,
    check_transition_request,
    normalize_new_task,
    transition_error,
    transition_timestamps,
)
from blackroad_tasks.storage.models import Task, TaskFilter, TaskResult

logger = logging.getLogger(__name__)


class PostgresTaskStorage:
    """Persist tasks in PostgreSQL."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("BLACKROAD_TASKS_DATABASE_URL is required")
        self.database_url = database_url
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    task_id UUID PRIMARY KEY,
                    title TEXT NOT NULL,
                    description TEXT NOT NULL,
                    priority TEXT NOT NULL DEFAULT 'normal',
                    tags_json JSONB NOT NULL DEFAULT '[]'::jsonb,
                    status TEXT NOT NULL DEFAULT 'open',
                    claimed_by TEXT,
                    result_json JSONB,
                    version INTEGER NOT NULL DEFAULT 1,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL,
                    claimed_at TIMESTAMPTZ,
                    completed_at TIMESTAMPTZ,
                    CONSTRAINT tasks_claimant_matches_status
                        CHECK ((status = 'open') = (claimed_by IS NULL))
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_tasks_status
                ON tasks(status)
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_tasks_priority
                ON tasks(priority)
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_tasks_tags
                ON tasks USING GIN (tags_json)
                """)
            conn.commit()

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
        task_id = uuid.uuid4()
        now = datetime.now(tz=UTC)
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO tasks (
                    task_id,
                    title,
                    description,
                    priority,
                    tags_json,
                    status,
                    version,
                    created_at,
                    updated_at
                )
                VALUES (%s, %s, %s, %s, %s, 'open', 1, %s, %s)
                RETURNING *
                """,
                (
                    task_id,
                    clean_title,
                    clean_description,
                    priority,
                    self._json_wrapper(sorted(clean_tags)),
                    now,
                    now,
                ),
            ).fetchone()
            conn.commit()
        if row is None:
            raise RuntimeError("Failed to load created task")
        return self._row_to_task(row)

    def get_task(self, task_id: str) -> Task:
        task = self._fetch(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        return task

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
        now = datetime.now(tz=UTC)

        # SET expressions read the pre-update row, so GREATEST() keeps timestamps monotonic.
        assignments = [
            "status = %s",
            "version = version + 1",
            "updated_at = GREATEST(updated_at, %s)",
        ]
        params: list[Any] = [to_status, now]
        if "claimed_by" in fields:
            assignments.append("claimed_by = %s")
            params.append(fields["claimed_by"])
        if "result" in fields:
            result = fields["result"]
            assignments.append("result_json = %s")
            params.append(
                self._json_wrapper(TaskResult.model_validate(result).model_dump(mode="json"))
                if result is not None
                else None
            )
        for column, value in transition_timestamps(to_status, now).items():
            if value is None:
                assignments.append(f"{column} = NULL")
            else:
                assignments.append(f"{column} = GREATEST(updated_at, %s)")
                params.append(value)

        conditions = ["task_id::text = %s", "status = %s"]
        params.extend([task_id, from_status])
        if expected_claimant is not None:
            conditions.append("claimed_by = %s")
            params.append(expected_claimant)

        query = (
            f"UPDATE tasks SET {', '.join(assignments)} "
            f"WHERE {' AND '.join(conditions)} RETURNING *"
        )
        with self._lock, self._connect() as conn:
            row = conn.execute(query, tuple(params)).fetchone()
            conn.commit()

        if row is None:
            # Nothing matched: explain from the row as it stands now.
            error = transition_error(self._fetch(task_id), task_id, from_status, expected_claimant)
            if error is None:
                # Another writer moved the row away and back between the UPDATE and the re-read.
                error = ConflictError(f"Task {task_id} changed concurrently; re-read and retry")
            raise error
        updated = self._row_to_task(row)
        logger.debug(
            "task_store event=transition task_id=%s from=%s to=%s version=%s",
            task_id,
            from_status,
            to_status,
            updated.version,
        )
        return updated

    def _fetch(self, task_id: str) -> Task | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tasks WHERE task_id::text = %s",
                (task_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def _scan(self, task_filter: TaskFilter) -> Iterator[Task]:
        conditions: list[str] = []
        params: list[Any] = []
        if task_filter.priority is not None:
            conditions.append("priority = %s")
            params.append(task_filter.priority)
        if task_filter.status is not None:
            conditions.append("status = %s")
            params.append(task_filter.status)
        if task_filter.tags:
            conditions.append("tags_json @> %s")
            params.append(self._json_wrapper(sorted(task_filter.tags)))
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM tasks {where} ORDER BY created_at, task_id",
                tuple(params),
            ).fetchall()
        for row in rows:
            yield self._row_to_task(row)

    def _connect(self) -> Any:
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. "
                'Install with: python -m pip install "blackroad-tasks[postgres]"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _parse_json(raw: Any) -> Any:
        if isinstance(raw, str):
            return json.loads(raw)
        return raw

    @staticmethod
    def _parse_datetime_optional(raw: Any) -> datetime | None:
        if raw is None:
            return None
        if isinstance(raw, datetime):
            return raw
        if isinstance(raw, str):
            return datetime.fromisoformat(raw)
        raise TypeError(f"Unsupported datetime value: {type(raw)!r}")

    @classmethod
    def _row_to_task(cls, row: Any) -> Task:
        tags = cls._parse_json(row.get("tags_json")) or []
        result = cls._parse_json(row.get("result_json"))
        return Task(
            task_id=str(row["task_id"]),
            title=row["title"],
            description=row["description"],
            priority=row["priority"],
            tags={str(tag) for tag in tags if isinstance(tag, str)},
            status=row["status"],
            claimed_by=row.get("claimed_by"),
            result=TaskResult.model_validate(result) if isinstance(result, dict) else None,
            version=int(row["version"]),
            created_at=cls._parse_datetime_optional(row["created_at"]),
            updated_at=cls._parse_datetime_optional(row["updated_at"]),
            claimed_at=cls._parse_datetime_optional(row.get("claimed_at")),
            completed_at=cls._parse_datetime_optional(row.get("completed_at")),
        )
