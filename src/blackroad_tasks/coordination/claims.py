"""Claim arbitration over the task store's guarded transitions."""

from __future__ import annotations

import logging

from blackroad_tasks.errors import ConflictError, ValidationError
from blackroad_tasks.storage.base import TaskStorage
from blackroad_tasks.storage.models import TERMINAL_STATUSES, Task, TaskResult

logger = logging.getLogger(__name__)


class ClaimArbiter:
    """Serialize claim attempts so exactly one agent wins a race on a task.

    Every state change goes through `TaskStorage.transition`, whose
    compare-and-set on status is the only arbitration point. Nothing here
    waits: a losing caller gets ConflictError immediately.
    """

    def __init__(self, storage: TaskStorage) -> None:
        self.storage = storage

    def claim(self, task_id: str, agent_id: str) -> Task:
        agent_id = _require_agent(agent_id)
        try:
            task = self.storage.transition(
                task_id,
                "open",
                "claimed",
                fields={"claimed_by": agent_id},
            )
        except ConflictError as exc:
            if exc.current_status == "claimed":
                raise ConflictError(
                    f"Task {task_id} already claimed", current_status="claimed"
                ) from exc
            raise
        logger.info("claim event=claimed task_id=%s agent_id=%s", task_id, agent_id)
        return task

    def release(self, task_id: str, agent_id: str) -> Task:
        agent_id = _require_agent(agent_id)
        task = self.storage.transition(
            task_id,
            "claimed",
            "open",
            fields={"claimed_by": None},
            expected_claimant=agent_id,
        )
        logger.info("claim event=released task_id=%s agent_id=%s", task_id, agent_id)
        return task

    def settle(self, task_id: str, agent_id: str, to_status: str, result: TaskResult) -> Task:
        """Move a claimed task to a terminal state on behalf of its claimant."""
        agent_id = _require_agent(agent_id)
        if to_status not in TERMINAL_STATUSES:
            raise ValidationError(f"settle expects a terminal status, got {to_status!r}")
        task = self.storage.transition(
            task_id,
            "claimed",
            to_status,
            fields={"result": result},
            expected_claimant=agent_id,
        )
        logger.info(
            "claim event=settled task_id=%s agent_id=%s status=%s",
            task_id,
            agent_id,
            to_status,
        )
        return task


def _require_agent(agent_id: str) -> str:
    if not isinstance(agent_id, str) or not agent_id.strip():
        raise ValidationError("agent_id is required")
    return agent_id.strip()
