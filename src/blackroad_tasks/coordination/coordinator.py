"""Coordinator: the single entry point over task store, claims and notifications.

Every mutating operation runs in the same order:
1) validate input and agent identity,
2) apply one guarded transition through the claim arbiter,
3) publish the resulting event, only after step 2 committed.
A failed step raises and nothing after it runs, so there is never an event
for a transition that did not happen.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from blackroad_tasks.coordination.claims import ClaimArbiter
from blackroad_tasks.coordination.identity import AgentVerifier, AllowAllVerifier
from blackroad_tasks.coordination.notifications import EventHandler, NotificationBus
from blackroad_tasks.errors import ForbiddenError, ValidationError
from blackroad_tasks.storage.base import TaskStorage, TaskView
from blackroad_tasks.storage.models import Task, TaskFilter, TaskResult

logger = logging.getLogger(__name__)


class Coordinator:
    def __init__(
        self,
        storage: TaskStorage,
        *,
        bus: NotificationBus | None = None,
        verifier: AgentVerifier | None = None,
    ) -> None:
        self.storage = storage
        self.arbiter = ClaimArbiter(storage)
        self.bus = bus or NotificationBus()
        self.verifier = verifier or AllowAllVerifier()

    # ---- tasks ----

    def create_task(
        self,
        title: str,
        description: str,
        priority: str = "normal",
        tags: Iterable[str] | None = None,
    ) -> Task:
        task = self.storage.create_task(title, description, priority=priority, tags=tags)
        logger.info(
            "task_event event=created task_id=%s priority=%s tags=%s",
            task.task_id,
            task.priority,
            sorted(task.tags),
        )
        self.bus.publish("task.created", task)
        return task

    def get_task(self, task_id: str) -> Task:
        return self.storage.get_task(task_id)

    def list_tasks(self, task_filter: TaskFilter | None = None, **criteria: Any) -> TaskView:
        """List tasks matching `task_filter` or keyword criteria (priority, status, tags)."""
        if task_filter is not None and criteria:
            raise ValidationError("Pass either task_filter or keyword criteria, not both")
        if task_filter is None:
            try:
                task_filter = TaskFilter.model_validate(criteria)
            except PydanticValidationError as exc:
                raise ValidationError(f"Invalid task filter: {exc}") from exc
        return self.storage.list_tasks(task_filter)

    def claim_task(self, task_id: str, agent_id: str, credential: str | None = None) -> Task:
        self._authorize(agent_id, credential)
        task = self.arbiter.claim(task_id, agent_id)
        self.bus.publish("task.claimed", task, {"agent_id": task.claimed_by})
        return task

    def release_task(self, task_id: str, agent_id: str, credential: str | None = None) -> Task:
        self._authorize(agent_id, credential)
        task = self.arbiter.release(task_id, agent_id)
        self.bus.publish("task.released", task, {"agent_id": agent_id})
        return task

    def complete_task(
        self,
        task_id: str,
        agent_id: str,
        result: TaskResult | Mapping[str, Any] | None = None,
        credential: str | None = None,
    ) -> Task:
        outcome = _coerce_result(result)
        self._authorize(agent_id, credential)
        task = self.arbiter.settle(task_id, agent_id, "completed", outcome)
        logger.info(
            "task_event event=completed task_id=%s agent_id=%s result_status=%s",
            task_id,
            agent_id,
            outcome.status,
        )
        self.bus.publish(
            "task.completed",
            task,
            {"agent_id": task.claimed_by, "result": outcome.model_dump(mode="json")},
        )
        return task

    def fail_task(
        self,
        task_id: str,
        agent_id: str,
        reason: str,
        credential: str | None = None,
    ) -> Task:
        if not isinstance(reason, str) or not reason.strip():
            raise ValidationError("reason is required")
        outcome = TaskResult(status="failed", notes=reason.strip())
        self._authorize(agent_id, credential)
        task = self.arbiter.settle(task_id, agent_id, "failed", outcome)
        logger.info("task_event event=failed task_id=%s agent_id=%s", task_id, agent_id)
        self.bus.publish(
            "task.failed",
            task,
            {
                "agent_id": task.claimed_by,
                "reason": outcome.notes,
                "result": outcome.model_dump(mode="json"),
            },
        )
        return task

    # ---- subscriptions ----

    def subscribe(
        self,
        event: str,
        handler: EventHandler,
        *,
        task_id: str | None = None,
        owner: str | None = None,
    ) -> str:
        return self.bus.subscribe(event, handler, task_id=task_id, owner=owner)

    def unsubscribe(self, subscription_id: str) -> None:
        self.bus.unsubscribe(subscription_id)

    def end_session(self, owner: str) -> int:
        """Drop every subscription registered by `owner`. Claims are left as they are."""
        return self.bus.unsubscribe_owner(owner)

    def _authorize(self, agent_id: str, credential: str | None) -> None:
        if not isinstance(agent_id, str) or not agent_id.strip():
            raise ValidationError("agent_id is required")
        if not self.verifier.verify(agent_id.strip(), credential):
            logger.warning("task_event event=identity_rejected agent_id=%s", agent_id)
            raise ForbiddenError(f"Agent {agent_id} could not be verified")


def _coerce_result(result: TaskResult | Mapping[str, Any] | None) -> TaskResult:
    if result is None:
        return TaskResult(status="success")
    if isinstance(result, TaskResult):
        return result
    try:
        return TaskResult.model_validate(dict(result))
    except (PydanticValidationError, TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid result: {exc}") from exc
