"""Task lifecycle notifications.

Delivery rules:
- Handlers matching an event are snapshotted before delivery, so subscribe and
  unsubscribe are safe while a publish is in flight.
- Handlers run with no bus lock held. Events of one task are delivered
  serially by whichever thread is draining that task; other tasks are never
  held up by a slow handler.
- A raising handler is retried up to `max_retries` times, then logged and
  skipped. It never affects other subscribers or the publishing caller.
- Events of one task are delivered in version order. A version that arrives
  early is buffered until every lower version has been delivered, or until it
  has waited `gap_timeout_s`, after which the gap is skipped and logged.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field

from blackroad_tasks.errors import ValidationError
from blackroad_tasks.storage.models import Task

logger = logging.getLogger(__name__)

TASK_EVENTS: frozenset[str] = frozenset(
    {
        "task.created",
        "task.claimed",
        "task.released",
        "task.completed",
        "task.failed",
    }
)
# Subscribes to every task event.
ANY_EVENT = "*"
# Events after which no further event exists for the task.
FINAL_EVENTS: frozenset[str] = frozenset({"task.completed", "task.failed"})


class TaskEvent(BaseModel):
    """Payload handed to subscription handlers."""

    event: str
    task_id: str
    version: int
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    task: dict[str, Any]
    details: dict[str, Any] = Field(default_factory=dict)


EventHandler = Callable[[TaskEvent], Any]


@dataclass(frozen=True)
class Subscription:
    subscription_id: str
    event: str
    handler: EventHandler
    task_id: str | None = None
    owner: str | None = None

    def matches(self, event: TaskEvent) -> bool:
        if self.event != ANY_EVENT and self.event != event.event:
            return False
        return self.task_id is None or self.task_id == event.task_id


class NotificationBus:
    """Fan task events out to registered handlers."""

    def __init__(
        self,
        *,
        max_retries: int = 0,
        backoff_s: float = 0.0,
        gap_timeout_s: float = 5.0,
        max_tracked_tasks: int = 10_000,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if max_tracked_tasks < 1:
            raise ValueError("max_tracked_tasks must be >= 1")
        self.max_retries = max_retries
        self.backoff_s = backoff_s
        self.gap_timeout_s = gap_timeout_s
        self.max_tracked_tasks = max_tracked_tasks
        self.started_at = datetime.now(UTC)
        # Newest creation time among tasks whose sequence was evicted.
        self._evicted_through: datetime | None = None
        self._subscriptions: dict[str, Subscription] = {}
        self._subs_lock = threading.Lock()
        # Guards the sequencing state below; never held while a handler runs.
        self._state_lock = threading.Lock()
        # task_id -> version -> (monotonic arrival time, event)
        self._pending: dict[str, dict[int, tuple[float, TaskEvent]]] = {}
        # task_id -> last delivered version, least recently used first.
        self._delivered: OrderedDict[str, int] = OrderedDict()
        # task_id -> created_at, for tasks with a tracked sequence.
        self._born: dict[str, datetime] = {}
        # Tasks a thread is currently delivering events for.
        self._draining: set[str] = set()

    def subscribe(
        self,
        event: str,
        handler: EventHandler,
        *,
        task_id: str | None = None,
        owner: str | None = None,
    ) -> str:
        if event != ANY_EVENT and event not in TASK_EVENTS:
            raise ValidationError(
                f"Unknown event {event!r}; expected one of {sorted(TASK_EVENTS)} or '*'"
            )
        if not callable(handler):
            raise ValidationError("handler must be callable")
        if task_id is not None and (not isinstance(task_id, str) or not task_id.strip()):
            raise ValidationError("task_id filter must be a non-empty string")
        if owner is not None and (not isinstance(owner, str) or not owner.strip()):
            raise ValidationError("owner must be a non-empty string")

        subscription = Subscription(
            subscription_id=str(uuid4()),
            event=event,
            handler=handler,
            task_id=task_id,
            owner=owner,
        )
        with self._subs_lock:
            self._subscriptions[subscription.subscription_id] = subscription
        logger.info(
            "notify event=subscribed subscription_id=%s on=%s task_id=%s owner=%s",
            subscription.subscription_id,
            event,
            task_id,
            owner,
        )
        return subscription.subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        with self._subs_lock:
            removed = self._subscriptions.pop(subscription_id, None)
        if removed is not None:
            logger.info("notify event=unsubscribed subscription_id=%s", subscription_id)
        return removed is not None

    def unsubscribe_owner(self, owner: str) -> int:
        with self._subs_lock:
            owned = [
                sub_id for sub_id, sub in self._subscriptions.items() if sub.owner == owner
            ]
            for sub_id in owned:
                del self._subscriptions[sub_id]
        if owned:
            logger.info("notify event=session_closed owner=%s removed=%d", owner, len(owned))
        return len(owned)

    def subscriptions(self) -> list[Subscription]:
        with self._subs_lock:
            return list(self._subscriptions.values())

    def publish(self, event: str, task: Task, details: dict[str, Any] | None = None) -> TaskEvent:
        """Queue `event` for `task` and deliver whatever became deliverable.

        Returns once this thread has nothing left to drain. If another thread
        is already draining the task, that thread delivers the event.
        """
        if event not in TASK_EVENTS:
            raise ValidationError(f"Unknown event {event!r}")
        message = TaskEvent(
            event=event,
            task_id=task.task_id,
            version=task.version,
            task=task.model_dump(mode="json"),
            details=details or {},
        )
        with self._state_lock:
            if message.task_id not in self._delivered:
                # A task born under this bus and never evicted starts at version 1;
                # any other is picked up from the first version seen.
                self._delivered[message.task_id] = (
                    0 if self._is_new_locked(task) else message.version - 1
                )
                self._born[message.task_id] = task.created_at
            self._pending.setdefault(message.task_id, {})[message.version] = (
                time.monotonic(),
                message,
            )
            to_drain = self._expire_gaps_locked()
            if self._start_draining_locked(message.task_id):
                to_drain.append(message.task_id)
            self._evict_locked()
        for task_id in to_drain:
            self._drain(task_id)
        return message

    def _is_new_locked(self, task: Task) -> bool:
        if task.created_at < self.started_at:
            return False
        return self._evicted_through is None or task.created_at > self._evicted_through

    def _start_draining_locked(self, task_id: str) -> bool:
        if task_id in self._draining or not self._has_ready_locked(task_id):
            return False
        self._draining.add(task_id)
        return True

    def _has_ready_locked(self, task_id: str) -> bool:
        buffered = self._pending.get(task_id)
        if not buffered:
            return False
        last = self._delivered.get(task_id, min(buffered) - 1)
        return min(buffered) <= last + 1

    def _drain(self, task_id: str) -> None:
        while True:
            with self._state_lock:
                message = self._next_locked(task_id)
                if message is None:
                    self._draining.discard(task_id)
                    return
            try:
                self._deliver(message)
            except BaseException:
                with self._state_lock:
                    self._draining.discard(task_id)
                raise

    def _next_locked(self, task_id: str) -> TaskEvent | None:
        buffered = self._pending.get(task_id)
        if not buffered:
            return None
        last = self._delivered.get(task_id, min(buffered) - 1)
        lowest = min(buffered)
        if lowest > last + 1:
            return None
        _, message = buffered.pop(lowest)
        if lowest <= last:
            # Already past this version; deliver late rather than drop it.
            logger.warning(
                "notify event=late_delivery task_id=%s version=%s last_delivered=%s",
                task_id,
                lowest,
                last,
            )
        else:
            self._delivered[task_id] = lowest
            self._delivered.move_to_end(task_id)
        if not buffered:
            del self._pending[task_id]
            if message.event in FINAL_EVENTS:
                self._delivered.pop(task_id, None)
                self._born.pop(task_id, None)
        return message

    def _expire_gaps_locked(self) -> list[str]:
        """Skip version gaps that have blocked a task for longer than gap_timeout_s."""
        now = time.monotonic()
        expired: list[str] = []
        for task_id, buffered in self._pending.items():
            if task_id in self._draining:
                continue
            lowest = min(buffered)
            last = self._delivered.get(task_id, lowest - 1)
            if lowest <= last + 1 or now - buffered[lowest][0] < self.gap_timeout_s:
                continue
            logger.warning(
                "notify event=gap_skipped task_id=%s missing_versions=%s-%s",
                task_id,
                last + 1,
                lowest - 1,
            )
            self._delivered[task_id] = lowest - 1
            self._draining.add(task_id)
            expired.append(task_id)
        return expired

    def _evict_locked(self) -> None:
        """Forget the oldest idle sequences once more than max_tracked_tasks are held."""
        excess = len(self._delivered) - self.max_tracked_tasks
        if excess <= 0:
            return
        idle: list[str] = []
        for task_id in self._delivered:
            if len(idle) >= excess:
                break
            if task_id not in self._pending and task_id not in self._draining:
                idle.append(task_id)
        for task_id in idle:
            del self._delivered[task_id]
            born = self._born.pop(task_id, None)
            if born is not None and (
                self._evicted_through is None or born > self._evicted_through
            ):
                self._evicted_through = born
        if idle:
            logger.info(
                "notify event=sequences_evicted count=%d tracked=%d",
                len(idle),
                len(self._delivered),
            )

    def _deliver(self, message: TaskEvent) -> None:
        with self._subs_lock:
            targets = [sub for sub in self._subscriptions.values() if sub.matches(message)]
        for subscription in targets:
            self._invoke(subscription, message)

    def _invoke(self, subscription: Subscription, message: TaskEvent) -> bool:
        for attempt in range(self.max_retries + 1):
            try:
                subscription.handler(message)
                return True
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "notify event=handler_failed subscription_id=%s on=%s task_id=%s "
                    "attempt=%d/%d reason=%s",
                    subscription.subscription_id,
                    message.event,
                    message.task_id,
                    attempt + 1,
                    self.max_retries + 1,
                    exc,
                )
                if attempt < self.max_retries and self.backoff_s > 0:
                    time.sleep(self.backoff_s)
        logger.error(
            "notify event=delivery_abandoned subscription_id=%s on=%s task_id=%s version=%s",
            subscription.subscription_id,
            message.event,
            message.task_id,
            message.version,
        )
        return False
