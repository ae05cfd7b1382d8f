"""Claim arbitration, notifications and the coordinator entry point."""

from blackroad_tasks.coordination.claims import ClaimArbiter
from blackroad_tasks.coordination.coordinator import Coordinator
from blackroad_tasks.coordination.identity import (
    AgentVerifier,
    AllowAllVerifier,
    StaticTokenVerifier,
    build_verifier,
)
from blackroad_tasks.coordination.notifications import (
    ANY_EVENT,
    TASK_EVENTS,
    NotificationBus,
    Subscription,
    TaskEvent,
)
from blackroad_tasks.coordination.webhooks import WebhookHandler

__all__ = [
    "ANY_EVENT",
    "AgentVerifier",
    "AllowAllVerifier",
    "ClaimArbiter",
    "Coordinator",
    "NotificationBus",
    "StaticTokenVerifier",
    "Subscription",
    "TASK_EVENTS",
    "TaskEvent",
    "WebhookHandler",
    "build_verifier",
]
