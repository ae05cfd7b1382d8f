"""FastAPI transport over the task coordinator."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from blackroad_tasks.config.settings import Settings, get_settings
from blackroad_tasks.coordination.coordinator import Coordinator
from blackroad_tasks.coordination.identity import build_verifier
from blackroad_tasks.coordination.notifications import NotificationBus
from blackroad_tasks.coordination.webhooks import WebhookHandler
from blackroad_tasks.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    TaskMarketError,
    ValidationError,
)
from blackroad_tasks.storage.base import TaskStorage
from blackroad_tasks.storage.memory import InMemoryTaskStorage
from blackroad_tasks.storage.models import Task, TaskPriority, TaskResult, TaskStatus
from blackroad_tasks.storage.postgres import PostgresTaskStorage

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES: dict[type[TaskMarketError], int] = {
    ValidationError: 422,
    NotFoundError: 404,
    ForbiddenError: 403,
    ConflictError: 409,
}


class CreateTaskRequest(BaseModel):
    title: str = Field(min_length=1)
    description: str = Field(min_length=1)
    priority: TaskPriority = "normal"
    tags: list[str] = Field(default_factory=list)


class AgentRequest(BaseModel):
    agent_id: str = Field(min_length=1)


class CompleteTaskRequest(AgentRequest):
    result: TaskResult = Field(default_factory=lambda: TaskResult(status="success"))


class FailTaskRequest(AgentRequest):
    reason: str = Field(min_length=1)


class CreateSubscriptionRequest(BaseModel):
    event: str
    callback_url: str
    task_id: str | None = None
    owner: str | None = None


class CreateSubscriptionResponse(BaseModel):
    subscription_id: str


def build_storage(settings: Settings) -> TaskStorage:
    database_url = settings.resolved_database_url()
    if not database_url:
        logger.info("storage backend=memory")
        return InMemoryTaskStorage()
    storage = PostgresTaskStorage(database_url)
    storage.migrate()
    logger.info("storage backend=postgres")
    return storage


def build_coordinator(settings: Settings) -> Coordinator:
    return Coordinator(
        build_storage(settings),
        bus=NotificationBus(
            max_retries=settings.notify_max_retries,
            gap_timeout_s=settings.notify_gap_timeout_s,
            max_tracked_tasks=settings.notify_max_tracked_tasks,
            backoff_s=settings.notify_backoff_s,
        ),
        verifier=build_verifier(settings.agent_tokens),
    )


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    coordinator_override: Coordinator | None,
) -> None:
    if not hasattr(app.state, "coordinator"):
        app.state.coordinator = coordinator_override or build_coordinator(settings)
    if not hasattr(app.state, "settings"):
        app.state.settings = settings


def create_app(
    *,
    coordinator: Coordinator | None = None,
    settings_override: Settings | None = None,
) -> FastAPI:
    settings = settings_override or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _ensure_runtime_state(app, settings=settings, coordinator_override=coordinator)
        yield

    app_lifespan = lifespan if coordinator is None else None
    app = FastAPI(title=settings.app_name, debug=settings.app_debug, lifespan=app_lifespan)

    # Keep test paths reliable when lifespan is not executed by the client.
    if coordinator is not None:
        _ensure_runtime_state(app, settings=settings, coordinator_override=coordinator)

    def _get_coordinator(request: Request) -> Coordinator:
        if not hasattr(request.app.state, "coordinator"):
            _ensure_runtime_state(
                request.app, settings=settings, coordinator_override=coordinator
            )
        return request.app.state.coordinator

    @app.exception_handler(TaskMarketError)
    async def task_error_handler(_request: Request, exc: TaskMarketError) -> JSONResponse:
        status_code = next(
            (code for kind, code in ERROR_STATUS_CODES.items() if isinstance(exc, kind)),
            400,
        )
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.post("/tasks", response_model=Task)
    def create_task(payload: CreateTaskRequest, request: Request) -> Task:
        return _get_coordinator(request).create_task(
            payload.title,
            payload.description,
            priority=payload.priority,
            tags=payload.tags,
        )

    @app.get("/tasks", response_model=list[Task])
    def list_tasks(
        request: Request,
        priority: TaskPriority | None = None,
        status: TaskStatus | None = None,
        tag: list[str] | None = Query(default=None),
    ) -> list[Task]:
        view = _get_coordinator(request).list_tasks(
            priority=priority,
            status=status,
            tags=set(tag or ()),
        )
        return list(view)

    @app.get("/tasks/{task_id}", response_model=Task)
    def get_task(task_id: str, request: Request) -> Task:
        return _get_coordinator(request).get_task(task_id)

    @app.post("/tasks/{task_id}/claim", response_model=Task)
    def claim_task(
        task_id: str,
        payload: AgentRequest,
        request: Request,
        x_agent_credential: str | None = Header(default=None),
    ) -> Task:
        return _get_coordinator(request).claim_task(
            task_id, payload.agent_id, credential=x_agent_credential
        )

    @app.post("/tasks/{task_id}/release", response_model=Task)
    def release_task(
        task_id: str,
        payload: AgentRequest,
        request: Request,
        x_agent_credential: str | None = Header(default=None),
    ) -> Task:
        return _get_coordinator(request).release_task(
            task_id, payload.agent_id, credential=x_agent_credential
        )

    @app.post("/tasks/{task_id}/complete", response_model=Task)
    def complete_task(
        task_id: str,
        payload: CompleteTaskRequest,
        request: Request,
        x_agent_credential: str | None = Header(default=None),
    ) -> Task:
        return _get_coordinator(request).complete_task(
            task_id, payload.agent_id, payload.result, credential=x_agent_credential
        )

    @app.post("/tasks/{task_id}/fail", response_model=Task)
    def fail_task(
        task_id: str,
        payload: FailTaskRequest,
        request: Request,
        x_agent_credential: str | None = Header(default=None),
    ) -> Task:
        return _get_coordinator(request).fail_task(
            task_id, payload.agent_id, payload.reason, credential=x_agent_credential
        )

    @app.post("/subscriptions", response_model=CreateSubscriptionResponse)
    def create_subscription(
        payload: CreateSubscriptionRequest, request: Request
    ) -> CreateSubscriptionResponse:
        handler = WebhookHandler(payload.callback_url, timeout_s=settings.webhook_timeout_s)
        subscription_id = _get_coordinator(request).subscribe(
            payload.event,
            handler,
            task_id=payload.task_id,
            owner=payload.owner,
        )
        return CreateSubscriptionResponse(subscription_id=subscription_id)

    @app.delete("/subscriptions/{subscription_id}")
    def delete_subscription(subscription_id: str, request: Request) -> dict[str, str]:
        _get_coordinator(request).unsubscribe(subscription_id)
        return {"status": "ok"}

    @app.delete("/sessions/{owner}")
    def end_session(owner: str, request: Request) -> dict[str, int]:
        return {"removed": _get_coordinator(request).end_session(owner)}

    return app


app = create_app()
