from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from blackroad_tasks.api.main import create_app
from blackroad_tasks.config.settings import Settings
from blackroad_tasks.coordination.coordinator import Coordinator
from blackroad_tasks.coordination.notifications import NotificationBus
from blackroad_tasks.storage.memory import InMemoryTaskStorage


class RecordingHandler:
    """Notification handler double that keeps every event it receives."""

    def __init__(self, fail_times: int = 0) -> None:
        self.events = []
        self.calls = 0
        self._fail_times = fail_times

    def __call__(self, event) -> None:
        self.calls += 1
        if self.calls <= self._fail_times:
            raise RuntimeError(f"handler failure #{self.calls}")
        self.events.append(event)


@pytest.fixture
def storage() -> InMemoryTaskStorage:
    return InMemoryTaskStorage()


@pytest.fixture
def bus() -> NotificationBus:
    return NotificationBus()


@pytest.fixture
def coordinator(storage: InMemoryTaskStorage, bus: NotificationBus) -> Coordinator:
    return Coordinator(storage, bus=bus)


@pytest.fixture
def recorder() -> RecordingHandler:
    return RecordingHandler()


@pytest.fixture
def client(coordinator: Coordinator) -> TestClient:
    app = create_app(
        coordinator=coordinator,
        settings_override=Settings(database_url="", agent_tokens={}),
    )
    return TestClient(app)


@pytest.fixture
def make_recorder() -> type[RecordingHandler]:
    return RecordingHandler
