from fastapi.testclient import TestClient

from blackroad_tasks.api.main import create_app
from blackroad_tasks.config.settings import Settings
from blackroad_tasks.coordination.coordinator import Coordinator
from blackroad_tasks.coordination.webhooks import WebhookHandler


def _create(client: TestClient, **overrides) -> dict:
    payload = {"title": "Deploy gate", "description": "Check the deploy gate", **overrides}
    response = client.post("/tasks", json=payload)
    assert response.status_code == 200
    return response.json()


def test_health(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "blackroad-tasks"}


def test_task_claim_complete_roundtrip(client: TestClient) -> None:
    task = _create(client, priority="high", tags=["deploy"])
    assert task["status"] == "open"
    assert task["tags"] == ["deploy"]

    claim = client.post(f"/tasks/{task['task_id']}/claim", json={"agent_id": "agentA"})
    assert claim.status_code == 200
    assert claim.json()["claimed_by"] == "agentA"

    conflict = client.post(f"/tasks/{task['task_id']}/claim", json={"agent_id": "agentB"})
    assert conflict.status_code == 409
    assert "already claimed" in conflict.json()["detail"]

    forbidden = client.post(
        f"/tasks/{task['task_id']}/complete",
        json={"agent_id": "agentB", "result": {"status": "success"}},
    )
    assert forbidden.status_code == 403

    done = client.post(
        f"/tasks/{task['task_id']}/complete",
        json={"agent_id": "agentA", "result": {"status": "success", "notes": "green"}},
    )
    assert done.status_code == 200
    assert done.json()["status"] == "completed"
    assert done.json()["result"] == {"status": "success", "notes": "green"}

    again = client.post(f"/tasks/{task['task_id']}/complete", json={"agent_id": "agentA"})
    assert again.status_code == 409

    fetched = client.get(f"/tasks/{task['task_id']}")
    assert fetched.json()["status"] == "completed"


def test_release_and_fail_endpoints(client: TestClient) -> None:
    task_id = _create(client)["task_id"]
    client.post(f"/tasks/{task_id}/claim", json={"agent_id": "agentA"})

    released = client.post(f"/tasks/{task_id}/release", json={"agent_id": "agentA"})
    assert released.status_code == 200
    assert released.json()["claimed_by"] is None

    client.post(f"/tasks/{task_id}/claim", json={"agent_id": "agentB"})
    failed = client.post(
        f"/tasks/{task_id}/fail", json={"agent_id": "agentB", "reason": "missing secrets"}
    )
    assert failed.status_code == 200
    assert failed.json()["result"] == {"status": "failed", "notes": "missing secrets"}


def test_list_tasks_with_filters(client: TestClient) -> None:
    urgent = _create(client, priority="urgent", tags=["ops", "db"])
    _create(client, priority="urgent", tags=["ops"])
    _create(client, priority="low", tags=["ops", "db"])

    response = client.get("/tasks", params={"priority": "urgent", "tag": ["ops", "db"]})
    assert response.status_code == 200
    assert [item["task_id"] for item in response.json()] == [urgent["task_id"]]

    assert len(client.get("/tasks", params={"status": "open"}).json()) == 3
    assert client.get("/tasks", params={"priority": "extreme"}).status_code == 422


def test_error_mapping(client: TestClient) -> None:
    assert client.get("/tasks/missing").status_code == 404
    assert client.post("/tasks/missing/claim", json={"agent_id": "a"}).status_code == 404
    assert client.post("/tasks", json={"title": "", "description": "d"}).status_code == 422
    blank = client.post("/tasks", json={"title": "  ", "description": "d"})
    assert blank.status_code == 422
    assert blank.json() == {"detail": "title is required"}


def test_subscription_endpoints(client: TestClient, coordinator: Coordinator) -> None:
    created = client.post(
        "/subscriptions",
        json={
            "event": "task.completed",
            "callback_url": "https://hooks.example.test/tasks",
            "owner": "session-9",
        },
    )
    assert created.status_code == 200
    subscription_id = created.json()["subscription_id"]
    [subscription] = coordinator.bus.subscriptions()
    assert subscription.subscription_id == subscription_id
    assert isinstance(subscription.handler, WebhookHandler)

    assert client.delete(f"/subscriptions/{subscription_id}").json() == {"status": "ok"}
    assert client.delete(f"/subscriptions/{subscription_id}").status_code == 200
    assert coordinator.bus.subscriptions() == []

    client.post(
        "/subscriptions",
        json={"event": "*", "callback_url": "http://localhost:9000/cb", "owner": "session-9"},
    )
    assert client.delete("/sessions/session-9").json() == {"removed": 1}


def test_subscription_validation_errors(client: TestClient) -> None:
    bad_event = client.post(
        "/subscriptions",
        json={"event": "task.exploded", "callback_url": "https://hooks.example.test/x"},
    )
    assert bad_event.status_code == 422

    bad_url = client.post(
        "/subscriptions",
        json={"event": "task.created", "callback_url": "ftp://example.test/x"},
    )
    assert bad_url.status_code == 422


def test_agent_tokens_enable_credential_checks() -> None:
    app = create_app(settings_override=Settings(agent_tokens={"agentA": "s3cret"}))
    client = TestClient(app)
    task_id = client.post("/tasks", json={"title": "t", "description": "d"}).json()["task_id"]

    denied = client.post(f"/tasks/{task_id}/claim", json={"agent_id": "agentA"})
    assert denied.status_code == 403

    allowed = client.post(
        f"/tasks/{task_id}/claim",
        json={"agent_id": "agentA"},
        headers={"X-Agent-Credential": "s3cret"},
    )
    assert allowed.status_code == 200
