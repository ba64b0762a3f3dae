from __future__ import annotations

from fastapi.testclient import TestClient

from taskhub.hub import TaskHub
from taskhub.web import create_app


def _client(hub: TaskHub) -> TestClient:
    return TestClient(create_app(hub=hub))


def test_health_and_operations(hub: TaskHub) -> None:
    client = _client(hub)

    assert client.get("/api/health").json()["ok"] is True
    names = [op["name"] for op in client.get("/api/operations").json()["operations"]]
    assert "get_next_task" in names
    assert "merge_tasks" in names


def test_operation_calls_accept_camel_case(hub: TaskHub) -> None:
    client = _client(hub)

    planned = client.post(
        "/api/ops/request_planning",
        json={"originalRequest": "Web flow", "tasks": [{"title": "Step", "priority": "high"}]},
    )
    assert planned.status_code == 200
    assert planned.json()["status"] == "planned"

    nxt = client.post("/api/ops/get_next_task", json={"requestId": "req-1"})
    assert nxt.json()["task"]["id"] == "task-1"

    task = client.get("/api/tasks/task-1").json()
    assert task["task"]["status"] == "active"
    assert client.get("/api/requests").json()["requests"][0]["id"] == "req-1"


def test_errors_map_to_status_codes(hub: TaskHub) -> None:
    client = _client(hub)
    hub.request_planning("Errors", [{"title": "Only"}])

    missing = client.post("/api/ops/get_next_task", json={"request_id": "req-404"})
    assert missing.status_code == 404
    assert missing.json()["error"]["type"] == "not_found"

    invalid = client.post(
        "/api/ops/mark_task_done", json={"requestId": "req-1", "taskId": "task-1"}
    )
    assert invalid.status_code == 409
    assert "not been started" in invalid.json()["error"]["message"]

    bad = client.post(
        "/api/ops/request_planning",
        json={"originalRequest": "x", "tasks": [{"title": "t", "priority": "urgent"}]},
    )
    assert bad.status_code == 422
    assert bad.json()["error"]["type"] == "validation_failed"

    unknown = client.post("/api/ops/drop_everything", json={})
    assert unknown.status_code == 404
