from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from bounded_agent.agent.approvals import ApprovalBroker, ApprovalStatus
from bounded_agent.agent.types import ToolCall
from server.api.routes_approvals import get_broker
from server.api.server import app


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def broker(clock):
    return ApprovalBroker(notifier=None, clock=clock)


@pytest.fixture
def client(broker):
    app.dependency_overrides[get_broker] = lambda: broker
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def send_email() -> ToolCall:
    return ToolCall(tool="send_email", params={"to": "ops@example.com"}, justification="notify ops")


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_list_pending_approvals(client, broker):
    first = broker.request("task-1", send_email(), timeout=60)
    broker.request("task-2", send_email(), timeout=60)

    resp = client.get("/api/approvals")
    assert resp.status_code == 200
    assert len(resp.json()) == 2

    resp = client.get("/api/approvals", params={"task_id": "task-1"})
    body = resp.json()
    assert [item["id"] for item in body] == [first.id]
    assert body[0]["tool_call"] == {
        "tool": "send_email",
        "params": {"to": "ops@example.com"},
        "justification": "notify ops",
    }
    assert body[0]["status"] == "pending"


def test_approve_resolves_request(client, broker):
    request = broker.request("task-1", send_email(), timeout=60)

    resp = client.post(f"/api/approvals/{request.id}/approve", json={"resolved_by": "alice"})

    assert resp.status_code == 200
    assert resp.json() == {"id": request.id, "status": "approved", "applied": True}
    assert broker.get(request.id).resolved_by == "alice"
    assert client.get("/api/approvals").json() == []


def test_deny_without_body(client, broker):
    request = broker.request("task-1", send_email(), timeout=60)
    resp = client.post(f"/api/approvals/{request.id}/deny")
    assert resp.json()["status"] == "denied"
    assert broker.get(request.id).status is ApprovalStatus.DENIED


def test_second_resolution_is_not_applied(client, broker):
    request = broker.request("task-1", send_email(), timeout=60)
    client.post(f"/api/approvals/{request.id}/deny", json={"resolved_by": "bob"})

    resp = client.post(f"/api/approvals/{request.id}/approve", json={"resolved_by": "alice"})

    assert resp.json() == {"id": request.id, "status": "denied", "applied": False}


def test_late_approval_reports_timeout(client, broker, clock):
    request = broker.request("task-1", send_email(), timeout=10)
    clock.now += 11

    resp = client.post(f"/api/approvals/{request.id}/approve", json={"resolved_by": "alice"})

    assert resp.json() == {"id": request.id, "status": "timed_out", "applied": False}
    detail = client.get(f"/api/approvals/{request.id}").json()
    assert detail["resolved_by"] == "system:timeout"


def test_unknown_request_returns_404(client):
    assert client.get("/api/approvals/missing").status_code == 404
    resp = client.post("/api/approvals/missing/approve")
    assert resp.status_code == 404
    assert resp.json()["detail"] == "approval_not_found"
