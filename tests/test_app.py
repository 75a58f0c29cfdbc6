import json

import pytest
from fastapi.testclient import TestClient

from app import create_app
from gateway.signatures import sign_mail
from utils.rate_limiter import FixedWindowRateLimiter
from conftest import MAIL_SECRET, OWNER

HEADERS = {"X-Owner-Id": OWNER}

WORKFLOW = {
    "name": "Urgent replies",
    "trigger_conditions": {"category": "urgent_issue"},
    "actions": [{"type": "send_auto_reply", "config": {"template": "We are on it: {{ subject }}"}}],
    "active": True,
}

EMAIL = {
    "message_id": "msg-app-1",
    "from": "customer@example.com",
    "to": OWNER,
    "subject": "Hot tub not heating, urgent",
    "body": "",
}


@pytest.fixture
def client(services):
    with TestClient(create_app(services, start_scheduler=False)) as test_client:
        yield test_client


def test_health_check(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_classify(client):
    response = client.post("/api/v1/emails/classify", json=EMAIL)
    assert response.status_code == 200
    data = response.json()
    assert data["category"] == "urgent_issue"
    assert data["priority"] == "high"
    assert data["confidence_score"] > 0.7


def test_workflow_crud(client):
    created = client.post("/api/v1/workflows", json=WORKFLOW, headers=HEADERS)
    assert created.status_code == 201
    workflow_id = created.json()["id"]

    fetched = client.get(f"/api/v1/workflows/{workflow_id}", headers=HEADERS)
    assert fetched.json()["trigger_conditions"] == [
        {"field": "category", "operator": "equals", "value": "urgent_issue"}
    ]

    patched = client.patch(f"/api/v1/workflows/{workflow_id}", json={"active": False}, headers=HEADERS)
    assert patched.json()["active"] is False
    assert patched.json()["version"] == 2

    listed = client.get("/api/v1/workflows", params={"active": "false"}, headers=HEADERS)
    assert listed.json()["total"] == 1

    assert client.delete(f"/api/v1/workflows/{workflow_id}", headers=HEADERS).status_code == 204
    assert client.get(f"/api/v1/workflows/{workflow_id}", headers=HEADERS).status_code == 404


def test_owner_header_required(client):
    assert client.get("/api/v1/workflows").status_code == 422


def test_invalid_workflow_is_rejected(client):
    bad = dict(WORKFLOW, trigger_conditions={"category": "weather"})
    response = client.post("/api/v1/workflows", json=bad, headers=HEADERS)
    assert response.status_code == 422
    assert response.json()["error"] == "validation_error"


def test_other_owners_cannot_see_workflow(client):
    workflow_id = client.post("/api/v1/workflows", json=WORKFLOW, headers=HEADERS).json()["id"]
    response = client.get(f"/api/v1/workflows/{workflow_id}", headers={"X-Owner-Id": "intruder@example.com"})
    assert response.status_code == 404
    assert response.json()["error"] == "not_found"


def test_execute_and_wait(client, sender):
    workflow_id = client.post("/api/v1/workflows", json=WORKFLOW, headers=HEADERS).json()["id"]

    response = client.post(
        f"/api/v1/workflows/{workflow_id}/execute",
        json={
            "trigger_data": {"sender": "walkin@example.com", "subject": "Spa cover"},
            "wait_for_completion": True,
            "timeout_seconds": 60,
        },
        headers=HEADERS,
    )

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "completed"
    assert data["trigger_type"] == "manual"
    assert sender.sent[0]["to_email"] == "walkin@example.com"

    executions = client.get(f"/api/v1/workflows/{workflow_id}/executions", headers=HEADERS).json()
    assert executions["total"] == 1
    assert executions["items"][0]["id"] == data["id"]

    # cancelling a finished execution is a conflict
    cancel = client.post(f"/api/v1/executions/{data['id']}/cancel", headers=HEADERS)
    assert cancel.status_code == 409


def test_execute_rejects_inactive_workflow(client):
    workflow_id = client.post("/api/v1/workflows", json=dict(WORKFLOW, active=False), headers=HEADERS).json()["id"]
    response = client.post(f"/api/v1/workflows/{workflow_id}/execute", json={}, headers=HEADERS)
    assert response.status_code == 409


def test_execute_validates_timeout(client):
    workflow_id = client.post("/api/v1/workflows", json=WORKFLOW, headers=HEADERS).json()["id"]
    response = client.post(
        f"/api/v1/workflows/{workflow_id}/execute", json={"timeout_seconds": 7200}, headers=HEADERS
    )
    assert response.status_code == 422


def test_failed_execution_exposes_last_error_only(client, services):
    broken = dict(WORKFLOW, actions=[{"type": "send_auto_reply", "config": {"template": "{{ nope }}"}}])
    workflow_id = client.post("/api/v1/workflows", json=broken, headers=HEADERS).json()["id"]

    data = client.post(
        f"/api/v1/workflows/{workflow_id}/execute",
        json={"trigger_data": {"sender": "a@example.com", "subject": "x"}, "wait_for_completion": True},
        headers=HEADERS,
    ).json()

    fetched = client.get(f"/api/v1/executions/{data['id']}", headers=HEADERS).json()
    assert fetched["status"] == "failed"
    assert fetched["error"]["category"] == "FatalActionError"
    assert "attempts" not in fetched


def test_ingest_triggers_matching_workflow(client):
    client.post("/api/v1/workflows", json=WORKFLOW, headers=HEADERS)

    response = client.post("/api/v1/emails/ingest", json=EMAIL)

    assert response.status_code == 200
    data = response.json()
    assert data["email"]["category"] == "urgent_issue"
    assert len(data["executions_triggered"]) == 1


def test_runtime_webhook_rejects_forged_signature(client):
    body = json.dumps({"workflow_id": "wf", "execution_id": "exec", "status": "completed"})
    response = client.post(
        "/api/v1/webhooks/runtime",
        content=body,
        headers={"X-Runtime-Signature": "sha256=forged", "X-Runtime-Timestamp": "0"},
    )
    assert response.status_code == 401
    assert response.json()["error"] == "invalid_signature"


def test_mail_webhook(client):
    client.post("/api/v1/workflows", json=WORKFLOW, headers=HEADERS)
    body = json.dumps(EMAIL).encode()
    headers = {"X-Mail-Signature": sign_mail(MAIL_SECRET, body), "Content-Type": "application/json"}

    first = client.post("/api/v1/webhooks/mail", content=body, headers=headers)
    second = client.post("/api/v1/webhooks/mail", content=body, headers=headers)

    assert first.status_code == 200
    assert first.json()["event_type"] == "email_received"
    assert len(first.json()["executions_triggered"]) == 1
    assert second.json()["duplicate"] is True


def test_rate_limit_returns_retry_after(client, services):
    services.rate_limiter = FixedWindowRateLimiter(max_requests=2, window_seconds=900)

    for _ in range(2):
        assert client.get("/api/v1/workflows", headers=HEADERS).status_code == 200
    response = client.get("/api/v1/workflows", headers=HEADERS)

    assert response.status_code == 429
    assert int(response.headers["Retry-After"]) > 0
    assert response.headers["X-RateLimit-Limit"] == "2"
    assert response.headers["X-RateLimit-Window"] == "900"
    # health is outside the limited API
    assert client.get("/health").status_code == 200
