"""
API tests for /api/v1/mcp-servers.
"""
import pytest
from fastapi.testclient import TestClient

from mymcp.features.servers.orchestrator import get_orchestrator
from mymcp.main import app
from mymcp.tests.mocks import BrokenOrchestrator, RecordingOrchestrator


BASE = "/api/v1/mcp-servers"
ALICE = {"X-User-Id": "user_alice", "X-User-Email": "alice@example.com"}
BOB = {"X-User-Id": "user_bob", "X-User-Email": "bob@example.com"}


@pytest.fixture
def recorder():
    orch = RecordingOrchestrator()
    app.dependency_overrides[get_orchestrator] = lambda: orch
    yield orch
    app.dependency_overrides.pop(get_orchestrator, None)


@pytest.fixture
def client(recorder):
    return TestClient(app)


def create(client, headers=ALICE, **body):
    payload = {"name": "gh", "github_token": "ghp_abc", "repository": "octo/repo"}
    payload.update(body)
    return client.post(f"{BASE}/github", json=payload, headers=headers)


def test_create_returns_201_with_location(client, recorder):
    resp = create(client)
    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "running"
    assert body["name"] == "gh"
    assert body["container_instance_id"].startswith("mock-container-")
    assert resp.headers["location"] == f"{BASE}/{body['id']}"
    # The token is never echoed back
    assert "ghp_abc" not in resp.text


def test_second_server_on_free_plan_is_403(client, recorder):
    assert create(client).status_code == 201
    resp = create(client, name="another")
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "quota_exceeded"
    assert recorder.count("start") == 1


def test_missing_token_is_400(client, recorder):
    resp = create(client, github_token="")
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"
    assert recorder.calls == []


def test_malformed_body_is_400(client):
    resp = client.post(f"{BASE}/github", json={"name": ["not", "a", "string"]}, headers=ALICE)
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


def test_idempotency_key_header_replays(client, recorder):
    headers = {**ALICE, "Idempotency-Key": "create-1"}
    first = create(client, headers=headers)
    second = create(client, headers=headers)
    assert first.status_code == 201
    assert second.status_code == 201
    assert first.json()["id"] == second.json()["id"]
    assert recorder.count("start") == 1


def test_list_and_get_are_owner_scoped(client):
    server_id = create(client).json()["id"]

    listed = client.get(BASE, headers=ALICE)
    assert [s["id"] for s in listed.json()] == [server_id]
    assert client.get(f"{BASE}/{server_id}", headers=ALICE).status_code == 200

    assert client.get(BASE, headers=BOB).json() == []
    resp = client.get(f"{BASE}/{server_id}", headers=BOB)
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"


def test_stop_then_health(client):
    server_id = create(client).json()["id"]

    stopped = client.post(f"{BASE}/{server_id}/stop", headers=ALICE)
    assert stopped.status_code == 200
    assert stopped.json()["status"] == "stopped"
    assert stopped.json()["last_stopped_at"] is not None

    again = client.post(f"{BASE}/{server_id}/stop", headers=ALICE)
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "conflict"

    health = client.get(f"{BASE}/{server_id}/health", headers=ALICE)
    assert health.status_code == 200
    assert health.json()["is_healthy"] is False
    assert health.json()["status"] == "stopped"


def test_stop_unknown_server_is_404(client, recorder):
    resp = client.post(f"{BASE}/missing-id/stop", headers=ALICE)
    assert resp.status_code == 404
    assert recorder.calls == []


def test_delete_returns_204(client, recorder):
    server_id = create(client).json()["id"]
    resp = client.delete(f"{BASE}/{server_id}", headers=ALICE)
    assert resp.status_code == 204
    assert recorder.count("stop") == 1
    assert client.get(f"{BASE}/{server_id}", headers=ALICE).status_code == 404


def test_orchestrator_outage_is_retryable_502(client):
    app.dependency_overrides[get_orchestrator] = lambda: BrokenOrchestrator()
    resp = create(client)
    assert resp.status_code == 502
    error = resp.json()["error"]
    assert error["code"] == "orchestrator_error"
    assert error["retryable"] is True
    assert client.get(BASE, headers=ALICE).json() == []


def test_requires_identity(client):
    resp = client.get(BASE)
    assert resp.status_code == 401
    assert resp.json()["error"]["request_id"] == resp.headers["x-request-id"]


def test_stop_then_start_round_trip(client, recorder):
    server_id = create(client).json()["id"]
    assert client.post(f"{BASE}/{server_id}/stop", headers=ALICE).json()["status"] == "stopped"

    resp = client.post(f"{BASE}/{server_id}/start", headers=ALICE)
    assert resp.status_code == 200
    assert resp.json()["status"] == "running"
    assert recorder.count("resume") == 1

    again = client.post(f"{BASE}/{server_id}/start", headers=ALICE)
    assert again.status_code == 409


def test_put_updates_name_and_description(client, recorder):
    server_id = create(client).json()["id"]
    resp = client.put(f"{BASE}/{server_id}", json={"name": "renamed", "description": "mine"}, headers=ALICE)
    assert resp.status_code == 200
    assert resp.json()["name"] == "renamed"
    assert resp.json()["description"] == "mine"

    assert client.put(f"{BASE}/{server_id}", json={"name": ""}, headers=ALICE).status_code == 400
    assert client.put(f"{BASE}/{server_id}", json={"name": "bobs"}, headers=BOB).status_code == 404
    assert client.get(f"{BASE}/{server_id}", headers=ALICE).json()["name"] == "renamed"
