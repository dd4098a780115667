"""Tests for the HTTP service."""

import pytest
from fastapi.testclient import TestClient

from conftest import budget, pause
from nav_actions.service import create_app
from nav_actions.settings import NavActionsSettings


@pytest.fixture
def client(session):
    app = create_app(session, NavActionsSettings(audit_db_url="sqlite:///:memory:", max_request_bytes=50_000))
    with TestClient(app) as c:
        yield c


def queue_and_confirm(client, action):
    r = client.post("/v1/actions:queue", json={"action": action})
    assert r.status_code == 201
    entry_id = r.json()["entries"][0]["id"]
    assert client.post(f"/v1/queue/{entry_id}:confirm").status_code == 200
    return entry_id


def test_propose_returns_guardrail_result(client):
    r = client.post("/v1/actions:propose", json={"action": pause("C2")})
    assert r.status_code == 200
    body = r.json()
    assert body["allowed"] is True
    assert body["warnings"][0]["code"] == "HIGH_PERFORMER_PAUSE"


def test_blocked_action_maps_to_422(client):
    r = client.post("/v1/actions:queue", json={"action": budget("C1", 100, 0)})
    assert r.status_code == 422
    body = r.json()
    assert body["error_code"] == "VALIDATION_BLOCKED"
    assert body["context"]["block_reasons"][0]["code"] == "ZERO_BUDGET"


def test_invalid_action_maps_to_400(client):
    r = client.post("/v1/actions:propose", json={"action": {"action_type": "pause_entity"}})
    assert r.status_code == 400
    assert r.json()["error_code"] == "INVALID_INPUT_DATA"


def test_execute_audit_and_undo_flow(client):
    entry_id = queue_and_confirm(client, pause("X123"))

    r = client.post(f"/v1/queue/{entry_id}:execute")
    assert r.status_code == 200
    audit = r.json()
    assert audit["status"] == "success"
    assert audit["after_value"] == "PAUSED"

    listing = client.get("/v1/queue").json()
    assert listing["counts"]["committed"] == 1

    r = client.get(f"/v1/audit/{audit['id']}")
    assert r.json()["can_undo"] is True

    r = client.post("/v1/undo")
    assert r.status_code == 200
    assert r.json()["source"] == "rollback"

    history = client.get("/v1/history").json()
    assert history["can_redo"] is True
    assert history["redo"] == [audit["id"]]

    page = client.get("/v1/audit", params={"entity_id": "X123"}).json()
    assert page["total"] == 2
    assert page["items"][0]["action_type"] == "enable_entity"


def test_queue_state_errors_map_to_409(client):
    r = client.post("/v1/actions:queue", json={"action": pause("C1")})
    entry_id = r.json()["entries"][0]["id"]
    assert client.post(f"/v1/queue/{entry_id}:cancel").status_code == 200
    r = client.post(f"/v1/queue/{entry_id}:cancel")
    assert r.status_code == 409
    assert r.json()["error_code"] == "QUEUE_STATE"


def test_unknown_entry_maps_to_404(client):
    assert client.post("/v1/queue/q-missing:execute").status_code == 404
    assert client.get("/v1/audit/999").status_code == 404


def test_failed_undo_maps_to_502(client, mutation_service):
    entry_id = queue_and_confirm(client, budget("C1", 100, 120))
    client.post(f"/v1/queue/{entry_id}:execute")
    mutation_service.reject.add("C1")

    r = client.post("/v1/undo")
    assert r.status_code == 502
    assert r.json()["error_code"] == "EXECUTION_FAILURE"


def test_irreversible_undo_maps_to_409(client):
    action = {"action_type": "add_negatives", "entity_type": "campaign", "entity_id": "C1", "new_value": ["free"]}
    entry_id = queue_and_confirm(client, action)
    client.post(f"/v1/queue/{entry_id}:execute")
    r = client.post("/v1/undo")
    assert r.status_code == 409
    assert r.json()["error_code"] == "IRREVERSIBLE_ACTION"


def test_bulk_queue_and_execute_confirmed(client):
    r = client.post("/v1/actions:queueBulk", json={"actions": [budget("C1", 100, 110), budget("C2", 200, 190)]})
    assert r.status_code == 201
    assert client.post("/v1/queue:confirmAll").json()["confirmed"]
    results = client.post("/v1/queue:execute").json()
    assert sorted(a["entity_id"] for a in results) == ["C1", "C2"]


def test_guardrail_settings_round_trip(client):
    r = client.patch("/v1/guardrails", json={"max_bulk_action_count": 5})
    assert r.status_code == 200
    assert client.get("/v1/guardrails").json()["max_bulk_action_count"] == 5

    r = client.patch("/v1/guardrails", json={"max_bulk_action_count": 0})
    assert r.status_code == 400


def test_request_size_limit(client):
    r = client.post("/v1/actions:propose", content=b"x" * 60_000, headers={"content-type": "application/json"})
    assert r.status_code == 413
