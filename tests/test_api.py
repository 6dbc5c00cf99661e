import pytest
from fastapi.testclient import TestClient

from main import app, get_service

UNIT = "unit-a"


@pytest.fixture
def client(service):
    app.dependency_overrides[get_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


def issue(client, **body):
    response = client.post(f"/units/{UNIT}/tickets", json=body)
    assert response.status_code == 201, response.text
    return response.json()["ticket"]


def test_root_and_health(client):
    assert client.get("/").json()["status"] == "running"
    health = client.get("/health").json()
    assert health["status"] == "healthy"
    assert health["redis"] == "unavailable"


def test_counter_scenario(client):
    first = issue(client)
    preferential = issue(client, ticket_type="preferential")
    assert first["display_code"] == "N-500"
    assert preferential["display_code"] == "P-000"

    response = client.post(f"/units/{UNIT}/call-next", json={"counter_id": "c1", "attendant_id": "att-1"})
    assert response.status_code == 200
    called = response.json()["ticket"]
    assert called["id"] == preferential["id"]
    assert called["status"] == "called"

    ticket_url = f"/tickets/{called['id']}"
    assert client.post(f"{ticket_url}/repeat-call", json={}).status_code == 200
    assert client.post(f"{ticket_url}/transition", json={"new_status": "in_service"}).status_code == 200
    response = client.post(
        f"{ticket_url}/transition",
        json={"new_status": "completed", "service_type": "revisao", "completion_status": "realizado_sucesso"},
    )
    assert response.json()["ticket"]["status"] == "completed"
    assert client.get(ticket_url).json()["ticket"]["completed_at"] is not None

    waiting = client.get(f"/units/{UNIT}/tickets", params={"status": "waiting"}).json()["tickets"]
    assert [t["id"] for t in waiting] == [first["id"]]
    assert len(client.get(f"/units/{UNIT}/tickets/today").json()["tickets"]) == 2

    board = client.get(f"/units/{UNIT}/board").json()
    assert board["waiting_count"] == 1
    assert board["finished"]["completed"] == 1


def test_errors_map_to_codes(client):
    response = client.post(f"/units/{UNIT}/call-next", json={"counter_id": "c1", "attendant_id": "att-1"})
    assert response.status_code == 404
    assert response.json()["error"] == "no_tickets_waiting"

    response = client.post(f"/units/{UNIT}/tickets", json={"manual_number": 600})
    assert response.status_code == 400
    assert response.json()["error"] == "manual_mode_disabled"

    client.put(f"/units/{UNIT}/settings", json={"manual_mode_enabled": True})
    response = client.post(f"/units/{UNIT}/tickets", json={"manual_number": 10})
    assert response.status_code == 400
    assert response.json()["error"] == "below_minimum"

    issue(client, manual_number=600)
    response = client.post(f"/units/{UNIT}/tickets", json={"manual_number": 600})
    assert response.status_code == 409
    assert response.json()["error"] == "duplicate_number"

    response = client.get("/tickets/missing")
    assert response.status_code == 404
    assert response.json()["error"] == "not_found"


def test_invalid_transition_and_skip_reason(client):
    ticket = issue(client)
    response = client.post(f"/tickets/{ticket['id']}/transition", json={"new_status": "completed"})
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_transition"

    client.post(f"/units/{UNIT}/call-next", json={"counter_id": "c1", "attendant_id": "att-1"})
    response = client.post(f"/tickets/{ticket['id']}/transition", json={"new_status": "skipped", "reason": "x"})
    assert response.status_code == 400
    response = client.post(
        f"/tickets/{ticket['id']}/transition", json={"new_status": "skipped", "reason": "absent"}
    )
    assert response.json()["ticket"]["skip_reason"] == "absent"


def test_system_inactive_blocks_issuance(client):
    client.put(f"/units/{UNIT}/settings", json={"calling_system_active": False})
    response = client.post(f"/units/{UNIT}/tickets", json={})
    assert response.status_code == 409
    assert response.json()["error"] == "system_inactive"


def test_manual_call_endpoint(client):
    client.put(f"/units/{UNIT}/settings", json={"manual_mode_enabled": True})
    response = client.post(
        f"/units/{UNIT}/manual-call",
        json={"ticket_number": 777, "counter_id": "c9", "attendant_id": "att-9"},
    )
    assert response.status_code == 200
    ticket = response.json()["ticket"]
    assert ticket["display_code"] == "N-777"
    assert ticket["status"] == "called"


def test_settings_validation(client):
    assert client.get(f"/units/{UNIT}/settings").json()["manual_mode_min_number"] == 500

    assert client.put(f"/units/{UNIT}/settings", json={"normal_priority": 0}).status_code == 422
    assert client.put(f"/units/{UNIT}/settings", json={"timezone": "Mars/Base"}).status_code == 422

    response = client.put(f"/units/{UNIT}/settings", json={"manual_mode_min_number": 100})
    assert response.status_code == 200
    assert response.json()["manual_mode_min_number"] == 100
    assert issue(client)["ticket_number"] == 100


def test_organ_endpoint(client):
    response = client.put(f"/units/{UNIT}/organs/organ-1", json={"name": "Junta", "min_number_normal": 50})
    assert response.status_code == 200
    assert response.json()["min_number_normal"] == 50

    client.put(f"/units/{UNIT}/settings", json={"per_organ_numbers_enabled": True})
    assert issue(client, organ_id="organ-1")["ticket_number"] == 50
    response = client.post(f"/units/{UNIT}/tickets", json={"organ_id": "organ-404"})
    assert response.status_code == 404


def test_reset_endpoint(client):
    issue(client)
    issue(client)
    response = client.post(f"/units/{UNIT}/reset", json={"user_id": "admin"})
    assert response.status_code == 200
    assert response.json()["tickets_deleted"] == 2
    assert issue(client)["ticket_number"] == 500
