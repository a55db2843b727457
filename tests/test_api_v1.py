"""Tests for API v1 surface."""

import base64
import json

import pytest
from fastapi.testclient import TestClient

from dashboard.api import get_service
from dashboard.app import app


@pytest.fixture
def client(service):
    app.dependency_overrides[get_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


def _upload(client, folder_id, count, offset=0):
    photos = [
        {"image": base64.b64encode(b"\xff\xd8api-photo-%d" % (offset + i)).decode("ascii"), "filename": f"{i}.jpg"}
        for i in range(count)
    ]
    return client.post("/api/v1/photos", json={"photos": photos, "folder_id": folder_id})


def _create_folder(client, name="Itron G4"):
    response = client.post("/api/v1/folders", json={"name": name, "detected_type": "gas"})
    assert response.status_code == 200
    return response.json()["folder"]


def test_health(client):
    assert client.get("/health").json() == {"success": True, "status": "ok"}


def test_folders_endpoint_shape(client):
    _create_folder(client)
    response = client.get("/api/v1/folders")
    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert len(data["folders"]) == 1
    assert data["unclassified_count"] == 0


def test_missing_folder_returns_404(client):
    response = client.get("/api/v1/folders/nope")
    assert response.status_code == 404
    assert response.json() == {"success": False, "error": "Folder not found: nope"}


def test_missing_required_field_returns_400(client):
    response = client.post("/api/v1/folders", json={"detected_type": "gas"})
    assert response.status_code == 400
    assert response.json()["error"] == "Missing required field(s): name"


def test_malformed_body_returns_400(client):
    response = client.post("/api/v1/tests", json={"multi_pass": True})
    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["error"].startswith("Invalid request")
    assert "folder_id" in body["error"]


def test_starting_test_on_draft_folder_conflicts(client):
    folder = _create_folder(client)
    response = client.post("/api/v1/tests", json={"folder_id": folder["id"]})
    assert response.status_code == 409
    assert response.json()["success"] is False


def test_upload_reports_per_file_errors(client):
    folder = _create_folder(client)
    _upload(client, folder["id"], 2)
    response = _upload(client, folder["id"], 3)

    data = response.json()
    assert data["success_count"] == 1
    assert [e["error"] for e in data["errors"]] == ["Duplicate image", "Duplicate image"]


def test_zone_positioning_requires_reference_photo(client):
    folder = _create_folder(client)
    zone = client.post(f"/api/v1/folders/{folder['id']}/zones", json={"type": "index"}).json()["zone"]

    response = client.put(
        f"/api/v1/folders/{folder['id']}/zones/{zone['id']}",
        json={"start": [0.1, 0.1], "end": [0.4, 0.3]},
    )
    assert response.status_code == 409


def test_run_lifecycle_over_http(client):
    folder = _create_folder(client)
    _upload(client, folder["id"], 5)
    assert client.get(f"/api/v1/folders/{folder['id']}").json()["folder"]["status"] == "ready"

    started = client.post("/api/v1/tests", json={"folder_id": folder["id"]})
    assert started.status_code == 200
    run_id = started.json()["test"]["id"]

    # background execution has finished once the response is returned
    detail = client.get(f"/api/v1/tests/{run_id}").json()
    assert detail["test"]["status"] == "completed"
    assert len(detail["results"]) == 5

    for result in detail["results"]:
        verdict = client.put("/api/v1/tests", json={"result_id": result["id"], "verdict": True})
        assert verdict.status_code == 200
    assert verdict.json()["folder_status"] == "validated"

    eligibility = client.get("/api/v1/promote", params={"folder_id": folder["id"]}).json()
    assert eligibility["can_promote"] is True

    promoted = client.post("/api/v1/promote", json={"folder_id": folder["id"]}).json()
    assert promoted["action"] == "created"
    model_id = promoted["meter_model"]["id"]

    versions = client.get(f"/api/v1/models/{model_id}/versions").json()["versions"]
    assert len(versions) == 1
    suggestion = client.get(f"/api/v1/models/{model_id}/suggest").json()
    assert suggestion["best_version"] is None


def test_queued_run_can_be_executed_later(client):
    folder = _create_folder(client)
    _upload(client, folder["id"], 5)
    run = client.post("/api/v1/tests", json={"folder_id": folder["id"], "run_immediately": False}).json()["test"]
    assert client.get(f"/api/v1/tests/{run['id']}").json()["test"]["status"] == "queued"

    client.post(f"/api/v1/tests/{run['id']}/execute")
    assert client.get(f"/api/v1/tests/{run['id']}").json()["test"]["status"] == "completed"

    again = client.post(f"/api/v1/tests/{run['id']}/execute")
    assert again.status_code == 409
    assert again.json()["error"].endswith("is completed, not queued")
    assert len(client.get("/api/v1/tests", params={"folder_id": folder["id"]}).json()["tests"]) == 1


def test_configs_endpoints(client):
    response = client.put("/api/v1/configs", json={"level": "universal", "data": {"base_prompt": "Read it."}})
    assert response.json()["config"]["base_prompt"] == "Read it."

    response = client.get("/api/v1/configs", params={"level": "bogus"})
    assert response.status_code == 400


def test_providers_endpoint_shape(client):
    data = client.get("/api/v1/providers").json()
    assert data["default"] == "claude"
    assert set(data["providers"]) == {"claude", "ollama"}


def test_zone_suggestion_uses_reference_photo(client, provider):
    folder = _create_folder(client)
    _upload(client, folder["id"], 1)

    refused = client.post(f"/api/v1/folders/{folder['id']}/zones/suggest")
    assert refused.status_code == 409

    photo_id = client.get("/api/v1/photos", params={"folder_id": folder["id"]}).json()["photos"][0]["id"]
    client.put(f"/api/v1/folders/{folder['id']}", json={"reference_photo_id": photo_id})
    provider.default = json.dumps({"zones": [
        {"type": "serial", "x": 0.1, "y": 0.7, "width": 0.4, "height": 0.08},
    ]})

    response = client.post(f"/api/v1/folders/{folder['id']}/zones/suggest")
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert [z["type"] for z in body["zones"]] == ["serial"]
