import types
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from broadcast_engine.api import API_TOKEN_HEADER_NAME, create_app
from broadcast_engine.config_loader import EngineSettings
from broadcast_engine.core import BroadcastEngine, StoreUnavailableError
from broadcast_engine.gateway import DeliveryOutcome
from broadcast_engine.server import build_app

API_TOKEN = "secret-token"
NOW = datetime(2025, 3, 5, 9, 0, 5, tzinfo=timezone.utc)


class DummyPersistence:
    async def count_jobs_by_status(self):
        return {"pending": 2, "completed": 1}


class DummyService:
    def __init__(self):
        self.calls = []
        self.metrics = types.SimpleNamespace(generate_latest=lambda: b"metrics-data")
        self.persistence = DummyPersistence()
        self.active = True
        self.store_down = False

    async def handle_command(self, cmd, payload):
        self.calls.append((cmd, payload))
        if cmd == "processScheduled":
            if self.store_down:
                raise StoreUnavailableError("Failed to fetch scheduled messages: disk I/O error")
            return {"ok": True, "processed": 3, "timestamp": "2025-03-05T09:00:05Z"}
        if cmd == "listInstances":
            return {"ok": True, "instances": [{"id": "main", "name": "Main"}]}
        if cmd == "listJobs":
            return {"ok": True, "jobs": []}
        if cmd == "getJob":
            return {"ok": False, "error": "job not found", "code": "job_not_found"}
        if cmd == "pauseJob":
            return {"ok": False, "error": "Cannot pause a job in status 'completed'", "code": "invalid_transition"}
        if cmd == "reclaimStale":
            return {"ok": True, "released": 1}
        if cmd in {"suspend", "activate"}:
            return {"ok": True, "active": cmd == "activate"}
        return {"ok": True}


@pytest.fixture
def client_and_service():
    svc = DummyService()
    client = TestClient(create_app(svc, api_token=API_TOKEN))
    client.headers.update({API_TOKEN_HEADER_NAME: API_TOKEN})
    return client, svc


def test_health_needs_no_token():
    client = TestClient(create_app(DummyService(), api_token=API_TOKEN))
    assert client.get("/health").json() == {"status": "ok"}


def test_rejects_missing_token():
    client = TestClient(create_app(DummyService(), api_token=API_TOKEN))
    response = client.post("/commands/process-scheduled")
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid or missing API token"
    wrong = client.get("/status", headers={API_TOKEN_HEADER_NAME: "nope"})
    assert wrong.status_code == 401


def test_no_token_configured_allows_requests():
    client = TestClient(create_app(DummyService()))
    assert client.get("/status").status_code == 200


def test_process_scheduled_reports_pass(client_and_service):
    client, svc = client_and_service
    response = client.post("/commands/process-scheduled")
    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "processed": 3,
        "timestamp": "2025-03-05T09:00:05Z",
    }
    assert svc.calls == [("processScheduled", {})]


def test_process_scheduled_store_failure_returns_500(client_and_service):
    client, svc = client_and_service
    svc.store_down = True
    response = client.post("/commands/process-scheduled")
    assert response.status_code == 500
    assert response.json() == {"error": "Failed to fetch scheduled messages: disk I/O error"}


def test_scheduler_commands_dispatch_to_service(client_and_service):
    client, svc = client_and_service
    assert client.get("/status").json() == {
        "ok": True,
        "active": True,
        "jobs": {"pending": 2, "completed": 1},
    }
    assert client.post("/commands/run-now").json() == {"ok": True}
    assert client.post("/commands/suspend").json() == {"ok": True, "active": False}
    assert client.post("/commands/activate").json() == {"ok": True, "active": True}
    assert client.post("/commands/reclaim-stale").json() == {"ok": True, "released": 1}
    assert [cmd for cmd, _ in svc.calls] == ["run now", "suspend", "activate", "reclaimStale"]


def test_instance_endpoints(client_and_service):
    client, svc = client_and_service
    response = client.post("/instance", json={"id": "main", "name": "Main", "token": "tok"})
    assert response.json() == {"ok": True}
    assert svc.calls[-1] == ("addInstance", {"id": "main", "name": "Main", "token": "tok"})

    invalid = client.post("/instance", json={"id": "main"})
    assert invalid.status_code == 422

    listed = client.get("/instances").json()
    assert listed["instances"] == [{"id": "main", "name": "Main"}]
    assert client.delete("/instance/main").json() == {"ok": True}
    assert svc.calls[-1] == ("deleteInstance", {"id": "main"})


def test_job_errors_map_to_http_status(client_and_service):
    client, _ = client_and_service
    missing = client.get("/jobs/nope")
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "job_not_found"

    conflict = client.post("/jobs/done/pause")
    assert conflict.status_code == 409
    assert conflict.json()["detail"]["code"] == "invalid_transition"

    assert client.post("/jobs/done/explode").status_code == 404


def test_list_jobs_forwards_status_filter(client_and_service):
    client, svc = client_and_service
    assert client.get("/jobs", params={"status": "paused"}).json()["jobs"] == []
    assert svc.calls[-1] == ("listJobs", {"status": "paused"})
    assert client.get("/jobs", params={"status": "bogus"}).status_code == 422


def test_add_job_rejects_text_without_content(client_and_service):
    client, svc = client_and_service
    response = client.post(
        "/jobs",
        json={"instance_id": "main", "group_jid": "1203630@g.us", "scheduled_at": "2025-03-05T09:00:00Z"},
    )
    assert response.status_code == 422
    assert svc.calls == []


def test_metrics_endpoint(client_and_service):
    client, _ = client_and_service
    response = client.get("/metrics")
    assert response.status_code == 200
    assert response.content == b"metrics-data"


class DummyGateway:
    def __init__(self):
        self.sent = []

    async def send(self, token, destination, job):
        self.sent.append((token, destination))
        return DeliveryOutcome(destination, True)


def test_full_cycle_through_http(tmp_path):
    settings = EngineSettings(db_path=str(tmp_path / "api.db"), api_token=API_TOKEN, test_mode=True)
    gateway = DummyGateway()
    engine = BroadcastEngine(
        **settings.engine_kwargs(),
        gateway=gateway,
        clock=lambda: NOW,
    )
    app = build_app(settings, engine)

    with TestClient(app) as client:
        client.headers.update({API_TOKEN_HEADER_NAME: API_TOKEN})
        assert client.post("/instance", json={"id": "main", "token": "tok"}).status_code == 200

        created = client.post(
            "/jobs",
            json={
                "id": "promo",
                "instance_id": "main",
                "group_jid": "1203630@g.us",
                "content": "Sale starts now",
                "scheduled_at": "2025-03-05T09:00:00Z",
            },
        )
        assert created.status_code == 201
        assert created.json()["job"]["status"] == "pending"

        result = client.post("/commands/process-scheduled").json()
        assert result == {"success": True, "processed": 1, "timestamp": "2025-03-05T09:00:05Z"}
        assert gateway.sent == [("tok", "1203630@g.us")]

        job = client.get("/jobs/promo").json()["job"]
        assert job["status"] == "completed"
        assert job["executions_count"] == 1

        logs = client.get("/jobs/promo/logs").json()["logs"]
        assert len(logs) == 1
        assert logs[0]["status"] == "success"

        assert client.get("/status").json()["jobs"] == {"completed": 1}
        assert client.post("/jobs/promo/cancel").status_code == 409
