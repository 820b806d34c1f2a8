from datetime import datetime

from fastapi.testclient import TestClient

from firecracker_gateway import stub_server
from firecracker_gateway.config import Settings


client = TestClient(stub_server.app)


def test_health():
    resp = client.get("/api/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert data["uptime"] >= 0
    assert isinstance(data["environment"], str)
    # ISO-8601 timestamp
    datetime.fromisoformat(data["timestamp"])


def test_health_ignores_input():
    resp = client.get("/api/health", params={"probe": "x"})
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"


def test_health_reports_environment(monkeypatch):
    monkeypatch.setattr(stub_server, "settings", Settings(environment="staging"))
    assert client.get("/api/health").json()["environment"] == "staging"


def test_projects():
    assert client.get("/api/projects").json() == {"projects": []}
    assert client.post("/api/projects", json={"name": "demo"}).json() == {
        "message": "Project creation not implemented yet"
    }


def test_files():
    assert client.get("/api/files").json() == {"files": []}


def test_execution_placeholder():
    resp = client.post("/api/execution", json={"code": "print(1)"})
    assert resp.status_code == 200
    assert resp.json() == {"message": "Code execution not implemented yet"}
