import socket

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from idesync.api.routes import init_routes, router
from idesync.discovery.store import PairStore
from idesync.session.supervisor import ReconnectSupervisor

from conftest import FakeBridge, RecordingFocuser, make_settings


@pytest.fixture
def store(tmp_path):
    return PairStore(tmp_path / "pairs.json")


@pytest.fixture
def client(store, discovery_port):
    settings = make_settings("host", discovery_port, "/proj")
    supervisor = ReconnectSupervisor(settings, store, FakeBridge(), RecordingFocuser(), RecordingFocuser())
    app = FastAPI()
    init_routes(supervisor, store)
    app.include_router(router)

    with TestClient(app) as c:
        yield c
        c.post("/api/sync/disable")


def test_status_starts_disabled(client):
    body = client.get("/api/status").json()
    assert body["state"] == "disabled"
    assert body["role"] == "host"
    assert body["connected"] is False
    assert body["discovery_listening"] is False
    assert body["discovery_state"] == "idle"


def test_enable_and_disable(client):
    body = client.post("/api/sync/enable").json()
    assert body["state"] == "discovering"
    assert body["discovery_listening"] is True
    assert body["reconnecting"] is True

    body = client.post("/api/sync/disable").json()
    assert body["state"] == "disabled"
    assert body["discovery_listening"] is False
    assert body["discovery_state"] == "idle"


def test_enable_conflict_when_port_is_taken(client, discovery_port):
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
        blocker.bind(("127.0.0.1", discovery_port))
        blocker.listen()
        response = client.post("/api/sync/enable")
    assert response.status_code == 409
    assert str(discovery_port) in response.json()["detail"]
    assert client.get("/api/status").json()["state"] == "disabled"


def test_toggle(client):
    assert client.post("/api/sync/toggle").json()["auto_reconnect"] is True
    assert client.post("/api/sync/toggle").json()["auto_reconnect"] is False


def test_stop_discovery(client):
    assert client.post("/api/discovery/stop").json() == {"stopped": False}
    client.post("/api/sync/enable")
    assert client.post("/api/discovery/stop").json() == {"stopped": True}


def test_switch_requires_connection(client):
    response = client.post("/api/switch")
    assert response.status_code == 409


def test_publish_state_while_unpaired(client):
    response = client.post("/api/state", json={"filePath": "/a.py", "line": 1, "column": 2})
    assert response.status_code == 200
    assert response.json() == {"sent": False}


def test_publish_state_validates_body(client):
    response = client.post("/api/state", json={"filePath": "/a.py", "line": -1, "column": 0})
    assert response.status_code == 422


def test_window_focus(client):
    assert client.post("/api/window", json={"focused": True}).json() == {"status": "updated"}


def test_list_pairs(client, store):
    store.record_connection("/proj", "/proj-peer", 3001)
    pairs = client.get("/api/pairs").json()["pairs"]
    assert len(pairs) == 1
    assert pairs[0]["localPath"] == "/proj"
    assert pairs[0]["remotePath"] == "/proj-peer"
    assert pairs[0]["port"] == 3001
