import time

import pytest

pytest.importorskip("httpx", reason="httpx is required for FastAPI TestClient tests")

from fastapi.testclient import TestClient

from config import settings
import main


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(settings, "store_backend", "memory")
    monkeypatch.setattr(settings, "player_id", "host-1")
    with TestClient(main.app) as test_client:
        yield test_client


def _wait_for_phase(client, phase, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        state = client.get("/api/game/state").json()["state"]
        if state and state["phase"] == phase:
            return state
        time.sleep(0.02)
    raise AssertionError(f"phase {phase} not reached")


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_game_routes_need_a_room(client):
    assert client.get("/api/rooms/current").status_code == 409
    assert client.post("/api/game/start").status_code == 409


def test_join_unknown_room_is_404(client):
    response = client.post("/api/rooms/QQQQ/join", json={"player_name": "Ann"})
    assert response.status_code == 404


def test_host_flow_from_lobby_to_meeting_and_reset(client):
    created = client.post("/api/rooms", json={"player_name": "Host"})
    assert created.status_code == 201
    body = created.json()
    assert body["player_id"] == "host-1"
    assert body["is_host"] is True
    assert len(body["room_code"]) == 4

    current = client.get("/api/rooms/current").json()
    assert current["room"]["roomCode"] == body["room_code"]
    assert [p["id"] for p in current["players"]] == ["host-1"]
    assert "role" not in current["players"][0]

    # Default roles are for nine players; one player cannot start
    mismatch = client.post("/api/game/start")
    assert mismatch.status_code == 400

    solo = {"roles": {"impostor": 1}, "timers": {"meeting": 300, "vote": 60, "break": 120}}
    assert client.put("/api/rooms/settings", json=solo).json() == {"ok": True}

    started = client.post("/api/game/start")
    assert started.status_code == 200
    assert started.json() == {"ok": True, "playerCount": 1}
    _wait_for_phase(client, "ROLE_REVEAL")

    assert client.post("/api/game/role-read").json() == {"ok": True}
    meeting = _wait_for_phase(client, "MEETING_DISCUSSION")
    assert meeting["version"] == 2

    reset = client.post("/api/game/reset")
    assert reset.json() == {"ok": True}
    lobby = _wait_for_phase(client, "LOBBY")
    assert lobby["version"] == 0

    assert client.get("/api/game/death-log").json() == {"deaths": {}}
    assert client.get("/api/game/vote-history").json() == {"votes": []}

    assert client.post("/api/rooms/leave").json() == {"ok": True}
    assert client.get("/api/rooms/current").status_code == 409


def test_websocket_pushes_phase_changes(client):
    client.post("/api/rooms", json={"player_name": "Host"})
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"type": "ping"})
        seen = []
        for _ in range(3):
            message = ws.receive_json()
            seen.append(message["type"])
            if message["type"] == "phase_change":
                assert message["phase"] == "LOBBY"
                assert message["state"]["version"] == 0
            if "pong" in seen and "phase_change" in seen:
                break
        assert "pong" in seen
        assert "phase_change" in seen
        assert main.app.state.connections.count() == 1


def test_each_app_lifespan_gets_its_own_connection_manager(monkeypatch):
    monkeypatch.setattr(settings, "store_backend", "memory")
    monkeypatch.setattr(settings, "player_id", "host-1")
    with TestClient(main.app):
        first = main.app.state.connections
        assert first.count() == 0
    with TestClient(main.app):
        second = main.app.state.connections
    assert first is not second
