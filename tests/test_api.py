"""
Simulator API 테스트 (TestClient)
"""
import time

import httpx
import pytest
from fastapi.testclient import TestClient

from gcode_simulator.api.session_store import clear_all, get_session, set_session
from gcode_simulator.config import PlaybackConfig
from gcode_simulator.engine import SimulationEngine
from gcode_simulator.parser import parse_lines
from main import app

BASE = "/api/v1/simulator"


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c
        clear_all()


def _wait_loaded(client, session_id, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        snap = client.get(f"{BASE}/sessions/{session_id}").json()
        if snap["load_progress"] == 100.0 and not snap["is_streaming"]:
            return snap
        time.sleep(0.01)
    raise AssertionError(f"session {session_id} did not finish loading")


def _create(client, lines, **extra):
    body = {"gcode_content": "\n".join(lines) + "\n", **extra}
    response = client.post(f"{BASE}/sessions", json=body)
    assert response.status_code == 200
    return response.json()["session_id"]


class TestServiceEndpoints:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.json()["data"]["service"] == "alive"

    def test_info(self, client):
        data = client.get(f"{BASE}/").json()
        assert data["service"] == "G-code Simulator"
        assert "jump_to" in data["actions"]


class TestSessions:

    def test_create_and_poll(self, client, scenario_a):
        session_id = _create(client, scenario_a, session_id="scenario-a")
        assert session_id == "scenario-a"

        snap = _wait_loaded(client, session_id)
        assert snap["loaded_commands"] == 3
        assert snap["state"] == "idle"

    def test_create_requires_content_or_url(self, client):
        response = client.post(f"{BASE}/sessions", json={})
        assert response.status_code == 400
        assert response.json()["status"] == "error"

    def test_create_with_options(self, client, scenario_a):
        session_id = _create(client, scenario_a, playback_speed=50, filament_color="#00FF00")
        snap = _wait_loaded(client, session_id)
        assert snap["playback_speed"] == 50
        assert get_session(session_id).geometry.filament_color == "#00FF00"

    def test_upload(self, client):
        files = {"file": ("part.gcode", b"G28\nG1 X1 E1\n; done\n", "text/plain")}
        response = client.post(f"{BASE}/sessions/upload", files=files)
        assert response.status_code == 200
        data = response.json()
        assert data["snapshot"]["loaded_commands"] == 2
        assert data["stream_url"].endswith("/stream")

    def test_unknown_session_is_404(self, client):
        response = client.get(f"{BASE}/sessions/nope")
        assert response.status_code == 404
        assert response.json() == {"status": "error", "error": "세션을 찾을 수 없습니다."}

    def test_delete(self, client, scenario_a):
        session_id = _create(client, scenario_a)
        _wait_loaded(client, session_id)
        engine = get_session(session_id)

        assert client.delete(f"{BASE}/sessions/{session_id}").status_code == 200
        assert engine.is_disposed
        assert client.delete(f"{BASE}/sessions/{session_id}").status_code == 404


    def test_auto_start_after_large_comment_header(self, client, make_program):
        """첫 청크가 주석뿐이어도 auto_start 는 명령이 들어오면 재생을 시작"""
        header = [";" + "x" * 99] * 1000
        session_id = _create(client, header + make_program(200), auto_start=True, playback_speed=1000)

        deadline = time.monotonic() + 5.0
        snap = None
        while time.monotonic() < deadline:
            snap = client.get(f"{BASE}/sessions/{session_id}").json()
            if snap["current_command_index"] > 0:
                break
            time.sleep(0.01)
        assert snap["current_command_index"] > 0
        assert snap["state"] in ("running", "completed")

    def test_create_from_url(self, client, monkeypatch, scenario_a):
        content = ("; remote file\n" + "\n".join(scenario_a) + "\n").encode()
        requested = []

        def handler(request):
            requested.append(str(request.url))
            return httpx.Response(200, content=content)

        real_client = httpx.AsyncClient
        monkeypatch.setattr(httpx, "AsyncClient",
                            lambda **kwargs: real_client(transport=httpx.MockTransport(handler)))

        response = client.post(f"{BASE}/sessions",
                               json={"gcode_url": "http://files.test/part.gcode", "auto_start": True})
        assert response.status_code == 200
        session_id = response.json()["session_id"]

        snap = _wait_loaded(client, session_id)
        assert requested == ["http://files.test/part.gcode"]
        assert snap["loaded_commands"] == 3
        assert snap["state"] in ("running", "completed")

    def test_url_failure_enters_error(self, client, monkeypatch):
        real_client = httpx.AsyncClient
        transport = httpx.MockTransport(lambda request: httpx.Response(500))
        monkeypatch.setattr(httpx, "AsyncClient", lambda **kwargs: real_client(transport=transport))

        response = client.post(f"{BASE}/sessions", json={"gcode_url": "http://files.test/broken.gcode"})
        session_id = response.json()["session_id"]

        deadline = time.monotonic() + 5.0
        while time.monotonic() < deadline:
            snap = client.get(f"{BASE}/sessions/{session_id}").json()
            if snap["state"] == "error":
                break
            time.sleep(0.01)
        assert snap["state"] == "error"
        assert snap["loaded_commands"] == 0


class TestControl:

    def test_jump_then_geometry_and_commands(self, client, scenario_a):
        session_id = _create(client, scenario_a)
        _wait_loaded(client, session_id)

        response = client.post(f"{BASE}/sessions/{session_id}/control", json={"action": "jump_to", "index": 1})
        assert response.status_code == 200
        assert response.json()["last_executed_index"] == 1
        assert response.json()["position"] == {"x": 10.0, "y": 10.0, "z": 0.0}

        geometry = client.get(f"{BASE}/sessions/{session_id}/geometry").json()
        assert geometry["encoding"] == "float32-le-base64"
        assert geometry["extrusionPoints"] == 4
        assert geometry["stats"]["emitted_segments"] == 2
        assert geometry["bounds"]["min"] == {"x": 0.0, "y": 0.0, "z": 0.0}
        assert geometry["bounds"]["max"] == {"x": 10.0, "y": 10.0, "z": 0.0}

        commands = client.get(f"{BASE}/sessions/{session_id}/commands", params={"start": 1, "limit": 1}).json()
        assert commands["count"] == 1
        assert commands["commands"][0]["command"] == "G1"
        assert commands["commands"][0]["line_number"] == 2
        assert commands["current_index"] == 2

    def test_invalid_action_is_422(self, client, scenario_a):
        session_id = _create(client, scenario_a)
        response = client.post(f"{BASE}/sessions/{session_id}/control", json={"action": "fly"})
        assert response.status_code == 422

    def test_set_speed_and_pause(self, client, make_program):
        session_id = _create(client, make_program(200))
        _wait_loaded(client, session_id)

        snap = client.post(f"{BASE}/sessions/{session_id}/control",
                           json={"action": "set_playback_speed", "multiplier": 0.5}).json()
        assert snap["playback_speed"] == 0.5

        snap = client.post(f"{BASE}/sessions/{session_id}/control", json={"action": "start"}).json()
        assert snap["state"] == "running"

        snap = client.post(f"{BASE}/sessions/{session_id}/control", json={"action": "pause"}).json()
        assert snap["state"] == "paused"

    def test_seek_timeout_is_408(self, client):
        engine = SimulationEngine(PlaybackConfig(seek_poll_interval=0.01, seek_stall_timeout=0.05))
        engine.store.declare(5)
        engine.store.append(parse_lines(["G1 X1"]))
        set_session("stalled", engine)

        response = client.post(f"{BASE}/sessions/stalled/control", json={"action": "jump_to", "index": 3})
        assert response.status_code == 408
        assert response.json()["error"] == "seek_timeout"
        assert response.json()["loaded"] == 1
        assert response.headers["Retry-After"] == "1"

    def test_disposed_engine_is_409(self, client):
        engine = SimulationEngine()
        set_session("disposed", engine)
        engine.dispose()

        response = client.post(f"{BASE}/sessions/disposed/control", json={"action": "start"})
        assert response.status_code == 409
        assert response.json()["error"] == "invalid_state"
