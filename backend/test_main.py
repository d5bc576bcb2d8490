"""
API tests for the FastAPI shell. Controllers are built with stub transports,
so no request leaves the process.
"""

import threading
import uuid

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

import main
from conftest import NOT_GRANTED, StubDispatcher, StubReachability, StubTimeTransport, shanghai_ms
from engine import ProcessController
from models import RunMode
from timing import CancellableWaiter, LatencyProbe, TimeSource


class Stubs:
    """What the patched controller factory hands to new controllers."""

    def __init__(self):
        self.ntp_answers = {"ntp-a": shanghai_ms(2024, 3, 1, 12, 0, 0)}
        self.gate = threading.Event()
        self.dispatchers: dict[RunMode, StubDispatcher] = {}
        self.controllers: list[ProcessController] = []

    def make_controller(self, mode, settings, sink):
        reach = StubReachability([(20, True), (22, True), (24, True)] * 10)
        dispatcher = StubDispatcher([NOT_GRANTED], gate=self.gate)
        self.dispatchers[mode] = dispatcher
        controller = ProcessController(
            mode, settings, sink,
            time_source=TimeSource(["ntp-a"], transport=StubTimeTransport(self.ntp_answers)),
            probe=LatencyProbe(reach, clock=reach.clock),
            waiter=CancellableWaiter(poll_interval=0.01),
            dispatcher=dispatcher,
            retry_sleep=lambda _: None,
        )
        self.controllers.append(controller)
        return controller


@pytest.fixture
def stubs(monkeypatch):
    s = Stubs()
    monkeypatch.setattr(main, "make_controller", s.make_controller)
    monkeypatch.setattr(main.limiter, "enabled", False)
    main.sessions.clear()
    yield s
    for c in s.controllers:
        c.stop()
    s.gate.set()
    for c in s.controllers:
        c.join(5)
    main.sessions.clear()


@pytest.fixture
def client(stubs):
    with TestClient(main.app) as c:
        c.headers["X-Session-ID"] = str(uuid.uuid4())
        yield c


def configure(client, **overrides):
    payload = {"credential": "serviceToken=abc"}
    payload.update(overrides)
    return client.post("/api/config", json=payload)


class TestBasics:

    def test_health(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    def test_clock(self, client):
        body = client.get("/api/clock").json()
        assert len(body["time"]) == len("00:00:00.000")
        assert body["epoch_ms"] > 0

    def test_security_headers(self, client):
        resp = client.get("/api/health")
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["X-Frame-Options"] == "DENY"

    def test_missing_session_id(self, stubs):
        with TestClient(main.app) as c:
            assert c.get("/api/status").status_code == 400

    def test_invalid_session_id(self, stubs):
        with TestClient(main.app) as c:
            resp = c.get("/api/status", headers={"X-Session-ID": "not-a-uuid"})
            assert resp.status_code == 400


class TestConfig:

    def test_defaults_before_configuration(self, client):
        body = client.get("/api/config").json()
        assert body["credential_set"] is False
        assert body["target_time"] == "00:00:00"
        assert body["target_zone"] == "Asia/Shanghai"
        assert body["scheduled_policy"] == "single_attempt"
        assert body["manual_policy"] == "continuous_retry"

    def test_set_and_get(self, client):
        resp = configure(client, target_time="21:29:58", target_zone="Asia/Kolkata", roll="next_day")
        assert resp.status_code == 200

        body = client.get("/api/config").json()
        assert body["credential_set"] is True
        assert body["target_time"] == "21:29:58"
        assert body["target_zone"] == "Asia/Kolkata"
        assert body["roll"] == "next_day"
        assert "credential" not in body

    def test_credential_kept_when_omitted(self, client):
        configure(client)
        client.post("/api/config", json={"retry_delay": 1.0})
        body = client.get("/api/config").json()
        assert body["credential_set"] is True
        assert body["retry_delay"] == 1.0

    @pytest.mark.parametrize("payload", [
        {"target_zone": "Mars/Olympus"},
        {"target_time": "24:00:00"},
        {"roll": "sometimes"},
        {"max_attempts": 0},
    ])
    def test_invalid_values(self, client, payload):
        assert client.post("/api/config", json=payload).status_code == 422

    def test_sessions_are_isolated(self, client):
        configure(client)
        other = {"X-Session-ID": str(uuid.uuid4())}
        assert client.get("/api/config", headers=other).json()["credential_set"] is False

    def test_locked_while_running(self, client):
        configure(client)
        client.post("/api/modes/manual/start")
        assert configure(client).status_code == 409


class TestModes:

    def test_start_without_credential(self, client):
        resp = client.post("/api/modes/manual/start")
        assert resp.status_code == 400

    def test_unknown_mode(self, client):
        configure(client)
        assert client.post("/api/modes/turbo/start").status_code == 422

    def test_start_manual(self, client, stubs):
        configure(client)
        resp = client.post("/api/modes/manual/start")
        assert resp.status_code == 200
        assert resp.json() == {"status": "started", "mode": "manual"}

        stubs.gate.set()
        controller = main.sessions[client.headers["X-Session-ID"]].controllers[RunMode.MANUAL]
        controller.stop()
        assert controller.join(5)
        assert stubs.dispatchers[RunMode.MANUAL].calls[0] == ("serviceToken=abc", False)

    def test_second_start_conflicts(self, client):
        configure(client)
        assert client.post("/api/modes/manual/start").status_code == 200
        assert client.post("/api/modes/manual/start").status_code == 409

    def test_stop_idle_mode(self, client):
        assert client.post("/api/modes/scheduled/stop").status_code == 404

    def test_stop_scheduled_during_wait(self, client, stubs):
        configure(client)
        assert client.post("/api/modes/scheduled/start").status_code == 200

        resp = client.post("/api/modes/scheduled/stop")
        assert resp.status_code == 200
        assert resp.json() == {"status": "stopping", "mode": "scheduled"}

        controller = main.sessions[client.headers["X-Session-ID"]].controllers[RunMode.SCHEDULED]
        assert controller.join(5)
        assert controller.is_running is False
        assert stubs.dispatchers[RunMode.SCHEDULED].calls == []

    def test_status_lists_both_modes(self, client):
        configure(client)
        client.post("/api/modes/manual/start")

        modes = {m["mode"]: m for m in client.get("/api/status").json()["modes"]}
        assert set(modes) == {"scheduled", "manual"}
        assert modes["manual"]["running"] is True
        assert modes["scheduled"]["running"] is False
        assert modes["scheduled"]["state"] == "idle"


class TestCalibrate:

    def test_preview(self, client):
        body = client.post("/api/calibrate").json()
        assert body["time_source"] == "ntp-a"
        assert body["latency_ms"] == 22
        assert body["latency_samples"] == 3
        assert body["arrival_ms"] == shanghai_ms(2024, 3, 2, 0, 0, 0)
        assert body["send_ms"] == body["arrival_ms"] - 22
        assert body["send"] == "2024-03-01 23:59:59.978 CST"
        assert body["wait_seconds"] == pytest.approx(12 * 3600 - 0.022)

    def test_no_time_server(self, client, stubs):
        stubs.ntp_answers.clear()
        assert client.post("/api/calibrate").status_code == 503

    def test_past_deadline(self, client, stubs):
        stubs.ntp_answers["ntp-a"] = shanghai_ms(2024, 3, 1, 23, 59, 59) + 990
        assert client.post("/api/calibrate").status_code == 409


class TestWebSocket:

    def test_ping_pong(self, client):
        sid = client.headers["X-Session-ID"]
        with client.websocket_connect(f"/ws?session_id={sid}") as ws:
            ws.send_text("ping")
            assert ws.receive_json() == {"type": "pong"}

    def test_invalid_session_rejected(self, client):
        with pytest.raises(WebSocketDisconnect) as err:
            with client.websocket_connect("/ws?session_id=nope") as ws:
                ws.receive_text()
        assert err.value.code == 1008

    def test_events_are_streamed(self, client):
        sid = client.headers["X-Session-ID"]
        configure(client)
        with client.websocket_connect(f"/ws?session_id={sid}") as ws:
            client.post("/api/modes/manual/start")
            event = ws.receive_json()
            assert event["type"] in ("state", "log")
            assert event["data"]["mode"] == "manual"
