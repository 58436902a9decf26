import threading

import pytest
from fastapi.testclient import TestClient

from cycle_core import __version__
from cycle_core.api import create_app
from cycle_core.memory import SessionLogStore
from cycle_core.scheduler import build_scheduler

from conftest import GENERATOR_OUTPUTS, FakeLLMClient


@pytest.fixture
def app(config, make_controller, timers, clock):
    scheduler = build_scheduler(config, controller=make_controller(), timer_factory=timers, clock=clock)
    return create_app(scheduler=scheduler, sessions=SessionLogStore(config.paths.sessions_dir))


@pytest.fixture
def client(app):
    return TestClient(app)


def finish_background(app):
    worker = app.state.worker
    assert worker is not None
    worker.join(timeout=10)
    assert not worker.is_alive()


def run_cycles(client, app, n=2, text="How do tides shape coastlines?"):
    response = client.post("/run", json={"input": text, "max_cycles": n})
    assert response.status_code == 202
    finish_background(app)


def test_health(client):
    data = client.get("/health").json()
    assert data["status"] == "healthy"
    assert data["version"] == __version__


def test_status_when_idle(client):
    data = client.get("/status").json()

    assert data["is_running"] is False
    assert data["is_eternal"] is False
    assert data["state"] == "idle"
    assert data["history_size"] == 0
    assert data["last_result"] is None
    assert data["interval_seconds"] == 30


def test_run_in_background(client, app):
    response = client.post("/run", json={"input": "tides", "max_cycles": 2})
    body = response.json()
    assert body["status"] == "started"
    assert body["max_cycles"] == 2
    finish_background(app)

    status = client.get("/status").json()
    assert status["history_size"] == 2
    assert status["last_result"]["status"] == "completed"
    assert status["last_result"]["cycle_ids"] == [0, 1]


def test_run_rejected_while_running(client, app):
    controller = app.state.scheduler.controller
    controller._running = True
    try:
        response = client.post("/run", json={"input": "tides"})
    finally:
        controller._running = False
    assert response.status_code == 409


def test_second_run_rejected_while_first_is_in_flight(config, make_controller, timers, clock):
    release = threading.Event()

    def generator(n):
        release.wait(10)
        return GENERATOR_OUTPUTS[0]

    controller = make_controller(FakeLLMClient(generator=generator))
    scheduler = build_scheduler(config, controller=controller, timer_factory=timers, clock=clock)
    app = create_app(scheduler=scheduler, sessions=SessionLogStore(config.paths.sessions_dir))
    client = TestClient(app)

    first = client.post("/run", json={"input": "tides", "max_cycles": 1})
    first_worker = app.state.worker
    second = client.post("/run", json={"input": "again", "max_cycles": 1})

    assert first.status_code == 202
    assert second.status_code == 409
    assert first.json()["run_id"] in second.json()["detail"]
    assert app.state.worker is first_worker

    release.set()
    finish_background(app)
    assert controller.last_result.cycles_run == 1


@pytest.mark.parametrize("body", [{"input": ""}, {"input": "x", "max_cycles": 0}, {}])
def test_run_validation(client, body):
    assert client.post("/run", json=body).status_code == 422


def test_stop_when_idle(client):
    assert client.post("/stop").json() == {"stopped": False, "state": "idle"}


def test_cycles_and_export(client, app):
    run_cycles(client, app, n=3)

    cycles = client.get("/cycles", params={"limit": 2}).json()
    assert [c["id"] for c in cycles] == [1, 2]
    assert cycles[0]["action_result"]["agent_used"] == "math"

    export = client.get("/cycles/export")
    assert export.headers["content-type"].startswith("application/json")
    assert export.json()["total_cycles"] == 3


def test_events(client, app):
    run_cycles(client, app, n=1)
    names = [e["name"] for e in client.get("/events").json()]
    assert names == ["cycle-start", "tribunal-decision", "memory-update", "cycle-end"]


class TestEternal:

    def test_start_and_stop(self, client, app, timers):
        response = client.post("/eternal/start", json={"max_cycles_per_loop": 1})
        assert response.status_code == 202
        assert response.json()["config"]["max_cycles_per_loop"] == 1
        finish_background(app)

        scheduler = app.state.scheduler
        assert scheduler.is_eternal
        assert scheduler.loop_count == 1
        assert client.get("/status").json()["is_eternal"] is True

        stopped = client.post("/eternal/stop").json()
        assert stopped == {"stopped": True, "loop_count": 1, "total_cycles": 1}
        assert timers.pending() == []

    def test_start_without_body(self, client, app):
        assert client.post("/eternal/start").status_code == 202
        finish_background(app)
        app.state.scheduler.stop_eternal()

    def test_invalid_bounds_rejected(self, client, app):
        response = client.post("/eternal/start", json={"min_interval": 200, "max_interval": 100})
        assert response.status_code == 422
        assert app.state.worker is None

    def test_update_config(self, client):
        response = client.patch("/eternal/config", json={"interval_seconds": 500})
        assert response.status_code == 200
        assert response.json()["interval_seconds"] == 120

    def test_update_config_validation(self, client):
        assert client.patch("/eternal/config", json={"interval_seconds": -1}).status_code == 422


class TestSessions:

    def test_save_list_and_load(self, client, app):
        run_cycles(client, app, n=2)

        saved = client.post("/sessions/coastline/save").json()
        assert saved["total_cycles"] == 2

        listed = client.get("/sessions").json()
        assert [s["session_id"] for s in listed] == ["coastline"]

        session = client.get("/sessions/coastline").json()
        assert [c["id"] for c in session["cycles"]] == [0, 1]

    def test_missing_session(self, client):
        assert client.get("/sessions/nowhere").status_code == 404

    def test_invalid_session_id(self, client):
        assert client.post("/sessions/.hidden/save").status_code == 400
