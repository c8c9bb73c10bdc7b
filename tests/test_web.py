"""
Tests for the web control panel: app factory, API routes, SSE stream.
"""

from __future__ import annotations

import json

import pytest
from flask.testing import FlaskClient

from infra.core.models.config import RuntimeConfig
from infra.core.models.events import ServiceAction, ServiceRegistered, ServiceStatus
from infra.core.services.event_bus import EventBus
from infra.ui.web.server import create_app


@pytest.fixture()
def fleet_bus() -> EventBus:
    """A bus with a small fleet already folded into its snapshot."""
    bus = EventBus()
    bus.emit(ServiceRegistered(id="web", name="Web Server", required=True, port="1337"))
    bus.emit(ServiceRegistered(id="bento", name="Bento Stream Processor", port="4195"))
    bus.emit(ServiceStatus(id="web", running=True, pid=10, port=1337, ownership="free", state="running"))
    bus.emit(ServiceAction(id="bento", kind="startup_blocked", message="Startup blocked: busy"))
    bus.emit(ServiceStatus(id="bento", port=4195, ownership="external", state="blocked", message="busy"))
    return bus


@pytest.fixture()
def client(config: RuntimeConfig, fleet_bus: EventBus) -> FlaskClient:
    app = create_app(config, bus=fleet_bus)
    app.config["TESTING"] = True
    return app.test_client()


class TestAppFactory:
    def test_creates_app(self, config):
        app = create_app(config)
        assert app is not None
        assert app.config["RUNTIME_CONFIG"] is config

    def test_default_bus(self):
        app = create_app()
        assert isinstance(app.config["EVENT_BUS"], EventBus)

    def test_healthz(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        assert resp.get_json() == {"status": "ok"}


# ── API ──────────────────────────────────────────────────────────────


class TestServicesAPI:
    def test_lists_services(self, client):
        resp = client.get("/api/services")
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["environment"] == "development"
        assert [s["id"] for s in data["services"]] == ["web", "bento"]
        assert data["running"] == 1

    def test_includes_health(self, client):
        health = client.get("/api/services").get_json()["health"]
        assert health["status"] == "unhealthy"
        statuses = {c["name"]: c["status"] for c in health["components"]}
        assert statuses == {"web": "healthy", "bento": "unhealthy"}

    def test_single_service(self, client):
        data = client.get("/api/services/bento").get_json()
        assert data["state"] == "blocked"
        assert data["ownership"] == "external"
        assert data["last_action_kind"] == "startup_blocked"

    def test_unknown_service(self, client):
        resp = client.get("/api/services/nope")
        assert resp.status_code == 404
        assert "Unknown service" in resp.get_json()["error"]


class TestRoutesAPI:
    def test_routes_for_registered_services(self, client):
        data = client.get("/api/routes").get_json()
        assert data["root_target"] == "localhost:1337"
        assert [r["path"] for r in data["routes"]] == ["/bento-playground/*"]

    def test_routes_without_registrations(self, config):
        app = create_app(config, bus=EventBus())
        data = app.test_client().get("/api/routes").get_json()
        assert "/pocketbase/*" in [r["path"] for r in data["routes"]]


# ── SSE ──────────────────────────────────────────────────────────────


def _frames(resp, count):
    frames = []
    stream = iter(resp.response)
    for _ in range(count):
        chunk = next(stream)
        frames.append(chunk.decode() if isinstance(chunk, bytes) else chunk)
    resp.close()
    return frames


def _payload(frame):
    line = next(ln for ln in frame.splitlines() if ln.startswith("data: "))
    return json.loads(line[len("data: "):])


class TestEventStream:
    def test_headers(self, client):
        resp = client.get("/api/events")
        assert resp.mimetype == "text/event-stream"
        assert resp.headers["X-Accel-Buffering"] == "no"
        assert "no-cache" in resp.headers["Cache-Control"]
        resp.close()

    def test_ready_then_snapshot(self, client):
        ready, snapshot = _frames(client.get("/api/events"), 2)
        assert ready.startswith("event: sys:ready\n")
        assert _payload(ready)["data"]["services"] == ["bento", "web"]
        assert snapshot.startswith("event: state:snapshot\n")
        services = _payload(snapshot)["data"]["services"]
        assert [s["id"] for s in services] == ["web", "bento"]

    def test_resume_with_last_event_id(self, client, fleet_bus):
        resp = client.get("/api/events", headers={"Last-Event-Id": "3"})
        ready, replayed = _frames(resp, 2)
        assert ready.startswith("event: sys:ready\n")
        assert _payload(replayed)["seq"] == 4
        assert "id: 4\n" in replayed
