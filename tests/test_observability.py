"""
Tests for observability: fleet health and logging setup.
"""

import logging

from infra.core.models.events import ServiceStatus
from infra.core.models.service import Options
from infra.core.models.state import RuntimeSnapshot, ServiceRuntimeState
from infra.core.observability.health import (
    ComponentHealth,
    SystemHealth,
    check_fleet_health,
    check_service,
)
from infra.core.observability.logging_config import resolve_level, setup_logging
from infra.core.services.event_bus import EventBus
from infra.core.services.registry import build_service_specs

# ── Health Check Tests ───────────────────────────────────────────────


class TestComponentHealth:
    def test_defaults(self):
        c = ComponentHealth(name="test")
        assert c.status == "unknown"

    def test_to_dict(self):
        c = ComponentHealth(name="test", status="healthy", message="ok")
        d = c.to_dict()
        assert d["name"] == "test"
        assert d["status"] == "healthy"


class TestSystemHealth:
    def test_empty_is_unknown(self):
        assert SystemHealth().status == "unknown"

    def test_all_healthy(self):
        h = SystemHealth()
        h.add(ComponentHealth(name="a", status="healthy"))
        h.add(ComponentHealth(name="b", status="healthy"))
        assert h.status == "healthy"

    def test_degraded_if_any_degraded(self):
        h = SystemHealth()
        h.add(ComponentHealth(name="a", status="healthy"))
        h.add(ComponentHealth(name="b", status="degraded"))
        assert h.status == "degraded"

    def test_unhealthy_if_any_unhealthy(self):
        h = SystemHealth()
        h.add(ComponentHealth(name="a", status="degraded"))
        h.add(ComponentHealth(name="b", status="unhealthy"))
        assert h.status == "unhealthy"

    def test_to_dict(self):
        h = SystemHealth()
        h.add(ComponentHealth(name="a", status="healthy"))
        d = h.to_dict()
        assert d["timestamp"]
        assert len(d["components"]) == 1
        assert d["counts"]["healthy"] == 1
        assert d["counts"]["unhealthy"] == 0


class TestServiceHealth:
    def test_running(self):
        c = check_service(ServiceRuntimeState(id="web", running=True, pid=10, state="running"))
        assert c.status == "healthy"
        assert "PID 10" in c.message

    def test_required_stopped(self):
        c = check_service(ServiceRuntimeState(id="nats", required=True, state="stopped"))
        assert c.status == "unhealthy"
        assert c.message == "Service is stopped"

    def test_optional_error(self):
        c = check_service(ServiceRuntimeState(id="hugo", state="error", message="Start failed: boom"))
        assert c.status == "degraded"
        assert c.message == "Start failed: boom"

    def test_blocked_is_unhealthy(self):
        c = check_service(ServiceRuntimeState(id="bento", state="blocked"))
        assert c.status == "unhealthy"

    def test_fleet(self):
        snapshot = RuntimeSnapshot(services={
            "web": ServiceRuntimeState(id="web", required=True, running=True, state="running"),
            "hugo": ServiceRuntimeState(id="hugo", state="stopped"),
        })
        health = check_fleet_health(snapshot)
        assert health.status == "degraded"
        assert [c.name for c in health.components] == ["web", "hugo"]

    def test_no_snapshot(self):
        assert check_fleet_health(None).status == "unknown"

    def test_disabled_services_left_out(self, config):
        bus = EventBus()
        options = Options(no_nats=True)
        for spec in build_service_specs(options, config, bus=bus):
            if spec.is_enabled(options):
                bus.emit(ServiceStatus(id=spec.id, running=True, pid=1, state="running"))

        health = check_fleet_health(bus.snapshot())
        assert health.status == "healthy"
        assert "nats" not in [c.name for c in health.components]


# ── Logging ──────────────────────────────────────────────────────────


class TestLogging:
    def test_resolve_level_flags(self):
        assert resolve_level(debug=True, verbose=True) == "DEBUG"
        assert resolve_level(verbose=True) == "INFO"
        assert resolve_level(quiet=True) == "ERROR"

    def test_resolve_level_env(self, monkeypatch):
        monkeypatch.setenv("INFRA_LOG_LEVEL", "INFO")
        assert resolve_level() == "INFO"
        monkeypatch.delenv("INFRA_LOG_LEVEL")
        assert resolve_level() == "WARNING"

    def test_file_handler(self, tmp_path):
        log_file = tmp_path / "infra.log"
        setup_logging(level="WARNING", log_file=str(log_file), log_file_level="DEBUG")
        try:
            root = logging.getLogger()
            assert root.level == logging.DEBUG
            logging.getLogger("infra.test").debug("hello file")
            for handler in root.handlers:
                handler.flush()
            assert "hello file" in log_file.read_text()
        finally:
            for handler in logging.getLogger().handlers:
                handler.close()
            logging.getLogger().handlers.clear()

    def test_third_party_quieted(self):
        setup_logging(level="INFO")
        assert logging.getLogger("werkzeug").level == logging.WARNING
        logging.getLogger().handlers.clear()

    def test_unknown_level_falls_back(self):
        setup_logging(level="LOUD")
        assert logging.getLogger().level == logging.WARNING
        logging.getLogger().handlers.clear()

    def test_process_output_uses_service_name(self):
        setup_logging(level="INFO")
        try:
            formatter = logging.getLogger().handlers[0].formatter
            record = logging.LogRecord(
                "infra.process.nats", logging.INFO, __file__, 1, "listening", None, None,
            )
            assert "[nats] listening" in formatter.format(record)
            assert record.name == "infra.process.nats"
        finally:
            logging.getLogger().handlers.clear()
