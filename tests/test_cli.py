"""
Tests for CLI commands: global options, service, status, routes, ports,
identity and shutdown.
"""

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from infra.adapters.process.ports import SystemPortInspector
from infra.core.engine.shutdown import ShutdownReport
from infra.core.errors import PortInspectionError, ServiceStartError, StartupBlockedError
from infra.core.models.events import ServiceRegistered, ServiceStatus
from infra.core.models.ports import Ownership, Probe
from infra.core.models.state import RuntimeSnapshot
from infra.core.persistence.state_file import save_snapshot
from infra.main import cli


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "infra.yml"
    path.write_text("environment: development\ndata_dir: data\nbin_dir: bin\n")
    return path


def _invoke(config_file: Path, *args: str):
    runner = CliRunner()
    return runner.invoke(cli, ["--config", str(config_file), *args])


class TestCLIGlobal:
    """Tests for global CLI behavior."""

    def test_help(self):
        runner = CliRunner()
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "service fleet" in result.output

    def test_version(self):
        runner = CliRunner()
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_missing_config_file(self, tmp_path: Path):
        result = _invoke(tmp_path / "nope.yml", "services")
        assert result.exit_code == 1
        assert "Config file not found" in result.output


# ── service ──────────────────────────────────────────────────────────


class TestServiceCommand:
    def test_builds_options(self, config_file, monkeypatch):
        captured = {}

        def fake_run(orchestrator):
            captured["orchestrator"] = orchestrator

        monkeypatch.setattr("infra.core.engine.sequencer.run_service", fake_run)
        result = _invoke(
            config_file, "service", "--skip", "mox,hugo", "--only", "web",
            "--only", "PocketBase", "--no-nats",
        )

        assert result.exit_code == 0, result.output
        options = captured["orchestrator"].options
        assert options.mode == "development"
        assert options.only_services == ["web", "pocketbase"]
        assert options.skip_services == ["mox", "hugo"]
        assert options.no_nats is True
        assert "All services stopped" in result.output

    def test_unknown_service_name(self, config_file, monkeypatch):
        monkeypatch.setattr("infra.core.engine.sequencer.run_service", lambda o: None)
        result = _invoke(config_file, "service", "--skip", "postgres")
        assert result.exit_code == 2
        assert "Unknown service: postgres" in result.output

    def test_blocked_exits_nonzero(self, config_file, monkeypatch):
        def blocked(orchestrator):
            raise StartupBlockedError(
                "PocketBase", 8090, detail="PocketBase port 8090 is in use by PID 555 (python3)",
            )

        monkeypatch.setattr("infra.core.engine.sequencer.run_service", blocked)
        result = _invoke(config_file, "service")
        assert result.exit_code == 1
        assert "PID 555" in result.output

    def test_run_error_exits_nonzero(self, config_file, monkeypatch):
        def failed(orchestrator):
            raise ServiceStartError("Bento failed to start: missing binary")

        monkeypatch.setattr("infra.core.engine.sequencer.run_service", failed)
        result = _invoke(config_file, "service", "--mode", "production")
        assert result.exit_code == 1
        assert "missing binary" in result.output


# ── status / services / routes ───────────────────────────────────────


class TestStatusCommand:
    def _persist(self, config_file: Path) -> None:
        snapshot = RuntimeSnapshot(environment="development", orchestrator_pid=4321)
        snapshot.apply(ServiceRegistered(id="web", name="Web Server", required=True, port="1337"))
        snapshot.apply(ServiceStatus(id="web", running=True, pid=11, port=1337, state="running"))
        snapshot.apply(ServiceRegistered(id="pocketbase", name="PocketBase", port="8090"))
        snapshot.apply(ServiceStatus(
            id="pocketbase", port=8090, state="blocked", ownership="external",
            message="PocketBase port 8090 is in use by PID 555",
        ))
        save_snapshot(snapshot, config_file.parent / "data" / "state" / "runtime.json")

    def test_no_state(self, config_file):
        result = _invoke(config_file, "status")
        assert result.exit_code == 0
        assert "No runtime state" in result.output

    def test_with_state(self, config_file):
        self._persist(config_file)
        result = _invoke(config_file, "status")
        assert result.exit_code == 0
        assert "Web Server" in result.output
        assert "PID 11" in result.output
        assert "in use by PID 555" in result.output
        assert "unhealthy" in result.output

    def test_disabled_service_shown_and_ignored(self, config_file):
        snapshot = RuntimeSnapshot(environment="development")
        snapshot.apply(ServiceRegistered(id="web", name="Web Server", required=True, port="1337"))
        snapshot.apply(ServiceStatus(id="web", running=True, pid=11, port=1337, state="running"))
        snapshot.apply(ServiceRegistered(id="nats", name="NATS", required=True, port="4222", enabled=False))
        save_snapshot(snapshot, config_file.parent / "data" / "state" / "runtime.json")

        result = _invoke(config_file, "status")
        assert "disabled" in result.output
        assert "Health: healthy" in result.output

    def test_json(self, config_file):
        self._persist(config_file)
        data = json.loads(_invoke(config_file, "status", "--json").output)
        assert data["snapshot"]["orchestrator_pid"] == 4321
        assert data["health"]["status"] == "unhealthy"

    def test_json_without_state(self, config_file):
        data = json.loads(_invoke(config_file, "status", "--json").output)
        assert data["snapshot"] is None
        assert data["health"]["status"] == "unknown"


class TestServicesCommand:
    def test_lists_catalog(self, config_file):
        result = _invoke(config_file, "services")
        assert result.exit_code == 0
        for service_id in ("web", "nats", "caddy", "mox"):
            assert service_id in result.output

    def test_json(self, config_file):
        data = json.loads(_invoke(config_file, "services", "--json").output)
        assert data[0]["id"] == "web"
        assert data[0]["required"] is True
        nats = next(s for s in data if s["id"] == "nats")
        assert nats["additional_ports"] == ["5222"]


class TestRoutesCommand:
    def test_development(self, config_file):
        result = _invoke(config_file, "routes")
        assert result.exit_code == 0
        assert "localhost:2015 {" in result.output
        assert "handle /pocketbase/*" in result.output

    def test_production(self, config_file):
        result = _invoke(config_file, "routes", "--production")
        assert ":2015 {" in result.output
        assert "tls internal" not in result.output


# ── ports / identity / shutdown ──────────────────────────────────────


class TestPortsInspect:
    def test_free(self, config_file, monkeypatch):
        monkeypatch.setattr(SystemPortInspector, "inspect", lambda self, port, expected_pid=None: Probe(port=port))
        result = _invoke(config_file, "ports", "inspect", "8090")
        assert result.exit_code == 0
        assert "Port 8090 is free" in result.output

    def test_conflict_for_service(self, config_file, monkeypatch):
        monkeypatch.setattr(
            SystemPortInspector,
            "inspect",
            lambda self, port, expected_pid=None: Probe(port=port, pid=999, command="/opt/bento run"),
        )
        result = _invoke(config_file, "ports", "inspect", "4195", "--service", "bento", "--json")
        data = json.loads(result.output)
        assert data["ownership"] == Ownership.THIS
        assert data["pid"] == 999

    def test_conflict_message(self, config_file, monkeypatch):
        monkeypatch.setattr(
            SystemPortInspector,
            "inspect",
            lambda self, port, expected_pid=None: Probe(port=port, pid=555, command="python3 -m http.server"),
        )
        result = _invoke(config_file, "ports", "inspect", "8090", "--service", "pocketbase")
        assert "PocketBase port 8090 is in use by PID 555" in result.output

    def test_inspection_error(self, config_file, monkeypatch):
        def broken(self, port, expected_pid=None):
            raise PortInspectionError("lsof not found")

        monkeypatch.setattr(SystemPortInspector, "inspect", broken)
        result = _invoke(config_file, "ports", "inspect", "8090")
        assert result.exit_code == 1
        assert "lsof not found" in result.output

    def test_unknown_service(self, config_file):
        result = _invoke(config_file, "ports", "inspect", "8090", "--service", "postgres")
        assert result.exit_code == 1


class TestIdentityEnsure:
    def test_creates_and_reports(self, config_file):
        result = _invoke(config_file, "identity", "ensure", "--json")
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["operator_id"].startswith("O")
        assert data["account_id"].startswith("A")
        assert Path(data["app_creds_path"]).is_file()

    def test_second_run_is_stable(self, config_file):
        first = json.loads(_invoke(config_file, "identity", "ensure", "--json").output)
        second = json.loads(_invoke(config_file, "identity", "ensure", "--json").output)
        assert first == second


class TestShutdownCommand:
    def test_reports(self, config_file, monkeypatch):
        report = ShutdownReport(orchestrators_killed=[777], ports_swept=[8090])
        monkeypatch.setattr("infra.core.engine.shutdown.shutdown_fleet", lambda *a, **kw: report)
        result = _invoke(config_file, "shutdown")
        assert result.exit_code == 0
        assert "PID 777" in result.output
        assert "Freed port 8090" in result.output
        assert "All infra services stopped" in result.output

    def test_json(self, config_file, monkeypatch):
        report = ShutdownReport(errors=["sweep port 443: denied"])
        monkeypatch.setattr("infra.core.engine.shutdown.shutdown_fleet", lambda *a, **kw: report)
        data = json.loads(_invoke(config_file, "shutdown", "--json").output)
        assert data["clean"] is False
