"""
Shutdown: tear the fleet down, best-effort and loudly logged.

Two entry points:

    shutdown_session(session)    end of a run in this process
    shutdown_fleet(config, ...)  ``infra shutdown`` from another terminal

Neither ever raises.  Every avenue is tried regardless of earlier
failures.  For a session, in order: cleanup closures in reverse,
supervisor stop by service ID, recorded PIDs, process names, a port
sweep (443 too when Caddy was started), and the supervisor's stop-all.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

from infra.adapters.base import PortInspector, ProcessSupervisor
from infra.core.models.config import RuntimeConfig
from infra.core.models.events import ServiceAction, ServiceStatus
from infra.core.models.ports import OWNERSHIP_UNKNOWN
from infra.core.models.service import Options, ServiceSpec
from infra.core.models.state import ActionKind, LifecycleState
from infra.core.persistence.state_file import default_state_path, load_snapshot, save_snapshot
from infra.core.services.event_bus import EventBus
from infra.core.services.registry import (
    SERVICE_CADDY,
    build_service_specs,
    collect_process_names,
    collect_service_ports,
)
from infra.core.services.ports import parse_port

if TYPE_CHECKING:
    from infra.core.engine.sequencer import Session

logger = logging.getLogger(__name__)

HTTPS_PORT = 443


@dataclass
class ShutdownReport:
    """What a shutdown pass did."""

    cleanups_run: int = 0
    pids_killed: list[int] = field(default_factory=list)
    processes_killed: int = 0
    ports_swept: list[int] = field(default_factory=list)
    orchestrators_killed: list[int] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "cleanups_run": self.cleanups_run,
            "pids_killed": self.pids_killed,
            "processes_killed": self.processes_killed,
            "ports_swept": self.ports_swept,
            "orchestrators_killed": self.orchestrators_killed,
            "errors": self.errors,
            "clean": self.clean,
        }


def _attempt(report: ShutdownReport, what: str, fn: Callable[..., Any], *args: Any) -> Any:
    """Run one shutdown step; log and record any failure."""
    try:
        return fn(*args)
    except Exception as e:
        logger.warning("Shutdown step failed (%s): %s", what, e)
        report.errors.append(f"{what}: {e}")
        return None


def _ports_for(specs: list[ServiceSpec]) -> list[int]:
    ports = [parse_port(p.port) for p in collect_service_ports(specs)]
    return [p for p in ports if p > 0]


def shutdown_session(session: Session) -> ShutdownReport:
    """Stop everything ``session`` started.  Idempotent."""
    report = ShutdownReport()
    if session.is_shut_down:
        return report
    session.is_shut_down = True
    session.cancel()

    logger.info("🛑 Shutting down %d started service(s)...", len(session.started))

    # 1. Cleanup closures, last registered first
    for cleanup in reversed(session.cleanups):
        _attempt(report, "cleanup", cleanup)
        report.cleanups_run += 1

    started = [s for s in session.specs if s.id in session.started]
    inspector = session.inspector
    supervisor = session.supervisor

    # 2. Supervised processes a cleanup did not stop
    for spec in reversed(started):
        if _attempt(report, f"check {spec.id}", supervisor.is_running, spec.id):
            _attempt(report, f"stop {spec.id}", supervisor.stop, spec.id)

    # 3. Recorded PIDs still bound to their ports
    for spec in reversed(started):
        pid = session.pids.get(spec.id)
        if pid is None:
            continue
        for port in _ports_for([spec]):
            probe = _attempt(report, f"inspect port {port}", inspector.inspect, port, pid)
            if probe is not None and probe.pid == pid:
                if _attempt(report, f"kill PID {pid}", inspector.kill_process, pid):
                    report.pids_killed.append(pid)

    # 4. Process names of started services
    for name in collect_process_names(list(reversed(started))):
        killed = _attempt(report, f"kill {name}", inspector.kill_process_by_name, name)
        report.processes_killed += killed or 0

    # 5. Port sweep as the last resort
    sweep = _ports_for(list(reversed(started)))
    if SERVICE_CADDY in session.started:
        sweep.append(HTTPS_PORT)
    for port in sweep:
        if _attempt(report, f"check port {port}", inspector.is_available, port) is False:
            if _attempt(report, f"sweep port {port}", inspector.kill_process_by_port, port):
                report.ports_swept.append(port)

    # 6. Anything the supervisor still tracks
    _attempt(report, "supervisor stop_all", supervisor.stop_all)

    for spec in session.specs:
        if not spec.is_enabled(session.options):
            continue
        # Keep the conflict visible to status readers
        if session.states.get(spec.id) == LifecycleState.BLOCKED:
            continue
        _attempt(report, f"publish {spec.id}", _publish_stopped, session, spec)

    if report.clean:
        logger.info("✅ Shutdown complete")
    else:
        logger.warning("Shutdown finished with %d error(s)", len(report.errors))
    return report


def _publish_stopped(session: Session, spec: ServiceSpec) -> None:
    session.publish_action(spec, ActionKind.SHUTDOWN, "Service stopped")
    session.publish_status(spec, LifecycleState.STOPPED, ownership=OWNERSHIP_UNKNOWN)


def shutdown_fleet(
    config: RuntimeConfig,
    options: Options,
    inspector: PortInspector,
    supervisor: ProcessSupervisor | None = None,
    bus: EventBus | None = None,
) -> ShutdownReport:
    """Stop a fleet started by another orchestrator process.

    Specs are rebuilt from ``options``; nothing is read from global
    state.  Other ``infra service`` processes are killed first so they
    cannot restart what is swept next.
    """
    report = ShutdownReport()
    specs = build_service_specs(options, config)

    logger.info("🛑 Stopping infra services...")

    pids = _attempt(report, "find orchestrators", inspector.find_orchestrators) or []
    for pid in pids:
        if _attempt(report, f"kill orchestrator {pid}", inspector.kill_process, pid):
            report.orchestrators_killed.append(pid)

    if supervisor is not None:
        _attempt(report, "supervisor stop_all", supervisor.stop_all)

    for name in [*collect_process_names(specs), config.marker]:
        killed = _attempt(report, f"kill {name}", inspector.kill_process_by_name, name)
        report.processes_killed += killed or 0

    for port in [*_ports_for(specs), HTTPS_PORT]:
        if _attempt(report, f"sweep port {port}", inspector.kill_process_by_port, port):
            report.ports_swept.append(port)

    for spec in specs:
        if bus is not None:
            _attempt(report, f"publish {spec.id}", _emit_stopped, bus, spec)

    _attempt(report, "update snapshot", _mark_snapshot_stopped, config)

    if report.clean:
        logger.info("✅ All infra services stopped")
    return report


def _emit_stopped(bus: EventBus, spec: ServiceSpec) -> None:
    bus.emit(ServiceAction(id=spec.id, kind=ActionKind.SHUTDOWN, message="Service stopped"))
    bus.emit(ServiceStatus(
        id=spec.id,
        port=spec.port_number,
        state=LifecycleState.STOPPED,
        ownership=OWNERSHIP_UNKNOWN,
    ))


def _mark_snapshot_stopped(config: RuntimeConfig) -> None:
    path = default_state_path(config)
    snapshot = load_snapshot(path)
    if snapshot is None:
        return
    for entry in snapshot.services.values():
        entry.running = False
        entry.pid = None
        entry.state = LifecycleState.STOPPED
        entry.last_action_kind = ActionKind.SHUTDOWN
        entry.last_action = "Service stopped"
    snapshot.orchestrator_pid = None
    snapshot.touch()
    save_snapshot(snapshot, path)
