"""
Startup sequencer: bring the fleet up in registry order.

Per enabled service, strictly one at a time:

    pending ─ ensure ──✗──→ error            (run marked failed, continue)
       │
       ├─ no port ──────────────────────────→ start
       ├─ inspect ──✗──→ error/unknown ─────→ start
       ├─ free ─────────────────────────────→ start
       ├─ this + dev ─ reclaim ─ port free ─→ reclaimed → start
       │                      └─ still busy → blocked   (abort run)
       └─ this / infra / external ──────────→ blocked   (abort run)

    start ──✗──→ error   (run marked failed, continue)
          └───→ running  (PID recorded, routes re-aggregated)

``Orchestrator.start()`` returns a Session that owns everything the
run created: the spec set, cleanup closures, recorded PIDs, errors and
the cancellation event.  Shutdown and route reloads go through the
Session, so there is no module-level "current run" state.
"""

from __future__ import annotations

import logging
import os
import signal
import threading
from pathlib import Path
from typing import Any

from infra.adapters.base import PortInspector, ProcessSupervisor
from infra.core.config.loader import ensure_app_directories
from infra.core.errors import (
    InfraError,
    PortInspectionError,
    ProxyReloadError,
    ServiceStartError,
    StartupBlockedError,
)
from infra.core.models.config import RuntimeConfig
from infra.core.models.events import LifecycleEvent, ServiceAction, ServiceStatus
from infra.core.models.ports import OWNERSHIP_UNKNOWN, Ownership, Probe
from infra.core.models.service import Cleanup, Options, RunContext, ServiceSpec
from infra.core.models.state import ActionKind, LifecycleState
from infra.core.persistence.state_file import default_state_path, save_snapshot
from infra.core.services.caddy import CaddyReloader
from infra.core.services.event_bus import EventBus
from infra.core.services.ports import classify_probe, format_conflict_message
from infra.core.services.registry import SERVICE_CADDY, build_service_specs
from infra.core.services.routes import build_proxy_template

logger = logging.getLogger(__name__)


class Session:
    """One orchestration run.

    Created by ``Orchestrator.start()``.  Thread-safe for
    ``record_error`` and ``cancel``; everything else is driven from the
    orchestrator's own thread.
    """

    def __init__(
        self,
        config: RuntimeConfig,
        options: Options,
        supervisor: ProcessSupervisor,
        inspector: PortInspector,
        reloader: CaddyReloader,
        bus: EventBus,
        state_path: Path | None = None,
    ) -> None:
        self.config = config
        self.options = options
        self.supervisor = supervisor
        self.inspector = inspector
        self.reloader = reloader
        self.bus = bus
        self.state_path = state_path

        self.specs: list[ServiceSpec] = []
        self.cleanups: list[Cleanup] = []
        self.pids: dict[str, int] = {}
        self.started: list[str] = []
        self.states: dict[str, LifecycleState] = {}
        self.errors: list[BaseException] = []
        self.cancelled = threading.Event()
        self.is_shut_down = False

        self._errors_lock = threading.Lock()
        self.context = RunContext(
            config=config,
            supervisor=supervisor,
            cancelled=self.cancelled,
            bus=bus,
        )

    # ── Errors and cancellation ─────────────────────────────────

    def record_error(self, error: BaseException) -> None:
        """Record a failure and cancel the run."""
        with self._errors_lock:
            self.errors.append(error)
        logger.error("Run error: %s", error)
        self.cancel()

    def cancel(self) -> None:
        self.cancelled.set()

    @property
    def failed(self) -> bool:
        with self._errors_lock:
            return bool(self.errors)

    @property
    def first_error(self) -> BaseException | None:
        with self._errors_lock:
            return self.errors[0] if self.errors else None

    def wait(self, timeout: float | None = None) -> BaseException | None:
        """Block until cancelled (or timeout).  Returns the first error."""
        self.cancelled.wait(timeout)
        return self.first_error

    # ── Spec views ──────────────────────────────────────────────

    @property
    def enabled_specs(self) -> list[ServiceSpec]:
        return [s for s in self.specs if s.is_enabled(self.options)]

    def spec(self, service_id: str) -> ServiceSpec | None:
        for s in self.specs:
            if s.id == service_id:
                return s
        return None

    # ── Events ──────────────────────────────────────────────────

    def publish_action(self, spec: ServiceSpec, kind: ActionKind, message: str) -> None:
        self._emit(ServiceAction(id=spec.id, kind=kind, message=message))

    def publish_status(
        self,
        spec: ServiceSpec,
        state: LifecycleState,
        *,
        running: bool = False,
        pid: int | None = None,
        ownership: str = OWNERSHIP_UNKNOWN,
        message: str = "",
    ) -> None:
        self.states[spec.id] = state
        self._emit(ServiceStatus(
            id=spec.id,
            running=running,
            pid=pid,
            port=spec.port_number,
            ownership=str(ownership),
            state=state,
            message=message,
        ))

    def _emit(self, event: LifecycleEvent) -> None:
        self.bus.emit(event)
        self.persist()

    def persist(self) -> None:
        """Write the bus snapshot to the state file, if configured."""
        if self.state_path is None:
            return
        snapshot = self.bus.snapshot()
        snapshot.environment = self.config.environment
        snapshot.orchestrator_pid = os.getpid()
        try:
            save_snapshot(snapshot, self.state_path)
        except OSError as e:
            logger.warning("Could not persist runtime snapshot: %s", e)

    # ── Routes ──────────────────────────────────────────────────

    def reload_routes(self) -> bool:
        """Re-aggregate routes from the enabled specs and push them to Caddy.

        Before Caddy is running the Caddyfile is only written.  Reload
        failures are logged as warnings and never propagate.

        Returns:
            True if a live reload was performed.
        """
        enabled = self.enabled_specs
        if not any(s.id == SERVICE_CADDY for s in enabled):
            return False

        template = build_proxy_template(enabled, self.config)
        try:
            if SERVICE_CADDY not in self.started:
                self.reloader.write(template)
                return False
            self.reloader.reload(template)
        except (ProxyReloadError, OSError) as e:
            logger.warning("⚠️ Failed to reload Caddy configuration: %s", e)
            return False
        return True

    # ── Shutdown ────────────────────────────────────────────────

    def shutdown(self) -> None:
        """Stop everything this run started.  Never raises; idempotent."""
        from infra.core.engine.shutdown import shutdown_session

        shutdown_session(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "environment": self.config.environment,
            "mode": self.options.mode,
            "services": [s.id for s in self.specs],
            "started": list(self.started),
            "states": {k: str(v) for k, v in self.states.items()},
            "pids": dict(self.pids),
            "errors": [str(e) for e in self.errors],
            "failed": self.failed,
        }


class Orchestrator:
    """Drives one startup sequence and hands back its Session."""

    def __init__(
        self,
        config: RuntimeConfig,
        options: Options,
        *,
        supervisor: ProcessSupervisor,
        inspector: PortInspector,
        reloader: CaddyReloader | None = None,
        bus: EventBus | None = None,
        state_path: Path | None = None,
        persist: bool = True,
    ) -> None:
        self.config = config
        self.options = options
        self.supervisor = supervisor
        self.inspector = inspector
        self.reloader = reloader or CaddyReloader(config, development=options.is_development)
        self.bus = bus or EventBus()
        if persist:
            self.state_path = state_path or default_state_path(config)
        else:
            self.state_path = None

    def start(self) -> Session:
        """Start every enabled service in registry order.

        Returns:
            The live Session.  Check ``session.failed`` for ensure/start
            failures, which do not abort the sequence.

        Raises:
            StartupBlockedError: a port conflict aborted the run.  Anything
                already started has been shut down.
            ConfigError: runtime directories could not be created.
        """
        ensure_app_directories(self.config)

        session = Session(
            self.config,
            self.options,
            self.supervisor,
            self.inspector,
            self.reloader,
            self.bus,
            state_path=self.state_path,
        )

        if self.options.preflight is not None:
            self.options.preflight(session.context)

        session.specs = build_service_specs(self.options, self.config, bus=self.bus)
        session.context.specs = tuple(session.specs)
        session.persist()

        logger.info("🚀 Starting all infrastructure services...")
        try:
            for step, spec in enumerate(session.specs, start=1):
                if not spec.is_enabled(self.options):
                    continue
                logger.info("🚀 Starting service %d: %s", step, spec.display_name)
                self._start_service(session, spec)
        except StartupBlockedError:
            session.shutdown()
            raise

        session.reload_routes()

        if session.failed:
            logger.warning("Startup finished with %d error(s)", len(session.errors))
        else:
            logger.info("🎉 All infrastructure services started successfully!")
            logger.info("💡 Web server accessible at http://0.0.0.0:%d", self.config.ports.web)
        return session

    # ── Per-service steps ───────────────────────────────────────

    def _start_service(self, session: Session, spec: ServiceSpec) -> None:
        notes: list[str] = []
        ownership: str = OWNERSHIP_UNKNOWN

        if spec.preparer is not None:
            try:
                spec.preparer.ensure(session.context, self.options)
            except Exception as e:
                msg = f"Ensure failed: {e}"
                logger.error("Failed to prepare %s: %s", spec.display_name, e)
                session.record_error(ServiceStartError(f"{spec.display_name} ensure failed: {e}"))
                session.publish_action(spec, ActionKind.ENSURE_FAILED, msg)
                session.publish_status(spec, LifecycleState.ERROR, message=msg)
                return

        if spec.has_port:
            ownership = self._clear_port(session, spec, notes)
        else:
            session.publish_status(spec, LifecycleState.PENDING)

        try:
            cleanup = spec.starter.start(session.context, self.options, session.record_error)
        except Exception as e:
            msg = f"Start failed: {e}"
            logger.warning("%s failed to start: %s", spec.display_name, e)
            session.record_error(ServiceStartError(f"{spec.display_name} failed to start: {e}"))
            session.publish_action(spec, ActionKind.START_FAILED, msg)
            session.publish_status(spec, LifecycleState.ERROR, message=msg)
            return

        if cleanup is not None:
            session.cleanups.append(cleanup)

        pid = self.supervisor.get_pid(spec.id)
        if pid is not None:
            session.pids[spec.id] = pid

        if spec.has_port:
            logger.info("✅ %s started on port %s", spec.display_name, spec.port)
            message = f"Service running on port {spec.port}"
        else:
            logger.info("✅ %s started", spec.display_name)
            message = "Service started"
        if notes:
            message = "; ".join([*notes, message])

        session.started.append(spec.id)
        session.publish_action(spec, ActionKind.STARTED, message)
        session.publish_status(
            spec, LifecycleState.RUNNING, running=True, pid=pid, ownership=ownership,
        )
        session.reload_routes()

    def _clear_port(self, session: Session, spec: ServiceSpec, notes: list[str]) -> str:
        """Inspect the spec's port and resolve any conflict.

        Returns:
            Ownership observed before start ("free", or "unknown" when
            inspection failed).

        Raises:
            StartupBlockedError: the port cannot be cleared.
        """
        port = spec.port_number
        expected_pid = self.supervisor.get_pid(spec.id) or session.pids.get(spec.id)

        try:
            raw = self.inspector.inspect(port, expected_pid)
        except PortInspectionError as e:
            msg = f"Port inspection failed: {e}"
            logger.warning("Failed to inspect port %d for %s: %s", port, spec.display_name, e)
            session.publish_action(spec, ActionKind.PORT_INSPECTION_FAILED, msg)
            session.publish_status(spec, LifecycleState.ERROR, message=msg)
            return OWNERSHIP_UNKNOWN

        probe = classify_probe(raw, expected_pid, spec.identities, self.config.marker)

        if probe.ownership == Ownership.FREE:
            session.publish_status(spec, LifecycleState.PENDING, ownership=Ownership.FREE)
            return Ownership.FREE

        msg = format_conflict_message(spec.display_name, probe)

        if probe.ownership == Ownership.THIS and self.options.is_development:
            if self._reclaim(spec, probe) and self.inspector.wait_available(
                port, self.config.reclaim_timeout,
            ):
                note = f"Reclaimed stale process (PID {probe.pid})"
                logger.info("Reclaimed port %d for %s: %s", port, spec.display_name, note)
                notes.append(note)
                session.publish_action(spec, ActionKind.PORT_RECLAIMED, note)
                session.publish_status(spec, LifecycleState.RECLAIMED, ownership=Ownership.FREE)
                return Ownership.FREE

            logger.error("❌ Port %d still busy after reclaim attempt: %s", port, msg)
            raise self._blocked(session, spec, probe, f"Auto-reclaim failed: {msg}", msg)

        logger.error("❌ Port %d in use (%s): %s", port, probe.ownership, msg)
        raise self._blocked(session, spec, probe, f"Startup blocked: {msg}", msg)

    def _reclaim(self, spec: ServiceSpec, probe: Probe) -> bool:
        """Best-effort stop of a stale same-service process."""
        if probe.is_free:
            return True
        if self.supervisor.get_pid(spec.id) == probe.pid:
            return self.supervisor.stop(spec.id)
        return self.inspector.kill_process(probe.pid)

    def _blocked(
        self,
        session: Session,
        spec: ServiceSpec,
        probe: Probe,
        action_message: str,
        status_message: str,
    ) -> StartupBlockedError:
        session.publish_action(spec, ActionKind.STARTUP_BLOCKED, action_message)
        session.publish_status(
            spec, LifecycleState.BLOCKED, ownership=probe.ownership, message=status_message,
        )
        return StartupBlockedError(
            spec.display_name, spec.port_number, detail=status_message, probe=probe,
        )


def run_service(orchestrator: Orchestrator) -> Session:
    """Start the fleet, block until a signal or fatal error, then shut down.

    SIGINT/SIGTERM cancel the session.  Handlers are installed only when
    called from the main thread.

    Returns:
        The finished Session.

    Raises:
        StartupBlockedError: a port conflict aborted startup.
        InfraError: the first error recorded during the run.
    """
    holder: dict[str, Session] = {}
    pending_signal = threading.Event()

    def _on_signal(signum: int, _frame: Any) -> None:
        logger.info("🛑 Received signal %d, stopping all supervised processes...", signum)
        pending_signal.set()
        session = holder.get("session")
        if session is not None:
            session.cancel()

    previous: dict[int, Any] = {}
    if threading.current_thread() is threading.main_thread():
        for sig in (signal.SIGINT, signal.SIGTERM):
            previous[sig] = signal.signal(sig, _on_signal)

    try:
        session = orchestrator.start()
        holder["session"] = session
        if pending_signal.is_set():
            session.cancel()
        try:
            error = session.wait()
        finally:
            session.shutdown()
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    if error is not None:
        if isinstance(error, InfraError):
            raise error
        raise InfraError(str(error)) from error
    return session
