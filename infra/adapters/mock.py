"""
Mock adapters: in-memory test doubles for the supervisor and inspector.

Used by tests (and ``--dry-run``-style callers) to drive the sequencer
without spawning processes or touching real ports.  Both record every
call so tests can assert on what the engine did.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass

from infra.adapters.base import ExitCallback, PortInspector, ProcessSupervisor
from infra.core.errors import PortInspectionError, SupervisorError
from infra.core.models.ports import Probe
from infra.core.services.ports import DEFAULT_MARKER, classify_probe


class MockSupervisor(ProcessSupervisor):
    """Supervisor that pretends every start succeeds.

    PIDs are handed out from ``first_pid`` upward.  Use ``set_failure``
    to make a named start raise.
    """

    def __init__(self, first_pid: int = 40000):
        self._pids = itertools.count(first_pid)
        self._running: dict[str, int] = {}
        self._order: list[str] = []
        self._failures: dict[str, str] = {}
        self._exit_callbacks: dict[str, ExitCallback] = {}
        self.started: list[tuple[str, list[str]]] = []
        self.stopped: list[str] = []
        self.stop_all_calls = 0

    @property
    def name(self) -> str:
        return "mock"

    def set_failure(self, name: str, error: str = "Mock failure") -> None:
        """Configure ``start(name, ...)`` to raise SupervisorError."""
        self._failures[name] = error

    def adopt(self, name: str, pid: int) -> None:
        """Pretend ``pid`` was started earlier under ``name``."""
        self._running[name] = pid
        if name not in self._order:
            self._order.append(name)

    def start(
        self,
        name: str,
        command: list[str],
        *,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
        on_exit: ExitCallback | None = None,
    ) -> int:
        self.started.append((name, list(command)))
        if name in self._failures:
            raise SupervisorError(self._failures[name])
        pid = next(self._pids)
        self._running[name] = pid
        if on_exit is not None:
            self._exit_callbacks[name] = on_exit
        if name not in self._order:
            self._order.append(name)
        return pid

    def crash(self, name: str, code: int = 1) -> None:
        """Simulate an unexpected exit of a running process."""
        self._running.pop(name, None)
        callback = self._exit_callbacks.get(name)
        if callback is not None:
            callback(code)

    def stop(self, name: str, timeout: float = 5.0) -> bool:
        if name not in self._order:
            return False
        self.stopped.append(name)
        self._running.pop(name, None)
        return True

    def stop_all(self, timeout: float = 5.0) -> None:
        self.stop_all_calls += 1
        super().stop_all(timeout=timeout)

    def get_pid(self, name: str) -> int | None:
        return self._running.get(name)

    def is_running(self, name: str) -> bool:
        return name in self._running

    def names(self) -> list[str]:
        return list(self._order)


@dataclass
class _Listener:
    pid: int
    command: str
    sticky: bool = False  # survives kill attempts


class MockPortInspector(PortInspector):
    """Inspector over an in-memory port table.

    ``occupy(port, pid, command)`` puts a listener on a port.  Killing
    its PID frees every port it holds unless it was marked sticky.
    """

    def __init__(self, marker: str = DEFAULT_MARKER):
        self._marker = marker
        self._listeners: dict[int, _Listener] = {}
        self._broken: set[int] = set()
        self._orchestrators: list[int] = []
        self.killed: list[int] = []
        self.killed_names: list[str] = []
        self.swept_ports: list[int] = []
        self.waits: list[tuple[int, float]] = []

    def occupy(self, port: int, pid: int, command: str, sticky: bool = False) -> None:
        self._listeners[port] = _Listener(pid=pid, command=command, sticky=sticky)

    def release(self, port: int) -> None:
        self._listeners.pop(port, None)

    def fail_inspection(self, port: int) -> None:
        """Make ``inspect(port)`` raise PortInspectionError."""
        self._broken.add(port)

    def inspect(self, port: int, expected_pid: int | None = None) -> Probe:
        if port in self._broken:
            raise PortInspectionError(f"cannot inspect port {port}: mock failure")
        listener = self._listeners.get(port)
        if listener is None:
            return Probe(port=port)
        probe = Probe(port=port, pid=listener.pid, command=listener.command)
        return classify_probe(probe, expected_pid, marker=self._marker)

    def is_available(self, port: int) -> bool:
        return port not in self._listeners

    def wait_available(self, port: int, timeout: float) -> bool:
        self.waits.append((port, timeout))
        return self.is_available(port)

    def kill_process(self, pid: int) -> bool:
        self.killed.append(pid)
        held = [p for p, lst in self._listeners.items() if lst.pid == pid]
        if not held:
            return False
        for port in held:
            if not self._listeners[port].sticky:
                del self._listeners[port]
        return True

    def kill_process_by_port(self, port: int) -> bool:
        self.swept_ports.append(port)
        listener = self._listeners.get(port)
        if listener is None:
            return False
        return self.kill_process(listener.pid)

    def kill_process_by_name(self, name: str) -> int:
        self.killed_names.append(name)
        return 0

    def add_orchestrator(self, pid: int) -> None:
        self._orchestrators.append(pid)

    def find_orchestrators(self) -> list[int]:
        return list(self._orchestrators)
