"""
Adapter base: the contracts between the engine and the host system.

The sequencer never spawns or kills processes itself.  It talks to a
ProcessSupervisor for start/stop bookkeeping and to a PortInspector
for everything that touches the process table or the socket layer.
Both have a real implementation and an in-memory test double.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable

from infra.core.models.ports import Probe

ExitCallback = Callable[[int], None]


class ProcessSupervisor(ABC):
    """Start/stop bookkeeping for external service processes.

    To create a new supervisor:
        1. Subclass ProcessSupervisor
        2. Implement start, stop, get_pid, is_running, names
        3. Pass it to the Orchestrator
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """The supervisor identifier (e.g., 'subprocess', 'mock')."""

    @abstractmethod
    def start(
        self,
        name: str,
        command: list[str],
        *,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
        on_exit: ExitCallback | None = None,
    ) -> int:
        """Launch ``command`` under ``name`` and return its PID.

        ``on_exit`` fires with the return code if the process exits
        without being asked to stop.

        Raises:
            SupervisorError: if the process cannot be launched.
        """

    @abstractmethod
    def stop(self, name: str, timeout: float = 5.0) -> bool:
        """Stop a tracked process.  Returns False if it wasn't tracked."""

    @abstractmethod
    def get_pid(self, name: str) -> int | None:
        """PID of a tracked, running process."""

    @abstractmethod
    def is_running(self, name: str) -> bool:
        """Whether a tracked process is still alive."""

    @abstractmethod
    def names(self) -> list[str]:
        """Names of all tracked processes."""

    def status(self) -> dict[str, str]:
        """Map of tracked process name → 'running' / 'stopped'."""
        return {
            n: "running" if self.is_running(n) else "stopped"
            for n in self.names()
        }

    def stop_all(self, timeout: float = 5.0) -> None:
        """Stop every tracked process, last started first."""
        for name in reversed(self.names()):
            self.stop(name, timeout=timeout)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"


class PortInspector(ABC):
    """Read and act on the host's TCP port table."""

    @abstractmethod
    def inspect(self, port: int, expected_pid: int | None = None) -> Probe:
        """Find the listener on ``port`` and classify it.

        A free port is not an error.

        Raises:
            PortInspectionError: if no enumeration tool can answer.
        """

    @abstractmethod
    def is_available(self, port: int) -> bool:
        """Whether ``port`` can be bound right now."""

    @abstractmethod
    def wait_available(self, port: int, timeout: float) -> bool:
        """Poll until ``port`` is bindable or ``timeout`` seconds pass."""

    @abstractmethod
    def kill_process(self, pid: int) -> bool:
        """Forcefully terminate ``pid``.  Returns False if nothing was killed."""

    @abstractmethod
    def kill_process_by_port(self, port: int) -> bool:
        """Kill whatever listens on ``port``."""

    @abstractmethod
    def kill_process_by_name(self, name: str) -> int:
        """Kill processes named exactly ``name``.  Returns the kill count."""

    def find_orchestrators(self) -> list[int]:
        """PIDs of other orchestrator processes on this host."""
        return []
