"""
System port inspector: psutil-backed view of the TCP listener table.

Finds the process listening on a port with ``psutil.net_connections``.
Where the platform refuses that call without elevated privileges
(macOS, hardened Linux), it falls back to ``lsof``.  Command lines come
from ``psutil.Process.cmdline`` with ``ps`` as the fallback.

Everything here is best-effort and advisory: PIDs can be reused
between inspection and a kill.
"""

from __future__ import annotations

import logging
import os
import shutil
import socket
import time

import psutil

from infra.adapters.base import PortInspector
from infra.adapters.shell.command import run_command
from infra.core.errors import PortInspectionError
from infra.core.models.ports import Probe
from infra.core.services.ports import DEFAULT_MARKER, classify_probe

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1


class SystemPortInspector(PortInspector):
    """PortInspector for the local host."""

    def __init__(self, marker: str = DEFAULT_MARKER, poll_interval: float = POLL_INTERVAL):
        self._marker = marker
        self._poll_interval = poll_interval

    # ── Inspection ──────────────────────────────────────────────

    def inspect(self, port: int, expected_pid: int | None = None) -> Probe:
        pid = self._listening_pid(port)
        if pid is None:
            # Held by a listener the process table does not show
            if not self.is_available(port):
                raise PortInspectionError(f"port {port} is in use but its owner is not visible")
            return Probe(port=port)

        command = self._command_line(pid)
        if command is None:
            # Listener exited between the two lookups
            return Probe(port=port)

        probe = Probe(port=port, pid=pid, command=command)
        return classify_probe(probe, expected_pid, marker=self._marker)

    def _listening_pid(self, port: int) -> int | None:
        try:
            connections = psutil.net_connections(kind="tcp")
        except (psutil.AccessDenied, PermissionError):
            logger.debug("net_connections denied, falling back to lsof for port %d", port)
            return self._lsof_pid(port)

        hidden = False
        for conn in connections:
            if conn.status != psutil.CONN_LISTEN or not conn.laddr:
                continue
            if conn.laddr.port != port:
                continue
            if conn.pid:
                return conn.pid
            hidden = True

        # A listener whose owner we may not see (other user's process)
        if hidden:
            return self._lsof_pid(port)
        return None

    def _lsof_pid(self, port: int) -> int | None:
        if shutil.which("lsof") is None:
            raise PortInspectionError(
                f"cannot inspect port {port}: process table access denied and lsof not found"
            )
        result = run_command(
            ["lsof", "-nP", "-t", f"-iTCP:{port}", "-sTCP:LISTEN"],
            timeout=5,
        )
        if result.error:
            raise PortInspectionError(f"lsof failed for port {port}: {result.error}")
        # lsof exits 1 when nothing matches
        for line in result.stdout.splitlines():
            line = line.strip()
            if line.isdigit():
                return int(line)
        return None

    def _command_line(self, pid: int) -> str | None:
        try:
            proc = psutil.Process(pid)
            cmdline = proc.cmdline()
            if cmdline:
                return " ".join(cmdline)
            return proc.name()
        except psutil.NoSuchProcess:
            return None
        except psutil.AccessDenied:
            pass

        result = run_command(["ps", "-p", str(pid), "-o", "command="], timeout=5)
        if result.ok and result.stdout:
            return result.stdout
        return ""

    # ── Availability ────────────────────────────────────────────

    def is_available(self, port: int) -> bool:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(("", port))
        except OSError:
            return False
        finally:
            sock.close()
        return True

    def wait_available(self, port: int, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        while True:
            if self.is_available(port):
                return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(self._poll_interval)

    # ── Termination ─────────────────────────────────────────────

    def kill_process(self, pid: int) -> bool:
        if pid <= 0 or pid == os.getpid():
            return False
        try:
            psutil.Process(pid).kill()
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied as e:
            logger.warning("Not permitted to kill PID %d: %s", pid, e)
            return False
        logger.info("Killed PID %d", pid)
        return True

    def kill_process_by_port(self, port: int) -> bool:
        try:
            pid = self._listening_pid(port)
        except PortInspectionError as e:
            logger.warning("Cannot sweep port %d: %s", port, e)
            return False
        if pid is None:
            return False
        return self.kill_process(pid)

    def kill_process_by_name(self, name: str) -> int:
        if not name:
            return 0
        own_pid = os.getpid()
        killed = 0
        for proc in psutil.process_iter(["pid", "name"]):
            try:
                if proc.info["name"] != name or proc.info["pid"] == own_pid:
                    continue
                proc.kill()
                killed += 1
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        if killed:
            logger.info("Killed %d process(es) named %s", killed, name)
        return killed

    def find_orchestrators(self) -> list[int]:
        """PIDs of other running ``infra service`` processes."""
        own_pid = os.getpid()
        found = []
        for proc in psutil.process_iter(["pid", "cmdline"]):
            try:
                cmdline = proc.info["cmdline"] or []
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
            if proc.info["pid"] == own_pid:
                continue
            if _is_orchestrator_cmdline(cmdline, self._marker):
                found.append(proc.info["pid"])
        return found


def _is_orchestrator_cmdline(cmdline: list[str], marker: str) -> bool:
    """True for ``infra service ...`` or ``python -m infra service ...``."""
    if "service" not in cmdline:
        return False
    # Console scripts show up as either "infra ..." or "python /path/infra ..."
    if any(os.path.basename(arg) == marker for arg in cmdline[:2]):
        return True
    for i, arg in enumerate(cmdline[:-1]):
        if arg == "-m" and cmdline[i + 1] == marker:
            return True
    return False
