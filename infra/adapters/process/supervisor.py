"""
Subprocess supervisor: start, track and stop service processes.

Each process gets a pump thread that forwards its combined
stdout/stderr to the ``infra.process.<name>`` logger and notices when
it exits.  An exit that nobody asked for is reported through the
``on_exit`` callback so the sequencer can cancel the run.

Thread safety: ``_lock`` protects ``_procs`` and ``_stopping``.
"""

from __future__ import annotations

import logging
import os
import subprocess
import threading
from dataclasses import dataclass, field

from infra.adapters.base import ExitCallback, ProcessSupervisor
from infra.core.errors import SupervisorError

logger = logging.getLogger(__name__)


@dataclass
class _Managed:
    name: str
    command: list[str]
    popen: subprocess.Popen
    on_exit: ExitCallback | None = None
    pump: threading.Thread | None = field(default=None, repr=False)


class SubprocessSupervisor(ProcessSupervisor):
    """ProcessSupervisor built on ``subprocess.Popen``."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._procs: dict[str, _Managed] = {}
        self._stopping: set[str] = set()

    @property
    def name(self) -> str:
        return "subprocess"

    def start(
        self,
        name: str,
        command: list[str],
        *,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
        on_exit: ExitCallback | None = None,
    ) -> int:
        if self.is_running(name):
            raise SupervisorError(f"process '{name}' is already running")

        full_env = {**os.environ, **env} if env else None
        logger.info("Starting %s: %s", name, " ".join(command))
        try:
            popen = subprocess.Popen(
                command,
                cwd=cwd,
                env=full_env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
                start_new_session=True,
            )
        except OSError as e:
            raise SupervisorError(f"cannot start {name}: {e}") from e

        managed = _Managed(name=name, command=command, popen=popen, on_exit=on_exit)
        managed.pump = threading.Thread(
            target=self._pump, args=(managed,), name=f"pump-{name}", daemon=True,
        )
        with self._lock:
            self._procs[name] = managed
            self._stopping.discard(name)
        managed.pump.start()
        return popen.pid

    def _pump(self, managed: _Managed) -> None:
        proc_logger = logging.getLogger(f"infra.process.{managed.name}")
        stream = managed.popen.stdout
        if stream is not None:
            for line in stream:
                proc_logger.info(line.rstrip())
            stream.close()

        code = managed.popen.wait()
        with self._lock:
            expected = managed.name in self._stopping
        if expected:
            logger.debug("%s exited with code %d after stop", managed.name, code)
            return

        logger.warning("%s exited unexpectedly with code %d", managed.name, code)
        if managed.on_exit is not None:
            managed.on_exit(code)

    def stop(self, name: str, timeout: float = 5.0) -> bool:
        with self._lock:
            managed = self._procs.get(name)
            if managed is None:
                return False
            self._stopping.add(name)

        popen = managed.popen
        if popen.poll() is None:
            logger.info("Stopping %s (PID %d)", name, popen.pid)
            popen.terminate()
            try:
                popen.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                logger.warning("%s did not exit after %.1fs, killing", name, timeout)
                popen.kill()
                popen.wait(timeout=timeout)

        if managed.pump is not None and managed.pump is not threading.current_thread():
            managed.pump.join(timeout=timeout)
        return True

    def get_pid(self, name: str) -> int | None:
        with self._lock:
            managed = self._procs.get(name)
        if managed is None or managed.popen.poll() is not None:
            return None
        return managed.popen.pid

    def is_running(self, name: str) -> bool:
        return self.get_pid(name) is not None

    def names(self) -> list[str]:
        with self._lock:
            return list(self._procs)
