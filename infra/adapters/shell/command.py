"""
Shell command runner: execute a one-shot command and capture output.

Used for short-lived tool invocations (``caddy reload``, ``lsof``,
``ps``).  Long-running services go through the ProcessSupervisor.
Like every adapter, it never raises: failures are captured in the
returned CommandResult.
"""

from __future__ import annotations

import logging
import os
import subprocess
import time
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Outcome of one command invocation."""

    command: list[str] = field(default_factory=list)
    returncode: int = -1
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.error

    @property
    def message(self) -> str:
        """Best single-line explanation of a failure."""
        if self.error:
            return self.error
        if self.stderr:
            return self.stderr
        return f"Command exited with code {self.returncode}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "returncode": self.returncode,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "duration_ms": self.duration_ms,
            "error": self.error,
        }


def run_command(
    command: list[str],
    *,
    cwd: str | None = None,
    env: dict[str, str] | None = None,
    timeout: float = 60,
) -> CommandResult:
    """Run ``command`` to completion.

    Args:
        command: argv list (never passed through a shell).
        cwd: Working directory.
        env: Extra environment variables merged over os.environ.
        timeout: Seconds before the command is killed.
    """
    logger.debug("Executing: %s (cwd=%s)", " ".join(command), cwd)
    start = time.monotonic()

    full_env = None
    if env:
        full_env = {**os.environ, **env}

    try:
        result = subprocess.run(
            command,
            cwd=cwd,
            env=full_env,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        return CommandResult(
            command=command,
            error=f"Command timed out after {timeout}s",
            duration_ms=int((time.monotonic() - start) * 1000),
        )
    except OSError as e:
        return CommandResult(
            command=command,
            error=f"Command execution error: {e}",
            duration_ms=int((time.monotonic() - start) * 1000),
        )

    return CommandResult(
        command=command,
        returncode=result.returncode,
        stdout=result.stdout.strip(),
        stderr=result.stderr.strip(),
        duration_ms=int((time.monotonic() - start) * 1000),
    )
