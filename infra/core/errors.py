"""
Error taxonomy for the orchestrator.

Every failure the runtime knows how to name derives from ``InfraError``
so the CLI can turn it into a red message and a non-zero exit without
catching unrelated bugs.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from infra.core.models.ports import Probe


class InfraError(Exception):
    """Base class for all orchestrator errors."""


class ConfigError(InfraError):
    """Raised when infra.yml is unreadable or fails validation."""


class PortInspectionError(InfraError):
    """Raised when no process-enumeration tool can answer a port query."""


class ServiceStartError(InfraError):
    """Raised by a start or ensure hook that cannot bring its service up."""


class SupervisorError(InfraError):
    """Raised when the process supervisor cannot launch a command."""


class IdentityError(InfraError):
    """Raised when the NATS trust chain is missing, unreadable or malformed."""


class ProxyReloadError(InfraError):
    """Raised when the reverse proxy rejects a configuration reload."""


class StartupBlockedError(InfraError):
    """A port conflict aborted the whole startup sequence.

    Carries the blocking service, its port and the probe that caught the
    conflict so callers can print the owning PID and the suggested remedy.
    """

    def __init__(
        self,
        service: str,
        port: int,
        detail: str = "",
        probe: Probe | None = None,
    ) -> None:
        self.service = service
        self.port = port
        self.detail = detail
        self.probe = probe
        super().__init__(f"service {service} port {port} is already in use")
