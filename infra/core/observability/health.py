"""
Fleet health: collapse per-service runtime state into one verdict.

    required service not running, or any service blocked  → unhealthy
    optional service not running                          → degraded
    everything running                                    → healthy
    nothing recorded                                      → unknown

Services registered with ``enabled=False`` (switched off by a ``no_*``
toggle) are left out of the rollup.

Read by ``infra status`` and by ``/api/services`` on the control panel.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from infra.core.models.state import LifecycleState, RuntimeSnapshot, ServiceRuntimeState


class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


# Worst first; the fleet takes the worst component status
_SEVERITY = (HealthStatus.UNHEALTHY, HealthStatus.DEGRADED, HealthStatus.UNKNOWN)


@dataclass
class ComponentHealth:
    """Health of one service."""

    name: str
    status: str = HealthStatus.UNKNOWN
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": str(self.status),
            "message": self.message,
            "details": self.details,
        }


@dataclass
class SystemHealth:
    """Health of the whole fleet, derived from its components."""

    components: list[ComponentHealth] = field(default_factory=list)
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    @property
    def status(self) -> HealthStatus:
        if not self.components:
            return HealthStatus.UNKNOWN
        present = {c.status for c in self.components}
        for status in _SEVERITY:
            if status in present:
                return status
        return HealthStatus.HEALTHY

    def add(self, component: ComponentHealth) -> None:
        self.components.append(component)

    def counts(self) -> dict[str, int]:
        tally = {str(s): 0 for s in HealthStatus}
        for c in self.components:
            tally[str(c.status)] = tally.get(str(c.status), 0) + 1
        return tally

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": str(self.status),
            "timestamp": self.timestamp,
            "counts": self.counts(),
            "components": [c.to_dict() for c in self.components],
        }


def check_service(entry: ServiceRuntimeState) -> ComponentHealth:
    """Health of one service from its latest snapshot entry."""
    details = {
        "state": entry.state,
        "required": entry.required,
        "pid": entry.pid,
        "port": entry.port,
        "ownership": entry.ownership,
    }

    if entry.running:
        message = f"Running (PID {entry.pid})" if entry.pid else "Running"
        return ComponentHealth(entry.id, HealthStatus.HEALTHY, message, details)

    if entry.required or entry.state == LifecycleState.BLOCKED:
        status = HealthStatus.UNHEALTHY
    else:
        status = HealthStatus.DEGRADED
    return ComponentHealth(entry.id, status, entry.message or f"Service is {entry.state}", details)


def check_fleet_health(snapshot: RuntimeSnapshot | None) -> SystemHealth:
    health = SystemHealth()
    if snapshot is not None:
        for entry in snapshot.ordered():
            if entry.enabled:
                health.add(check_service(entry))
    return health
