"""
RuntimeSnapshot: the observed state of the fleet.

Built by folding lifecycle events, one entry per service.  The event
bus keeps the live copy in memory; the sequencer persists it to
``<data>/state/runtime.json`` so ``infra status`` can read it from
another process.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, Field

from infra.core.models.events import (
    LifecycleEvent,
    ServiceAction,
    ServiceRegistered,
    ServiceStatus,
)


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class LifecycleState(StrEnum):
    """Per-service state within one orchestration run."""

    PENDING = "pending"
    RECLAIMED = "reclaimed"
    RUNNING = "running"
    BLOCKED = "blocked"
    ERROR = "error"
    STOPPED = "stopped"


class ActionKind(StrEnum):
    """Kinds of ServiceAction events."""

    ENSURE_FAILED = "ensure_failed"
    PORT_INSPECTION_FAILED = "port_inspection_failed"
    PORT_RECLAIMED = "port_reclaimed"
    STARTUP_BLOCKED = "startup_blocked"
    START_FAILED = "start_failed"
    STARTED = "started"
    SHUTDOWN = "shutdown"


class ServiceRuntimeState(BaseModel):
    """Latest known state of one service."""

    id: str
    name: str = ""
    description: str = ""
    icon: str = ""
    required: bool = False
    port: str = ""
    enabled: bool = True
    running: bool = False
    pid: int | None = None
    ownership: str = "unknown"
    state: str = LifecycleState.PENDING
    message: str = ""
    last_action: str = ""
    last_action_kind: str = ""
    updated_at: str = Field(default_factory=_now_iso)


class RuntimeSnapshot(BaseModel):
    """Root snapshot model: serialized to state/runtime.json."""

    schema_version: int = 1
    environment: str = ""
    orchestrator_pid: int | None = None
    created_at: str = Field(default_factory=_now_iso)
    updated_at: str = Field(default_factory=_now_iso)
    services: dict[str, ServiceRuntimeState] = Field(default_factory=dict)

    def touch(self) -> None:
        """Update the updated_at timestamp."""
        self.updated_at = _now_iso()

    def apply(self, event: LifecycleEvent) -> ServiceRuntimeState:
        """Fold one lifecycle event into the snapshot."""
        entry = self.services.get(event.id)
        if entry is None:
            entry = ServiceRuntimeState(id=event.id)
            self.services[event.id] = entry

        if isinstance(event, ServiceRegistered):
            entry.name = event.name
            entry.description = event.description
            entry.icon = event.icon
            entry.required = event.required
            entry.port = event.port
            entry.enabled = event.enabled
        elif isinstance(event, ServiceAction):
            entry.last_action = event.message
            entry.last_action_kind = event.kind
        elif isinstance(event, ServiceStatus):
            entry.running = event.running
            entry.pid = event.pid
            entry.ownership = event.ownership
            entry.state = event.state
            entry.message = event.message

        entry.updated_at = datetime.fromtimestamp(event.ts, UTC).isoformat()
        self.touch()
        return entry

    def ordered(self) -> list[ServiceRuntimeState]:
        """Required services first, then by ID."""
        return sorted(self.services.values(), key=lambda s: (not s.required, s.id))

    @property
    def running_count(self) -> int:
        return sum(1 for s in self.services.values() if s.running)
