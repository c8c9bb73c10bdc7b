"""
Lifecycle events: the three shapes the orchestrator publishes.

The orchestrator is a pure producer of these; it never reads them
back to make decisions.  Each event knows its bus type and the
resource key it belongs to.
"""

from __future__ import annotations

import time
from typing import ClassVar

from pydantic import BaseModel, Field


class LifecycleEvent(BaseModel):
    """Common envelope fields for service lifecycle events."""

    event_type: ClassVar[str] = "service:event"

    id: str
    ts: float = Field(default_factory=time.time)

    def payload(self) -> dict:
        """Event data as published on the bus (timestamp lives on the envelope)."""
        return self.model_dump(mode="json", exclude={"ts"})


class ServiceRegistered(LifecycleEvent):
    """A spec entered the catalog for this run."""

    event_type: ClassVar[str] = "service:registered"

    name: str
    description: str = ""
    icon: str = ""
    required: bool = False
    port: str = ""
    enabled: bool = True

class ServiceAction(LifecycleEvent):
    """Something the orchestrator did, or tried to do, to a service."""

    event_type: ClassVar[str] = "service:action"

    kind: str
    message: str = ""


class ServiceStatus(LifecycleEvent):
    """Observed state of a service after a transition."""

    event_type: ClassVar[str] = "service:status"

    running: bool = False
    pid: int | None = None
    port: int = 0
    ownership: str = "unknown"
    state: str = "pending"
    message: str = ""
