"""
Port probe models.

A Probe is one observation of one TCP port at one instant.  It is
never cached: the owning process can change between two calls.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel

# Ownership reported on status events when inspection itself failed
OWNERSHIP_UNKNOWN = "unknown"


class Ownership(StrEnum):
    """Who holds a TCP port."""

    FREE = "free"
    THIS = "this"  # this orchestrator's own service (possibly stale)
    INFRA = "infra"  # another orchestrator instance
    EXTERNAL = "external"


class Probe(BaseModel):
    """Result of inspecting a single port."""

    port: int
    pid: int | None = None
    command: str = ""
    ownership: Ownership = Ownership.FREE

    @property
    def is_free(self) -> bool:
        return self.pid is None
