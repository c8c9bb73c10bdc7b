"""
Domain models: Pydantic and dataclass types for the orchestrator.

All models are re-exported here for convenient access:

    from infra.core.models import ServiceSpec, Probe, Ownership, RuntimeSnapshot
"""

from infra.core.models.config import NatsIdentityConfig, PortsConfig, RuntimeConfig
from infra.core.models.events import (
    LifecycleEvent,
    ServiceAction,
    ServiceRegistered,
    ServiceStatus,
)
from infra.core.models.identity import IdentityArtifacts
from infra.core.models.ports import OWNERSHIP_UNKNOWN, Ownership, Probe
from infra.core.models.service import (
    Cleanup,
    ErrorRecorder,
    Options,
    Preparer,
    RouteSpec,
    RunContext,
    ServiceSpec,
    Starter,
)
from infra.core.models.state import (
    ActionKind,
    LifecycleState,
    RuntimeSnapshot,
    ServiceRuntimeState,
)

__all__ = [
    "OWNERSHIP_UNKNOWN",
    # state.py
    "ActionKind",
    "Cleanup",
    "ErrorRecorder",
    # identity.py
    "IdentityArtifacts",
    # events.py
    "LifecycleEvent",
    "LifecycleState",
    # config.py
    "NatsIdentityConfig",
    # service.py
    "Options",
    # ports.py
    "Ownership",
    "PortsConfig",
    "Preparer",
    "Probe",
    "RouteSpec",
    "RunContext",
    "RuntimeConfig",
    "RuntimeSnapshot",
    "ServiceAction",
    "ServiceRegistered",
    "ServiceRuntimeState",
    "ServiceSpec",
    "ServiceStatus",
    "Starter",
]
