"""Adapters: bindings to the host's process table and sockets.

Public re-exports for convenient access.
"""

from infra.adapters.base import PortInspector, ProcessSupervisor
from infra.adapters.mock import MockPortInspector, MockSupervisor
from infra.adapters.process.ports import SystemPortInspector
from infra.adapters.process.supervisor import SubprocessSupervisor

__all__ = [
    "MockPortInspector",
    "MockSupervisor",
    "PortInspector",
    "ProcessSupervisor",
    "SubprocessSupervisor",
    "SystemPortInspector",
]
