"""
Service specifications: the declarative catalog entries.

A ServiceSpec is an immutable value description of one orchestratable
service.  Specs are rebuilt from Options on every orchestration run and
never mutated in place; the live bookkeeping for a run lives on the
engine's Session instead.

Hooks are small capability objects rather than bare callables:

    Preparer.ensure(ctx, options)                idempotent setup
    Starter.start(ctx, options, record_error)    launch, return cleanup
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

from pydantic import BaseModel, ConfigDict

from infra.core.models.config import RuntimeConfig

if TYPE_CHECKING:
    from infra.adapters.base import ProcessSupervisor
    from infra.core.services.event_bus import EventBus

Cleanup = Callable[[], None]
ErrorRecorder = Callable[[BaseException], None]

MODE_DEVELOPMENT = "development"
MODE_PRODUCTION = "production"


class RouteSpec(BaseModel):
    """A path-prefix → backend mapping contributed to the reverse proxy."""

    model_config = ConfigDict(frozen=True)

    path: str
    target: str


@dataclass
class Options:
    """Runtime options for one orchestration run."""

    mode: str = MODE_DEVELOPMENT
    only_services: list[str] = field(default_factory=list)
    skip_services: list[str] = field(default_factory=list)
    no_nats: bool = False
    no_pocketbase: bool = False
    no_mox: bool = False
    no_dev_docs: bool = False
    preflight: Callable[[RunContext], None] | None = None

    @property
    def is_development(self) -> bool:
        return self.mode.lower() in ("development", "dev", "local")

    def includes(self, service_id: str) -> bool:
        """Apply the include/skip filters to a service ID."""
        if self.only_services and service_id not in self.only_services:
            return False
        return service_id not in self.skip_services


@dataclass
class RunContext:
    """Everything a hook may touch during one orchestration run."""

    config: RuntimeConfig
    supervisor: ProcessSupervisor
    cancelled: threading.Event = field(default_factory=threading.Event)
    specs: tuple[ServiceSpec, ...] = ()
    bus: EventBus | None = None


class Preparer(ABC):
    """Idempotent preparation run before a service's port is inspected."""

    @abstractmethod
    def ensure(self, ctx: RunContext, options: Options) -> None:
        """Create directories and other resources.  Raise on failure."""


class Starter(ABC):
    """Launches one service."""

    @abstractmethod
    def start(
        self,
        ctx: RunContext,
        options: Options,
        record_error: ErrorRecorder,
    ) -> Cleanup | None:
        """Start the service and return an optional cleanup closure.

        Must return quickly.  Background failures after return are
        reported through ``record_error``, which also cancels the run.
        """


def _always(options: Options) -> bool:
    return True


@dataclass(frozen=True)
class ServiceSpec:
    """Declarative description of one orchestratable service."""

    id: str
    display_name: str
    starter: Starter
    description: str = ""
    icon: str = ""
    required: bool = False
    port: str = ""
    additional_ports: tuple[str, ...] = ()
    routes: tuple[RouteSpec, ...] = ()
    preparer: Preparer | None = None
    enabled: Callable[[Options], bool] = _always
    process_names: tuple[str, ...] = ()

    def __str__(self) -> str:
        return self.display_name

    @property
    def port_number(self) -> int:
        from infra.core.services.ports import parse_port

        return parse_port(self.port)

    @property
    def has_port(self) -> bool:
        """True when the spec declares a real port to police."""
        return self.port not in ("", "0")

    def is_enabled(self, options: Options) -> bool:
        return self.enabled(options)

    @property
    def identities(self) -> tuple[str, ...]:
        """Strings that mark a command line as belonging to this service."""
        return (self.id, *self.process_names)
