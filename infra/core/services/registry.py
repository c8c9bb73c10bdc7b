"""
Service registry: the catalog of orchestratable services.

``build_service_specs`` derives the spec list for one run from Options
and RuntimeConfig.  Declaration order is startup order: the web
frontend first, the messaging backbone second, everything else after.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from infra.core.models.config import RuntimeConfig, local_address
from infra.core.models.events import ServiceRegistered
from infra.core.models.service import Options, RouteSpec, ServiceSpec
from infra.core.services.event_bus import EventBus
from infra.core.services.starters import (
    BentoPreparer,
    BentoStarter,
    CaddyStarter,
    DeckAPIStarter,
    DirectoryPreparer,
    HugoStarter,
    MoxStarter,
    NatsStarter,
    PocketBaseStarter,
    WebStarter,
    XTemplateStarter,
)

logger = logging.getLogger(__name__)

SERVICE_WEB = "web"
SERVICE_NATS = "nats"
SERVICE_POCKETBASE = "pocketbase"
SERVICE_CADDY = "caddy"
SERVICE_BENTO = "bento"
SERVICE_DECK_API = "deck-api"
SERVICE_XTEMPLATE = "xtemplate"
SERVICE_HUGO = "hugo"
SERVICE_MOX = "mox"


@dataclass(frozen=True)
class ServicePort:
    """A service's exposed port, for shutdown sweeps and listings."""

    service: str
    port: str


def catalog(config: RuntimeConfig) -> list[ServiceSpec]:
    """Every known service, unfiltered, in startup order."""
    ports = config.ports
    return [
        ServiceSpec(
            id=SERVICE_WEB,
            display_name="Web Server",
            description="HTTP server that hosts the control panel.",
            icon="🌐",
            required=True,
            port=str(ports.web),
            preparer=DirectoryPreparer(SERVICE_WEB),
            starter=WebStarter(),
        ),
        ServiceSpec(
            id=SERVICE_NATS,
            display_name="NATS",
            description="Messaging backbone with JetStream and S3 gateway.",
            icon="📡",
            required=True,
            port=str(ports.nats),
            additional_ports=(str(ports.nats_s3),),
            preparer=DirectoryPreparer(SERVICE_NATS, "jetstream", "auth"),
            starter=NatsStarter(),
            enabled=lambda opts: not opts.no_nats,
            process_names=("nats-server", "nats-s3"),
        ),
        ServiceSpec(
            id=SERVICE_POCKETBASE,
            display_name="PocketBase",
            description="Embedded database/UI backend.",
            icon="🗄️",
            port=str(ports.pocketbase),
            routes=(RouteSpec(path="/pocketbase/*", target=local_address(ports.pocketbase)),),
            preparer=DirectoryPreparer(SERVICE_POCKETBASE, "pb_data"),
            starter=PocketBaseStarter(),
            enabled=lambda opts: not opts.no_pocketbase,
            process_names=("pocketbase",),
        ),
        ServiceSpec(
            id=SERVICE_CADDY,
            display_name="Caddy Reverse Proxy",
            description="HTTPS/TLS reverse proxy fronting services.",
            icon="🛡️",
            required=True,
            port=str(ports.caddy),
            preparer=DirectoryPreparer(SERVICE_CADDY),
            starter=CaddyStarter(),
            process_names=("caddy",),
        ),
        ServiceSpec(
            id=SERVICE_BENTO,
            display_name="Bento Stream Processor",
            description="Stream processing pipeline (Bento).",
            icon="🍱",
            port=str(ports.bento),
            routes=(RouteSpec(path="/bento-playground/*", target=local_address(ports.bento)),),
            preparer=BentoPreparer(),
            starter=BentoStarter(),
            process_names=("bento",),
        ),
        ServiceSpec(
            id=SERVICE_DECK_API,
            display_name="Deck API",
            description="On-demand presentation builder.",
            icon="🃏",
            port=str(ports.deck_api),
            routes=(RouteSpec(path="/deck-api/*", target=local_address(ports.deck_api)),),
            preparer=DirectoryPreparer(SERVICE_DECK_API, "cache"),
            starter=DeckAPIStarter(),
            process_names=("deck-api",),
        ),
        ServiceSpec(
            id=SERVICE_XTEMPLATE,
            display_name="XTemplate",
            description="Template dev server.",
            icon="🧩",
            port=str(ports.xtemplate),
            routes=(RouteSpec(path="/xtemplate/*", target=local_address(ports.xtemplate)),),
            preparer=DirectoryPreparer(SERVICE_XTEMPLATE, "templates"),
            starter=XTemplateStarter(),
            process_names=("xtemplate",),
        ),
        ServiceSpec(
            id=SERVICE_HUGO,
            display_name="Hugo Docs",
            description="Documentation site.",
            icon="📚",
            port=str(ports.hugo),
            routes=(RouteSpec(path="/docs/*", target=local_address(ports.hugo)),),
            preparer=DirectoryPreparer(SERVICE_HUGO, "site"),
            starter=HugoStarter(),
            enabled=lambda opts: not opts.no_dev_docs,
            process_names=("hugo",),
        ),
        ServiceSpec(
            id=SERVICE_MOX,
            display_name="Mox Mail",
            description="Mail server.",
            icon="✉️",
            preparer=DirectoryPreparer(SERVICE_MOX, "config", "data"),
            starter=MoxStarter(),
            enabled=lambda opts: not opts.no_mox,
            process_names=("mox",),
        ),
    ]


def build_service_specs(
    options: Options,
    config: RuntimeConfig,
    bus: EventBus | None = None,
) -> list[ServiceSpec]:
    """Specs for one run, filtered by the include/skip lists.

    Publishes a ServiceRegistered event for every spec that passes the
    filters when ``bus`` is given.  Specs switched off by a ``no_*``
    toggle are still registered, with ``enabled=False``.
    """
    specs = [s for s in catalog(config) if options.includes(s.id)]
    if bus is not None:
        for spec in specs:
            bus.emit(ServiceRegistered(
                id=spec.id,
                name=spec.display_name,
                description=spec.description,
                icon=spec.icon,
                required=spec.required,
                port=spec.port,
                enabled=spec.is_enabled(options),
            ))
    logger.debug("Built %d service specs: %s", len(specs), ", ".join(s.id for s in specs))
    return specs


def resolve_service_id(name: str, config: RuntimeConfig | None = None) -> str | None:
    """Match a user-supplied name to a service ID (ID or display name)."""
    normalized = name.strip().lower()
    for spec in catalog(config or RuntimeConfig()):
        if spec.id == normalized or spec.display_name.lower() == normalized:
            return spec.id
    return None


def collect_service_ports(specs: list[ServiceSpec]) -> list[ServicePort]:
    """Declared and additional ports, deduplicated in declaration order."""
    seen: set[str] = set()
    ports: list[ServicePort] = []
    for spec in specs:
        for port in (spec.port, *spec.additional_ports):
            if not port or port == "0" or port in seen:
                continue
            seen.add(port)
            ports.append(ServicePort(service=spec.display_name, port=port))
    return ports


def collect_process_names(specs: list[ServiceSpec]) -> list[str]:
    """External process names, deduplicated in declaration order."""
    seen: set[str] = set()
    names: list[str] = []
    for spec in specs:
        for name in spec.process_names:
            if name and name not in seen:
                seen.add(name)
                names.append(name)
    return names
