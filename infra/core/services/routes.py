"""
Route aggregation: merge per-service routes into one proxy config.

The aggregated template is a pure function of the enabled spec set:
routes are deduplicated by path (first registration wins) and sorted
by path, so the rendered Caddyfile is byte-identical for the same set
of services regardless of the order they were registered in.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from infra.core.models.config import RuntimeConfig, local_address
from infra.core.models.service import RouteSpec, ServiceSpec

WEB_SERVICE_ID = "web"

_HEADER = (
    "# Caddyfile generated by infra.\n"
    "# Regenerated on every route change; DO NOT EDIT.\n"
)


@dataclass
class ProxyTemplate:
    """Aggregated reverse-proxy routing."""

    listen_port: int
    root_target: str
    routes: list[RouteSpec] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "listen_port": self.listen_port,
            "root_target": self.root_target,
            "routes": [r.model_dump() for r in self.routes],
        }


def build_proxy_template(
    specs: Iterable[ServiceSpec],
    config: RuntimeConfig,
) -> ProxyTemplate:
    """Aggregate the routes of ``specs`` into a ProxyTemplate."""
    root_target = ""
    seen: dict[str, RouteSpec] = {}

    for spec in specs:
        if spec.id == WEB_SERVICE_ID and spec.has_port:
            root_target = local_address(spec.port)
        for route in spec.routes:
            if not route.path or not route.target:
                continue
            if route.path in seen:
                continue
            seen[route.path] = route

    if not root_target:
        root_target = local_address(config.ports.web)

    return ProxyTemplate(
        listen_port=config.ports.caddy,
        root_target=root_target,
        routes=sorted(seen.values(), key=lambda r: r.path),
    )


def render_caddyfile(template: ProxyTemplate, development: bool = True) -> str:
    """Render ``template`` in Caddyfile syntax.

    Development serves ``localhost`` with Caddy's internal CA and
    disables browser caching; production listens on all interfaces.
    """
    lines = [_HEADER]
    if development:
        lines.append(f"localhost:{template.listen_port} {{")
    else:
        lines.append(f":{template.listen_port} {{")

    for route in template.routes:
        lines.append(f"\thandle {route.path} {{")
        lines.append(f"\t\treverse_proxy {route.target}")
        lines.append("\t}")
        lines.append("")

    lines.append(f"\treverse_proxy {template.root_target}")

    if development:
        lines.append("")
        lines.append("\ttls internal")
        lines.append("")
        lines.append("\theader {")
        lines.append('\t\tCache-Control "no-cache, no-store, must-revalidate"')
        lines.append('\t\tPragma "no-cache"')
        lines.append('\t\tExpires "0"')
        lines.append("\t}")

    lines.append("}")
    return "\n".join(lines) + "\n"
