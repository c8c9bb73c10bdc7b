"""
API routes: JSON endpoints for the control panel.

All endpoints are read-only views of the orchestrator's state, grouped
under the /api/ prefix.
"""

from __future__ import annotations

import logging

from flask import Blueprint, current_app, jsonify

from infra.core.models.config import RuntimeConfig
from infra.core.services.event_bus import EventBus

logger = logging.getLogger(__name__)

api_bp = Blueprint("api", __name__)


def _bus() -> EventBus:
    return current_app.config["EVENT_BUS"]


def _config() -> RuntimeConfig:
    return current_app.config["RUNTIME_CONFIG"]


# ── Services ─────────────────────────────────────────────────────────


@api_bp.route("/services")
def api_services():  # type: ignore[no-untyped-def]
    """Latest state of every registered service, required first."""
    from infra.core.observability.health import check_fleet_health

    snapshot = _bus().snapshot()
    return jsonify({
        "environment": _config().environment,
        "services": [s.model_dump(mode="json") for s in snapshot.ordered()],
        "running": snapshot.running_count,
        "health": check_fleet_health(snapshot).to_dict(),
    })


@api_bp.route("/services/<service_id>")
def api_service(service_id: str):  # type: ignore[no-untyped-def]
    """Latest state of one service."""
    entry = _bus().service_state(service_id)
    if entry is None:
        return jsonify({"error": f"Unknown service: {service_id}"}), 404
    return jsonify(entry.model_dump(mode="json"))


# ── Routes ───────────────────────────────────────────────────────────


@api_bp.route("/routes")
def api_routes():  # type: ignore[no-untyped-def]
    """Reverse-proxy routes for the registered, enabled services."""
    from infra.core.models.service import Options
    from infra.core.services.registry import build_service_specs
    from infra.core.services.routes import build_proxy_template

    config = _config()
    registered = _bus().snapshot().services
    specs = [
        s for s in build_service_specs(Options(), config)
        if not registered or (s.id in registered and registered[s.id].enabled)
    ]
    return jsonify(build_proxy_template(specs, config).to_dict())
