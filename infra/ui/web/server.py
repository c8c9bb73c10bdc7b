"""
Web control panel: Flask app factory.

Served by the ``web`` service on the orchestrator's own port.  Exposes
the fleet snapshot, fleet health, the current proxy routes and a live
SSE stream of lifecycle events.
"""

from __future__ import annotations

import logging

from flask import Flask, jsonify

from infra.core.models.config import RuntimeConfig
from infra.core.services.event_bus import EventBus

logger = logging.getLogger(__name__)


def create_app(
    config: RuntimeConfig | None = None,
    bus: EventBus | None = None,
) -> Flask:
    """Create and configure the Flask application.

    Args:
        config: Runtime configuration (default: all defaults).
        bus: Event bus to expose.  A private bus is created when absent,
            which is only useful for tests.

    Returns:
        Configured Flask application.
    """
    app = Flask(__name__)

    app.config["RUNTIME_CONFIG"] = config or RuntimeConfig()
    app.config["EVENT_BUS"] = bus or EventBus()

    from infra.ui.web.routes_api import api_bp
    from infra.ui.web.routes_events import events_bp

    app.register_blueprint(api_bp, url_prefix="/api")
    app.register_blueprint(events_bp, url_prefix="/api")

    @app.route("/healthz")
    def healthz():  # type: ignore[no-untyped-def]
        return jsonify({"status": "ok"})

    logger.info("Control panel app created (environment=%s)", app.config["RUNTIME_CONFIG"].environment)
    return app
