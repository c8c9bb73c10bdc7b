"""
Lifecycle event stream for the control panel.

``GET /api/events`` is a Server-Sent Events stream fed by the EventBus.
Each bus envelope becomes one frame::

    event: service:status
    id: 47
    data: {"v":1,"seq":47,"type":"service:status","key":"nats",...}

Browsers resend the last ``id`` as ``Last-Event-Id`` when they
reconnect, so a dropped panel picks up where it left off.
"""

from __future__ import annotations

import json

from flask import Blueprint, Response, current_app, request

events_bp = Blueprint("events", __name__)

_STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "X-Accel-Buffering": "no",
    "Connection": "keep-alive",
}


def format_frame(event: dict) -> str:
    payload = json.dumps(event, default=str, separators=(",", ":"))
    return f"event: {event['type']}\nid: {event['seq']}\ndata: {payload}\n\n"


def _resume_point() -> int:
    """Highest of ``?since=`` and a numeric ``Last-Event-Id`` header."""
    since = request.args.get("since", 0, type=int)
    header = request.headers.get("Last-Event-Id", "").strip()
    if header.isdigit():
        since = max(since, int(header))
    return since


@events_bp.route("/events")
def event_stream():  # type: ignore[no-untyped-def]
    bus = current_app.config["EVENT_BUS"]
    since = _resume_point()

    def frames():  # type: ignore[no-untyped-def]
        for event in bus.subscribe(since=since):
            yield format_frame(event)

    return Response(frames(), mimetype="text/event-stream", headers=_STREAM_HEADERS)
