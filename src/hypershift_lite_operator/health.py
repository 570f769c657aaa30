"""Liveness, readiness and metrics endpoints served on a single port."""

from __future__ import annotations

import threading
from typing import Any, Callable

from prometheus_client import make_wsgi_app
from werkzeug.serving import make_server
from werkzeug.wrappers import Request, Response

# Probe paths answered directly; everything else goes to the Prometheus app
PROBE_BODIES = {
    "/healthz": '{"status":"ok"}',
    "/readyz": '{"status":"ready"}',
}


def create_combined_wsgi_app() -> Callable[[dict[str, Any], Any], Any]:
    """Build the WSGI app answering the probe paths and exposing /metrics."""
    metrics_app = make_wsgi_app()

    def combined_app(environ: dict[str, Any], start_response: Any) -> Any:
        body = PROBE_BODIES.get(Request(environ).path)
        if body is None:
            return metrics_app(environ, start_response)
        return Response(body, mimetype="application/json")(environ, start_response)

    return combined_app


def start_metrics_server(port: int) -> threading.Thread:
    """Serve probes and metrics on ``port`` from a daemon thread.

    Args:
        port: Port number to bind on all interfaces

    Returns:
        The thread running the server
    """
    server = make_server("", port, create_combined_wsgi_app(), threaded=True)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return thread
