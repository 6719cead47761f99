from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

HEALTH_PATH = "/healthz"
READY_PATH = "/readyz"
METRICS_PATH = "/metrics"


class _HealthHandler(BaseHTTPRequestHandler):
    """Serves liveness, readiness and Prometheus metrics for the controller."""

    ready_event: threading.Event
    alive_fn: Callable[[], bool]

    def _respond(self, status: int, body: bytes = b"", content_type: str = "text/plain") -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        path = self.path.split("?", 1)[0]
        if path == HEALTH_PATH:
            # Liveness only fails once the control loop has stopped for good.
            if self.alive_fn():
                self._respond(200, b"ok")
            else:
                self._respond(503, b"stopped")
        elif path == READY_PATH:
            # Ready once the startup inventory sync succeeded.
            if self.ready_event.is_set():
                self._respond(200, b"ready")
            else:
                self._respond(503, b"not ready")
        elif path == METRICS_PATH:
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404, b"not found")

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("alb_controller.health").debug(fmt, *args)


def start_health_server(
    ready: threading.Event,
    port: int,
    alive: Callable[[], bool] = lambda: True,
    host: str = "0.0.0.0",  # noqa: S104
) -> ThreadingHTTPServer:
    """Start the probe/metrics HTTP server on a daemon thread and return it."""
    handler_class = type(
        "_BoundHealthHandler",
        (_HealthHandler,),
        {"ready_event": ready, "alive_fn": staticmethod(alive)},
    )
    server = ThreadingHTTPServer((host, port), handler_class)
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on %s:%d", host, server.server_address[1])
    return server
