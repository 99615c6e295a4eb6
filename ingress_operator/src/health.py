from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest


class _HealthHandler(BaseHTTPRequestHandler):
    """HTTP handler serving liveness, cache-sync readiness, and Prometheus metrics."""

    ready_fn: Callable[[], bool]

    def _respond(
        self, status: int, body: bytes = b"", content_type: str | None = None
    ) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/readyz":
            if self.ready_fn():
                self._respond(200, b"synced=true")
            else:
                self._respond(503, b"synced=false")
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("ingress_operator.health").debug(fmt, *args)


def make_health_handler(ready_fn: Callable[[], bool]) -> type[_HealthHandler]:
    """Return a handler class bound to *ready_fn*.

    Uses class-level attribute binding so the stdlib HTTPServer can
    instantiate handlers without constructor arguments.
    """

    class _BoundHealthHandler(_HealthHandler):
        pass

    _BoundHealthHandler.ready_fn = staticmethod(ready_fn)  # type: ignore[assignment]
    return _BoundHealthHandler


def start_health_server(ready_fn: Callable[[], bool], port: int) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    server = ThreadingHTTPServer(("0.0.0.0", port), make_health_handler(ready_fn))  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
