from __future__ import annotations

import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any
from urllib.parse import urlsplit

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)


class _HealthHandler(BaseHTTPRequestHandler):
    """Serves liveness, readiness, leadership and Prometheus metrics endpoints."""

    ready_event: threading.Event
    leader_event: threading.Event | None

    def _leader_ready(self) -> bool:
        return self.leader_event is None or self.leader_event.is_set()

    def _respond(self, status: int, body: bytes = b"", content_type: str | None = None) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        path = urlsplit(self.path).path
        if path == "/healthz":
            self._respond(200, b"ok")
        elif path == "/leadz":
            if self._leader_ready():
                self._respond(200, b"ok")
            else:
                self._respond(503, b"not leader")
        elif path == "/readyz":
            ready = self.ready_event.is_set()
            leader_ready = self._leader_ready()
            body = f"ready={str(ready).lower()} leader={str(leader_ready).lower()}".encode()
            self._respond(200 if ready and leader_ready else 503, body)
        elif path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def make_health_handler(
    ready: threading.Event, leader: threading.Event | None = None
) -> type[_HealthHandler]:
    """Return a handler class bound to the given readiness and leadership events."""

    class _BoundHealthHandler(_HealthHandler):
        ready_event = ready
        leader_event = leader

    return _BoundHealthHandler


def start_health_server(
    ready: threading.Event, port: int, leader: threading.Event | None = None
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    server = ThreadingHTTPServer(("0.0.0.0", port), make_health_handler(ready, leader=leader))  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    LOGGER.info("Health server listening on :%d", port)
    return server
