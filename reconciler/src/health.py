from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

ReadinessProbe = Callable[[], dict[str, bool]]
LeadershipProbe = Callable[[], bool]


class _HealthHandler(BaseHTTPRequestHandler):
    """Liveness, readiness, leadership and Prometheus endpoints for the operator.

    ``/readyz`` succeeds once every controller has completed its initial
    list and, when leader election is enabled, this replica leads.
    """

    readiness_probe: ReadinessProbe
    leadership_probe: LeadershipProbe | None

    def _leader_ready(self) -> bool:
        return self.leadership_probe is None or self.leadership_probe()

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
        elif self.path == "/leadz":
            if self._leader_ready():
                self._respond(200, b"ok")
            else:
                self._respond(503, b"not leader")
        elif self.path == "/readyz":
            controllers = self.readiness_probe()
            waiting = sorted(name for name, ready in controllers.items() if not ready)
            leader_text = "true" if self._leader_ready() else "false"
            if not waiting and leader_text == "true":
                self._respond(200, b"ready=true leader=true")
            else:
                body = f"ready={'false' if waiting else 'true'} leader={leader_text}"
                if waiting:
                    body += f" waiting={','.join(waiting)}"
                self._respond(503, body.encode())
        elif self.path == "/metrics":
            from prometheus_client import generate_latest

            self._respond(200, generate_latest(), "text/plain; version=0.0.4; charset=utf-8")
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("reconciler.health").debug(fmt, *args)


def make_health_handler(
    readiness: ReadinessProbe, leadership: LeadershipProbe | None = None
) -> type[_HealthHandler]:
    """Return a handler class bound to the given probes.

    Uses class-level attribute binding so the stdlib HTTPServer can
    instantiate handlers without constructor arguments.
    """

    class _BoundHealthHandler(_HealthHandler):
        readiness_probe = staticmethod(readiness)
        leadership_probe = staticmethod(leadership) if leadership is not None else None

    return _BoundHealthHandler


def start_health_server(
    readiness: ReadinessProbe, port: int, leadership: LeadershipProbe | None = None
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    handler_class = make_health_handler(readiness, leadership=leadership)
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", server.server_address[1])
    return server
