from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest


class _ProbeHandler(BaseHTTPRequestHandler):
    """Serve ``/healthz`` (liveness), ``/readyz`` (informers synced) and ``/metrics``."""

    synced: threading.Event
    queue_depth: Callable[[], int]

    def _respond(self, status: int, body: bytes, content_type: str = "text/plain") -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/readyz":
            synced = self.synced.is_set()
            body = f"synced={'true' if synced else 'false'} queue={self.queue_depth()}".encode()
            self._respond(200 if synced else 503, body)
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404, b"not found")

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("configwave.health").debug(fmt, *args)


def start_health_server(
    synced: threading.Event,
    port: int,
    queue_depth: Callable[[], int] = lambda: 0,
    host: str = "0.0.0.0",  # noqa: S104
) -> ThreadingHTTPServer:
    """Start the probe/metrics HTTP server in a daemon thread and return it.

    The handler class is bound per server through class attributes so the
    stdlib server can instantiate it without constructor arguments.
    """
    handler_class = type(
        "BoundProbeHandler",
        (_ProbeHandler,),
        {"synced": synced, "queue_depth": staticmethod(queue_depth)},
    )
    server = ThreadingHTTPServer((host, port), handler_class)
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health", daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", server.server_address[1])
    return server
