"""HTTP service for checking dispatcher set membership.

    GET /check/<set id>/<address>
    HEAD /check/<set id>/<address>

answers 200 when ``address`` is currently a member of the set, 404 when it
is not or the set is unknown, and 400 for a malformed path. Every other route
answers 404. Responses carry no body.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from typing import Optional, Tuple

import uvicorn
from fastapi import FastAPI, Response

from .errors import ServeError
from .syncer import DispatcherSets

logger = logging.getLogger(__name__)

SET_ID_RE = re.compile(r"-?[0-9]+")

ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

# How long start() waits for the listener to be bound.
STARTUP_TIMEOUT_SECONDS = 10.0


def create_app(registry: DispatcherSets) -> FastAPI:
    app = FastAPI(title="k8s-dispatchers", docs_url=None, redoc_url=None, openapi_url=None)

    @app.api_route("/check/{rest:path}", methods=["GET", "HEAD"])
    def check(rest: str) -> Response:
        pieces = rest.split("/")
        if len(pieces) != 2:
            return Response(status_code=400)
        set_id, addr = pieces
        if not SET_ID_RE.fullmatch(set_id):
            return Response(status_code=400)
        if registry.validate_set_member(int(set_id), addr):
            return Response(status_code=200)
        return Response(status_code=404)

    @app.api_route("/{path:path}", methods=ALL_METHODS)
    def not_found(path: str) -> Response:
        return Response(status_code=404)

    return app


def parse_listen_addr(addr: str) -> Tuple[str, int]:
    """Split ``[host]:port`` into a bind host and port; an empty host binds all interfaces."""
    host, sep, port = addr.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"invalid listen address {addr!r}, expected [host]:port")
    host = host.strip("[]") or "0.0.0.0"
    return host, int(port)


class ApiServer:
    """Runs the membership query service in a background thread."""

    def __init__(self, registry: DispatcherSets, addr: str):
        self.host, self.port = parse_listen_addr(addr)
        config = uvicorn.Config(
            create_app(registry),
            host=self.host,
            port=self.port,
            log_level="warning",
            access_log=False,
        )
        self._server = uvicorn.Server(config)
        self._thread: Optional[threading.Thread] = None

    def _serve(self) -> None:
        try:
            self._server.run()
        except SystemExit:
            # uvicorn exits when it cannot bind; start() reports it.
            pass

    def start(self, timeout_seconds: float = STARTUP_TIMEOUT_SECONDS) -> None:
        """Start serving and wait until the listener is bound.

        Raises ``ServeError`` when the server stops or does not come up in time.
        """
        # uvicorn leaves signal handling alone outside the main thread.
        self._thread = threading.Thread(target=self._serve, name="api-server", daemon=True)
        self._thread.start()

        deadline = time.monotonic() + timeout_seconds
        while not self._server.started:
            if not self._thread.is_alive():
                self._thread = None
                raise ServeError(f"failed to start HTTP server on {self.host}:{self.port}")
            if time.monotonic() > deadline:
                self.stop()
                raise ServeError(
                    f"HTTP server on {self.host}:{self.port} did not start "
                    f"within {timeout_seconds}s"
                )
            self._thread.join(0.05)

        logger.info(f"Membership API listening on {self.host}:{self.port}")

    def stop(self, timeout_seconds: float = 10.0) -> None:
        """Stop accepting connections and let in-flight requests finish."""
        self._server.should_exit = True
        if self._thread is not None:
            self._thread.join(timeout_seconds)
            self._thread = None
