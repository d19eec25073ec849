"""
Request routing for a worker.

    <prefix>/...   file delivery
    /status        worker health JSON
    anything else  404 JSON
"""

import logging
import os
import time

from .config import ServerConfig
from .connections import ConnectionCounter
from .delivery import DeliveryPipeline, Outcome
from .errors import ServeError
from .paths import resolve
from .planner import plan_delivery
from .request import ServeRequest
from .response import ResponseSink, send_json, send_text

ALLOWED_METHODS = ("GET", "HEAD")


class StaticFileHandler:
    """Resolve -> plan -> deliver, with failures mapped to status codes."""

    def __init__(self, config: ServerConfig):
        self.config = config
        self.roots = config.roots
        self.pipeline = DeliveryPipeline(config)

    def relative_path(self, path: str) -> str:
        return path[len(self.config.mount_prefix.rstrip("/")):]

    async def handle(self, request: ServeRequest, sink: ResponseSink) -> Outcome:
        if request.method not in ALLOWED_METHODS:
            send_text(sink, 405, "Method Not Allowed", [("Allow", ", ".join(ALLOWED_METHODS))])
            return Outcome(False, "method")

        try:
            resolved = await resolve(
                self.relative_path(request.path), self.roots, self.config.default_resource
            )
        except ServeError as e:
            logging.debug(f"{request.path}: {e}")
            send_text(sink, e.status, e.reason)
            return Outcome(False, type(e).__name__)

        plan = plan_delivery(resolved, request.headers, self.config)
        return await self.pipeline.deliver(
            plan, resolved, sink, send_body=request.method != "HEAD"
        )


class Router:
    """Dispatches requests for one worker process."""

    def __init__(self, config: ServerConfig, worker_id: int, counter: ConnectionCounter):
        self.config = config
        self.worker_id = worker_id
        self.counter = counter
        self.started_at = time.monotonic()
        self.static = StaticFileHandler(config)

    def is_static(self, path: str) -> bool:
        prefix = self.config.mount_prefix.rstrip("/")
        return path == prefix or path.startswith(prefix + "/")

    async def dispatch(self, request: ServeRequest, sink: ResponseSink) -> None:
        if self.is_static(request.path):
            await self.static.handle(request, sink)
        elif request.path == "/status" and request.method in ALLOWED_METHODS:
            send_json(sink, 200, self.status_payload())
        else:
            send_json(sink, 404, {"status": "error", "message": "Unknown endpoint"})

    def status_payload(self) -> dict:
        return {
            "status": "success",
            "message": f"Server is running on port {self.config.port}",
            "worker": self.worker_id,
            "pid": os.getpid(),
            "uptime": round(time.monotonic() - self.started_at, 3),
            "activeConnections": self.counter.value,
        }
