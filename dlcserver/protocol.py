"""
HTTP/1.1 protocol handler: one instance per TCP connection.

Bytes come in through data_received() and are fed to httptools, which
calls back on_url / on_header / on_message_complete. Completed requests
are queued and answered strictly in order by a single task per
connection, so pipelined requests never interleave their bodies.
"""

import asyncio
import collections
import logging
import socket
import time
from datetime import datetime, timezone
from typing import Dict, Optional
from urllib.parse import unquote

import httptools

from .config import ServerConfig
from .connections import ConnectionCounter, RequestLifecycle
from .handlers import Router
from .request import ServeRequest
from .response import FlowControl, ResponseSink, send_json, send_text

# Stop reading from a client that pipelines more than this many requests
MAX_PIPELINED = 16


class HTTPProtocol(asyncio.Protocol):
    """
    Connection state machine:

        idle (keep-alive timer) -> request in progress (request timer)
            -> idle ... -> closed

    connection_lost() is the single teardown point: it cancels the
    in-flight handler task (which closes the file and compressor) and
    finalizes the request's counter entry.
    """

    def __init__(self, config: ServerConfig, router: Router, counter: ConnectionCounter,
                 connections: set):
        """
        Args:
            config: Server configuration
            router: Request dispatcher of this worker
            counter: In-flight request counter of this worker
            connections: Live protocols of this worker (for the cap and shutdown)
        """
        self.config = config
        self.router = router
        self.counter = counter
        self.connections = connections
        self.loop = asyncio.get_running_loop()

        self.transport: Optional[asyncio.Transport] = None
        self.parser = None
        self.flow = FlowControl()
        self.peer = None

        # Request being parsed
        self.url = b""
        self.headers: Dict[str, str] = {}

        self.pending = collections.deque()
        self.task: Optional[asyncio.Task] = None
        self.lifecycle: Optional[RequestLifecycle] = None
        self.sink: Optional[ResponseSink] = None
        self.timeout_handle = None
        self.closed = False
        self.draining = False

    # ========================================================================
    # asyncio.Protocol CALLBACKS
    # ========================================================================

    def connection_made(self, transport: asyncio.Transport):
        self.transport = transport
        self.peer = transport.get_extra_info('peername')

        if len(self.connections) >= self.config.max_connections_per_worker:
            logging.warning(f"Connection limit reached, refusing {self.peer}")
            self.closed = True
            transport.close()
            return
        self.connections.add(self)

        sock = transport.get_extra_info('socket')
        if sock is not None:
            try:
                # Small header writes should not wait for Nagle
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            except (OSError, AttributeError):
                pass

        self.parser = httptools.HttpRequestParser(self)
        self._arm_timer(self.config.keepalive_timeout)
        logging.debug(f"Connection established from {self.peer}")

    def data_received(self, data: bytes):
        if self.closed:
            return
        try:
            self.parser.feed_data(data)
        except httptools.HttpParserUpgrade:
            self._reject(400, "Upgrade not supported")
        except httptools.HttpParserError as e:
            logging.warning(f"HTTP parse error from {self.peer}: {e}")
            self._reject(400, "Bad Request")

    def pause_writing(self):
        self.flow.pause()

    def resume_writing(self):
        self.flow.resume()

    def connection_lost(self, exc):
        self.closed = True
        self.connections.discard(self)
        self._cancel_timer()
        self.flow.connection_lost(exc)

        if self.task is not None and not self.task.done():
            self.task.cancel()
        if self.lifecycle is not None:
            # The handler's finally may run later; the one-shot guard
            # makes whichever comes first the only decrement
            self.lifecycle.finalize()

        if exc:
            logging.debug(f"Connection lost with error: {exc}")

    # ========================================================================
    # httptools CALLBACKS
    # ========================================================================

    def on_message_begin(self):
        self.url = b""
        self.headers = {}

    def on_url(self, url: bytes):
        self.url += url

    def on_header(self, name: bytes, value: bytes):
        key = name.decode('latin-1').lower()
        text = value.decode('latin-1').strip()
        if key in self.headers:
            self.headers[key] = f"{self.headers[key]}, {text}"
        else:
            self.headers[key] = text

    def on_message_complete(self):
        if self.closed:
            return
        try:
            parsed = httptools.parse_url(self.url)
        except httptools.HttpParserInvalidURLError:
            self._reject(400, "Bad Request")
            return

        request = ServeRequest(
            method=self.parser.get_method().decode('ascii', errors='replace'),
            path=unquote(parsed.path.decode('utf-8', errors='replace')),
            headers=self.headers,
            url=self.url.decode('utf-8', errors='replace'),
            client=self.peer,
            keep_alive=self.parser.should_keep_alive(),
        )
        self.pending.append(request)
        if len(self.pending) >= MAX_PIPELINED:
            self.transport.pause_reading()

        if self.task is None:
            self.task = self.loop.create_task(self._process())

    # ========================================================================
    # REQUEST PROCESSING
    # ========================================================================

    async def _process(self):
        try:
            while self.pending and not self.closed:
                request = self.pending.popleft()
                keep_alive = await self._respond(request)
                if not keep_alive or self.draining:
                    self.transport.close()
                    return
                if len(self.pending) < MAX_PIPELINED:
                    self.transport.resume_reading()
        finally:
            self.task = None

        if not self.closed:
            self._arm_timer(self.config.keepalive_timeout)

    async def _respond(self, request: ServeRequest) -> bool:
        """Answer one request. Returns whether the connection may be reused."""
        self._arm_timer(self.config.request_timeout)
        lifecycle = self.lifecycle = self.counter.begin()
        sink = self.sink = ResponseSink(
            self.transport, self.flow,
            keep_alive=request.keep_alive and not self.draining,
            head_only=request.method == "HEAD",
            server_name=self.config.server_name,
        )
        start = time.monotonic()

        try:
            await self.router.dispatch(request, sink)
        except ConnectionError as e:
            logging.debug(f"Client {request.client_host} went away: {e}")
            sink.keep_alive = False
        except Exception as e:
            logging.exception(f"Error handling request {request.method} {request.url}: {e}")
            if not sink.headers_sent and not self.closed and not self.transport.is_closing():
                send_json(sink, 500, {"status": "error", "message": "Internal Server Error"})
            else:
                sink.abort()
        finally:
            lifecycle.finalize()
            self.lifecycle = None
            self.sink = None
            self._access_log(request, sink, start)

        return sink.keep_alive and sink.finished

    def _access_log(self, request: ServeRequest, sink: ResponseSink, start: float):
        # Only failures and slow transfers; success logs would drown the archive traffic
        duration_ms = (time.monotonic() - start) * 1000
        status = sink.status or 0
        if status >= 400 or status == 0 or duration_ms > self.config.slow_request_ms:
            logging.info(
                f"{datetime.now(timezone.utc).isoformat()} - {request.method} {request.url} - "
                f"{status or 'aborted'} - {duration_ms:.0f}ms - {request.client_host}"
            )

    # ========================================================================
    # TIMEOUTS, ERRORS AND SHUTDOWN
    # ========================================================================

    def _arm_timer(self, seconds: float):
        self._cancel_timer()
        self.timeout_handle = self.loop.call_later(seconds, self._timeout_occurred)

    def _cancel_timer(self):
        if self.timeout_handle:
            self.timeout_handle.cancel()
            self.timeout_handle = None

    def _timeout_occurred(self):
        if self.transport is None:
            return
        if self.task is not None:
            # A stalled client may never drain the buffer, so don't wait for it
            logging.warning(f"Request timeout - closing connection to {self.peer}")
            self.transport.abort()
        else:
            logging.debug(f"Keep-alive timeout - closing connection to {self.peer}")
            self.transport.close()

    def _reject(self, status: int, message: str):
        """Answer a malformed request and close. Only safe while idle."""
        self.closed = True
        if self.task is None and not self.transport.is_closing():
            sink = ResponseSink(self.transport, self.flow, keep_alive=False,
                                server_name=self.config.server_name)
            send_text(sink, status, message)
        self.transport.close()

    def begin_shutdown(self):
        """
        Stop after the current response; close right away if idle.

        A response whose head is already out keeps its "Connection: keep-alive"
        header; the connection is still closed once its body is complete.
        """
        self.draining = True
        if self.sink is not None and not self.sink.headers_sent:
            self.sink.keep_alive = False
        if self.task is None and self.transport is not None:
            self.transport.close()

    def force_close(self):
        if self.transport is not None:
            self.transport.abort()
