"""
HTTP response writing on top of an asyncio transport.

A ResponseSink represents ONE response on a connection:

    send_head()  ->  write()/drain() ...  ->  finish()

Headers are serialised and handed to the transport in one write, so once
send_head() returns the status line can no longer change. Back-pressure
comes from the transport: when its write buffer passes the high-water
mark the protocol gets pause_writing(), and drain() blocks until
resume_writing().
"""

import asyncio
import json
from email.utils import formatdate
from http import HTTPStatus
from typing import Any, Iterable, Optional, Tuple


def http_date() -> str:
    return formatdate(usegmt=True)


def reason_phrase(status: int) -> str:
    try:
        return HTTPStatus(status).phrase
    except ValueError:
        return "Unknown"


def build_head(status: int, headers: Iterable[Tuple[str, str]]) -> bytes:
    """Status line + headers + blank line, latin-1 encoded."""
    # bytearray for cheap appends, same as a hand-built response
    head = bytearray(f"HTTP/1.1 {status} {reason_phrase(status)}\r\n".encode("latin-1"))
    for name, value in headers:
        head.extend(f"{name}: {value}\r\n".encode("latin-1"))
    head.extend(b"\r\n")
    return bytes(head)


# ============================================================================
# WRITE FLOW CONTROL
# ============================================================================

class FlowControl:
    """
    Per-connection write gate, driven by the protocol's
    pause_writing / resume_writing / connection_lost callbacks.
    """

    def __init__(self):
        self._paused = False
        self._waiter: Optional[asyncio.Future] = None
        self._lost = False
        self._exc: Optional[BaseException] = None

    @property
    def lost(self) -> bool:
        return self._lost

    def pause(self):
        self._paused = True

    def resume(self):
        self._paused = False
        self._wake()

    def connection_lost(self, exc: Optional[BaseException]):
        self._lost = True
        self._exc = exc
        self._wake()

    def _wake(self):
        waiter, self._waiter = self._waiter, None
        if waiter is not None and not waiter.done():
            waiter.set_result(None)

    async def wait(self):
        """Return once the transport can take more data."""
        if self._lost:
            raise ConnectionResetError("Connection lost") from self._exc
        if not self._paused:
            return
        self._waiter = asyncio.get_running_loop().create_future()
        await self._waiter
        if self._lost:
            raise ConnectionResetError("Connection lost") from self._exc


# ============================================================================
# RESPONSE SINK
# ============================================================================

class ResponseSink:
    """
    One HTTP response on a transport.

    Body framing is chosen when the head is sent:
    - Content-Length present      -> raw bytes
    - no length, keep-alive       -> Transfer-Encoding: chunked
    - no length, connection close -> raw bytes, end of body = close
    """

    def __init__(self, transport: asyncio.Transport, flow: FlowControl, *,
                 keep_alive: bool = True, head_only: bool = False,
                 server_name: str = "dlcserver"):
        self.transport = transport
        self.flow = flow
        self.keep_alive = keep_alive
        self.head_only = head_only
        self.server_name = server_name

        self.status: Optional[int] = None
        self.headers_sent = False
        self.finished = False
        self.body_bytes = 0   # Payload bytes handed to the transport
        self._chunked = False

    def send_head(self, status: int, headers: Iterable[Tuple[str, str]]) -> None:
        if self.headers_sent:
            raise RuntimeError("Response headers already sent")
        self._check_open()

        headers = list(headers)
        has_length = any(name.lower() == "content-length" for name, _ in headers)
        if not has_length and not self.head_only and self.keep_alive:
            self._chunked = True
            headers.append(("Transfer-Encoding", "chunked"))
        elif not has_length and not self.head_only:
            # Body delimited by connection close
            self.keep_alive = False

        headers.append(("Date", http_date()))
        headers.append(("Server", self.server_name))
        headers.append(("Connection", "keep-alive" if self.keep_alive else "close"))

        self.transport.write(build_head(status, headers))
        self.status = status
        self.headers_sent = True

    def write(self, data: bytes) -> None:
        if not self.headers_sent:
            raise RuntimeError("send_head() must be called before write()")
        if self.head_only or not data:
            return
        self._check_open()

        if self._chunked:
            self.transport.writelines([f"{len(data):x}\r\n".encode("ascii"), data, b"\r\n"])
        else:
            self.transport.write(data)
        self.body_bytes += len(data)

    async def drain(self) -> None:
        await self.flow.wait()

    def finish(self) -> None:
        """Terminate the body. The connection stays usable if keep-alive."""
        if self.finished:
            return
        if self._chunked and not self.head_only:
            self._check_open()
            self.transport.write(b"0\r\n\r\n")
        self.finished = True

    def abort(self) -> None:
        """Drop the connection; used when a body cannot be completed."""
        self.keep_alive = False
        self.transport.abort()

    def _check_open(self):
        if self.flow.lost or self.transport.is_closing():
            raise ConnectionResetError("Connection closed by peer")


def send_text(sink: ResponseSink, status: int, text: str, extra_headers=()) -> None:
    """Complete plain-text response."""
    body = text.encode("utf-8")
    headers = [
        ("Content-Type", "text/plain; charset=utf-8"),
        ("Content-Length", str(len(body))),
        *extra_headers,
    ]
    sink.send_head(status, headers)
    sink.write(body)
    sink.finish()


def send_json(sink: ResponseSink, status: int, payload: Any) -> None:
    """Complete JSON response."""
    body = json.dumps(payload).encode("utf-8")
    sink.send_head(status, [
        ("Content-Type", "application/json; charset=utf-8"),
        ("Content-Length", str(len(body))),
    ])
    sink.write(body)
    sink.finish()
