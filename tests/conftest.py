"""
pytest configuration and fixtures.
"""

import asyncio
import os
from pathlib import Path
from types import SimpleNamespace
from typing import Dict, List, Optional, Tuple

import httptools
import pytest

from dlcserver import ServerConfig, Worker


# Deterministic, non-repeating payloads so off-by-one slicing shows up
def binary_payload(size: int) -> bytes:
    return bytes((i * 31 + i // 256) % 256 for i in range(size))


def text_payload(size: int) -> bytes:
    line = b"function handler(event) { return event.detail.value; }\n"
    return (line * (size // len(line) + 1))[:size]


@pytest.fixture
def dlc_root(tmp_path: Path) -> Path:
    """
    A primary root laid out like a DLC deployment:

        <root>/app.js               5000 bytes, compressible
        <root>/data.bin             500 bytes
        <root>/small.txt            100 bytes, below gzip threshold
        <root>/packs/               directory
        <root>/dlc/DLCIndex.zip     2000 bytes (fallback root)
        <root>/dlc/only-in-fallback.bin
    """
    root = tmp_path / "dlc-root"
    fallback = root / "dlc"
    fallback.mkdir(parents=True)
    (root / "packs").mkdir()

    (root / "app.js").write_bytes(text_payload(5000))
    (root / "data.bin").write_bytes(binary_payload(500))
    (root / "small.txt").write_bytes(text_payload(100))
    (fallback / "DLCIndex.zip").write_bytes(binary_payload(2000))
    (fallback / "only-in-fallback.bin").write_bytes(binary_payload(64))
    return root


@pytest.fixture
def config(dlc_root: Path) -> ServerConfig:
    """Test configuration: loopback, OS-chosen port, small chunks."""
    return ServerConfig(
        host="127.0.0.1",
        port=0,
        workers=1,
        root=str(dlc_root),
        chunk_size=1024,
        shutdown_grace=2.0,
        keepalive_timeout=5.0,
        request_timeout=10.0,
        use_uvloop=False,
        log_level="WARNING",
    )


# ============================================================================
# IN-MEMORY SINK
# ============================================================================

class MemorySink:
    """Records what the delivery pipeline sends, in order."""

    def __init__(self, head_only: bool = False):
        self.head_only = head_only
        self.status: Optional[int] = None
        self.headers: List[Tuple[str, str]] = []
        self.headers_sent = False
        self.body = bytearray()
        self.body_bytes = 0
        self.finished = False
        self.aborted = False
        self.drains = 0
        self.events: List[str] = []

    def send_head(self, status, headers):
        assert not self.headers_sent, "headers sent twice"
        self.status = status
        self.headers = list(headers)
        self.headers_sent = True
        self.events.append("head")

    def write(self, data: bytes):
        assert self.headers_sent, "body before headers"
        if self.head_only or not data:
            return
        self.body.extend(data)
        self.body_bytes += len(data)
        self.events.append("body")

    async def drain(self):
        self.drains += 1

    def finish(self):
        self.finished = True
        self.events.append("finish")

    def abort(self):
        self.aborted = True
        self.events.append("abort")

    def header(self, name: str) -> Optional[str]:
        for key, value in self.headers:
            if key.lower() == name.lower():
                return value
        return None


@pytest.fixture
def memory_sink():
    return MemorySink


# ============================================================================
# LOOPBACK CLIENT
# ============================================================================

class ClientResponse:
    """One parsed response."""

    def __init__(self):
        self.status: Optional[int] = None
        self.headers: Dict[str, str] = {}
        self.body = bytearray()
        self.headers_complete = False
        self.complete = False


class ResponseCollector:
    """httptools.HttpResponseParser callback target; one entry per message."""

    def __init__(self):
        self.parser = None
        self.responses: List[ClientResponse] = []

    def on_message_begin(self):
        self.responses.append(ClientResponse())

    def on_header(self, name: bytes, value: bytes):
        self.responses[-1].headers[name.decode("latin-1").lower()] = value.decode("latin-1")

    def on_headers_complete(self):
        self.responses[-1].status = self.parser.get_status_code()
        self.responses[-1].headers_complete = True

    def on_body(self, body: bytes):
        self.responses[-1].body.extend(body)

    def on_message_complete(self):
        self.responses[-1].complete = True


async def read_responses(reader: asyncio.StreamReader, count: int,
                         head_only: bool = False) -> List[ClientResponse]:
    """Read until ``count`` responses are complete or the server closes."""
    collector = ResponseCollector()
    collector.parser = httptools.HttpResponseParser(collector)

    def done():
        if len(collector.responses) < count:
            return False
        last = collector.responses[-1]
        return last.complete or (head_only and last.headers_complete)

    while not done():
        data = await asyncio.wait_for(reader.read(65536), timeout=5)
        if not data:
            break
        collector.parser.feed_data(data)
    return collector.responses


async def read_response(reader: asyncio.StreamReader, head_only: bool = False) -> ClientResponse:
    return (await read_responses(reader, 1, head_only))[0]


def build_request(method: str, path: str, headers: Optional[Dict[str, str]] = None,
                  keep_alive: bool = False) -> bytes:
    lines = [f"{method} {path} HTTP/1.1", "Host: localhost"]
    lines.append("Connection: keep-alive" if keep_alive else "Connection: close")
    for name, value in (headers or {}).items():
        lines.append(f"{name}: {value}")
    return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1")


async def fetch(port: int, path: str, headers: Optional[Dict[str, str]] = None,
                method: str = "GET", keep_alive: bool = False) -> ClientResponse:
    """One request on a fresh connection."""
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    try:
        writer.write(build_request(method, path, headers, keep_alive))
        await writer.drain()
        return await read_response(reader, head_only=method == "HEAD")
    finally:
        writer.close()


@pytest.fixture
def serve(config: ServerConfig):
    """
    Run a coroutine against a live worker on a loopback port:

        serve(lambda port, worker: fetch(port, "/static/"))
    """

    def run(scenario, cfg: Optional[ServerConfig] = None):
        async def main():
            worker = Worker(cfg or config, worker_id=0)
            server = await worker.start_server()
            port = server.sockets[0].getsockname()[1]
            try:
                return await scenario(port, worker)
            finally:
                await worker.shutdown()

        return asyncio.run(main())

    return run


@pytest.fixture
def client():
    """The loopback client helpers, for use inside serve() scenarios."""
    return SimpleNamespace(
        fetch=fetch,
        read_response=read_response,
        read_responses=read_responses,
        build_request=build_request,
    )


@pytest.fixture
def payloads():
    return SimpleNamespace(binary=binary_payload, text=text_payload)


@pytest.fixture(autouse=True)
def _clean_dlc_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith("DLC_"):
            monkeypatch.delenv(name, raising=False)
