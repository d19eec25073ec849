"""
Delivery pipeline: file -> [gzip] -> response sink.

    ┌────────────┐  chunk   ┌────────────┐  bytes   ┌────────────┐
    │  aiofiles  │ ───────▶ │ compressobj│ ───────▶ │    sink    │
    │ (bounded)  │          │ (optional) │          │ (transport)│
    └────────────┘          └────────────┘          └────────────┘
          ▲                                               │
          └────────────── await sink.drain() ◀────────────┘

Every stage is awaited in turn, so at most one chunk is in flight and a
slow client throttles disk reads. Memory stays at O(chunk_size) no matter
how large the archive is.
"""

import asyncio
import logging
import zlib
from dataclasses import dataclass
from typing import Optional

import aiofiles

from .config import ServerConfig
from .errors import TransferFailure
from .paths import ResolvedFile
from .planner import DeliveryPlan
from .response import send_text


@dataclass(frozen=True)
class Outcome:
    """Result of one delivery. ``failure`` is "open", "read" or "write"."""

    success: bool
    failure: Optional[str] = None
    body_bytes: int = 0


def new_compressor(level: int):
    # 16 + MAX_WBITS selects the gzip container instead of raw zlib
    return zlib.compressobj(level, zlib.DEFLATED, 16 + zlib.MAX_WBITS)


def _compress_chunk(compressor, chunk: bytes) -> bytes:
    # Z_SYNC_FLUSH after every chunk so slow clients see output early
    return compressor.compress(chunk) + compressor.flush(zlib.Z_SYNC_FLUSH)


class DeliveryPipeline:
    """Executes DeliveryPlans for one worker."""

    def __init__(self, config: ServerConfig):
        self.config = config

    async def deliver(self, plan: DeliveryPlan, resolved: ResolvedFile, sink,
                      send_body: bool = True) -> Outcome:
        """
        Send status, headers and (unless HEAD or 416) the body.

        Args:
            plan: Immutable delivery decisions
            resolved: File to read from
            sink: ResponseSink (or anything with the same interface)
            send_body: False for HEAD requests

        Returns:
            Outcome. Failures before the head is sent are answered with a
            500; failures after it abort the connection.
        """
        if not plan.has_body or not send_body:
            sink.send_head(plan.status, plan.headers())
            sink.finish()
            return Outcome(True)

        # Open before committing to a status: an open failure still gets a 500
        try:
            source = await aiofiles.open(resolved.path, "rb")
        except OSError as e:
            logging.error(f"Error opening file {resolved.path}: {e}")
            send_text(sink, TransferFailure.status, TransferFailure.reason)
            return Outcome(False, "open")

        try:
            sink.send_head(plan.status, plan.headers())
            sent = await self._pump(plan, resolved, source, sink)
            sink.finish()
            return Outcome(True, body_bytes=sent)
        except TransferFailure as e:
            logging.error(f"Error streaming file {resolved.path}: {e}")
            return self._fail(sink, "read")
        except ConnectionError as e:
            # Client went away between chunks; nothing left to tell it
            logging.info(f"Client closed during transfer of {resolved.path}: {e}")
            return Outcome(False, "write", sink.body_bytes)
        except OSError as e:
            logging.error(f"Error streaming file {resolved.path}: {e}")
            return self._fail(sink, "read")
        finally:
            # Runs on cancellation too, so the descriptor never leaks
            await source.close()

    async def _pump(self, plan: DeliveryPlan, resolved: ResolvedFile, source, sink) -> int:
        """Copy the planned window from source to sink. Returns bytes read."""
        if plan.byte_window is not None:
            await source.seek(plan.byte_window.start)
            remaining = plan.byte_window.length
        else:
            remaining = resolved.size

        compressor = None
        if plan.content_encoding == "gzip":
            compressor = new_compressor(self.config.gzip_level)
        loop = asyncio.get_running_loop()

        total = 0
        while remaining > 0:
            chunk = await source.read(min(plan.chunk_size, remaining))
            if not chunk:
                raise TransferFailure(f"file shrank, {remaining} bytes short")
            remaining -= len(chunk)
            total += len(chunk)

            if compressor is not None:
                # CPU-bound; keep it off the event loop thread
                chunk = await loop.run_in_executor(None, _compress_chunk, compressor, chunk)

            sink.write(chunk)
            await sink.drain()

        if compressor is not None:
            sink.write(compressor.flush(zlib.Z_FINISH))
            await sink.drain()
        return total

    @staticmethod
    def _fail(sink, kind: str) -> Outcome:
        if not sink.headers_sent:
            send_text(sink, TransferFailure.status, TransferFailure.reason)
        else:
            # Headers are gone already; the only honest signal is a drop
            sink.abort()
        return Outcome(False, kind, sink.body_bytes)
