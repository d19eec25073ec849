"""
Unit tests for the delivery pipeline, using an in-memory sink.
"""

import asyncio
import gzip
import os

import pytest

from dlcserver.delivery import DeliveryPipeline
from dlcserver.paths import ResolvedFile
from dlcserver.planner import plan_delivery


def stat_file(path) -> ResolvedFile:
    st = os.stat(path)
    return ResolvedFile(path=str(path), size=st.st_size, mtime=st.st_mtime)


def deliver(config, resolved, sink, headers=None, send_body=True):
    plan = plan_delivery(resolved, headers or {}, config)
    outcome = asyncio.run(DeliveryPipeline(config).deliver(plan, resolved, sink, send_body))
    return plan, outcome


class TestFullDelivery:
    """Non-ranged transfers."""

    def test_body_equals_file(self, config, dlc_root, memory_sink):
        sink = memory_sink()
        resolved = stat_file(dlc_root / "dlc" / "DLCIndex.zip")
        _, outcome = deliver(config, resolved, sink)

        assert outcome.success
        assert sink.status == 200
        assert bytes(sink.body) == (dlc_root / "dlc" / "DLCIndex.zip").read_bytes()
        assert sink.header("Content-Length") == "2000"
        assert sink.finished and not sink.aborted

    def test_reads_in_planned_chunks(self, config, dlc_root, memory_sink):
        sink = memory_sink()
        deliver(config, stat_file(dlc_root / "dlc" / "DLCIndex.zip"), sink)
        # 2000 bytes at chunk_size=1024 -> two writes, each drained
        assert sink.events == ["head", "body", "body", "finish"]
        assert sink.drains == 2

    def test_headers_precede_body(self, config, dlc_root, memory_sink):
        sink = memory_sink()
        deliver(config, stat_file(dlc_root / "data.bin"), sink)
        assert sink.events[0] == "head"
        assert sink.events[-1] == "finish"

    def test_gzip_round_trip(self, config, dlc_root, memory_sink):
        sink = memory_sink()
        plan, outcome = deliver(
            config, stat_file(dlc_root / "app.js"), sink, {"accept-encoding": "gzip"}
        )

        assert plan.content_encoding == "gzip"
        assert outcome.success
        assert sink.header("Content-Encoding") == "gzip"
        assert sink.header("Content-Length") is None
        assert gzip.decompress(bytes(sink.body)) == (dlc_root / "app.js").read_bytes()
        assert outcome.body_bytes == 5000

    def test_empty_file(self, config, dlc_root, memory_sink):
        (dlc_root / "empty.bin").write_bytes(b"")
        sink = memory_sink()
        _, outcome = deliver(config, stat_file(dlc_root / "empty.bin"), sink)
        assert outcome.success
        assert sink.body == b""
        assert sink.header("Content-Length") == "0"


class TestRangedDelivery:
    """206 and 416 transfers."""

    def test_window_bytes(self, config, dlc_root, memory_sink):
        sink = memory_sink()
        _, outcome = deliver(
            config, stat_file(dlc_root / "data.bin"), sink, {"range": "bytes=100-199"}
        )
        assert outcome.success
        assert sink.status == 206
        assert sink.header("Content-Range") == "bytes 100-199/500"
        assert bytes(sink.body) == (dlc_root / "data.bin").read_bytes()[100:200]

    def test_window_spanning_chunks(self, config, dlc_root, memory_sink):
        sink = memory_sink()
        deliver(config, stat_file(dlc_root / "app.js"), sink, {"range": "bytes=1000-3999"})
        assert bytes(sink.body) == (dlc_root / "app.js").read_bytes()[1000:4000]
        assert sink.events.count("body") == 3

    def test_range_with_gzip_request_stays_identity(self, config, dlc_root, memory_sink):
        sink = memory_sink()
        deliver(
            config, stat_file(dlc_root / "app.js"), sink,
            {"range": "bytes=0-99", "accept-encoding": "gzip"},
        )
        assert sink.header("Content-Encoding") is None
        assert bytes(sink.body) == (dlc_root / "app.js").read_bytes()[:100]

    def test_invalid_range_sends_no_body(self, config, dlc_root, memory_sink):
        sink = memory_sink()
        _, outcome = deliver(config, stat_file(dlc_root / "data.bin"), sink, {"range": "bytes=500-"})
        assert outcome.success
        assert sink.status == 416
        assert sink.header("Content-Range") == "bytes */500"
        assert sink.body == b""
        assert sink.events == ["head", "finish"]


class TestHeadRequests:

    def test_head_sends_headers_only(self, config, dlc_root, memory_sink):
        sink = memory_sink(head_only=True)
        _, outcome = deliver(config, stat_file(dlc_root / "data.bin"), sink, send_body=False)
        assert outcome.success
        assert sink.status == 200
        assert sink.header("Content-Length") == "500"
        assert sink.events == ["head", "finish"]


class TestFailures:
    """Transfer errors before and after the head is sent."""

    def test_open_failure_before_headers_is_500(self, config, dlc_root, memory_sink):
        resolved = stat_file(dlc_root / "data.bin")
        os.remove(dlc_root / "data.bin")

        sink = memory_sink()
        _, outcome = deliver(config, resolved, sink)

        assert not outcome.success
        assert outcome.failure == "open"
        assert sink.status == 500
        assert not sink.aborted

    def test_read_failure_after_headers_aborts(self, config, dlc_root, memory_sink):
        resolved = stat_file(dlc_root / "dlc" / "DLCIndex.zip")
        # File shrinks between stat and read
        (dlc_root / "dlc" / "DLCIndex.zip").write_bytes(b"x" * 1500)

        sink = memory_sink()
        _, outcome = deliver(config, resolved, sink)

        assert not outcome.success
        assert outcome.failure == "read"
        assert sink.status == 200      # headers already went out
        assert sink.aborted
        assert not sink.finished

    def test_client_disconnect_is_reported_as_write_failure(self, config, dlc_root, memory_sink):
        class GoneSink(memory_sink):
            async def drain(self):
                raise ConnectionResetError("peer closed")

        sink = GoneSink()
        _, outcome = deliver(config, stat_file(dlc_root / "app.js"), sink)
        assert not outcome.success
        assert outcome.failure == "write"
        assert not sink.finished

    def test_cancellation_closes_source(self, config, dlc_root, memory_sink, monkeypatch):
        import aiofiles

        closed = []
        real_open = aiofiles.open

        async def tracking_open(*args, **kwargs):
            handle = await real_open(*args, **kwargs)
            real_close = handle.close

            async def close():
                closed.append(True)
                await real_close()

            handle.close = close
            return handle

        monkeypatch.setattr(aiofiles, "open", tracking_open)

        class StallingSink(memory_sink):
            async def drain(self):
                await asyncio.sleep(3600)

        resolved = stat_file(dlc_root / "app.js")
        plan = plan_delivery(resolved, {}, config)

        async def scenario():
            task = asyncio.ensure_future(
                DeliveryPipeline(config).deliver(plan, resolved, StallingSink())
            )
            await asyncio.sleep(0.2)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())
        assert closed == [True]
