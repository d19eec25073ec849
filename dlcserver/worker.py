"""
Worker process: one event loop serving many connections.

Each worker is a separate OS process with its own listening socket on the
shared port (SO_REUSEPORT); the kernel spreads incoming connections
across them. Nothing mutable is shared between workers; the only thing
that leaves the process is the connection-count message.
"""

import asyncio
import logging
import signal

import uvloop

from .config import ServerConfig, configure_logging
from .connections import ConnectionCounter
from .handlers import Router
from .protocol import HTTPProtocol


class Worker:
    """
    A worker process that runs an event loop.
    Each worker is a separate OS process, so no GIL contention!
    """

    def __init__(self, config: ServerConfig, worker_id: int, channel=None):
        """
        Args:
            config: Server configuration
            worker_id: Slot number of this worker (stable across restarts)
            channel: multiprocessing.Queue for connection-count messages
        """
        self.config = config
        self.worker_id = worker_id
        self.channel = channel
        self.server = None
        self.counter = None
        self.connections: set = set()

    async def start_server(self) -> asyncio.AbstractServer:
        """Bind the listening socket and start accepting connections."""
        loop = asyncio.get_running_loop()
        self.counter = ConnectionCounter(self.worker_id, self.channel)
        router = Router(self.config, self.worker_id, self.counter)

        self.server = await loop.create_server(
            lambda: HTTPProtocol(self.config, router, self.counter, self.connections),
            host=self.config.host,
            port=self.config.port,
            backlog=self.config.backlog,
            reuse_address=True,
            reuse_port=True,   # Every worker accept()s on the same port
        )
        logging.info(f"Worker {self.worker_id} started on {self.config.host}:{self.config.port}")
        return self.server

    async def serve(self):
        await self.start_server()

        stop = asyncio.Event()
        asyncio.get_running_loop().add_signal_handler(signal.SIGTERM, stop.set)
        await stop.wait()

        await self.shutdown()

    async def shutdown(self):
        """
        Stop accepting, let in-flight transfers finish within the grace
        period, then cut whatever is left.
        """
        logging.info(f"Worker {self.worker_id} shutting down...")
        if self.server is not None:
            self.server.close()

        for protocol in list(self.connections):
            protocol.begin_shutdown()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.shutdown_grace
        while self._busy() and loop.time() < deadline:
            await asyncio.sleep(0.1)

        if self.connections:
            logging.warning(
                f"Worker {self.worker_id}: grace period over, "
                f"dropping {len(self.connections)} connection(s)"
            )
            for protocol in list(self.connections):
                protocol.force_close()
            # Let connection_lost callbacks run
            await asyncio.sleep(0)

        logging.info(f"Worker {self.worker_id} stopped")

    def _busy(self) -> bool:
        in_flight = self.counter is not None and self.counter.value > 0
        return in_flight or bool(self.connections)

    def run(self):
        """
        Entry point for the worker process.
        Sets up logging and starts the event loop.
        """
        # Forked from the supervisor with its handlers installed. SIGTERM must
        # stay fatal until the loop installs its own handler in serve()
        signal.signal(signal.SIGTERM, signal.SIG_DFL)
        # Ctrl+C reaches the whole process group; the supervisor owns shutdown
        signal.signal(signal.SIGINT, signal.SIG_IGN)

        configure_logging(self.config, f"Worker-{self.worker_id}")

        try:
            if self.config.use_uvloop:
                uvloop.run(self.serve())
            else:
                asyncio.run(self.serve())
        except Exception as e:
            logging.error(f"Worker {self.worker_id} crashed: {e}")
            raise
        finally:
            if self.channel is not None:
                # Counts are fire-and-forget; unsent ones must not block exit
                self.channel.cancel_join_thread()
