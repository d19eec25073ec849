"""
Master process: spawns the workers, restarts the ones that die, and logs
the process-wide number of in-flight requests.

Pre-fork model: workers are created at startup, not per request.
"""

import logging
import multiprocessing
import os
import signal
import time
from dataclasses import dataclass
from typing import List, Optional

from .config import ServerConfig, configure_logging
from .connections import ConnectionAggregator
from .worker import Worker


@dataclass
class WorkerSlot:
    """Book-keeping for one worker position."""

    worker_id: int
    process: Optional[multiprocessing.Process] = None
    started_at: float = 0.0
    restart_delay: float = 0.0          # Delay used for the last restart
    restart_at: Optional[float] = None  # Pending respawn time
    retired: bool = False               # Restart policy said "never"


class Supervisor:
    """
    Master process that spawns and manages worker processes.
    """

    def __init__(self, config: ServerConfig):
        self.config = config
        self.aggregator = ConnectionAggregator()
        self.slots: List[WorkerSlot] = [WorkerSlot(i) for i in range(config.workers)]
        self.channel = None
        self.running = False
        self.last_report = 0.0

    # ========================================================================
    # STARTUP
    # ========================================================================

    def bootstrap_directories(self):
        """Create the primary and fallback roots if they are missing."""
        for root in self.config.roots:
            if not os.path.isdir(root):
                os.makedirs(root, exist_ok=True)
                logging.info(f"Created DLC directory: {root}")

    def spawn(self, slot: WorkerSlot):
        worker = Worker(self.config, slot.worker_id, self.channel)
        process = multiprocessing.Process(
            target=worker.run, name=f"dlcserver-worker-{slot.worker_id}"
        )
        process.start()

        slot.process = process
        slot.started_at = time.monotonic()
        slot.restart_at = None
        return process

    def _signal_handler(self, signum, frame):
        logging.info(f"Received signal {signum}, shutting down...")
        self.running = False

    def start(self):
        """
        Start the server: spawn workers and supervise until signalled.
        """
        configure_logging(self.config, "Master")
        self.config.validate()
        self.bootstrap_directories()

        self.channel = multiprocessing.Queue(maxsize=self.config.channel_size)

        signal.signal(signal.SIGINT, self._signal_handler)   # Ctrl+C
        signal.signal(signal.SIGTERM, self._signal_handler)  # kill command
        self.running = True

        logging.info("=" * 60)
        logging.info("DLC File Server Starting")
        logging.info("=" * 60)
        logging.info(f"  Host: {self.config.host}")
        logging.info(f"  Port: {self.config.port}")
        logging.info(f"  Workers: {self.config.workers}")
        logging.info(f"  Roots: {', '.join(self.config.roots)}")
        logging.info(f"  Mount: {self.config.mount_prefix}")
        logging.info(f"  Restart policy: {self.config.restart.mode}")
        logging.info("=" * 60)

        for slot in self.slots:
            process = self.spawn(slot)
            logging.info(f"Started worker {slot.worker_id} (PID: {process.pid})")

        self.last_report = time.monotonic()
        try:
            while self.running:
                self.poll(timeout=1.0)
        finally:
            self.stop()

    # ========================================================================
    # SUPERVISION LOOP
    # ========================================================================

    def poll(self, timeout: float = 1.0):
        """One supervision step: counts, dead workers, periodic report."""
        if self.channel is not None:
            self.aggregator.drain(self.channel, timeout=timeout)
        now = time.monotonic()
        self.check_workers(now)

        if now - self.last_report >= self.config.report_interval:
            logging.info(f"Active connections: {self.aggregator.total}")
            self.last_report = now

    def check_workers(self, now: float):
        """Schedule and perform restarts according to the restart policy."""
        for slot in self.slots:
            if slot.retired or slot.process is None:
                continue

            if slot.restart_at is None and not slot.process.is_alive():
                uptime = now - slot.started_at
                self.aggregator.reset(slot.worker_id)
                delay = self.config.restart.next_delay(slot.restart_delay, uptime)
                exitcode = slot.process.exitcode

                if delay is None:
                    logging.error(f"Worker {slot.worker_id} died (exit {exitcode}), not restarting")
                    slot.retired = True
                    continue

                logging.error(
                    f"Worker {slot.worker_id} died (exit {exitcode}) after {uptime:.1f}s! "
                    f"Restarting in {delay:.1f}s..."
                )
                slot.restart_delay = delay
                slot.restart_at = now + delay

            if slot.restart_at is not None and now >= slot.restart_at:
                process = self.spawn(slot)
                logging.info(f"Restarted worker {slot.worker_id} (PID: {process.pid})")

        if all(slot.retired for slot in self.slots):
            logging.error("No workers left, stopping")
            self.running = False

    def stop(self):
        """Terminate every worker, wait out the grace period, kill stragglers."""
        processes = [s.process for s in self.slots if s.process is not None]

        for process in processes:
            if process.is_alive():
                process.terminate()   # SIGTERM -> graceful drain in the worker

        # Keep reading counts while waiting: a worker with unsent messages
        # cannot exit until the pipe has room
        deadline = time.monotonic() + self.config.shutdown_grace + 5
        while any(p.is_alive() for p in processes) and time.monotonic() < deadline:
            if self.channel is not None:
                self.aggregator.drain(self.channel, timeout=0.1)
            else:
                time.sleep(0.1)

        for process in processes:
            if process.is_alive():
                logging.warning(f"Worker PID {process.pid} did not exit, killing")
                process.kill()
            process.join()

        if self.channel is not None:
            self.channel.close()
            self.channel.join_thread()
            self.channel = None
        logging.info("All workers stopped. Goodbye!")
