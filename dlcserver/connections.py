"""
Active-request telemetry across worker processes.

Worker side:  ConnectionCounter (one per worker, touched only by its loop)
Master side:  ConnectionAggregator (latest value per worker, summed)

The channel is a bounded multiprocessing.Queue used fire-and-forget:
no acks, no retries. A dropped message skews the total until that worker
reports again. This is advisory logging, never admission control.
"""

import logging
import queue
from typing import Dict, NamedTuple, Optional

CONNECTION_COUNT = "connection-count"


class CountMessage(NamedTuple):
    """The only message workers send to the supervisor."""

    kind: str
    worker_id: int
    value: int


# ============================================================================
# WORKER SIDE
# ============================================================================

class RequestLifecycle:
    """
    Handle for one in-flight request.

    finalize() may be called from both the "response finished" and the
    "connection lost" paths; only the first call decrements.
    """

    __slots__ = ("_counter", "finalized")

    def __init__(self, counter: "ConnectionCounter"):
        self._counter = counter
        self.finalized = False

    def finalize(self) -> bool:
        if self.finalized:
            return False
        self.finalized = True
        self._counter._decrement()
        return True


class ConnectionCounter:
    """Live count of in-flight requests in this worker."""

    def __init__(self, worker_id: int, channel=None):
        """
        Args:
            worker_id: Slot number of this worker
            channel: multiprocessing.Queue to the supervisor, or None
        """
        self.worker_id = worker_id
        self.channel = channel
        self.value = 0
        self.dropped = 0

    def begin(self) -> RequestLifecycle:
        self.value += 1
        self._publish()
        return RequestLifecycle(self)

    def _decrement(self):
        self.value -= 1
        self._publish()

    def _publish(self):
        if self.channel is None:
            return
        try:
            self.channel.put_nowait(CountMessage(CONNECTION_COUNT, self.worker_id, self.value))
        except queue.Full:
            self.dropped += 1
            logging.debug(f"Count channel full, dropped update ({self.dropped} so far)")


# ============================================================================
# SUPERVISOR SIDE
# ============================================================================

class ConnectionAggregator:
    """Latest reported count per worker."""

    def __init__(self):
        self.counts: Dict[int, int] = {}

    def apply(self, message) -> None:
        try:
            kind, worker_id, value = message
        except (TypeError, ValueError):
            logging.warning(f"Ignoring malformed channel message: {message!r}")
            return
        if kind != CONNECTION_COUNT:
            logging.warning(f"Ignoring unknown channel message kind: {kind!r}")
            return
        self.counts[worker_id] = max(0, int(value))

    def reset(self, worker_id: int) -> None:
        """A dead worker has nothing in flight."""
        self.counts[worker_id] = 0

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def drain(self, channel, timeout: Optional[float] = None) -> int:
        """
        Apply every message currently queued.

        Blocks up to ``timeout`` seconds for the first one, then takes the
        rest without waiting. Returns how many messages were applied.
        """
        applied = 0
        try:
            message = channel.get(timeout=timeout) if timeout else channel.get_nowait()
            while True:
                self.apply(message)
                applied += 1
                message = channel.get_nowait()
        except queue.Empty:
            pass
        return applied
