"""
Broadcast outbox.

Status events are produced inside StateMachine.transition() on whichever
thread applied the transition (dispatcher poll, workers, scheduler, retry
check). Pushing them to a remote Broadcaster from there would tie every loop
to the broadcaster's latency, so the listener only enqueues and a single
daemon thread delivers.

The queue is bounded. When it is full the newest message is dropped and
counted; broadcasts are best-effort.
"""

import logging
import threading
from queue import Empty, Full, Queue
from typing import Optional

from .interfaces import Broadcaster


logger = logging.getLogger(__name__)


DEFAULT_OUTBOX_SIZE = 1000
POLL_TIMEOUT_SECONDS = 0.2


class BroadcastOutbox:
    """
    Non-blocking Broadcaster in front of a (possibly slow) real one.

    broadcast() never waits. Messages queued while the outbox is stopped
    stay queued until start() or flush().
    """

    def __init__(self, broadcaster: Broadcaster, maxsize: int = DEFAULT_OUTBOX_SIZE):
        if maxsize < 1:
            raise ValueError(f"maxsize must be >= 1, got {maxsize}")

        self.broadcaster = broadcaster
        self._queue: "Queue[tuple[str, dict]]" = Queue(maxsize=maxsize)
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self.dropped = 0
        self.delivered = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def broadcast(self, channel: str, payload: dict) -> None:
        try:
            self._queue.put_nowait((channel, payload))
        except Full:
            self.dropped += 1
            logger.warning(
                f"Broadcast outbox full, dropped '{channel}' message ({self.dropped} dropped)"
            )

    # =========================================================================
    # Delivery
    # =========================================================================

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("Broadcast outbox already started")

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._deliver_loop, name="jobqueue-broadcast", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float = 30.0) -> None:
        """Stop the delivery thread after it sends what is already queued."""
        if self._thread is None:
            return

        self._stop_event.set()
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning(
                f"Broadcast outbox did not stop within timeout ({self.pending} queued)"
            )
        self._thread = None

    def flush(self) -> int:
        """Deliver every queued message in the calling thread."""
        sent = 0
        while True:
            try:
                channel, payload = self._queue.get_nowait()
            except Empty:
                return sent
            self._deliver(channel, payload)
            sent += 1

    def _deliver_loop(self) -> None:
        logger.info("Broadcast outbox started")

        while not self._stop_event.is_set():
            try:
                channel, payload = self._queue.get(timeout=POLL_TIMEOUT_SECONDS)
            except Empty:
                continue
            self._deliver(channel, payload)

        self.flush()
        logger.info(f"Broadcast outbox stopped ({self.delivered} delivered, {self.dropped} dropped)")

    def _deliver(self, channel: str, payload: dict) -> None:
        try:
            self.broadcaster.broadcast(channel, payload)
            self.delivered += 1
        except Exception as e:
            logger.warning(f"Broadcast on '{channel}' failed: {e}")
