"""
Periodic loop driver.

Each engine loop (dispatcher poll, scheduler, retry check, metrics broadcast)
is one PeriodicTask calling its component's tick function on a fixed
interval. The tick functions themselves are plain methods, so tests call them
directly against a virtual clock instead of running the thread.
"""

import logging
import threading
from enum import Enum
from typing import Any, Callable, Optional


logger = logging.getLogger(__name__)


class TaskState(str, Enum):
    """Loop lifecycle states."""

    STOPPED = "STOPPED"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"


class PeriodicTask:
    """
    Runs tick() every `interval` seconds on a daemon thread.

    An exception from tick() is logged and the loop waits for the next
    interval; it never ends the loop.
    """

    def __init__(self, name: str, interval: float, tick: Callable[[], Any]):
        if interval <= 0:
            raise ValueError(f"Interval for {name} must be positive, got {interval}")

        self.name = name
        self.interval = interval
        self._tick = tick
        self._state = TaskState.STOPPED
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self.ticks = 0

    @property
    def state(self) -> TaskState:
        return self._state

    def is_running(self) -> bool:
        return self._state == TaskState.RUNNING

    def start(self, blocking: bool = False) -> None:
        """
        Start the loop.

        Args:
            blocking: If True, run in current thread. If False, run in background.
        """
        if self._state != TaskState.STOPPED:
            raise RuntimeError(f"Cannot start {self.name} in {self._state.value} state")

        self._stop_event.clear()
        self._state = TaskState.RUNNING

        if blocking:
            self._loop()
        else:
            self._thread = threading.Thread(
                target=self._loop, name=f"jobqueue-{self.name}", daemon=True
            )
            self._thread.start()

    def stop(self, timeout: float = 30.0) -> None:
        """Stop the loop, waiting for an in-progress tick to finish."""
        if self._state == TaskState.STOPPED:
            return

        self._state = TaskState.STOPPING
        self._stop_event.set()

        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning(f"{self.name} loop did not stop within timeout")
            self._thread = None

        self._state = TaskState.STOPPED
        logger.info(f"{self.name} loop stopped")

    def run_once(self) -> Any:
        """Run a single tick in the calling thread."""
        self.ticks += 1
        return self._tick()

    def _loop(self) -> None:
        logger.info(f"{self.name} loop started (interval={self.interval}s)")

        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Error in {self.name} loop: {e}", exc_info=True)
            self._stop_event.wait(self.interval)

        logger.info(f"{self.name} loop ended")
