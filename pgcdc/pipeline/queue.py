import logging
import queue
import threading
import time
from typing import Any, List, Optional

from ..core.exceptions import ConnectorException

class ChangeEventQueue:
    """Bounded FIFO hand-off between the capture thread and the dispatcher.

    ``enqueue`` blocks while the queue is full. Both sides wake up on
    shutdown and when the producer reports a fatal error, so neither can
    hang on a peer that will never make progress again.
    """

    def __init__(self, max_size: int = 1000, poll_interval: float = 0.5,
                 shutdown_event: Optional[threading.Event] = None):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.logger = logging.getLogger(self.__class__.__name__)
        self._queue = queue.Queue(maxsize=max_size)
        self._poll_interval = poll_interval
        self._shutdown_event = shutdown_event or threading.Event()
        self._error_lock = threading.Lock()
        self._producer_error: Optional[BaseException] = None
        self._fatal_event = threading.Event()

    @property
    def max_size(self) -> int:
        return self._queue.maxsize

    def qsize(self) -> int:
        return self._queue.qsize()

    def enqueue(self, event: Any) -> bool:
        """Append ``event``; returns False if the queue was cancelled while waiting."""
        while True:
            self._raise_if_failed()
            if self._shutdown_event.is_set():
                return False
            try:
                self._queue.put(event, timeout=self._poll_interval)
                return True
            except queue.Full:
                self.logger.debug("Change event queue full, producer waiting")

    def poll(self, max_batch: int = 100, timeout: float = 1.0) -> List[Any]:
        """Return up to ``max_batch`` events in FIFO order.

        Blocks at most ``timeout`` seconds for the first event. Once a fatal
        error has been reported and nothing is left to drain, raises it
        wrapped in a ``ConnectorException``.
        """
        batch = []
        deadline = time.monotonic() + timeout

        while not batch:
            try:
                batch.append(self._queue.get(timeout=min(self._poll_interval, max(deadline - time.monotonic(), 0.001))))
            except queue.Empty:
                self._raise_if_failed()
                if self._shutdown_event.is_set() or time.monotonic() >= deadline:
                    return batch

        while len(batch) < max_batch:
            try:
                batch.append(self._queue.get_nowait())
            except queue.Empty:
                break

        return batch

    def notify_fatal_error(self, error: BaseException) -> None:
        with self._error_lock:
            if self._producer_error is None:
                self._producer_error = error
        self._fatal_event.set()
        self.logger.error(f"Producer failure reported to change event queue: {error}")

    @property
    def producer_error(self) -> Optional[BaseException]:
        return self._producer_error

    def _raise_if_failed(self):
        if self._fatal_event.is_set():
            raise ConnectorException(
                "An exception occurred in the change event producer. This connector will be stopped.",
                error_code="PRODUCER_FAILED",
                cause=self._producer_error
            )
