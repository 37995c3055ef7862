import logging
import threading
from typing import Any, Dict, Optional

from ..errors.classifier import ExceptionClassifier
from ..monitoring.metrics import MetricsCollector
from ..pipeline.queue import ChangeEventQueue

class ErrorHandler:
    """Decides retry vs. stop for failures escaping the capture loop."""

    def __init__(self, queue: ChangeEventQueue, metrics: Optional[MetricsCollector] = None,
                 classifier: Optional[ExceptionClassifier] = None):
        self.queue = queue
        self.metrics = metrics
        self.classifier = classifier or ExceptionClassifier()
        self.logger = logging.getLogger(self.__class__.__name__)
        self._lock = threading.Lock()
        self._producer_error: Optional[BaseException] = None

    def is_retriable(self, error: Optional[BaseException]) -> bool:
        if error is None:
            return False
        return self.classifier.is_classified(error)

    def handle(self, error: BaseException, context: Dict[str, Any] = None) -> bool:
        """Classify ``error``. Returns True if the caller should retry.

        On a fatal classification the queue is notified so the dispatcher
        stops waiting on this producer; the caller must then re-raise.
        """
        error_type = type(error).__name__

        if self.is_retriable(error):
            self.logger.warning(f"Transient failure {error_type}: {error} (context: {context or {}})")
            if self.metrics:
                self.metrics.increment('error_handler.retriable', tags={'type': error_type})
            return True

        self.logger.error(f"Fatal failure {error_type}: {error} (context: {context or {}})")
        if self.metrics:
            self.metrics.increment('error_handler.fatal', tags={'type': error_type})
        self.notify_fatal(error)
        return False

    def notify_fatal(self, error: BaseException) -> None:
        with self._lock:
            if self._producer_error is None:
                self._producer_error = error
        self.queue.notify_fatal_error(error)

    @property
    def producer_error(self) -> Optional[BaseException]:
        return self._producer_error
