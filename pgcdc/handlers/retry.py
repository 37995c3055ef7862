import logging
import threading
from typing import Any, Callable, Dict, Optional

from ..core.exceptions import ConfigurationException, RetriesExhaustedException
from ..monitoring.metrics import MetricsCollector
from .error_handler import ErrorHandler

class RetryPolicy:
    """Blocking reconnect-and-resume loop for the capture session.

    Every attempt is expected to open its own source connection and resume
    from the last acknowledged position; nothing survives between attempts.
    """

    def __init__(self, config: Dict[str, Any], error_handler: ErrorHandler,
                 shutdown_event: Optional[threading.Event] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.error_handler = error_handler
        self.metrics = metrics
        self.logger = logging.getLogger(self.__class__.__name__)
        self._shutdown_event = shutdown_event or threading.Event()

        self.max_retries = config.get('max_retries', 3)
        self.backoff_ms = config.get('backoff_ms', 1000)
        self.max_backoff_ms = config.get('max_backoff_ms', 30000)
        self.multiplier = config.get('multiplier', 2)

        if self.backoff_ms < 0 or self.max_backoff_ms < self.backoff_ms:
            raise ConfigurationException(
                "Invalid retry backoff configuration",
                error_code="INVALID_RETRY_CONFIG",
                details={'backoff_ms': self.backoff_ms, 'max_backoff_ms': self.max_backoff_ms}
            )

    def backoff_for(self, attempt: int) -> float:
        """Delay in seconds before retry number ``attempt`` (1-based)."""
        delay_ms = self.backoff_ms * (self.multiplier ** (attempt - 1))
        return min(delay_ms, self.max_backoff_ms) / 1000.0

    def execute(self, attempt_fn: Callable[[], Any]) -> bool:
        """Run ``attempt_fn`` until it returns, fails fatally or retries run out.

        Returns True when an attempt completed and False when shutdown was
        requested while waiting to retry.
        """
        retries = 0

        while True:
            try:
                attempt_fn()
                return True
            except Exception as e:
                if self._shutdown_event.is_set():
                    self.logger.info(f"Ignoring {type(e).__name__} raised during shutdown: {e}")
                    return False

                if not self.error_handler.handle(e, context={'attempt': retries + 1}):
                    raise

                retries += 1
                if self.metrics:
                    self.metrics.increment('retry.attempts')

                if 0 <= self.max_retries < retries:
                    exhausted = RetriesExhaustedException(
                        f"Giving up after {self.max_retries} retries: {e}",
                        error_code="RETRIES_EXHAUSTED",
                        details={'max_retries': self.max_retries},
                        cause=e
                    )
                    self.error_handler.notify_fatal(exhausted)
                    raise exhausted

                delay = self.backoff_for(retries)
                self.logger.warning(f"Retry {retries}/{self.max_retries} in {delay:.2f}s after {type(e).__name__}")

                if self._shutdown_event.wait(delay):
                    self.logger.info("Shutdown requested while waiting to retry")
                    return False
