import logging
from abc import ABC, abstractmethod
from typing import Dict, Any, Optional, Sequence

class BaseComponent(ABC):
    """A long-lived component with an explicit start/stop lifecycle."""

    def __init__(self, config: Dict[str, Any], logger: Optional[logging.Logger] = None):
        self.config = config
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self._running = False

    @abstractmethod
    def start(self) -> None:
        pass

    @abstractmethod
    def stop(self) -> None:
        pass

    @abstractmethod
    def health_check(self) -> Dict[str, Any]:
        pass

    def is_running(self) -> bool:
        return self._running

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()

class EventSink(BaseComponent):
    """Destination for captured change events.

    ``write_batch`` returns only once every event in the batch is durably
    accepted; the caller commits the batch's offset afterwards.
    """

    @abstractmethod
    def write_batch(self, events: Sequence[Any]) -> int:
        pass
