import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

from ..history.comparator import HistoryRecordComparator, LsnHistoryRecordComparator
from ..history.record import Lsn
from ..history.store import SchemaHistoryStore
from ..monitoring.metrics import MetricsCollector
from ..pipeline.queue import ChangeEventQueue
from ..schemas.model import SchemaModel
from ..source.replication_client import PostgresReplicationClient
from ..source.wal2json_decoder import ChangeEvent, SchemaChange, Wal2JsonDecoder

class OffsetContext:
    """Last offset acknowledged by the dispatcher, shared with the capture thread."""

    def __init__(self, offset: Optional[Dict[str, Any]] = None):
        self._lock = threading.Lock()
        self._offset = dict(offset) if offset else None

    def acknowledge(self, offset: Dict[str, Any]) -> None:
        with self._lock:
            self._offset = dict(offset)

    @property
    def offset(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            return dict(self._offset) if self._offset else None

    @property
    def restart_lsn(self) -> Optional[Lsn]:
        """Commit LSN of the acknowledged transaction.

        Replication restarts there, so a partially acknowledged transaction is
        delivered again in full.
        """
        offset = self.offset
        if not offset:
            return None
        return Lsn.parse(offset.get('lsn_commit', offset['lsn']))


class StreamingChangeEventSource:
    """Capture loop: reads the slot, keeps the schema model current, enqueues events.

    ``execute`` is one session. It opens a fresh connection, restarts at the
    acknowledged transaction and drops whatever the slot re-delivers at or
    before the acknowledged offset, schema changes included.
    """

    def __init__(self, client_factory: Callable[[], PostgresReplicationClient], decoder: Wal2JsonDecoder,
                 schema: SchemaModel, history_store: SchemaHistoryStore, queue: ChangeEventQueue,
                 offset_context: OffsetContext, shutdown_event: threading.Event,
                 is_table_captured: Callable[[Any], bool] = lambda table_id: True,
                 store_only_captured_tables_ddl: bool = False,
                 comparator: Optional[HistoryRecordComparator] = None,
                 metrics: Optional[MetricsCollector] = None, read_timeout: float = 1.0,
                 feedback_interval: float = 10.0):
        self.client_factory = client_factory
        self.decoder = decoder
        self.schema = schema
        self.history_store = history_store
        self.queue = queue
        self.offset_context = offset_context
        self.shutdown_event = shutdown_event
        self.is_table_captured = is_table_captured
        self.store_only_captured_tables_ddl = store_only_captured_tables_ddl
        self.comparator = comparator or LsnHistoryRecordComparator()
        self.metrics = metrics
        self.read_timeout = read_timeout
        self.feedback_interval = feedback_interval
        self.logger = logging.getLogger(self.__class__.__name__)

    def execute(self) -> None:
        client = self.client_factory()
        acknowledged = self.offset_context.offset
        self.decoder.reset()
        try:
            client.connect()
            client.ensure_slot()
            client.start(self.offset_context.restart_lsn)
            if self.metrics:
                self.metrics.increment('streaming.sessions')

            last_feedback = time.monotonic()
            while not self.shutdown_event.is_set():
                message = client.read_message(self.read_timeout)
                if message is not None and not self._handle(message, acknowledged):
                    return

                if time.monotonic() - last_feedback >= self.feedback_interval:
                    client.send_feedback(self.offset_context.restart_lsn)
                    last_feedback = time.monotonic()
        finally:
            client.close()

    def _handle(self, message, acknowledged: Optional[Dict[str, Any]]) -> bool:
        for item in self.decoder.decode(message, self.schema):
            position = item.record.position if isinstance(item, SchemaChange) else item.offset
            if acknowledged is not None and self.comparator.is_position_at_or_before(position, acknowledged):
                self.logger.debug(f"Skipping already acknowledged {type(item).__name__} at {position}")
                continue

            if isinstance(item, SchemaChange):
                self._record_schema_change(item)
                continue
            if not self.is_table_captured(item.table_id):
                continue
            if not self.enqueue(item):
                return False
        return True

    def _record_schema_change(self, change: SchemaChange) -> None:
        captured = any(self.is_table_captured(table_id) for table_id in change.table_ids)
        if captured or not self.store_only_captured_tables_ddl:
            self.history_store.append(change.record)
        for table_change in change.changes:
            self.schema.apply(table_change)
        self.logger.info(f"Schema change for {', '.join(str(t) for t in change.table_ids)} at {change.record.position}")

    def enqueue(self, event: ChangeEvent) -> bool:
        enqueued = self.queue.enqueue(event)
        if enqueued and self.metrics:
            self.metrics.increment('streaming.events_enqueued')
        return enqueued
