import logging
import threading
from typing import Any, Callable, Dict, Optional

from ..config.configuration import Configuration
from ..config.connector_config import PostgresConnectorConfig
from ..core.base import EventSink
from ..core.exceptions import ConnectorException
from ..errors.classifier import ExceptionClassifier
from ..history.comparator import HistoryRecordComparator
from ..history.replayer import SchemaHistoryReplayer
from ..history.store import SchemaHistoryStore
from ..monitoring.metrics import HealthChecker, MetricsCollector
from ..offsets.offset_store import FileOffsetStore, MemoryOffsetStore, OffsetStore
from ..pipeline.queue import ChangeEventQueue
from ..schemas.model import SchemaModel
from ..source.replication_client import PostgresReplicationClient
from ..source.wal2json_decoder import Wal2JsonDecoder
from ..writers.kafka_writer import KafkaEventWriter
from .error_handler import ErrorHandler
from .retry import RetryPolicy
from .streaming import OffsetContext, StreamingChangeEventSource

class ConnectorTask:
    """One running connector instance.

    ``start`` recovers the schema model from the history store before any
    event is read, then runs the capture loop and the dispatcher on their own
    threads.
    """

    def __init__(self, config: Dict[str, Any], metrics: Optional[MetricsCollector] = None,
                 writer: Optional[EventSink] = None, offset_store: Optional[OffsetStore] = None,
                 client_factory: Optional[Callable[[], PostgresReplicationClient]] = None):
        self.config = config
        self.logger = logging.getLogger(self.__class__.__name__)
        self.metrics = metrics or MetricsCollector()
        self.health_checker = HealthChecker()

        self.connector_config = PostgresConnectorConfig(Configuration(config['connector']), type(self))
        self._shutdown_event = threading.Event()

        queue_config = config.get('queue', {})
        self.queue = ChangeEventQueue(
            max_size=queue_config.get('max_size', 1000),
            poll_interval=queue_config.get('poll_interval_ms', 500) / 1000.0,
            shutdown_event=self._shutdown_event,
        )
        self._batch_size = queue_config.get('max_batch_size', 100)

        self.error_handler = ErrorHandler(
            self.queue, self.metrics, ExceptionClassifier(self.connector_config.retriable_patterns)
        )
        self.retry_policy = RetryPolicy(config.get('retry', {}), self.error_handler, self._shutdown_event, self.metrics)

        self.writer = writer or KafkaEventWriter(config['kafka'], self.connector_config.logical_name, self.metrics)
        self.offset_store = offset_store or self._create_offset_store(config.get('offsets', {}))
        self.client_factory = client_factory or self._create_client

        self.history_store: Optional[SchemaHistoryStore] = None
        self.schema: Optional[SchemaModel] = None
        self.comparator: Optional[HistoryRecordComparator] = None
        self.offset_context = OffsetContext()
        self._producer_thread = None
        self._dispatcher_thread = None
        self._running = False
        self._stopped = False

    def _create_offset_store(self, offsets_config: Dict[str, Any]) -> OffsetStore:
        if offsets_config.get('file'):
            return FileOffsetStore(offsets_config['file'])
        self.logger.warning("No offsets file configured; committed offsets will not survive a restart")
        return MemoryOffsetStore()

    def _create_client(self) -> PostgresReplicationClient:
        return PostgresReplicationClient(
            self.connector_config.connection_params(),
            self.connector_config.slot_name,
            self.connector_config.plugin_name,
            status_interval=self.connector_config.status_interval,
        )

    def start(self) -> None:
        self.logger.info(f"Starting connector {self.connector_config.logical_name}")
        try:
            self.history_store = self.connector_config.get_schema_history(self.metrics)
            self.history_store.start()

            multi_partition = self.connector_config.multi_partition_mode
            resume_position = self.offset_store.load(single_partition=not multi_partition)
            self.offset_context = OffsetContext(resume_position.offset_for(self.connector_config.partition))

            self.comparator = self.connector_config.get_history_record_comparator()
            replayer = SchemaHistoryReplayer.for_store(self.history_store, multi_partition)
            self.schema = replayer.replay(self.history_store, self.comparator, resume_position)

            self.writer.start()
        except Exception:
            self.logger.error("Connector failed to start", exc_info=True)
            self._close_resources()
            raise

        self.health_checker.register_component('writer', self.writer)
        self._running = True

        source = StreamingChangeEventSource(
            client_factory=self.client_factory,
            decoder=Wal2JsonDecoder(self.connector_config.partition),
            schema=self.schema,
            history_store=self.history_store,
            queue=self.queue,
            offset_context=self.offset_context,
            shutdown_event=self._shutdown_event,
            is_table_captured=self.connector_config.is_table_captured,
            store_only_captured_tables_ddl=self.connector_config.store_only_captured_tables_ddl,
            comparator=self.comparator,
            metrics=self.metrics,
        )

        self._producer_thread = threading.Thread(target=self._produce, args=(source,), name="capture-thread")
        self._dispatcher_thread = threading.Thread(target=self._dispatch, name="dispatcher-thread")
        self._producer_thread.start()
        self._dispatcher_thread.start()
        self.logger.info(f"Connector {self.connector_config.logical_name} started")

    def _produce(self, source: StreamingChangeEventSource):
        try:
            self.retry_policy.execute(source.execute)
        except Exception as e:
            self.logger.error(f"Capture loop terminated: {e}")
        finally:
            self.logger.info("Capture thread exiting")

    def _dispatch(self):
        while not self._shutdown_event.is_set():
            try:
                batch = self.queue.poll(self._batch_size, timeout=1.0)
            except ConnectorException as e:
                self.logger.error(f"Dispatcher stopping: {e}")
                self._shutdown_event.set()
                break

            if not batch:
                continue

            try:
                with self.metrics.timer('dispatcher.batch_time'):
                    self.writer.write_batch(batch)
                last = batch[-1]
                self.offset_store.commit(last.partition, last.offset)
                self.offset_context.acknowledge(last.offset)
                self.metrics.increment('dispatcher.events_committed', len(batch))
            except Exception as e:
                self.logger.error(f"Failed to dispatch batch of {len(batch)} events: {e}")
                self.error_handler.notify_fatal(e)
                self._shutdown_event.set()
                break

    @property
    def failure(self) -> Optional[BaseException]:
        return self.error_handler.producer_error

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until both worker threads end; returns True if they did."""
        for thread in (self._producer_thread, self._dispatcher_thread):
            if thread is not None:
                thread.join(timeout)
        return not any(thread is not None and thread.is_alive()
                       for thread in (self._producer_thread, self._dispatcher_thread))

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self.logger.info("Stopping connector...")
        self._running = False
        self._shutdown_event.set()

        shutdown_timeout = self.config.get('processing', {}).get('shutdown_timeout', 30)
        self.wait(shutdown_timeout)
        self._close_resources()
        self.logger.info("Connector stopped")

    def _close_resources(self):
        self.writer.stop()
        if self.history_store is not None:
            self.history_store.stop()

    def get_status(self) -> Dict[str, Any]:
        return {
            'running': self._running and not self._shutdown_event.is_set(),
            'connector': self.connector_config.logical_name,
            'queue_size': self.queue.qsize(),
            'tables': [str(table_id) for table_id in self.schema.table_ids()] if self.schema else [],
            'offset': self.offset_context.offset,
            'failure': repr(self.failure) if self.failure else None,
            'health': self.health_checker.check_health(),
            'metrics': self.metrics.get_metrics(),
        }
