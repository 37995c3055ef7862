import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from kafka import KafkaConsumer, KafkaProducer, TopicPartition
from kafka.errors import KafkaError

from ..config.configuration import Configuration
from ..core.exceptions import ConfigurationException, SchemaHistoryException
from ..monitoring.metrics import SchemaHistoryMetrics
from .comparator import HistoryRecordComparator
from .record import HistoryRecord

CONFIGURATION_FIELD_PREFIX = 'database.history.'
NAME = 'database.history.name'
INTERNAL_CONNECTOR_CLASS = 'database.history.connector.class'
INTERNAL_CONNECTOR_ID = 'database.history.connector.id'
SKIP_UNPARSEABLE_DDL_STATEMENTS = 'database.history.skip.unparseable.ddl'
STORE_ONLY_CAPTURED_TABLES_DDL = 'database.history.store.only.captured.tables.ddl'


class SchemaHistoryStore(ABC):
    """Durable, ordered log of schema change records.

    Records are read back in append order. How a record is serialised is up
    to the implementation; ``read`` yields raw documents so that malformed
    entries surface to the replayer instead of being dropped here.
    """

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)
        self.config: Optional[Configuration] = None
        self.comparator: Optional[HistoryRecordComparator] = None
        self.metrics: Optional[SchemaHistoryMetrics] = None
        self.use_catalog_before_schema = False
        self.skip_unparseable_ddl = False
        self.store_only_captured_tables_ddl = False

    def configure(self, config: Configuration, comparator: HistoryRecordComparator,
                  metrics: Optional[SchemaHistoryMetrics] = None, use_catalog_before_schema: bool = False) -> None:
        self.config = config
        self.comparator = comparator
        self.metrics = metrics
        self.use_catalog_before_schema = use_catalog_before_schema
        self.skip_unparseable_ddl = config.get_bool(SKIP_UNPARSEABLE_DDL_STATEMENTS, False)
        self.store_only_captured_tables_ddl = config.get_bool(STORE_ONLY_CAPTURED_TABLES_DDL, False)

        if not config.get(NAME):
            raise ConfigurationException(
                f"Schema history requires '{NAME}'",
                error_code="MISSING_FIELD",
                details={'field': NAME}
            )
        self.validate(config)

    def validate(self, config: Configuration) -> None:
        pass

    @property
    def name(self) -> Optional[str]:
        return self.config.get(NAME) if self.config else None

    def start(self) -> None:
        pass

    def stop(self) -> None:
        pass

    @abstractmethod
    def exists(self) -> bool:
        pass

    @abstractmethod
    def read(self) -> Iterator[Any]:
        pass

    def append(self, record: HistoryRecord) -> None:
        self.store_record(record)
        if self.metrics:
            self.metrics.record_appended()
        self.logger.debug(f"Appended schema change at {record.position}")

    @abstractmethod
    def store_record(self, record: HistoryRecord) -> None:
        pass


class MemorySchemaHistoryStore(SchemaHistoryStore):
    def __init__(self, documents: Optional[List[Any]] = None):
        super().__init__()
        self._documents = list(documents or [])
        self._lock = threading.Lock()

    def exists(self) -> bool:
        return bool(self._documents)

    def read(self) -> Iterator[Any]:
        with self._lock:
            documents = list(self._documents)
        return iter(documents)

    def store_record(self, record: HistoryRecord) -> None:
        with self._lock:
            self._documents.append(record.to_dict())


class FileSchemaHistoryStore(SchemaHistoryStore):
    """One JSON document per line, appended and fsynced in order."""

    FILE_PATH = 'database.history.file.filename'

    def __init__(self):
        super().__init__()
        self.path: Optional[Path] = None
        self._lock = threading.Lock()

    def validate(self, config: Configuration) -> None:
        filename = config.get(self.FILE_PATH)
        if not filename:
            raise ConfigurationException(
                f"File schema history requires '{self.FILE_PATH}'",
                error_code="MISSING_FIELD",
                details={'field': self.FILE_PATH}
            )
        self.path = Path(filename)

    def start(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def exists(self) -> bool:
        return self.path is not None and self.path.exists() and self.path.stat().st_size > 0

    def read(self) -> Iterator[Any]:
        if not self.exists():
            return
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                for line_number, line in enumerate(f, start=1):
                    if not line.strip():
                        continue
                    try:
                        yield json.loads(line)
                    except ValueError:
                        self.logger.warning(f"Unreadable JSON at {self.path}:{line_number}")
                        yield line
        except OSError as e:
            raise SchemaHistoryException(
                f"Failed to read schema history file {self.path}: {e}",
                error_code="HISTORY_READ_ERROR",
                cause=e
            )

    def store_record(self, record: HistoryRecord) -> None:
        with self._lock:
            try:
                with open(self.path, 'a', encoding='utf-8') as f:
                    f.write(record.to_json() + '\n')
                    f.flush()
                    os.fsync(f.fileno())
            except OSError as e:
                raise SchemaHistoryException(
                    f"Failed to append to schema history file {self.path}: {e}",
                    error_code="HISTORY_WRITE_ERROR",
                    cause=e
                )


class KafkaSchemaHistoryStore(SchemaHistoryStore):
    """Schema history kept in a single-partition, infinitely retained topic."""

    TOPIC = 'database.history.kafka.topic'
    BOOTSTRAP_SERVERS = 'database.history.kafka.bootstrap.servers'
    RECOVERY_POLL_INTERVAL_MS = 'database.history.kafka.recovery.poll.interval.ms'
    RECOVERY_ATTEMPTS = 'database.history.kafka.recovery.attempts'

    PARTITION = 0

    def __init__(self):
        super().__init__()
        self.producer: Optional[KafkaProducer] = None

    def validate(self, config: Configuration) -> None:
        missing = [field for field in (self.TOPIC, self.BOOTSTRAP_SERVERS) if not config.get(field)]
        if missing:
            raise ConfigurationException(
                f"Kafka schema history requires {', '.join(missing)}",
                error_code="MISSING_FIELD",
                details={'fields': missing}
            )

    @property
    def topic(self) -> str:
        return self.config.get(self.TOPIC)

    def _bootstrap_servers(self) -> List[str]:
        return [server.strip() for server in self.config.get(self.BOOTSTRAP_SERVERS).split(',')]

    def _create_consumer(self) -> KafkaConsumer:
        return KafkaConsumer(
            bootstrap_servers=self._bootstrap_servers(),
            client_id=f"{self.name}-consumer",
            group_id=None,
            enable_auto_commit=False,
            auto_offset_reset='earliest',
        )

    def start(self) -> None:
        try:
            self.producer = KafkaProducer(
                bootstrap_servers=self._bootstrap_servers(),
                client_id=f"{self.name}-producer",
                acks='all',
                retries=1,
                max_in_flight_requests_per_connection=1,
                value_serializer=lambda document: json.dumps(document, sort_keys=True).encode('utf-8'),
            )
        except KafkaError as e:
            raise SchemaHistoryException(f"Failed to start schema history producer: {e}",
                                         error_code="HISTORY_START_ERROR", cause=e)

    def stop(self) -> None:
        if self.producer:
            try:
                self.producer.close()
            except KafkaError as e:
                self.logger.error(f"Error closing schema history producer: {e}")
            self.producer = None

    def exists(self) -> bool:
        consumer = self._create_consumer()
        try:
            partitions = consumer.partitions_for_topic(self.topic)
            if not partitions:
                return False
            partition = TopicPartition(self.topic, self.PARTITION)
            return consumer.end_offsets([partition])[partition] > 0
        finally:
            consumer.close()

    def read(self) -> Iterator[Any]:
        consumer = self._create_consumer()
        partition = TopicPartition(self.topic, self.PARTITION)
        poll_interval = self.config.get_int(self.RECOVERY_POLL_INTERVAL_MS, 100)
        max_empty_polls = self.config.get_int(self.RECOVERY_ATTEMPTS, 100)

        try:
            consumer.assign([partition])
            consumer.seek_to_beginning(partition)
            end_offset = consumer.end_offsets([partition])[partition]
            empty_polls = 0

            while consumer.position(partition) < end_offset:
                batch = consumer.poll(timeout_ms=poll_interval).get(partition, [])
                if not batch:
                    empty_polls += 1
                    if empty_polls > max_empty_polls:
                        raise SchemaHistoryException(
                            f"Schema history topic {self.topic} stopped returning records before offset {end_offset}",
                            error_code="HISTORY_INCOMPLETE",
                            details={'position': consumer.position(partition), 'end_offset': end_offset}
                        )
                    continue
                empty_polls = 0
                for message in batch:
                    if message.offset >= end_offset:
                        break
                    try:
                        yield json.loads(message.value.decode('utf-8'))
                    except (UnicodeDecodeError, ValueError):
                        self.logger.warning(f"Unreadable schema history message at offset {message.offset}")
                        yield message.value
        except KafkaError as e:
            raise SchemaHistoryException(f"Failed to read schema history topic {self.topic}: {e}",
                                         error_code="HISTORY_READ_ERROR", cause=e)
        finally:
            consumer.close()

    def store_record(self, record: HistoryRecord) -> None:
        if self.producer is None:
            raise SchemaHistoryException("Schema history producer is not started", error_code="HISTORY_NOT_STARTED")
        try:
            self.producer.send(self.topic, value=record.to_dict(), partition=self.PARTITION).get(timeout=30)
        except KafkaError as e:
            raise SchemaHistoryException(f"Failed to append to schema history topic {self.topic}: {e}",
                                         error_code="HISTORY_WRITE_ERROR", cause=e)
