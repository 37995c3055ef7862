import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

from ..core.exceptions import ConfigurationException
from ..history import store as history
from ..history.comparator import HistoryRecordComparator, LsnHistoryRecordComparator
from ..history.store import SchemaHistoryStore
from ..monitoring.metrics import MetricsCollector, SchemaHistoryMetrics
from .configuration import Configuration

NAME = 'name'
DATABASE_HISTORY = 'database.history'
MULTI_PARTITION_MODE = 'multi.partition.mode'
TABLE_INCLUDE_LIST = 'table.include.list'
RETRIABLE_PATTERNS = 'errors.retriable.patterns'

DEFAULT_DATABASE_HISTORY = 'pgcdc.history.store.KafkaSchemaHistoryStore'


@dataclass(frozen=True)
class ConnectorIdentity:
    logical_name: str
    connector_class: str
    multi_partition_mode: bool


class HistorizedConnectorConfig(ABC):
    """Settings shared by connectors that keep a persistent schema history."""

    def __init__(self, config: Configuration, connector_class: type,
                 use_catalog_before_schema: bool = False, multi_partition_mode: Optional[bool] = None):
        self.logger = logging.getLogger(self.__class__.__name__)
        self._config = config
        self.logical_name = config.get_string(NAME)
        if not self.logical_name:
            raise ConfigurationException(
                f"Required configuration field missing: {NAME}",
                error_code="MISSING_FIELD",
                details={'field': NAME}
            )
        self.connector_class = connector_class
        self.use_catalog_before_schema = use_catalog_before_schema
        if multi_partition_mode is None:
            multi_partition_mode = config.get_bool(MULTI_PARTITION_MODE, False)
        self.multi_partition_mode = multi_partition_mode
        self._table_patterns = [re.compile(pattern.strip()) for pattern in
                                (config.get_string(TABLE_INCLUDE_LIST) or '').split(',') if pattern.strip()]

    @property
    def config(self) -> Configuration:
        return self._config

    @property
    def identity(self) -> ConnectorIdentity:
        return ConnectorIdentity(
            logical_name=self.logical_name,
            connector_class=f"{self.connector_class.__module__}.{self.connector_class.__qualname__}",
            multi_partition_mode=self.multi_partition_mode,
        )

    @property
    def skip_unparseable_ddl(self) -> bool:
        return self._config.get_bool(history.SKIP_UNPARSEABLE_DDL_STATEMENTS, False)

    @property
    def store_only_captured_tables_ddl(self) -> bool:
        return self._config.get_bool(history.STORE_ONLY_CAPTURED_TABLES_DDL, False)

    @property
    def retriable_patterns(self) -> List[str]:
        patterns = self._config.get(RETRIABLE_PATTERNS) or []
        if isinstance(patterns, str):
            patterns = [pattern for pattern in patterns.split(',') if pattern.strip()]
        return list(patterns)

    def is_table_captured(self, table_id) -> bool:
        if not self._table_patterns:
            return True
        return any(pattern.fullmatch(str(table_id)) for pattern in self._table_patterns)

    def get_schema_history(self, metrics: Optional[MetricsCollector] = None) -> SchemaHistoryStore:
        """Returns a configured (but not yet started) schema history store."""
        store = self._config.get_instance(DATABASE_HISTORY, SchemaHistoryStore, DEFAULT_DATABASE_HISTORY)

        # The subset keeps its prefix; store settings are looked up by full key.
        history_config = self._config.subset(history.CONFIGURATION_FIELD_PREFIX, remove_prefix=False).with_defaults({
            history.NAME: f"{self.logical_name}-dbhistory",
            history.INTERNAL_CONNECTOR_CLASS: self.identity.connector_class,
            history.INTERNAL_CONNECTOR_ID: self.logical_name,
        })

        history_metrics = SchemaHistoryMetrics(metrics or MetricsCollector(), self.logical_name,
                                               self.multi_partition_mode)
        store.configure(history_config, self.get_history_record_comparator(), history_metrics,
                        self.use_catalog_before_schema)
        self.logger.info(f"Configured schema history {type(store).__name__} '{history_config.get(history.NAME)}'")
        return store

    @abstractmethod
    def get_history_record_comparator(self) -> HistoryRecordComparator:
        """Comparator that keeps history entries newer than the resumed offset out of recovery."""


class PostgresConnectorConfig(HistorizedConnectorConfig):
    HOSTNAME = 'database.hostname'
    PORT = 'database.port'
    USER = 'database.user'
    PASSWORD = 'database.password'
    DBNAME = 'database.dbname'
    SLOT_NAME = 'slot.name'
    PLUGIN_NAME = 'plugin.name'
    STATUS_INTERVAL_MS = 'status.update.interval.ms'

    def __init__(self, config: Configuration, connector_class: Optional[type] = None,
                 multi_partition_mode: Optional[bool] = None):
        if connector_class is None:
            from ..handlers.connector_task import ConnectorTask
            connector_class = ConnectorTask
        super().__init__(config, connector_class, use_catalog_before_schema=False,
                         multi_partition_mode=multi_partition_mode)

    def get_history_record_comparator(self) -> HistoryRecordComparator:
        return LsnHistoryRecordComparator()

    @property
    def partition(self) -> dict:
        if self.multi_partition_mode:
            return {'server': self.logical_name, 'database': self._config.get_string(self.DBNAME)}
        return {'server': self.logical_name}

    def connection_params(self) -> dict:
        return {
            'host': self._config.get_string(self.HOSTNAME, 'localhost'),
            'port': self._config.get_int(self.PORT, 5432),
            'user': self._config.get_string(self.USER),
            'password': self._config.get_string(self.PASSWORD),
            'dbname': self._config.get_string(self.DBNAME),
        }

    @property
    def slot_name(self) -> str:
        return self._config.get_string(self.SLOT_NAME, 'pgcdc')

    @property
    def plugin_name(self) -> str:
        return self._config.get_string(self.PLUGIN_NAME, 'wal2json')

    @property
    def status_interval(self) -> float:
        return self._config.get_int(self.STATUS_INTERVAL_MS, 10000) / 1000.0
