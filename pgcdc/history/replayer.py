import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from ..core.exceptions import SchemaHistoryException, SchemaHistoryParseException
from ..monitoring.metrics import SchemaHistoryMetrics
from ..schemas.ddl_parser import DdlParser
from ..schemas.model import SchemaModel, TableChange
from .comparator import HistoryRecordComparator
from .record import HistoryRecord, PartitionKey, ResumePosition
from .store import SchemaHistoryStore

APPLY = 'apply'
SKIP = 'skip'
STOP = 'stop'

@dataclass
class ReplayResult:
    recovered: int = 0
    applied: int = 0
    skipped: int = 0
    unparseable: int = 0
    stopped_at: Optional[Dict[str, Any]] = None
    closed_partitions: List[PartitionKey] = field(default_factory=list)

class SchemaHistoryReplayer:
    """Rebuilds the schema model from the history log on startup.

    Every record at or before the resume position of its partition is
    applied, in log order. The log is monotonic per partition, so the first
    record past the cutoff ends recovery for that partition; in
    single-partition mode it ends recovery altogether.
    """

    def __init__(self, skip_unparseable: bool = False, multi_partition_mode: bool = False,
                 ddl_parser: Optional[DdlParser] = None, metrics: Optional[SchemaHistoryMetrics] = None,
                 use_catalog_before_schema: bool = False):
        self.skip_unparseable = skip_unparseable
        self.multi_partition_mode = multi_partition_mode
        self.use_catalog_before_schema = use_catalog_before_schema
        self.ddl_parser = ddl_parser or DdlParser(use_catalog_before_schema)
        self.metrics = metrics
        self.logger = logging.getLogger(self.__class__.__name__)
        self.last_result: Optional[ReplayResult] = None

    @classmethod
    def for_store(cls, store: SchemaHistoryStore, multi_partition_mode: bool = False) -> 'SchemaHistoryReplayer':
        return cls(
            skip_unparseable=store.skip_unparseable_ddl,
            multi_partition_mode=multi_partition_mode,
            metrics=store.metrics,
            use_catalog_before_schema=store.use_catalog_before_schema,
        )

    def replay(self, store: SchemaHistoryStore, comparator: HistoryRecordComparator,
               resume_position: ResumePosition, schema: Optional[SchemaModel] = None) -> SchemaModel:
        schema = schema if schema is not None else SchemaModel()
        result = ReplayResult()
        closed: Set[PartitionKey] = set()
        started = time.monotonic()

        self.logger.info(f"Recovering schema history from {type(store).__name__} up to {resume_position}")

        try:
            documents = store.read()
            for document in documents:
                result.recovered += 1
                if self.metrics:
                    self.metrics.record_recovered()

                record = self._parse(document, result)
                if record is None:
                    continue

                decision = self._decide(record, comparator, resume_position, closed)
                if decision == STOP:
                    self._skipped(result)
                    result.stopped_at = record.position
                    self.logger.info(f"Stopping recovery at {record.position}, beyond the resume position")
                    break
                if decision == SKIP:
                    self._skipped(result)
                    continue

                self._apply(record, schema, result)
        except SchemaHistoryException:
            raise
        except Exception as e:
            raise SchemaHistoryException(
                f"Failed to recover schema history: {e}",
                error_code="HISTORY_RECOVERY_ERROR",
                cause=e
            )

        result.closed_partitions = sorted(closed)
        self.last_result = result
        if self.metrics:
            self.metrics.recovery_finished(time.monotonic() - started)

        if result.recovered and not result.applied and not resume_position.is_empty():
            self.logger.warning("Schema history exists but no record falls at or before the resume position")
        self.logger.info(
            f"Recovered {len(schema)} tables from {result.recovered} history records "
            f"(applied={result.applied}, skipped={result.skipped}, unparseable={result.unparseable})"
        )
        return schema

    def _parse(self, document: Any, result: ReplayResult) -> Optional[HistoryRecord]:
        try:
            if isinstance(document, (str, bytes)):
                return HistoryRecord.from_json(document)
            return HistoryRecord.from_dict(document)
        except SchemaHistoryParseException as e:
            self._unparseable(e, result)
            return None

    def _decide(self, record: HistoryRecord, comparator: HistoryRecordComparator,
                resume_position: ResumePosition, closed: Set[PartitionKey]) -> str:
        if resume_position.offset_for(record.partition) is None:
            self.logger.debug(f"History record for partition {record.partition} has no committed offset")
            return SKIP if self.multi_partition_mode else STOP

        at_or_before = comparator.is_at_or_before(record, resume_position)
        key = record.partition_key

        if key in closed:
            if at_or_before:
                raise SchemaHistoryException(
                    f"Schema history is not ordered: record at {record.position} follows a record "
                    f"beyond the resume position of partition {record.partition}",
                    error_code="HISTORY_OUT_OF_ORDER",
                    details={'partition': record.partition, 'position': record.position}
                )
            return SKIP

        if at_or_before:
            return APPLY

        if not self.multi_partition_mode:
            return STOP

        self.logger.info(f"History record at {record.position} is newer than the resume position of "
                         f"{record.partition}; closing recovery for that partition")
        closed.add(key)
        return SKIP

    def _apply(self, record: HistoryRecord, schema: SchemaModel, result: ReplayResult):
        try:
            if record.table_changes:
                changes = [TableChange.from_dict(change, self.use_catalog_before_schema)
                           for change in record.table_changes]
            else:
                changes = self.ddl_parser.parse(record.ddl, schema, record.database_name, record.schema_name)
        except SchemaHistoryParseException as e:
            self._unparseable(e, result, record)
            return

        for change in changes:
            schema.apply(change)
        result.applied += 1
        if self.metrics:
            self.metrics.record_applied()
        self.logger.debug(f"Applied {len(changes)} table changes recorded at {record.position}")

    def _skipped(self, result: ReplayResult):
        result.skipped += 1
        if self.metrics:
            self.metrics.record_skipped()

    def _unparseable(self, error: SchemaHistoryParseException, result: ReplayResult,
                     record: Optional[HistoryRecord] = None):
        result.unparseable += 1
        if self.metrics:
            self.metrics.record_unparseable()

        position = record.position if record else None
        if not self.skip_unparseable:
            self.logger.error(f"Unparseable schema history record at {position}: {error}")
            raise error
        self.logger.warning(f"Skipping unparseable schema history record at {position}: {error}")
