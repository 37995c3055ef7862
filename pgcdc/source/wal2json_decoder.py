import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Union

from ..core.exceptions import ConnectorException
from ..history.record import HistoryRecord, Lsn
from ..schemas.model import CHANGE_ALTER, CHANGE_CREATE, Column, SchemaModel, Table, TableChange, TableId
from ..schemas.type_mapper import TypeMapper
from .replication_client import ReplicationMessage

OPERATIONS = {'I': 'c', 'U': 'u', 'D': 'd', 'T': 't'}


@dataclass
class ChangeEvent:
    partition: Dict[str, Any]
    offset: Dict[str, Any]
    table_id: TableId
    op: str
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    key: Optional[Dict[str, Any]] = None
    source: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'op': self.op,
            'before': self.before,
            'after': self.after,
            'source': dict(self.source, schema=self.table_id.schema, table=self.table_id.table,
                           lsn=self.offset.get('lsn'), lsn_commit=self.offset.get('lsn_commit'),
                           txId=self.offset.get('txId')),
        }


@dataclass(frozen=True)
class SchemaChange:
    record: HistoryRecord
    changes: List[TableChange]

    @property
    def table_ids(self) -> List[TableId]:
        return [change.id for change in self.changes]


DecodedItem = Union[ChangeEvent, SchemaChange]


class Wal2JsonDecoder:
    """Decodes wal2json format-version 2 messages against the schema model.

    A row whose column layout differs from the model yields a
    ``SchemaChange`` ahead of the event, so the caller can record it in the
    schema history before the event is emitted.
    """

    def __init__(self, partition: Dict[str, Any], type_mapper: Optional[TypeMapper] = None):
        self.partition = dict(partition)
        self.type_mapper = type_mapper or TypeMapper()
        self.logger = logging.getLogger(self.__class__.__name__)
        self._tx_id = None
        self._commit_lsn: Optional[Lsn] = None

    def reset(self) -> None:
        """Forget the open transaction; a new session restarts at a transaction boundary."""
        self._tx_id = None
        self._commit_lsn = None

    def decode(self, message: ReplicationMessage, schema: SchemaModel) -> Iterator[DecodedItem]:
        try:
            document = json.loads(message.payload)
        except ValueError as e:
            raise ConnectorException(f"Undecodable replication message at {message.lsn}: {e}",
                                     error_code="DECODE_ERROR", cause=e)

        action = document.get('action')
        if action == 'B':
            self._begin(document, message)
            return
        if action == 'C':
            self.reset()
            return
        if action not in OPERATIONS:
            self.logger.debug(f"Ignoring wal2json action {action!r} at {message.lsn}")
            return

        table_id = TableId(None, document.get('schema'), document['table'])
        offset = self._offset(message.lsn)

        table = schema.table_for(table_id)
        if action in ('I', 'U'):
            observed = self._table_from_message(table_id, document, table)
            if table is None or observed.to_dict() != table.to_dict():
                change = TableChange(CHANGE_CREATE if table is None else CHANGE_ALTER, table_id, observed)
                yield SchemaChange(self._history_record(offset, table_id, change), [change])
                table = observed

        yield self._event(document, action, table_id, table, offset)

    def _begin(self, document: Dict[str, Any], message: ReplicationMessage) -> None:
        # with include-lsn, "lsn" on a begin message is the transaction's commit LSN
        commit_lsn = document.get('lsn')
        if commit_lsn is None:
            raise ConnectorException(
                f"Transaction begin at {message.lsn} carries no commit LSN; wal2json needs include-lsn",
                error_code="DECODE_ERROR",
                details={'message': document}
            )
        try:
            self._commit_lsn = Lsn.parse(commit_lsn)
        except ValueError as e:
            raise ConnectorException(f"Invalid commit LSN at {message.lsn}: {e}", error_code="DECODE_ERROR", cause=e)
        self._tx_id = document.get('xid')

    def _offset(self, change_lsn: Lsn) -> Dict[str, Any]:
        """Stream position of a change: ``(lsn_commit, lsn)`` grows monotonically along the slot."""
        commit_lsn = self._commit_lsn if self._commit_lsn is not None else change_lsn
        offset = {'lsn_commit': int(commit_lsn), 'lsn': int(change_lsn)}
        if self._tx_id is not None:
            offset['txId'] = self._tx_id
        return offset

    def _table_from_message(self, table_id: TableId, document: Dict[str, Any], known: Optional[Table]) -> Table:
        columns = []
        for position, column in enumerate(document.get('columns', []), start=1):
            type_name, length, scale = self.type_mapper.normalize(column.get('type', 'text'))
            previous = known.column(column['name']) if known else None
            columns.append(Column(
                name=column['name'],
                type_name=type_name,
                position=position,
                length=length,
                scale=scale,
                optional=previous.optional if previous else True,
                default_value=previous.default_value if previous else None,
            ))

        primary_key = [pk['name'] for pk in document.get('pk', [])]
        if not primary_key and known:
            primary_key = list(known.primary_key)
        return Table(table_id, columns, primary_key)

    def _history_record(self, offset: Dict[str, Any], table_id: TableId, change: TableChange) -> HistoryRecord:
        return HistoryRecord(
            partition=self.partition,
            position=dict(offset),
            schema_name=table_id.schema,
            ddl=None,
            table_changes=[change.to_dict()],
        )

    def _event(self, document, action, table_id: TableId, table: Optional[Table], offset) -> ChangeEvent:
        column_types = table.column_types() if table else {}

        def values(key):
            entries = document.get(key)
            if entries is None:
                return None
            return self.type_mapper.convert_values({entry['name']: entry.get('value') for entry in entries},
                                                   column_types)

        after = values('columns') if action in ('I', 'U') else None
        before = values('identity') if action in ('U', 'D') else None

        key = None
        if table and table.primary_key:
            row = after or before or {}
            key = {name: row.get(name) for name in table.primary_key}

        return ChangeEvent(
            partition=self.partition,
            offset=offset,
            table_id=table_id,
            op=OPERATIONS[action],
            before=before,
            after=after,
            key=key,
            source={'connector': 'postgresql', 'name': self.partition.get('server'),
                    'ts_ms': document.get('timestamp')},
        )
