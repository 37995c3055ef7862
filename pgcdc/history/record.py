import json
from dataclasses import dataclass, field
from functools import total_ordering
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from ..core.exceptions import SchemaHistoryParseException

PartitionKey = Tuple[Tuple[str, Any], ...]


@total_ordering
class Lsn:
    """PostgreSQL log sequence number, e.g. ``16/B374D848``."""

    __slots__ = ('value',)

    def __init__(self, value: int):
        if value < 0:
            raise ValueError(f"LSN must be non-negative: {value}")
        self.value = value

    @classmethod
    def parse(cls, raw: Union[str, int, 'Lsn']) -> 'Lsn':
        if isinstance(raw, Lsn):
            return raw
        if isinstance(raw, bool):
            raise ValueError(f"Invalid LSN: {raw!r}")
        if isinstance(raw, int):
            return cls(raw)
        if isinstance(raw, str):
            text = raw.strip()
            if '/' in text:
                high, _, low = text.partition('/')
                try:
                    return cls((int(high, 16) << 32) + int(low, 16))
                except ValueError:
                    raise ValueError(f"Invalid LSN: {raw!r}") from None
            if text.isdigit():
                return cls(int(text))
        raise ValueError(f"Invalid LSN: {raw!r}")

    def __int__(self):
        return self.value

    def __eq__(self, other):
        if not isinstance(other, Lsn):
            return NotImplemented
        return self.value == other.value

    def __lt__(self, other):
        if not isinstance(other, Lsn):
            return NotImplemented
        return self.value < other.value

    def __hash__(self):
        return hash(self.value)

    def __str__(self):
        return f"{self.value >> 32:X}/{self.value & 0xFFFFFFFF:X}"

    def __repr__(self):
        return f"Lsn('{self}')"


def partition_key(partition: Optional[Dict[str, Any]]) -> PartitionKey:
    return tuple(sorted((partition or {}).items()))


@dataclass(frozen=True)
class HistoryRecord:
    """One schema change, keyed by the source position it was observed at."""

    partition: Dict[str, Any]
    position: Dict[str, Any]
    database_name: Optional[str] = None
    schema_name: Optional[str] = None
    ddl: Optional[str] = None
    table_changes: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def partition_key(self) -> PartitionKey:
        return partition_key(self.partition)

    def to_dict(self) -> Dict[str, Any]:
        document = {
            'source': dict(self.partition),
            'position': dict(self.position),
            'databaseName': self.database_name,
            'schemaName': self.schema_name,
            'ddl': self.ddl,
        }
        if self.table_changes:
            document['tableChanges'] = list(self.table_changes)
        return document

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_dict(cls, document: Any) -> 'HistoryRecord':
        if not isinstance(document, dict):
            raise SchemaHistoryParseException(
                f"History record must be a JSON object, got {type(document).__name__}",
                error_code="MALFORMED_RECORD"
            )

        partition = document.get('source')
        position = document.get('position')
        if not isinstance(partition, dict) or not isinstance(position, dict) or not position:
            raise SchemaHistoryParseException(
                "History record is missing its source partition or position",
                error_code="MALFORMED_RECORD",
                details={'record': document}
            )

        table_changes = document.get('tableChanges') or []
        ddl = document.get('ddl')
        if not isinstance(table_changes, list) or (not table_changes and not ddl):
            raise SchemaHistoryParseException(
                "History record carries neither DDL nor table changes",
                error_code="MALFORMED_RECORD",
                details={'record': document}
            )

        return cls(
            partition=partition,
            position=position,
            database_name=document.get('databaseName'),
            schema_name=document.get('schemaName'),
            ddl=ddl,
            table_changes=table_changes,
        )

    @classmethod
    def from_json(cls, line: Union[str, bytes]) -> 'HistoryRecord':
        try:
            document = json.loads(line)
        except (TypeError, ValueError) as e:
            raise SchemaHistoryParseException(
                f"Unreadable history record: {e}", error_code="MALFORMED_RECORD", cause=e
            )
        return cls.from_dict(document)


class ResumePosition:
    """Committed offsets a restarted connector resumes from, per partition.

    A single-partition position matches records from any partition.
    """

    def __init__(self, offsets: Optional[Dict[PartitionKey, Dict[str, Any]]] = None, single: bool = False):
        self._offsets = dict(offsets or {})
        self._single = single

    @classmethod
    def single(cls, offset: Optional[Dict[str, Any]]) -> 'ResumePosition':
        if not offset:
            return cls()
        return cls({(): dict(offset)}, single=True)

    @classmethod
    def from_partitions(cls, entries: Iterable[Tuple[Dict[str, Any], Dict[str, Any]]]) -> 'ResumePosition':
        return cls({partition_key(partition): dict(offset) for partition, offset in entries if offset})

    def offset_for(self, partition: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if self._single:
            return self._offsets[()]
        return self._offsets.get(partition_key(partition))

    def is_empty(self) -> bool:
        return not self._offsets

    def __repr__(self):
        return f"ResumePosition({self._offsets!r})"
