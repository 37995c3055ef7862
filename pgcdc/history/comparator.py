from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

from ..core.exceptions import SchemaHistoryException
from .record import HistoryRecord, Lsn, ResumePosition

class HistoryRecordComparator(ABC):
    """Decides whether a history record is covered by the resume position.

    Records persisted after the last committed offset (the connector stopped
    between appending a schema change and committing the offset of the events
    that followed it) must not be recovered; they are observed again once
    streaming passes their position.
    """

    def is_at_or_before(self, record: HistoryRecord, resume_position: ResumePosition) -> bool:
        desired = resume_position.offset_for(record.partition)
        if desired is None:
            return False
        return self.is_position_at_or_before(record.position, desired)

    @abstractmethod
    def is_position_at_or_before(self, recorded: Dict[str, Any], desired: Dict[str, Any]) -> bool:
        pass

class LsnHistoryRecordComparator(HistoryRecordComparator):
    """Orders by commit LSN, then by the change LSN inside the transaction.

    wal2json emits whole transactions in commit order, so change LSNs alone
    are not monotonic along the stream while ``(lsn_commit, lsn)`` is. An
    offset without ``lsn_commit`` is treated as committed at its own LSN.
    ``event_serial_no`` breaks ties when both offsets carry it.
    """

    def __init__(self, lsn_field: str = 'lsn', commit_field: str = 'lsn_commit',
                 serial_field: str = 'event_serial_no'):
        self.lsn_field = lsn_field
        self.commit_field = commit_field
        self.serial_field = serial_field

    def position_key(self, offset: Dict[str, Any]) -> Tuple[Lsn, Lsn]:
        lsn = self._lsn(offset, self.lsn_field)
        if offset.get(self.commit_field) is None:
            return lsn, lsn
        return self._lsn(offset, self.commit_field), lsn

    def is_position_at_or_before(self, recorded: Dict[str, Any], desired: Dict[str, Any]) -> bool:
        recorded_key = self.position_key(recorded)
        desired_key = self.position_key(desired)

        if recorded_key != desired_key:
            return recorded_key < desired_key

        recorded_serial = recorded.get(self.serial_field)
        desired_serial = desired.get(self.serial_field)
        if recorded_serial is None or desired_serial is None:
            return True
        return int(recorded_serial) <= int(desired_serial)

    def _lsn(self, offset: Dict[str, Any], name: str) -> Lsn:
        if name not in offset:
            raise SchemaHistoryException(
                f"Offset has no '{name}' field",
                error_code="POSITION_FIELD_MISSING",
                details={'offset': offset}
            )
        try:
            return Lsn.parse(offset[name])
        except ValueError as e:
            raise SchemaHistoryException(str(e), error_code="INVALID_POSITION", cause=e)

class CompositeHistoryRecordComparator(HistoryRecordComparator):
    """Lexicographic order over several offset fields, e.g. ``('txId', 'lsn')``."""

    def __init__(self, fields: Sequence[str], key_functions: Optional[Dict[str, Callable[[Any], Any]]] = None):
        if not fields:
            raise ValueError("At least one position field is required")
        self.fields = tuple(fields)
        self.key_functions = key_functions or {}

    def is_position_at_or_before(self, recorded: Dict[str, Any], desired: Dict[str, Any]) -> bool:
        return self._key(recorded) <= self._key(desired)

    def _key(self, offset: Dict[str, Any]):
        values = []
        for name in self.fields:
            if offset.get(name) is None:
                raise SchemaHistoryException(
                    f"Offset has no '{name}' field",
                    error_code="POSITION_FIELD_MISSING",
                    details={'offset': offset, 'fields': list(self.fields)}
                )
            convert = self.key_functions.get(name)
            values.append(convert(offset[name]) if convert else offset[name])
        return tuple(values)
