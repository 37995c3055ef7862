"""In-memory model of the captured tables' structure.

The model is rebuilt from the schema history on every start and mutated only
by the capture thread afterwards.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

from ..core.exceptions import SchemaHistoryParseException

logger = logging.getLogger(__name__)

CHANGE_CREATE = 'CREATE'
CHANGE_ALTER = 'ALTER'
CHANGE_DROP = 'DROP'
CHANGE_TYPES = (CHANGE_CREATE, CHANGE_ALTER, CHANGE_DROP)


@dataclass(frozen=True, order=True)
class TableId:
    catalog: Optional[str]
    schema: Optional[str]
    table: str

    @classmethod
    def parse(cls, text: str, use_catalog_before_schema: bool = False) -> 'TableId':
        parts = [part.strip().strip('"') for part in text.split('.')]
        if len(parts) == 3:
            return cls(parts[0] or None, parts[1] or None, parts[2])
        if len(parts) == 2:
            if use_catalog_before_schema:
                return cls(parts[0] or None, None, parts[1])
            return cls(None, parts[0] or None, parts[1])
        return cls(None, None, parts[0])

    def __str__(self):
        return '.'.join(part for part in (self.catalog, self.schema, self.table) if part)

    def sort_key(self):
        return (self.catalog or '', self.schema or '', self.table)


@dataclass
class Column:
    name: str
    type_name: str
    position: int
    length: Optional[int] = None
    scale: Optional[int] = None
    optional: bool = True
    default_value: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'typeName': self.type_name,
            'position': self.position,
            'length': self.length,
            'scale': self.scale,
            'optional': self.optional,
            'defaultValueExpression': self.default_value,
        }

    @classmethod
    def from_dict(cls, document: Dict[str, Any], position: int) -> 'Column':
        return cls(
            name=document['name'],
            type_name=document.get('typeName', 'text'),
            position=document.get('position', position),
            length=document.get('length'),
            scale=document.get('scale'),
            optional=document.get('optional', True),
            default_value=document.get('defaultValueExpression'),
        )


@dataclass
class Table:
    id: TableId
    columns: List[Column] = field(default_factory=list)
    primary_key: List[str] = field(default_factory=list)

    def column(self, name: str) -> Optional[Column]:
        for column in self.columns:
            if column.name == name:
                return column
        return None

    def column_names(self) -> List[str]:
        return [column.name for column in self.columns]

    def column_types(self) -> Dict[str, str]:
        return {column.name: column.type_name for column in self.columns}

    def add_column(self, column: Column):
        if self.column(column.name) is not None:
            raise SchemaHistoryParseException(
                f"Column {column.name} already exists in {self.id}", error_code="DUPLICATE_COLUMN"
            )
        self.columns.append(column)
        self._renumber()

    def drop_column(self, name: str):
        if self.column(name) is None:
            raise SchemaHistoryParseException(
                f"Column {name} does not exist in {self.id}", error_code="UNKNOWN_COLUMN"
            )
        self.columns = [column for column in self.columns if column.name != name]
        self.primary_key = [pk for pk in self.primary_key if pk != name]
        self._renumber()

    def _renumber(self):
        for index, column in enumerate(self.columns, start=1):
            column.position = index

    def to_dict(self) -> Dict[str, Any]:
        return {
            'primaryKeyColumnNames': list(self.primary_key),
            'columns': [column.to_dict() for column in self.columns],
        }

    @classmethod
    def from_dict(cls, table_id: TableId, document: Dict[str, Any]) -> 'Table':
        columns = [Column.from_dict(column, index) for index, column in enumerate(document.get('columns', []), start=1)]
        return cls(table_id, columns, list(document.get('primaryKeyColumnNames', [])))


@dataclass(frozen=True)
class TableChange:
    """Structural delta carried by a history record."""

    type: str
    id: TableId
    table: Optional[Table] = None

    def to_dict(self) -> Dict[str, Any]:
        document = {'type': self.type, 'id': str(self.id)}
        if self.table is not None:
            document['table'] = self.table.to_dict()
        return document

    @classmethod
    def from_dict(cls, document: Any, use_catalog_before_schema: bool = False) -> 'TableChange':
        if not isinstance(document, dict) or document.get('type') not in CHANGE_TYPES or not document.get('id'):
            raise SchemaHistoryParseException(
                f"Malformed table change: {document!r}", error_code="MALFORMED_TABLE_CHANGE"
            )

        table_id = TableId.parse(document['id'], use_catalog_before_schema)
        table = None
        if document['type'] != CHANGE_DROP:
            if not isinstance(document.get('table'), dict):
                raise SchemaHistoryParseException(
                    f"Table change for {table_id} has no table definition", error_code="MALFORMED_TABLE_CHANGE"
                )
            try:
                table = Table.from_dict(table_id, document['table'])
            except (KeyError, TypeError) as e:
                raise SchemaHistoryParseException(
                    f"Malformed table definition for {table_id}: {e}", error_code="MALFORMED_TABLE_CHANGE", cause=e
                )
        return cls(document['type'], table_id, table)


class SchemaModel:
    def __init__(self):
        self._tables: Dict[TableId, Table] = {}

    def table_for(self, table_id: TableId) -> Optional[Table]:
        return self._tables.get(table_id)

    def table_ids(self) -> List[TableId]:
        return sorted(self._tables, key=TableId.sort_key)

    def __iter__(self) -> Iterator[Table]:
        for table_id in self.table_ids():
            yield self._tables[table_id]

    def __len__(self):
        return len(self._tables)

    def __contains__(self, table_id):
        return table_id in self._tables

    def overwrite_table(self, table: Table):
        self._tables[table.id] = table

    def remove_table(self, table_id: TableId) -> Optional[Table]:
        return self._tables.pop(table_id, None)

    def apply(self, change: TableChange):
        if change.type == CHANGE_DROP:
            if self.remove_table(change.id) is None:
                logger.debug(f"Dropped table {change.id} was not tracked")
        else:
            self.overwrite_table(change.table)

    def to_dict(self) -> Dict[str, Any]:
        return {str(table.id): table.to_dict() for table in self}

    def __eq__(self, other):
        if not isinstance(other, SchemaModel):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self):
        return f"SchemaModel({[str(table_id) for table_id in self.table_ids()]})"
