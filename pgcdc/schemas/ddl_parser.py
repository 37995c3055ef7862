import copy
import logging
import re
from typing import List, Optional

from ..core.exceptions import DdlParsingException, SchemaHistoryParseException
from .model import (CHANGE_ALTER, CHANGE_CREATE, CHANGE_DROP, Column, SchemaModel, Table,
                    TableChange, TableId)
from .type_mapper import TypeMapper

logger = logging.getLogger(__name__)

IDENTIFIER = r'(?:"[^"]+"|[\w$]+)'
QUALIFIED_NAME = rf'{IDENTIFIER}(?:\s*\.\s*{IDENTIFIER}){{0,2}}'

CREATE_TABLE = re.compile(
    rf'^CREATE\s+(?:(?:GLOBAL|LOCAL)\s+)?(?:(?:TEMP|TEMPORARY|UNLOGGED)\s+)?TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?'
    rf'(?P<name>{QUALIFIED_NAME})\s*\((?P<body>.*)\)[^)]*$',
    re.IGNORECASE | re.DOTALL
)
ALTER_TABLE = re.compile(
    rf'^ALTER\s+TABLE\s+(?:IF\s+EXISTS\s+)?(?:ONLY\s+)?(?P<name>{QUALIFIED_NAME})\s+(?P<actions>.+)$',
    re.IGNORECASE | re.DOTALL
)
DROP_TABLE = re.compile(
    r'^DROP\s+TABLE\s+(?:IF\s+EXISTS\s+)?(?P<names>.+?)(?:\s+(?:CASCADE|RESTRICT))?$',
    re.IGNORECASE | re.DOTALL
)

CONSTRAINT_KEYWORDS = ('NOT', 'NULL', 'DEFAULT', 'PRIMARY', 'REFERENCES', 'UNIQUE', 'CHECK',
                       'CONSTRAINT', 'COLLATE', 'GENERATED')


def split_top_level(text: str, separator: str = ',') -> List[str]:
    parts, depth, quote, current = [], 0, None, []
    for char in text:
        if char in ('"', "'"):
            if quote is None:
                quote = char
            elif quote == char:
                quote = None
        elif quote is None and char == '(':
            depth += 1
        elif quote is None and char == ')':
            depth -= 1
        if char == separator and depth == 0 and quote is None:
            parts.append(''.join(current).strip())
            current = []
        else:
            current.append(char)
    parts.append(''.join(current).strip())
    return [part for part in parts if part]


def unquote(identifier: str) -> str:
    identifier = identifier.strip()
    if identifier.startswith('"') and identifier.endswith('"'):
        return identifier[1:-1]
    return identifier.lower()


class DdlParser:
    """Translates the table-structure subset of PostgreSQL DDL into table changes.

    Statements that do not change table structure (indexes, comments,
    grants) are ignored.
    """

    def __init__(self, use_catalog_before_schema: bool = False, type_mapper: Optional[TypeMapper] = None):
        self.use_catalog_before_schema = use_catalog_before_schema
        self.type_mapper = type_mapper or TypeMapper()

    def parse(self, ddl: str, model: SchemaModel, database_name: Optional[str] = None,
              schema_name: Optional[str] = None) -> List[TableChange]:
        """Return the table changes described by ``ddl`` without touching ``model``.

        Later statements see the effect of earlier ones, so a record either
        applies as a whole or raises before anything is applied.
        """
        overlay = {}

        def lookup(table_id: TableId) -> Optional[Table]:
            if table_id in overlay:
                return overlay[table_id]
            return model.table_for(table_id)

        changes = []
        for statement in split_top_level(ddl or '', ';'):
            statement = ' '.join(statement.split())
            if not statement:
                continue
            for change in self._parse_statement(statement, lookup, database_name, schema_name or 'public'):
                overlay[change.id] = change.table
                changes.append(change)
        return changes

    def _parse_statement(self, statement, lookup, database_name, schema_name) -> List[TableChange]:
        keyword = statement.split(None, 2)
        verb = ' '.join(keyword[:1]).upper()

        if verb == 'CREATE' and re.search(r'\bTABLE\b', statement.split('(', 1)[0], re.IGNORECASE):
            return [self._create_table(statement, database_name, schema_name)]
        if verb == 'ALTER' and len(keyword) > 1 and keyword[1].upper() == 'TABLE':
            return self._alter_table(statement, lookup, database_name, schema_name)
        if verb == 'DROP' and len(keyword) > 1 and keyword[1].upper() == 'TABLE':
            return self._drop_table(statement, database_name, schema_name)

        logger.debug(f"Ignoring non-structural DDL: {statement[:80]}")
        return []

    def _table_id(self, name: str, database_name, schema_name) -> TableId:
        parts = [unquote(part) for part in re.findall(IDENTIFIER, name)]
        table_id = TableId.parse('.'.join(parts), self.use_catalog_before_schema)
        return TableId(
            table_id.catalog or (database_name if self.use_catalog_before_schema else None),
            table_id.schema or (None if self.use_catalog_before_schema else schema_name),
            table_id.table
        )

    def _create_table(self, statement, database_name, schema_name) -> TableChange:
        match = CREATE_TABLE.match(statement)
        if not match:
            raise DdlParsingException(f"Cannot parse CREATE TABLE: {statement}", error_code="DDL_PARSE_ERROR")

        table = Table(self._table_id(match.group('name'), database_name, schema_name))
        for element in split_top_level(match.group('body')):
            self._table_element(table, element, statement)

        if not table.columns:
            raise DdlParsingException(f"CREATE TABLE without columns: {statement}", error_code="DDL_PARSE_ERROR")
        return TableChange(CHANGE_CREATE, table.id, table)

    def _table_element(self, table: Table, element: str, statement: str):
        upper = element.upper()
        if upper.startswith('CONSTRAINT'):
            element = re.sub(rf'^CONSTRAINT\s+{IDENTIFIER}\s+', '', element, flags=re.IGNORECASE)
            upper = element.upper()
        if upper.startswith('PRIMARY KEY'):
            columns = re.search(r'\((.*)\)', element)
            if not columns:
                raise DdlParsingException(f"Malformed PRIMARY KEY in: {statement}", error_code="DDL_PARSE_ERROR")
            table.primary_key = [unquote(name) for name in split_top_level(columns.group(1))]
            for name in table.primary_key:
                column = table.column(name)
                if column is not None:
                    column.optional = False
            return
        if upper.startswith(('UNIQUE', 'CHECK', 'FOREIGN KEY', 'EXCLUDE', 'LIKE')):
            return

        column, primary = self._column_definition(element, len(table.columns) + 1, statement)
        try:
            table.add_column(column)
        except SchemaHistoryParseException as e:
            raise DdlParsingException(str(e), error_code="DDL_PARSE_ERROR", cause=e)
        if primary:
            table.primary_key.append(column.name)

    def _column_definition(self, definition: str, position: int, statement: str):
        match = re.match(rf'^(?P<name>{IDENTIFIER})\s+(?P<rest>.+)$', definition.strip(), re.DOTALL)
        if not match:
            raise DdlParsingException(f"Malformed column definition '{definition}' in: {statement}",
                                      error_code="DDL_PARSE_ERROR")

        tokens = split_top_level(match.group('rest'), ' ')
        type_tokens = []
        while tokens and tokens[0].upper() not in CONSTRAINT_KEYWORDS:
            type_tokens.append(tokens.pop(0))
        if not type_tokens:
            raise DdlParsingException(f"Column '{definition}' has no type in: {statement}", error_code="DDL_PARSE_ERROR")

        type_name, length, scale = self.type_mapper.normalize(' '.join(type_tokens))
        constraints = ' '.join(tokens).upper()
        primary = 'PRIMARY KEY' in constraints
        default = re.search(r'\bDEFAULT\s+(.+?)(?:\s+(?:NOT\s+NULL|NULL|PRIMARY|UNIQUE|CHECK|REFERENCES)\b|$)',
                            ' '.join(tokens), re.IGNORECASE)

        column = Column(
            name=unquote(match.group('name')),
            type_name=type_name,
            position=position,
            length=length,
            scale=scale,
            optional=not ('NOT NULL' in constraints or primary),
            default_value=default.group(1) if default else None,
        )
        return column, primary

    def _alter_table(self, statement, lookup, database_name, schema_name) -> List[TableChange]:
        match = ALTER_TABLE.match(statement)
        if not match:
            raise DdlParsingException(f"Cannot parse ALTER TABLE: {statement}", error_code="DDL_PARSE_ERROR")

        table_id = self._table_id(match.group('name'), database_name, schema_name)
        existing = lookup(table_id)
        if existing is None:
            raise DdlParsingException(f"ALTER TABLE on unknown table {table_id}", error_code="UNKNOWN_TABLE")

        table = copy.deepcopy(existing)
        for action in split_top_level(match.group('actions')):
            renamed = self._alter_action(table, action, statement, database_name, schema_name)
            if renamed is not None:
                return [TableChange(CHANGE_DROP, table_id),
                        TableChange(CHANGE_CREATE, renamed, Table(renamed, table.columns, table.primary_key))]
        return [TableChange(CHANGE_ALTER, table_id, table)]

    def _alter_action(self, table: Table, action: str, statement, database_name, schema_name) -> Optional[TableId]:
        try:
            add = re.match(r'^ADD\s+(?:COLUMN\s+)?(?:IF\s+NOT\s+EXISTS\s+)?(?P<def>.+)$', action, re.IGNORECASE)
            if add and not re.match(r'^(CONSTRAINT|PRIMARY|UNIQUE|CHECK|FOREIGN)\b', add.group('def'), re.IGNORECASE):
                column, primary = self._column_definition(add.group('def'), len(table.columns) + 1, statement)
                if 'IF NOT EXISTS' in action.upper() and table.column(column.name) is not None:
                    return None
                table.add_column(column)
                if primary:
                    table.primary_key.append(column.name)
                return None
            if add:
                self._table_element(table, add.group('def'), statement)
                return None

            drop = re.match(rf'^DROP\s+(?:COLUMN\s+)?(?P<exists>IF\s+EXISTS\s+)?(?P<name>{IDENTIFIER})', action, re.IGNORECASE)
            if drop and drop.group('name').upper() != 'CONSTRAINT':
                name = unquote(drop.group('name'))
                if drop.group('exists') and table.column(name) is None:
                    return None
                table.drop_column(name)
                return None

            retype = re.match(rf'^ALTER\s+(?:COLUMN\s+)?(?P<name>{IDENTIFIER})\s+(?:SET\s+DATA\s+)?TYPE\s+(?P<type>.+?)(?:\s+USING\s+.*)?$',
                              action, re.IGNORECASE)
            if retype:
                column = self._existing_column(table, retype.group('name'))
                column.type_name, column.length, column.scale = self.type_mapper.normalize(retype.group('type'))
                return None

            nullability = re.match(rf'^ALTER\s+(?:COLUMN\s+)?(?P<name>{IDENTIFIER})\s+(?P<op>SET|DROP)\s+NOT\s+NULL$',
                                   action, re.IGNORECASE)
            if nullability:
                column = self._existing_column(table, nullability.group('name'))
                column.optional = nullability.group('op').upper() == 'DROP'
                return None

            default = re.match(rf'^ALTER\s+(?:COLUMN\s+)?(?P<name>{IDENTIFIER})\s+(?:SET\s+DEFAULT\s+(?P<value>.+)|DROP\s+DEFAULT)$',
                               action, re.IGNORECASE)
            if default:
                column = self._existing_column(table, default.group('name'))
                column.default_value = default.group('value')
                return None

            rename_table = re.match(rf'^RENAME\s+TO\s+(?P<name>{QUALIFIED_NAME})$', action, re.IGNORECASE)
            if rename_table:
                renamed = self._table_id(rename_table.group('name'), database_name, table.id.schema or schema_name)
                return renamed

            rename_column = re.match(rf'^RENAME\s+(?:COLUMN\s+)?(?P<old>{IDENTIFIER})\s+TO\s+(?P<new>{IDENTIFIER})$',
                                     action, re.IGNORECASE)
            if rename_column:
                old, new = unquote(rename_column.group('old')), unquote(rename_column.group('new'))
                column = self._existing_column(table, rename_column.group('old'))
                column.name = new
                table.primary_key = [new if pk == old else pk for pk in table.primary_key]
                return None
        except SchemaHistoryParseException as e:
            if isinstance(e, DdlParsingException):
                raise
            raise DdlParsingException(f"{e} in: {statement}", error_code="DDL_PARSE_ERROR", cause=e)

        if re.match(r'^(DROP\s+CONSTRAINT|OWNER\s+TO|SET\s+|RESET\s*\(|VALIDATE\s+CONSTRAINT|ENABLE|DISABLE|REPLICA\s+IDENTITY)',
                    action, re.IGNORECASE):
            return None
        raise DdlParsingException(f"Unsupported ALTER TABLE action '{action}' in: {statement}",
                                  error_code="DDL_PARSE_ERROR")

    def _existing_column(self, table: Table, name: str) -> Column:
        column = table.column(unquote(name))
        if column is None:
            raise DdlParsingException(f"Column {unquote(name)} does not exist in {table.id}", error_code="UNKNOWN_COLUMN")
        return column

    def _drop_table(self, statement, database_name, schema_name) -> List[TableChange]:
        match = DROP_TABLE.match(statement)
        if not match:
            raise DdlParsingException(f"Cannot parse DROP TABLE: {statement}", error_code="DDL_PARSE_ERROR")
        return [TableChange(CHANGE_DROP, self._table_id(name, database_name, schema_name))
                for name in split_top_level(match.group('names'))]
