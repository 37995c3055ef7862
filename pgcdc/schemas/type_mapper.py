import json
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Tuple

class TypeMapper:
    """Normalises PostgreSQL type names and converts decoded values to event types."""

    def __init__(self):
        self.aliases = {
            'int2': 'smallint',
            'int': 'integer',
            'int4': 'integer',
            'int8': 'bigint',
            'serial': 'integer',
            'serial4': 'integer',
            'bigserial': 'bigint',
            'serial8': 'bigint',
            'smallserial': 'smallint',
            'serial2': 'smallint',
            'float4': 'real',
            'float8': 'double precision',
            'float': 'double precision',
            'bool': 'boolean',
            'varchar': 'character varying',
            'char': 'character',
            'bpchar': 'character',
            'decimal': 'numeric',
            'timestamptz': 'timestamp with time zone',
            'timestamp': 'timestamp without time zone',
            'timetz': 'time with time zone',
            'time': 'time without time zone',
        }

        self.event_types = {
            'smallint': 'int16',
            'integer': 'int32',
            'bigint': 'int64',
            'real': 'float32',
            'double precision': 'float64',
            'boolean': 'boolean',
            'numeric': 'decimal',
            'character varying': 'string',
            'character': 'string',
            'text': 'string',
            'uuid': 'string',
            'bytea': 'bytes',
            'date': 'date',
            'timestamp without time zone': 'timestamp',
            'timestamp with time zone': 'timestamp',
            'time without time zone': 'time',
            'time with time zone': 'time',
            'json': 'json',
            'jsonb': 'json',
        }

    def normalize(self, type_expression: str) -> Tuple[str, Optional[int], Optional[int]]:
        """Split ``numeric(10,2)`` style expressions into (name, length, scale)."""
        match = re.match(r'^\s*(.+?)\s*(?:\(\s*(\d+)\s*(?:,\s*(\d+)\s*)?\))?\s*(\[\])?\s*$', type_expression or '')
        if not match:
            return 'text', None, None

        name = ' '.join(match.group(1).lower().split())
        name = self.aliases.get(name, name)
        length = int(match.group(2)) if match.group(2) else None
        scale = int(match.group(3)) if match.group(3) else None
        if match.group(4):
            name = f'{name}[]'
        return name, length, scale

    def get_event_type(self, type_name: str) -> str:
        name, _, _ = self.normalize(type_name)
        if name.endswith('[]'):
            return 'array'
        return self.event_types.get(name, 'string')

    def convert_values(self, values: Dict[str, Any], column_types: Dict[str, str]) -> Dict[str, Any]:
        return {
            name: self.convert_value(value, column_types.get(name, 'text'))
            for name, value in values.items()
        }

    def convert_value(self, value: Any, type_name: str) -> Any:
        if value is None:
            return None

        event_type = self.get_event_type(type_name)

        if event_type in ('int16', 'int32', 'int64') and isinstance(value, str):
            return int(value)
        if event_type in ('float32', 'float64') and isinstance(value, str):
            return float(value)
        if event_type == 'boolean' and isinstance(value, str):
            return value.lower() in ('t', 'true')
        if event_type == 'decimal':
            try:
                return str(Decimal(str(value)))
            except InvalidOperation:
                return str(value)
        if event_type == 'json' and isinstance(value, str):
            try:
                return json.loads(value)
            except ValueError:
                return value
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        if isinstance(value, (bytes, bytearray)):
            return value.hex()

        return value
