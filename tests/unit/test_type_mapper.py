import unittest
from decimal import Decimal
from datetime import date, datetime

from pgcdc.schemas.type_mapper import TypeMapper

class TestTypeMapper(unittest.TestCase):
    def setUp(self):
        self.mapper = TypeMapper()

    def test_normalize_aliases(self):
        self.assertEqual(self.mapper.normalize('int4'), ('integer', None, None))
        self.assertEqual(self.mapper.normalize('BIGSERIAL'), ('bigint', None, None))
        self.assertEqual(self.mapper.normalize('timestamptz'), ('timestamp with time zone', None, None))
        self.assertEqual(self.mapper.normalize('double   precision'), ('double precision', None, None))

    def test_normalize_length_and_scale(self):
        self.assertEqual(self.mapper.normalize('VARCHAR(64)'), ('character varying', 64, None))
        self.assertEqual(self.mapper.normalize('numeric( 19 , 4 )'), ('numeric', 19, 4))
        self.assertEqual(self.mapper.normalize('character varying(10)'), ('character varying', 10, None))

    def test_normalize_arrays(self):
        self.assertEqual(self.mapper.normalize('int4[]'), ('integer[]', None, None))
        self.assertEqual(self.mapper.get_event_type('text[]'), 'array')

    def test_get_event_type(self):
        self.assertEqual(self.mapper.get_event_type('int8'), 'int64')
        self.assertEqual(self.mapper.get_event_type('bool'), 'boolean')
        self.assertEqual(self.mapper.get_event_type('numeric(10,2)'), 'decimal')
        self.assertEqual(self.mapper.get_event_type('jsonb'), 'json')
        self.assertEqual(self.mapper.get_event_type('geometry'), 'string')

    def test_convert_values(self):
        column_types = {
            'id': 'integer',
            'price': 'numeric',
            'ratio': 'float8',
            'active': 'boolean',
            'attributes': 'jsonb',
            'payload': 'bytea',
        }
        converted = self.mapper.convert_values({
            'id': '42',
            'price': '19.90',
            'ratio': '0.5',
            'active': 't',
            'attributes': '{"color": "red"}',
            'payload': b'\x01\xff',
            'note': 'untyped',
        }, column_types)

        self.assertEqual(converted, {
            'id': 42,
            'price': '19.90',
            'ratio': 0.5,
            'active': True,
            'attributes': {'color': 'red'},
            'payload': '01ff',
            'note': 'untyped',
        })

    def test_decimal_values(self):
        self.assertEqual(self.mapper.convert_value(Decimal('12.340'), 'numeric'), '12.340')
        self.assertEqual(self.mapper.convert_value('NaN', 'numeric'), 'NaN')
        self.assertEqual(self.mapper.convert_value('not a number', 'numeric'), 'not a number')

    def test_temporal_values(self):
        self.assertEqual(self.mapper.convert_value(datetime(2021, 1, 1, 12, 30), 'timestamp'), '2021-01-01T12:30:00')
        self.assertEqual(self.mapper.convert_value(date(2021, 1, 1), 'date'), '2021-01-01')

    def test_invalid_json_is_kept(self):
        self.assertEqual(self.mapper.convert_value('{broken', 'json'), '{broken')

    def test_handle_none_values(self):
        converted = self.mapper.convert_values({'field1': None, 'field2': 'value'}, {'field1': 'integer'})

        self.assertIsNone(converted['field1'])
        self.assertEqual(converted['field2'], 'value')

if __name__ == '__main__':
    unittest.main()
