import unittest

from pgcdc.config.configuration import Configuration, flatten
from pgcdc.core.exceptions import ConfigurationException
from pgcdc.history.store import MemorySchemaHistoryStore, SchemaHistoryStore

class TestFlatten(unittest.TestCase):
    def test_nested_keys(self):
        self.assertEqual(flatten({'database': {'hostname': 'db', 'port': 5432}, 'name': 'inventory'}), {
            'database.hostname': 'db',
            'database.port': 5432,
            'name': 'inventory',
        })

    def test_value_and_children_on_one_key(self):
        settings = {'database': {'history': {'': 'pgcdc.history.store.FileSchemaHistoryStore', 'name': 'h'}}}
        self.assertEqual(flatten(settings), {
            'database.history': 'pgcdc.history.store.FileSchemaHistoryStore',
            'database.history.name': 'h',
        })

    def test_already_flat_keys(self):
        self.assertEqual(flatten({'database.history.name': 'h'}), {'database.history.name': 'h'})

class TestConfiguration(unittest.TestCase):
    def setUp(self):
        self.config = Configuration({
            'name': 'inventory',
            'database.port': '5433',
            'database.history': 'pgcdc.history.store.MemorySchemaHistoryStore',
            'database.history.name': 'inventory-history',
            'database.history.skip.unparseable.ddl': 'TRUE',
            'database.hostname': 'db',
            'empty': None,
        })

    def test_get(self):
        self.assertEqual(self.config.get('name'), 'inventory')
        self.assertEqual(self.config.get('missing', 'fallback'), 'fallback')
        self.assertEqual(self.config.get('empty', 'fallback'), 'fallback')

    def test_typed_getters(self):
        self.assertEqual(self.config.get_int('database.port'), 5433)
        self.assertTrue(self.config.get_bool('database.history.skip.unparseable.ddl'))
        self.assertFalse(self.config.get_bool('missing'))
        self.assertIsNone(self.config.get_int('missing'))

    def test_invalid_typed_values(self):
        with self.assertRaises(ConfigurationException) as context:
            self.config.get_bool('name')
        self.assertEqual(context.exception.error_code, 'INVALID_TYPE')
        with self.assertRaises(ConfigurationException):
            self.config.get_int('database.hostname')

    def test_subset_keeps_prefix(self):
        subset = self.config.subset('database.history.')
        self.assertEqual(subset.as_dict(), {
            'database.history.name': 'inventory-history',
            'database.history.skip.unparseable.ddl': 'TRUE',
        })

    def test_subset_without_prefix(self):
        subset = self.config.subset('database.', remove_prefix=True)
        self.assertEqual(subset.get('history.name'), 'inventory-history')
        self.assertEqual(subset.get('hostname'), 'db')

    def test_with_defaults(self):
        merged = self.config.with_defaults({'name': 'other', 'slot.name': 'slot', 'unset': None})
        self.assertEqual(merged.get('name'), 'inventory')
        self.assertEqual(merged.get('slot.name'), 'slot')
        self.assertNotIn('unset', merged)
        self.assertNotIn('slot.name', self.config)

    def test_get_instance(self):
        store = self.config.get_instance('database.history', SchemaHistoryStore)
        self.assertIsInstance(store, MemorySchemaHistoryStore)

    def test_get_instance_default(self):
        store = Configuration().get_instance('database.history', SchemaHistoryStore,
                                             'pgcdc.history.store.MemorySchemaHistoryStore')
        self.assertIsInstance(store, MemorySchemaHistoryStore)

    def test_get_instance_failures(self):
        cases = [
            ('pgcdc.history.store.NoSuchStore', 'CLASS_NOT_FOUND'),
            ('no_such_module.Store', 'CLASS_NOT_FOUND'),
            ('NoModule', 'CLASS_NOT_FOUND'),
            ('pgcdc.history.store.SchemaHistoryStore', 'INSTANTIATION_ERROR'),
            ('pgcdc.monitoring.metrics.MetricsCollector', 'INVALID_TYPE'),
        ]
        for class_name, error_code in cases:
            with self.subTest(class_name=class_name):
                config = Configuration({'database.history': class_name})
                with self.assertRaises(ConfigurationException) as context:
                    config.get_instance('database.history', SchemaHistoryStore)
                self.assertEqual(context.exception.error_code, error_code)

if __name__ == '__main__':
    unittest.main()
