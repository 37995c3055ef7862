import tempfile
import unittest
from pathlib import Path

from pgcdc.config.configuration import Configuration
from pgcdc.config.connector_config import PostgresConnectorConfig
from pgcdc.core.exceptions import ConfigurationException
from pgcdc.history import store as history
from pgcdc.history.comparator import LsnHistoryRecordComparator
from pgcdc.history.replayer import SchemaHistoryReplayer
from pgcdc.history.store import FileSchemaHistoryStore, KafkaSchemaHistoryStore, MemorySchemaHistoryStore
from pgcdc.monitoring.metrics import MetricsCollector
from pgcdc.schemas.model import TableId

class InventoryConnector:
    pass

def connector_config(**settings):
    values = {
        'name': 'inventory',
        'database.hostname': 'db.internal',
        'database.user': 'cdc',
        'database.dbname': 'shop',
        'database.history': 'pgcdc.history.store.MemorySchemaHistoryStore',
    }
    values.update(settings)
    return PostgresConnectorConfig(Configuration(values), InventoryConnector)

class TestPostgresConnectorConfig(unittest.TestCase):
    def test_requires_logical_name(self):
        with self.assertRaises(ConfigurationException) as context:
            PostgresConnectorConfig(Configuration({'database.hostname': 'db'}), InventoryConnector)
        self.assertEqual(context.exception.error_code, 'MISSING_FIELD')

    def test_identity(self):
        identity = connector_config().identity
        self.assertEqual(identity.logical_name, 'inventory')
        self.assertEqual(identity.connector_class, f'{InventoryConnector.__module__}.InventoryConnector')
        self.assertFalse(identity.multi_partition_mode)

    def test_default_connector_class(self):
        config = PostgresConnectorConfig(Configuration({'name': 'inventory'}))
        self.assertEqual(config.identity.connector_class, 'pgcdc.handlers.connector_task.ConnectorTask')

    def test_schema_history_defaults(self):
        config = connector_config(**{'database.history.store.only.captured.tables.ddl': True})
        store = config.get_schema_history()

        self.assertIsInstance(store, MemorySchemaHistoryStore)
        self.assertEqual(store.name, 'inventory-dbhistory')
        self.assertEqual(store.config.get(history.INTERNAL_CONNECTOR_CLASS), config.identity.connector_class)
        self.assertEqual(store.config.get(history.INTERNAL_CONNECTOR_ID), 'inventory')
        self.assertIsInstance(store.comparator, LsnHistoryRecordComparator)
        self.assertTrue(store.store_only_captured_tables_ddl)
        self.assertFalse(store.skip_unparseable_ddl)

    def test_schema_history_config_keeps_prefix(self):
        store = connector_config(**{'database.history.name': 'custom'}).get_schema_history()

        self.assertEqual(store.name, 'custom')
        self.assertIn('database.history.name', store.config)
        self.assertNotIn('name', store.config)
        self.assertNotIn('database.hostname', store.config)
        self.assertNotIn('database.history', store.config)

    def test_schema_history_metrics_are_namespaced(self):
        collector = MetricsCollector()
        store = connector_config().get_schema_history(collector)
        self.assertIs(store.metrics.collector, collector)
        self.assertEqual(store.metrics.tags, {'connector': 'inventory'})

    def test_skip_unparseable_reaches_replayer(self):
        store = connector_config(**{'database.history.skip.unparseable.ddl': 'true'}).get_schema_history()
        self.assertTrue(store.skip_unparseable_ddl)
        self.assertTrue(SchemaHistoryReplayer.for_store(store).skip_unparseable)

    def test_unknown_history_class(self):
        config = connector_config(**{'database.history': 'pgcdc.history.store.RedisSchemaHistoryStore'})
        with self.assertRaises(ConfigurationException) as context:
            config.get_schema_history()
        self.assertEqual(context.exception.error_code, 'CLASS_NOT_FOUND')

    def test_history_class_of_wrong_type(self):
        config = connector_config(**{'database.history': 'pgcdc.monitoring.metrics.MetricsCollector'})
        with self.assertRaises(ConfigurationException):
            config.get_schema_history()

    def test_file_history_requires_filename(self):
        config = connector_config(**{'database.history': 'pgcdc.history.store.FileSchemaHistoryStore'})
        with self.assertRaises(ConfigurationException) as context:
            config.get_schema_history()
        self.assertEqual(context.exception.error_code, 'MISSING_FIELD')

    def test_file_history(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / 'history' / 'inventory.jsonl'
            store = connector_config(**{
                'database.history': 'pgcdc.history.store.FileSchemaHistoryStore',
                'database.history.file.filename': str(path),
            }).get_schema_history()
            self.assertIsInstance(store, FileSchemaHistoryStore)
            self.assertEqual(store.path, path)

    def test_kafka_history_is_default_and_validated(self):
        values = {'name': 'inventory'}
        with self.assertRaises(ConfigurationException) as context:
            PostgresConnectorConfig(Configuration(values), InventoryConnector).get_schema_history()
        self.assertEqual(context.exception.details['fields'],
                         [KafkaSchemaHistoryStore.TOPIC, KafkaSchemaHistoryStore.BOOTSTRAP_SERVERS])

        values.update({
            'database.history.kafka.topic': 'inventory.history',
            'database.history.kafka.bootstrap.servers': 'kafka-1:9092, kafka-2:9092',
        })
        store = PostgresConnectorConfig(Configuration(values), InventoryConnector).get_schema_history()
        self.assertIsInstance(store, KafkaSchemaHistoryStore)
        self.assertEqual(store.topic, 'inventory.history')
        self.assertEqual(store._bootstrap_servers(), ['kafka-1:9092', 'kafka-2:9092'])

    def test_partition(self):
        self.assertEqual(connector_config().partition, {'server': 'inventory'})
        multi = connector_config(**{'multi.partition.mode': True})
        self.assertTrue(multi.multi_partition_mode)
        self.assertEqual(multi.partition, {'server': 'inventory', 'database': 'shop'})

    def test_table_include_list(self):
        config = connector_config(**{'table.include.list': r'public\.orders, inventory\..*'})
        self.assertTrue(config.is_table_captured(TableId(None, 'public', 'orders')))
        self.assertTrue(config.is_table_captured(TableId(None, 'inventory', 'parts')))
        self.assertFalse(config.is_table_captured(TableId(None, 'public', 'orders_archive')))
        self.assertTrue(connector_config().is_table_captured(TableId(None, 'public', 'anything')))

    def test_retriable_patterns(self):
        config = connector_config(**{'errors.retriable.patterns': 'slot .* is active,too many clients'})
        self.assertEqual(config.retriable_patterns, ['slot .* is active', 'too many clients'])
        self.assertEqual(connector_config().retriable_patterns, [])

    def test_connection_settings(self):
        config = connector_config(**{'database.port': '6543', 'status.update.interval.ms': 2500})
        self.assertEqual(config.connection_params(), {
            'host': 'db.internal',
            'port': 6543,
            'user': 'cdc',
            'password': None,
            'dbname': 'shop',
        })
        self.assertEqual(config.slot_name, 'pgcdc')
        self.assertEqual(config.plugin_name, 'wal2json')
        self.assertEqual(config.status_interval, 2.5)

if __name__ == '__main__':
    unittest.main()
