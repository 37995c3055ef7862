import shutil
import tempfile
import unittest
from pathlib import Path

from pgcdc.core.exceptions import ConnectorException
from pgcdc.offsets.offset_store import FileOffsetStore, MemoryOffsetStore

SERVER = {'server': 'inventory'}

class TestMemoryOffsetStore(unittest.TestCase):
    def test_empty_store(self):
        position = MemoryOffsetStore().load()
        self.assertTrue(position.is_empty())

    def test_single_partition(self):
        store = MemoryOffsetStore([(SERVER, {'lsn': 42})])
        position = store.load()
        self.assertEqual(position.offset_for(SERVER), {'lsn': 42})
        self.assertEqual(store.committed(SERVER), {'lsn': 42})

    def test_ambiguous_single_partition(self):
        store = MemoryOffsetStore([({'server': 'a'}, {'lsn': 1}), ({'server': 'b'}, {'lsn': 2})])
        with self.assertRaises(ConnectorException) as context:
            store.load()
        self.assertEqual(context.exception.error_code, 'AMBIGUOUS_OFFSETS')

        position = store.load(single_partition=False)
        self.assertEqual(position.offset_for({'server': 'b'}), {'lsn': 2})

    def test_commit_replaces_offset(self):
        store = MemoryOffsetStore()
        store.commit(SERVER, {'lsn': 1})
        store.commit(SERVER, {'lsn': 2, 'txId': 7})
        self.assertEqual(store.committed(SERVER), {'lsn': 2, 'txId': 7})
        self.assertEqual(store.load().offset_for(SERVER), {'lsn': 2, 'txId': 7})

class TestFileOffsetStore(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.path = Path(self.temp_dir) / 'state' / 'offsets.json'

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def test_offsets_survive_restart(self):
        FileOffsetStore(str(self.path)).commit(SERVER, {'lsn': 1234})

        position = FileOffsetStore(str(self.path)).load()
        self.assertEqual(position.offset_for(SERVER), {'lsn': 1234})
        self.assertFalse(self.path.with_suffix('.json.tmp').exists())

    def test_corrupt_file(self):
        self.path.parent.mkdir(parents=True)
        self.path.write_text('{"offsets": [')

        with self.assertRaises(ConnectorException) as context:
            FileOffsetStore(str(self.path)).load()
        self.assertEqual(context.exception.error_code, 'OFFSET_READ_ERROR')

if __name__ == '__main__':
    unittest.main()
