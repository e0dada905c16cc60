"""
Container wiring: every consumer shares the same singletons.
"""

import shutil
import sys
import tempfile
import unittest
from pathlib import Path

from dependency_injector import providers

# Add project root to Python path
sys.path.insert(0, str(Path(__file__).parent.parent))

from cloudreader_sync.sync_manager import SyncManager
from cloudreader_sync.utils.di_container import create_container


class TestDependencyInjection(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.container = create_container(self.temp_dir)

    def tearDown(self):
        self.container.database_service().close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_data_dir_override(self):
        self.container.database_service()
        self.assertEqual(self.container.data_dir(), Path(self.temp_dir))
        self.assertTrue((Path(self.temp_dir) / 'database.db').exists())

    def test_manager_shares_singletons(self):
        manager = self.container.sync_manager()

        self.assertIsInstance(manager, SyncManager)
        self.assertIs(manager, self.container.sync_manager())
        self.assertIs(manager.settings, self.container.settings_store())
        self.assertIs(manager.api.settings, manager.settings)
        self.assertIs(manager.library_sync.index, manager.index)
        self.assertIs(manager.bundle_sync.index, manager.index)
        self.assertIs(manager.placeholders.index, manager.index)
        self.assertIs(manager.library_sync.placeholders, manager.placeholders)

    def test_connectivity_probe_override(self):
        self.container.connectivity_probe.override(providers.Object(lambda: False))
        self.container.settings_store().server_url = 'http://cloud.test'

        self.assertFalse(self.container.connectivity().is_online())


if __name__ == '__main__':
    unittest.main()
