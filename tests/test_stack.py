"""
Integration tests for FinanceTracker.core.stack
(opening a store from the settings, migrating on open and the published sync state).

Run:
    python -m unittest tests.test_stack
"""
import sqlite3
import unittest
from unittest import mock

from FinanceTracker.core import migration
from FinanceTracker.core.connectivity import SyncStatusSnapshot
from FinanceTracker.core.models import EntityType, SyncStatus
from FinanceTracker.core.remote import InMemoryRemoteStore
from FinanceTracker.core.stack import SyncStack
from FinanceTracker.core.sync import SyncState
from FinanceTracker.status import status
from tests.base import BaseTestCase, FakeClock
from tests.test_migration import build_store, checksum


class SyncStackTest(BaseTestCase):

    def setUp(self) -> None:
        super().setUp()
        self.clock = FakeClock()

    def open_stack(self, **kwargs) -> SyncStack:
        stack = SyncStack(settings=self.settings, clock=self.clock, **kwargs).open()
        self.addCleanup(stack.close)
        return stack

    def test_open_new_store(self):
        stack = self.open_stack()

        self.assertTrue(self.settings.store_path.exists())
        self.assertIsInstance(stack.remote, InMemoryRemoteStore)
        self.assertEqual(len(stack.store.query(EntityType.User)), 1)
        self.assertEqual(stack.sync.operation_timeout, 30)
        self.assertEqual(stack.sync.sync_timeout, 300)

        snapshot = stack.status()
        self.assertIsInstance(snapshot, SyncStatusSnapshot)
        self.assertFalse(snapshot.is_online)
        self.assertEqual(snapshot.sync_status, SyncState.Idle)
        self.assertGreater(snapshot.pending_count, 0)
        self.assertIsNone(snapshot.last_sync_timestamp)

    def test_status_after_sync(self):
        stack = self.open_stack()
        stack.sync.sync_now()

        snapshot = stack.status()
        self.assertEqual(snapshot.pending_count, 0)
        self.assertEqual(snapshot.sync_status, SyncState.Success)
        self.assertEqual(snapshot.last_sync_timestamp, self.clock())
        self.assertIsNone(snapshot.reason)

    def test_status_requires_open(self):
        with self.assertRaises(RuntimeError):
            SyncStack(settings=self.settings).status()

    def test_open_migrates_old_store(self):
        build_store(self.settings.store_path, 1, transactions=10)

        stack = self.open_stack()
        self.assertEqual(stack.migrations.current_version(), migration.CURRENT_VERSION)
        transactions = stack.store.query(EntityType.Transaction)
        self.assertEqual(len(transactions), 10)
        self.assertTrue(all(t.sync_status == SyncStatus.Pending for t in transactions))
        # The migrated store already has a user, so no default data is added
        self.assertEqual(len(stack.store.query(EntityType.User)), 1)
        self.assertEqual(len(stack.migrations.list_backups()), 1)

    def test_failed_migration_restores_store(self):
        build_store(self.settings.store_path, 1, transactions=10)
        before = checksum(self.settings.store_path)

        def failing(conn):
            raise sqlite3.OperationalError('simulated failure')

        with mock.patch.dict(migration.MIGRATION_STEPS, {1: migration.MigrationStep(1, 2, failing)}):
            with self.assertRaises(status.MigrationFailedError):
                SyncStack(settings=self.settings, clock=self.clock).open()

        self.assertEqual(checksum(self.settings.store_path), before)

    def test_expired_backups_are_removed_on_open(self):
        build_store(self.settings.store_path, 1, transactions=1)
        self.open_stack()
        manager = migration.MigrationManager(self.settings.store_path, clock=self.clock)
        self.assertEqual(len(manager.list_backups()), 1)

        self.clock.advance(self.settings.get_section('migration')['backup_retention_seconds'] + 1)
        self.open_stack()
        self.assertEqual(manager.list_backups(), [])

    def test_sheets_backend_requires_credentials(self):
        section = self.settings.get_section('remote')
        section['backend'] = 'sheets'
        self.settings.set_section('remote', section)

        with self.assertRaises(status.CredsNotFoundException):
            SyncStack(settings=self.settings, clock=self.clock).open()

    def test_injected_remote_is_used(self):
        remote = InMemoryRemoteStore(clock=self.clock)
        stack = self.open_stack(remote=remote)
        stack.sync.sync_now()
        self.assertIs(stack.remote, remote)
        self.assertEqual(len(remote.records(EntityType.User)), 1)

    def test_remote_changes_reach_monitor(self):
        remote = InMemoryRemoteStore(clock=self.clock)
        stack = self.open_stack(remote=remote)
        stack.sync.sync_now()
        self.assertEqual(stack.monitor.refresh_interval, 300000)

        notified = []
        stack.monitor.remoteChangeNotified.connect(lambda: notified.append(True))
        remote.put(remote.records(EntityType.User)[0])
        self.assertEqual(notified, [True])


if __name__ == '__main__':
    unittest.main()
