"""
Integration tests for FinanceTracker.core.database
(validation gates, cascade and nullify deletes, tombstones, remote writes and maintenance).

Run:
    python -m unittest tests.test_database
"""
import datetime
import decimal
import sqlite3
import unittest

import pandas as pd

from FinanceTracker.core import migration, models
from FinanceTracker.core.database import LocalStore
from FinanceTracker.core.models import EntityType, SyncStatus
from FinanceTracker.status import status
from tests.base import BaseStoreTestCase, BaseTestCase


class StoreInitializationTest(BaseTestCase):

    def test_new_store_has_current_schema(self):
        store = LocalStore(self.db_dir / 'new.sqlite')
        conn = store.connection()
        try:
            self.assertEqual(migration.read_schema_version(conn), migration.CURRENT_VERSION)
        finally:
            conn.close()

    def test_outdated_store_is_refused(self):
        path = self.db_dir / 'old.sqlite'
        conn = sqlite3.connect(str(path))
        migration.create_schema(conn, 1)
        conn.commit()
        conn.close()

        with self.assertRaises(status.StoreInvalidException):
            LocalStore(path)

    def test_default_data(self):
        store = LocalStore(self.db_dir / 'defaults.sqlite')
        user = store.setup_default_data()
        self.assertIsNotNone(user)
        self.assertEqual(user.name, models.DEFAULT_USER_NAME)

        categories = store.query(EntityType.Category)
        self.assertEqual(len(categories), 14)
        self.assertEqual(len([c for c in categories if c.type == 'income']), 5)
        self.assertTrue(all(c.is_default for c in categories))

        # Only once
        self.assertIsNone(store.setup_default_data())
        self.assertEqual(len(store.query(EntityType.Category)), 14)


class InsertUpdateTest(BaseStoreTestCase):

    def test_insert_sets_pending_and_timestamps(self):
        t = self.store.insert(self.make_transaction())
        self.assertEqual(t.sync_status, SyncStatus.Pending)
        self.assertEqual(t.created_at, self.clock())
        self.assertEqual(t.updated_at, self.clock())

        stored = self.store.get(EntityType.Transaction, t.id)
        self.assertEqual(stored, t)

    def test_negative_amount_is_rejected_and_store_unchanged(self):
        before = len(self.store.query(EntityType.Transaction))
        with self.assertRaises(status.ValidationError) as ctx:
            self.store.insert(self.make_transaction(amount=-5))
        self.assertEqual(ctx.exception.kind, status.ValidationKind.InvalidAmount)
        self.assertEqual(len(self.store.query(EntityType.Transaction)), before)

    def test_dangling_reference_is_rejected(self):
        with self.assertRaises(status.ValidationError) as ctx:
            self.store.insert(self.make_transaction(category_id='missing'))
        self.assertEqual(ctx.exception.kind, status.ValidationKind.MissingCategory)

        with self.assertRaises(status.ValidationError) as ctx:
            self.store.insert(self.make_transaction(user_id='missing'))
        self.assertEqual(ctx.exception.kind, status.ValidationKind.MissingUser)
        self.assertEqual(self.store.query(EntityType.Transaction), [])

    def test_tombstoned_category_cannot_be_referenced(self):
        self._mark_remote(self.food)
        self.store.delete(self.food)
        with self.assertRaises(status.ValidationError):
            self.store.insert(self.make_transaction())

    def test_update_sets_pending_and_keeps_remote_revision(self):
        t = self.store.insert(self.make_transaction())
        self._mark_remote(t)

        self.clock.advance(60)
        t.notes = 'dinner'
        updated = self.store.update(t)
        self.assertEqual(updated.notes, 'dinner')
        self.assertEqual(updated.sync_status, SyncStatus.Pending)
        self.assertEqual(updated.updated_at, self.clock())
        self.assertEqual(updated.remote_change_tag, 'tag-1')

    def test_rejected_update_leaves_record_unchanged(self):
        t = self.store.insert(self.make_transaction())
        t.amount = decimal.Decimal('2000000')
        with self.assertRaises(status.ValidationError):
            self.store.update(t)
        self.assertEqual(self.store.get(EntityType.Transaction, t.id).amount, decimal.Decimal('50'))

    def test_update_missing_record(self):
        with self.assertRaises(status.RecordNotFoundException):
            self.store.update(self.make_transaction())

    def test_budget_end_date_recomputed_on_update(self):
        b = self.store.insert(self.make_budget())
        self.assertEqual(b.end_date, datetime.datetime(2025, 2, 1, tzinfo=datetime.timezone.utc))
        b.period = 'yearly'
        b = self.store.update(b)
        self.assertEqual(b.end_date, datetime.datetime(2026, 1, 1, tzinfo=datetime.timezone.utc))

    def test_date_values(self):
        t = self.store.insert(self.make_transaction(date=datetime.date(2025, 1, 1)))
        self.assertEqual(self.store.get(EntityType.Transaction, t.id).date,
                         datetime.datetime(2025, 1, 1, tzinfo=datetime.timezone.utc))

        with self.assertRaises(status.ValidationError) as ctx:
            self.store.insert(self.make_transaction(date='yesterday'))
        self.assertEqual(ctx.exception.kind, status.ValidationKind.InvalidDate)
        with self.assertRaises(status.ValidationError):
            self.store.insert(self.make_budget(start_date='2025-01-01'))
        self.assertEqual(len(self.store.query(EntityType.Transaction)), 1)
        self.assertEqual(self.store.query(EntityType.Budget), [])

    def test_names_are_stored_stripped(self):
        c = self.store.insert(models.Category(user_id=self.user.id, name='  Rent  ', type='expense'))
        self.assertEqual(self.store.get(EntityType.Category, c.id).name, 'Rent')

    def test_store_changed_signal(self):
        received = []
        self.store.storeChanged.connect(received.append)
        self.store.insert(self.make_transaction())
        self.assertEqual(received, ['Transaction'])

    def _mark_remote(self, entity: models.Entity) -> None:
        with self.store.transaction() as conn:
            conn.execute(
                f'UPDATE {entity.table} SET sync_status = ?, remote_change_tag = ? WHERE id = ?',
                ('synced', 'tag-1', entity.id)
            )


class QueryTest(BaseStoreTestCase):

    def setUp(self) -> None:
        super().setUp()
        for n, amount in enumerate((10, 30, 20)):
            self.clock.advance(1)
            self.store.insert(self.make_transaction(amount=amount, notes=f'#{n}'))

    def test_predicate_sort_limit(self):
        records = self.store.query(EntityType.Transaction, sort='-amount')
        self.assertEqual([r.notes for r in records], ['#1', '#2', '#0'])

        records = self.store.query(EntityType.Transaction, {'notes': ('#0', '#2')}, sort='created_at')
        self.assertEqual([r.notes for r in records], ['#0', '#2'])

        records = self.store.query(EntityType.Transaction, lambda t: t.amount > 15, sort='created_at', limit=1)
        self.assertEqual([r.notes for r in records], ['#1'])

    def test_unknown_column(self):
        with self.assertRaises(ValueError):
            self.store.query(EntityType.Transaction, {'nope': 1})
        with self.assertRaises(ValueError):
            self.store.query(EntityType.Transaction, sort='nope')

    def test_data_frame(self):
        df = self.store.data(EntityType.Transaction)
        self.assertIsInstance(df, pd.DataFrame)
        self.assertEqual(len(df), 3)
        self.assertIn('amount', df.columns)


class DeleteTest(BaseStoreTestCase):

    def _synced(self, entity: models.Entity) -> None:
        with self.store.transaction() as conn:
            conn.execute(
                f'UPDATE {entity.table} SET sync_status = ?, remote_change_tag = ? WHERE id = ?',
                ('synced', 'tag', entity.id)
            )

    def test_user_delete_cascades(self):
        self.store.insert(self.make_transaction())
        self.store.insert(self.make_budget())

        self.store.delete(self.user)
        for entity_type in EntityType:
            with self.subTest(entity_type=entity_type):
                self.assertEqual(self.store.query(entity_type, include_deleted=True), [])

    def test_category_delete_nullifies_dependents(self):
        t = self.store.insert(self.make_transaction())
        b = self.store.insert(self.make_budget())
        self._synced(t)

        self.store.delete(self.food)

        self.assertIsNone(self.store.get(EntityType.Category, self.food.id, include_deleted=True))
        t = self.store.get(EntityType.Transaction, t.id)
        b = self.store.get(EntityType.Budget, b.id)
        self.assertIsNotNone(t)
        self.assertIsNone(t.category_id)
        self.assertEqual(t.sync_status, SyncStatus.Pending)
        self.assertIsNone(b.category_id)

    def test_synced_category_is_tombstoned(self):
        self._synced(self.food)
        self.store.delete(self.food)
        self.assertIsNone(self.store.get(EntityType.Category, self.food.id))
        tombstone = self.store.get(EntityType.Category, self.food.id, include_deleted=True)
        self.assertEqual(tombstone.sync_status, SyncStatus.Deleted)

    def test_local_only_transaction_is_removed(self):
        t = self.store.insert(self.make_transaction())
        self.store.delete(t)
        self.assertIsNone(self.store.get(EntityType.Transaction, t.id, include_deleted=True))

    def test_synced_transaction_is_tombstoned_then_purged(self):
        t = self.store.insert(self.make_transaction())
        self._synced(t)
        self.store.delete(t)

        tombstone = self.store.get(EntityType.Transaction, t.id, include_deleted=True)
        self.assertEqual(tombstone.sync_status, SyncStatus.Deleted)
        self.assertEqual(self.store.query(EntityType.Transaction), [])

        with self.assertRaises(status.RecordNotFoundException):
            self.store.delete(tombstone)

        self.assertTrue(self.store.purge(EntityType.Transaction, t.id))
        self.assertIsNone(self.store.get(EntityType.Transaction, t.id, include_deleted=True))
        self.assertFalse(self.store.purge(EntityType.Transaction, t.id))


class ApplyRemoteTest(BaseStoreTestCase):

    def test_apply_remote_keeps_timestamp_and_marks_synced(self):
        remote_time = self.clock() - datetime.timedelta(hours=2)
        t = self.make_transaction(updated_at=remote_time, created_at=remote_time)
        self.assertTrue(self.store.apply_remote(t, 'tag-9', remote_time))

        stored = self.store.get(EntityType.Transaction, t.id)
        self.assertEqual(stored.sync_status, SyncStatus.Synced)
        self.assertEqual(stored.updated_at, remote_time)
        self.assertEqual(stored.remote_change_tag, 'tag-9')

    def test_apply_remote_validates(self):
        with self.assertRaises(status.ValidationError):
            self.store.apply_remote(self.make_transaction(amount=0), 'tag', None)
        self.assertEqual(self.store.query(EntityType.Transaction), [])

    def test_apply_remote_skips_locally_edited_record(self):
        t = self.store.insert(self.make_transaction())
        stale = t.updated_at
        self.clock.advance(5)
        t.notes = 'local edit'
        self.store.update(t)

        incoming = self.make_transaction(id=t.id, notes='remote')
        self.assertFalse(self.store.apply_remote(incoming, 'tag-2', self.clock(), expected_updated_at=stale))
        stored = self.store.get(EntityType.Transaction, t.id)
        self.assertEqual(stored.notes, 'local edit')
        self.assertEqual(stored.sync_status, SyncStatus.Pending)
        self.assertEqual(stored.remote_change_tag, 'tag-2')

    def test_user_local_fields_preserved(self):
        last_sync = self.clock()
        self.store.stamp_last_sync(last_sync)

        incoming = models.User(id=self.user.id, name='Renamed', currency_code='EUR')
        self.store.apply_remote(incoming, 'tag-u', self.clock())
        stored = self.store.get(EntityType.User, self.user.id)
        self.assertEqual(stored.name, 'Renamed')
        self.assertEqual(stored.last_sync_date, last_sync)
        self.assertEqual(stored.remote_record_id, self.user.id)
        self.assertEqual(self.store.get_last_sync(), last_sync)


class MaintenanceTest(BaseStoreTestCase):

    def test_consistency_check_repairs_orphans(self):
        t = self.store.insert(self.make_transaction())
        income = self.store.insert(self.make_transaction(type='income'))
        self.store.delete(self.food)

        repaired = self.store.consistency_check()
        self.assertEqual(repaired, 2)

        t = self.store.get(EntityType.Transaction, t.id)
        category = self.store.get(EntityType.Category, t.category_id)
        self.assertEqual(category.type, 'expense')
        self.assertTrue(category.is_default)

        income = self.store.get(EntityType.Transaction, income.id)
        self.assertEqual(self.store.get(EntityType.Category, income.category_id).type, 'income')
        self.assertEqual(self.store.consistency_check(), 0)

    def test_cleanup_failed(self):
        old = self.store.insert(self.make_transaction())
        self.clock.advance(31 * 24 * 3600)
        recent = self.store.insert(self.make_transaction())
        pending = self.store.insert(self.make_transaction())

        with self.store.transaction() as conn:
            conn.execute('UPDATE transactions SET sync_status = ? WHERE id IN (?, ?)',
                         ('failed', old.id, recent.id))

        self.assertEqual(self.store.cleanup_failed(30), 1)
        self.assertIsNone(self.store.get(EntityType.Transaction, old.id))
        self.assertIsNotNone(self.store.get(EntityType.Transaction, recent.id))
        self.assertIsNotNone(self.store.get(EntityType.Transaction, pending.id))


if __name__ == '__main__':
    unittest.main()
