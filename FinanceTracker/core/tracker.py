"""Pending-change bookkeeping on top of :class:`FinanceTracker.core.database.LocalStore`.

The tracker owns every sync status transition the sync engine needs and publishes a
debounced count of records waiting to be pushed.
"""
import datetime
import logging
from typing import List, Optional

from PySide6 import QtCore

from . import models
from .database import LocalStore
from .models import EntityType, SyncStatus

DEFAULT_DEBOUNCE_INTERVAL = 300


class ChangeTracker(QtCore.QObject):
    """Counts, lists and transitions records that still have to reach the remote store.

    Signals:
        pendingCountChanged (int): Emitted with the new count after store changes settle.
    """
    pendingCountChanged = QtCore.Signal(int)

    def __init__(self, store: LocalStore, debounce_interval: int = DEFAULT_DEBOUNCE_INTERVAL,
                 parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        self.store = store
        self._last_count: Optional[int] = None

        self._debounce_timer = QtCore.QTimer(self)
        self._debounce_timer.setSingleShot(True)
        self._debounce_timer.setInterval(debounce_interval)
        self._debounce_timer.timeout.connect(self.refresh)

        self._connect_signals()

    def _connect_signals(self) -> None:
        # Store writes may come from the sync worker thread
        self.store.storeChanged.connect(self.schedule_refresh, QtCore.Qt.QueuedConnection)

    @QtCore.Slot(str)
    def schedule_refresh(self, entity_type: str = '') -> None:
        """Restart the debounce window; the count is recomputed once it elapses."""
        self._debounce_timer.start()

    @QtCore.Slot()
    def refresh(self) -> int:
        """Recompute the pending count and emit :attr:`pendingCountChanged` if it changed."""
        count = self.pending_count()
        if count != self._last_count:
            self._last_count = count
            logging.debug(f'Pending change count: {count}')
            self.pendingCountChanged.emit(count)
        return count

    def pending_count(self) -> int:
        """Return the number of categories, transactions and budgets tagged ``pending`` or ``failed``."""
        return self.store.count(models.TRACKABLE_TYPES, (SyncStatus.Pending, SyncStatus.Failed))

    def has_outgoing_changes(self) -> bool:
        """Return True if any record, including users and deletions, still has to be pushed."""
        statuses = (SyncStatus.Pending, SyncStatus.Failed, SyncStatus.Deleted)
        return self.store.count(list(EntityType), statuses) > 0

    def pending_records(self, entity_type: EntityType) -> List[models.Entity]:
        """Return the records of one type to push, oldest change first.

        Includes records tagged ``pending`` and ``deleted``; ``failed`` records wait for
        :meth:`reset_failed`.
        """
        return self.store.query(
            entity_type,
            {'sync_status': (SyncStatus.Pending, SyncStatus.Deleted)},
            sort='updated_at',
            include_deleted=True,
        )

    def mark_synced(self, entity: models.Entity, change_tag: Optional[str],
                    modified_at: Optional[datetime.datetime]) -> bool:
        """Record a successful push of entity.

        The record is tagged ``synced`` only if it was not edited after the pushed copy
        was read; otherwise it stays ``pending`` and only the acknowledged remote revision
        is stored.

        Returns:
            bool: True if the record was tagged ``synced``.
        """
        table = entity.table
        tag_sql = 'remote_change_tag = ?, remote_modified_at = ?'
        params = [change_tag, models.encode_sql('datetime', modified_at)]
        if entity.entity_type == EntityType.User:
            tag_sql += ', remote_record_id = ?'
            params.append(entity.id)

        with self.store.transaction() as conn:
            cursor = conn.execute(
                f'UPDATE {table} SET sync_status = ?, {tag_sql} '
                f'WHERE id = ? AND updated_at IS ? AND sync_status = ?',
                [SyncStatus.Synced.value] + params + [
                    entity.id, models.encode_sql('datetime', entity.updated_at), SyncStatus.Pending.value
                ]
            )
            synced = cursor.rowcount > 0
            if not synced:
                cursor = conn.execute(f'UPDATE {table} SET {tag_sql} WHERE id = ?', params + [entity.id])
                if cursor.rowcount:
                    logging.debug(f'{entity.entity_type} "{entity.id}" changed during push; kept pending.')
                else:
                    logging.debug(f'{entity.entity_type} "{entity.id}" was removed during push.')

        self.store.storeChanged.emit(str(entity.entity_type))
        return synced

    def mark_failed(self, entity: models.Entity) -> bool:
        """Tag a pending record ``failed`` after a persistent push error.

        Returns:
            bool: True if the record was tagged.
        """
        with self.store.transaction() as conn:
            cursor = conn.execute(
                f'UPDATE {entity.table} SET sync_status = ? WHERE id = ? AND sync_status = ?',
                (SyncStatus.Failed.value, entity.id, SyncStatus.Pending.value)
            )
            failed = cursor.rowcount > 0

        if failed:
            logging.warning(f'{entity.entity_type} "{entity.id}" failed to sync.')
            self.store.storeChanged.emit(str(entity.entity_type))
        return failed

    def reset_failed(self) -> int:
        """Tag every ``failed`` record ``pending`` again.

        Returns:
            int: Number of records reset.
        """
        total = 0
        with self.store.transaction() as conn:
            for entity_type in EntityType:
                cursor = conn.execute(
                    f'UPDATE {models.entity_class(entity_type).table} SET sync_status = ? WHERE sync_status = ?',
                    (SyncStatus.Pending.value, SyncStatus.Failed.value)
                )
                total += cursor.rowcount

        if total:
            logging.info(f'Reset {total} failed record(s) to pending.')
            for entity_type in EntityType:
                self.store.storeChanged.emit(str(entity_type))
        return total
