"""
Local SQLite store holding users, categories, transactions and budgets.

This module provides :class:`LocalStore`, the single writer of one store file. Every
insert and update passes field validation and reference checks before anything is
written; a rejected write leaves the store unchanged. Successful mutations tag the
record ``pending`` and publish :attr:`LocalStore.storeChanged`.
"""

import contextlib
import dataclasses
import datetime
import logging
import pathlib
import sqlite3
import threading
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Union

import pandas as pd
from PySide6 import QtCore

from . import migration
from . import models
from .models import EntityType, SyncStatus
from ..status import status

FAILED_RETENTION_DAYS = 30

Predicate = Union[Mapping[str, Any], Callable[[models.Entity], bool], None]


class LocalStore(QtCore.QObject):
    """Transactional store of the four entity types.

    Writes are serialized through a re-entrant lock and each runs in its own
    connection and transaction. Readers open their own connections and never block on
    the lock.

    Signals:
        storeChanged (str): Emitted with the entity type name after every successful mutation.
    """
    storeChanged = QtCore.Signal(str)

    def __init__(self, path, clock: Optional[Callable[[], datetime.datetime]] = None,
                 parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        self.path = pathlib.Path(path)
        self.clock = clock or models.now
        self.lock = threading.RLock()
        self._initialize_schema_if_needed()

    def _now(self) -> datetime.datetime:
        return models.as_utc(self.clock())

    def _initialize_schema_if_needed(self) -> None:
        """Create the current schema in a new store, or verify an existing store is current.

        Raises:
            status.StoreInvalidException: If the store exists at another schema version.
        """
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            version = migration.read_schema_version(conn)
            if version is None:
                logging.info(f'Creating store schema v{migration.CURRENT_VERSION} at {self.path}')
                migration.create_schema(conn, migration.CURRENT_VERSION)
                conn.commit()
            elif version != migration.CURRENT_VERSION:
                raise status.StoreInvalidException(
                    f'{self.path} is at schema v{version}, v{migration.CURRENT_VERSION} is required. '
                    f'Migrate the store first.'
                )
            conn.execute('PRAGMA journal_mode=WAL')
        except (sqlite3.Error, status.UnknownStoreVersionError) as e:
            raise status.StoreInvalidException(f'Cannot open {self.path}: {e}') from e
        finally:
            if conn:
                conn.close()

    def connection(self) -> sqlite3.Connection:
        """Return a new connection to the store.

        Returns:
            sqlite3.Connection: Database connection object with ``sqlite3.Row`` rows.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(str(self.path), timeout=2.0)
        conn.row_factory = sqlite3.Row
        conn.set_progress_handler(lambda: logging.debug('Waiting on DB lock…'), 100000)
        return conn

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialize a write transaction against every other writer of this store.

        Commits when the block exits normally, rolls back otherwise.
        """
        with self.lock:
            conn = self.connection()
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

    def _emit_changed(self, *entity_types: EntityType) -> None:
        for entity_type in dict.fromkeys(entity_types):
            self.storeChanged.emit(str(entity_type))

    # ------------------------------------------------------------------ metadata

    def get_metadata(self, key: str) -> Optional[str]:
        conn = self.connection()
        try:
            row = conn.execute(
                f'SELECT value FROM {migration.META_TABLE} WHERE key = ?', (key,)
            ).fetchone()
            return row['value'] if row else None
        finally:
            conn.close()

    def set_metadata(self, key: str, value: Optional[str]) -> None:
        with self.transaction() as conn:
            conn.execute(
                f'INSERT OR REPLACE INTO {migration.META_TABLE} (key, value) VALUES (?, ?)', (key, value)
            )

    # ------------------------------------------------------------------ reads

    @staticmethod
    def _check_column(cls_: type, column: str) -> str:
        if column not in cls_.columns():
            raise ValueError(f'{cls_.entity_type} has no column "{column}".')
        return column

    def query(self, entity_type: EntityType, predicate: Predicate = None, sort: Optional[str] = None,
              limit: Optional[int] = None, include_deleted: bool = False) -> List[models.Entity]:
        """Return records of one entity type.

        Args:
            entity_type: The entity type to read.
            predicate: Either a mapping of column to value, where a list, tuple or set value
                matches any of its members, or a callable applied to each materialized entity.
            sort: Column to order by. Prefix with ``-`` for descending order.
            limit: Maximum number of records to return.
            include_deleted: Include records tagged ``deleted``.

        Returns:
            List[models.Entity]: The matching records.

        Raises:
            ValueError: If predicate or sort names an unknown column.
        """
        cls_ = models.entity_class(entity_type)
        clauses: List[str] = []
        params: List[Any] = []

        if not include_deleted:
            clauses.append('sync_status != ?')
            params.append(SyncStatus.Deleted.value)

        if isinstance(predicate, Mapping):
            for column, value in predicate.items():
                kind = cls_.columns()[self._check_column(cls_, column)]
                if value is None:
                    clauses.append(f'"{column}" IS NULL')
                elif isinstance(value, (list, tuple, set, frozenset)):
                    values = [models.encode_sql(kind, v) for v in value]
                    clauses.append(f'"{column}" IN ({", ".join("?" * len(values))})')
                    params.extend(values)
                else:
                    clauses.append(f'"{column}" = ?')
                    params.append(models.encode_sql(kind, value))

        sql = f'SELECT * FROM {cls_.table}'
        if clauses:
            sql += ' WHERE ' + ' AND '.join(clauses)
        if sort:
            descending = sort.startswith('-')
            column = self._check_column(cls_, sort.lstrip('-'))
            order_by = f'CAST("{column}" AS REAL)' if cls_.columns()[column] == 'decimal' else f'"{column}"'
            sql += f' ORDER BY {order_by} {"DESC" if descending else "ASC"}'
        if limit is not None and not callable(predicate):
            sql += ' LIMIT ?'
            params.append(int(limit))

        conn = self.connection()
        try:
            rows = conn.execute(sql, params).fetchall()
        finally:
            conn.close()

        entities = [cls_.from_row(row) for row in rows]
        if callable(predicate):
            entities = [e for e in entities if predicate(e)]
            if limit is not None:
                entities = entities[:limit]
        return entities

    def get(self, entity_type: EntityType, entity_id: str, include_deleted: bool = False) -> Optional[models.Entity]:
        """Return a single record by id, or None."""
        records = self.query(entity_type, {'id': entity_id}, include_deleted=include_deleted)
        return records[0] if records else None

    def count(self, entity_types: Sequence[EntityType], statuses: Sequence[SyncStatus]) -> int:
        """Count records of the given types whose sync status is one of statuses."""
        if not statuses:
            return 0
        placeholders = ', '.join('?' * len(statuses))
        values = [str(s) for s in statuses]
        conn = self.connection()
        try:
            total = 0
            for entity_type in entity_types:
                table = models.entity_class(entity_type).table
                row = conn.execute(
                    f'SELECT COUNT(*) FROM {table} WHERE sync_status IN ({placeholders})', values
                ).fetchone()
                total += row[0]
            return total
        finally:
            conn.close()

    def data(self, entity_type: EntityType) -> pd.DataFrame:
        """Load the live records of one entity type into a pandas DataFrame.

        Returns:
            pandas.DataFrame: One row per record, columns as stored.
        """
        table = models.entity_class(entity_type).table
        conn = self.connection()
        try:
            df = pd.read_sql_query(
                f'SELECT * FROM {table} WHERE sync_status != ?', conn, params=(SyncStatus.Deleted.value,)
            )
            logging.debug(f'Loaded {len(df)} rows from "{table}".')
            return df
        finally:
            conn.close()

    # ------------------------------------------------------------------ writes

    def _row_exists(self, conn: sqlite3.Connection, entity_type: EntityType, entity_id: str,
                    live_only: bool = True) -> bool:
        table = models.entity_class(entity_type).table
        sql = f'SELECT 1 FROM {table} WHERE id = ?'
        params: List[Any] = [entity_id]
        if live_only:
            sql += ' AND sync_status != ?'
            params.append(SyncStatus.Deleted.value)
        return conn.execute(sql, params).fetchone() is not None

    def _check_references(self, conn: sqlite3.Connection, entity: models.Entity) -> None:
        """Verify every reference of entity resolves to a live record.

        Raises:
            status.ValidationError: If a referenced record is missing or deleted.
        """
        for column, target_type in entity.references().items():
            target_id = getattr(entity, column)
            if target_id is None:
                continue
            if not self._row_exists(conn, target_type, target_id):
                kind = (status.ValidationKind.MissingUser if target_type == EntityType.User
                        else status.ValidationKind.MissingCategory)
                raise status.ValidationError(
                    kind, f'{entity.entity_type} references {target_type} "{target_id}", which does not exist.'
                )

    def _prepare(self, entity: models.Entity, now: datetime.datetime) -> models.Entity:
        record = dataclasses.replace(entity)
        record.normalize()
        record.validate(now)
        return record

    @staticmethod
    def _write_row(conn: sqlite3.Connection, table: str, row: Dict[str, Any], replace: bool = False) -> None:
        columns = list(row.keys())
        columns_sql = ', '.join(f'"{c}"' for c in columns)
        placeholders = ', '.join('?' * len(columns))
        verb = 'INSERT OR REPLACE' if replace else 'INSERT'
        conn.execute(f'{verb} INTO {table} ({columns_sql}) VALUES ({placeholders})',
                     [row[c] for c in columns])

    def insert(self, entity: models.Entity) -> models.Entity:
        """Validate and insert a new record, tagged ``pending``.

        Args:
            entity: The record to insert. It is not modified.

        Returns:
            models.Entity: The stored copy, with timestamps and derived fields set.

        Raises:
            status.ValidationError: If a field or reference constraint is violated.
            sqlite3.IntegrityError: If a record with the same id already exists.
        """
        now = self._now()
        record = self._prepare(entity, now)
        record.created_at = now
        record.updated_at = now
        record.sync_status = SyncStatus.Pending
        record.remote_change_tag = None
        record.remote_modified_at = None

        with self.transaction() as conn:
            self._check_references(conn, record)
            self._write_row(conn, record.table, record.to_row())

        logging.debug(f'Inserted {record.entity_type} "{record.id}".')
        self._emit_changed(record.entity_type)
        return record

    def update(self, entity: models.Entity) -> models.Entity:
        """Validate and save the domain fields of an existing record, tagging it ``pending``.

        Remote revision bookkeeping already in the store is kept, so an update made with a
        stale copy of the record does not lose the last acknowledged revision.

        Returns:
            models.Entity: The stored copy.

        Raises:
            status.ValidationError: If a field or reference constraint is violated.
            status.RecordNotFoundException: If no live record with the entity's id exists.
        """
        now = self._now()
        record = self._prepare(entity, now)
        record.updated_at = now
        record.sync_status = SyncStatus.Pending

        columns = list(record.FIELDS) + ['updated_at', 'sync_status']
        row = record.to_row()
        assignments = ', '.join(f'"{c}" = ?' for c in columns)

        with self.transaction() as conn:
            self._check_references(conn, record)
            cursor = conn.execute(
                f'UPDATE {record.table} SET {assignments} WHERE id = ? AND sync_status != ?',
                [row[c] for c in columns] + [record.id, SyncStatus.Deleted.value]
            )
            if cursor.rowcount == 0:
                raise status.RecordNotFoundException(f'{record.entity_type} "{record.id}"')
            stored = conn.execute(f'SELECT * FROM {record.table} WHERE id = ?', (record.id,)).fetchone()

        logging.debug(f'Updated {record.entity_type} "{record.id}".')
        self._emit_changed(record.entity_type)
        return type(record).from_row(stored)

    def delete(self, entity: models.Entity) -> None:
        """Delete a record following the ownership rules of its type.

        - User: its categories, budgets and transactions are removed with it.
        - Category: references held by budgets and transactions are cleared and those
          records become ``pending``.
        - Category, Transaction, Budget: records that were never acknowledged by the
          remote store are removed, the others are tagged ``deleted`` until the deletion
          is pushed.

        Raises:
            status.RecordNotFoundException: If no live record with the entity's id exists.
        """
        entity_type = entity.entity_type
        now = self._now()
        changed: List[EntityType] = [entity_type]

        with self.transaction() as conn:
            table = entity.table
            row = conn.execute(
                f'SELECT * FROM {table} WHERE id = ? AND sync_status != ?', (entity.id, SyncStatus.Deleted.value)
            ).fetchone()
            if row is None:
                raise status.RecordNotFoundException(f'{entity_type} "{entity.id}"')

            if entity_type == EntityType.User:
                for dependent in (models.Transaction, models.Budget, models.Category):
                    cursor = conn.execute(f'DELETE FROM {dependent.table} WHERE user_id = ?', (entity.id,))
                    logging.debug(f'Cascade removed {cursor.rowcount} {dependent.entity_type} record(s).')
                    changed.append(dependent.entity_type)
                conn.execute(f'DELETE FROM {table} WHERE id = ?', (entity.id,))
            else:
                if entity_type == EntityType.Category:
                    for dependent in (models.Transaction, models.Budget):
                        cursor = conn.execute(
                            f'UPDATE {dependent.table} SET category_id = NULL, updated_at = ?, '
                            f"sync_status = CASE WHEN sync_status = ? THEN sync_status ELSE ? END "
                            f'WHERE category_id = ?',
                            (models.encode_sql('datetime', now), SyncStatus.Deleted.value,
                             SyncStatus.Pending.value, entity.id)
                        )
                        logging.debug(f'Cleared category of {cursor.rowcount} {dependent.entity_type} record(s).')
                        changed.append(dependent.entity_type)

                if row['remote_change_tag'] is None:
                    conn.execute(f'DELETE FROM {table} WHERE id = ?', (entity.id,))
                    logging.debug(f'Removed local-only {entity_type} "{entity.id}".')
                else:
                    conn.execute(
                        f'UPDATE {table} SET sync_status = ?, updated_at = ? WHERE id = ?',
                        (SyncStatus.Deleted.value, models.encode_sql('datetime', now), entity.id)
                    )
                    logging.debug(f'Tagged {entity_type} "{entity.id}" as deleted.')

        self._emit_changed(*changed)

    def purge(self, entity_type: EntityType, entity_id: str) -> bool:
        """Physically remove a record once its remote deletion is confirmed.

        Returns:
            bool: True if a record was removed.
        """
        cls_ = models.entity_class(entity_type)
        with self.transaction() as conn:
            if entity_type == EntityType.Category:
                for dependent in (models.Transaction, models.Budget):
                    conn.execute(f'UPDATE {dependent.table} SET category_id = NULL WHERE category_id = ?',
                                 (entity_id,))
            cursor = conn.execute(f'DELETE FROM {cls_.table} WHERE id = ?', (entity_id,))
            removed = cursor.rowcount > 0

        if removed:
            logging.debug(f'Purged {entity_type} "{entity_id}".')
            self._emit_changed(entity_type)
        return removed

    def apply_remote(self, entity: models.Entity, change_tag: Optional[str],
                     modified_at: Optional[datetime.datetime],
                     expected_updated_at: Optional[datetime.datetime] = None) -> bool:
        """Write a record received from the remote store, tagged ``synced``.

        The record goes through the same validation and reference checks as a local
        write but keeps its own timestamps. Device-local fields of an existing record
        are preserved.

        Args:
            entity: The record built from remote fields.
            change_tag: Remote revision of the record.
            modified_at: Remote modification time of the record.
            expected_updated_at: When given, the write only happens if the stored record
                still has this ``updated_at``; otherwise only the remote revision is recorded.

        Returns:
            bool: True if the record was written.

        Raises:
            status.ValidationError: If the remote record violates a local constraint.
        """
        record = self._prepare(entity, self._now())
        record.sync_status = SyncStatus.Synced
        record.remote_change_tag = change_tag
        record.remote_modified_at = modified_at

        with self.transaction() as conn:
            self._check_references(conn, record)
            existing = conn.execute(f'SELECT * FROM {record.table} WHERE id = ?', (record.id,)).fetchone()
            if existing is not None and expected_updated_at is not None:
                stored_updated_at = models.decode_sql('datetime', existing['updated_at'])
                if stored_updated_at != expected_updated_at:
                    conn.execute(
                        f'UPDATE {record.table} SET remote_change_tag = ?, remote_modified_at = ? WHERE id = ?',
                        (change_tag, models.encode_sql('datetime', modified_at), record.id)
                    )
                    logging.debug(f'{record.entity_type} "{record.id}" changed locally; remote fields not applied.')
                    return False

            row = record.to_row()
            if existing is not None:
                for column in record.LOCAL_FIELDS:
                    row[column] = existing[column]
                if row['created_at'] is None:
                    row['created_at'] = existing['created_at']
            if record.entity_type == EntityType.User and row['remote_record_id'] is None:
                row['remote_record_id'] = record.id
            self._write_row(conn, record.table, row, replace=True)

        logging.debug(f'Applied remote {record.entity_type} "{record.id}" ({change_tag}).')
        self._emit_changed(record.entity_type)
        return True

    def stamp_last_sync(self, when: Optional[datetime.datetime] = None) -> None:
        """Record the time of the last successful sync on every user and in the store metadata."""
        value = models.encode_sql('datetime', when or self._now())
        with self.transaction() as conn:
            conn.execute(f'UPDATE {models.User.table} SET last_sync_date = ?', (value,))
            conn.execute(
                f'INSERT OR REPLACE INTO {migration.META_TABLE} (key, value) VALUES (?, ?)', ('last_sync', value)
            )
        self._emit_changed(EntityType.User)

    def get_last_sync(self) -> Optional[datetime.datetime]:
        """Retrieve the last synchronization timestamp.

        Returns:
            Optional[datetime.datetime]: Last sync datetime object, or None if not set/invalid.
        """
        value = self.get_metadata('last_sync')
        if not value:
            return None
        try:
            return models.parse_datetime(value)
        except ValueError:
            logging.warning(f'Invalid last sync date format in DB: {value}.')
            return None

    # ------------------------------------------------------------------ maintenance

    def setup_default_data(self) -> Optional[models.User]:
        """Create the default user and its default categories when the store has no user.

        Returns:
            Optional[models.User]: The created user, or None if a user already existed.
        """
        if self.query(EntityType.User, limit=1, include_deleted=True):
            return None

        user = self.insert(models.User(name=models.DEFAULT_USER_NAME))
        for name, icon, color, category_type, sort_order in models.DEFAULT_CATEGORIES:
            self.insert(models.Category(
                user_id=user.id,
                name=name,
                icon=icon,
                color=color,
                type=category_type,
                is_default=True,
                sort_order=sort_order,
            ))
        logging.info(f'Created default user and {len(models.DEFAULT_CATEGORIES)} default categories.')
        return user

    def consistency_check(self) -> int:
        """Reassign transactions that lost their category or user.

        Orphaned transactions get the first default category of their type (or any
        category of that type) and the first user. Repaired records become ``pending``.

        Returns:
            int: Number of repaired transactions.
        """
        users = self.query(EntityType.User, sort='created_at', limit=1)
        if not users:
            logging.debug('Consistency check skipped: the store has no user.')
            return 0
        user = users[0]

        orphans = self.query(
            EntityType.Transaction,
            lambda t: t.category_id is None or t.user_id is None
        )
        repaired = 0
        for transaction in orphans:
            if transaction.user_id is None or self.get(EntityType.User, transaction.user_id) is None:
                transaction.user_id = user.id
            if transaction.category_id is None:
                category_type = 'income' if transaction.type == 'income' else 'expense'
                categories = self.query(EntityType.Category, {'type': category_type}, sort='-is_default')
                if not categories:
                    logging.warning(f'No {category_type} category to assign to transaction "{transaction.id}".')
                    continue
                transaction.category_id = categories[0].id
            try:
                self.update(transaction)
            except status.ValidationError as ex:
                logging.warning(f'Could not repair transaction "{transaction.id}": {ex}')
                continue
            repaired += 1

        if repaired:
            logging.info(f'Consistency check repaired {repaired} transaction(s).')
        return repaired

    def cleanup_failed(self, retention_days: int = FAILED_RETENTION_DAYS) -> int:
        """Evict ``failed`` transactions whose last change is older than the retention window.

        Returns:
            int: Number of removed transactions.
        """
        cutoff = self._now() - datetime.timedelta(days=retention_days)
        failed = self.query(EntityType.Transaction, {'sync_status': SyncStatus.Failed})
        expired = [t for t in failed if t.updated_at is not None and t.updated_at < cutoff]
        if not expired:
            return 0

        with self.transaction() as conn:
            conn.executemany(
                f'DELETE FROM {models.Transaction.table} WHERE id = ? AND sync_status = ?',
                [(t.id, SyncStatus.Failed.value) for t in expired]
            )
        logging.info(f'Removed {len(expired)} failed transaction(s) older than {retention_days} days.')
        self._emit_changed(EntityType.Transaction)
        return len(expired)
