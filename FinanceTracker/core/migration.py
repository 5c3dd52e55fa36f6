"""Schema versions of the local store and the manager that upgrades between them.

The store schema evolves along a linear chain of versions. Each step from one version
to the next is described by a :class:`MigrationStep`, whose mapping either copies the
shared columns of every table (an inferred mapping) or runs custom code on top of that.

Migrations never modify the canonical store file in place: the store is staged into a
temporary ``<store>.migration-vN`` file, every step writes a new temporary file, and
only the fully migrated result replaces the original.
"""
import datetime
import logging
import os
import pathlib
import shutil
import sqlite3
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from PySide6 import QtCore

from . import models
from ..status import status

CURRENT_VERSION = 3
META_TABLE = 'store_metadata'
SIDE_FILE_SUFFIXES: Tuple[str, ...] = ('-wal', '-shm')
BACKUP_INFIX = '.backup-'
BACKUP_TIMESTAMP_FORMAT = '%Y%m%dT%H%M%S%fZ'
DEFAULT_BACKUP_RETENTION = 300

ColumnList = List[Tuple[str, str]]

_V1_COLUMNS: Dict[str, ColumnList] = {
    'users': [
        ('id', 'TEXT PRIMARY KEY'),
        ('created_at', 'TEXT'),
        ('updated_at', 'TEXT'),
        ('currency_code', "TEXT NOT NULL DEFAULT 'USD'"),
        ('name', 'TEXT'),
        ('preferences', 'BLOB'),
    ],
    'categories': [
        ('id', 'TEXT PRIMARY KEY'),
        ('created_at', 'TEXT'),
        ('updated_at', 'TEXT'),
        ('user_id', 'TEXT'),
        ('name', 'TEXT NOT NULL'),
        ('type', 'TEXT NOT NULL'),
        ('color', "TEXT NOT NULL DEFAULT '#007AFF'"),
        ('icon', "TEXT NOT NULL DEFAULT 'folder'"),
        ('is_default', 'INTEGER NOT NULL DEFAULT 0'),
        ('sort_order', 'INTEGER NOT NULL DEFAULT 0'),
    ],
    'transactions': [
        ('id', 'TEXT PRIMARY KEY'),
        ('created_at', 'TEXT'),
        ('updated_at', 'TEXT'),
        ('user_id', 'TEXT'),
        ('category_id', 'TEXT'),
        ('amount', 'TEXT NOT NULL'),
        ('type', 'TEXT NOT NULL'),
        ('date', 'TEXT NOT NULL'),
        ('notes', 'TEXT'),
        ('receipt_image', 'BLOB'),
    ],
    'budgets': [
        ('id', 'TEXT PRIMARY KEY'),
        ('created_at', 'TEXT'),
        ('updated_at', 'TEXT'),
        ('user_id', 'TEXT'),
        ('category_id', 'TEXT'),
        ('name', 'TEXT NOT NULL'),
        ('amount', 'TEXT NOT NULL'),
        ('period', 'TEXT NOT NULL'),
        ('start_date', 'TEXT NOT NULL'),
        ('end_date', 'TEXT'),
        ('is_active', 'INTEGER NOT NULL DEFAULT 1'),
    ],
}

_V2_ADDITIONS: Dict[str, ColumnList] = {
    'users': [
        ('remote_record_id', 'TEXT'),
        ('last_sync_date', 'TEXT'),
    ],
    'transactions': [
        ('sync_status', "TEXT NOT NULL DEFAULT 'pending'"),
    ],
}

_V3_ADDITIONS: Dict[str, ColumnList] = {
    'users': [
        ('sync_status', "TEXT NOT NULL DEFAULT 'pending'"),
        ('remote_change_tag', 'TEXT'),
        ('remote_modified_at', 'TEXT'),
    ],
    'categories': [
        ('sync_status', "TEXT NOT NULL DEFAULT 'pending'"),
        ('remote_change_tag', 'TEXT'),
        ('remote_modified_at', 'TEXT'),
    ],
    'transactions': [
        ('remote_change_tag', 'TEXT'),
        ('remote_modified_at', 'TEXT'),
    ],
    'budgets': [
        ('sync_status', "TEXT NOT NULL DEFAULT 'pending'"),
        ('remote_change_tag', 'TEXT'),
        ('remote_modified_at', 'TEXT'),
    ],
}


def _extend(base: Dict[str, ColumnList], additions: Dict[str, ColumnList]) -> Dict[str, ColumnList]:
    return {table: columns + additions.get(table, []) for table, columns in base.items()}


SCHEMAS: Dict[int, Dict[str, ColumnList]] = {1: _V1_COLUMNS}
SCHEMAS[2] = _extend(SCHEMAS[1], _V2_ADDITIONS)
SCHEMAS[3] = _extend(SCHEMAS[2], _V3_ADDITIONS)

# Indexes that keep the pending-count and push-queue lookups off full table scans
SCHEMA_INDEXES: Dict[int, List[str]] = {
    1: [],
    2: ['CREATE INDEX IF NOT EXISTS idx_transactions_sync_status ON transactions (sync_status)'],
    3: [f'CREATE INDEX IF NOT EXISTS idx_{table}_sync_status ON {table} (sync_status)'
        for table in ('users', 'categories', 'transactions', 'budgets')],
}


def create_schema(conn: sqlite3.Connection, version: int = CURRENT_VERSION) -> None:
    """Create the tables of a schema version on an empty database and record the version.

    Args:
        conn: Connection to the (empty) target database.
        version: Schema version to create.

    Raises:
        status.UnknownStoreVersionError: If version is not part of the version chain.
    """
    if version not in SCHEMAS:
        raise status.UnknownStoreVersionError(f'Cannot create schema v{version}.')

    for table, columns in SCHEMAS[version].items():
        columns_sql = ', '.join(f'"{name}" {typedef}' for name, typedef in columns)
        conn.execute(f'CREATE TABLE {table} ({columns_sql})')
    for statement in SCHEMA_INDEXES[version]:
        conn.execute(statement)

    conn.execute(f'CREATE TABLE IF NOT EXISTS {META_TABLE} (key TEXT PRIMARY KEY, value TEXT)')
    write_schema_version(conn, version)


def write_schema_version(conn: sqlite3.Connection, version: int) -> None:
    conn.execute(
        f'INSERT OR REPLACE INTO {META_TABLE} (key, value) VALUES (?, ?)',
        ('schema_version', str(version))
    )


def read_schema_version(conn: sqlite3.Connection) -> Optional[int]:
    """Return the schema version recorded in a store, or None for an empty database.

    Raises:
        status.UnknownStoreVersionError: If the database has tables but no readable version.
    """
    tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
    if not tables:
        return None
    if META_TABLE not in tables:
        raise status.UnknownStoreVersionError(f'The store has no "{META_TABLE}" table.')

    row = conn.execute(f'SELECT value FROM {META_TABLE} WHERE key = ?', ('schema_version',)).fetchone()
    if not row or row[0] is None:
        raise status.UnknownStoreVersionError('The store has no recorded schema version.')
    try:
        return int(row[0])
    except ValueError as ex:
        raise status.UnknownStoreVersionError(f'Invalid schema version "{row[0]}".') from ex


def copy_shared_columns(conn: sqlite3.Connection, source_schema: str = 'source') -> None:
    """Inferred mapping: copy every table's columns that exist in both the attached source and main.

    Columns new to the destination keep their declared defaults.
    """
    source_tables = {
        row[0] for row in conn.execute(f"SELECT name FROM {source_schema}.sqlite_master WHERE type='table'")
    }
    for table in conn.execute("SELECT name FROM main.sqlite_master WHERE type='table'").fetchall():
        table = table[0]
        if table == META_TABLE or table not in source_tables:
            continue
        destination_columns = [row[1] for row in conn.execute(f'PRAGMA main.table_info({table})')]
        source_columns = {row[1] for row in conn.execute(f'PRAGMA {source_schema}.table_info({table})')}
        shared = [c for c in destination_columns if c in source_columns]
        if not shared:
            continue
        columns_sql = ', '.join(f'"{c}"' for c in shared)
        conn.execute(
            f'INSERT INTO main.{table} ({columns_sql}) SELECT {columns_sql} FROM {source_schema}.{table}'
        )
        logging.debug(f'Copied columns [{", ".join(shared)}] of "{table}".')


def _map_v2_to_v3(conn: sqlite3.Connection) -> None:
    """Custom mapping for v2 -> v3.

    Users that already have a remote record are marked synced, everything else that
    gains a sync status starts out pending. Budget end dates are recomputed from the
    start date and period, because v2 stores could hold stale values.
    """
    copy_shared_columns(conn)
    conn.execute(
        "UPDATE main.users SET sync_status = 'synced' WHERE remote_record_id IS NOT NULL"
    )

    rows = conn.execute('SELECT id, start_date, period FROM main.budgets').fetchall()
    for budget_id, start_date, period in rows:
        if period not in models.BUDGET_PERIODS or not start_date:
            logging.warning(f'Budget "{budget_id}" has an invalid period or start date; end date cleared.')
            end_date = None
        else:
            end_date = models.compute_end_date(models.parse_datetime(start_date), period).isoformat()
        conn.execute('UPDATE main.budgets SET end_date = ? WHERE id = ?', (end_date, budget_id))


@dataclass(frozen=True)
class MigrationStep:
    """One step of the version chain."""
    source: int
    destination: int
    mapping: Optional[Callable[[sqlite3.Connection], None]] = None  # None means inferred

    def apply(self, conn: sqlite3.Connection) -> None:
        if self.mapping is None:
            copy_shared_columns(conn)
        else:
            self.mapping(conn)


# Keyed by source version
MIGRATION_STEPS: Dict[int, MigrationStep] = {
    1: MigrationStep(1, 2),
    2: MigrationStep(2, 3, _map_v2_to_v3),
}


def side_files(path: pathlib.Path) -> List[pathlib.Path]:
    """Return the write-ahead log and shared-memory file paths belonging to a database file."""
    return [path.with_name(path.name + suffix) for suffix in SIDE_FILE_SUFFIXES]


def copy_database(source: pathlib.Path, destination: pathlib.Path) -> None:
    """Copy a database file together with any side files, removing stale side files at the destination."""
    shutil.copy2(source, destination)
    for source_side, destination_side in zip(side_files(source), side_files(destination)):
        if source_side.exists():
            shutil.copy2(source_side, destination_side)
        elif destination_side.exists():
            destination_side.unlink()


def remove_database(path: pathlib.Path) -> None:
    """Remove a database file and its side files if they exist."""
    for p in [path] + side_files(path):
        if p.exists():
            p.unlink()


class MigrationManager(QtCore.QObject):
    """Detects schema version mismatches of one store file and upgrades it.

    Signals:
        progressChanged (int, int): steps_done, steps_total while migrating.
    """
    progressChanged = QtCore.Signal(int, int)

    def __init__(self, path, clock: Optional[Callable[[], datetime.datetime]] = None,
                 parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        self.path = pathlib.Path(path)
        self.clock = clock or models.now
        self._progress: Optional[Dict[str, int]] = None

    def _connect(self, path: pathlib.Path) -> sqlite3.Connection:
        return sqlite3.connect(str(path), timeout=2.0)

    def current_version(self) -> Optional[int]:
        """Return the schema version of the store, or None if the store does not exist yet.

        Raises:
            status.UnknownStoreVersionError: If the version cannot be read.
        """
        if not self.path.exists():
            return None

        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self._connect(self.path)
            return read_schema_version(conn)
        except sqlite3.DatabaseError as ex:
            raise status.UnknownStoreVersionError(f'Cannot read schema version of {self.path}: {ex}') from ex
        finally:
            if conn:
                conn.close()

    def requires_migration(self) -> bool:
        """Return True when the store exists and is not at the current schema version."""
        version = self.current_version()
        return version is not None and version != CURRENT_VERSION

    def migration_progress(self) -> Dict[str, int]:
        """Return ``{'steps_total', 'steps_done'}`` of the running or last migration.

        Before any migration has run, reports the steps the store still needs.
        """
        if self._progress is not None:
            return dict(self._progress)

        try:
            version = self.current_version()
        except status.UnknownStoreVersionError:
            version = None
        steps_total = CURRENT_VERSION - version if version in SCHEMAS else 0
        return {'steps_total': steps_total, 'steps_done': 0}

    def _set_progress(self, steps_done: int, steps_total: int) -> None:
        self._progress = {'steps_total': steps_total, 'steps_done': steps_done}
        self.progressChanged.emit(steps_done, steps_total)

    def _steps_from(self, version: int) -> List[MigrationStep]:
        steps: List[MigrationStep] = []
        while version != CURRENT_VERSION:
            step = MIGRATION_STEPS.get(version)
            if step is None:
                raise status.MappingModelNotFoundError(f'No mapping from schema v{version}.')
            steps.append(step)
            version = step.destination
        return steps

    def _staging_path(self, version: int) -> pathlib.Path:
        return self.path.with_name(f'{self.path.name}.migration-v{version}')

    def migrate(self) -> None:
        """Upgrade the store to the current schema version.

        Raises:
            status.UnknownStoreVersionError: If the stored version is not recognized.
            status.MappingModelNotFoundError: If a step of the chain is missing.
            status.MigrationFailedError: If any step fails. The original store is left untouched.
        """
        version = self.current_version()
        if version is None:
            logging.debug(f'No store at {self.path}, nothing to migrate.')
            return
        if version not in SCHEMAS:
            raise status.UnknownStoreVersionError(f'Schema v{version} of {self.path} is not recognized.')
        if version == CURRENT_VERSION:
            logging.debug(f'Store {self.path} is already at schema v{CURRENT_VERSION}.')
            return

        steps = self._steps_from(version)
        total = len(steps)
        logging.info(f'Migrating {self.path} from schema v{version} to v{CURRENT_VERSION} in {total} step(s).')
        self._set_progress(0, total)

        staged: List[pathlib.Path] = []
        try:
            source = self._staging_path(version)
            remove_database(source)
            copy_database(self.path, source)
            staged.append(source)
            self._checkpoint(source)

            for done, step in enumerate(steps, start=1):
                destination = self._staging_path(step.destination)
                remove_database(destination)
                staged.append(destination)
                self._run_step(step, source, destination)
                remove_database(source)
                source = destination
                self._set_progress(done, total)

            self._swap_into_place(source)
        except status.BaseStatusException:
            for p in staged:
                remove_database(p)
            raise
        except Exception as ex:
            for p in staged:
                remove_database(p)
            raise status.MigrationFailedError(f'{type(ex).__name__}: {ex}') from ex

        logging.info(f'Store {self.path} migrated to schema v{CURRENT_VERSION}.')

    def _checkpoint(self, path: pathlib.Path) -> None:
        """Fold the write-ahead log into the staged copy and leave it in rollback-journal mode."""
        conn = self._connect(path)
        try:
            conn.execute('PRAGMA wal_checkpoint(TRUNCATE)')
            conn.execute('PRAGMA journal_mode=DELETE')
        finally:
            conn.close()
        for p in side_files(path):
            if p.exists():
                p.unlink()

    def _run_step(self, step: MigrationStep, source: pathlib.Path, destination: pathlib.Path) -> None:
        logging.debug(f'Running migration step v{step.source} -> v{step.destination}.')
        conn = self._connect(destination)
        try:
            create_schema(conn, step.destination)
            conn.commit()
            conn.execute('ATTACH DATABASE ? AS source', (str(source),))
            step.apply(conn)
            write_schema_version(conn, step.destination)
            conn.commit()
            conn.execute('DETACH DATABASE source')
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _swap_into_place(self, migrated: pathlib.Path) -> None:
        for p in side_files(self.path):
            if p.exists():
                p.unlink()
        os.replace(migrated, self.path)

    def create_backup(self) -> pathlib.Path:
        """Copy the store and its side files to a timestamp-suffixed backup.

        Returns:
            pathlib.Path: Path of the backup's main file.

        Raises:
            status.BackupFailedError: If the copy fails.
        """
        stamp = models.as_utc(self.clock()).strftime(BACKUP_TIMESTAMP_FORMAT)
        backup = self.path.with_name(f'{self.path.name}{BACKUP_INFIX}{stamp}')
        try:
            copy_database(self.path, backup)
        except OSError as ex:
            remove_database(backup)
            raise status.BackupFailedError(f'Could not back up {self.path}: {ex}') from ex
        logging.info(f'Backed up {self.path} to {backup}')
        return backup

    def restore_backup(self, backup) -> None:
        """Replace the store and its side files with a backup.

        Raises:
            status.BackupFailedError: If the backup is missing or the copy fails.
        """
        backup = pathlib.Path(backup)
        if not backup.exists():
            raise status.BackupFailedError(f'Backup {backup} does not exist.')
        try:
            copy_database(backup, self.path)
        except OSError as ex:
            raise status.BackupFailedError(f'Could not restore {backup}: {ex}') from ex
        logging.info(f'Restored {self.path} from {backup}')

    def list_backups(self) -> List[Tuple[pathlib.Path, datetime.datetime]]:
        """Return the store's backups with their timestamps, oldest first."""
        prefix = f'{self.path.name}{BACKUP_INFIX}'
        backups = []
        for p in self.path.parent.glob(f'{prefix}*'):
            if p.name.endswith(SIDE_FILE_SUFFIXES):
                continue
            try:
                created = datetime.datetime.strptime(p.name[len(prefix):], BACKUP_TIMESTAMP_FORMAT)
            except ValueError:
                logging.debug(f'Ignoring unrecognized backup name "{p.name}".')
                continue
            backups.append((p, created.replace(tzinfo=datetime.timezone.utc)))
        return sorted(backups, key=lambda item: item[1])

    def cleanup_backups(self, max_age: int = DEFAULT_BACKUP_RETENTION) -> int:
        """Remove backups older than max_age seconds.

        Returns:
            int: Number of backups removed.
        """
        cutoff = models.as_utc(self.clock()) - datetime.timedelta(seconds=max_age)
        removed = 0
        for backup, created in self.list_backups():
            if created < cutoff:
                remove_database(backup)
                removed += 1
                logging.debug(f'Removed expired backup {backup}')
        return removed
