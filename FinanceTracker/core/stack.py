"""Construction of the sync components from the application settings.

:class:`SyncStack` owns one instance of every component for a store file and passes
the references between them explicitly.
"""
import datetime
import logging
from typing import Callable, Optional

from . import models
from . import service
from .connectivity import ConnectivityMonitor, SyncStatusSnapshot
from .database import LocalStore
from .migration import MigrationManager
from .remote import InMemoryRemoteStore, RemoteStore
from .sync import SyncAPI
from .tracker import ChangeTracker
from ..settings.lib import SettingsAPI
from ..status import status


class SyncStack:
    """Open the local store and assemble the sync components around it.

    Attributes:
        settings (SettingsAPI): The application settings.
        migrations (MigrationManager): Schema manager of the store file.
        store (LocalStore): The local store, set by :meth:`open`.
        tracker (ChangeTracker): Pending change bookkeeping, set by :meth:`open`.
        remote (RemoteStore): The remote store backend, set by :meth:`open`.
        sync (SyncAPI): The sync engine, set by :meth:`open`.
        monitor (ConnectivityMonitor): Network monitor, set by :meth:`open`.
    """

    def __init__(self, settings: Optional[SettingsAPI] = None, remote: Optional[RemoteStore] = None,
                 clock: Optional[Callable[[], datetime.datetime]] = None) -> None:
        self.settings = settings or SettingsAPI()
        self.clock = clock or models.now
        self.migrations = MigrationManager(self.settings.store_path, clock=self.clock)

        self.store: Optional[LocalStore] = None
        self.tracker: Optional[ChangeTracker] = None
        self.remote: Optional[RemoteStore] = remote
        self.sync: Optional[SyncAPI] = None
        self.monitor: Optional[ConnectivityMonitor] = None

    def open(self) -> 'SyncStack':
        """Migrate the store if needed, run store maintenance and build the components.

        Raises:
            status.MigrationException: If the store cannot be migrated. The store is
                restored from its backup first.
            status.StoreInvalidException: If the store cannot be opened.
        """
        self._migrate_if_needed()

        migration_config = self.settings.get_section('migration')
        self.migrations.cleanup_backups(migration_config['backup_retention_seconds'])

        maintenance_config = self.settings.get_section('maintenance')
        self.store = LocalStore(self.settings.store_path, clock=self.clock)
        self.store.setup_default_data()
        self.store.consistency_check()
        self.store.cleanup_failed(maintenance_config['failed_retention_days'])

        sync_config = self.settings.get_section('sync')
        self.tracker = ChangeTracker(self.store, debounce_interval=sync_config['debounce_interval'])

        if self.remote is None:
            self.remote = self._build_remote()

        self.sync = SyncAPI(
            self.store,
            self.tracker,
            self.remote,
            operation_timeout=sync_config['operation_timeout'],
            sync_timeout=sync_config['sync_timeout'],
            max_conflict_attempts=sync_config['max_conflict_attempts'],
        )

        connectivity_config = self.settings.get_section('connectivity')
        self.monitor = ConnectivityMonitor(
            self.tracker,
            self.sync,
            stabilization_delay=connectivity_config['stabilization_delay'],
            probe_host=connectivity_config['probe_host'],
            probe_port=connectivity_config['probe_port'],
            probe_interval=connectivity_config['probe_interval'],
            probe_timeout=connectivity_config['probe_timeout'],
            remote_change_delay=connectivity_config['remote_change_delay'],
            refresh_interval=connectivity_config['refresh_interval'],
        )
        self.remote.add_change_listener(self.monitor.notify_remote_change)
        logging.info(f'Opened store {self.settings.store_path}')
        return self

    def _migrate_if_needed(self) -> None:
        if not self.migrations.requires_migration():
            return

        backup = self.migrations.create_backup()
        try:
            self.migrations.migrate()
        except status.MigrationException:
            self.migrations.restore_backup(backup)
            raise

    def _build_remote(self) -> RemoteStore:
        config = self.settings.get_section('remote')
        backend = config['backend']
        if backend == 'memory':
            logging.debug('Using the in-memory remote store.')
            return InMemoryRemoteStore(clock=self.clock)

        creds = service.get_creds(config.get('service_account_path', ''))
        return service.SheetsRemoteStore(
            service.get_service(creds),
            config.get('spreadsheet_id', ''),
            config.get('worksheet', ''),
            clock=self.clock,
        )

    def status(self) -> SyncStatusSnapshot:
        """Return the sync state published to the rest of the application."""
        if self.sync is None or self.monitor is None:
            raise RuntimeError('The sync stack is not open.')
        return SyncStatusSnapshot(
            is_online=self.monitor.is_online,
            pending_count=self.tracker.pending_count(),
            sync_status=self.sync.state,
            last_sync_timestamp=self.sync.last_sync_date(),
            reason=self.sync.reason,
        )

    def close(self) -> None:
        """Stop network monitoring and wait for a running sync to finish."""
        if self.monitor is not None:
            self.monitor.stop()
        if self.sync is not None:
            self.sync.wait()
        logging.debug('Sync stack closed.')
