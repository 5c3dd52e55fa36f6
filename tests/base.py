"""Unittest base class for creating a clean test environment."""
import datetime
import decimal
import logging
import os
import shutil
import tempfile
import time
import unittest
from pathlib import Path
from typing import Any, Callable, Optional

# Ensure headless Qt before any Qt object exists
os.environ.setdefault('QT_QPA_PLATFORM', 'offscreen')

from PySide6 import QtCore

from FinanceTracker.core import models
from FinanceTracker.core.database import LocalStore
from FinanceTracker.core.remote import InMemoryRemoteStore
from FinanceTracker.core.sync import SyncAPI
from FinanceTracker.core.tracker import ChangeTracker
from FinanceTracker.settings import lib


def process_events(duration: float = 0.0) -> None:
    """Process Qt events for duration seconds."""
    deadline = time.monotonic() + duration
    while True:
        QtCore.QCoreApplication.processEvents(QtCore.QEventLoop.AllEvents, 10)
        if time.monotonic() >= deadline:
            break
        time.sleep(0.005)


def wait_until(predicate: Callable[[], Any], timeout: float = 5.0) -> bool:
    """Process Qt events until predicate returns a truthy value or timeout seconds pass."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        QtCore.QCoreApplication.processEvents(QtCore.QEventLoop.AllEvents, 10)
        if predicate():
            return True
        time.sleep(0.005)
    return bool(predicate())


class FakeClock:
    """Settable clock returning aware UTC datetimes."""

    def __init__(self, start: Optional[datetime.datetime] = None) -> None:
        self.current = start or datetime.datetime(2025, 1, 15, 12, 0, 0, tzinfo=datetime.timezone.utc)

    def __call__(self) -> datetime.datetime:
        return self.current

    def advance(self, seconds: float = 1.0) -> datetime.datetime:
        self.current = self.current + datetime.timedelta(seconds=seconds)
        return self.current


class BaseTestCase(unittest.TestCase):
    """Base test case that sets up and tears down a temporary application data directory."""

    app_data_dir: str

    def setUp(self) -> None:
        """Set up a clean app data directory and a settings instance pointing to it."""
        # Ensure a QCoreApplication is available
        if not QtCore.QCoreApplication.instance():
            QtCore.QCoreApplication([])  # type: ignore
            logging.debug('QtCore.QCoreApplication initialized for tests.')

        self.app_data_dir = tempfile.mkdtemp(prefix='financetracker_test_')
        logging.debug(f'Created test app data directory at {self.app_data_dir}')

        self.settings = lib.SettingsAPI(app_data_dir=self.app_data_dir)

    def tearDown(self) -> None:
        """Remove the temporary app data directory."""
        if self.app_data_dir and os.path.isdir(self.app_data_dir):
            shutil.rmtree(self.app_data_dir, ignore_errors=True)
            logging.debug(f'Removed test app data directory {self.app_data_dir}')

    @property
    def db_dir(self) -> Path:
        return Path(self.app_data_dir) / 'db'


class BaseStoreTestCase(BaseTestCase):
    """Base test case providing a fresh local store with a default user and categories."""

    def setUp(self) -> None:
        super().setUp()
        self.clock = FakeClock()
        self.store = LocalStore(self.db_dir / 'test.sqlite', clock=self.clock)
        self.user = self.store.setup_default_data()
        self.food = self.store.insert(models.Category(user_id=self.user.id, name='Food', type='expense'))

    def make_transaction(self, amount: Any = '50', **kwargs: Any) -> models.Transaction:
        values = dict(
            user_id=self.user.id,
            category_id=self.food.id,
            amount=decimal.Decimal(str(amount)),
            type='expense',
            date=self.clock() - datetime.timedelta(days=1),
        )
        values.update(kwargs)
        return models.Transaction(**values)

    def make_budget(self, **kwargs: Any) -> models.Budget:
        values = dict(
            user_id=self.user.id,
            category_id=self.food.id,
            name='Groceries',
            amount=decimal.Decimal('400'),
            period='monthly',
            start_date=datetime.datetime(2025, 1, 1, tzinfo=datetime.timezone.utc),
        )
        values.update(kwargs)
        return models.Budget(**values)


class BaseSyncTestCase(BaseStoreTestCase):
    """Base test case wiring a store, tracker and sync engine to an in-memory remote store."""

    def setUp(self) -> None:
        super().setUp()
        self.remote = InMemoryRemoteStore(clock=self.clock)
        self.tracker = ChangeTracker(self.store, debounce_interval=10)
        self.sync = SyncAPI(self.store, self.tracker, self.remote, operation_timeout=5, sync_timeout=30)

    def tearDown(self) -> None:
        self.sync.wait(10)
        super().tearDown()

    def make_device(self, name: str) -> 'Device':
        """Create a second device sharing the same remote store and clock."""
        store = LocalStore(self.db_dir / f'{name}.sqlite', clock=self.clock)
        tracker = ChangeTracker(store, debounce_interval=10)
        sync = SyncAPI(store, tracker, self.remote, operation_timeout=5, sync_timeout=30)
        return Device(store, tracker, sync)


class Device:
    """Store, tracker and sync engine of one simulated device."""

    def __init__(self, store: LocalStore, tracker: ChangeTracker, sync: SyncAPI) -> None:
        self.store = store
        self.tracker = tracker
        self.sync = sync
