"""
Tests for FinanceTracker.core.service
(the worksheet-backed remote store, error translation and the worker helpers).

The Sheets API is replaced by an in-memory worksheet that understands the value
ranges the remote store uses.

Run:
    python -m unittest tests.test_service
"""
import json
import re
import socket
import threading
import time
import unittest
from typing import Any, Callable, Dict, List, Optional

import httplib2
from googleapiclient.errors import HttpError

from FinanceTracker.core import service as svc
from FinanceTracker.core.models import EntityType, SyncStatus
from FinanceTracker.core.remote import RemoteRecord
from FinanceTracker.core.sync import SyncState
from FinanceTracker.status import status
from tests.base import BaseSyncTestCase, BaseTestCase, FakeClock, wait_until


def http_error(code: int, reason: str = '') -> HttpError:
    content = {'error': {'code': code, 'message': reason or 'error'}}
    if reason:
        content['error']['errors'] = [{'reason': reason}]
    return HttpError(httplib2.Response({'status': code}), json.dumps(content).encode('utf-8'))


class FakeRequest:
    def __init__(self, func: Callable[[], Dict[str, Any]], worksheet: 'FakeWorksheet') -> None:
        self.func = func
        self.worksheet = worksheet

    def execute(self) -> Dict[str, Any]:
        if self.worksheet.fail_next is not None:
            ex, self.worksheet.fail_next = self.worksheet.fail_next, None
            raise ex
        return self.func()


class FakeWorksheet:
    """In-memory stand-in for ``service.spreadsheets().values()``."""

    def __init__(self) -> None:
        self.rows: List[List[Any]] = []
        self.fail_next: Optional[Exception] = None
        self.requests: List[str] = []

    # service.spreadsheets().values()
    def spreadsheets(self) -> 'FakeWorksheet':
        return self

    def values(self) -> 'FakeWorksheet':
        return self

    @staticmethod
    def _rows(range_: str):
        cells = range_.split('!', 1)[1]
        start, _, end = cells.partition(':')
        first = int(re.sub(r'[A-Z]', '', start))
        last = re.sub(r'[A-Z]', '', end)
        return first, int(last) if last else None

    def get(self, spreadsheetId: str, range: str) -> FakeRequest:
        self.requests.append('get')
        first, last = self._rows(range)

        def run():
            rows = self.rows[first - 1:last]
            return {'values': [list(r) for r in rows]} if rows else {}
        return FakeRequest(run, self)

    def update(self, spreadsheetId: str, range: str, valueInputOption: str, body: Dict[str, Any]) -> FakeRequest:
        self.requests.append('update')
        first, _ = self._rows(range)

        def run():
            while len(self.rows) < first:
                self.rows.append([])
            self.rows[first - 1] = [str(v) for v in body['values'][0]]
            return {}
        return FakeRequest(run, self)

    def append(self, spreadsheetId: str, range: str, valueInputOption: str, insertDataOption: str,
               body: Dict[str, Any]) -> FakeRequest:
        self.requests.append('append')

        def run():
            self.rows.append([str(v) for v in body['values'][0]])
            return {}
        return FakeRequest(run, self)


def record(name: str = 'tx-1', **fields: Any) -> RemoteRecord:
    return RemoteRecord(record_type='Transaction', record_name=name, fields=fields or {'notes': 'lunch'})


class SheetsRemoteStoreTest(unittest.TestCase):

    def setUp(self) -> None:
        self.sheet = FakeWorksheet()
        self.clock = FakeClock()
        self.remote = svc.SheetsRemoteStore(self.sheet, 'spreadsheet-id', 'Records', clock=self.clock)

    def test_configuration_required(self):
        with self.assertRaises(status.SpreadsheetIdNotConfiguredException):
            svc.SheetsRemoteStore(self.sheet, '', 'Records')
        with self.assertRaises(status.SpreadsheetWorksheetNotConfiguredException):
            svc.SheetsRemoteStore(self.sheet, 'spreadsheet-id', '')

    def test_header_is_written_once(self):
        self.assertEqual(self.sheet.rows, [])
        self.remote.fetch_changed_since(None)
        self.assertEqual(self.sheet.rows, [svc.HEADER])

        self.remote.save(record())
        self.remote.fetch_changed_since(None)
        self.assertEqual(self.sheet.requests.count('update'), 1)

    def test_save_and_fetch(self):
        revision = self.remote.save(record(notes='lunch'))
        self.assertEqual(revision.record_name, 'tx-1')
        self.assertEqual(revision.modified_at, self.clock())

        records, cursor = self.remote.fetch_changed_since(None)
        self.assertEqual(len(records), 1)
        self.assertEqual(records[0].fields, {'notes': 'lunch'})
        self.assertEqual(records[0].change_tag, revision.change_tag)
        self.assertFalse(records[0].deleted)

        self.assertEqual(self.remote.fetch_changed_since(cursor), ([], cursor))

        self.remote.save(record('tx-2'))
        records, _ = self.remote.fetch_changed_since(cursor)
        self.assertEqual([r.record_name for r in records], ['tx-2'])

    def test_update_with_change_tag(self):
        first = self.remote.save(record(notes='lunch'))
        updated = record(notes='dinner')
        updated.change_tag = first.change_tag
        second = self.remote.save(updated)

        self.assertNotEqual(first.change_tag, second.change_tag)
        records, _ = self.remote.fetch_changed_since(None)
        self.assertEqual(len(records), 1)
        self.assertEqual(records[0].fields['notes'], 'dinner')
        # Header plus one record row
        self.assertEqual(len(self.sheet.rows), 2)

    def test_optimistic_concurrency(self):
        first = self.remote.save(record())

        with self.assertRaises(status.ConflictError) as ctx:
            self.remote.save(record())
        self.assertEqual(ctx.exception.server_record.change_tag, first.change_tag)

        stale = record()
        stale.change_tag = 'stale'
        with self.assertRaises(status.ConflictError):
            self.remote.save(stale)

        missing = record('tx-missing')
        missing.change_tag = 'any'
        with self.assertRaises(status.RecordNotFoundError):
            self.remote.save(missing)

    def test_delete_keeps_tombstone(self):
        self.remote.save(record())
        _, cursor = self.remote.fetch_changed_since(None)
        self.remote.delete('Transaction', 'tx-1')

        records, _ = self.remote.fetch_changed_since(cursor)
        self.assertEqual(len(records), 1)
        self.assertTrue(records[0].deleted)

        with self.assertRaises(status.RecordNotFoundError):
            self.remote.delete('Transaction', 'tx-1')
        # A deleted record can be created again
        self.remote.save(record())

    def test_corrupt_row(self):
        self.remote.ensure_header()
        self.sheet.rows.append(['Transaction', 'tx-1', 'tag', 'yesterday', '1', 'FALSE', '{}'])
        with self.assertRaises(status.DataCorruptionError):
            self.remote.fetch_changed_since(None)

    def test_invalid_cursor(self):
        with self.assertRaises(status.DataCorruptionError):
            self.remote.fetch_changed_since('not-a-number')

    def test_http_errors_are_translated(self):
        self.sheet.fail_next = http_error(429)
        with self.assertRaises(status.RateLimitedError):
            self.remote.fetch_changed_since(None)

        self.sheet.fail_next = socket.timeout('timed out')
        with self.assertRaises(status.RemoteTimeoutError):
            self.remote.fetch_changed_since(None)

        self.sheet.fail_next = ConnectionRefusedError('refused')
        with self.assertRaises(status.NetworkUnavailableError):
            self.remote.save(record())


class ErrorTranslationTest(unittest.TestCase):

    def test_translate(self):
        cases = [
            (http_error(429), status.RateLimitedError, True),
            (http_error(403, 'userRateLimitExceeded'), status.RateLimitedError, True),
            (http_error(403, 'quotaExceeded'), status.QuotaExceededError, False),
            (http_error(503), status.NetworkUnavailableError, True),
            (http_error(400, 'badRequest'), status.UnknownRemoteError, False),
        ]
        for ex, expected, transient in cases:
            with self.subTest(expected=expected.__name__):
                translated = svc.translate_http_error(ex)
                self.assertIsInstance(translated, expected)
                self.assertEqual(translated.transient, transient)


class CredentialsTest(BaseTestCase):

    def test_missing_file(self):
        with self.assertRaises(status.CredsNotFoundException):
            svc.get_creds('')
        with self.assertRaises(status.CredsNotFoundException):
            svc.get_creds(f'{self.app_data_dir}/missing.json')

    def test_invalid_file(self):
        path = f'{self.app_data_dir}/creds.json'
        for content in ('not json', '{}'):
            with self.subTest(content=content):
                with open(path, 'w', encoding='utf-8') as f:
                    f.write(content)
                with self.assertRaises(status.CredsInvalidException):
                    svc.get_creds(path)


class WorkerHelpersTest(BaseTestCase):

    def test_call_with_timeout(self):
        self.assertEqual(svc.call_with_timeout(lambda a, b=0: a + b, 1, b=2, timeout=1.0), 3)

        with self.assertRaises(status.QuotaExceededError):
            svc.call_with_timeout(self._raise, status.QuotaExceededError(), timeout=1.0)

        started = time.monotonic()
        with self.assertRaises(status.RemoteTimeoutError):
            svc.call_with_timeout(time.sleep, 1.0, timeout=0.1)
        self.assertLess(time.monotonic() - started, 0.9)

    def test_call_runs_on_worker_thread(self):
        threads = []
        svc.call_with_timeout(lambda: threads.append(threading.get_ident()), timeout=1.0)
        self.assertEqual(len(threads), 1)
        self.assertNotEqual(threads[0], threading.get_ident())

    def test_overrunning_worker_is_kept_until_finished(self):
        with self.assertRaises(status.RemoteTimeoutError):
            svc.call_with_timeout(time.sleep, 0.5, timeout=0.05)
        self.assertTrue(any(w.isRunning() for w in svc._overrun_workers))
        self.assertTrue(wait_until(lambda: all(w.isFinished() for w in svc._overrun_workers), timeout=2.0))

        # Finished workers are released by the next call
        self.assertEqual(svc.call_with_timeout(lambda: 'ok', timeout=1.0), 'ok')
        self.assertEqual(svc._overrun_workers, [])

    @staticmethod
    def _raise(ex: Exception) -> None:
        raise ex

    def run_worker(self, func: Callable[[], Any]):
        results, errors = [], []
        worker = svc.AsyncWorker(func, max_attempts=3, wait_seconds=0.01)
        worker.resultReady.connect(results.append)
        worker.errorOccurred.connect(errors.append)
        worker.start()
        self.assertTrue(worker.wait(5000))
        wait_until(lambda: results or errors, timeout=2.0)
        return results, errors

    def test_worker_retries_transient_errors(self):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise status.NetworkUnavailableError()
            return 'ok'

        results, errors = self.run_worker(flaky)
        self.assertEqual(results, ['ok'])
        self.assertEqual(errors, [])
        self.assertEqual(len(calls), 3)

    def test_worker_reports_persistent_errors_at_once(self):
        calls = []

        def broken():
            calls.append(1)
            raise status.QuotaExceededError()

        results, errors = self.run_worker(broken)
        self.assertEqual(results, [])
        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], status.QuotaExceededError)
        self.assertEqual(len(calls), 1)


class SheetsSyncTest(BaseSyncTestCase):

    def setUp(self) -> None:
        super().setUp()
        self.sheet = FakeWorksheet()
        self.sync.remote = svc.SheetsRemoteStore(self.sheet, 'spreadsheet-id', 'Records', clock=self.clock)

    def test_two_devices_share_worksheet(self):
        t = self.store.insert(self.make_transaction(notes='lunch'))
        self.assertEqual(self.sync.sync_now().state, SyncState.Success)
        self.assertEqual(self.store.get(EntityType.Transaction, t.id).sync_status, SyncStatus.Synced)

        other = self.make_device('other')
        other.sync.remote = self.sync.remote
        self.assertEqual(other.sync.sync_now().state, SyncState.Success)
        pulled = other.store.get(EntityType.Transaction, t.id)
        self.assertEqual(pulled.notes, 'lunch')
        self.assertEqual(pulled.amount, t.amount)

        self.clock.advance(5)
        pulled.notes = 'dinner'
        other.store.update(pulled)
        other.sync.sync_now()

        self.sync.sync_now()
        self.assertEqual(self.store.get(EntityType.Transaction, t.id).notes, 'dinner')
        self.assertEqual(self.tracker.pending_count(), 0)


if __name__ == '__main__':
    unittest.main()
