"""Google Sheets remote store and the worker helpers used to reach remote stores.

Provides:
    - Service account credentials and the Sheets API client.
    - :class:`SheetsRemoteStore`, a :class:`FinanceTracker.core.remote.RemoteStore` kept in one worksheet.
    - Translation of Google API and socket errors into :class:`status.RemoteError` subclasses.
    - :func:`call_with_timeout` and :class:`AsyncWorker` for running blocking remote calls.
"""

import json
import logging
import pathlib
import socket
import ssl
import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

from PySide6 import QtCore
from google.auth.exceptions import GoogleAuthError
from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from . import models
from .remote import RemoteRecord, RemoteStore, RevisionInfo
from ..status import status

SCOPES: List[str] = ['https://www.googleapis.com/auth/spreadsheets']

MAX_RETRIES: int = 3

HEADER: List[str] = ['record_type', 'record_name', 'change_tag', 'modified_at', 'sequence', 'deleted', 'fields']
LAST_COLUMN: str = 'G'

# Workers still running after their caller stopped waiting for them
_overrun_workers: List['AsyncWorker'] = []

RATE_LIMIT_REASONS = ('rateLimitExceeded', 'userRateLimitExceeded')
QUOTA_REASONS = ('quotaExceeded', 'dailyLimitExceeded')


def get_creds(service_account_path: str) -> service_account.Credentials:
    """Load service account credentials from a JSON key file.

    Raises:
        status.CredsNotFoundException: If the key file does not exist.
        status.CredsInvalidException: If the key file cannot be parsed.
    """
    path = pathlib.Path(service_account_path) if service_account_path else None
    if not path or not path.exists():
        raise status.CredsNotFoundException(str(service_account_path))

    try:
        creds = service_account.Credentials.from_service_account_file(str(path), scopes=SCOPES)
    except (ValueError, json.JSONDecodeError, GoogleAuthError) as ex:
        raise status.CredsInvalidException(str(ex)) from ex
    logging.debug(f'Loaded service account credentials for {creds.service_account_email}')
    return creds


def get_service(creds: Any) -> Any:
    """Build a Google Sheets service client.

    Returns:
        The Sheets API Resource.
    """
    service = build('sheets', 'v4', credentials=creds, cache_discovery=False)
    logging.debug('Google Sheets service client created successfully.')
    return service


def _error_reason(ex: HttpError) -> str:
    try:
        content = json.loads(ex.content.decode('utf-8'))
        errors = content.get('error', {}).get('errors', [])
        if errors:
            return errors[0].get('reason', '')
        return content.get('error', {}).get('status', '')
    except (ValueError, AttributeError):
        return ''


def translate_http_error(ex: HttpError) -> status.RemoteError:
    """Map a Google API HTTP error to the matching remote error."""
    code: Optional[int] = ex.resp.status if ex.resp is not None else None
    reason = _error_reason(ex)

    if code == 429 or reason in RATE_LIMIT_REASONS:
        return status.RateLimitedError(f'HTTP {code} {reason}'.strip())
    if reason in QUOTA_REASONS:
        return status.QuotaExceededError(f'HTTP {code} {reason}'.strip())
    if code is not None and code >= 500:
        return status.NetworkUnavailableError(f'HTTP {code}: service unavailable.')
    return status.UnknownRemoteError(f'HTTP {code}: {ex}')


def _execute(request: Any) -> Dict[str, Any]:
    """Execute a Google API request, raising remote errors only."""
    try:
        return request.execute() or {}
    except HttpError as ex:
        raise translate_http_error(ex) from ex
    except (socket.timeout, TimeoutError) as ex:
        raise status.RemoteTimeoutError(f'Timeout error: {ex}') from ex
    except ssl.SSLError as ex:
        raise status.NetworkUnavailableError(f'SSL error: {ex}') from ex
    except (ConnectionError, OSError) as ex:
        raise status.NetworkUnavailableError(f'Connection error: {ex}') from ex


class SheetsRemoteStore(RemoteStore):
    """Remote store kept in one Google Sheets worksheet, one record per row.

    Row layout follows :data:`HEADER`; domain fields are stored as a JSON object in the
    last column. Each save reads the worksheet, checks the change tag and writes the row.
    The check and the write are separate API calls, so two clients saving the same record
    at the same instant can both succeed.
    """

    def __init__(self, service: Any, spreadsheet_id: str, worksheet: str,
                 clock: Optional[Callable[[], Any]] = None) -> None:
        if not spreadsheet_id:
            raise status.SpreadsheetIdNotConfiguredException
        if not worksheet:
            raise status.SpreadsheetWorksheetNotConfiguredException

        self.service = service
        self.spreadsheet_id = spreadsheet_id
        self.worksheet = worksheet
        self.clock = clock or models.now
        self.lock = threading.Lock()
        self._header_verified = False

    def _values(self) -> Any:
        return self.service.spreadsheets().values()

    def ensure_header(self) -> None:
        """Write the header row if the worksheet does not have it."""
        result = _execute(self._values().get(
            spreadsheetId=self.spreadsheet_id,
            range=f'{self.worksheet}!A1:{LAST_COLUMN}1',
        ))
        rows = result.get('values', [])
        if rows and rows[0] == HEADER:
            self._header_verified = True
            return
        logging.info(f'Writing record header to worksheet "{self.worksheet}".')
        _execute(self._values().update(
            spreadsheetId=self.spreadsheet_id,
            range=f'{self.worksheet}!A1:{LAST_COLUMN}1',
            valueInputOption='RAW',
            body={'values': [HEADER]},
        ))
        self._header_verified = True

    @staticmethod
    def _parse_row(row: List[Any]) -> Tuple[RemoteRecord, int]:
        row = list(row) + [''] * (len(HEADER) - len(row))
        record_type, record_name, change_tag, modified_at, sequence, deleted, fields = row[:len(HEADER)]
        try:
            record = RemoteRecord(
                record_type=str(record_type),
                record_name=str(record_name),
                fields=json.loads(fields) if fields else {},
                change_tag=str(change_tag) or None,
                modified_at=models.parse_datetime(modified_at),
                deleted=str(deleted).upper() == 'TRUE',
            )
            return record, int(sequence or 0)
        except (ValueError, TypeError) as ex:
            raise status.DataCorruptionError(f'Cannot parse worksheet row {row!r}: {ex}') from ex

    @staticmethod
    def _format_row(record: RemoteRecord, sequence: int) -> List[Any]:
        return [
            record.record_type,
            record.record_name,
            record.change_tag or '',
            record.modified_at.isoformat() if record.modified_at else '',
            sequence,
            'TRUE' if record.deleted else 'FALSE',
            json.dumps(record.fields, sort_keys=True),
        ]

    def _read_all(self) -> Tuple[Dict[Tuple[str, str], Tuple[int, RemoteRecord, int]], int]:
        """Return ``{(type, name): (sheet row number, record, sequence)}`` and the highest sequence."""
        if not self._header_verified:
            self.ensure_header()
        result = _execute(self._values().get(
            spreadsheetId=self.spreadsheet_id,
            range=f'{self.worksheet}!A2:{LAST_COLUMN}',
        ))
        index: Dict[Tuple[str, str], Tuple[int, RemoteRecord, int]] = {}
        highest = 0
        for offset, row in enumerate(result.get('values', [])):
            if not row or not row[0]:
                continue
            record, sequence = self._parse_row(row)
            index[(record.record_type, record.record_name)] = (offset + 2, record, sequence)
            highest = max(highest, sequence)
        return index, highest

    def _write(self, row_number: Optional[int], record: RemoteRecord, sequence: int) -> None:
        body = {'values': [self._format_row(record, sequence)]}
        if row_number is None:
            _execute(self._values().append(
                spreadsheetId=self.spreadsheet_id,
                range=f'{self.worksheet}!A1:{LAST_COLUMN}',
                valueInputOption='RAW',
                insertDataOption='INSERT_ROWS',
                body=body,
            ))
        else:
            _execute(self._values().update(
                spreadsheetId=self.spreadsheet_id,
                range=f'{self.worksheet}!A{row_number}:{LAST_COLUMN}{row_number}',
                valueInputOption='RAW',
                body=body,
            ))

    def save(self, record: RemoteRecord) -> RevisionInfo:
        with self.lock:
            index, highest = self._read_all()
            key = (record.record_type, record.record_name)
            row_number, existing, _ = index.get(key, (None, None, 0))

            if record.change_tag is None:
                if existing is not None and not existing.deleted:
                    raise status.ConflictError(existing, f'{record.record_type} "{record.record_name}" already exists.')
            else:
                if existing is None or existing.deleted:
                    raise status.RecordNotFoundError(f'{record.record_type} "{record.record_name}"')
                if existing.change_tag != record.change_tag:
                    raise status.ConflictError(existing,
                                               f'{record.record_type} "{record.record_name}" changed on the server.')

            stored = RemoteRecord(
                record_type=record.record_type,
                record_name=record.record_name,
                fields=dict(record.fields),
                change_tag=uuid.uuid4().hex,
                modified_at=models.as_utc(self.clock()),
            )
            self._write(row_number, stored, highest + 1)
            logging.debug(f'Saved {stored.record_type} "{stored.record_name}" to the worksheet.')
            return RevisionInfo(stored.record_name, stored.change_tag, stored.modified_at)

    def delete(self, record_type: str, record_name: str) -> None:
        with self.lock:
            index, highest = self._read_all()
            row_number, existing, _ = index.get((record_type, record_name), (None, None, 0))
            if existing is None or existing.deleted:
                raise status.RecordNotFoundError(f'{record_type} "{record_name}"')
            tombstone = RemoteRecord(
                record_type=record_type,
                record_name=record_name,
                change_tag=uuid.uuid4().hex,
                modified_at=models.as_utc(self.clock()),
                deleted=True,
            )
            self._write(row_number, tombstone, highest + 1)
            logging.debug(f'Deleted {record_type} "{record_name}" from the worksheet.')

    def fetch_changed_since(self, cursor: Optional[str]) -> Tuple[List[RemoteRecord], Optional[str]]:
        try:
            since = int(cursor) if cursor else 0
        except ValueError as ex:
            raise status.DataCorruptionError(f'Invalid change cursor "{cursor}".') from ex

        index, highest = self._read_all()
        changed = sorted(((seq, record) for _, record, seq in index.values() if seq > since), key=lambda x: x[0])
        return [record for _, record in changed], str(max(highest, since))


def call_with_timeout(func: Callable[..., Any], *args: Any, timeout: float, **kwargs: Any) -> Any:
    """Run a blocking call on an :class:`AsyncWorker` and wait at most timeout seconds for it.

    The caller waits in a local event loop that the worker's result or a single-shot
    timer ends. A worker that overruns is not terminated; it is kept referenced until it
    finishes and its late result is discarded.

    Raises:
        status.RemoteTimeoutError: If the call does not complete in time.
        Exception: Whatever the call raised.
    """
    global _overrun_workers
    _overrun_workers = [w for w in _overrun_workers if not w.isFinished()]

    name = getattr(func, '__name__', 'call')
    worker = AsyncWorker(func, *args, max_attempts=1, **kwargs)
    result: Dict[str, Any] = {'data': None, 'error': None, 'done': False}
    loop = QtCore.QEventLoop()

    def on_result(data: Any) -> None:
        result.update({'data': data, 'done': True})
        loop.quit()

    def on_error(err: Exception) -> None:
        result.update({'error': err, 'done': True})
        loop.quit()

    # Called on the worker thread; QEventLoop.quit is thread-safe
    worker.resultReady.connect(on_result, QtCore.Qt.DirectConnection)
    worker.errorOccurred.connect(on_error, QtCore.Qt.DirectConnection)

    timer = QtCore.QTimer()
    timer.setSingleShot(True)
    timer.setInterval(max(0, int(timeout * 1000)))
    timer.timeout.connect(loop.quit)

    def begin() -> None:
        worker.start()
        timer.start()

    # Started from inside the loop so a quick result cannot quit it before it runs
    QtCore.QTimer.singleShot(0, begin)
    loop.exec()
    timer.stop()

    if not result['done']:
        _overrun_workers.append(worker)
        raise status.RemoteTimeoutError(f'{name} took longer than {timeout}s.')

    worker.wait()
    if result['error'] is not None:
        raise result['error']
    return result['data']


class AsyncWorker(QtCore.QThread):
    """
    Generic worker thread with retry logic for blocking functions.

    Only transient remote errors are retried; every other error is reported at once.

    Signals:
        resultReady (object): Emitted with the function's result on success.
        errorOccurred (object): Emitted with the exception on failure.
    """
    resultReady = QtCore.Signal(object)
    errorOccurred = QtCore.Signal(object)

    def __init__(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        super().__init__()
        self.func = func
        self.args = args

        self.max_attempts = kwargs.pop('max_attempts', MAX_RETRIES)
        self.wait_seconds = kwargs.pop('wait_seconds', 2.0)
        self.kwargs = kwargs

    def run(self) -> None:
        attempts = 0
        last_exception: Optional[Exception] = None
        while attempts < self.max_attempts:
            attempts += 1
            try:
                result = self.func(*self.args, **self.kwargs)
                self.resultReady.emit(result)
                return
            except status.RemoteError as ex:
                if not ex.transient:
                    self.errorOccurred.emit(ex)
                    return
                last_exception = ex
                logging.debug(f'Attempt {attempts}/{self.max_attempts} failed: {ex}')
                if attempts < self.max_attempts:
                    time.sleep(self.wait_seconds)
                    self.wait_seconds *= 1.5
            except Exception as ex:
                self.errorOccurred.emit(ex)
                return
        # All retries exhausted
        self.errorOccurred.emit(last_exception)
