"""Sync engine reconciling the local store with a remote record store.

One run fetches the remote changes since the last cursor, then walks the entity types
in dependency order (users, categories, transactions, budgets). For each type it first
pushes the local changes queued at the start of the run, then applies the remote
changes. Conflicts reported by the remote store are resolved last-writer-wins on
``updated_at``; equal timestamps resolve to the remote copy.

Only one run can be active at a time. Runs either execute on the calling thread
(:meth:`SyncAPI.sync_now`) or on an :class:`FinanceTracker.core.service.AsyncWorker`
(:meth:`SyncAPI.start_sync`); both report through the same signals.
"""
import dataclasses
import datetime
import enum
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from PySide6 import QtCore

from . import models
from . import remote
from .database import LocalStore
from .models import EntityType, SyncStatus
from .remote import RemoteRecord, RemoteStore
from .service import AsyncWorker, call_with_timeout
from .tracker import ChangeTracker
from ..status import status

CURSOR_KEY = 'sync_cursor'
# Remote copies of records removed locally while they were being pushed
RETRACTIONS_KEY = 'pending_retractions'

DEFAULT_OPERATION_TIMEOUT = 30.0
DEFAULT_SYNC_TIMEOUT = 300.0
DEFAULT_MAX_CONFLICT_ATTEMPTS = 3

# Push order and share of the overall progress
PHASES: List[Tuple[EntityType, float]] = [
    (EntityType.User, 0.2),
    (EntityType.Category, 0.2),
    (EntityType.Transaction, 0.4),
    (EntityType.Budget, 0.2),
]


class SyncState(enum.StrEnum):
    """Enum of sync engine states."""
    Idle = 'idle'
    Syncing = 'syncing'
    Success = 'success'
    Failed = 'failed'


@dataclass
class SyncResult:
    """Outcome of one sync run."""
    state: SyncState = SyncState.Success
    reason: Optional[str] = None
    pushed: int = 0
    pulled: int = 0
    failed: int = 0
    conflicts: int = 0
    rejected: int = 0
    started_at: Optional[datetime.datetime] = None
    finished_at: Optional[datetime.datetime] = None
    errors: List[str] = field(default_factory=list)


class SyncAPI(QtCore.QObject):
    """Push local changes to and pull remote changes from a remote store.

    Signals:
        statusChanged (str, str): Emitted with the new state and its reason ('' if none).
        progressChanged (float): Emitted with the overall progress of the running sync, 0.0 to 1.0.
        syncFinished (object): Emitted with the :class:`SyncResult` of a finished run.
    """
    statusChanged = QtCore.Signal(str, str)
    progressChanged = QtCore.Signal(float)
    syncFinished = QtCore.Signal(object)

    def __init__(self, store: LocalStore, tracker: ChangeTracker, remote_store: RemoteStore,
                 operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
                 sync_timeout: float = DEFAULT_SYNC_TIMEOUT,
                 max_conflict_attempts: int = DEFAULT_MAX_CONFLICT_ATTEMPTS,
                 parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        self.store = store
        self.tracker = tracker
        self.remote = remote_store
        self.operation_timeout = operation_timeout
        self.sync_timeout = sync_timeout
        self.max_conflict_attempts = max_conflict_attempts

        self._lock = threading.Lock()
        self._state = SyncState.Idle
        self._reason: Optional[str] = None
        self._progress = 0.0
        self._worker: Optional[AsyncWorker] = None
        self._workers: List[AsyncWorker] = []
        self.last_result: Optional[SyncResult] = None

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def reason(self) -> Optional[str]:
        """Reason of the last failed run, or None."""
        return self._reason

    @property
    def error_message(self) -> str:
        return self._reason or ''

    @property
    def progress(self) -> float:
        return self._progress

    def is_syncing(self) -> bool:
        return self._state == SyncState.Syncing

    def last_sync_date(self) -> Optional[datetime.datetime]:
        """Return the time of the last successful sync, or None."""
        return self.store.get_last_sync()

    # ------------------------------------------------------------------ state

    def _try_begin(self) -> bool:
        with self._lock:
            if self._state == SyncState.Syncing:
                return False
            self._state = SyncState.Syncing
            self._reason = None
            self._progress = 0.0

        logging.info('Sync started.')
        self.statusChanged.emit(SyncState.Syncing.value, '')
        self.progressChanged.emit(0.0)
        return True

    def _finish(self, result: SyncResult) -> None:
        result.finished_at = models.as_utc(self.store.clock())
        with self._lock:
            self._state = result.state
            self._reason = result.reason
            self.last_result = result

        if result.state == SyncState.Success:
            logging.info(f'Sync finished: pushed {result.pushed}, pulled {result.pulled}.')
        else:
            logging.warning(f'Sync failed: {result.reason}')
        self.statusChanged.emit(result.state.value, result.reason or '')
        self.syncFinished.emit(result)

    def _set_progress(self, value: float) -> None:
        value = min(1.0, max(self._progress, value))
        if value == self._progress:
            return
        self._progress = value
        self.progressChanged.emit(value)

    # ------------------------------------------------------------------ entry points

    def sync_now(self) -> Optional[SyncResult]:
        """Run a full sync on the calling thread.

        Returns:
            Optional[SyncResult]: The run's result, or None if a sync was already running.
        """
        if not self._try_begin():
            logging.debug('Sync already running, request ignored.')
            return None
        return self._run_guarded()

    def start_sync(self) -> bool:
        """Start a full sync on a background thread.

        Returns:
            bool: False if a sync was already running.
        """
        if not self._try_begin():
            logging.debug('Sync already running, request ignored.')
            return False

        worker = AsyncWorker(self._run_guarded, max_attempts=1)
        worker.finished.connect(self._on_worker_finished)
        # Referenced until its finished signal is handled
        self._workers.append(worker)
        self._worker = worker
        worker.start()
        return True

    @QtCore.Slot()
    def _on_worker_finished(self) -> None:
        worker = self.sender()
        if not any(w is worker for w in self._workers):
            return
        worker.wait()
        self._workers = [w for w in self._workers if w is not worker]
        if self._worker is worker:
            self._worker = None

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the background sync thread exits.

        Returns:
            bool: False if the thread was still running after timeout seconds.
        """
        worker = self._worker
        if worker is None:
            return True
        if timeout is None:
            return worker.wait()
        return worker.wait(int(timeout * 1000))

    def _run_guarded(self) -> SyncResult:
        result = SyncResult(state=SyncState.Failed, started_at=models.as_utc(self.store.clock()))
        try:
            result = self._run(result)
        except status.BaseStatusException as ex:
            result.state = SyncState.Failed
            result.reason = str(ex)
        except Exception as ex:
            logging.exception('Unexpected error during sync.')
            result.state = SyncState.Failed
            result.reason = f'{type(ex).__name__}: {ex}'
        finally:
            self._finish(result)
        return result

    # ------------------------------------------------------------------ run

    def _call(self, func, *args, deadline: float):
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise status.RemoteTimeoutError(f'Sync did not complete within {self.sync_timeout}s.')
        return call_with_timeout(func, *args, timeout=min(self.operation_timeout, remaining))

    def _run(self, result: SyncResult) -> SyncResult:
        deadline = time.monotonic() + self.sync_timeout
        result.state = SyncState.Success

        cursor = self.store.get_metadata(CURSOR_KEY)
        try:
            records, new_cursor = self._call(self.remote.fetch_changed_since, cursor, deadline=deadline)
        except status.RemoteError as ex:
            result.state = SyncState.Failed
            result.reason = str(ex)
            return result
        logging.debug(f'Fetched {len(records)} remote change(s) since cursor {cursor!r}.')

        incoming: Dict[str, List[RemoteRecord]] = {}
        for record in records:
            incoming.setdefault(record.record_type, []).append(record)
        unknown = set(incoming) - {str(et) for et in EntityType}
        for record_type in unknown:
            logging.warning(f'Ignoring {len(incoming[record_type])} remote record(s) of unknown type "{record_type}".')
            result.rejected += len(incoming[record_type])

        # Edits made while the run is in flight are picked up by the next run
        queues = {entity_type: self.tracker.pending_records(entity_type) for entity_type, _ in PHASES}

        retracting = {tuple(item) for item in self._pending_retractions()}

        completed = 0.0
        try:
            self._flush_retractions(result, deadline)

            for entity_type, weight in PHASES:
                queue = queues[entity_type]
                pulls = incoming.get(str(entity_type), [])
                steps = len(queue) + len(pulls)

                for n, entity in enumerate(queue, start=1):
                    self._push_entity(entity, result, deadline)
                    self._set_progress(completed + weight * n / steps)

                queued = {entity.id for entity in queue}
                for n, record in enumerate(pulls, start=len(queue) + 1):
                    if record.record_name in queued:
                        logging.debug(f'Remote {entity_type} "{record.record_name}" was pushed in this run, skipped.')
                    elif (record.record_type, record.record_name) in retracting:
                        logging.debug(f'Remote {entity_type} "{record.record_name}" was removed locally, skipped.')
                    else:
                        self._pull(record, result)
                    self._set_progress(completed + weight * n / steps)

                completed += weight
                self._set_progress(completed)
        except status.RemoteError as ex:
            # Only transient errors escape _push_entity
            result.state = SyncState.Failed
            result.reason = str(ex)
            return result

        self.store.set_metadata(CURSOR_KEY, new_cursor)

        if result.failed:
            result.state = SyncState.Failed
            result.reason = f'{result.failed} record(s) failed to sync. {result.errors[0]}'
        else:
            self.store.stamp_last_sync()
        self._set_progress(1.0)
        return result

    # ------------------------------------------------------------------ push

    def _push_entity(self, entity: models.Entity, result: SyncResult, deadline: float) -> None:
        """Push one queued record, absorbing persistent errors into result.

        Raises:
            status.RemoteError: If the error is transient. The record stays queued.
        """
        try:
            if entity.sync_status == SyncStatus.Deleted:
                self._push_delete(entity, result, deadline)
            else:
                self._push(entity, result, deadline)
        except status.RemoteError as ex:
            if ex.transient:
                raise
            self.tracker.mark_failed(entity)
            result.failed += 1
            result.errors.append(str(ex))

    def _push(self, entity: models.Entity, result: SyncResult, deadline: float) -> None:
        record = remote.to_remote_record(entity)

        for attempt in range(1, self.max_conflict_attempts + 1):
            try:
                revision = self._call(self.remote.save, record, deadline=deadline)
            except status.ConflictError as ex:
                result.conflicts += 1
                server: RemoteRecord = ex.server_record
                if self._local_wins(entity, server):
                    logging.debug(f'{entity.entity_type} "{entity.id}" is newer locally, re-pushing '
                                  f'(attempt {attempt}/{self.max_conflict_attempts}).')
                    record = RemoteRecord(
                        record_type=record.record_type,
                        record_name=record.record_name,
                        fields={**server.fields, **record.fields},
                        change_tag=server.change_tag,
                    )
                    continue
                self._accept_remote(entity, server, result)
                return
            except status.RecordNotFoundError:
                logging.debug(f'{entity.entity_type} "{entity.id}" is missing remotely, creating it.')
                record = dataclasses.replace(record, change_tag=None)
                continue

            synced = self.tracker.mark_synced(entity, revision.change_tag, revision.modified_at)
            if not synced and self.store.get(entity.entity_type, entity.id, include_deleted=True) is None:
                self._retract(entity, deadline)
            result.pushed += 1
            return

        raise status.ConflictResolutionFailedError(
            f'{entity.entity_type} "{entity.id}" still conflicted after {self.max_conflict_attempts} attempts.'
        )

    @staticmethod
    def _local_wins(entity: models.Entity, server: RemoteRecord) -> bool:
        """Last-writer-wins. Equal timestamps go to the remote copy."""
        local_time = entity.updated_at
        remote_time = server.updated_at
        if local_time is None:
            return False
        if remote_time is None:
            return True
        return local_time > remote_time

    def _accept_remote(self, entity: models.Entity, server: RemoteRecord, result: SyncResult) -> None:
        try:
            merged = remote.from_remote(server, base=entity)
            self.store.apply_remote(merged, server.change_tag, server.modified_at,
                                    expected_updated_at=entity.updated_at)
        except status.ValidationError as ex:
            raise status.DataCorruptionError(
                f'Remote copy of {entity.entity_type} "{entity.id}" is invalid: {ex.message}'
            ) from ex
        logging.debug(f'{entity.entity_type} "{entity.id}" is newer remotely, local copy overwritten.')
        result.pulled += 1

    def _push_delete(self, entity: models.Entity, result: SyncResult, deadline: float) -> None:
        try:
            self._call(self.remote.delete, str(entity.entity_type), entity.id, deadline=deadline)
        except status.RecordNotFoundError:
            logging.debug(f'{entity.entity_type} "{entity.id}" was already deleted remotely.')
        self.store.purge(entity.entity_type, entity.id)
        result.pushed += 1

    def _pending_retractions(self) -> List[List[str]]:
        value = self.store.get_metadata(RETRACTIONS_KEY)
        return json.loads(value) if value else []

    def _set_pending_retractions(self, items: List[List[str]]) -> None:
        self.store.set_metadata(RETRACTIONS_KEY, json.dumps(items) if items else None)

    def _retract(self, entity: models.Entity, deadline: float) -> None:
        """Delete the remote copy of a record that was removed locally while it was being pushed.

        A deletion that cannot be sent is queued and sent at the start of the next run.

        Raises:
            status.RemoteError: If the remote deletion failed.
        """
        logging.debug(f'{entity.entity_type} "{entity.id}" was removed during its push, deleting the remote copy.')
        try:
            self._call(self.remote.delete, str(entity.entity_type), entity.id, deadline=deadline)
        except status.RecordNotFoundError:
            pass
        except status.RemoteError:
            items = self._pending_retractions()
            items.append([str(entity.entity_type), entity.id])
            self._set_pending_retractions(items)
            raise

    def _flush_retractions(self, result: SyncResult, deadline: float) -> None:
        """Send the remote deletions queued by earlier runs.

        Raises:
            status.RemoteError: If a deletion failed with a transient error.
        """
        items = self._pending_retractions()
        if not items:
            return

        remaining: List[List[str]] = []
        try:
            for n, (record_type, record_name) in enumerate(items):
                try:
                    self._call(self.remote.delete, record_type, record_name, deadline=deadline)
                except status.RecordNotFoundError:
                    pass
                except status.RemoteError as ex:
                    if ex.transient:
                        remaining.extend(items[n:])
                        raise
                    remaining.append([record_type, record_name])
                    result.failed += 1
                    result.errors.append(str(ex))
                    continue
                logging.debug(f'Deleted remote copy of {record_type} "{record_name}".')
                result.pushed += 1
        finally:
            self._set_pending_retractions(remaining)

    # ------------------------------------------------------------------ pull

    def _pull(self, record: RemoteRecord, result: SyncResult) -> None:
        entity_type = EntityType(record.record_type)
        local = self.store.get(entity_type, record.record_name, include_deleted=True)

        if local is not None and local.sync_status != SyncStatus.Synced:
            # Local changes win the queue; a conflicting push resolves them
            logging.debug(f'Skipping remote {entity_type} "{record.record_name}": local copy is {local.sync_status}.')
            return

        if record.deleted:
            if local is not None and self.store.purge(entity_type, record.record_name):
                result.pulled += 1
            return

        if local is not None and local.remote_change_tag == record.change_tag:
            return

        try:
            entity = remote.from_remote(record, base=local)
            applied = self.store.apply_remote(
                entity, record.change_tag, record.modified_at,
                expected_updated_at=local.updated_at if local else None,
            )
        except (status.ValidationError, status.DataCorruptionError) as ex:
            logging.warning(f'Rejected remote {entity_type} "{record.record_name}": {ex}')
            result.rejected += 1
            return
        if applied:
            result.pulled += 1
