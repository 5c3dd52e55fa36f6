"""Remote record store interface and the in-memory implementation.

A remote store keeps one record per ``(record_type, record_name)`` together with an
opaque change tag that changes on every save. Saves use optimistic concurrency:

- A save without a change tag creates the record and fails with
  :class:`status.ConflictError` if a live record already exists.
- A save with a change tag updates the record and fails with
  :class:`status.ConflictError` if the tag is stale, or with
  :class:`status.RecordNotFoundError` if the record does not exist.
"""
import copy
import dataclasses
import datetime
import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from . import models
from ..status import status


@dataclass
class RemoteRecord:
    """A record as held by the remote store."""
    record_type: str
    record_name: str
    fields: Dict[str, Any] = field(default_factory=dict)
    change_tag: Optional[str] = None
    modified_at: Optional[datetime.datetime] = None
    deleted: bool = False

    @property
    def updated_at(self) -> Optional[datetime.datetime]:
        """The record's own last-change time, falling back to the server modification time."""
        value = self.fields.get('updated_at')
        if value:
            try:
                return models.parse_datetime(value)
            except ValueError:
                logging.debug(f'Invalid updated_at "{value}" on remote record "{self.record_name}".')
        return self.modified_at


@dataclass(frozen=True)
class RevisionInfo:
    """Server acknowledgement of a save."""
    record_name: str
    change_tag: str
    modified_at: datetime.datetime


def to_remote_record(entity: models.Entity) -> RemoteRecord:
    """Build the remote record for a local entity, carrying its last acknowledged change tag."""
    return RemoteRecord(
        record_type=str(entity.entity_type),
        record_name=entity.id,
        fields=entity.to_record_fields(),
        change_tag=entity.remote_change_tag,
    )


def from_remote(record: RemoteRecord, base: Optional[models.Entity] = None) -> models.Entity:
    """Build a local entity from a remote record.

    Args:
        record: The remote record.
        base: The local copy of the record, if any. Device-local fields are taken from it.

    Raises:
        status.DataCorruptionError: If the record type is unknown or a field cannot be decoded.
    """
    try:
        cls_ = models.entity_class(record.record_type)
    except (ValueError, KeyError) as ex:
        raise status.DataCorruptionError(f'Unknown record type "{record.record_type}".') from ex
    if base is None:
        base = cls_(id=record.record_name)
    return base.apply_remote_fields(record.fields)


class RemoteStore:
    """Interface of a remote record store.

    Implementations raise :class:`status.RemoteError` subclasses only.
    """

    def save(self, record: RemoteRecord) -> RevisionInfo:
        """Create or update a record. See the module docstring for the concurrency rules."""
        raise NotImplementedError

    def delete(self, record_type: str, record_name: str) -> None:
        """Delete a record.

        Raises:
            status.RecordNotFoundError: If the record does not exist.
        """
        raise NotImplementedError

    def fetch_changed_since(self, cursor: Optional[str]) -> Tuple[List[RemoteRecord], Optional[str]]:
        """Return the records created, changed or deleted after cursor, and the new cursor.

        A None cursor returns every record.
        """
        raise NotImplementedError

    def add_change_listener(self, callback: Callable[[], None]) -> None:
        """Register callback to be called when the store learns of changes made elsewhere.

        Stores without change notifications ignore the callback; their changes are picked
        up by periodic refreshes instead.
        """
        pass


class InMemoryRemoteStore(RemoteStore):
    """Thread-safe remote store held in memory.

    Keeps deletions as tombstones so other devices can pull them. Used as the default
    backend and in tests, where :attr:`fail_with` can inject errors.
    """

    def __init__(self, clock: Optional[Callable[[], datetime.datetime]] = None) -> None:
        self.clock = clock or models.now
        self.lock = threading.Lock()
        self._records: Dict[Tuple[str, str], RemoteRecord] = {}
        self._sequence: Dict[Tuple[str, str], int] = {}
        self._counter = 0

        #: Optional callable ``(operation, record_type, record_name) -> Optional[Exception]``
        self.fail_with: Optional[Callable[[str, str, str], Optional[Exception]]] = None
        self.calls: List[Tuple[str, str, str]] = []
        self._listeners: List[Callable[[], None]] = []

    def add_change_listener(self, callback: Callable[[], None]) -> None:
        self._listeners.append(callback)

    def _notify(self) -> None:
        for callback in list(self._listeners):
            callback()

    def _check_failure(self, operation: str, record_type: str, record_name: str) -> None:
        self.calls.append((operation, record_type, record_name))
        if self.fail_with is None:
            return
        ex = self.fail_with(operation, record_type, record_name)
        if ex is not None:
            raise ex

    def _stamp(self, key: Tuple[str, str], record: RemoteRecord) -> RemoteRecord:
        self._counter += 1
        record.change_tag = uuid.uuid4().hex
        record.modified_at = models.as_utc(self.clock())
        self._records[key] = record
        self._sequence[key] = self._counter
        return record

    def save(self, record: RemoteRecord) -> RevisionInfo:
        with self.lock:
            self._check_failure('save', record.record_type, record.record_name)
            key = (record.record_type, record.record_name)
            existing = self._records.get(key)

            if record.change_tag is None:
                if existing is not None and not existing.deleted:
                    raise status.ConflictError(copy.deepcopy(existing),
                                               f'{record.record_type} "{record.record_name}" already exists.')
            else:
                if existing is None or existing.deleted:
                    raise status.RecordNotFoundError(f'{record.record_type} "{record.record_name}"')
                if existing.change_tag != record.change_tag:
                    raise status.ConflictError(copy.deepcopy(existing),
                                               f'{record.record_type} "{record.record_name}" changed on the server.')

            stored = self._stamp(key, RemoteRecord(
                record_type=record.record_type,
                record_name=record.record_name,
                fields=copy.deepcopy(record.fields),
            ))
            return RevisionInfo(stored.record_name, stored.change_tag, stored.modified_at)

    def delete(self, record_type: str, record_name: str) -> None:
        with self.lock:
            self._check_failure('delete', record_type, record_name)
            key = (record_type, record_name)
            existing = self._records.get(key)
            if existing is None or existing.deleted:
                raise status.RecordNotFoundError(f'{record_type} "{record_name}"')
            self._stamp(key, RemoteRecord(record_type=record_type, record_name=record_name, deleted=True))

    def fetch_changed_since(self, cursor: Optional[str]) -> Tuple[List[RemoteRecord], Optional[str]]:
        with self.lock:
            self._check_failure('fetch', '', cursor or '')
            since = int(cursor) if cursor else 0
            keys = sorted((seq, key) for key, seq in self._sequence.items() if seq > since)
            records = [copy.deepcopy(self._records[key]) for _, key in keys]
            return records, str(self._counter)

    def get(self, record_type: str, record_name: str) -> Optional[RemoteRecord]:
        """Return a copy of a live record, or None."""
        with self.lock:
            record = self._records.get((str(record_type), record_name))
            if record is None or record.deleted:
                return None
            return copy.deepcopy(record)

    def put(self, record: RemoteRecord) -> RevisionInfo:
        """Write a record unconditionally, as another device would.

        Change listeners are notified. Returns the new revision.
        """
        with self.lock:
            key = (record.record_type, record.record_name)
            stored = self._stamp(key, dataclasses.replace(record, fields=copy.deepcopy(record.fields)))
            revision = RevisionInfo(stored.record_name, stored.change_tag, stored.modified_at)
        self._notify()
        return revision

    def records(self, record_type: Optional[str] = None) -> List[RemoteRecord]:
        """Return copies of all live records, optionally of one type."""
        with self.lock:
            return [
                copy.deepcopy(r) for (t, _), r in self._records.items()
                if not r.deleted and (record_type is None or t == str(record_type))
            ]
