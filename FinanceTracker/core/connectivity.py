"""Network reachability and the sync queue status derived from it.

:class:`ConnectivityMonitor` tracks whether the device is online and starts a sync once a
connection has been stable for a short while. It also starts syncs that pull remote
changes. It publishes a :class:`QueueStatus` derived from the online flag, the pending
change count and the sync engine's state.
"""
import datetime
import enum
import logging
from dataclasses import dataclass
from typing import Optional

from PySide6 import QtCore, QtNetwork

from .sync import SyncAPI, SyncState
from .tracker import ChangeTracker

DEFAULT_STABILIZATION_DELAY = 2000
DEFAULT_PROBE_HOST = 'www.google.com'
DEFAULT_PROBE_PORT = 443
DEFAULT_PROBE_INTERVAL = 15000
DEFAULT_PROBE_TIMEOUT = 5000
DEFAULT_REMOTE_CHANGE_DELAY = 5000
DEFAULT_REFRESH_INTERVAL = 300000


class QueueState(enum.StrEnum):
    """Enum of sync queue states."""
    Empty = 'empty'
    Pending = 'pending'
    Syncing = 'syncing'
    Failed = 'failed'


@dataclass(frozen=True)
class QueueStatus:
    """State of the sync queue."""
    state: QueueState
    count: int = 0
    reason: Optional[str] = None

    def description(self) -> str:
        """Return a short human-readable description of the queue."""
        if self.state == QueueState.Syncing:
            return 'Syncing changes…'
        if self.state == QueueState.Failed:
            return f'Sync failed: {self.reason}' if self.reason else 'Sync failed.'
        if self.state == QueueState.Pending:
            noun = 'change' if self.count == 1 else 'changes'
            return f'{self.count} {noun} waiting to sync.'
        return 'All changes synced.'


def queue_status(is_online: bool, pending_count: int, sync_state: SyncState,
                 reason: Optional[str] = None) -> QueueStatus:
    """Derive the queue status from the online flag, pending count and sync state.

    A failed sync is only reported while online; offline, the queued changes are
    simply pending.
    """
    if sync_state == SyncState.Syncing:
        return QueueStatus(QueueState.Syncing, pending_count)
    if sync_state == SyncState.Failed and is_online:
        return QueueStatus(QueueState.Failed, pending_count, reason)
    if pending_count > 0:
        return QueueStatus(QueueState.Pending, pending_count)
    return QueueStatus(QueueState.Empty)


@dataclass(frozen=True)
class SyncStatusSnapshot:
    """Sync state published to the rest of the application."""
    is_online: bool
    pending_count: int
    sync_status: SyncState
    last_sync_timestamp: Optional[datetime.datetime]
    reason: Optional[str] = None


class ReachabilityProbe(QtCore.QObject):
    """Periodically opens a TCP connection to a host to tell if the network is reachable.

    Signals:
        reachabilityChanged (bool): Emitted with the result of every probe.
    """
    reachabilityChanged = QtCore.Signal(bool)

    def __init__(self, host: str = DEFAULT_PROBE_HOST, port: int = DEFAULT_PROBE_PORT,
                 interval: int = DEFAULT_PROBE_INTERVAL, timeout: int = DEFAULT_PROBE_TIMEOUT,
                 parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        self.host = host
        self.port = port

        self._socket: Optional[QtNetwork.QTcpSocket] = None

        self._interval_timer = QtCore.QTimer(self)
        self._interval_timer.setInterval(interval)
        self._interval_timer.timeout.connect(self.probe)

        self._timeout_timer = QtCore.QTimer(self)
        self._timeout_timer.setSingleShot(True)
        self._timeout_timer.setInterval(timeout)
        self._timeout_timer.timeout.connect(self._on_timeout)

    def start(self) -> None:
        self.probe()
        self._interval_timer.start()

    def stop(self) -> None:
        self._interval_timer.stop()
        self._timeout_timer.stop()
        self._discard_socket()

    def is_active(self) -> bool:
        return self._interval_timer.isActive()

    @QtCore.Slot()
    def probe(self) -> None:
        """Start a single connection attempt unless one is in flight."""
        if self._socket is not None:
            return
        sock = QtNetwork.QTcpSocket(self)
        sock.connected.connect(self._on_connected)
        sock.errorOccurred.connect(self._on_error)
        self._socket = sock
        self._timeout_timer.start()
        sock.connectToHost(self.host, self.port)

    def _discard_socket(self) -> None:
        sock, self._socket = self._socket, None
        if sock is None:
            return
        sock.blockSignals(True)
        sock.abort()
        sock.deleteLater()

    def _report(self, reachable: bool) -> None:
        self._timeout_timer.stop()
        self._discard_socket()
        self.reachabilityChanged.emit(reachable)

    @QtCore.Slot()
    def _on_connected(self) -> None:
        self._report(True)

    @QtCore.Slot(QtNetwork.QAbstractSocket.SocketError)
    def _on_error(self, error) -> None:
        logging.debug(f'Reachability probe of {self.host}:{self.port} failed: {error}')
        self._report(False)

    @QtCore.Slot()
    def _on_timeout(self) -> None:
        logging.debug(f'Reachability probe of {self.host}:{self.port} timed out.')
        self._report(False)


class ConnectivityMonitor(QtCore.QObject):
    """Gate sync attempts on network reachability.

    Remote changes are pulled by a sync started when the remote store reports a change
    (coalesced over the remote change delay) and, while online, every refresh interval.

    Signals:
        onlineChanged (bool): Emitted when the online flag changes.
        queueStatusChanged (object): Emitted with the new :class:`QueueStatus` when it changes.
        remoteChangeNotified (): Emitted by :meth:`notify_remote_change`.
    """
    onlineChanged = QtCore.Signal(bool)
    queueStatusChanged = QtCore.Signal(object)
    remoteChangeNotified = QtCore.Signal()

    def __init__(self, tracker: ChangeTracker, sync: SyncAPI,
                 stabilization_delay: int = DEFAULT_STABILIZATION_DELAY,
                 probe_host: str = DEFAULT_PROBE_HOST, probe_port: int = DEFAULT_PROBE_PORT,
                 probe_interval: int = DEFAULT_PROBE_INTERVAL, probe_timeout: int = DEFAULT_PROBE_TIMEOUT,
                 remote_change_delay: int = DEFAULT_REMOTE_CHANGE_DELAY,
                 refresh_interval: int = DEFAULT_REFRESH_INTERVAL,
                 parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        self.tracker = tracker
        self.sync = sync

        self._is_online = False
        self._pending_count = tracker.pending_count()

        self._stabilization_timer = QtCore.QTimer(self)
        self._stabilization_timer.setSingleShot(True)
        self._stabilization_timer.setInterval(stabilization_delay)
        self._stabilization_timer.timeout.connect(self._on_stabilized)

        self._remote_change_timer = QtCore.QTimer(self)
        self._remote_change_timer.setSingleShot(True)
        self._remote_change_timer.setInterval(remote_change_delay)
        self._remote_change_timer.timeout.connect(self.request_refresh)

        # 0 disables periodic refreshes
        self.refresh_interval = refresh_interval
        self._refresh_timer = QtCore.QTimer(self)
        self._refresh_timer.setInterval(max(refresh_interval, 0))
        self._refresh_timer.timeout.connect(self.request_refresh)

        self._probe = ReachabilityProbe(probe_host, probe_port, probe_interval, probe_timeout, parent=self)
        self._network_information: Optional[QtNetwork.QNetworkInformation] = None

        self._queue_status = self.queue_status()

        self._connect_signals()

    def _connect_signals(self) -> None:
        self.tracker.pendingCountChanged.connect(self._on_pending_count_changed)
        self.sync.statusChanged.connect(self._on_sync_status_changed, QtCore.Qt.QueuedConnection)
        self._probe.reachabilityChanged.connect(self.set_online)
        # Notifications may arrive on any thread
        self.remoteChangeNotified.connect(self._on_remote_change_notified, QtCore.Qt.QueuedConnection)

    @property
    def is_online(self) -> bool:
        return self._is_online

    @property
    def pending_count(self) -> int:
        return self._pending_count

    def queue_status(self) -> QueueStatus:
        return queue_status(self._is_online, self._pending_count, self.sync.state, self.sync.reason)

    def queue_status_description(self) -> str:
        return self.queue_status().description()

    def _refresh_queue_status(self) -> None:
        current = self.queue_status()
        if current == self._queue_status:
            return
        self._queue_status = current
        logging.debug(f'Queue status: {current.description()}')
        self.queueStatusChanged.emit(current)

    @QtCore.Slot(int)
    def _on_pending_count_changed(self, count: int) -> None:
        self._pending_count = count
        self._refresh_queue_status()

    @QtCore.Slot(str, str)
    def _on_sync_status_changed(self, state: str, reason: str) -> None:
        self._refresh_queue_status()

    @QtCore.Slot(bool)
    def set_online(self, online: bool) -> None:
        """Update the online flag. Going online schedules a sync after the stabilization delay."""
        online = bool(online)
        if online == self._is_online:
            return

        self._is_online = online
        logging.info(f'Network is {"online" if online else "offline"}.')
        if online:
            self._stabilization_timer.start()
            if self.refresh_interval > 0:
                self._refresh_timer.start()
        else:
            self._stabilization_timer.stop()
            self._remote_change_timer.stop()
            self._refresh_timer.stop()

        self.onlineChanged.emit(online)
        self._refresh_queue_status()

    @QtCore.Slot()
    def _on_stabilized(self) -> None:
        if not self._is_online:
            return
        if not self.tracker.has_outgoing_changes():
            logging.debug('Connection stable, nothing to sync.')
            return
        logging.debug('Connection stable, starting sync.')
        self.sync.start_sync()

    def notify_remote_change(self) -> None:
        """Report a change made on the remote store by another device. Safe to call from any thread."""
        self.remoteChangeNotified.emit()

    @QtCore.Slot()
    def _on_remote_change_notified(self) -> None:
        self._remote_change_timer.start()

    @QtCore.Slot()
    def request_refresh(self) -> bool:
        """Start a sync to pull remote changes, whether or not there are local changes.

        Returns:
            bool: True if a sync was started.
        """
        if not self._is_online:
            logging.debug('Offline, remote refresh skipped.')
            return False
        logging.debug('Pulling remote changes.')
        return self.sync.start_sync()

    def retry_failed(self) -> int:
        """Queue every failed record again and, if online, start a sync.

        Returns:
            int: Number of records queued again.
        """
        count = self.tracker.reset_failed()
        self._pending_count = self.tracker.refresh()
        self._refresh_queue_status()
        if self._is_online:
            self.sync.start_sync()
        return count

    def start(self) -> None:
        """Start watching the network, preferring the platform's network information backend."""
        if self._network_information is not None or self._probe.is_active():
            return

        info_cls = QtNetwork.QNetworkInformation
        if info_cls.loadDefaultBackend() and info_cls.instance() is not None:
            info = info_cls.instance()
            if info.supports(info_cls.Feature.Reachability):
                self._network_information = info
                info.reachabilityChanged.connect(self._on_reachability_changed)
                logging.debug(f'Watching reachability with the "{info.backendName()}" backend.')
                self._on_reachability_changed(info.reachability())
                return

        logging.debug(f'No network information backend, probing {self._probe.host}:{self._probe.port}.')
        self._probe.start()

    def stop(self) -> None:
        """Stop watching the network and cancel any scheduled sync trigger."""
        self._stabilization_timer.stop()
        self._remote_change_timer.stop()
        self._refresh_timer.stop()
        self._probe.stop()
        if self._network_information is not None:
            self._network_information.reachabilityChanged.disconnect(self._on_reachability_changed)
            self._network_information = None

    @QtCore.Slot(QtNetwork.QNetworkInformation.Reachability)
    def _on_reachability_changed(self, reachability) -> None:
        self.set_online(reachability == QtNetwork.QNetworkInformation.Reachability.Online)
