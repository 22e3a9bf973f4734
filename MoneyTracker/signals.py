"""Application-wide Qt signals for MoneyTracker.

This module provides:
    - Signals: custom Qt signals for configuration changes, the user session lifecycle,
      cache invalidation, pending sync counts, notifications and errors.
"""
import logging

from PySide6 import QtCore


class Signals(QtCore.QObject):
    """Centralized Qt signals for application config, session and sync events."""
    configSectionChanged = QtCore.Signal(str)  # Section
    metadataChanged = QtCore.Signal(str, object)

    sessionAboutToChange = QtCore.Signal()
    sessionActivated = QtCore.Signal(str)  # User id
    sessionEnded = QtCore.Signal()

    cacheInvalidated = QtCore.Signal(str)  # Entity family
    syncPendingChanged = QtCore.Signal(str, int)  # Entity family, pending count

    notificationCreated = QtCore.Signal(object)

    showLogs = QtCore.Signal()
    error = QtCore.Signal(str)

    def __init__(self):
        super().__init__()
        self._connect_signals()

    def _connect_signals(self):
        @QtCore.Slot(str)
        def cache_invalidated(family: str) -> None:
            logging.debug(f'Cache invalidated: {family}')

        self.cacheInvalidated.connect(cache_invalidated)

        @QtCore.Slot(str, int)
        def sync_pending_changed(family: str, count: int) -> None:
            logging.debug(f'{family}: {count} change(s) waiting to sync')

        self.syncPendingChanged.connect(sync_pending_changed)


signals = Signals()
