"""
FinanceTracker: offline-first storage and sync engine of a personal-finance tracker.

This package provides:

- :mod:`FinanceTracker.core` – Local store, change tracking, schema migrations, sync engine and connectivity monitor.
- :mod:`FinanceTracker.settings` – Settings management and schema validation.
- :mod:`FinanceTracker.status` – Status codes and the exception hierarchy.
- :mod:`FinanceTracker.log` – Logging setup and the in-memory log tank.

Use :class:`FinanceTracker.core.stack.SyncStack` to open a store and start syncing.
"""

import sys

# Fail on Python < 3.11
if not (sys.version_info.major == 3 and sys.version_info.minor >= 11):
    raise RuntimeError('FinanceTracker requires Python 3.11 or higher.')

__version__ = '0.1.0'
__author__ = 'Gergely Wootsch'
__license__ = 'GPL-3.0'
__copyright__ = 'Copyright (C) 2025 Gergely Wootsch'
__description__ = 'FinanceTracker: offline-first storage and sync engine of a personal-finance tracker.'

from .log import log

log.setup_logging()
