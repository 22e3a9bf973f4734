"""
MoneyTracker: offline-aware personal finance client with a cache-first sync engine.

This package provides:

- :mod:`MoneyTracker.core` – Encrypted cache storage, partitioned caching, reconciliation,
  optimistic mutations, the outbox retry queue and the per-user client.
- :mod:`MoneyTracker.data` – Entity families (transactions, budgets, goals, notifications),
  pandas reports and budget alert notifications.
- :mod:`MoneyTracker.settings` – Settings management, schema validation and locale formatting.
- :mod:`MoneyTracker.status` – Status codes and typed exceptions.
- :mod:`MoneyTracker.log` – Application logging with an in-memory log tank.
"""

import sys

# Fail on Python < 3.11
if not (sys.version_info.major == 3 and sys.version_info.minor >= 11):
    raise RuntimeError('MoneyTracker requires Python 3.11 or higher.')

__version__ = '0.1.0'
__author__ = 'Gergely Wootsch'
__license__ = 'GPL-3.0'
__copyright__ = 'Copyright (C) 2025 Gergely Wootsch'
__description__ = 'MoneyTracker: offline-aware personal finance client with encrypted local caching.'
__url__ = 'https://github.com/wgergely/MoneyTracker'
__email__ = 'hello+MoneyTracker@gergely-wootsch.com'

from .log import log

log.setup_logging()
