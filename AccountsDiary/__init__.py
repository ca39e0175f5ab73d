"""
AccountsDiary: local-first personal expense tracking with a synchronising HTTP backend.

This package provides:

- :mod:`AccountsDiary.core` – Per-user local store, sync-state machine, reconciliation, authentication and the remote client.
- :mod:`AccountsDiary.server` – The FastAPI service the client synchronises with.
- :mod:`AccountsDiary.settings` – Configuration management and application paths.
- :mod:`AccountsDiary.status` – Status codes and exceptions.
- :mod:`AccountsDiary.log` – Logging setup with an in-memory log tank.
"""

import sys

# Fail on Python < 3.11
if not (sys.version_info.major == 3 and sys.version_info.minor >= 11):
    raise RuntimeError('AccountsDiary requires Python 3.11 or higher.')

__version__ = '0.1.0'
__license__ = 'GPL-3.0'
__description__ = 'AccountsDiary: local-first personal expense tracking with a synchronising HTTP backend.'

from .log import log

log.setup_logging()
