"""Application-wide Qt signals and the interactive confirmation hook for AccountsDiary.

This module provides:
    - Signals: custom Qt signals for session lifecycle, entry changes, sync progress and errors.
    - confirm: asks the user to approve a destructive operation through the installed handler.
    - set_confirm_handler: installs the callable used by :func:`confirm` (e.g. a dialog in a front-end).
"""
import logging
from typing import Callable, Optional

from PySide6 import QtCore

ConfirmHandler = Callable[[str], bool]


def _console_confirm(message: str) -> bool:
    """Ask for confirmation on the console.

    Args:
        message: The question shown to the user.

    Returns:
        bool: True if the user typed yes.
    """
    try:
        answer = input(f'{message} [y/N] ')
    except EOFError:
        logging.warning('No interactive console available; treating confirmation as declined.')
        return False
    return answer.strip().lower() in ('y', 'yes')


_confirm_handler: ConfirmHandler = _console_confirm


def set_confirm_handler(handler: Optional[ConfirmHandler]) -> None:
    """Install the callable used to confirm destructive operations.

    Args:
        handler: Callable receiving the question and returning True to proceed.
            Passing None restores the console prompt.
    """
    global _confirm_handler
    _confirm_handler = handler or _console_confirm


def confirm(message: str) -> bool:
    """Ask the user to approve a destructive operation.

    Args:
        message: The question shown to the user.

    Returns:
        bool: True if the user approved.
    """
    logging.debug(f'Requesting confirmation: "{message}"')
    approved = bool(_confirm_handler(message))
    logging.debug(f'Confirmation {"granted" if approved else "declined"}.')
    return approved


class Signals(QtCore.QObject):
    """Centralized Qt signals for session, data and sync events."""
    sessionOpened = QtCore.Signal(str)  # owner
    sessionClosed = QtCore.Signal(str)  # owner
    storeDestroyed = QtCore.Signal(str)  # owner

    entryChanged = QtCore.Signal(str)  # entry id
    entriesCleared = QtCore.Signal(int)  # number of rows removed

    authenticationRequested = QtCore.Signal()
    authenticationChanged = QtCore.Signal(object)  # user dict or None

    syncStarted = QtCore.Signal()
    syncFinished = QtCore.Signal(object)  # SyncResult

    configSectionChanged = QtCore.Signal(str)

    showLogs = QtCore.Signal()
    error = QtCore.Signal(str)

    def __init__(self):
        super().__init__()
        self._connect_signals()

    def _connect_signals(self):
        self.error.connect(lambda msg: logging.debug(f'Error signal: {msg}'))


signals = Signals()
