"""
Opening, closing and destroying the per-user local stores.

At most one :class:`~AccountsDiary.core.database.Session` is open per process. Opening the
store of another user closes the current one first.
"""
import logging
import pathlib
import sqlite3
import time
from typing import List, Optional

from PySide6 import QtCore

from . import database
from . import state
from ..actions import signals
from ..settings import lib
from ..status import status

MAX_DELETE_ATTEMPTS = 5
DELETE_WAIT_SECONDS = 0.5

SIDE_FILE_SUFFIXES = ('-journal', '-wal', '-shm')


def _unlink_with_retry(path: pathlib.Path) -> bool:
    """Delete a file, retrying with backoff while it is locked.

    Returns:
        bool: True if the file is gone, False if every attempt failed.
    """
    if not path.exists():
        return True

    wait_seconds = DELETE_WAIT_SECONDS
    for attempt in range(1, MAX_DELETE_ATTEMPTS + 1):
        try:
            path.unlink()
            logging.info(f'Removed {path}')
            return True
        except FileNotFoundError:
            return True
        except OSError as ex:
            logging.warning(f'Error removing {path} (attempt {attempt}/{MAX_DELETE_ATTEMPTS}): {ex}')
            if attempt < MAX_DELETE_ATTEMPTS:
                logging.debug(f'Retrying in {wait_seconds} seconds...')
                time.sleep(wait_seconds)
                wait_seconds *= 1.5

    logging.error(f'Could not remove {path} after {MAX_DELETE_ATTEMPTS} attempts.')
    return False


class LifecycleAPI(QtCore.QObject):
    """Keeps track of the open session and manages store files on login and logout."""

    def __init__(self, parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        self._session: Optional[database.Session] = None

    @property
    def session(self) -> Optional[database.Session]:
        """The open session, or None after close."""
        return self._session

    def open(self, owner: str) -> database.Session:
        """Open, create or upgrade the store of `owner` and make it the active session.

        Raises:
            status.NoActiveUserException: If owner is empty.
            status.StoreInvalidException: If the store cannot be opened or upgraded.
        """
        if not owner:
            raise status.NoActiveUserException('Cannot open a store without an owner.')

        if self._session and self._session.is_open:
            if self._session.owner == owner:
                logging.debug(f'Store of "{owner}" is already open.')
                return self._session
            self.close()

        path = lib.settings.db_path(owner)
        logging.info(f'Opening store of "{owner}" at {path}')

        conn: Optional[sqlite3.Connection] = None
        try:
            conn = database.connect(path)
            database.initialize_schema(conn)
            self._migrate_legacy(conn, owner)
        except sqlite3.Error as e:
            logging.error(f'SQLite error opening store of "{owner}": {e}', exc_info=True)
            if conn:
                conn.close()
            raise status.StoreInvalidException(f'{path}: {e}') from e

        self._session = database.Session(owner=owner, conn=conn, path=path)
        signals.sessionOpened.emit(owner)
        return self._session

    def close(self) -> None:
        """Release the open store. Later store operations raise NoActiveUserException."""
        if not self._session:
            return
        owner = self._session.owner or ''
        self._session.close()
        self._session = None
        logging.info(f'Closed store of "{owner}".')
        signals.sessionClosed.emit(owner)

    def reopen(self) -> Optional[database.Session]:
        """Replace the active session with a fresh connection to the same store.

        The old session is discarded without taking its lock, so this is safe to call
        after a worker holding the lock was terminated. Code still holding the old
        session gets NoActiveUserException instead of blocking.

        Returns:
            The new session, or None if no store was open.
        """
        if not self._session or not self._session.owner:
            return None
        owner = self._session.owner
        logging.warning(f'Reopening store of "{owner}" with a new connection.')
        self._session.discard()
        self._session = None
        signals.sessionClosed.emit(owner)
        return self.open(owner)

    def destroy(self, owner: str) -> bool:
        """Delete the store file of `owner`.

        Closes the active session first if it belongs to `owner`. A locked file is retried
        with backoff; failure is logged, never raised.

        Returns:
            bool: True if the store no longer exists.
        """
        if not owner:
            raise status.NoActiveUserException('Cannot destroy a store without an owner.')

        if self._session and self._session.owner == owner:
            self.close()

        path = lib.settings.db_path(owner)
        removed = _unlink_with_retry(path)
        for suffix in SIDE_FILE_SUFFIXES:
            _unlink_with_retry(path.with_name(path.name + suffix))

        if removed:
            signals.storeDestroyed.emit(owner)
        return removed

    def list_owners(self) -> List[str]:
        """Return the owners that have a store file on this device."""
        return [lib.settings.owner_from_db_path(p) for p in lib.settings.list_store_files()]

    def destroy_others(self, owner: str) -> List[str]:
        """Delete every store except the one of `owner`.

        Returns:
            List[str]: The owners whose stores were removed.
        """
        removed = []
        for other in self.list_owners():
            if other == owner:
                continue
            if self.destroy(other):
                removed.append(other)
        if removed:
            logging.info(f'Removed stores of other users: {removed}')
        return removed

    @staticmethod
    def _migrate_legacy(conn: sqlite3.Connection, owner: str) -> int:
        """Move the rows of `owner` (or without owner) from the legacy shared store.

        Dates are converted to the display format and rows whose date or amount
        cannot be parsed are skipped. The legacy store is deleted afterwards.

        Returns:
            int: Number of migrated rows.
        """
        legacy_path = lib.settings.legacy_db_path
        if not legacy_path.exists():
            return 0

        logging.info(f'Migrating legacy store {legacy_path} for "{owner}".')
        legacy_conn = sqlite3.connect(str(legacy_path), timeout=2.0)
        legacy_conn.row_factory = sqlite3.Row
        migrated = 0
        try:
            if not database.table_exists(legacy_conn, database.Table.Entries.value):
                logging.warning('Legacy store has no entries table.')
                rows = []
            else:
                rows = legacy_conn.execute(f'SELECT * FROM {database.Table.Entries.value}').fetchall()

            now = database.now_str()
            for row in rows:
                legacy = dict(row)
                if not legacy.get('id') or legacy.get('owner') not in (None, '', owner):
                    continue

                entry = {k: legacy.get(k) for k in database.ENTRY_FIELDS}
                try:
                    entry['date'] = database.normalize_date(entry['date'] or None)
                    entry['amount'] = database.to_amount(entry['amount'])
                except ValueError as e:
                    logging.warning(f'Skipping legacy entry {entry["id"]}: {e}')
                    continue

                entry['owner'] = owner
                if entry['sync_state'] not in [s.value for s in state.SyncState]:
                    entry['sync_state'] = None
                sync_state = state.coerce(entry['sync_state'])
                if sync_state is None:
                    # Older rows only carry the synced flag
                    synced = legacy.get('synced') in (1, '1', 'true')
                    sync_state = state.SyncState.Synced if synced else state.SyncState.New
                entry['sync_state'] = sync_state.value
                entry['synced'] = int(state.is_synced(sync_state))
                entry['created_at'] = entry['created_at'] or now
                entry['updated_at'] = entry['updated_at'] or now

                columns = ', '.join(f'"{k}"' for k in database.ENTRY_FIELDS)
                placeholders = ', '.join('?' for _ in database.ENTRY_FIELDS)
                cursor = conn.execute(
                    f'INSERT OR IGNORE INTO {database.Table.Entries.value} ({columns}) VALUES ({placeholders})',
                    tuple(entry[k] for k in database.ENTRY_FIELDS)
                )
                migrated += cursor.rowcount
            conn.commit()
        finally:
            legacy_conn.close()

        logging.info(f'Migrated {migrated} legacy entries.')
        _unlink_with_retry(legacy_path)
        return migrated


lifecycle = LifecycleAPI()
