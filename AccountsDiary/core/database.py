"""
Per-user local entry store backed by SQLite.

Every operation takes an explicit :class:`Session` carrying the active owner and the
open connection to that owner's store file. Rows are always stamped with the session
owner and reads are always scoped to it, even when a store file holds rows of another
user (e.g. after migrating the legacy shared store).

The module also owns the store schema: table layout, secondary indexes and the
schema version kept in ``PRAGMA user_version``.
"""

import dataclasses
import datetime
import enum
import json
import logging
import pathlib
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterable, List, Optional, Union

import pandas as pd
from PySide6 import QtCore

from . import ids
from . import state
from .. import actions
from ..actions import signals
from ..status import status

SCHEMA_VERSION = 2

DISPLAY_DATE_FORMAT = '%d-%m-%Y'
ISO_DATE_FORMAT = '%Y-%m-%d'

EXPORT_VERSION = '2.0'

HEADS_SETTING = 'heads'


class Table(enum.StrEnum):
    """Enum for database tables."""
    Entries = 'entries'
    Settings = 'settings'


ENTRY_SCHEMA: Dict[str, str] = {
    'id': 'TEXT PRIMARY KEY',
    'owner': 'TEXT NOT NULL',
    'date': 'TEXT',
    'description': 'TEXT',
    'amount': 'REAL',
    'main': 'TEXT',
    'sub': 'TEXT',
    'sync_state': 'TEXT',
    'synced': 'INTEGER',
    'created_at': 'TEXT',
    'updated_at': 'TEXT',
}

SETTINGS_SCHEMA: Dict[str, str] = {
    'key': 'TEXT PRIMARY KEY',
    'value': 'TEXT',
}

INDEXED_COLUMNS: List[str] = [
    'date', 'main', 'sub', 'amount', 'synced', 'sync_state', 'owner', 'created_at', 'updated_at',
]

ENTRY_FIELDS: List[str] = list(ENTRY_SCHEMA.keys())
CSV_COLUMNS: List[str] = ['date', 'description', 'amount', 'main', 'sub']

# Fields a local modification may not touch
PROTECTED_FIELDS = ('id', 'owner', 'sync_state', 'synced', 'created_at', 'updated_at')


def index_name(column: str) -> str:
    return f'idx_{Table.Entries.value}_{column}'


def now_str() -> str:
    """Return current UTC date and time as an ISO 8601 string."""
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def normalize_date(value: Union[str, datetime.date, None]) -> str:
    """Return `value` as a ``DD-MM-YYYY`` display date.

    Accepts date/datetime objects, display dates and ISO dates (with or without a time part).
    None defaults to today.

    Raises:
        ValueError: If the value cannot be parsed.
    """
    if value is None or value == '':
        return datetime.date.today().strftime(DISPLAY_DATE_FORMAT)
    if isinstance(value, (datetime.date, datetime.datetime)):
        return value.strftime(DISPLAY_DATE_FORMAT)

    text = str(value).strip()
    for fmt, length in ((DISPLAY_DATE_FORMAT, 10), (ISO_DATE_FORMAT, 10)):
        try:
            return datetime.datetime.strptime(text[:length], fmt).strftime(DISPLAY_DATE_FORMAT)
        except ValueError:
            continue
    raise ValueError(f'Invalid date: "{value}"')


def to_date(value: Union[str, datetime.date]) -> datetime.date:
    """Convert a display date, ISO date or date/datetime object to a date."""
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    return datetime.datetime.strptime(normalize_date(value), DISPLAY_DATE_FORMAT).date()


# Alias so methods with a ``to_date`` parameter can still reach the helper.
_to_date = to_date


def to_iso(value: Union[str, datetime.date]) -> str:
    """Convert a display date to ``YYYY-MM-DD``."""
    return to_date(value).strftime(ISO_DATE_FORMAT)


def to_amount(value: Any) -> float:
    """Cast an amount to float. Missing values default to 0.0.

    Raises:
        ValueError: If the value is not numeric.
    """
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)

    text = str(value).strip()
    if text == '':
        return 0.0
    try:
        return float(text)
    except ValueError:
        raise ValueError(f'Invalid amount: "{value}"') from None


def _row_to_entry(row: sqlite3.Row) -> Dict[str, Any]:
    entry = dict(row)
    entry['synced'] = bool(entry.get('synced'))
    return entry


@dataclasses.dataclass
class Session:
    """The active owner and the open connection to their store.

    A session without an owner is unusable, a session with an owner but no
    connection has not been initialized (or was closed).
    """
    owner: Optional[str] = None
    conn: Optional[sqlite3.Connection] = None
    path: Optional[pathlib.Path] = None
    lock: threading.RLock = dataclasses.field(default_factory=threading.RLock, repr=False)

    @property
    def is_open(self) -> bool:
        return bool(self.owner) and self.conn is not None

    def close(self) -> None:
        """Release the connection and clear the owner."""
        with self.lock:
            if self.conn is not None:
                try:
                    self.conn.close()
                except sqlite3.Error as e:
                    logging.error(f'Error closing store for "{self.owner}": {e}')
            self.conn = None
            self.owner = None

    def discard(self) -> None:
        """Drop the connection without waiting for the lock.

        Used when the thread holding the lock was terminated and will never release it.
        The session cannot be used afterwards.
        """
        conn, self.conn, self.owner = self.conn, None, None
        if conn is not None:
            try:
                conn.close()
            except sqlite3.Error as e:
                logging.error(f'Error discarding store connection: {e}')


@dataclasses.dataclass
class MarkResult:
    updated_count: int = 0
    errors: List[Dict[str, str]] = dataclasses.field(default_factory=list)


@dataclasses.dataclass
class MergeResult:
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    errors: List[Dict[str, str]] = dataclasses.field(default_factory=list)


def connect(path: pathlib.Path) -> sqlite3.Connection:
    """Open a connection to a store file.

    The connection may be used from the sync worker thread; access is serialized
    through the session lock.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=2.0, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.set_progress_handler(lambda: logging.debug('Waiting on DB lock…'), 1000)
    return conn


def table_exists(conn: sqlite3.Connection, table_name: str) -> bool:
    cursor = conn.execute(
        """SELECT name FROM sqlite_master WHERE type='table' AND name=?""",
        (table_name,)
    )
    return cursor.fetchone() is not None


def get_schema_version(conn: sqlite3.Connection) -> int:
    return conn.execute('PRAGMA user_version').fetchone()[0]


def create_tables(conn: sqlite3.Connection) -> None:
    entry_cols_sql = ', '.join(f'"{name}" {typedef}' for name, typedef in ENTRY_SCHEMA.items())
    settings_cols_sql = ', '.join(f'"{name}" {typedef}' for name, typedef in SETTINGS_SCHEMA.items())
    conn.execute(f'CREATE TABLE IF NOT EXISTS {Table.Entries.value} ({entry_cols_sql})')
    conn.execute(f'CREATE TABLE IF NOT EXISTS {Table.Settings.value} ({settings_cols_sql})')


def add_missing_columns(conn: sqlite3.Connection) -> None:
    """Add entry columns that older stores lack. Existing rows are kept."""
    cursor = conn.execute(f'PRAGMA table_info({Table.Entries.value})')
    current_columns = {row[1] for row in cursor.fetchall()}
    for name, typedef in ENTRY_SCHEMA.items():
        if name in current_columns:
            continue
        # Constraints cannot be added to an existing table
        plain_type = typedef.split()[0]
        logging.info(f'Adding missing column "{name}" to "{Table.Entries.value}".')
        conn.execute(f'ALTER TABLE {Table.Entries.value} ADD COLUMN "{name}" {plain_type}')


def reindex(conn: sqlite3.Connection) -> None:
    """Drop and recreate every secondary index on the entries table."""
    cursor = conn.execute(
        """SELECT name FROM sqlite_master WHERE type='index' AND tbl_name=? AND sql IS NOT NULL""",
        (Table.Entries.value,)
    )
    for (name,) in cursor.fetchall():
        conn.execute(f'DROP INDEX IF EXISTS "{name}"')
    for column in INDEXED_COLUMNS:
        conn.execute(f'CREATE INDEX "{index_name(column)}" ON {Table.Entries.value} ("{column}")')


def initialize_schema(conn: sqlite3.Connection) -> bool:
    """Create or upgrade the schema of an open store.

    Upgrades preserve rows: missing columns are added, indexes are rebuilt and the
    schema version is bumped. A store that is already current is left untouched.

    Returns:
        bool: True if the store was created or upgraded.
    """
    version = get_schema_version(conn)
    has_entries = table_exists(conn, Table.Entries.value)
    if version == SCHEMA_VERSION and has_entries:
        logging.debug('Store schema is current.')
        return False

    logging.info(f'Upgrading store schema from version {version} to {SCHEMA_VERSION}.')
    create_tables(conn)
    add_missing_columns(conn)
    # Rows written by older versions only carry the synced flag
    conn.execute(
        f"UPDATE {Table.Entries.value} SET sync_state=CASE WHEN synced=1 THEN ? ELSE ? END "
        f"WHERE sync_state IS NULL OR sync_state=''",
        (state.SyncState.Synced.value, state.SyncState.New.value)
    )
    conn.execute(f"UPDATE {Table.Entries.value} SET synced=(sync_state=?)",
                 (state.SyncState.Synced.value,))
    reindex(conn)
    conn.execute(f'PRAGMA user_version = {SCHEMA_VERSION}')
    conn.commit()
    return True


def check_session(session: Optional[Session]) -> sqlite3.Connection:
    """Validate the session preconditions and return its connection.

    Raises:
        status.NoActiveUserException: If no owner is set.
        status.StoreNotInitializedException: If the owner's store is not open.
    """
    if session is None or not session.owner:
        raise status.NoActiveUserException
    if session.conn is None:
        raise status.StoreNotInitializedException(f'No open store for "{session.owner}".')
    return session.conn


@contextmanager
def transaction(session: Session):
    """Yield the session connection, committing on success and rolling back on error."""
    conn = check_session(session)
    with session.lock:
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise


class EntryStore(QtCore.QObject):
    """Owner-scoped access to entries and per-user settings."""

    def __init__(self, parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)

    @classmethod
    def _owner_of(cls, conn: sqlite3.Connection, entry_id: str) -> Optional[str]:
        row = conn.execute(f'SELECT owner FROM {Table.Entries.value} WHERE id=?', (entry_id,)).fetchone()
        return row['owner'] if row else None

    @classmethod
    def _write(cls, conn: sqlite3.Connection, entry: Dict[str, Any]) -> None:
        columns = ', '.join(f'"{k}"' for k in ENTRY_FIELDS)
        placeholders = ', '.join('?' for _ in ENTRY_FIELDS)
        values = tuple(
            int(bool(entry['synced'])) if k == 'synced' else entry.get(k)
            for k in ENTRY_FIELDS
        )
        conn.execute(
            f'INSERT OR REPLACE INTO {Table.Entries.value} ({columns}) VALUES ({placeholders})',
            values
        )

    @classmethod
    def _prepare(cls, session: Session, entry: Dict[str, Any], existing: Optional[sqlite3.Row]) -> Dict[str, Any]:
        """Fill defaults and stamp ownership and timestamps on an entry about to be written."""
        now = now_str()
        row = {k: entry.get(k) for k in ENTRY_FIELDS}

        row['id'] = row['id'] or ids.new_entry_id(session.owner)
        row['date'] = normalize_date(row['date'])
        row['description'] = str(row['description'] or '')
        row['amount'] = to_amount(row['amount'])
        row['main'] = str(row['main'] or '')
        row['sub'] = str(row['sub'] or '')
        row['owner'] = session.owner
        row['updated_at'] = now
        row['created_at'] = row['created_at'] or (existing['created_at'] if existing else None) or now

        sync_state = state.coerce(row['sync_state']) or state.SyncState.New
        row['sync_state'] = sync_state.value
        row['synced'] = state.is_synced(sync_state)
        return row

    @classmethod
    def put(cls, session: Session, entry: Dict[str, Any]) -> Dict[str, Any]:
        """Insert or replace an entry for the session owner.

        Missing fields are filled in: a new id, today's date, zero amount, empty texts.
        The owner is always overwritten with the session owner and the state defaults to ``new``.
        Writing over an existing id applies the modify transition unless a state is given.

        Args:
            session: The active session.
            entry: Entry fields. Unknown keys are ignored.

        Returns:
            Dict[str, Any]: The stored entry.

        Raises:
            status.EntryOwnershipException: If the id belongs to another owner.
            status.InvalidTransitionException: If the id belongs to a deleted entry.
            ValueError: If the date or amount cannot be parsed.
        """
        with transaction(session) as conn:
            existing = None
            if entry.get('id'):
                existing = conn.execute(
                    f'SELECT owner, sync_state, created_at FROM {Table.Entries.value} WHERE id=?', (entry['id'],)
                ).fetchone()
            if existing and existing['owner'] != session.owner:
                raise status.EntryOwnershipException(f'Entry "{entry["id"]}" cannot be overwritten.')
            if existing and (existing['sync_state'] == state.SyncState.Deleted or not entry.get('sync_state')):
                # Overwriting a stored row is a local modification
                event = state.SyncEvent.Modify if existing['sync_state'] else state.SyncEvent.Create
                entry = dict(entry, sync_state=state.transition(existing['sync_state'], event).value)

            row = cls._prepare(session, entry, existing)
            cls._write(conn, row)
            cls._register_heads_in_conn(conn, [row])

        logging.debug(f'Stored entry {row["id"]} ({row["sync_state"]}).')
        signals.entryChanged.emit(row['id'])
        return row

    @classmethod
    def get_all(cls, session: Session) -> List[Dict[str, Any]]:
        """Return every entry owned by the session owner, including soft-deleted ones.

        Uses the owner index; if the index is unavailable the whole table is scanned
        and filtered by owner instead.
        """
        with transaction(session) as conn:
            try:
                cursor = conn.execute(
                    f'SELECT * FROM {Table.Entries.value} INDEXED BY {index_name("owner")} '
                    f'WHERE owner=? ORDER BY created_at',
                    (session.owner,)
                )
                rows = cursor.fetchall()
            except sqlite3.OperationalError as e:
                logging.warning(f'Owner index unavailable, scanning all entries: {e}')
                cursor = conn.execute(f'SELECT * FROM {Table.Entries.value} ORDER BY created_at')
                rows = [r for r in cursor.fetchall() if r['owner'] == session.owner]
        return [_row_to_entry(r) for r in rows]

    @classmethod
    def get_by_id(cls, session: Session, entry_id: str) -> Optional[Dict[str, Any]]:
        """Return the entry or None if it does not exist or belongs to another owner."""
        with transaction(session) as conn:
            row = conn.execute(f'SELECT * FROM {Table.Entries.value} WHERE id=?', (entry_id,)).fetchone()
        if not row:
            return None
        if row['owner'] != session.owner:
            logging.warning(f'Entry {entry_id} belongs to a different user.')
            return None
        return _row_to_entry(row)

    @classmethod
    def query(
            cls,
            session: Session,
            main: Optional[str] = None,
            sub: Optional[str] = None,
            type: Optional[str] = None,
            from_date: Union[str, datetime.date, None] = None,
            to_date: Union[str, datetime.date, None] = None,
            include_deleted: bool = False,
    ) -> List[Dict[str, Any]]:
        """Filter the owner's entries.

        Args:
            session: The active session.
            main: Main category to match exactly.
            sub: Sub category to match exactly.
            type: ``'income'`` for positive amounts, ``'expense'`` for negative ones.
            from_date: Inclusive start date.
            to_date: Inclusive end date; the whole day is covered.
            include_deleted: Include soft-deleted entries.

        Returns:
            List[Dict[str, Any]]: The matching entries.
        """
        if type not in (None, '', 'income', 'expense'):
            raise ValueError(f'Invalid type filter: "{type}", must be "income" or "expense".')

        start = to_date_or_none(from_date)
        end = to_date_or_none(to_date)

        result = []
        for entry in cls.get_all(session):
            if main and entry['main'] != main:
                continue
            if sub and entry['sub'] != sub:
                continue
            if type == 'income' and not entry['amount'] > 0:
                continue
            if type == 'expense' and not entry['amount'] < 0:
                continue
            if start or end:
                entry_date = _to_date(entry['date'])
                if start and entry_date < start:
                    continue
                if end and entry_date > end:
                    continue
            if not include_deleted and entry['sync_state'] == state.SyncState.Deleted:
                continue
            result.append(entry)
        return result

    @classmethod
    def pending_sync(cls, session: Session) -> List[Dict[str, Any]]:
        """Return the owner's entries not yet confirmed by the remote."""
        with transaction(session) as conn:
            cursor = conn.execute(
                f'SELECT * FROM {Table.Entries.value} WHERE owner=? AND (synced=0 OR sync_state!=?) '
                f'ORDER BY created_at',
                (session.owner, state.SyncState.Synced.value)
            )
            rows = [_row_to_entry(r) for r in cursor.fetchall()]
        logging.debug(f'{len(rows)} entries need sync for "{session.owner}".')
        return rows

    @classmethod
    def mark_synced(cls, session: Session, entry_ids: Iterable[str]) -> MarkResult:
        """Apply the push transition to each id.

        Ids are processed one after another. Missing, cross-owner and deleted entries are
        reported in ``errors`` without affecting the others.
        """
        result = MarkResult()
        with transaction(session) as conn:
            for entry_id in entry_ids:
                row = conn.execute(
                    f'SELECT owner, sync_state FROM {Table.Entries.value} WHERE id=?', (entry_id,)
                ).fetchone()
                if not row or row['owner'] != session.owner:
                    result.errors.append({'id': entry_id, 'error': 'Entry not found or belongs to different user'})
                    continue

                current = row['sync_state']
                if current == state.SyncState.Deleted:
                    result.errors.append({'id': entry_id, 'error': 'Entry is deleted'})
                    continue

                # Already synced rows only get a fresh timestamp
                if current == state.SyncState.Synced:
                    new_state = state.SyncState.Synced
                else:
                    new_state = state.transition(current, state.SyncEvent.Push)
                conn.execute(
                    f'UPDATE {Table.Entries.value} SET sync_state=?, synced=1, updated_at=? WHERE id=?',
                    (new_state.value, now_str(), entry_id)
                )
                result.updated_count += 1

        logging.info(f'Marked {result.updated_count} entries as synced for "{session.owner}".')
        return result

    @classmethod
    def update(cls, session: Session, entry_id: str, **changes: Any) -> Optional[Dict[str, Any]]:
        """Modify an entry locally and apply the modify transition.

        Returns:
            The updated entry, or None if it does not exist for this owner.

        Raises:
            status.InvalidTransitionException: If the entry is deleted.
        """
        ignored = [k for k in changes if k in PROTECTED_FIELDS or k not in ENTRY_FIELDS]
        if ignored:
            logging.warning(f'Ignoring fields that cannot be modified: {ignored}')

        with transaction(session) as conn:
            row = conn.execute(f'SELECT * FROM {Table.Entries.value} WHERE id=?', (entry_id,)).fetchone()
            if not row or row['owner'] != session.owner:
                return None

            new_state = state.transition(row['sync_state'], state.SyncEvent.Modify)

            entry = _row_to_entry(row)
            entry.update({k: v for k, v in changes.items() if k not in ignored})
            entry['sync_state'] = new_state.value
            entry = cls._prepare(session, entry, row)
            cls._write(conn, entry)
            cls._register_heads_in_conn(conn, [entry])

        signals.entryChanged.emit(entry_id)
        return entry

    @classmethod
    def delete(cls, session: Session, entry_id: str) -> bool:
        """Soft-delete an entry. The tombstone is kept until the remote acknowledges it.

        Returns:
            bool: False if the entry does not exist for this owner.

        Raises:
            status.InvalidTransitionException: If the entry is already deleted.
        """
        with transaction(session) as conn:
            row = conn.execute(
                f'SELECT owner, sync_state FROM {Table.Entries.value} WHERE id=?', (entry_id,)
            ).fetchone()
            if not row or row['owner'] != session.owner:
                return False

            new_state = state.transition(row['sync_state'], state.SyncEvent.Delete)
            conn.execute(
                f'UPDATE {Table.Entries.value} SET sync_state=?, synced=0, updated_at=? WHERE id=?',
                (new_state.value, now_str(), entry_id)
            )

        logging.debug(f'Entry {entry_id} marked as deleted.')
        signals.entryChanged.emit(entry_id)
        return True

    @classmethod
    def purge(cls, session: Session, entry_ids: Iterable[str]) -> int:
        """Physically remove the owner's entries with the given ids."""
        count = 0
        with transaction(session) as conn:
            for entry_id in entry_ids:
                cursor = conn.execute(
                    f'DELETE FROM {Table.Entries.value} WHERE id=? AND owner=?', (entry_id, session.owner)
                )
                count += cursor.rowcount
        logging.debug(f'Purged {count} entries.')
        return count

    @classmethod
    def clear(cls, session: Session) -> int:
        """Remove every entry of the owner after asking the user for confirmation.

        Raises:
            status.OperationCancelledException: If the user declines.
        """
        check_session(session)
        if not actions.confirm(f'Delete all local entries of "{session.owner}"? This cannot be undone.'):
            raise status.OperationCancelledException('Local entries were not cleared.')

        with transaction(session) as conn:
            cursor = conn.execute(f'DELETE FROM {Table.Entries.value} WHERE owner=?', (session.owner,))
            count = cursor.rowcount

        logging.info(f'Cleared {count} entries of "{session.owner}".')
        signals.entriesCleared.emit(count)
        return count

    @classmethod
    def merge_remote(cls, session: Session, entries: Iterable[Dict[str, Any]]) -> MergeResult:
        """Merge rows fetched from the remote.

        Absent and synced local rows take the remote values. Local rows with pending
        changes (new, edited or deleted) are kept as they are.
        """
        result = MergeResult()
        merged = []
        with transaction(session) as conn:
            for remote in entries:
                entry_id = remote.get('id')
                if not entry_id:
                    result.errors.append({'id': '', 'error': 'Remote row without id'})
                    continue

                existing = conn.execute(
                    f'SELECT owner, sync_state, created_at FROM {Table.Entries.value} WHERE id=?', (entry_id,)
                ).fetchone()
                if existing and existing['owner'] != session.owner:
                    result.errors.append({'id': entry_id, 'error': 'Entry belongs to different user'})
                    continue

                current = existing['sync_state'] if existing else None
                if state.local_wins(current):
                    result.skipped += 1
                    continue

                row = dict(remote)
                row['sync_state'] = state.transition(current, state.SyncEvent.Pull).value
                try:
                    row = cls._prepare(session, row, existing)
                except ValueError as e:
                    result.errors.append({'id': entry_id, 'error': str(e)})
                    continue

                cls._write(conn, row)
                merged.append(row)
                if existing:
                    result.updated += 1
                else:
                    result.inserted += 1

            cls._register_heads_in_conn(conn, merged)

        logging.info(
            f'Merged remote rows: {result.inserted} inserted, {result.updated} updated, '
            f'{result.skipped} kept local, {len(result.errors)} errors.'
        )
        return result

    @classmethod
    def stats(cls, session: Session) -> Dict[str, Any]:
        """Summarize the owner's entries.

        Returns:
            Dict[str, Any]: counts, income and expense sums, category histogram of active
            entries and a breakdown by sync state.
        """
        df = cls.data(session)
        breakdown = {s.value: 0 for s in state.SyncState}
        if df.empty:
            return {
                'total_entries': 0,
                'active_entries': 0,
                'deleted_entries': 0,
                'pending_sync': 0,
                'total_income': 0.0,
                'total_expense': 0.0,
                'categories': {},
                'sync_status': breakdown,
            }

        deleted = df['sync_state'] == state.SyncState.Deleted.value
        active = df[~deleted]
        pending = (df['synced'] == 0) | (df['sync_state'] != state.SyncState.Synced.value)

        breakdown.update({str(k): int(v) for k, v in df['sync_state'].value_counts().items()})

        return {
            'total_entries': int(len(df)),
            'active_entries': int(len(active)),
            'deleted_entries': int(deleted.sum()),
            'pending_sync': int(pending.sum()),
            'total_income': float(active.loc[active['amount'] > 0, 'amount'].sum()),
            'total_expense': float(abs(active.loc[active['amount'] < 0, 'amount'].sum())),
            'categories': {str(k): int(v) for k, v in active['main'].value_counts().items()},
            'sync_status': breakdown,
        }

    @classmethod
    def data(cls, session: Session) -> pd.DataFrame:
        """Load the owner's entries into a DataFrame."""
        with transaction(session) as conn:
            df = pd.read_sql_query(
                f'SELECT * FROM {Table.Entries.value} WHERE owner=? ORDER BY created_at',
                conn,
                params=(session.owner,)
            )
        logging.debug(f'Loaded {len(df)} rows from "{Table.Entries.value}".')
        return df

    @classmethod
    def export(cls, session: Session) -> Dict[str, Any]:
        """Return a JSON-serializable backup of the owner's entries and settings."""
        return {
            'version': EXPORT_VERSION,
            'owner': session.owner,
            'exported_at': now_str(),
            'entries': cls.get_all(session),
            'settings': cls.get_settings(session),
        }

    @classmethod
    def export_csv(cls, session: Session, path: Union[str, pathlib.Path]) -> int:
        """Write the owner's active entries to a CSV file.

        Returns:
            int: Number of rows written.
        """
        entries = cls.query(session)
        df = pd.DataFrame(entries, columns=CSV_COLUMNS)
        df.to_csv(path, index=False)
        logging.info(f'Exported {len(df)} entries to {path}')
        return len(df)

    @classmethod
    def import_csv(cls, session: Session, path: Union[str, pathlib.Path]) -> Dict[str, int]:
        """Import entries from a CSV file with ``date, description, amount, main, sub`` columns.

        Every imported row gets a new id and the ``new`` state. Rows with an
        unparsable date or amount are skipped.

        Returns:
            Dict[str, int]: ``imported`` and ``skipped`` counts.
        """
        check_session(session)
        df = pd.read_csv(path, dtype=str, keep_default_na=False)
        missing = [c for c in ('date', 'amount') if c not in df.columns]
        if missing:
            raise ValueError(f'CSV file is missing columns: {missing}')

        imported = 0
        skipped = 0
        for record in df.to_dict(orient='records'):
            try:
                amount = to_amount(record.get('amount'))
                date = normalize_date(record.get('date') or None)
            except ValueError as e:
                logging.warning(f'Skipping CSV row {record}: {e}')
                skipped += 1
                continue

            cls.put(session, {
                'date': date,
                'description': record.get('description', ''),
                'amount': amount,
                'main': record.get('main', ''),
                'sub': record.get('sub', ''),
                'sync_state': state.SyncState.New.value,
            })
            imported += 1

        logging.info(f'Imported {imported} entries from {path}, skipped {skipped}.')
        return {'imported': imported, 'skipped': skipped}

    @classmethod
    def get_settings(cls, session: Session) -> Dict[str, Any]:
        with transaction(session) as conn:
            rows = conn.execute(f'SELECT key, value FROM {Table.Settings.value}').fetchall()
        return {r['key']: json.loads(r['value']) for r in rows}

    @classmethod
    def get_setting(cls, session: Session, key: str, default: Any = None) -> Any:
        with transaction(session) as conn:
            row = conn.execute(f'SELECT value FROM {Table.Settings.value} WHERE key=?', (key,)).fetchone()
        return json.loads(row['value']) if row else default

    @classmethod
    def set_setting(cls, session: Session, key: str, value: Any) -> None:
        with transaction(session) as conn:
            conn.execute(
                f'INSERT OR REPLACE INTO {Table.Settings.value} (key, value) VALUES (?, ?)',
                (key, json.dumps(value))
            )

    @classmethod
    def get_heads(cls, session: Session) -> Dict[str, List[str]]:
        """Return the main category to sub category mapping."""
        return cls.get_setting(session, HEADS_SETTING, {})

    @classmethod
    def save_heads(cls, session: Session, heads: Dict[str, List[str]]) -> None:
        cleaned = {str(k): sorted({str(s) for s in v if s}) for k, v in heads.items() if k}
        cls.set_setting(session, HEADS_SETTING, cleaned)

    @classmethod
    def register_heads(cls, session: Session, entries: Iterable[Dict[str, Any]]) -> Dict[str, List[str]]:
        """Add the categories used by `entries` to the stored heads."""
        with transaction(session) as conn:
            return cls._register_heads_in_conn(conn, entries)

    @classmethod
    def _register_heads_in_conn(cls, conn: sqlite3.Connection, entries: Iterable[Dict[str, Any]]) -> Dict[
        str, List[str]]:
        row = conn.execute(f'SELECT value FROM {Table.Settings.value} WHERE key=?', (HEADS_SETTING,)).fetchone()
        heads: Dict[str, List[str]] = json.loads(row['value']) if row else {}

        changed = False
        for entry in entries:
            main = entry.get('main')
            if not main:
                continue
            subs = set(heads.get(main, []))
            sub = entry.get('sub')
            if main not in heads or (sub and sub not in subs):
                if sub:
                    subs.add(sub)
                heads[main] = sorted(subs)
                changed = True

        if changed:
            conn.execute(
                f'INSERT OR REPLACE INTO {Table.Settings.value} (key, value) VALUES (?, ?)',
                (HEADS_SETTING, json.dumps(heads))
            )
        return heads


def to_date_or_none(value: Union[str, datetime.date, None]) -> Optional[datetime.date]:
    if value is None or value == '':
        return None
    return to_date(value)


store = EntryStore()
