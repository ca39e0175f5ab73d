"""Reconciliation between the local store and the remote expenses API.

A reconcile pass runs in a fixed order: push pending rows, mark what the server
accepted, send pending deletions, then pull and merge every remote row. The pass is
best-effort and not transactional; a failure leaves the unconfirmed rows pending for
the next pass.

Pulled rows never overwrite local rows with unsynced changes.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from PySide6 import QtCore

from . import database
from . import lifecycle
from . import service
from . import state
from .database import store
from ..actions import signals
from ..status import status


@dataclass
class SyncResult:
    """Outcome of a reconcile pass."""
    pushed: int = 0
    pulled: int = 0
    deleted: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)
    message: str = ''


def to_wire(entry: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a stored entry to the row format of the expenses API."""
    return {
        'id': entry['id'],
        'date': entry['date'],
        'description': entry.get('description') or '',
        'amount': entry.get('amount') or 0.0,
        'main_category': entry.get('main') or '',
        'sub_category': entry.get('sub') or '',
        'sync_state': entry.get('sync_state') or state.SyncState.New.value,
    }


def from_wire(row: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a remote row to the field names of the local store."""
    return {
        'id': row.get('id'),
        'date': row.get('date'),
        'description': row.get('description') or '',
        'amount': row.get('amount'),
        'main': row.get('main_category', row.get('main')) or '',
        'sub': row.get('sub_category', row.get('sub')) or '',
        'created_at': row.get('created_at'),
    }


class SyncAPI(QtCore.QObject):
    """Push local changes to the remote and merge remote rows into the local store."""
    reconcileFinished = QtCore.Signal(object)  # SyncResult
    pendingChanged = QtCore.Signal(int)

    def __init__(self, api: Optional[service.RemoteAPI] = None, parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent)
        self._api = api

    @property
    def api(self) -> service.RemoteAPI:
        return self._api or service.remote

    @api.setter
    def api(self, value: Optional[service.RemoteAPI]) -> None:
        self._api = value

    def push(self, session: database.Session, pending: Optional[List[Dict[str, Any]]] = None) -> SyncResult:
        """Upload pending rows and send pending deletions.

        Rows are marked synced only after the server confirms them: the ids listed in
        ``successes`` when the server reports them, the whole batch otherwise.
        Acknowledged deletions are purged locally.

        Raises:
            status.ServiceUnavailableException: If the server cannot be reached. Nothing is marked.
            status.RemoteRejectedException: If the server rejects the batch.
            status.NotAuthenticatedException: If the token is missing or refused.
        """
        if pending is None:
            pending = store.pending_sync(session)

        result = SyncResult()
        upserts = [e for e in pending if e['sync_state'] != state.SyncState.Deleted]
        tombstones = [e for e in pending if e['sync_state'] == state.SyncState.Deleted]

        if upserts:
            logging.info(f'Pushing {len(upserts)} entries.')
            data = self.api.push_expenses([to_wire(e) for e in upserts])

            successes = data.get('successes')
            if successes is None:
                ids_to_mark = [e['id'] for e in upserts]
            else:
                ids_to_mark = list(successes)

            mark = store.mark_synced(session, ids_to_mark)
            result.pushed = mark.updated_count
            result.errors.extend(mark.errors)
            result.errors.extend(data.get('errors') or [])

        for entry in tombstones:
            try:
                self.api.delete_expense(entry['id'])
            except status.RemoteRejectedException as ex:
                result.errors.append({'id': entry['id'], 'error': str(ex)})
                continue
            store.purge(session, [entry['id']])
            result.deleted += 1

        result.message = f'Pushed {result.pushed}, deleted {result.deleted}.'
        return result

    def pull(self, session: database.Session) -> database.MergeResult:
        """Fetch every remote row of the owner and merge it into the local store."""
        database.check_session(session)
        rows = self.api.fetch_expenses()
        merge = store.merge_remote(session, [from_wire(r) for r in rows])
        return merge

    def reconcile(self, session: database.Session) -> SyncResult:
        """Run a full push, mark and pull pass.

        Without pending rows the remote is not contacted and a no-op result is returned.

        Returns:
            SyncResult: Counts of pushed, pulled and deleted rows and per-row errors.
        """
        pending = store.pending_sync(session)
        if not pending:
            logging.info('Nothing to sync.')
            return SyncResult(message='Nothing to sync')

        signals.syncStarted.emit()
        result = self.push(session, pending)

        merge = self.pull(session)
        result.pulled = merge.inserted + merge.updated
        result.errors.extend(merge.errors)

        result.message = (
            f'Sync complete: {result.pushed} pushed, {result.deleted} deleted, {result.pulled} pulled'
        )
        if result.errors:
            result.message += f', {len(result.errors)} errors'
        logging.info(result.message)

        self.pendingChanged.emit(len(store.pending_sync(session)))
        self.reconcileFinished.emit(result)
        signals.syncFinished.emit(result)
        return result

    def reconcile_async(self, session: database.Session, total_timeout: int = service.TOTAL_TIMEOUT) -> SyncResult:
        """Run :meth:`reconcile` on a worker thread and wait for it.

        The pass is not retried. If it times out the worker is terminated and the
        session it was using is replaced; its lock may be held by the dead worker.
        """
        logging.debug('Starting asynchronous reconcile')

        def discard_session():
            if lifecycle.lifecycle.session is session:
                lifecycle.lifecycle.reopen()
            else:
                session.discard()

        return service.start_asynchronous(
            self.reconcile,
            session,
            total_timeout=total_timeout,
            status_text='Syncing entries...',
            on_terminated=discard_session,
            max_attempts=1,
        )


sync = SyncAPI()
