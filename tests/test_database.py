"""
Integration tests for AccountsDiary.core.database
(using unittest against a real per-user SQLite store).
"""
import datetime
import os
import tempfile
import unittest
from unittest.mock import patch

import pandas as pd

from AccountsDiary import actions
from AccountsDiary.core import database, lifecycle
from AccountsDiary.core.database import Session, store
from AccountsDiary.status import status
from tests.base import BaseStoreTestCase, OTHER_OWNER, OWNER, mute_ui_signals


class HelperTests(unittest.TestCase):

    def test_normalize_date(self):
        self.assertEqual(database.normalize_date('2025-01-31'), '31-01-2025')
        self.assertEqual(database.normalize_date('31-01-2025'), '31-01-2025')
        self.assertEqual(database.normalize_date('2025-01-31T10:00:00Z'), '31-01-2025')
        self.assertEqual(database.normalize_date(datetime.date(2025, 1, 31)), '31-01-2025')
        self.assertEqual(
            database.normalize_date(None),
            datetime.date.today().strftime(database.DISPLAY_DATE_FORMAT)
        )
        with self.assertRaises(ValueError):
            database.normalize_date('31/01/2025')

    def test_to_iso(self):
        self.assertEqual(database.to_iso('31-01-2025'), '2025-01-31')

    def test_to_amount(self):
        self.assertEqual(database.to_amount(None), 0.0)
        self.assertEqual(database.to_amount(''), 0.0)
        self.assertEqual(database.to_amount('-12.5'), -12.5)
        self.assertEqual(database.to_amount(3), 3.0)
        with self.assertRaises(ValueError):
            database.to_amount('twelve')


class EntryStoreTestCase(BaseStoreTestCase):

    def put(self, **fields):
        return store.put(self.session, fields)

    def insert_foreign(self, entry_id='foreign1', owner=OTHER_OWNER):
        """Writes a row of another owner straight into the open store file."""
        self.session.conn.execute(
            "INSERT INTO entries (id, owner, date, description, amount, main, sub, sync_state, synced, "
            "created_at, updated_at) VALUES (?, ?, '01-01-2025', 'theirs', 5.0, 'Other', '', 'new', 0, ?, ?)",
            (entry_id, owner, database.now_str(), database.now_str())
        )
        self.session.conn.commit()
        return entry_id


class PutTests(EntryStoreTestCase):

    def test_owner_is_stamped(self):
        entry = self.put(description='Coffee', amount=-3.5, main='Food', sub='Cafe', owner='mallory')
        self.assertEqual(entry['owner'], OWNER)
        stored = store.get_by_id(self.session, entry['id'])
        self.assertEqual(stored['owner'], OWNER)

    def test_defaults(self):
        entry = self.put()
        self.assertTrue(entry['id'].endswith(OWNER))
        self.assertEqual(entry['date'], datetime.date.today().strftime(database.DISPLAY_DATE_FORMAT))
        self.assertEqual(entry['amount'], 0.0)
        self.assertEqual(entry['description'], '')
        self.assertEqual(entry['sync_state'], 'new')
        self.assertFalse(entry['synced'])
        self.assertTrue(entry['created_at'])
        self.assertTrue(entry['updated_at'])

    def test_iso_date_is_normalized(self):
        entry = self.put(date='2025-03-09', amount='12')
        self.assertEqual(entry['date'], '09-03-2025')
        self.assertEqual(entry['amount'], 12.0)

    def test_upsert_keeps_created_at(self):
        entry = self.put(description='first')
        again = self.put(id=entry['id'], description='second')
        self.assertEqual(again['created_at'], entry['created_at'])
        self.assertEqual(len(store.get_all(self.session)), 1)
        self.assertEqual(store.get_by_id(self.session, entry['id'])['description'], 'second')

    def test_upsert_applies_modify_transition(self):
        new = self.put(description='new')
        synced = self.put(description='synced', amount=-1, sync_state='synced')

        self.assertEqual(self.put(id=new['id'], amount=-5)['sync_state'], 'new')
        edited = self.put(id=synced['id'], amount=-2)
        self.assertEqual(edited['sync_state'], 'edited')
        self.assertFalse(edited['synced'])
        self.assertEqual(store.get_by_id(self.session, synced['id'])['sync_state'], 'edited')
        self.assertIn(synced['id'], {e['id'] for e in store.pending_sync(self.session)})

    def test_upsert_keeps_explicit_state(self):
        entry = self.put(description='pulled', sync_state='synced')
        again = self.put(id=entry['id'], description='pulled again', sync_state='synced')
        self.assertEqual(again['sync_state'], 'synced')
        self.assertTrue(again['synced'])

    def test_tombstone_is_not_revived(self):
        entry = self.put(amount=-1, sync_state='synced')
        store.delete(self.session, entry['id'])

        with mute_ui_signals():
            with self.assertRaises(status.InvalidTransitionException):
                self.put(id=entry['id'], amount=-2)
            with self.assertRaises(status.InvalidTransitionException):
                self.put(id=entry['id'], amount=-2, sync_state='new')
            with self.assertRaises(status.InvalidTransitionException):
                store.update(self.session, entry['id'], amount=-2)

        result = store.merge_remote(self.session, [{'id': entry['id'], 'date': '01-01-2025', 'amount': -3}])
        self.assertEqual(result.skipped, 1)
        self.assertEqual(len(store.mark_synced(self.session, [entry['id']]).errors), 1)

        stored = store.get_by_id(self.session, entry['id'])
        self.assertEqual(stored['sync_state'], 'deleted')
        self.assertEqual(stored['amount'], -1.0)
        self.assertFalse(stored['synced'])

    def test_synced_flag_follows_state(self):
        entry = self.put(sync_state='synced')
        self.assertTrue(entry['synced'])
        self.assertTrue(store.get_by_id(self.session, entry['id'])['synced'])

    def test_cannot_overwrite_other_owner(self):
        foreign = self.insert_foreign()
        with mute_ui_signals():
            with self.assertRaises(status.EntryOwnershipException):
                self.put(id=foreign, description='hijack')
        row = self.session.conn.execute('SELECT owner, description FROM entries WHERE id=?', (foreign,)).fetchone()
        self.assertEqual(row['owner'], OTHER_OWNER)
        self.assertEqual(row['description'], 'theirs')

    def test_invalid_amount(self):
        with self.assertRaises(ValueError):
            self.put(amount='lots')
        self.assertEqual(store.get_all(self.session), [])


class PreconditionTests(EntryStoreTestCase):

    def test_no_owner(self):
        with mute_ui_signals():
            with self.assertRaises(status.NoActiveUserException):
                store.get_all(Session())
            with self.assertRaises(status.NoActiveUserException):
                store.put(None, {})

    def test_owner_without_store(self):
        with mute_ui_signals():
            with self.assertRaises(status.StoreNotInitializedException):
                store.get_all(Session(owner=OWNER))

    def test_after_close(self):
        lifecycle.lifecycle.close()
        with mute_ui_signals():
            with self.assertRaises(status.NoActiveUserException):
                store.get_all(self.session)
            with self.assertRaises(status.NoActiveUserException):
                store.pending_sync(self.session)


class IsolationTests(EntryStoreTestCase):

    def test_get_all_is_owner_scoped(self):
        mine = self.put(description='mine')
        self.insert_foreign()
        entries = store.get_all(self.session)
        self.assertEqual([e['id'] for e in entries], [mine['id']])

    def test_get_by_id_cross_owner(self):
        foreign = self.insert_foreign()
        self.assertIsNone(store.get_by_id(self.session, foreign))
        self.assertIsNone(store.get_by_id(self.session, 'does-not-exist'))

    def test_get_all_without_owner_index(self):
        mine = self.put(description='mine')
        self.insert_foreign()
        self.session.conn.execute(f'DROP INDEX {database.index_name("owner")}')
        self.session.conn.commit()

        with self.assertLogs(level='WARNING') as logs:
            entries = store.get_all(self.session)
        self.assertEqual([e['id'] for e in entries], [mine['id']])
        self.assertTrue(any('Owner index unavailable' in line for line in logs.output))


class QueryTests(EntryStoreTestCase):

    def setUp(self) -> None:
        super().setUp()
        self.salary = self.put(date='01-01-2025', amount=100, main='Salary', sub='Job')
        self.groceries = self.put(date='15-01-2025', amount=-20, main='Food', sub='Groceries')
        self.cafe = self.put(date='31-01-2025', amount=-5, main='Food', sub='Cafe')
        self.rent = self.put(date='01-02-2025', amount=-50, main='Rent', sub='Home')
        self.gone = self.put(date='20-01-2025', amount=-7, main='Food', sub='Cafe')
        store.delete(self.session, self.gone['id'])

    def ids(self, entries):
        return {e['id'] for e in entries}

    def test_categories(self):
        self.assertEqual(self.ids(store.query(self.session, main='Food')),
                         {self.groceries['id'], self.cafe['id']})
        self.assertEqual(self.ids(store.query(self.session, sub='Cafe')), {self.cafe['id']})

    def test_type(self):
        self.assertEqual(self.ids(store.query(self.session, type='income')), {self.salary['id']})
        self.assertEqual(self.ids(store.query(self.session, type='expense')),
                         {self.groceries['id'], self.cafe['id'], self.rent['id']})
        with self.assertRaises(ValueError):
            store.query(self.session, type='transfer')

    def test_date_range_is_inclusive(self):
        result = store.query(self.session, from_date='2025-01-15', to_date='2025-01-31')
        self.assertEqual(self.ids(result), {self.groceries['id'], self.cafe['id']})

        # A time on the end date still covers the whole day
        result = store.query(self.session, to_date=datetime.datetime(2025, 1, 31, 0, 0))
        self.assertEqual(self.ids(result), {self.salary['id'], self.groceries['id'], self.cafe['id']})

    def test_deleted_excluded_by_default(self):
        self.assertNotIn(self.gone['id'], self.ids(store.query(self.session)))
        self.assertIn(self.gone['id'], self.ids(store.query(self.session, include_deleted=True)))


class SyncStateTests(EntryStoreTestCase):

    def test_pending_sync(self):
        new = self.put(description='new')
        synced = self.put(description='synced', sync_state='synced')
        edited = self.put(description='edited', sync_state='synced')
        store.update(self.session, edited['id'], description='changed')

        pending = {e['id'] for e in store.pending_sync(self.session)}
        self.assertEqual(pending, {new['id'], edited['id']})
        self.assertNotIn(synced['id'], pending)

    def test_mark_synced_partial_success(self):
        a = self.put(description='a')
        b = self.put(description='b')
        foreign = self.insert_foreign()

        result = store.mark_synced(self.session, [a['id'], 'missing', b['id'], foreign])

        self.assertEqual(result.updated_count, 2)
        self.assertEqual([e['id'] for e in result.errors], ['missing', foreign])
        self.assertEqual(store.get_by_id(self.session, a['id'])['sync_state'], 'synced')
        self.assertTrue(store.get_by_id(self.session, b['id'])['synced'])
        row = self.session.conn.execute('SELECT sync_state FROM entries WHERE id=?', (foreign,)).fetchone()
        self.assertEqual(row['sync_state'], 'new')

    def test_mark_synced_refreshes_synced_rows(self):
        entry = self.put(sync_state='synced')
        stamp = '2030-01-01T00:00:00+00:00'
        with patch.object(database, 'now_str', return_value=stamp):
            result = store.mark_synced(self.session, [entry['id']])
        self.assertEqual(result.updated_count, 1)
        stored = store.get_by_id(self.session, entry['id'])
        self.assertEqual(stored['updated_at'], stamp)
        self.assertEqual(stored['sync_state'], 'synced')

    def test_mark_synced_skips_tombstones(self):
        entry = self.put()
        store.delete(self.session, entry['id'])
        result = store.mark_synced(self.session, [entry['id']])
        self.assertEqual(result.updated_count, 0)
        self.assertEqual(len(result.errors), 1)
        self.assertEqual(store.get_by_id(self.session, entry['id'])['sync_state'], 'deleted')

    def test_update_transitions(self):
        new = self.put(description='new')
        synced = self.put(description='synced', sync_state='synced')

        self.assertEqual(store.update(self.session, new['id'], amount=-1)['sync_state'], 'new')
        updated = store.update(self.session, synced['id'], amount=-2, main='Food')
        self.assertEqual(updated['sync_state'], 'edited')
        self.assertFalse(updated['synced'])
        self.assertEqual(updated['amount'], -2.0)
        self.assertEqual(updated['created_at'], synced['created_at'])

    def test_update_ignores_protected_fields(self):
        entry = self.put()
        updated = store.update(self.session, entry['id'], owner='mallory', sync_state='synced', description='x')
        self.assertEqual(updated['owner'], OWNER)
        self.assertEqual(updated['sync_state'], 'new')
        self.assertEqual(updated['description'], 'x')

    def test_update_missing_or_deleted(self):
        self.assertIsNone(store.update(self.session, 'missing', amount=1))
        entry = self.put()
        store.delete(self.session, entry['id'])
        with mute_ui_signals():
            with self.assertRaises(status.InvalidTransitionException):
                store.update(self.session, entry['id'], amount=1)

    def test_delete_and_purge(self):
        entry = self.put(sync_state='synced')
        self.assertTrue(store.delete(self.session, entry['id']))

        deleted = store.get_by_id(self.session, entry['id'])
        self.assertEqual(deleted['sync_state'], 'deleted')
        self.assertFalse(deleted['synced'])
        self.assertIn(entry['id'], [e['id'] for e in store.pending_sync(self.session)])

        with mute_ui_signals():
            with self.assertRaises(status.InvalidTransitionException):
                store.delete(self.session, entry['id'])

        self.assertFalse(store.delete(self.session, 'missing'))
        self.assertEqual(store.purge(self.session, [entry['id'], 'missing']), 1)
        self.assertIsNone(store.get_by_id(self.session, entry['id']))

    def test_purge_is_owner_scoped(self):
        foreign = self.insert_foreign()
        self.assertEqual(store.purge(self.session, [foreign]), 0)


class MergeRemoteTests(EntryStoreTestCase):

    def test_merge_rules(self):
        synced = self.put(description='old', amount=-1, sync_state='synced')
        edited = self.put(description='local edit', amount=-2, sync_state='synced')
        store.update(self.session, edited['id'], description='local edit 2')
        new = self.put(description='local new')
        foreign = self.insert_foreign()

        result = store.merge_remote(self.session, [
            {'id': synced['id'], 'date': '02-02-2025', 'description': 'remote', 'amount': -9, 'main': 'Food'},
            {'id': edited['id'], 'date': '02-02-2025', 'description': 'remote', 'amount': -9},
            {'id': new['id'], 'date': '02-02-2025', 'description': 'remote', 'amount': -9},
            {'id': 'remote-only', 'date': '03-02-2025', 'description': 'fresh', 'amount': 4, 'main': 'Gift'},
            {'id': foreign, 'date': '03-02-2025', 'amount': 1},
            {'date': '03-02-2025', 'amount': 1},
        ])

        self.assertEqual(result.updated, 1)
        self.assertEqual(result.inserted, 1)
        self.assertEqual(result.skipped, 2)
        self.assertEqual(len(result.errors), 2)

        self.assertEqual(store.get_by_id(self.session, synced['id'])['description'], 'remote')
        self.assertEqual(store.get_by_id(self.session, edited['id'])['description'], 'local edit 2')
        self.assertEqual(store.get_by_id(self.session, edited['id'])['sync_state'], 'edited')
        self.assertEqual(store.get_by_id(self.session, new['id'])['description'], 'local new')

        fresh = store.get_by_id(self.session, 'remote-only')
        self.assertEqual(fresh['owner'], OWNER)
        self.assertEqual(fresh['sync_state'], 'synced')
        self.assertTrue(fresh['synced'])
        self.assertIn('Gift', store.get_heads(self.session))


class ClearTests(EntryStoreTestCase):

    def test_declined(self):
        self.put()
        self.put()
        actions.set_confirm_handler(lambda message: False)
        with mute_ui_signals():
            with self.assertRaises(status.OperationCancelledException):
                store.clear(self.session)
        self.assertEqual(len(store.get_all(self.session)), 2)

    def test_confirmed(self):
        self.put()
        self.put()
        foreign = self.insert_foreign()
        questions = []
        actions.set_confirm_handler(lambda message: questions.append(message) or True)

        self.assertEqual(store.clear(self.session), 2)
        self.assertEqual(store.get_all(self.session), [])
        self.assertEqual(len(questions), 1)
        row = self.session.conn.execute('SELECT id FROM entries WHERE id=?', (foreign,)).fetchone()
        self.assertIsNotNone(row)


class StatsAndExportTests(EntryStoreTestCase):

    def test_stats_empty(self):
        stats = store.stats(self.session)
        self.assertEqual(stats['total_entries'], 0)
        self.assertEqual(stats['categories'], {})
        self.assertEqual(stats['sync_status'], {'new': 0, 'edited': 0, 'synced': 0, 'deleted': 0})

    def test_stats(self):
        self.put(amount=100, main='Salary', sync_state='synced')
        self.put(amount=-20, main='Food')
        self.put(amount=-5, main='Food')
        gone = self.put(amount=-50, main='Rent', sync_state='synced')
        store.delete(self.session, gone['id'])
        self.insert_foreign()

        stats = store.stats(self.session)
        self.assertEqual(stats['total_entries'], 4)
        self.assertEqual(stats['active_entries'], 3)
        self.assertEqual(stats['deleted_entries'], 1)
        self.assertEqual(stats['pending_sync'], 3)
        self.assertAlmostEqual(stats['total_income'], 100.0)
        self.assertAlmostEqual(stats['total_expense'], 25.0)
        self.assertEqual(stats['categories'], {'Food': 2, 'Salary': 1})
        self.assertEqual(stats['sync_status'], {'new': 2, 'edited': 0, 'synced': 1, 'deleted': 1})

    def test_data(self):
        self.put(amount=1)
        self.insert_foreign()
        df = store.data(self.session)
        self.assertIsInstance(df, pd.DataFrame)
        self.assertEqual(len(df), 1)
        self.assertEqual(set(database.ENTRY_FIELDS), set(df.columns))

    def test_export(self):
        entry = self.put(amount=1, main='Food', sub='Cafe')
        exported = store.export(self.session)
        self.assertEqual(exported['version'], '2.0')
        self.assertEqual(exported['owner'], OWNER)
        self.assertTrue(exported['exported_at'])
        self.assertEqual([e['id'] for e in exported['entries']], [entry['id']])
        self.assertEqual(exported['settings']['heads'], {'Food': ['Cafe']})

    def test_csv_round_trip(self):
        self.put(date='01-01-2025', description='Coffee', amount=-3.5, main='Food', sub='Cafe')
        gone = self.put(description='gone', amount=-1)
        store.delete(self.session, gone['id'])

        fd, path = tempfile.mkstemp(suffix='.csv')
        os.close(fd)
        self.addCleanup(os.remove, path)

        self.assertEqual(store.export_csv(self.session, path), 1)
        df = pd.read_csv(path)
        self.assertEqual(list(df.columns), database.CSV_COLUMNS)

        result = store.import_csv(self.session, path)
        self.assertEqual(result, {'imported': 1, 'skipped': 0})
        coffees = [e for e in store.get_all(self.session) if e['description'] == 'Coffee']
        self.assertEqual(len(coffees), 2)
        self.assertNotEqual(coffees[0]['id'], coffees[1]['id'])
        self.assertTrue(all(e['sync_state'] == 'new' for e in coffees))

    def test_import_skips_bad_rows(self):
        fd, path = tempfile.mkstemp(suffix='.csv')
        os.close(fd)
        self.addCleanup(os.remove, path)
        with open(path, 'w', encoding='utf-8') as f:
            f.write('date,description,amount,main,sub\n')
            f.write('2025-01-02,Bread,-2.5,Food,Bakery\n')
            f.write('02-01-2025,Broken,abc,Food,Bakery\n')
            f.write('not a date,Broken,-1,Food,Bakery\n')

        result = store.import_csv(self.session, path)
        self.assertEqual(result, {'imported': 1, 'skipped': 2})
        entry = store.get_all(self.session)[0]
        self.assertEqual(entry['date'], '02-01-2025')
        self.assertEqual(entry['amount'], -2.5)


class SettingsCollectionTests(EntryStoreTestCase):

    def test_settings(self):
        self.assertIsNone(store.get_setting(self.session, 'theme'))
        self.assertEqual(store.get_setting(self.session, 'theme', 'light'), 'light')
        store.set_setting(self.session, 'theme', {'mode': 'dark'})
        self.assertEqual(store.get_setting(self.session, 'theme'), {'mode': 'dark'})

    def test_heads_follow_writes(self):
        self.put(main='Food', sub='Groceries')
        self.put(main='Food', sub='Cafe')
        self.put(main='Food', sub='Cafe')
        self.put(main='Rent')
        self.assertEqual(store.get_heads(self.session), {'Food': ['Cafe', 'Groceries'], 'Rent': []})

    def test_save_and_register_heads(self):
        store.save_heads(self.session, {'Travel': ['Train', 'Bus', 'Bus', '']})
        self.assertEqual(store.get_heads(self.session), {'Travel': ['Bus', 'Train']})
        heads = store.register_heads(self.session, [{'main': 'Travel', 'sub': 'Taxi'}, {'main': '', 'sub': 'x'}])
        self.assertEqual(heads, {'Travel': ['Bus', 'Taxi', 'Train']})


if __name__ == '__main__':
    unittest.main()
