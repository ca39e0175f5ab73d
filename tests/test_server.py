"""
Tests for the HTTP API in AccountsDiary.server.

Run:
    python -m unittest tests.test_server
"""
import unittest
from unittest.mock import patch

import sqlmodel
from jose import JWTError
from sqlalchemy.exc import SQLAlchemyError

from AccountsDiary.server import security
from tests.base import BaseServerTestCase, TEST_SECRET


class SecurityTests(unittest.TestCase):

    def test_password_hash(self):
        hashed = security.hash_password('secret')
        self.assertNotEqual(hashed, 'secret')
        self.assertTrue(security.verify_password('secret', hashed))
        self.assertFalse(security.verify_password('wrong', hashed))
        self.assertFalse(security.verify_password('secret', 'not-a-hash'))

    def test_token_claims(self):
        token = security.create_token('u1', 'u1@example.com', TEST_SECRET, 7)
        claims = security.decode_token(token, TEST_SECRET)
        self.assertEqual(claims['userId'], 'u1')
        self.assertEqual(claims['email'], 'u1@example.com')
        self.assertIn('exp', claims)

    def test_expired_token(self):
        token = security.create_token('u1', 'u1@example.com', TEST_SECRET, -1)
        with self.assertRaises(JWTError):
            security.decode_token(token, TEST_SECRET)


class AccountTests(BaseServerTestCase):

    def test_register(self):
        data = self.register('Alice@Example.com ', 'secret')
        self.assertTrue(data['success'])
        self.assertEqual(data['user']['email'], 'alice@example.com')
        self.assertEqual(data['user']['name'], 'alice')
        claims = security.decode_token(data['token'], TEST_SECRET)
        self.assertEqual(claims['userId'], data['user']['id'])

    def test_register_with_name(self):
        data = self.register('bob@example.com', 'secret', name='Bob')
        self.assertEqual(data['user']['name'], 'Bob')

    def test_register_missing_fields(self):
        response = self.client.post('/register', json={'email': 'a@example.com'})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {'success': False, 'message': 'Email and password are required'})

    def test_register_duplicate(self):
        self.register('alice@example.com')
        response = self.client.post('/register', json={'email': 'ALICE@example.com', 'password': 'x'})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['message'], 'User already exists')

    def test_invalid_body(self):
        response = self.client.post(
            '/register', content='not json', headers={'Content-Type': 'application/json'}
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {'success': False, 'message': 'Invalid request body'})

    def test_distinct_user_ids(self):
        a = self.register('a@example.com')
        b = self.register('b@example.com')
        self.assertNotEqual(a['user']['id'], b['user']['id'])

    def test_login(self):
        registered = self.register('alice@example.com', 'secret')
        response = self.client.post('/login', json={'email': 'alice@example.com', 'password': 'secret'})
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data['message'], 'Login successful')
        self.assertEqual(data['user']['id'], registered['user']['id'])
        self.assertTrue(data['token'])

    def test_login_failures(self):
        self.register('alice@example.com', 'secret')
        for payload in (
                {'email': 'alice@example.com', 'password': 'wrong'},
                {'email': 'nobody@example.com', 'password': 'secret'},
        ):
            response = self.client.post('/login', json=payload)
            self.assertEqual(response.status_code, 401)
            self.assertEqual(response.json(), {'success': False, 'message': 'Invalid credentials'})

        response = self.client.post('/login', json={'email': 'alice@example.com'})
        self.assertEqual(response.status_code, 400)


class ExpenseTests(BaseServerTestCase):

    def setUp(self) -> None:
        super().setUp()
        self.alice = self.register('alice@example.com')
        self.headers = self.bearer(self.alice['token'])

    def push(self, rows, headers=None):
        return self.client.post('/expenses', json={'expenses': rows}, headers=headers or self.headers)

    def fetch(self, headers=None):
        response = self.client.get('/expenses', headers=headers or self.headers)
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    def test_requires_token(self):
        response = self.client.get('/expenses')
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json(), {'success': False, 'message': 'Unauthorized'})

    def test_rejects_bad_tokens(self):
        forged = security.create_token(self.alice['user']['id'], 'alice@example.com', 'other-secret', 7)
        expired = security.create_token(self.alice['user']['id'], 'alice@example.com', TEST_SECRET, -1)
        for token in ('garbage', forged, expired):
            response = self.client.get('/expenses', headers=self.bearer(token))
            self.assertEqual(response.status_code, 401)
            self.assertEqual(response.json()['message'], 'Invalid token')

    def test_push_and_fetch(self):
        response = self.push([
            {'id': 'e1', 'date': '01-01-2025', 'description': 'Coffee', 'amount': -3.5,
             'main_category': 'Food', 'sub_category': 'Cafe', 'sync_state': 'new'},
            {'id': 'e2', 'date': '2025-02-01', 'amount': 100, 'main_category': 'Salary'},
        ])
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual((data['inserted'], data['updated']), (2, 0))
        self.assertEqual(data['successes'], ['e1', 'e2'])
        self.assertNotIn('errors', data)

        fetched = self.fetch()
        self.assertEqual(fetched['count'], 2)
        self.assertEqual([r['id'] for r in fetched['expenses']], ['e2', 'e1'])
        first = fetched['expenses'][1]
        self.assertEqual(first['date'], '01-01-2025')
        self.assertEqual(first['main_category'], 'Food')
        self.assertEqual(first['sub_category'], 'Cafe')
        self.assertEqual(first['amount'], -3.5)

    def test_upsert(self):
        self.push([{'id': 'e1', 'date': '01-01-2025', 'amount': -1}])
        data = self.push([{'id': 'e1', 'date': '01-01-2025', 'amount': -2, 'description': 'edited'}]).json()
        self.assertEqual((data['inserted'], data['updated']), (0, 1))
        row = self.fetch()['expenses'][0]
        self.assertEqual(row['amount'], -2.0)
        self.assertEqual(row['description'], 'edited')

    def test_partial_batch(self):
        data = self.push([
            {'id': 'ok', 'date': '01-01-2025', 'amount': 1},
            {'id': 'no-amount', 'date': '01-01-2025'},
            {'date': '01-01-2025', 'amount': 1},
            {'id': 'bad-date', 'date': '2025/01/01', 'amount': 1},
        ]).json()
        self.assertTrue(data['success'])
        self.assertEqual(data['successes'], ['ok'])
        self.assertEqual([e['id'] for e in data['errors']], ['no-amount', '', 'bad-date'])
        self.assertEqual(data['errors'][0]['error'], 'Missing required fields (id, date, amount)')

    def test_invalid_batch(self):
        response = self.client.post('/expenses', json={}, headers=self.headers)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['message'], 'Invalid data format. Expected {expenses: array}')

    def test_empty_batch(self):
        data = self.push([]).json()
        self.assertEqual(data['message'], 'No expenses to sync')
        self.assertEqual(data['successes'], [])

    def test_deleted_state_hides_row(self):
        self.push([{'id': 'e1', 'date': '01-01-2025', 'amount': -1}])
        self.push([{'id': 'e1', 'date': '01-01-2025', 'amount': -1, 'sync_state': 'deleted'}])
        self.assertEqual(self.fetch()['expenses'], [])

    def test_fetch_limit(self):
        self.app.state.config['max_rows'] = 2
        self.push([{'id': f'e{i}', 'date': f'0{i}-01-2025', 'amount': -i} for i in range(1, 5)])
        rows = self.fetch()['expenses']
        self.assertEqual([r['id'] for r in rows], ['e4', 'e3'])

    def test_delete(self):
        self.push([{'id': 'e1', 'date': '01-01-2025', 'amount': -1}])
        response = self.client.delete('/expenses', params={'id': 'e1'}, headers=self.headers)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['message'], 'Expense marked as deleted')
        self.assertEqual(self.fetch()['expenses'], [])

    def test_delete_requires_id(self):
        response = self.client.delete('/expenses', headers=self.headers)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['message'], 'Expense ID required')

    def test_users_are_isolated(self):
        bob = self.register('bob@example.com')
        bob_headers = self.bearer(bob['token'])
        self.push([{'id': 'shared', 'date': '01-01-2025', 'amount': -1, 'description': 'alice'}])

        self.assertEqual(self.fetch(bob_headers)['expenses'], [])

        # The same id pushed by another user is a separate row
        data = self.push([{'id': 'shared', 'date': '01-01-2025', 'amount': -9, 'description': 'bob'}],
                         headers=bob_headers).json()
        self.assertEqual(data['inserted'], 1)
        self.client.delete('/expenses', params={'id': 'shared'}, headers=bob_headers)

        rows = self.fetch()['expenses']
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]['description'], 'alice')


class HealthTests(BaseServerTestCase):

    def test_healthy(self):
        response = self.client.get('/health')
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertTrue(data['success'])
        self.assertTrue(data['timestamp'])

    def test_database_down(self):
        with patch.object(sqlmodel.Session, 'connection', side_effect=SQLAlchemyError('down')):
            with self.assertLogs(level='ERROR'):
                response = self.client.get('/health')
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json(), {'success': False, 'message': 'Database connection failed'})


if __name__ == '__main__':
    unittest.main()
