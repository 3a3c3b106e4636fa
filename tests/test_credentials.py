"""
Tests for Google token handling and the Calendar API client
"""

import unittest
from unittest import mock

import requests
from google.auth.exceptions import RefreshError, TransportError

from instacal.calendar_service import GoogleCalendarService
from instacal.credentials import GoogleCredentialProvider, GoogleTokenRefresher
from instacal.errors import CredentialError, ProviderError, TransientIOError
from instacal.models import User, db
from instacal.stores import UserStore
from tests import DatabaseTestCase


class TestGoogleCredentialProvider(DatabaseTestCase):

    def setUp(self):
        super().setUp()
        self.provider = GoogleCredentialProvider(UserStore(db.session), self._refresh, self.calendar)

    def test_valid_token_is_returned(self):
        user_id = self.make_user()
        self.assertEqual(self.provider.get_valid_access_token(user_id), 'access-token')
        self.assertEqual(self.refreshed_tokens, [])

    def test_unknown_user(self):
        with self.assertRaises(CredentialError):
            self.provider.get_valid_access_token(999)

    def test_missing_access_token(self):
        user_id = self.make_user(access_token=None)
        with self.assertRaisesRegex(CredentialError, 'connect your Google Calendar'):
            self.provider.get_valid_access_token(user_id)
        self.assertEqual(self.calendar.tokens, [])

    def test_expired_token_refreshes_and_persists(self):
        self.calendar.probe_status = 401
        user_id = self.make_user()

        token = self.provider.get_valid_access_token(user_id)

        self.assertEqual(token, 'refreshed-access-token')
        user = db.session.get(User, user_id)
        self.assertEqual(user.google_access_token, 'refreshed-access-token')
        self.assertEqual(user.google_refresh_token, 'refresh-token')

    def test_expired_token_without_refresh_token(self):
        self.calendar.probe_status = 401
        user_id = self.make_user(refresh_token=None)

        with self.assertRaisesRegex(CredentialError, 'reconnect'):
            self.provider.get_valid_access_token(user_id)
        self.assertEqual(self.refreshed_tokens, [])

    def test_other_probe_failures(self):
        self.calendar.probe_status = 403
        user_id = self.make_user()

        with self.assertRaises(CredentialError) as raised:
            self.provider.get_valid_access_token(user_id)
        self.assertEqual(raised.exception.meta, {'status': 403})

    def test_refresh_requires_refresh_token(self):
        user_id = self.make_user(refresh_token=None)
        with self.assertRaises(CredentialError):
            self.provider.refresh(user_id)

    def test_refresher_failure_propagates(self):
        self.calendar.probe_status = 401
        user_id = self.make_user()
        provider = GoogleCredentialProvider(UserStore(db.session),
                                            mock.Mock(side_effect=CredentialError('invalid_grant')),
                                            self.calendar)

        with self.assertRaises(CredentialError):
            provider.get_valid_access_token(user_id)
        self.assertEqual(db.session.get(User, user_id).google_access_token, 'access-token')


class TestGoogleTokenRefresher(unittest.TestCase):

    def setUp(self):
        self.refresher = GoogleTokenRefresher('client-id', 'client-secret')

    @mock.patch('instacal.credentials.Credentials')
    def test_returns_new_token(self, credentials_cls):
        credentials_cls.return_value.token = 'new-access-token'

        self.assertEqual(self.refresher('refresh-token'), 'new-access-token')

        kwargs = credentials_cls.call_args.kwargs
        self.assertEqual(kwargs['refresh_token'], 'refresh-token')
        self.assertEqual(kwargs['client_id'], 'client-id')
        self.assertEqual(kwargs['client_secret'], 'client-secret')
        credentials_cls.return_value.refresh.assert_called_once()

    @mock.patch('instacal.credentials.Credentials')
    def test_rejected_refresh_token(self, credentials_cls):
        credentials_cls.return_value.refresh.side_effect = RefreshError('invalid_grant')
        with self.assertRaises(CredentialError):
            self.refresher('revoked-token')

    @mock.patch('instacal.credentials.Credentials')
    def test_token_endpoint_unreachable(self, credentials_cls):
        credentials_cls.return_value.refresh.side_effect = TransportError('connection reset')
        with self.assertRaises(TransientIOError):
            self.refresher('refresh-token')

    @mock.patch('instacal.credentials.Credentials')
    def test_empty_token(self, credentials_cls):
        credentials_cls.return_value.token = None
        with self.assertRaises(CredentialError):
            self.refresher('refresh-token')


class TestGoogleCalendarService(unittest.TestCase):

    def setUp(self):
        self.session = mock.Mock()
        self.service = GoogleCalendarService('access-token', session=self.session, timeout=10)

    def test_probe_reads_calendar(self):
        self.session.get.return_value = mock.Mock(status_code=200)

        self.assertEqual(self.service.probe(), 200)
        self.session.get.assert_called_once_with(
            'https://www.googleapis.com/calendar/v3/calendars/primary',
            headers={'Authorization': 'Bearer access-token'},
            timeout=10
        )

    def test_calendar_id_is_quoted(self):
        service = GoogleCalendarService('access-token', calendar_id='team@group.calendar.google.com',
                                        session=self.session)
        self.session.get.return_value = mock.Mock(status_code=401)

        self.assertEqual(service.probe(), 401)
        url = self.session.get.call_args.args[0]
        self.assertTrue(url.endswith('/calendars/team%40group.calendar.google.com'))

    def test_probe_network_failure(self):
        self.session.get.side_effect = requests.ConnectionError('unreachable')
        with self.assertRaises(TransientIOError):
            self.service.probe()

    def test_create_event(self):
        self.session.post.return_value = mock.Mock(
            ok=True, status_code=200,
            json=mock.Mock(return_value={'id': 'abc123', 'htmlLink': 'https://calendar.google.com/event?eid=abc'})
        )

        event = self.service.create_event({'summary': 'CLUB INFO SESSION'})

        self.assertEqual(event['id'], 'abc123')
        args, kwargs = self.session.post.call_args
        self.assertEqual(args[0], 'https://www.googleapis.com/calendar/v3/calendars/primary/events')
        self.assertEqual(kwargs['json'], {'summary': 'CLUB INFO SESSION'})

    def test_create_event_rejected(self):
        self.session.post.return_value = mock.Mock(ok=False, status_code=400, text='Invalid start time')

        with self.assertRaises(ProviderError) as raised:
            self.service.create_event({'summary': 'Broken'})

        self.assertEqual(raised.exception.status, 400)
        self.assertEqual(raised.exception.message, 'Calendar API error: 400 Invalid start time')

    def test_create_event_success_without_json(self):
        self.session.post.return_value = mock.Mock(
            ok=True, status_code=200, text='<html>proxy page</html>',
            json=mock.Mock(side_effect=ValueError('Expecting value'))
        )

        with self.assertRaises(ProviderError) as raised:
            self.service.create_event({'summary': 'CLUB INFO SESSION'})
        self.assertEqual(raised.exception.status, 200)
        self.assertEqual(raised.exception.body, '<html>proxy page</html>')

    def test_create_event_success_without_id(self):
        self.session.post.return_value = mock.Mock(
            ok=True, status_code=200, text='{"kind": "calendar#event"}',
            json=mock.Mock(return_value={'kind': 'calendar#event'})
        )

        with self.assertRaises(ProviderError):
            self.service.create_event({'summary': 'CLUB INFO SESSION'})

    def test_create_event_network_failure(self):
        self.session.post.side_effect = requests.Timeout('timed out')
        with self.assertRaises(TransientIOError):
            self.service.create_event({'summary': 'Slow'})


if __name__ == '__main__':
    unittest.main()
