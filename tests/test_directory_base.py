#!/usr/bin/env python3
"""
Test suite for DirectoryAPIBase.

Covers authentication header setup, OAuth2 token handling, and request and
response handling including error message extraction.
"""

import os
import sys
import json
import time
import base64
import unittest
from unittest.mock import Mock, patch

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from directory_sync.gateways.base import DirectoryAPIBase, DirectoryAPIError, DirectoryAuthenticationError, Resolution
from directory_sync.models import DestinationKind
from directory_sync.roster import Roster


class StubDirectoryAPI(DirectoryAPIBase):
    """Minimal implementation of the abstract collaborator methods."""

    def resolve(self, reference):
        return Resolution(False, DestinationKind.UNSUPPORTED)

    def list_current_members(self, group):
        return Roster.empty()

    def add_member(self, group, identity, role):
        pass

    def remove_members(self, group, identities, role=None):
        pass

    def get_user_attributes(self, identity, names):
        return None

    def update_user_attributes(self, identity, changes):
        pass


def make_config(auth, base_url='https://api.example.com/v1'):
    return {'name': 'stub', 'module': 'stub', 'base_url': base_url, 'auth': auth}


def make_response(status, body='', reason='OK'):
    response = Mock()
    response.status = status
    response.reason = reason
    response.read.return_value = body.encode('utf-8')
    return response


class TestAuthentication(unittest.TestCase):
    """Authentication header setup."""

    def test_basic_auth(self):
        api = StubDirectoryAPI(make_config({'method': 'basic', 'username': 'svc', 'password': 'pw'}))
        expected = base64.b64encode(b'svc:pw').decode()
        self.assertEqual(api.auth_headers['Authorization'], f'Basic {expected}')
        self.assertTrue(api.authenticate())

    def test_bearer_token(self):
        api = StubDirectoryAPI(make_config({'method': 'token', 'token': 'tok'}))
        self.assertEqual(api.auth_headers['Authorization'], 'Bearer tok')

    def test_api_key_custom_header(self):
        api = StubDirectoryAPI(make_config({'method': 'api_key', 'api_key': 'k', 'header': 'X-Custom-Key'}))
        self.assertEqual(api.auth_headers, {'X-Custom-Key': 'k'})

    def test_missing_credentials_fail_authentication(self):
        api = StubDirectoryAPI(make_config({'method': 'basic', 'username': 'svc'}))
        self.assertFalse(api.authenticate())

    @patch('directory_sync.gateways.base.HTTPSConnection')
    def test_oauth2_token(self, mock_connection_class):
        conn = Mock()
        conn.getresponse.return_value = make_response(200, json.dumps({'access_token': 'at', 'expires_in': 3600}))
        mock_connection_class.return_value = conn

        api = StubDirectoryAPI(make_config({
            'method': 'oauth2', 'client_id': 'c', 'client_secret': 's',
            'token_url': 'https://login.example.com/oauth2/token', 'scope': 'api'
        }))
        self.assertTrue(api.authenticate())
        self.assertEqual(api.auth_headers['Authorization'], 'Bearer at')

        method, path, body = conn.request.call_args[0][:3]
        self.assertEqual((method, path), ('POST', '/oauth2/token'))
        self.assertIn('grant_type=client_credentials', body)
        self.assertIn('scope=api', body)

        # A valid token is reused
        self.assertTrue(api.authenticate())
        self.assertEqual(conn.request.call_count, 1)

    @patch('directory_sync.gateways.base.HTTPSConnection')
    def test_oauth2_token_rejected(self, mock_connection_class):
        conn = Mock()
        conn.getresponse.return_value = make_response(401, '{"error": "invalid_client"}', 'Unauthorized')
        mock_connection_class.return_value = conn

        api = StubDirectoryAPI(make_config({
            'method': 'oauth2', 'client_id': 'c', 'client_secret': 's',
            'token_url': 'https://login.example.com/oauth2/token'
        }))
        self.assertFalse(api.authenticate())


class TestRequest(unittest.TestCase):
    """Request and response handling."""

    def setUp(self):
        self.api = StubDirectoryAPI(make_config({'method': 'token', 'token': 'tok'}))
        self.conn = Mock()
        self.api.connection = self.conn

    def test_json_response(self):
        self.conn.getresponse.return_value = make_response(200, '{"value": [1, 2]}')
        self.assertEqual(self.api.request('GET', '/groups'), {'value': [1, 2]})

        method, path, body, headers = self.conn.request.call_args[0]
        self.assertEqual((method, path, body), ('GET', '/v1/groups', None))
        self.assertEqual(headers['Authorization'], 'Bearer tok')

    def test_json_body(self):
        self.conn.getresponse.return_value = make_response(204, '')
        self.assertEqual(self.api.request('POST', '/groups/1/members', body={'id': 'u1'}), {})

        _, _, body, headers = self.conn.request.call_args[0]
        self.assertEqual(json.loads(body), {'id': 'u1'})
        self.assertEqual(headers['Content-Type'], 'application/json')

    def test_absolute_next_link(self):
        self.conn.getresponse.return_value = make_response(200, '{}')
        self.api.request('GET', 'https://api.example.com/v1/groups?$skiptoken=x')
        self.assertEqual(self.conn.request.call_args[0][1], '/v1/groups?$skiptoken=x')

    def test_error_carries_remote_message(self):
        body = json.dumps({'error': {'code': 'Request_BadRequest',
                                     'message': 'One or more added object references already exist'}})
        self.conn.getresponse.return_value = make_response(400, body, 'Bad Request')

        with self.assertRaises(DirectoryAPIError) as ctx:
            self.api.request('POST', '/groups/1/members/$ref', body={})
        self.assertEqual(ctx.exception.status, 400)
        self.assertEqual(str(ctx.exception),
                         'HTTP 400: Bad Request - One or more added object references already exist')

    def test_plain_message_field(self):
        self.conn.getresponse.return_value = make_response(404, '{"message": "User not found"}', 'Not Found')
        with self.assertRaises(DirectoryAPIError) as ctx:
            self.api.request('GET', '/users/x')
        self.assertIn('User not found', str(ctx.exception))

    def test_unauthorized(self):
        self.conn.getresponse.return_value = make_response(401, '', 'Unauthorized')
        with self.assertRaises(DirectoryAuthenticationError):
            self.api.request('GET', '/groups')

    def test_connection_error(self):
        self.conn.request.side_effect = ConnectionRefusedError('refused')
        with self.assertRaises(DirectoryAPIError) as ctx:
            self.api.request('GET', '/groups')
        self.assertIn('Connection error', str(ctx.exception))
        self.assertIsNone(self.api.connection)

    def _oauth2_api(self):
        api = StubDirectoryAPI(make_config({
            'method': 'oauth2', 'client_id': 'c', 'client_secret': 's',
            'token_url': 'https://login.example.com/oauth2/token'
        }))
        api.connection = self.conn
        return api

    def test_oauth2_stale_token_fetched_before_sending(self):
        api = self._oauth2_api()
        self.conn.getresponse.return_value = make_response(200, '{"ok": true}')

        def fetch():
            api.auth_headers['Authorization'] = 'Bearer fresh'
            api._token_expires_at = time.monotonic() + 3600
            return True

        with patch.object(api, '_fetch_oauth2_token', side_effect=fetch) as mock_fetch:
            self.assertEqual(api.request('GET', '/groups'), {'ok': True})
            self.assertEqual(api.request('GET', '/groups'), {'ok': True})

        mock_fetch.assert_called_once()
        self.assertEqual(self.conn.request.call_count, 2)
        self.assertEqual(self.conn.request.call_args[0][3]['Authorization'], 'Bearer fresh')

    def test_oauth2_401_is_not_resent(self):
        api = self._oauth2_api()
        api.auth_headers['Authorization'] = 'Bearer revoked'
        api._token_expires_at = time.monotonic() + 3600
        self.conn.getresponse.side_effect = [make_response(401, '', 'Unauthorized'), make_response(201, '{}')]

        with patch.object(api, '_fetch_oauth2_token') as mock_fetch:
            with self.assertRaises(DirectoryAuthenticationError):
                api.request('POST', '/groups/1/members/$ref', body={'id': 'u1'})

        mock_fetch.assert_not_called()
        self.assertEqual(self.conn.request.call_count, 1)

    def test_oauth2_token_unavailable(self):
        api = self._oauth2_api()
        with patch.object(api, '_fetch_oauth2_token', return_value=False):
            with self.assertRaises(DirectoryAuthenticationError):
                api.request('GET', '/groups')
        self.conn.request.assert_not_called()


if __name__ == '__main__':
    unittest.main()
