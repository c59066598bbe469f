#!/usr/bin/env python3
"""
Unit tests for the Harbor HTTP transport.

Covers URL building, authentication headers, JSON handling, error mapping
and retry of safe requests. Connections are replaced by mocks.
"""

import os
import sys
import json
import base64
import unittest
from unittest.mock import Mock, patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from harbor_group_sync.transport import (
    HarborTransport, ApiError, ApiAuthenticationError, ApiConnectionError, ApiResponse
)


def make_response(status=200, body=None, headers=None, reason='OK'):
    response = Mock()
    response.status = status
    response.reason = reason
    if body is None:
        raw = b''
    elif isinstance(body, str):
        raw = body.encode('utf-8')
    else:
        raw = json.dumps(body).encode('utf-8')
    response.read.return_value = raw
    response.getheaders.return_value = list(headers or [])
    return response


HARBOR_CONFIG = {
    'base_url': 'http://harbor.example.com',
    'username': 'admin',
    'password': 'Harbor12345',
}


class TestApiResponse(unittest.TestCase):

    def test_header_lookup_ignores_case(self):
        response = ApiResponse([], 200, {'Link': '<x>; rel="next"'})
        self.assertEqual(response.header('link'), '<x>; rel="next"')
        self.assertEqual(response.header('LINK'), '<x>; rel="next"')
        self.assertIsNone(response.header('Location'))
        self.assertEqual(response.header('Location', '-'), '-')


class TestHarborTransportSetup(unittest.TestCase):

    def test_base_paths(self):
        v2 = HarborTransport(HARBOR_CONFIG, '/api/v2.0')
        self.assertEqual(v2.host, 'harbor.example.com')
        self.assertEqual(v2.base_path, '/api/v2.0')
        self.assertEqual(v2.build_path('/usergroups'), '/api/v2.0/usergroups')

        prefixed = HarborTransport(dict(HARBOR_CONFIG, base_url='http://example.com/harbor/'), '/api')
        self.assertEqual(prefixed.build_path('usergroups/3'), '/harbor/api/usergroups/3')

    def test_build_path_with_params(self):
        transport = HarborTransport(HARBOR_CONFIG, '/api/v2.0')
        path = transport.build_path('/usergroups', {'page': 2, 'page_size': None, 'ldap_group_dn': 'cn=a,dc=x'})
        self.assertEqual(path, '/api/v2.0/usergroups?page=2&ldap_group_dn=cn%3Da%2Cdc%3Dx')

    def test_basic_auth_header(self):
        transport = HarborTransport(HARBOR_CONFIG, '/api/v2.0')
        expected = base64.b64encode(b'admin:Harbor12345').decode()
        self.assertEqual(transport.auth_headers['Authorization'], f'Basic {expected}')

    def test_anonymous_without_credentials(self):
        transport = HarborTransport({'base_url': 'http://harbor.example.com'}, '/api')
        self.assertEqual(transport.auth_headers, {})

    def test_ssl_context(self):
        http = HarborTransport(HARBOR_CONFIG, '/api')
        self.assertIsNone(http.ssl_context)

        https = HarborTransport(dict(HARBOR_CONFIG, base_url='https://harbor.example.com'), '/api')
        self.assertIsNotNone(https.ssl_context)

    def test_unsupported_truststore_type(self):
        config = dict(HARBOR_CONFIG, base_url='https://harbor.example.com',
                      truststore_file='/tmp/store', truststore_type='BKS')
        with self.assertRaises(ApiError):
            HarborTransport(config, '/api')

    def test_missing_pem_truststore(self):
        config = dict(HARBOR_CONFIG, base_url='https://harbor.example.com',
                      truststore_file='/nonexistent/ca.pem')
        with self.assertRaises(ApiError) as ctx:
            HarborTransport(config, '/api')
        self.assertIn('Truststore loading failed', str(ctx.exception))


@patch('harbor_group_sync.transport.HTTPConnection')
class TestHarborTransportRequests(unittest.TestCase):

    def make_transport(self, **retry):
        return HarborTransport(HARBOR_CONFIG, '/api/v2.0', retry or None)

    def test_get_decodes_json(self, mock_conn_cls):
        conn = mock_conn_cls.return_value
        conn.getresponse.return_value = make_response(
            body=[{'id': 1}], headers=[('Content-Type', 'application/json'), ('Link', '<a>; rel="next"')])

        response = self.make_transport().request('GET', '/usergroups', params={'page': 1})

        self.assertEqual(response.data, [{'id': 1}])
        self.assertEqual(response.header('Link'), '<a>; rel="next"')
        mock_conn_cls.assert_called_once_with('harbor.example.com', timeout=30)

        method, path, body, headers = conn.request.call_args[0]
        self.assertEqual((method, path, body), ('GET', '/api/v2.0/usergroups?page=1', None))
        self.assertEqual(headers['Accept'], 'application/json')
        self.assertTrue(headers['Authorization'].startswith('Basic '))

    def test_post_serializes_body(self, mock_conn_cls):
        conn = mock_conn_cls.return_value
        conn.getresponse.return_value = make_response(
            status=201, headers=[('Location', '/api/v2.0/usergroups/5')], reason='Created')

        body = {'usergroup': {'group_name': 'A', 'group_type': 1, 'ldap_group_dn': 'cn=a,dc=x'}}
        response = self.make_transport().request('post', '/usergroups', body=body)

        self.assertEqual(response.status, 201)
        self.assertIsNone(response.data)
        self.assertEqual(response.header('location'), '/api/v2.0/usergroups/5')
        self.assertEqual(json.loads(conn.request.call_args[0][2]), body)

    def test_repeated_headers_are_folded(self, mock_conn_cls):
        conn = mock_conn_cls.return_value
        conn.getresponse.return_value = make_response(
            body=[], headers=[('Link', '<a>; rel="prev"'), ('Link', '<b>; rel="next"')])

        response = self.make_transport().request('GET', '/usergroups')
        self.assertEqual(response.header('Link'), '<a>; rel="prev", <b>; rel="next"')

    def test_non_json_body_returned_as_text(self, mock_conn_cls):
        conn = mock_conn_cls.return_value
        conn.getresponse.return_value = make_response(body='pong', headers=[('Content-Type', 'text/plain')])
        self.assertEqual(self.make_transport().request('GET', '/ping').data, 'pong')

    def test_invalid_json(self, mock_conn_cls):
        conn = mock_conn_cls.return_value
        conn.getresponse.return_value = make_response(body='{not json')
        with self.assertRaises(ApiError):
            self.make_transport().request('GET', '/usergroups')

    def test_authentication_error(self, mock_conn_cls):
        conn = mock_conn_cls.return_value
        conn.getresponse.return_value = make_response(status=401, body='unauthorized', reason='Unauthorized')

        with self.assertRaises(ApiAuthenticationError) as ctx:
            self.make_transport().request('GET', '/users/current')
        self.assertEqual(ctx.exception.status_code, 401)
        self.assertEqual(ctx.exception.endpoint, 'GET /users/current')

    def test_http_error(self, mock_conn_cls):
        conn = mock_conn_cls.return_value
        conn.getresponse.return_value = make_response(status=409, body='conflict', reason='Conflict')

        with self.assertRaises(ApiError) as ctx:
            self.make_transport().request('POST', '/usergroups', body={})
        self.assertEqual(ctx.exception.status_code, 409)
        self.assertEqual(ctx.exception.detail, 'conflict')

    def test_connection_error(self, mock_conn_cls):
        conn = mock_conn_cls.return_value
        conn.request.side_effect = ConnectionRefusedError('refused')

        transport = self.make_transport()
        with self.assertRaises(ApiConnectionError):
            transport.request('GET', '/usergroups')
        self.assertIsNone(transport.connection)
        conn.close.assert_called_once()

    @patch('harbor_group_sync.retry.time.sleep')
    def test_get_is_retried_on_server_error(self, mock_sleep, mock_conn_cls):
        conn = mock_conn_cls.return_value
        conn.getresponse.side_effect = [
            make_response(status=503, body='busy', reason='Service Unavailable'),
            make_response(body=[]),
        ]

        transport = self.make_transport(max_retries=2, retry_wait_seconds=1)
        self.assertEqual(transport.request('GET', '/usergroups').data, [])
        self.assertEqual(conn.request.call_count, 2)
        mock_sleep.assert_called_once_with(1)

    @patch('harbor_group_sync.retry.time.sleep')
    def test_retries_exhausted_raise_last_error(self, mock_sleep, mock_conn_cls):
        conn = mock_conn_cls.return_value
        conn.getresponse.side_effect = [
            make_response(status=500, body='boom', reason='Internal Server Error') for _ in range(3)
        ]

        transport = self.make_transport(max_retries=2, retry_wait_seconds=1)
        with self.assertRaises(ApiError) as ctx:
            transport.request('GET', '/usergroups')
        self.assertEqual(ctx.exception.status_code, 500)
        self.assertEqual(conn.request.call_count, 3)

    @patch('harbor_group_sync.retry.time.sleep')
    def test_client_errors_are_not_retried(self, mock_sleep, mock_conn_cls):
        conn = mock_conn_cls.return_value
        conn.getresponse.return_value = make_response(status=404, body='', reason='Not Found')

        transport = self.make_transport(max_retries=3)
        with self.assertRaises(ApiError):
            transport.request('GET', '/systeminfo')
        self.assertEqual(conn.request.call_count, 1)
        mock_sleep.assert_not_called()

    @patch('harbor_group_sync.retry.time.sleep')
    def test_mutations_are_not_retried(self, mock_sleep, mock_conn_cls):
        conn = mock_conn_cls.return_value
        conn.getresponse.return_value = make_response(status=503, body='busy', reason='Service Unavailable')

        transport = self.make_transport(max_retries=3)
        with self.assertRaises(ApiError):
            transport.request('DELETE', '/usergroups/1')
        self.assertEqual(conn.request.call_count, 1)

    def test_context_manager_closes_connection(self, mock_conn_cls):
        conn = mock_conn_cls.return_value
        conn.getresponse.return_value = make_response(body=[])

        with self.make_transport() as transport:
            transport.request('GET', '/usergroups')
        conn.close.assert_called_once()
        self.assertIsNone(transport.connection)


if __name__ == '__main__':
    unittest.main()
