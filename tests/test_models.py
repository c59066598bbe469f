#!/usr/bin/env python3
"""
Unit tests for the Harbor user group data model.

Covers DN normalisation, payload selection per API version and the parsing
of Harbor responses.
"""

import os
import sys
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from harbor_group_sync.models import (
    Group, DesiredGroup, GroupPayloadV1, GroupPayloadV2, OperationResult, ValidationError,
    LDAP_GROUP_TYPE, build_payload, normalize_dn, is_valid_dn
)


class TestDnHelpers(unittest.TestCase):
    """Test cases for DN normalisation and validation."""

    def test_normalize_dn_lowercases_and_strips(self):
        self.assertEqual(
            normalize_dn('CN=Developers, OU=Groups,DC=Example,DC=com'),
            'cn=developers,ou=groups,dc=example,dc=com'
        )

    def test_normalize_dn_is_idempotent(self):
        dn = 'cn=developers,ou=groups,dc=example,dc=com'
        self.assertEqual(normalize_dn(normalize_dn(dn)), dn)

    def test_normalize_dn_falls_back_for_invalid_values(self):
        self.assertEqual(normalize_dn('  Not A DN '), 'not a dn')

    def test_is_valid_dn(self):
        self.assertTrue(is_valid_dn('cn=a,dc=x'))
        self.assertTrue(is_valid_dn('CN=Release Managers,OU=Groups,DC=example,DC=com'))
        self.assertFalse(is_valid_dn('not a dn'))
        self.assertFalse(is_valid_dn(''))
        self.assertFalse(is_valid_dn('   '))
        self.assertFalse(is_valid_dn(None))


class TestGroup(unittest.TestCase):
    """Test cases for the Group entity."""

    def test_from_api(self):
        group = Group.from_api({'id': 7, 'group_name': 'A', 'group_type': 1, 'ldap_group_dn': 'cn=a,dc=x'})
        self.assertEqual(group.id, 7)
        self.assertEqual(group.group_name, 'A')
        self.assertEqual(group.ldap_group_dn, 'cn=a,dc=x')
        self.assertEqual(group.group_type, LDAP_GROUP_TYPE)

    def test_from_api_without_id(self):
        group = Group.from_api({'group_name': 'A', 'ldap_group_dn': 'cn=a,dc=x'})
        self.assertIsNone(group.id)

    def test_is_ldap(self):
        self.assertTrue(Group.from_api({'group_name': 'A', 'ldap_group_dn': 'cn=a,dc=x'}).is_ldap)
        self.assertFalse(Group.from_api({'group_name': 'http-team', 'group_type': 2}).is_ldap)
        self.assertFalse(Group.from_api({'group_name': 'oidc-admins', 'group_type': 3}).is_ldap)

    def test_matches_dn(self):
        group = Group('A', 'CN=A,DC=X', id=1)
        self.assertTrue(group.matches_dn('cn=a,dc=x'))
        self.assertFalse(group.matches_dn('cn=sub,cn=a,dc=x'))

    def test_desired_group_from_config(self):
        desired = DesiredGroup.from_config({'group_name': 'A', 'ldap_group_dn': 'cn=a,dc=x'})
        self.assertEqual(desired.ensure, 'present')
        self.assertIsNone(desired.provider)


class TestBuildPayload(unittest.TestCase):
    """Test cases for API version specific payloads."""

    def test_version_1(self):
        payload = build_payload(1, 'A', 'cn=a,dc=x')
        self.assertIsInstance(payload, GroupPayloadV1)
        self.assertNotIsInstance(payload, GroupPayloadV2)
        self.assertEqual(payload.API_VERSION, 1)

    def test_version_2(self):
        payload = build_payload(2, 'A', 'cn=a,dc=x')
        self.assertIsInstance(payload, GroupPayloadV2)
        self.assertNotIsInstance(payload, GroupPayloadV1)
        self.assertEqual(payload.API_VERSION, 2)

    def test_body_shape(self):
        for api_version in (1, 2):
            body = build_payload(api_version, 'A', 'cn=a,dc=x').to_body()
            self.assertEqual(body, {
                'usergroup': {
                    'group_name': 'A',
                    'group_type': LDAP_GROUP_TYPE,
                    'ldap_group_dn': 'cn=a,dc=x',
                }
            })

    def test_group_type_is_always_ldap(self):
        self.assertEqual(build_payload(1, 'A', 'cn=a,dc=x').group_type, 1)
        self.assertEqual(build_payload(2, 'A', 'cn=a,dc=x').group_type, 1)

    def test_unknown_version(self):
        for api_version in (0, 3, None, '2'):
            with self.assertRaises(ValidationError):
                build_payload(api_version, 'A', 'cn=a,dc=x')


class TestOperationResult(unittest.TestCase):

    def test_failed(self):
        self.assertFalse(OperationResult('create', 'cn=a,dc=x', True).failed)
        self.assertTrue(OperationResult('create', 'cn=a,dc=x', False, error=Exception('boom')).failed)


if __name__ == '__main__':
    unittest.main()
