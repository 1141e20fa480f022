# mypy: disable-error-code="attr-defined"
# type: ignore
"""
Tests for LdapConnection.

The paging tests drive a mocked python-ldap ``LDAPObject`` that hands back
Simple Paged Results cookies; the end to end tests use python-ldap-faker to
simulate a 389 Directory Server.
"""

import unittest
from unittest.mock import Mock, patch

import ldap
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from ldap.controls import SimplePagedResultsControl
from ldap_faker.unittest import LDAPFakerMixin

from ldappager.connection import LdapConnection, SearchHandle
from ldappager.exceptions import PageControlError, SearchExecutionError
from ldappager.search import SearchIterator
from ldappager.server_capabilities import LdapServerCapabilities

LDAP_SERVERS = {
    "test_server": {
        "basedn": "ou=users,dc=example,dc=com",
        "read": {
            "url": "ldap://localhost:389",
            "user": "cn=admin,dc=example,dc=com",
            "password": "admin",
            "use_starttls": False,
            "tls_verify": "never",
            "timeout": 15.0,
            "follow_referrals": False,
        },
    }
}

if not settings.configured:
    settings.configure(LDAP_SERVERS=LDAP_SERVERS)


def paged_result(rdata, cookie, msgid=1):
    control = SimplePagedResultsControl(True, size=2, cookie=cookie)
    return (ldap.RES_SEARCH_RESULT, rdata, msgid, [control])


class TestLdapConnectionPaging(unittest.TestCase):
    """Test the DirectoryConnection operations against a mocked LDAPObject."""

    def setUp(self):
        self.ldap_object = Mock()
        self.ldap_object.search_ext.return_value = 1
        self.ldap_object.result3.return_value = (ldap.RES_SEARCH_RESULT, [], 1, [])
        self.connection = LdapConnection(self.ldap_object)

    def test_set_paged_control_builds_control(self):
        self.connection.set_paged_control(50, True, b"cookie")
        self.connection.search("dc=example,dc=com", "(uid=*)", ["uid"])
        _, kwargs = self.ldap_object.search_ext.call_args
        controls = kwargs["serverctrls"]
        self.assertEqual(len(controls), 1)
        self.assertIsInstance(controls[0], SimplePagedResultsControl)
        self.assertEqual(controls[0].size, 50)
        self.assertEqual(controls[0].cookie, b"cookie")
        self.assertTrue(controls[0].criticality)

    def test_first_page_sends_empty_cookie(self):
        self.connection.set_paged_control(10, True, None)
        self.connection.search("dc=example,dc=com", "(uid=*)", [])
        _, kwargs = self.ldap_object.search_ext.call_args
        self.assertEqual(kwargs["serverctrls"][0].cookie, "")

    def test_send_control_false(self):
        self.connection.set_paged_control(10, False, None)
        self.connection.search("dc=example,dc=com", "(uid=*)", [])
        _, kwargs = self.ldap_object.search_ext.call_args
        self.assertEqual(kwargs["serverctrls"], [])

    def test_controls_apply_to_one_search_only(self):
        self.connection.set_paged_control(10, True, None)
        self.connection.search("dc=example,dc=com", "(uid=*)", [])
        self.connection.search("dc=example,dc=com", "(uid=*)", [])
        _, kwargs = self.ldap_object.search_ext.call_args
        self.assertEqual(kwargs["serverctrls"], [])

    def test_search_arguments(self):
        connection = LdapConnection(self.ldap_object, scope=ldap.SCOPE_ONELEVEL, sizelimit=25)
        connection.set_paged_control(10, True, None)
        connection.search("dc=example,dc=com", "(uid=*)", [])
        args, kwargs = self.ldap_object.search_ext.call_args
        self.assertEqual(args, ("dc=example,dc=com", ldap.SCOPE_ONELEVEL, "(uid=*)", None))
        self.assertEqual(kwargs["sizelimit"], 25)
        self.ldap_object.result3.assert_called_once_with(1)

    def test_invalid_page_size(self):
        for page_size in (0, -5, "10", 2.5, True):
            with self.subTest(page_size=page_size):
                with self.assertRaises(PageControlError):
                    self.connection.set_paged_control(page_size, True, None)

    def test_invalid_token(self):
        with self.assertRaises(PageControlError):
            self.connection.set_paged_control(10, True, 12345)

    def test_get_entries_drops_referrals(self):
        handle = SearchHandle(
            msgid=1,
            data=[
                ("uid=alice,dc=example,dc=com", {"uid": [b"alice"]}),
                (None, ["ldap://other.example.com/dc=example,dc=com"]),
            ],
        )
        self.assertEqual(
            self.connection.get_entries(handle),
            [("uid=alice,dc=example,dc=com", {"uid": [b"alice"]})],
        )

    def test_get_paged_control_response(self):
        self.ldap_object.result3.return_value = paged_result([], b"next")
        handle = self.connection.search("dc=example,dc=com", "(uid=*)", [])
        self.assertEqual(self.connection.get_paged_control_response(handle), b"next")

    def test_empty_cookie_is_none(self):
        self.ldap_object.result3.return_value = paged_result([], b"")
        handle = self.connection.search("dc=example,dc=com", "(uid=*)", [])
        self.assertIsNone(self.connection.get_paged_control_response(handle))

    def test_no_paged_control_is_none(self):
        self.ldap_object.result3.return_value = (ldap.RES_SEARCH_RESULT, [], 1, [])
        handle = self.connection.search("dc=example,dc=com", "(uid=*)", [])
        self.assertIsNone(self.connection.get_paged_control_response(handle))

    def test_ldap_error_is_raised_as_search_execution_error(self):
        self.ldap_object.result3.side_effect = ldap.NO_SUCH_OBJECT(
            {"result": 32, "desc": "No such object"}
        )
        self.connection.set_paged_control(10, True, None)
        with self.assertLogs("ldappager.connection", level="WARNING"):
            with self.assertRaises(SearchExecutionError) as cm:
                self.connection.search("ou=missing,dc=example,dc=com", "(uid=*)", [])
        self.assertEqual(cm.exception.error_code, 32)
        self.assertEqual(cm.exception.basedn, "ou=missing,dc=example,dc=com")
        self.assertEqual(cm.exception.page_size, 10)
        self.assertEqual(self.connection.last_error_code(), 32)

    def test_last_error_code_clears_on_success(self):
        self.ldap_object.result3.side_effect = [
            ldap.BUSY({"result": 51, "desc": "Server is busy"}),
            paged_result([], None),
        ]
        with self.assertLogs("ldappager.connection", level="WARNING"):
            with self.assertRaises(SearchExecutionError):
                self.connection.search("dc=example,dc=com", "(uid=*)", [])
        self.assertEqual(self.connection.last_error_code(), 51)
        self.connection.search("dc=example,dc=com", "(uid=*)", [])
        self.assertEqual(self.connection.last_error_code(), 0)

    def test_iterates_over_pages(self):
        self.ldap_object.result3.side_effect = [
            paged_result([("cn=a", {}), ("cn=b", {})], b"page2"),
            paged_result([("cn=c", {}), ("cn=d", {})], b"page3"),
            paged_result([("cn=e", {})], b""),
        ]
        search = self.connection.paged_search(
            "(cn=*)", basedn="dc=example,dc=com", page_size=2
        )
        self.assertIsInstance(search, SearchIterator)
        self.assertEqual([entry.dn for entry in search], ["cn=a", "cn=b", "cn=c", "cn=d", "cn=e"])
        cookies = [
            call.kwargs["serverctrls"][0].cookie
            for call in self.ldap_object.search_ext.call_args_list
        ]
        self.assertEqual(cookies, ["", b"page2", b"page3"])

    def test_paged_search_requires_basedn(self):
        with self.assertRaises(ValueError):
            self.connection.paged_search("(cn=*)", page_size=10)

    def test_paged_search_uses_server_page_size(self):
        LdapServerCapabilities.clear_cache()
        self.ldap_object.search_s.return_value = [
            ("", {
                "forestFunctionality": [b"3"],
                "MaxPageSize": [b"500"],
                "supportedControl": [b"1.2.840.113556.1.4.319"],
            })
        ]
        search = self.connection.paged_search("(cn=*)", basedn="dc=example,dc=com")
        self.assertEqual(search.page_size, 500)
        LdapServerCapabilities.clear_cache()

    def test_paged_search_refuses_server_without_paging(self):
        LdapServerCapabilities.clear_cache()
        self.addCleanup(LdapServerCapabilities.clear_cache)
        self.ldap_object.search_s.return_value = [
            ("", {
                "vendorName": [b"OpenLDAP Foundation"],
                "supportedControl": [b"1.2.840.113556.1.4.473"],
            })
        ]
        with self.assertRaises(PageControlError):
            self.connection.paged_search("(cn=*)", basedn="dc=example,dc=com")
        self.ldap_object.search_ext.assert_not_called()

    def test_explicit_page_size_skips_root_dse(self):
        search = self.connection.paged_search(
            "(cn=*)", basedn="dc=example,dc=com", page_size=25
        )
        self.assertEqual(search.page_size, 25)
        self.ldap_object.search_s.assert_not_called()

    def test_context_manager_unbinds(self):
        with LdapConnection(self.ldap_object) as connection:
            self.assertIs(connection.ldap_object, self.ldap_object)
        self.ldap_object.unbind_s.assert_called_once_with()


class TestLdapConnectionFromSettings(unittest.TestCase):

    def setUp(self):
        self.settings_patcher = patch(
            "django.conf.settings.LDAP_SERVERS", LDAP_SERVERS, create=True
        )
        self.settings_patcher.start()

    def tearDown(self):
        self.settings_patcher.stop()

    def test_unknown_server(self):
        with self.assertRaises(ImproperlyConfigured):
            LdapConnection.from_settings("nope")

    def test_unknown_key(self):
        with self.assertRaises(ImproperlyConfigured):
            LdapConnection.from_settings("test_server", key="write")

    def test_unknown_server_on_existing_object(self):
        with self.assertRaises(ImproperlyConfigured):
            LdapConnection(Mock(), server="nope")

    def test_known_server_sets_basedn(self):
        connection = LdapConnection(Mock(), server="test_server")
        self.assertEqual(connection.basedn, "ou=users,dc=example,dc=com")

    def test_invalid_tls_verify(self):
        config = dict(LDAP_SERVERS["test_server"]["read"], tls_verify="sometimes")
        with patch("ldappager.connection.ldap.initialize") as initialize:
            with self.assertRaises(ValueError):
                LdapConnection._connect(config)
        initialize.assert_called_once_with("ldap://localhost:389")

    def test_missing_ca_certfile(self):
        config = dict(
            LDAP_SERVERS["test_server"]["read"], tls_ca_certfile="/nonexistent/ca.pem"
        )
        with patch("ldappager.connection.ldap.initialize"):
            with self.assertRaises(OSError):
                LdapConnection._connect(config)

    def test_starttls_and_bind(self):
        config = dict(LDAP_SERVERS["test_server"]["read"], use_starttls=True)
        with patch("ldappager.connection.ldap.initialize") as initialize:
            ldap_object = LdapConnection._connect(
                config, dn="uid=bob,dc=example,dc=com", password="secret"
            )
        self.assertIs(ldap_object, initialize.return_value)
        ldap_object.start_tls_s.assert_called_once_with()
        ldap_object.simple_bind_s.assert_called_once_with(
            "uid=bob,dc=example,dc=com", "secret"
        )


class TestLdapConnectionWithFaker(LDAPFakerMixin, unittest.TestCase):
    """End to end tests for LdapConnection using python-ldap-faker."""

    ldap_modules = ["ldappager"]

    test_objects = [
        [
            "cn=admin,dc=example,dc=com",
            {
                "cn": [b"admin"],
                "userPassword": [b"admin"],
                "objectclass": [b"simpleSecurityObject", b"organizationalRole", b"top"],
            },
        ],
        [
            "uid=alice,ou=users,dc=example,dc=com",
            {
                "uid": [b"alice"],
                "cn": [b"Alice Johnson"],
                "objectclass": [b"posixAccount", b"top"],
            },
        ],
        [
            "uid=bob,ou=users,dc=example,dc=com",
            {
                "uid": [b"bob"],
                "cn": [b"Bob Smith"],
                "objectclass": [b"posixAccount", b"top"],
            },
        ],
        [
            "uid=charlie,ou=users,dc=example,dc=com",
            {
                "uid": [b"charlie"],
                "cn": [b"Charlie Brown"],
                "objectclass": [b"posixAccount", b"top"],
            },
        ],
    ]

    def setUp(self):
        super().setUp()
        self.settings_patcher = patch(
            "django.conf.settings.LDAP_SERVERS", LDAP_SERVERS, create=True
        )
        self.settings_patcher.start()
        self.server_factory.default.raw_objects.clear()
        self.server_factory.default.objects.clear()
        for dn, attrs in self.test_objects:
            self.server_factory.default.register_object((dn, attrs))
        self.connection = LdapConnection.from_settings("test_server")

    def tearDown(self):
        self.connection.close()
        self.settings_patcher.stop()
        super().tearDown()

    def test_from_settings(self):
        self.assertEqual(self.connection.basedn, "ou=users,dc=example,dc=com")
        self.assertEqual(self.connection.server, "test_server")
        self.assertEqual(self.connection.key, "read")

    def test_paged_search(self):
        search = self.connection.paged_search(
            "(objectClass=posixAccount)", attributes=["uid", "cn"], page_size=2
        )
        uids = sorted(entry.get_first("uid") for entry in search)
        self.assertEqual(uids, ["alice", "bob", "charlie"])
        self.assertTrue(search.is_last_page)
        self.assertIsNone(search.next())

    def test_paged_search_reset(self):
        search = self.connection.paged_search(
            "(objectClass=posixAccount)", page_size=10
        )
        first = [entry.dn for entry in search]
        search.reset()
        self.assertEqual([entry.dn for entry in search], first)

    def test_paged_search_no_results(self):
        search = self.connection.paged_search("(uid=nobody)", page_size=10)
        with self.assertRaises(SearchExecutionError):
            search.next()


if __name__ == "__main__":
    unittest.main()
