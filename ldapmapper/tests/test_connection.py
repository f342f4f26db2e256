import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

import ldap
from django.core.exceptions import ImproperlyConfigured

from ldapmapper.batch import REMOVE_ALL, REPLACE
from ldapmapper.connection import Connection, ConnectionRegistry, get_connection

SERVER = {
    "url": "ldap://localhost:389",
    "user": "cn=admin,dc=example,dc=com",
    "password": "admin",
    "use_starttls": False,
    "tls_verify": "never",
}


def make_config(**overrides) -> dict:
    return {"basedn": "dc=example,dc=com", "read": dict(SERVER, **overrides), "write": dict(SERVER, **overrides)}


class TestFromSettings(unittest.TestCase):

    def test_default_server(self):
        connection = Connection.from_settings()
        self.assertEqual(connection.name, "default")
        self.assertEqual(connection.basedn, "dc=example,dc=com")
        self.assertEqual(connection.host, "ldap://localhost:389")

    def test_unknown_server(self):
        with self.assertRaises(ImproperlyConfigured):
            Connection.from_settings("nope")

    def test_no_servers_configured(self):
        with patch("django.conf.settings.LDAP_SERVERS", {}):
            with self.assertRaises(ImproperlyConfigured):
                Connection.from_settings()

    def test_get_connection(self):
        self.assertEqual(get_connection("default").basedn, "dc=example,dc=com")
        registry = ConnectionRegistry({"other": Connection({"basedn": "dc=other"}, name="other")})
        self.assertEqual(get_connection("other", registry).basedn, "dc=other")


class TestConnect(unittest.TestCase):

    def setUp(self):
        self.ldap_object = MagicMock()
        self.patcher = patch("ldapmapper.ldap.initialize", return_value=self.ldap_object)
        self.initialize = self.patcher.start()

    def tearDown(self):
        self.patcher.stop()

    def test_binds_with_the_configured_user(self):
        Connection(make_config()).new_connection("write")
        self.initialize.assert_called_once_with("ldap://localhost:389")
        self.ldap_object.simple_bind_s.assert_called_once_with("cn=admin,dc=example,dc=com", "admin")
        self.ldap_object.start_tls_s.assert_not_called()
        self.ldap_object.set_option.assert_any_call(ldap.OPT_REFERRALS, 0)
        self.ldap_object.set_option.assert_any_call(ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_NEVER)

    def test_bind_as_another_user(self):
        Connection(make_config()).new_connection("read", dn="uid=alice,dc=example,dc=com", password="pw")
        self.ldap_object.simple_bind_s.assert_called_once_with("uid=alice,dc=example,dc=com", "pw")

    def test_starttls_and_options(self):
        Connection(make_config(use_starttls=True, tls_verify="always", sizelimit=50)).new_connection()
        self.ldap_object.start_tls_s.assert_called_once_with()
        self.ldap_object.set_option.assert_any_call(ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_DEMAND)
        self.ldap_object.set_option.assert_any_call(ldap.OPT_SIZELIMIT, 50)

    def test_invalid_tls_verify(self):
        with self.assertRaises(ValueError):
            Connection(make_config(tls_verify="sometimes")).new_connection()

    def test_missing_certificate_file(self):
        with self.assertRaises(OSError):
            Connection(make_config(tls_ca_certfile="/nonexistent/ca.pem")).new_connection()

    def test_certificate_file_that_is_a_directory(self):
        with tempfile.TemporaryDirectory() as directory:
            with self.assertRaises(OSError):
                Connection(make_config(tls_certfile=directory)).new_connection()

    def test_certificate_file(self):
        with tempfile.TemporaryDirectory() as directory:
            path = Path(directory) / "ca.pem"
            path.write_text("cert")
            Connection(make_config(tls_ca_certfile=str(path))).new_connection()
        self.ldap_object.set_option.assert_any_call(ldap.OPT_X_TLS_CACERTFILE, str(path))

    def test_missing_credentials_section(self):
        with self.assertRaises(ImproperlyConfigured):
            Connection({"basedn": "dc=example,dc=com"}).new_connection("write")

    def test_session_connects_once_and_disconnects(self):
        connection = Connection(make_config())
        with connection.session("read"):
            self.assertTrue(connection.has_connection())
            with connection.session("write"):
                self.assertTrue(connection.has_connection())
        self.assertFalse(connection.has_connection())
        self.initialize.assert_called_once_with("ldap://localhost:389")
        self.ldap_object.unbind_s.assert_called_once_with()

    def test_session_disconnects_on_error(self):
        connection = Connection(make_config())
        with self.assertRaises(RuntimeError):
            with connection.session():
                raise RuntimeError("boom")
        self.assertFalse(connection.has_connection())
        self.ldap_object.unbind_s.assert_called_once_with()

    def test_operations_open_their_own_connection(self):
        self.ldap_object.search_ext.return_value = 1
        self.ldap_object.result3.return_value = (ldap.RES_SEARCH_RESULT, [], 1, [])
        connection = Connection(make_config())
        connection.search("dc=example,dc=com", "(objectclass=*)")
        connection.delete("cn=foo,dc=example,dc=com")
        self.assertEqual(self.initialize.call_count, 2)
        self.assertFalse(connection.has_connection())


class TestOperations(unittest.TestCase):

    def setUp(self):
        self.ldap_object = MagicMock()
        self.ldap_object.search_ext.return_value = 7
        self.connection = Connection(make_config())
        self.connection.set_connection(self.ldap_object)

    def tearDown(self):
        self.connection.remove_connection()

    def test_search_decodes_entries_and_skips_referrals(self):
        self.ldap_object.result3.return_value = (
            ldap.RES_SEARCH_RESULT,
            [
                ("uid=alice,dc=example,dc=com", {"uid": [b"alice"], "cn": [b"Al\xc3\xafce"]}),
                (None, ["ldap://other.example.com/dc=example,dc=com"]),
            ],
            7,
            None,
        )
        entries, controls = self.connection.search("dc=example,dc=com", "(uid=*)", ["uid", "cn"])
        self.assertEqual(entries, [("uid=alice,dc=example,dc=com", {"uid": ["alice"], "cn": ["Alïce"]})])
        self.assertEqual(controls, [])
        self.ldap_object.search_ext.assert_called_once_with(
            "dc=example,dc=com",
            ldap.SCOPE_SUBTREE,
            "(uid=*)",
            ["uid", "cn"],
            serverctrls=None,
            sizelimit=0,
        )
        self.ldap_object.result3.assert_called_once_with(7, all=0)

    def test_search_collects_entries_until_the_final_result(self):
        self.ldap_object.result3.side_effect = [
            (ldap.RES_SEARCH_ENTRY, [("uid=alice,dc=example,dc=com", {"uid": [b"alice"]})], 7, []),
            (ldap.RES_SEARCH_ENTRY, [("uid=bob,dc=example,dc=com", {"uid": [b"bob"]})], 7, []),
            (ldap.RES_SEARCH_RESULT, [], 7, []),
        ]
        entries, _ = self.connection.search("dc=example,dc=com", "(uid=*)")
        self.assertEqual([dn for dn, _ in entries], ["uid=alice,dc=example,dc=com", "uid=bob,dc=example,dc=com"])

    def test_requested_size_limit_keeps_partial_results(self):
        self.ldap_object.result3.side_effect = [
            (ldap.RES_SEARCH_ENTRY, [("uid=alice,dc=example,dc=com", {"uid": [b"alice"]})], 7, []),
            ldap.SIZELIMIT_EXCEEDED({"desc": "Size limit exceeded"}),
        ]
        entries, _ = self.connection.search("dc=example,dc=com", "(uid=*)", sizelimit=1)
        self.assertEqual([dn for dn, _ in entries], ["uid=alice,dc=example,dc=com"])

    def test_server_size_limit_propagates(self):
        self.ldap_object.result3.side_effect = ldap.SIZELIMIT_EXCEEDED({"desc": "Size limit exceeded"})
        with self.assertRaises(ldap.SIZELIMIT_EXCEEDED):
            self.connection.search("dc=example,dc=com", "(uid=*)")

    def test_star_selects_everything(self):
        self.ldap_object.result3.return_value = (ldap.RES_SEARCH_RESULT, [], 7, [])
        self.connection.read("uid=alice,dc=example,dc=com", attributes=["*"])
        args = self.ldap_object.search_ext.call_args[0]
        self.assertEqual(args[1], ldap.SCOPE_BASE)
        self.assertIsNone(args[3])

    def test_listing_is_one_level(self):
        self.ldap_object.result3.return_value = (ldap.RES_SEARCH_RESULT, [], 7, [])
        self.connection.listing("ou=people,dc=example,dc=com")
        self.assertEqual(self.ldap_object.search_ext.call_args[0][1], ldap.SCOPE_ONELEVEL)

    def test_add(self):
        self.connection.add("uid=carol,dc=example,dc=com", {"uid": ["carol"], "objectclass": ["person"]})
        self.ldap_object.add_s.assert_called_once_with(
            "uid=carol,dc=example,dc=com", [("uid", [b"carol"]), ("objectclass", [b"person"])]
        )

    def test_modify_batch(self):
        with self.assertLogs("ldapmapper.connection", level="INFO") as logs:
            self.connection.modify_batch(
                "uid=alice,dc=example,dc=com",
                [
                    {"attrib": "mail", "modtype": REPLACE, "values": ["a@example.com"]},
                    {"attrib": "description", "modtype": REMOVE_ALL},
                ],
            )
        self.ldap_object.modify_s.assert_called_once_with(
            "uid=alice,dc=example,dc=com",
            [(ldap.MOD_REPLACE, "mail", [b"a@example.com"]), (ldap.MOD_DELETE, "description", None)],
        )
        self.assertIn("changes=2", logs.output[0])

    def test_attribute_operations(self):
        dn = "uid=alice,dc=example,dc=com"
        self.connection.mod_add(dn, {"mail": ["a"]})
        self.connection.mod_replace(dn, {"mail": ["b"]})
        self.connection.mod_delete(dn, {"mail": []})
        self.assertEqual(
            [c.args for c in self.ldap_object.modify_s.call_args_list],
            [
                (dn, [(ldap.MOD_ADD, "mail", [b"a"])]),
                (dn, [(ldap.MOD_REPLACE, "mail", [b"b"])]),
                (dn, [(ldap.MOD_DELETE, "mail", None)]),
            ],
        )

    def test_rename(self):
        self.connection.rename("uid=alice,ou=people,dc=example,dc=com", "uid=alicia", "ou=former,dc=example,dc=com")
        self.ldap_object.rename_s.assert_called_once_with(
            "uid=alice,ou=people,dc=example,dc=com", "uid=alicia", "ou=former,dc=example,dc=com", 1
        )
        self.connection.rename("uid=alicia,ou=former,dc=example,dc=com", "uid=al", delete_old_rdn=False)
        self.ldap_object.rename_s.assert_called_with("uid=alicia,ou=former,dc=example,dc=com", "uid=al", None, 0)

    def test_errors_propagate(self):
        self.ldap_object.delete_s.side_effect = ldap.NOT_ALLOWED_ON_NONLEAF({"desc": "Operation not allowed on non-leaf"})
        with self.assertRaises(ldap.NOT_ALLOWED_ON_NONLEAF):
            self.connection.delete("ou=people,dc=example,dc=com")


class TestConnectionRegistry(unittest.TestCase):

    def test_add_and_get(self):
        connection = Connection(make_config(), name="primary")
        registry = ConnectionRegistry().add(connection)
        self.assertIs(registry.get("primary"), connection)
        self.assertTrue(registry.has("primary"))
        self.assertIn("primary", registry)
        self.assertEqual(registry.names(), ["primary"])
        self.assertEqual(len(registry), 1)

    def test_add_under_another_name(self):
        connection = Connection(make_config())
        registry = ConnectionRegistry().add(connection, "alias")
        self.assertIs(registry.get("alias"), connection)

    def test_remove(self):
        registry = ConnectionRegistry({"a": Connection(make_config(), name="a")})
        registry.remove("a")
        registry.remove("a")
        self.assertEqual(len(registry), 0)

    def test_unknown_name(self):
        with self.assertRaises(ImproperlyConfigured):
            ConnectionRegistry().get("default")

    def test_from_settings(self):
        registry = ConnectionRegistry.from_settings()
        self.assertEqual(registry.names(), ["default"])
        self.assertEqual(registry.get().basedn, "dc=example,dc=com")
