import unittest

from ldapmapper.dn import DistinguishedName, DistinguishedNameBuilder, substitute_base_dn


class TestParsing(unittest.TestCase):

    def test_components(self):
        dn = DistinguishedName("cn=John Doe,ou=Users,dc=example,dc=com")
        self.assertEqual(
            dn.components(),
            [("cn", "John Doe"), ("ou", "Users"), ("dc", "example"), ("dc", "com")],
        )

    def test_escaped_separators_are_part_of_the_value(self):
        dn = DistinguishedName("cn=Doe\\, John,dc=local")
        self.assertEqual(dn.values(), ["Doe, John", "local"])
        self.assertEqual(dn.name(), "Doe, John")

    def test_hex_escapes_are_decoded(self):
        dn = DistinguishedName("cn=Doe\\2c John\\3d,dc=local")
        self.assertEqual(dn.name(), "Doe, John=")

    def test_whitespace_around_equals_is_trimmed(self):
        dn = DistinguishedName("cn = John , dc = local")
        self.assertEqual(dn.get(), "cn=John,dc=local")

    def test_malformed_dn_has_no_components(self):
        for value in ("", None, "   ", "not a dn", "cn=,dc=local", "=foo", "c n=foo"):
            with self.subTest(value=value):
                dn = DistinguishedName(value)
                self.assertEqual(dn.components(), [])
                self.assertIsNone(dn.parent())
                self.assertIsNone(dn.name())
                self.assertIsNone(dn.head())
                self.assertIsNone(dn.relative())
                self.assertFalse(DistinguishedName.is_valid(value))

    def test_is_valid(self):
        self.assertTrue(DistinguishedName.is_valid("cn=foo,dc=local"))
        self.assertTrue(DistinguishedName.is_valid("2.5.4.3=foo"))

    def test_accessors(self):
        dn = DistinguishedName("cn=John Doe,ou=Users,dc=example,dc=com")
        self.assertEqual(dn.head(), "cn")
        self.assertEqual(dn.name(), "John Doe")
        self.assertEqual(dn.relative(), "cn=John Doe")
        self.assertEqual(dn.parent(), "ou=Users,dc=example,dc=com")
        self.assertEqual(dn.rdns(), ["cn=John Doe", "ou=Users", "dc=example", "dc=com"])
        self.assertEqual(dn.attributes(), ["cn", "ou", "dc", "dc"])
        self.assertEqual(
            dn.multi(), [["cn", "John Doe"], ["ou", "Users"], ["dc", "example"], ["dc", "com"]]
        )
        self.assertEqual(len(dn), 4)

    def test_assoc_groups_by_lower_cased_attribute(self):
        dn = DistinguishedName("cn=foo,DC=local,dc=com")
        self.assertEqual(dn.assoc(), {"cn": ["foo"], "dc": ["local", "com"]})

    def test_single_rdn_has_no_parent(self):
        self.assertIsNone(DistinguishedName("dc=com").parent())

    def test_values_are_re_escaped(self):
        self.assertEqual(DistinguishedName("cn=Doe\\2c John,dc=local").get(), "cn=Doe\\, John,dc=local")

    def test_multi_valued_rdn(self):
        dn = DistinguishedName("uid=x,cn=a+sn=b,dc=com")
        self.assertEqual(len(dn), 3)
        self.assertEqual(dn.parent(), "cn=a+sn=b,dc=com")
        self.assertEqual(dn.rdns(), ["uid=x", "cn=a+sn=b", "dc=com"])
        self.assertEqual(dn.rdn_components()[1], (("cn", "a"), ("sn", "b")))
        self.assertEqual(dn.components(), [("uid", "x"), ("cn", "a"), ("sn", "b"), ("dc", "com")])
        self.assertEqual(DistinguishedName("cn=a+sn=b,dc=com").relative(), "cn=a+sn=b")

    def test_escaped_plus_is_part_of_the_value(self):
        dn = DistinguishedName("cn=a\\+b,dc=com")
        self.assertEqual(dn.name(), "a+b")
        self.assertEqual(dn.get(), "cn=a\\+b,dc=com")

    def test_base_dn_substitution(self):
        dn = DistinguishedName("ou=Users,{base}", base_dn="dc=example,dc=com")
        self.assertEqual(dn.get(), "ou=Users,dc=example,dc=com")
        self.assertEqual(substitute_base_dn("ou=Users,{base}", "dc=local"), "ou=Users,dc=local")
        self.assertEqual(substitute_base_dn(None, "dc=local"), "")

    def test_str_and_repr(self):
        dn = DistinguishedName("cn=foo,dc=local")
        self.assertEqual(str(dn), "cn=foo,dc=local")
        self.assertIn("cn=foo,dc=local", repr(dn))


class TestRelationships(unittest.TestCase):

    def setUp(self):
        self.parent = "ou=Users,dc=example,dc=com"
        self.child = DistinguishedName("cn=John,ou=Users,dc=example,dc=com")

    def test_descendant_and_ancestor(self):
        self.assertTrue(self.child.is_descendant_of("dc=example,dc=com"))
        self.assertTrue(DistinguishedName("dc=example,dc=com").is_ancestor_of(self.child))
        self.assertFalse(self.child.is_descendant_of(self.child))

    def test_child_and_parent(self):
        self.assertTrue(self.child.is_child_of(self.parent))
        self.assertFalse(self.child.is_child_of("dc=example,dc=com"))
        self.assertTrue(DistinguishedName(self.parent).is_parent_of(self.child))

    def test_sibling(self):
        self.assertTrue(self.child.is_sibling_of("cn=Jane,ou=Users,dc=example,dc=com"))
        self.assertFalse(self.child.is_sibling_of(self.child))
        self.assertFalse(self.child.is_sibling_of("cn=Jane,ou=Groups,dc=example,dc=com"))

    def test_comparisons_ignore_case(self):
        self.assertTrue(self.child.is_child_of("OU=USERS,DC=Example,DC=COM"))
        self.assertEqual(self.child, "CN=john,ou=users,dc=example,dc=com")
        self.assertEqual(hash(self.child), hash(DistinguishedName("CN=JOHN,OU=USERS,DC=EXAMPLE,DC=COM")))

    def test_multi_valued_rdn_order_is_ignored(self):
        child = DistinguishedName("uid=x,cn=a+sn=b,dc=com")
        self.assertTrue(child.is_child_of("sn=b+cn=a,dc=com"))
        self.assertEqual(DistinguishedName("cn=a+sn=b,dc=com"), "SN=b+cn=A,dc=com")
        self.assertFalse(child.is_child_of("cn=a,dc=com"))

    def test_empty_dns_are_never_related(self):
        empty = DistinguishedName("")
        self.assertFalse(empty.is_descendant_of(self.parent))
        self.assertFalse(self.child.is_descendant_of(empty))
        self.assertFalse(empty.is_sibling_of(self.child))


class TestDistinguishedNameBuilder(unittest.TestCase):

    def test_prepend_and_append(self):
        builder = DistinguishedName.build("ou=Users").prepend("cn", "Doe, John").append("dc", "local")
        self.assertEqual(str(builder), "cn=Doe\\, John,ou=Users,dc=local")

    def test_prepend_dn_string(self):
        builder = DistinguishedNameBuilder("dc=local").prepend("ou=Users,ou=People")
        self.assertEqual(builder.get().get(), "ou=Users,ou=People,dc=local")

    def test_pop_and_shift_return_removed_components(self):
        builder = DistinguishedNameBuilder("cn=foo,ou=Users,dc=example,dc=com")
        self.assertEqual(builder.pop(), [("dc", "com")])
        self.assertEqual(builder.shift(), [("cn", "foo")])
        self.assertEqual(str(builder), "ou=Users,dc=example")

    def test_reverse(self):
        builder = DistinguishedNameBuilder("cn=foo,dc=local").reverse()
        self.assertEqual(str(builder), "dc=local,cn=foo")

    def test_components_for_attribute(self):
        builder = DistinguishedNameBuilder("cn=foo,DC=example,dc=com")
        self.assertEqual(builder.components("dc"), [("DC", "example"), ("dc", "com")])
