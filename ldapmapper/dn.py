"""
Parsing, normalising and comparing LDAP distinguished names (RFC 4514).

Parsing is lenient: a malformed DN never raises, it simply has no components,
and every derived value (parent, name, ...) of such a DN is ``None``.

A DN is a sequence of RDNs, and an RDN is one or more ``attribute=value``
pairs joined with ``+``, as in ``cn=John+sn=Doe,dc=example,dc=com``.
"""

from typing import Union

import ldap
from ldap.dn import dn2str, str2dn

#: Token in a DN that is replaced by the configured base DN.
BASE_DN_PLACEHOLDER = "{base}"

#: A single ``attribute=value`` pair.  The value is stored unescaped.
AVA = tuple[str, str]

#: One RDN: its ``attribute=value`` pairs, usually just one.
RDN = tuple[AVA, ...]

DNLike = Union[str, "DistinguishedName", None]


def substitute_base_dn(dn: DNLike, base_dn: str | None) -> str:
    """
    Replace the ``{base}`` token in ``dn`` with ``base_dn``.

    Args:
        dn: a DN that may contain ``{base}``
        base_dn: the base DN to substitute

    Returns:
        The expanded DN, or ``""`` if ``dn`` is empty.

    """
    if not dn:
        return ""
    return str(dn if isinstance(dn, str) else dn.value).replace(
        BASE_DN_PLACEHOLDER, base_dn or ""
    )


def _as_rdn(component: AVA | RDN) -> RDN:
    if component and isinstance(component[0], str):
        return (component,)  # type: ignore[return-value]
    return tuple(component)  # type: ignore[arg-type]


def rdns_to_str(rdns: list[RDN]) -> str:
    """
    Serialise ``rdns`` as an RFC 4514 string, escaping the values.
    """
    return dn2str([[(attribute, value, ldap.AVA_STRING) for attribute, value in rdn] for rdn in rdns])


def make_rdn(attribute: str, value: str) -> str:
    """
    Return the RDN string for a single ``attribute=value`` pair.

    Example:
        >>> make_rdn("cn", "Doe, John")
        'cn=Doe\\\\, John'

    """
    return rdns_to_str([((attribute, value),)])


class DistinguishedName:
    """
    An immutable, parsed distinguished name.

    Comparisons between DNs ignore case on both attribute types and values.

    Example:
        >>> dn = DistinguishedName("cn=John Doe,ou=Users,dc=example,dc=com")
        >>> dn.name()
        'John Doe'
        >>> dn.parent()
        'ou=Users,dc=example,dc=com'
        >>> dn.is_child_of("ou=users,dc=example,dc=com")
        True

    Args:
        value: the DN string; may contain ``{base}``

    Keyword Args:
        base_dn: the base DN used to expand ``{base}``

    """

    def __init__(self, value: DNLike = None, base_dn: str | None = None) -> None:
        if isinstance(value, DistinguishedName):
            value = value.value
        value = (value or "").strip()
        if base_dn is not None:
            value = substitute_base_dn(value, base_dn)
        self.value: str = value
        self._rdns: tuple[RDN, ...] = tuple(self.parse(value))

    @classmethod
    def make(cls, value: DNLike = None) -> "DistinguishedName":
        """
        Return ``value`` as a :py:class:`DistinguishedName`, parsing it if needed.
        """
        if isinstance(value, DistinguishedName):
            return value
        return cls(value)

    @classmethod
    def from_components(cls, components: list[AVA] | list[RDN]) -> "DistinguishedName":
        """
        Build a DN from ``(attribute, value)`` pairs, one per RDN, or from
        whole RDNs.
        """
        return cls(rdns_to_str([_as_rdn(component) for component in components]))

    @classmethod
    def build(cls, value: DNLike = None) -> "DistinguishedNameBuilder":
        return DistinguishedNameBuilder(value)

    @staticmethod
    def parse(value: str | None) -> list[RDN]:
        """
        Split ``value`` into its RDNs with :py:func:`ldap.dn.str2dn`.

        Escaped separators are part of the value, escaped values are decoded
        and a multi-valued RDN keeps all of its pairs.

        Args:
            value: a DN string

        Returns:
            A list of RDNs, or ``[]`` if ``value`` is empty or malformed, or
            has an empty attribute value.

        """
        if not value or not value.strip():
            return []
        try:
            parsed = str2dn(value, flags=ldap.DN_FORMAT_LDAPV3)
        except ldap.DECODING_ERROR:
            return []
        rdns: list[RDN] = []
        for rdn in parsed:
            if not rdn or any(not attribute or not component for attribute, component, _ in rdn):
                return []
            rdns.append(tuple((attribute, component) for attribute, component, _ in rdn))
        return rdns

    @classmethod
    def is_valid(cls, value: DNLike) -> bool:
        """
        Return ``True`` if ``value`` parses into at least one component.
        """
        return bool(cls.make(value)._rdns)

    def get(self) -> str:
        """
        Return the normalised DN string.

        Attribute names keep their case, whitespace around ``=`` is removed and
        values are re-escaped.
        """
        return rdns_to_str(list(self._rdns))

    def is_empty(self) -> bool:
        return not self._rdns

    def rdn_components(self) -> list[RDN]:
        return list(self._rdns)

    def components(self) -> list[AVA]:
        """
        Return every ``(attribute, value)`` pair, in order.  A multi-valued
        RDN contributes one pair per value.
        """
        return [ava for rdn in self._rdns for ava in rdn]

    def rdns(self) -> list[str]:
        return [rdns_to_str([rdn]) for rdn in self._rdns]

    def values(self) -> list[str]:
        return [value for _, value in self.components()]

    def attributes(self) -> list[str]:
        return [attribute for attribute, _ in self.components()]

    def multi(self) -> list[list[str]]:
        return [[attribute, value] for attribute, value in self.components()]

    def assoc(self) -> dict[str, list[str]]:
        """
        Group the values by lower cased attribute name.

        Example:
            >>> DistinguishedName("cn=foo,DC=local,dc=com").assoc()
            {'cn': ['foo'], 'dc': ['local', 'com']}

        """
        result: dict[str, list[str]] = {}
        for attribute, value in self.components():
            result.setdefault(attribute.lower(), []).append(value)
        return result

    def name(self) -> str | None:
        """
        Return the value of the first RDN, e.g. ``John Doe``.  For a
        multi-valued RDN this is the value of its first pair.
        """
        return self._rdns[0][0][1] if self._rdns else None

    def head(self) -> str | None:
        """
        Return the attribute of the first RDN, e.g. ``cn``.
        """
        return self._rdns[0][0][0] if self._rdns else None

    def relative(self) -> str | None:
        """
        Return the first RDN, e.g. ``cn=John Doe``.
        """
        return self.rdns()[0] if self._rdns else None

    def parent(self) -> str | None:
        """
        Return the DN with its first RDN removed, or ``None`` if there is none.
        """
        if len(self._rdns) < 2:  # noqa: PLR2004
            return None
        return rdns_to_str(list(self._rdns[1:]))

    def _normalized(self) -> tuple[frozenset[tuple[str, str]], ...]:
        # the pairs of a multi-valued RDN are unordered
        return tuple(
            frozenset((a.lower(), v.lower()) for a, v in rdn) for rdn in self._rdns
        )

    def is_descendant_of(self, parent: DNLike) -> bool:
        """
        Return ``True`` if ``parent`` is a strict suffix of this DN.
        """
        mine = self._normalized()
        theirs = self.make(parent)._normalized()
        if not mine or not theirs or len(mine) <= len(theirs):
            return False
        return mine[-len(theirs) :] == theirs

    def is_ancestor_of(self, child: DNLike) -> bool:
        return self.make(child).is_descendant_of(self)

    def is_child_of(self, parent: DNLike) -> bool:
        """
        Return ``True`` if this DN is exactly one level below ``parent``.
        """
        parent = self.make(parent)
        return self.is_descendant_of(parent) and len(self) == len(parent) + 1

    def is_parent_of(self, child: DNLike) -> bool:
        return self.make(child).is_child_of(self)

    def is_sibling_of(self, sibling: DNLike) -> bool:
        """
        Return ``True`` if ``sibling`` has the same parent but a different first RDN.
        """
        mine = self._normalized()
        theirs = self.make(sibling)._normalized()
        if len(mine) < 2 or len(theirs) < 2:  # noqa: PLR2004
            return False
        return mine[1:] == theirs[1:] and mine[0] != theirs[0]

    def __len__(self) -> int:
        return len(self._rdns)

    def __bool__(self) -> bool:
        return bool(self._rdns)

    def __str__(self) -> str:
        return self.get()

    def __repr__(self) -> str:
        return f"<DistinguishedName: {self.get()}>"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, str):
            other = DistinguishedName(other)
        if not isinstance(other, DistinguishedName):
            return NotImplemented
        return self._normalized() == other._normalized()

    def __hash__(self) -> int:
        return hash(self._normalized())


class DistinguishedNameBuilder:
    """
    Assemble a DN one RDN at a time.  Values are escaped when the DN is built.

    Example:
        >>> (
        ...     DistinguishedNameBuilder("dc=example,dc=com")
        ...     .prepend("ou", "Users")
        ...     .prepend("cn", "Doe, John")
        ...     .get()
        ...     .get()
        ... )
        'cn=Doe\\\\, John,ou=Users,dc=example,dc=com'

    """

    def __init__(self, dn: DNLike = None) -> None:
        self._rdns: list[RDN] = DistinguishedName.make(dn).rdn_components()
        self._reversed = False

    @staticmethod
    def _make_rdns(attribute: DNLike, value: str | None) -> list[RDN]:
        if value is None:
            # "attribute" holds one or more RDNs, e.g. "ou=Users,dc=local"
            return DistinguishedName.make(attribute).rdn_components()
        return [((str(attribute).strip(), str(value)),)]

    def prepend(self, attribute: DNLike, value: str | None = None) -> "DistinguishedNameBuilder":
        self._rdns[:0] = self._make_rdns(attribute, value)
        return self

    def append(self, attribute: DNLike, value: str | None = None) -> "DistinguishedNameBuilder":
        self._rdns.extend(self._make_rdns(attribute, value))
        return self

    def pop(self, amount: int = 1) -> list[AVA]:
        """
        Remove the last ``amount`` RDNs and return their pairs.
        """
        removed = self._rdns[-amount:] if amount > 0 else []
        del self._rdns[len(self._rdns) - len(removed) :]
        return [ava for rdn in removed for ava in rdn]

    def shift(self, amount: int = 1) -> list[AVA]:
        """
        Remove the first ``amount`` RDNs and return their pairs.
        """
        removed = self._rdns[:amount] if amount > 0 else []
        del self._rdns[: len(removed)]
        return [ava for rdn in removed for ava in rdn]

    def reverse(self) -> "DistinguishedNameBuilder":
        self._reversed = True
        return self

    def components(self, attribute: str | None = None) -> list[AVA]:
        """
        Return the pairs, optionally only those for ``attribute``.
        """
        pairs = [ava for rdn in self._rdns for ava in rdn]
        if attribute is None:
            return pairs
        return [ava for ava in pairs if ava[0].lower() == attribute.lower()]

    def get(self) -> DistinguishedName:
        rdns = self._rdns[::-1] if self._reversed else self._rdns
        return DistinguishedName.from_components(rdns)

    def __str__(self) -> str:
        return self.get().get()
