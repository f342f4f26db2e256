"""
Type aliases for the data shapes exchanged with python-ldap and with callers of
the query builder.
"""

from typing import TypedDict

#: A raw entry as returned by python-ldap: ``(dn, {attribute: [bytes, ...]})``
LDAPData = tuple[str, dict[str, list[bytes]]]
#: An entry after decoding: ``(dn, {attribute: [str, ...]})``
Entry = tuple[str, dict[str, list[str]]]
#: An attribute mapping as accepted by the write operations
Attributes = dict[str, list[str]]

ModifyModlistEntry = tuple[int, str, list[bytes] | None]
ModifyModlist = list[ModifyModlistEntry]
AddModlist = list[tuple[str, list[bytes]]]


class ModificationDict(TypedDict, total=False):
    """The wire shape of a single batch modification."""

    attrib: str
    modtype: int
    values: list[str]
