"""
Escaping of attribute values for LDAP search filters (RFC 4515) and
distinguished names (RFC 4514).

Escaped characters are written as a backslash followed by the two digit,
lower case hex value of each of their UTF-8 bytes, so ``*`` becomes ``\\2a``.
When no flags are given, every character is escaped.
"""

import re
from collections.abc import Iterable
from typing import Any

#: Escape the characters reserved in search filters.
ESCAPE_FILTER = 1
#: Escape the characters reserved in distinguished names.
ESCAPE_DN = 2

#: Characters that must be escaped inside a search filter value.
FILTER_CHARACTERS = frozenset(("\\", "*", "(", ")", "\x00"))
#: Characters that must be escaped inside a DN attribute value.
DN_CHARACTERS = frozenset(("\\", ",", "=", "+", "<", ">", ";", '"', "#", "\r"))

_HEX_ESCAPE = re.compile(rb"\\([0-9a-fA-F]{2})")


def to_string(value: Any) -> str:
    """
    Coerce ``value`` to the string form sent to the directory.

    ``None`` becomes the empty string, booleans use the LDAP Boolean syntax
    (``TRUE``/``FALSE``) and bytes are decoded as UTF-8.  Undecodable bytes
    are carried through with ``surrogateescape`` so they can be encoded back
    unchanged.

    Args:
        value: the value to coerce

    Returns:
        The string representation of ``value``.

    """
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, bytes):
        return value.decode("utf-8", "surrogateescape")
    return str(value)


def _hex(char: str) -> str:
    return "".join(f"\\{byte:02x}" for byte in char.encode("utf-8", "surrogateescape"))


def escape(value: Any, ignore: Iterable[str] = "", flags: int = 0) -> str:
    """
    Escape ``value`` for use in a filter and/or a DN.

    Args:
        value: the value to escape; it is coerced with :py:func:`to_string`
        ignore: characters that must be left as they are
        flags: a bitmask of :py:data:`ESCAPE_FILTER` and :py:data:`ESCAPE_DN`.
            With no flags every character is escaped.

    Returns:
        The escaped value.

    """
    value = to_string(value)
    if not value:
        return ""
    ignored = set(ignore)
    characters: set[str] = set()
    if flags & ESCAPE_FILTER:
        characters |= FILTER_CHARACTERS
    if flags & ESCAPE_DN:
        characters |= DN_CHARACTERS
    escape_all = not flags
    escaped = "".join(
        _hex(char)
        if char not in ignored and (escape_all or char in characters)
        else char
        for char in value
    )
    if flags & ESCAPE_DN and " " not in ignored:
        # Leading and trailing spaces are significant in a DN value.
        if escaped.startswith(" "):
            escaped = "\\20" + escaped[1:]
        if escaped.endswith(" "):
            escaped = escaped[:-1] + "\\20"
    return escaped


def unescape(value: Any) -> str:
    """
    Replace every ``\\XX`` hex escape in ``value`` with the byte it stands for.

    Runs of escaped bytes are reassembled into their UTF-8 characters.

    Args:
        value: an escaped value

    Returns:
        The unescaped value.

    """
    raw = to_string(value).encode("utf-8", "surrogateescape")
    raw = _HEX_ESCAPE.sub(lambda match: bytes.fromhex(match.group(1).decode()), raw)
    return raw.decode("utf-8", "surrogateescape")


class EscapedValue:
    """
    A value together with the escaping that should be applied to it.

    Example:
        >>> EscapedValue("John (Admin)").for_filter().get()
        'John \\\\28Admin\\\\29'

    Args:
        value: the raw value

    Keyword Args:
        ignore: characters that are never escaped
        flags: a bitmask of :py:data:`ESCAPE_FILTER` and :py:data:`ESCAPE_DN`

    """

    def __init__(self, value: Any, ignore: Iterable[str] = "", flags: int = 0) -> None:
        self.value = to_string(value)
        self.ignored = "".join(ignore)
        self.flags = flags

    def __str__(self) -> str:
        return self.get()

    def __repr__(self) -> str:
        return f"<EscapedValue: {self.value!r} flags={self.flags}>"

    def get(self) -> str:
        """
        Return the escaped value.
        """
        return escape(self.value, self.ignored, self.flags)

    def get_raw(self) -> str:
        return self.value

    def ignore(self, characters: Iterable[str]) -> "EscapedValue":
        """
        Leave ``characters`` unescaped.
        """
        self.ignored += "".join(characters)
        return self

    def for_filter(self) -> "EscapedValue":
        self.flags = ESCAPE_FILTER
        return self

    def for_dn(self) -> "EscapedValue":
        self.flags = ESCAPE_DN
        return self

    def for_dn_and_filter(self) -> "EscapedValue":
        self.flags = ESCAPE_FILTER | ESCAPE_DN
        return self

    @staticmethod
    def unescape(value: Any) -> str:
        return unescape(value)


def to_bytes(value: Any) -> bytes:
    """
    Encode ``value`` for python-ldap; the reverse of :py:func:`to_string`.
    """
    if isinstance(value, bytes):
        return value
    return to_string(value).encode("utf-8", "surrogateescape")
