"""
LDAP server controls used by the query builder.

The builder records controls as plain :py:class:`Control` values keyed by OID;
:py:func:`to_ldap_control` turns them into python-ldap control objects when a
query is sent.
"""

from typing import Any, ClassVar, NamedTuple

from ldap.controls import LDAPControl, SimplePagedResultsControl
from pyasn1.codec.ber import encoder  # type: ignore[import]
from pyasn1.type import namedtype, tag, univ  # type: ignore[import]

#: RFC 2696 simple paged results
PAGED_RESULTS_OID = SimplePagedResultsControl.controlType
#: RFC 2891 server side sorting
SORT_REQUEST_OID = "1.2.840.113556.1.4.473"
#: Active Directory "show deleted objects"
SHOW_DELETED_OID = "1.2.840.113556.1.4.417"


class Control(NamedTuple):
    """
    A server control as held by the builder.

    ``value`` is whatever the control's encoder understands: a list of
    :py:class:`SortKeySpec` for sorting, raw bytes or ``None`` for anything else.
    """

    oid: str
    is_critical: bool = False
    value: Any = None


class SortKeySpec(NamedTuple):
    attribute: str
    reverse: bool = False
    ordering_rule: str | None = None


class SortKey(univ.Sequence):
    """
    ``SortKey ::= SEQUENCE { attributeType, orderingRule [0], reverseOrder [1] }``

    See RFC 2891.
    """

    componentType: ClassVar[namedtype.NamedTypes] = namedtype.NamedTypes(  # noqa: N815
        namedtype.NamedType("attributeType", univ.OctetString()),
        namedtype.OptionalNamedType(
            "orderingRule",
            univ.OctetString().subtype(
                implicitTag=tag.Tag(tag.tagClassContext, tag.tagFormatSimple, 0)
            ),
        ),
        namedtype.DefaultedNamedType(
            "reverseOrder",
            univ.Boolean(False).subtype(  # noqa: FBT003
                implicitTag=tag.Tag(tag.tagClassContext, tag.tagFormatSimple, 1)
            ),
        ),
    )


class SortKeyList(univ.SequenceOf):
    componentType: ClassVar[SortKey] = SortKey()  # noqa: N815


def build_sort_control_value(keys: list[SortKeySpec]) -> bytes:
    """
    BER-encode the value of a server side sort request.

    Args:
        keys: the sort keys, most significant first

    Returns:
        The encoded control value, or ``b""`` if there are no keys.

    """
    if not keys:
        return b""
    sort_key_list = SortKeyList()
    for spec in keys:
        sort_key = SortKey()
        sort_key.setComponentByName(
            "attributeType", univ.OctetString(spec.attribute.encode("utf-8"))
        )
        if spec.ordering_rule:
            sort_key.setComponentByName(
                "orderingRule", spec.ordering_rule.encode("utf-8")
            )
        if spec.reverse:
            sort_key.setComponentByName("reverseOrder", True)  # noqa: FBT003
        sort_key_list.append(sort_key)
    return encoder.encode(sort_key_list)


class ServerSideSortControl(LDAPControl):
    """
    Server side sort request (RFC 2891).  The OID is understood by both 389
    Directory Server and Active Directory.

    Args:
        criticality: whether the server must honour the control
        keys: the sort keys, most significant first

    """

    controlType = SORT_REQUEST_OID  # noqa: N815

    def __init__(
        self, criticality: bool = False, keys: list[SortKeySpec] | None = None
    ) -> None:
        self.keys = list(keys or [])
        super().__init__(
            self.controlType, criticality, build_sort_control_value(self.keys)
        )


def to_ldap_control(control: Control) -> LDAPControl:
    """
    Build the python-ldap control object for ``control``.
    """
    if control.oid == SORT_REQUEST_OID:
        return ServerSideSortControl(control.is_critical, control.value)
    if control.oid == PAGED_RESULTS_OID:
        size, cookie = control.value or (0, "")
        return SimplePagedResultsControl(control.is_critical, size=size, cookie=cookie)
    value = control.value
    if isinstance(value, str):
        value = value.encode("utf-8")
    return LDAPControl(control.oid, control.is_critical, value)


def get_paged_controls(serverctrls: list[LDAPControl]) -> list[SimplePagedResultsControl]:
    """
    Pick the paged results controls out of a server response.
    """
    return [c for c in serverctrls if c.controlType == PAGED_RESULTS_OID]
