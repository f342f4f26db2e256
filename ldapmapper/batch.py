"""
Turning attribute changes into LDAP modify operations.

A :py:class:`BatchModification` compares what an attribute held in the directory
with what it should hold now and picks the smallest operation that gets it
there.  :py:class:`Modlist` aggregates those per entry and converts them into
the modlists python-ldap expects.
"""

from collections.abc import Iterable
from typing import Any

from ldap import modlist

from ldapmapper import ldap

from .escaping import to_bytes, to_string
from .typing import AddModlist, Attributes, ModificationDict, ModifyModlist

#: Add the given values to the attribute.
ADD = 1
#: Remove the given values from the attribute.
REMOVE = 2
#: Replace every value of the attribute with the given values.
REPLACE = 3
#: Remove the attribute entirely.
REMOVE_ALL = 18

MODIFICATION_TYPES = (ADD, REMOVE, REPLACE, REMOVE_ALL)


def normalize_values(values: Any) -> list[str]:
    """
    Coerce ``values`` to a list of non-empty strings.

    A scalar becomes a one element list; ``None`` and empty strings are
    dropped.  Whitespace is a value like any other.
    """
    if values is None:
        return []
    if isinstance(values, (str, bytes)) or not isinstance(values, Iterable):
        values = [values]
    result = []
    for value in values:
        if value is None:
            continue
        value = to_string(value)
        if value != "":
            result.append(value)
    return result


class BatchModification:
    """
    A single attribute change.

    Build one from the directory's values and the wanted values and call
    :py:meth:`build`, or use :py:meth:`diff`:

    * nothing in the directory, something wanted: ``ADD`` everything
    * nothing in the directory, nothing wanted: no-op
    * something in the directory, nothing wanted: ``REMOVE_ALL``
    * only new values: ``ADD`` just those
    * only dropped values: ``REMOVE`` just those
    * both: ``REPLACE`` with the wanted values
    * no change: no-op

    A no-op modification is not valid and :py:meth:`get` returns ``None`` for it.

    Args:
        attribute: the attribute name
        modtype: one of :py:data:`ADD`, :py:data:`REMOVE`, :py:data:`REPLACE`,
            :py:data:`REMOVE_ALL`
        values: the values for the operation

    """

    class InvalidModification(ValueError):
        """Raised for a modification that cannot be sent to the server."""

    class InvalidModificationType(InvalidModification):
        """Raised for an unknown modification type."""

    def __init__(
        self,
        attribute: str | None = None,
        modtype: int | None = None,
        values: Any = None,
    ) -> None:
        self.attribute = attribute
        self.original: list[str] | None = None
        self.values: list[str] = []
        self.desired: list[str] = []
        self.modtype: int | None = None
        if modtype is not None:
            self.set_type(modtype)
        self.set_values(values)

    @classmethod
    def diff(
        cls, attribute: str, original: Any, desired: Any
    ) -> "BatchModification | None":
        """
        Work out the modification that turns ``original`` into ``desired``.

        Example:
            >>> BatchModification.diff("member", ["a", "b"], ["a", "b", "c"]).get()
            {'attrib': 'member', 'modtype': 1, 'values': ['c']}

        Args:
            attribute: the attribute name
            original: the values currently in the directory, or ``None``
            desired: the values the attribute should have

        Returns:
            The modification, or ``None`` if nothing needs to change.

        """
        modification = cls(attribute).set_original(original).set_values(desired).build()
        return modification if modification.is_valid() else None

    def set_attribute(self, attribute: str) -> "BatchModification":
        self.attribute = attribute
        return self

    def set_original(self, original: Any) -> "BatchModification":
        self.original = None if original is None else normalize_values(original)
        return self

    def set_values(self, values: Any) -> "BatchModification":
        self.desired = normalize_values(values)
        self.values = list(self.desired)
        return self

    def set_type(self, modtype: int | None) -> "BatchModification":
        if modtype is not None and modtype not in MODIFICATION_TYPES:
            msg = f"Given batch modification type '{modtype}' for attribute '{self.attribute}' is invalid."
            raise self.InvalidModificationType(msg)
        self.modtype = modtype
        return self

    def build(self) -> "BatchModification":
        """
        Set the type and values from the original and desired values.
        """
        desired = self.desired
        if not self.original:
            self.modtype = ADD if desired else None
            self.values = list(desired)
            return self
        if not desired:
            self.modtype = REMOVE_ALL
            self.values = []
            return self
        added = [value for value in desired if value not in self.original]
        removed = [value for value in self.original if value not in desired]
        if added and removed:
            self.modtype, self.values = REPLACE, list(desired)
        elif added:
            self.modtype, self.values = ADD, added
        elif removed:
            self.modtype, self.values = REMOVE, removed
        else:
            self.modtype, self.values = None, []
        return self

    def is_valid(self) -> bool:
        if self.modtype not in MODIFICATION_TYPES:
            return False
        return bool(self.values) or self.modtype == REMOVE_ALL

    def get(self) -> ModificationDict | None:
        """
        Return the modification in its wire shape, or ``None`` if it is not valid.
        """
        if not self.is_valid():
            return None
        modification: ModificationDict = {
            "attrib": str(self.attribute),
            "modtype": self.modtype,  # type: ignore[typeddict-item]
        }
        if self.modtype != REMOVE_ALL:
            modification["values"] = list(self.values)
        return modification

    def __repr__(self) -> str:
        return f"<BatchModification: {self.attribute} modtype={self.modtype} values={self.values}>"


class Modlist:
    """
    Helper for building python-ldap modlists for add and modify operations.
    """

    #: How each batch modification type maps onto a python-ldap modify operation
    operations: dict[int, int] = {  # noqa: RUF012
        ADD: ldap.MOD_ADD,  # type: ignore[attr-defined]
        REMOVE: ldap.MOD_DELETE,  # type: ignore[attr-defined]
        REPLACE: ldap.MOD_REPLACE,  # type: ignore[attr-defined]
        REMOVE_ALL: ldap.MOD_DELETE,  # type: ignore[attr-defined]
    }

    def add(self, attributes: Attributes) -> AddModlist:
        """
        Convert ``attributes`` into a modlist suitable for ``add_s``.  Empty
        attributes are left out.
        """
        data = {}
        for key, values in attributes.items():
            values = normalize_values(values)
            if values:
                data[key] = [to_bytes(value) for value in values]
        return modlist.addModlist(data)

    def update(
        self, original: Attributes, current: Attributes
    ) -> list[BatchModification]:
        """
        Diff every attribute of ``current`` against ``original``.

        Attributes present in ``original`` but missing from ``current`` are
        removed.  Attributes that did not change produce nothing.

        Args:
            original: the attributes as they are in the directory
            current: the attributes as they should be

        Returns:
            The valid modifications, in attribute order.

        """
        modifications = []
        names = list(current) + [name for name in original if name not in current]
        for name in names:
            modification = BatchModification.diff(
                name, original.get(name), current.get(name, [])
            )
            if modification is not None:
                modifications.append(modification)
        return modifications

    def modify(
        self, modifications: Iterable[ModificationDict | BatchModification]
    ) -> ModifyModlist:
        """
        Convert batch modifications in their wire shape into a modlist suitable
        for ``modify_s``.

        Args:
            modifications: :py:class:`BatchModification` objects or dicts with
                ``attrib``, ``modtype`` and ``values`` keys

        Raises:
            BatchModification.InvalidModification: a modification is missing its
                attribute, or its values when the type requires them
            BatchModification.InvalidModificationType: a modification has an
                unknown type

        Returns:
            A list of ``(op, attribute, values)`` tuples.

        """
        _modlist: ModifyModlist = []
        for modification in modifications:
            if isinstance(modification, BatchModification):
                data = modification.get()
                if data is None:
                    continue
            else:
                data = modification
            attribute = data.get("attrib")
            modtype = data.get("modtype")
            if not attribute:
                msg = f"Batch modification {data!r} has no attribute."
                raise BatchModification.InvalidModification(msg)
            if modtype not in MODIFICATION_TYPES:
                msg = f"Given batch modification type '{modtype}' for attribute '{attribute}' is invalid."
                raise BatchModification.InvalidModificationType(msg)
            if modtype == REMOVE_ALL:
                _modlist.append((self.operations[modtype], attribute, None))
                continue
            values = normalize_values(data.get("values"))
            if not values:
                msg = f"Batch modification for attribute '{attribute}' has no values."
                raise BatchModification.InvalidModification(msg)
            _modlist.append(
                (
                    self.operations[modtype],
                    attribute,
                    [to_bytes(value) for value in values],
                )
            )
        return _modlist

    def attributes(self, operation: int, attributes: Attributes) -> ModifyModlist:
        """
        Build a modlist applying ``operation`` to every attribute in
        ``attributes``.  An empty value list with ``MOD_DELETE`` removes the
        whole attribute.
        """
        _modlist: ModifyModlist = []
        for key, values in attributes.items():
            encoded = [to_bytes(value) for value in normalize_values(values)]
            _modlist.append((operation, key, encoded or None))
        return _modlist
