"""
The attribute storage behind :py:class:`~ldapmapper.models.Model`.
"""

from collections.abc import Iterator, Mapping
from typing import Any

from .batch import BatchModification, Modlist, normalize_values
from .typing import Attributes


class AttributeBag:
    """
    A case-insensitive, multi-valued attribute mapping with two snapshots:
    the values last seen in the directory (*original*) and the values as they
    are now (*current*).

    Keys are normalised with :py:meth:`normalize_key`, so ``givenName``,
    ``GIVENNAME`` and ``givenname`` are the same attribute, and Python style
    ``given_name`` works too.  Values are always stored as lists of strings.

    Args:
        attributes: initial current values

    """

    def __init__(self, attributes: Mapping[str, Any] | None = None) -> None:
        self._original: Attributes = {}
        self._current: Attributes = {}
        if attributes:
            self.fill(attributes)

    @staticmethod
    def normalize_key(name: str) -> str:
        """
        LDAP attribute names are case-insensitive and may contain hyphens but
        never underscores, so underscores are read as hyphens.
        """
        return name.strip().lower().replace("_", "-")

    def fill(self, attributes: Mapping[str, Any]) -> "AttributeBag":
        for name, value in attributes.items():
            self.set(name, value)
        return self

    def set_raw(self, attributes: Mapping[str, Any]) -> "AttributeBag":
        """
        Replace both snapshots with ``attributes``, as read from the directory.
        """
        self._current = {}
        self.fill(attributes)
        self.sync_original()
        return self

    def set_raw_attribute(self, name: str, value: Any) -> "AttributeBag":
        """
        Set ``name`` in both snapshots, after the directory has been changed
        directly.  An empty value removes the attribute from both.
        """
        key = self.normalize_key(name)
        values = normalize_values(value)
        if values:
            self._current[key] = values
            self._original[key] = list(values)
        else:
            self._current.pop(key, None)
            self._original.pop(key, None)
        return self

    def get(self, name: str, default: Any = None) -> Any:
        """
        Return the values of ``name`` as a new list, or ``default``.
        """
        key = self.normalize_key(name)
        if key not in self._current:
            return default
        return list(self._current[key])

    def first(self, name: str, default: Any = None) -> Any:
        values = self._current.get(self.normalize_key(name))
        return values[0] if values else default

    def set(self, name: str, value: Any) -> "AttributeBag":
        """
        Set ``name`` to ``value``; scalars become one element lists and
        ``None`` or ``[]`` clear the attribute.
        """
        self._current[self.normalize_key(name)] = normalize_values(value)
        return self

    def has(self, name: str) -> bool:
        return self.normalize_key(name) in self._current

    def unset(self, name: str) -> "AttributeBag":
        self._current.pop(self.normalize_key(name), None)
        return self

    def all(self) -> Attributes:
        return {key: list(values) for key, values in self._current.items()}

    def original(self) -> Attributes:
        return {key: list(values) for key, values in self._original.items()}

    def get_original(self, name: str, default: Any = None) -> Any:
        key = self.normalize_key(name)
        if key not in self._original:
            return default
        return list(self._original[key])

    def dirty(self) -> Attributes:
        """
        Return the attributes whose current values differ from the original
        ones.  Attributes that were removed are reported with ``[]``.
        """
        names = list(self._current) + [k for k in self._original if k not in self._current]
        return {
            name: list(self._current.get(name, []))
            for name in names
            if self._current.get(name, []) != self._original.get(name, [])
        }

    def is_dirty(self, name: str | None = None) -> bool:
        if name is None:
            return bool(self.dirty())
        return self.normalize_key(name) in self.dirty()

    def sync_original(self) -> "AttributeBag":
        """
        Mark the current values as being what the directory holds.
        """
        self._original = self.all()
        return self

    def modifications(self) -> list[BatchModification]:
        """
        Return the batch modifications that would bring the directory in line
        with the current values.
        """
        dirty = self.dirty()
        original = {name: self._original[name] for name in dirty if name in self._original}
        return Modlist().update(original, dirty)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.has(name)

    def __iter__(self) -> Iterator[str]:
        return iter(self._current)

    def __len__(self) -> int:
        return len(self._current)

    def __repr__(self) -> str:
        return f"<AttributeBag: {self._current!r}>"
