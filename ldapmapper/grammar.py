"""
Compilation of query builder state into RFC 4515 filter strings.
"""

from collections.abc import Callable
from typing import TYPE_CHECKING, NamedTuple

from ldap_filter import Filter
from ldap_filter.parser import ParseError

if TYPE_CHECKING:
    from .query import Builder


class Where(NamedTuple):
    """
    A single filter clause.  ``value`` is already escaped and is ``None`` for
    the presence operators.
    """

    attribute: str
    operator: str
    value: str | None
    boolean: str = "and"


class Grammar:
    """
    Turns the clauses collected by a :py:class:`~ldapmapper.query.Builder`
    into a filter string.

    Clauses live in three buckets: ``and`` clauses, ``or`` clauses, and raw
    filter fragments.  They are combined like so:

    * one ``and`` clause with any ``or`` clauses: everything is OR'd together,
      so ``where(a).or_where(b).or_where(c)`` means ``a OR b OR c``
    * only ``or`` clauses, more than one: they are OR'd together
    * several ``and`` and several ``or`` clauses: ``(&ands)(|ors)``
    * anything else: the clauses are written one after the other
    * raw fragments follow the compiled clauses
    * if that leaves more than one top level filter, the whole thing is wrapped
      in ``(&...)``, unless the query is nested inside another one

    A query with no clauses at all compiles to ``(objectclass=*)``.
    """

    class UnexpectedOperator(ValueError):
        """Raised when a clause uses an operator we do not know how to compile."""

    class InvalidFilter(ValueError):
        """Raised when a filter string cannot be parsed."""

    def __init__(self) -> None:
        self.compilers: dict[str, Callable[[str, str | None], str]] = {
            "*": self.compile_has,
            "!*": self.compile_not_has,
            "=": self.compile_equals,
            "!": self.compile_does_not_equal,
            "!=": self.compile_does_not_equal,
            ">=": self.compile_greater_than_or_equals,
            "<=": self.compile_less_than_or_equals,
            "~=": self.compile_approximately_equals,
            "starts_with": self.compile_starts_with,
            "not_starts_with": self.compile_not_starts_with,
            "ends_with": self.compile_ends_with,
            "not_ends_with": self.compile_not_ends_with,
            "contains": self.compile_contains,
            "not_contains": self.compile_not_contains,
        }

    @property
    def operators(self) -> list[str]:
        return list(self.compilers)

    #: Operators that never take a value.
    presence_operators: tuple[str, ...] = ("*", "!*")

    def wrap(self, value: str, prefix: str = "(", suffix: str = ")") -> str:
        return f"{prefix}{value}{suffix}"

    def compile(self, query: "Builder") -> str:
        """
        Compile the clauses held by ``query``.

        This does not change ``query``, so compiling twice gives the same
        string.

        Args:
            query: the builder to compile

        Raises:
            Grammar.UnexpectedOperator: a clause uses an unknown operator

        Returns:
            The filter string.

        """
        ands = [self.compile_where(where) for where in query.wheres["and"]]
        ors = [self.compile_where(where) for where in query.wheres["or"]]
        raws = list(query.raw_filters)
        if not (ands or ors or raws):
            return self.compile_has("objectclass")

        segments = self.compile_wheres(ands, ors) + raws
        filterstr = "".join(segments)
        if len(segments) > 1 and not query.is_nested():
            return self.compile_and(filterstr)
        return filterstr

    def compile_wheres(self, ands: list[str], ors: list[str]) -> list[str]:
        """
        Combine compiled ``and`` and ``or`` clauses into top level segments.
        """
        if len(ands) == 1 and ors:
            return [self.compile_or("".join(ands + ors))]
        if len(ors) > 1 and not ands:
            return [self.compile_or("".join(ors))]
        if len(ands) > 1 and len(ors) > 1:
            return [self.compile_and("".join(ands)), self.compile_or("".join(ors))]
        return ands + ors

    def compile_where(self, where: Where) -> str:
        try:
            compiler = self.compilers[where.operator]
        except KeyError as e:
            msg = f"Invalid filter operator '{where.operator}' for attribute '{where.attribute}'"
            raise self.UnexpectedOperator(msg) from e
        return compiler(where.attribute, where.value)

    def compile_has(self, attribute: str, value: str | None = None) -> str:  # noqa: ARG002
        return self.wrap(f"{attribute}=*")

    def compile_not_has(self, attribute: str, value: str | None = None) -> str:
        return self.compile_not(self.compile_has(attribute, value))

    def compile_equals(self, attribute: str, value: str | None) -> str:
        return self.wrap(f"{attribute}={value}")

    def compile_does_not_equal(self, attribute: str, value: str | None) -> str:
        return self.compile_not(self.compile_equals(attribute, value))

    def compile_greater_than_or_equals(self, attribute: str, value: str | None) -> str:
        return self.wrap(f"{attribute}>={value}")

    def compile_less_than_or_equals(self, attribute: str, value: str | None) -> str:
        return self.wrap(f"{attribute}<={value}")

    def compile_approximately_equals(self, attribute: str, value: str | None) -> str:
        return self.wrap(f"{attribute}~={value}")

    def compile_starts_with(self, attribute: str, value: str | None) -> str:
        return self.wrap(f"{attribute}={value}*")

    def compile_not_starts_with(self, attribute: str, value: str | None) -> str:
        return self.compile_not(self.compile_starts_with(attribute, value))

    def compile_ends_with(self, attribute: str, value: str | None) -> str:
        return self.wrap(f"{attribute}=*{value}")

    def compile_not_ends_with(self, attribute: str, value: str | None) -> str:
        return self.compile_not(self.compile_ends_with(attribute, value))

    def compile_contains(self, attribute: str, value: str | None) -> str:
        return self.wrap(f"{attribute}=*{value}*")

    def compile_not_contains(self, attribute: str, value: str | None) -> str:
        return self.compile_not(self.compile_contains(attribute, value))

    def compile_and(self, filterstr: str) -> str:
        return self.wrap(filterstr, "(&", ")") if filterstr else ""

    def compile_or(self, filterstr: str) -> str:
        return self.wrap(filterstr, "(|", ")") if filterstr else ""

    def compile_not(self, filterstr: str) -> str:
        return self.wrap(filterstr, "(!", ")") if filterstr else ""

    def parse(self, filterstr: str) -> Filter:
        """
        Parse ``filterstr`` into an :py:class:`ldap_filter.Filter`.

        Args:
            filterstr: an RFC 4515 filter string

        Raises:
            Grammar.InvalidFilter: the string is not a valid filter

        Returns:
            The parsed filter.

        """
        try:
            return Filter.parse(filterstr)
        except ParseError as e:
            msg = f"Invalid LDAP filter: {filterstr}"
            raise self.InvalidFilter(msg) from e
