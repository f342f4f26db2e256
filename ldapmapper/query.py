"""
The fluent LDAP query builder.

A :py:class:`Builder` collects filter clauses, selected attributes, a scope, a
size limit, server controls and a cache policy.  It compiles the clauses with
:py:class:`~ldapmapper.grammar.Grammar` and runs the search on a
:py:class:`~ldapmapper.connection.Connection`.

Example:
    >>> query = Builder(connection, base_dn="ou=people,dc=example,dc=com")
    >>> query.where("sn", "Smith").where_starts_with("givenName", "J").get_query()
    '(&(sn=Smith)(givenName=J*))'

"""

import copy
import hashlib
import logging
import re
import time
from collections.abc import Callable, Iterable, Iterator
from contextlib import closing
from typing import Any, Optional

from django.conf import settings
from ldap.controls import LDAPControl
from ldap_filter import Filter

from ldapmapper import ldap

from .batch import BatchModification, normalize_values
from .cache import Cache, DjangoCacheStore, Expiry, get_default_ttl
from .controls import (
    PAGED_RESULTS_OID,
    SHOW_DELETED_OID,
    SORT_REQUEST_OID,
    Control,
    SortKeySpec,
    get_paged_controls,
    to_ldap_control,
)
from .connection import Connection
from .converters import Guid
from .dn import DistinguishedName, substitute_base_dn
from .escaping import ESCAPE_DN, ESCAPE_FILTER, EscapedValue, escape, to_string, unescape
from .grammar import Grammar, Where
from .signals import query_executed
from .typing import Attributes, Entry, ModificationDict

logger = logging.getLogger(__name__)

#: Default page size for :py:meth:`Builder.paginate` and :py:meth:`Builder.chunk`
DEFAULT_PAGE_SIZE = 1000

_NOT_GIVEN: Any = object()
_CAMEL_CONNECTOR = re.compile(r"(And|Or)(?=[A-Z])")
_SNAKE_CONNECTOR = re.compile(r"_(and|or)_")


def get_default_page_size() -> int:
    return int(getattr(settings, "LDAPMAPPER_PAGE_SIZE", DEFAULT_PAGE_SIZE))


class Paginator:
    """
    Runs a search with the simple paged results control (RFC 2696), one page
    per request, until the server stops returning a cookie.

    All pages are fetched over the same connection, since the server ties the
    cookie to it.

    Args:
        query: the builder whose base DN, scope, attributes and controls to use
        filterstr: the compiled filter
        page_size: entries per page
        is_critical: whether the server must support paging

    """

    def __init__(
        self, query: "Builder", filterstr: str, page_size: int, is_critical: bool = False
    ) -> None:
        self.query = query
        self.filterstr = filterstr
        self.page_size = page_size
        self.is_critical = is_critical

    def pages(self) -> Iterator[list[Entry]]:
        """
        Yield each page of entries as it arrives.
        """
        query = self.query
        with query.connection.session("read"):
            cookie: bytes | str = ""
            try:
                while True:
                    query.add_control(
                        PAGED_RESULTS_OID, self.is_critical, (self.page_size, cookie)
                    )
                    entries, serverctrls = query.connection.search(
                        query.get_search_dn(),
                        self.filterstr,
                        query.get_selects(),
                        scope=query.get_scope(),
                        sizelimit=query.size_limit,
                        controls=query.get_ldap_controls(),
                    )
                    query.controls_response = serverctrls
                    yield entries
                    paged_controls = get_paged_controls(serverctrls)
                    if not paged_controls or not paged_controls[0].cookie:
                        break
                    cookie = paged_controls[0].cookie
            finally:
                # Leave the builder as it was so later queries are not paged
                query.controls.pop(PAGED_RESULTS_OID, None)

    def execute(self) -> list[Entry]:
        """
        Fetch every page and return the entries in the order they arrived.
        """
        results: list[Entry] = []
        for page in self.pages():
            results.extend(page)
        return results


class Builder:
    """
    Accumulates the parts of an LDAP search and runs it.

    Nothing is sent to the server until one of :py:meth:`get`,
    :py:meth:`first`, :py:meth:`find`, :py:meth:`paginate` or
    :py:meth:`chunk` is called.  A builder is not safe to share between
    threads.

    Args:
        connection: the connection to run queries on

    Keyword Args:
        base_dn: the DN searches start from; defaults to the connection's
            ``basedn``
        cache: where to cache results when :py:meth:`cache` is used; defaults
            to a :py:class:`~ldapmapper.cache.DjangoCacheStore`
        grammar: the filter compiler

    """

    class InvalidFilterOperator(ValueError):
        """Raised when a clause uses an operator the grammar does not know."""

    class InvalidArgument(ValueError):
        """Raised when a clause or argument is incomplete or malformed."""

    class InvalidOperation(Exception):
        """Raised when a write is missing something the server requires."""

    TYPE_READ = "read"
    TYPE_LIST = "listing"
    TYPE_SEARCH = "search"
    TYPE_PAGINATE = "paginate"
    TYPE_CHUNK = "chunk"

    #: How each query type maps onto an LDAP search scope
    scopes: dict[str, int] = {  # noqa: RUF012
        TYPE_READ: ldap.SCOPE_BASE,  # type: ignore[attr-defined]
        TYPE_LIST: ldap.SCOPE_ONELEVEL,  # type: ignore[attr-defined]
        TYPE_SEARCH: ldap.SCOPE_SUBTREE,  # type: ignore[attr-defined]
    }

    def __init__(
        self,
        connection: Connection,
        base_dn: str | None = None,
        cache: Cache | None = None,
        grammar: Grammar | None = None,
    ) -> None:
        self.connection = connection
        self.grammar = grammar or Grammar()
        self.cache_store = cache
        self.base_dn: str = base_dn if base_dn is not None else (connection.basedn or "")
        self.dn: str | None = None
        self.type = self.TYPE_SEARCH
        self.wheres: dict[str, list[Where]] = {"and": [], "or": []}
        self.raw_filters: list[str] = []
        self.selects: list[str] | None = None
        self.size_limit = 0
        self.controls: dict[str, Control] = {}
        self.controls_response: list[LDAPControl] = []
        self.paginated = False
        self._nested = False
        self.caching = False
        self.cache_until: Expiry = None
        self.cache_flush = False
        self.cache_key: str | None = None

    # -----------------------
    # Instances
    # -----------------------

    def new_instance(self, base_dn: str | None = None) -> "Builder":
        """
        Return a fresh builder on the same connection, starting at ``base_dn``
        or at this builder's DN.
        """
        query = Builder(
            self.connection, base_dn=self.base_dn, cache=self.cache_store, grammar=self.grammar
        )
        return query.set_dn(base_dn if base_dn is not None else self.get_dn())

    def new_nested_instance(
        self, callback: Callable[["Builder"], Any] | None = None
    ) -> "Builder":
        """
        Return a nested builder, after passing it to ``callback`` if given.

        Nested builders are only used to compile filters for their parent and
        never wrap their own clauses in ``(&...)``.
        """
        query = self.new_instance().nested()
        if callback is not None:
            callback(query)
        return query

    def clone(self) -> "Builder":
        clone = copy.copy(self)
        clone.wheres = {key: list(value) for key, value in self.wheres.items()}
        clone.raw_filters = list(self.raw_filters)
        clone.selects = None if self.selects is None else list(self.selects)
        clone.controls = dict(self.controls)
        clone.controls_response = []
        return clone

    def set_connection(self, connection: Connection) -> "Builder":
        self.connection = connection
        return self

    def set_cache(self, cache: Cache | None = None) -> "Builder":
        self.cache_store = cache
        return self

    def get_cache(self) -> Cache:
        if self.cache_store is None:
            self.cache_store = Cache(DjangoCacheStore())
        return self.cache_store

    # -----------------------
    # DNs
    # -----------------------

    def set_base_dn(self, dn: str | DistinguishedName | None = None) -> "Builder":
        self.base_dn = substitute_base_dn(dn, self.base_dn)
        return self

    def get_base_dn(self) -> str:
        return self.base_dn

    def set_dn(self, dn: str | DistinguishedName | None = None) -> "Builder":
        """
        Search from ``dn`` instead of the base DN.  ``{base}`` is expanded.
        """
        self.dn = self.substitute_base_dn(dn) if dn else None
        return self

    def get_dn(self) -> str | None:
        return self.dn

    def in_dn(self, dn: str | DistinguishedName | None = None) -> "Builder":
        return self.set_dn(dn)

    def get_search_dn(self) -> str:
        return self.dn if self.dn is not None else self.base_dn

    def substitute_base_dn(self, dn: str | DistinguishedName | None = None) -> str:
        return substitute_base_dn(dn, self.base_dn)

    # -----------------------
    # Scope, limits, state
    # -----------------------

    def read(self) -> "Builder":
        """
        Search only the entry at the DN itself.
        """
        self.type = self.TYPE_READ
        return self

    def listing(self) -> "Builder":
        """
        Search the entries directly below the DN.
        """
        self.type = self.TYPE_LIST
        return self

    def search(self) -> "Builder":
        """
        Search the whole subtree below the DN.  This is the default.
        """
        self.type = self.TYPE_SEARCH
        return self

    def recursive(self) -> "Builder":
        return self.search()

    def get_type(self) -> str:
        return self.type

    def get_scope(self) -> int:
        return self.scopes[self.type]

    def limit(self, limit: int) -> "Builder":
        self.size_limit = max(int(limit), 0)
        return self

    def nested(self, nested: bool = True) -> "Builder":
        self._nested = nested
        return self

    def is_nested(self) -> bool:
        return self._nested

    def is_paginated(self) -> bool:
        return self.paginated

    def cache(
        self, until: Expiry = None, flush: bool = False, key: str | None = None
    ) -> "Builder":
        """
        Cache the results of the next query.

        Keyword Args:
            until: when the cached results expire: seconds, a ``timedelta`` or a
                ``datetime``.  Defaults to ``settings.LDAPMAPPER_CACHE_TTL``.
            flush: drop any cached results first and query the server
            key: cache under this key instead of one derived from the query

        """
        self.caching = True
        self.cache_until = until if until is not None else get_default_ttl()
        self.cache_flush = flush
        self.cache_key = key
        return self

    # -----------------------
    # Selects
    # -----------------------

    @staticmethod
    def _flatten(values: Iterable[Any]) -> list[str]:
        result: list[str] = []
        for value in values:
            if isinstance(value, (list, tuple, set)):
                result.extend(str(v) for v in value)
            elif value is not None:
                result.append(str(value))
        return result

    def select(self, *attributes: str | Iterable[str]) -> "Builder":
        selects = self._flatten(attributes)
        if selects:
            self.selects = selects
        return self

    def add_select(self, *attributes: str | Iterable[str]) -> "Builder":
        self.selects = (self.selects or []) + self._flatten(attributes)
        return self

    def has_selects(self) -> bool:
        return bool(self.selects)

    def get_selects(self) -> list[str]:
        """
        Return the attributes to fetch.

        ``objectclass`` is always included, unless every attribute (``*``) is
        selected, since models cannot be built without it.
        """
        selects: list[str] = []
        seen: set[str] = set()
        for attribute in self.selects or ["*"]:
            if attribute.lower() not in seen:
                seen.add(attribute.lower())
                selects.append(attribute)
        if "*" not in seen and "objectclass" not in seen:
            selects.append("objectclass")
        return selects

    # -----------------------
    # Controls and ordering
    # -----------------------

    def add_control(self, oid: str, is_critical: bool = False, value: Any = None) -> "Builder":
        self.controls[oid] = Control(oid, is_critical, value)
        return self

    def has_control(self, oid: str) -> bool:
        return oid in self.controls

    def get_controls(self) -> dict[str, Control]:
        return dict(self.controls)

    def get_ldap_controls(self) -> list[LDAPControl]:
        return [to_ldap_control(control) for control in self.controls.values()]

    def order_by(
        self, attribute: str, direction: str = "asc", ordering_rule: str | None = None
    ) -> "Builder":
        """
        Ask the server to sort the results with the server side sort control.
        Each call adds a less significant sort key.

        Args:
            attribute: the attribute to sort by
            direction: ``asc`` or ``desc``
            ordering_rule: an optional matching rule such as
                ``caseIgnoreOrderingMatch``

        Raises:
            Builder.InvalidArgument: ``direction`` is not ``asc`` or ``desc``

        """
        direction = direction.lower()
        if direction not in ("asc", "desc"):
            msg = f"Invalid sort direction '{direction}' for attribute '{attribute}'"
            raise self.InvalidArgument(msg)
        keys = list(self.controls[SORT_REQUEST_OID].value) if self.has_order_by() else []
        keys.append(SortKeySpec(attribute, direction == "desc", ordering_rule))
        critical = getattr(settings, "LDAPMAPPER_SORT_CONTROL_CRITICAL", False)
        return self.add_control(SORT_REQUEST_OID, critical, keys)

    def order_by_desc(self, attribute: str, ordering_rule: str | None = None) -> "Builder":
        return self.order_by(attribute, "desc", ordering_rule)

    def has_order_by(self) -> bool:
        return self.has_control(SORT_REQUEST_OID)

    def with_deleted(self) -> "Builder":
        """
        Include deleted (tombstoned) objects in the results.
        """
        return self.add_control(SHOW_DELETED_OID, True)  # noqa: FBT003

    def where_deleted(self) -> "Builder":
        """
        Return only deleted (tombstoned) objects.
        """
        return self.with_deleted().where_equals("isDeleted", "TRUE")

    # -----------------------
    # Filters
    # -----------------------

    def where(  # noqa: PLR0911, PLR0912
        self,
        attribute: Any,
        operator: Any = None,
        value: Any = _NOT_GIVEN,
        boolean: str = "and",
        raw: bool = False,
    ) -> "Builder":
        """
        Add a filter clause.

        ``attribute`` may be:

        * an attribute name, followed by an operator and a value.  With only
          two arguments the second one is the value for an equality test,
          unless it is ``*`` or ``!*``.
        * a ``dict`` of attribute names to values, each an equality test
        * a list of ``[attribute, operator, value]`` triples, or of dicts with
          ``attribute``, ``operator`` and ``value`` keys
        * a callable, which is handed a nested builder whose clauses are added
          as one group

        Args:
            attribute: see above
            operator: one of :py:attr:`Grammar.operators`
            value: the value; escaped for filters unless ``raw`` is set
            boolean: ``"and"`` or ``"or"``
            raw: do not escape ``value``

        Raises:
            Builder.InvalidFilterOperator: the operator is unknown
            Builder.InvalidArgument: the clause is incomplete

        Returns:
            This builder.

        """
        if boolean not in self.wheres:
            msg = f"Invalid boolean '{boolean}'; expected 'and' or 'or'"
            raise self.InvalidArgument(msg)
        if callable(attribute):
            if boolean == "and":
                return self.and_filter(attribute)
            return self.or_filter(attribute)
        if isinstance(attribute, dict):
            for key, val in attribute.items():
                self.where(key, "=", val, boolean, raw)
            return self
        if isinstance(attribute, (list, tuple)):
            for clause in attribute:
                self.where(*self._unpack_clause(clause), boolean=boolean, raw=raw)
            return self
        if not attribute:
            msg = "A filter clause must name an attribute"
            raise self.InvalidArgument(msg)
        if operator is None:
            msg = f"The filter clause for attribute '{attribute}' has no operator"
            raise self.InvalidArgument(msg)
        if value is _NOT_GIVEN:
            if operator in self.grammar.presence_operators:
                value = None
            else:
                operator, value = "=", operator
        if operator not in self.grammar.operators:
            msg = f"Invalid filter operator '{operator}' for attribute '{attribute}'"
            raise self.InvalidFilterOperator(msg)
        if operator in self.grammar.presence_operators:
            value = None
        elif value is None or value is _NOT_GIVEN:
            msg = f"Operator '{operator}' on attribute '{attribute}' requires a value"
            raise self.InvalidArgument(msg)
        else:
            value = to_string(value) if raw else escape(value, flags=ESCAPE_FILTER)
        self.wheres[boolean].append(
            Where(escape(attribute, flags=ESCAPE_FILTER), operator, value, boolean)
        )
        return self

    def _unpack_clause(self, clause: Any) -> tuple[Any, Any, Any]:
        """
        Turn one item of a list passed to :py:meth:`where` into
        ``(attribute, operator, value)``.

        Only the presence operators may leave out the value.

        Raises:
            Builder.InvalidArgument: the clause is missing its attribute,
                operator or value

        """
        if isinstance(clause, dict):
            attribute = clause.get("attribute", clause.get("field"))
            if not attribute or "operator" not in clause:
                msg = f"Filter clause {clause!r} needs an attribute and an operator"
                raise self.InvalidArgument(msg)
            operator = clause["operator"]
            value = clause.get("value", _NOT_GIVEN)
        elif isinstance(clause, (list, tuple)) and len(clause) in (2, 3):
            attribute, operator = clause[0], clause[1]
            value = clause[2] if len(clause) == 3 else _NOT_GIVEN  # noqa: PLR2004
        else:
            msg = f"Filter clause {clause!r} is not an [attribute, operator, value] triple"
            raise self.InvalidArgument(msg)
        if value is _NOT_GIVEN:
            if operator not in self.grammar.presence_operators:
                msg = f"Filter clause {clause!r} has no value"
                raise self.InvalidArgument(msg)
            value = None
        return attribute, operator, value

    def or_where(
        self, attribute: Any, operator: Any = None, value: Any = _NOT_GIVEN, raw: bool = False
    ) -> "Builder":
        return self.where(attribute, operator, value, "or", raw)

    def where_raw(self, attribute: Any, operator: Any = None, value: Any = _NOT_GIVEN) -> "Builder":
        return self.where(attribute, operator, value, raw=True)

    def or_where_raw(self, attribute: Any, operator: Any = None, value: Any = _NOT_GIVEN) -> "Builder":
        return self.where(attribute, operator, value, "or", raw=True)

    def where_equals(self, attribute: str, value: Any) -> "Builder":
        return self.where(attribute, "=", value)

    def where_not_equals(self, attribute: str, value: Any) -> "Builder":
        return self.where(attribute, "!", value)

    def where_approximately_equals(self, attribute: str, value: Any) -> "Builder":
        return self.where(attribute, "~=", value)

    def where_has(self, attribute: str) -> "Builder":
        return self.where(attribute, "*")

    def where_not_has(self, attribute: str) -> "Builder":
        return self.where(attribute, "!*")

    def where_contains(self, attribute: str, value: Any) -> "Builder":
        return self.where(attribute, "contains", value)

    def where_not_contains(self, attribute: str, value: Any) -> "Builder":
        return self.where(attribute, "not_contains", value)

    def where_starts_with(self, attribute: str, value: Any) -> "Builder":
        return self.where(attribute, "starts_with", value)

    def where_not_starts_with(self, attribute: str, value: Any) -> "Builder":
        return self.where(attribute, "not_starts_with", value)

    def where_ends_with(self, attribute: str, value: Any) -> "Builder":
        return self.where(attribute, "ends_with", value)

    def where_not_ends_with(self, attribute: str, value: Any) -> "Builder":
        return self.where(attribute, "not_ends_with", value)

    def or_where_equals(self, attribute: str, value: Any) -> "Builder":
        return self.or_where(attribute, "=", value)

    def or_where_not_equals(self, attribute: str, value: Any) -> "Builder":
        return self.or_where(attribute, "!", value)

    def or_where_approximately_equals(self, attribute: str, value: Any) -> "Builder":
        return self.or_where(attribute, "~=", value)

    def or_where_has(self, attribute: str) -> "Builder":
        return self.or_where(attribute, "*")

    def or_where_not_has(self, attribute: str) -> "Builder":
        return self.or_where(attribute, "!*")

    def or_where_contains(self, attribute: str, value: Any) -> "Builder":
        return self.or_where(attribute, "contains", value)

    def or_where_not_contains(self, attribute: str, value: Any) -> "Builder":
        return self.or_where(attribute, "not_contains", value)

    def or_where_starts_with(self, attribute: str, value: Any) -> "Builder":
        return self.or_where(attribute, "starts_with", value)

    def or_where_not_starts_with(self, attribute: str, value: Any) -> "Builder":
        return self.or_where(attribute, "not_starts_with", value)

    def or_where_ends_with(self, attribute: str, value: Any) -> "Builder":
        return self.or_where(attribute, "ends_with", value)

    def or_where_not_ends_with(self, attribute: str, value: Any) -> "Builder":
        return self.or_where(attribute, "not_ends_with", value)

    def where_in(self, attribute: str, values: Iterable[Any]) -> "Builder":
        """
        Match entries whose ``attribute`` equals any of ``values``.  With no
        values nothing matches.
        """
        values = list(values)
        if not values:
            # RFC 4526 absolute false
            return self.raw_filter("(|)")
        query = self.new_nested_instance()
        for value in values:
            query.or_where_equals(attribute, value)
        return self.raw_filter(query.get_query())

    def where_between(self, attribute: str, values: Iterable[Any]) -> "Builder":
        """
        Match entries whose ``attribute`` lies between two values, inclusive.
        """
        bounds = list(values)
        if len(bounds) != 2:  # noqa: PLR2004
            msg = f"where_between() on '{attribute}' needs exactly two values, got {len(bounds)}"
            raise self.InvalidArgument(msg)
        return self.where([[attribute, ">=", bounds[0]], [attribute, "<=", bounds[1]]])

    def raw_filter(self, *filters: str | Filter | Iterable[str | Filter]) -> "Builder":
        """
        Add already compiled filter strings, or :py:class:`ldap_filter.Filter`
        objects.  They are not escaped.
        """
        for item in filters:
            if isinstance(item, (list, tuple)):
                self.raw_filter(*item)
            elif isinstance(item, Filter):
                self.raw_filters.append(item.to_string())
            elif item:
                self.raw_filters.append(str(item))
        return self

    def and_filter(self, callback: Callable[["Builder"], Any]) -> "Builder":
        """
        AND together the clauses added by ``callback`` to a nested builder.
        """
        query = self.new_nested_instance(callback)
        if query.has_filters():
            self.raw_filter(self.grammar.compile_and(query.get_query()))
        return self

    def or_filter(self, callback: Callable[["Builder"], Any]) -> "Builder":
        """
        OR together the clauses added by ``callback`` to a nested builder.

        Example:
            >>> query.or_filter(lambda q: q.where({"a": 1, "b": 2})).get_query()
            '(|(a=1)(b=2))'

        """
        query = self.new_nested_instance(callback)
        if query.has_filters():
            self.raw_filter(self.grammar.compile_or(query.get_query()))
        return self

    def not_filter(self, callback: Callable[["Builder"], Any]) -> "Builder":
        """
        Negate the clauses added by ``callback`` to a nested builder.
        """
        # compiled as a top level query so several clauses get AND'ed first
        query = self.new_nested_instance(callback).nested(False)
        if query.has_filters():
            self.raw_filter(self.grammar.compile_not(query.get_query()))
        return self

    def has_filters(self) -> bool:
        return bool(self.wheres["and"] or self.wheres["or"] or self.raw_filters)

    def clear_filters(self) -> "Builder":
        self.wheres = {"and": [], "or": []}
        self.raw_filters = []
        return self

    def dynamic_where(self, method: str, *params: Any) -> "Builder":
        """
        Add clauses described by a method-style name.

        ``whereCnAndSn("John", "Doe")`` (or ``where_cn_and_sn``) adds
        ``cn=John`` AND ``sn=Doe``; ``Or`` connects with OR instead.  Without
        params every attribute gets a presence test.

        Raises:
            Builder.InvalidArgument: there are fewer params than attributes

        """
        finder = method[5:] if method.lower().startswith("where") else method
        finder = finder.strip("_")
        if "_" in finder or finder.islower():
            tokens = _SNAKE_CONNECTOR.split(finder.lower())
        else:
            tokens = _CAMEL_CONNECTOR.split(finder)
        connector = "and"
        index = 0
        for position, token in enumerate(tokens):
            if position % 2:
                connector = token.lower()
                continue
            if not token:
                continue
            attribute = token.lower().replace("_", "-")
            if not params:
                self.where(attribute, "*", boolean=connector)
            elif index < len(params):
                self.where(attribute, "=", params[index], connector)
            else:
                msg = f"{method}() has no value for attribute '{attribute}'"
                raise self.InvalidArgument(msg)
            index += 1
        return self

    def escape(
        self, value: Any, ignore: Iterable[str] = "", flags: int = ESCAPE_FILTER | ESCAPE_DN
    ) -> EscapedValue:
        """
        Escape ``value`` for use in both a filter and a DN.  Pass ``flags=0``
        to escape every character.
        """
        return EscapedValue(value, ignore, flags)

    def get_query(self) -> str:
        """
        Compile the clauses into a filter string.
        """
        return self.grammar.compile(self)

    def get_unescaped_query(self) -> str:
        return unescape(self.get_query())

    def get_filter(self) -> Filter:
        """
        Return the compiled query as an :py:class:`ldap_filter.Filter`.
        """
        return self.grammar.parse(self.get_query())

    # -----------------------
    # Running queries
    # -----------------------

    def get(self, *columns: str | Iterable[str]) -> list[Any]:
        """
        Run the query and return the results.

        Args:
            *columns: attributes to fetch if none were selected

        """
        original = self.selects
        if original is None and columns:
            self.select(*columns)
        try:
            return self.query(self.get_query())
        finally:
            self.selects = original

    def first(self, *columns: str | Iterable[str]) -> Any:
        """
        Return the first result, or ``None``.
        """
        results = self.limit(1).get(*columns)
        return results[0] if results else None

    def exists(self) -> bool:
        return self.first("objectclass") is not None

    def find(self, dn: str | DistinguishedName | list, *columns: str | Iterable[str]) -> Any:
        """
        Return the entry at ``dn``, or ``None`` if there isn't one.  A list of
        DNs is handed to :py:meth:`find_many`.
        """
        if isinstance(dn, (list, tuple)):
            return self.find_many(dn, *columns)
        query = self.clone().set_dn(str(dn)).read()
        if not query.has_filters():
            query.where_has("objectclass")
        try:
            return query.first(*columns)
        except ldap.NO_SUCH_OBJECT:  # type: ignore[attr-defined]
            return None

    def find_many(self, dns: Iterable[str | DistinguishedName], *columns: str | Iterable[str]) -> list[Any]:
        results = []
        for dn in dns:
            result = self.find(dn, *columns)
            if result is not None:
                results.append(result)
        return results

    def find_by(self, attribute: str, value: Any, *columns: str | Iterable[str]) -> Any:
        """
        Return the first entry whose ``attribute`` equals ``value``, or ``None``.
        """
        return self.clone().where_equals(attribute, value).first(*columns)

    def find_many_by(
        self, attribute: str, values: Iterable[Any], *columns: str | Iterable[str]
    ) -> list[Any]:
        return self.clone().where_in(attribute, values).get(*columns)

    def find_by_guid(self, guid: Any, *columns: str | Iterable[str]) -> Any:
        """
        Return the entry whose ``objectGUID`` is ``guid``, or ``None``.

        Args:
            guid: the GUID as a string, as 16 bytes, or a
                :py:class:`~ldapmapper.converters.Guid`

        """
        if not isinstance(guid, Guid):
            guid = Guid(guid)
        return self.clone().raw_filter(f"(objectguid={guid.get_encoded_hex()})").first(*columns)

    def query(self, filterstr: str) -> list[Any]:
        """
        Run a search with ``filterstr``, going through the cache if caching
        is on, and return the processed results.
        """
        start = time.perf_counter()
        results = self.get_cached_response(filterstr, lambda: self.run(filterstr))
        self.log_query(self.type, start, filterstr)
        return self.process(results)

    def run(self, filterstr: str) -> list[Entry]:
        entries, self.controls_response = self.connection.search(
            self.get_search_dn(),
            filterstr,
            self.get_selects(),
            scope=self.get_scope(),
            sizelimit=self.size_limit,
            controls=self.get_ldap_controls(),
        )
        return entries

    def paginate(
        self, page_size: int | None = None, is_critical: bool = False
    ) -> list[Any]:
        """
        Fetch every matching entry, a page at a time.

        If a page request fails the error propagates and none of the pages
        fetched so far are returned.

        Args:
            page_size: entries per page; defaults to
                ``settings.LDAPMAPPER_PAGE_SIZE``
            is_critical: fail if the server does not support paging

        Returns:
            The processed results of every page, in order.

        """
        self.paginated = True
        start = time.perf_counter()
        filterstr = self.get_query()
        page_size = page_size or get_default_page_size()
        try:
            results = self.get_cached_response(
                filterstr, lambda: Paginator(self, filterstr, page_size, is_critical).execute()
            )
        finally:
            self.paginated = False
        self.log_query(self.TYPE_PAGINATE, start, filterstr)
        return self.process(results)

    def chunk(
        self,
        page_size: int | None,
        callback: Callable[[list[Any], int], Any],
        is_critical: bool = False,
    ) -> bool:
        """
        Fetch the results a page at a time, handing each page to ``callback``
        as it arrives.

        Args:
            page_size: entries per page
            callback: called with the processed page and its number, starting
                at 1.  Returning ``False`` stops the search.
            is_critical: fail if the server does not support paging

        Returns:
            ``False`` if ``callback`` stopped the search, ``True`` otherwise.

        """
        size_limit = self.size_limit
        self.limit(0)
        self.paginated = True
        start = time.perf_counter()
        filterstr = self.get_query()
        paginator = Paginator(self, filterstr, page_size or get_default_page_size(), is_critical)
        completed = True
        try:
            with closing(paginator.pages()) as pages:
                for number, page in enumerate(pages, start=1):
                    if callback(self.process(page), number) is False:
                        completed = False
                        break
        finally:
            self.size_limit = size_limit
            self.paginated = False
        self.log_query(self.TYPE_CHUNK, start, filterstr)
        return completed

    def each(
        self,
        callback: Callable[[Any], Any],
        page_size: int | None = None,
        is_critical: bool = False,
    ) -> bool:
        """
        Call ``callback`` for every result, fetching a page at a time.
        Returning ``False`` from ``callback`` stops the search.
        """

        def run(results: list[Any], page: int) -> bool:  # noqa: ARG001
            return all(callback(result) is not False for result in results)

        return self.chunk(page_size, run, is_critical)

    def process(self, entries: list[Entry]) -> list[Any]:
        """
        Turn raw entries into results.  Plain builders return them unchanged.
        """
        return entries

    def get_cached_response(self, filterstr: str, callback: Callable[[], Any]) -> Any:
        if not self.caching:
            return callback()
        try:
            key = self.cache_key or self.get_cache_key(filterstr)
            cache = self.get_cache()
            if self.cache_flush:
                cache.delete(key)
            return cache.remember(key, self.cache_until, callback)
        finally:
            self.caching = False
            self.cache_flush = False
            self.cache_key = None

    def get_cache_key(self, filterstr: str) -> str:
        key = "".join(
            [
                self.connection.host,
                self.type,
                self.get_search_dn(),
                filterstr,
                "".join(self.get_selects()),
                str(self.size_limit),
                "1" if self.paginated else "",
            ]
        )
        return hashlib.md5(key.encode("utf-8")).hexdigest()  # noqa: S324

    def log_query(self, query_type: str, start: float, filterstr: str) -> None:
        elapsed = (time.perf_counter() - start) * 1000
        logger.debug(
            "ldapmapper.query.%s dn=%s filter=%s time=%.2fms",
            query_type,
            self.get_search_dn(),
            filterstr,
            elapsed,
        )
        query_executed.send(sender=type(self), query=self, type=query_type, time=elapsed)

    # -----------------------
    # Writes
    # -----------------------

    def insert(self, dn: str | DistinguishedName, attributes: Attributes) -> bool:
        return bool(self.insert_and_get_dn(dn, attributes))

    def insert_and_get_dn(self, dn: str | DistinguishedName, attributes: Attributes) -> str:
        """
        Create a new entry.

        Args:
            dn: the new entry's DN; ``{base}`` is expanded
            attributes: its attributes, which must include ``objectclass``

        Raises:
            Builder.InvalidOperation: the DN is empty or there is no objectclass

        Returns:
            The DN of the new entry.

        """
        dn = self.substitute_base_dn(dn)
        if not dn:
            msg = "A new LDAP object must have a distinguished name (dn)."
            raise self.InvalidOperation(msg)
        objectclasses = [
            value for name, value in attributes.items() if name.lower() == "objectclass"
        ]
        if not any(normalize_values(value) for value in objectclasses):
            msg = "A new LDAP object must contain at least one object class (objectclass) to be created."
            raise self.InvalidOperation(msg)
        self.connection.add(dn, attributes)
        return dn

    def add(self, dn: str, attributes: Attributes) -> bool:
        """
        Add values to attributes of ``dn``.
        """
        return self.connection.mod_add(dn, attributes)

    def update(
        self, dn: str, modifications: list[ModificationDict | BatchModification]
    ) -> bool:
        """
        Apply batch modifications to ``dn``.
        """
        return self.connection.modify_batch(dn, modifications)  # type: ignore[arg-type]

    def replace(self, dn: str, attributes: Attributes) -> bool:
        return self.connection.mod_replace(dn, attributes)

    def remove(self, dn: str, attributes: Attributes) -> bool:
        """
        Remove values from attributes of ``dn``; an empty value list removes
        the attribute.
        """
        return self.connection.mod_delete(dn, attributes)

    def delete(self, dn: str) -> bool:
        return self.connection.delete(dn)

    def rename(
        self,
        dn: str,
        rdn: str,
        new_parent_dn: Optional[str] = None,
        delete_old_rdn: bool = True,
    ) -> bool:
        return bool(self.rename_and_get_dn(dn, rdn, new_parent_dn, delete_old_rdn))

    def rename_and_get_dn(
        self,
        dn: str,
        rdn: str,
        new_parent_dn: Optional[str] = None,
        delete_old_rdn: bool = True,
    ) -> str:
        """
        Rename ``dn`` to ``rdn``, moving it below ``new_parent_dn`` if given.

        Returns:
            The entry's new DN.

        """
        if new_parent_dn:
            new_parent_dn = self.substitute_base_dn(new_parent_dn)
        self.connection.rename(dn, rdn, new_parent_dn, delete_old_rdn)
        parent = new_parent_dn or DistinguishedName(dn).parent()
        return ",".join(part for part in (rdn, parent) if part)
