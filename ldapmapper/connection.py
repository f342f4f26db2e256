"""
The python-ldap transport used by the query builder and models.

A :py:class:`Connection` is built from one entry of ``settings.LDAP_SERVERS``
(or an equivalent dict) and opens a separate LDAP connection per thread, only
for as long as an operation needs it.
"""

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from functools import wraps
from pathlib import Path
from typing import Any

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from ldap.controls import LDAPControl

from ldapmapper import ldap

from .batch import Modlist
from .escaping import to_string
from .typing import Attributes, Entry, ModificationDict

logger = logging.getLogger(__name__)


def atomic(key: str = "read") -> Callable:
    """
    Decorator for :py:class:`Connection` methods that talk to the LDAP server.

    If the current thread already has a connection, the method runs on it.
    Otherwise a connection is opened with the ``key`` credentials and closed
    again when the method returns.

    Args:
        key: either ``"read"`` or ``"write"``

    Returns:
        The decorator.

    """

    def real_decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(self, *args, **kwargs) -> Any:
            with self.session(key):
                return func(self, *args, **kwargs)

        return wrapper

    return real_decorator


class Connection:
    """
    Per-thread python-ldap connections for one configured LDAP server.

    LDAP connections are not thread-safe, so every thread gets its own.

    ``config`` looks like this::

        {
            "basedn": "dc=example,dc=com",
            "read": {
                "url": "ldaps://ldap.example.com",
                "user": "cn=reader,dc=example,dc=com",
                "password": "secret",
                "use_starttls": False,
                "tls_verify": "always",
                "timeout": 15.0,
                "sizelimit": 1000,
                "follow_referrals": False,
            },
            "write": {...},
        }

    Args:
        config: the server configuration

    Keyword Args:
        name: the name the server is known by, for logging

    """

    def __init__(self, config: dict[str, Any], name: str = "default") -> None:
        self.config = config
        self.name = name
        # keys in this dictionary get manipulated by .connect() and .disconnect()
        self._ldap_objects: dict[threading.Thread, ldap.ldapobject.LDAPObject] = {}  # type: ignore[name-defined]

    @classmethod
    def from_settings(cls, name: str = "default") -> "Connection":
        """
        Build a connection from ``settings.LDAP_SERVERS[name]``.

        Raises:
            ImproperlyConfigured: the setting or the key is missing

        """
        try:
            config = settings.LDAP_SERVERS[name]
        except AttributeError as e:
            msg = "settings.LDAP_SERVERS does not exist!"
            raise ImproperlyConfigured(msg) from e
        except KeyError as e:
            msg = f"settings.LDAP_SERVERS has no key '{name}'"
            raise ImproperlyConfigured(msg) from e
        return cls(config, name=name)

    @property
    def basedn(self) -> str | None:
        return self.config.get("basedn")

    @property
    def host(self) -> str:
        """
        The URL of the server we read from.
        """
        return self.config.get("read", {}).get("url", "")

    # -----------------------
    # Connection management
    # -----------------------

    def has_connection(self) -> bool:
        return threading.current_thread() in self._ldap_objects

    def set_connection(self, obj: ldap.ldapobject.LDAPObject) -> None:  # type: ignore[name-defined]
        """
        Use ``obj`` as the current thread's LDAP connection.
        """
        self._ldap_objects[threading.current_thread()] = obj

    def remove_connection(self) -> None:
        del self._ldap_objects[threading.current_thread()]

    @property
    def connection(self) -> ldap.ldapobject.LDAPObject:  # type: ignore[name-defined]
        """
        The current thread's LDAP connection.
        """
        return self._ldap_objects[threading.current_thread()]

    def _connect(  # noqa: PLR0912
        self, key: str, dn: str | None = None, password: str | None = None
    ) -> ldap.ldapobject.LDAPObject:  # type: ignore[name-defined]
        """
        Create, configure and bind a new LDAP connection.

        Args:
            key: ``"read"`` or ``"write"``
            dn: bind as this DN instead of the configured user
            password: the password for ``dn``

        Raises:
            ImproperlyConfigured: there is no ``key`` section in the config
            ValueError: ``tls_verify`` is neither ``never`` nor ``always``
            OSError: a configured certificate or key file does not exist or
                is not a file

        Returns:
            A bound LDAPObject.

        """
        try:
            config = self.config[key]
        except KeyError as e:
            msg = f"settings.LDAP_SERVERS['{self.name}'] has no '{key}' key"
            raise ImproperlyConfigured(msg) from e
        if not dn:
            dn = config["user"]
            password = config["password"]
        ldap_object: ldap.ldapobject.LDAPObject = ldap.initialize(config["url"])  # type: ignore[name-defined]
        ldap_object.set_option(
            ldap.OPT_REFERRALS,  # type: ignore[attr-defined]
            1 if config.get("follow_referrals", False) else 0,
        )
        ldap_object.set_option(ldap.OPT_NETWORK_TIMEOUT, float(config.get("timeout", 15.0)))  # type: ignore[attr-defined]
        if sizelimit := config.get("sizelimit", None):
            ldap_object.set_option(ldap.OPT_SIZELIMIT, int(sizelimit))  # type: ignore[attr-defined]
        tls_verify = config.get("tls_verify", "never")
        if tls_verify == "never":
            ldap_object.set_option(ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_NEVER)  # type: ignore[attr-defined]
        elif tls_verify == "always":
            ldap_object.set_option(ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_DEMAND)  # type: ignore[attr-defined]
        else:
            msg = f"Invalid tls_verify value: {tls_verify}"
            raise ValueError(msg)
        for setting, option, label in (
            ("tls_ca_certfile", "OPT_X_TLS_CACERTFILE", "CA Certificate file"),
            ("tls_certfile", "OPT_X_TLS_CERTFILE", "TLS Certificate file"),
            ("tls_keyfile", "OPT_X_TLS_KEYFILE", "TLS Key file"),
        ):
            if filename := config.get(setting, None):
                path = Path(filename)
                if not path.exists():
                    msg = f"{label} does not exist: {filename}"
                    raise OSError(msg)
                if not path.is_file():
                    msg = f"{label} is not a file: {filename}"
                    raise OSError(msg)
                ldap_object.set_option(getattr(ldap, option), filename)
        ldap_object.set_option(ldap.OPT_X_TLS_NEWCTX, 0)  # type: ignore[attr-defined]
        if config.get("use_starttls", True):
            ldap_object.start_tls_s()
        ldap_object.simple_bind_s(dn, password)
        return ldap_object

    def connect(
        self, key: str = "read", dn: str | None = None, password: str | None = None
    ) -> None:
        """
        Open the current thread's connection.  Used by :py:func:`atomic`.
        """
        self.set_connection(self._connect(key, dn=dn, password=password))

    def disconnect(self) -> None:
        self.connection.unbind_s()
        self.remove_connection()

    def new_connection(
        self, key: str = "read", dn: str | None = None, password: str | None = None
    ) -> ldap.ldapobject.LDAPObject:  # type: ignore[name-defined]
        """
        Return a new bound LDAPObject that is not tracked by this object.
        """
        return self._connect(key, dn=dn, password=password)

    def authenticate(self, dn: str | None, password: str | None) -> bool:
        """
        Check ``password`` by binding as ``dn`` on a connection of its own.

        An empty DN or password is refused without binding, since the server
        would take it as an anonymous bind and succeed.

        Args:
            dn: the DN to bind as
            password: the password to try

        Returns:
            ``True`` if the bind succeeded, ``False`` if the credentials were
            wrong.

        """
        if not dn or not password:
            logger.warning("ldapmapper.auth.empty_credentials dn=%s", dn)
            return False
        try:
            ldap_object = self._connect("read", dn=dn, password=password)
        except ldap.INVALID_CREDENTIALS:  # type: ignore[attr-defined]
            logger.warning("ldapmapper.auth.invalid_credentials dn=%s", dn)
            return False
        ldap_object.unbind_s()
        logger.info("ldapmapper.auth.success dn=%s", dn)
        return True

    @contextmanager
    def session(self, key: str = "read") -> Iterator["Connection"]:
        """
        Make sure the current thread is connected for the duration of the
        ``with`` block.  A connection opened here is closed on the way out, no
        matter what happens inside the block.

        Example:
            >>> with connection.session("read"):
            ...     first = connection.search(basedn, "(uid=a*)")
            ...     second = connection.search(basedn, "(uid=b*)")

        """
        if self.has_connection():
            yield self
            return
        self.connect(key)
        try:
            yield self
        finally:
            self.disconnect()

    # -----------------------
    # Operations
    # -----------------------

    @staticmethod
    def decode_entry(dn: str, attrs: dict[str, list[bytes]]) -> Entry:
        return dn, {name: [to_string(value) for value in values] for name, values in attrs.items()}

    @atomic(key="read")
    def search(
        self,
        basedn: str,
        searchfilter: str,
        attributes: list[str] | None = None,
        scope: int = ldap.SCOPE_SUBTREE,  # type: ignore[attr-defined]
        sizelimit: int = 0,
        controls: list[LDAPControl] | None = None,
    ) -> tuple[list[Entry], list[LDAPControl]]:
        """
        Run one search request.

        Args:
            basedn: where to search from
            searchfilter: the filter string

        Keyword Args:
            attributes: the attributes to return; ``None`` or ``["*"]`` means all
            scope: ``SCOPE_BASE``, ``SCOPE_ONELEVEL`` or ``SCOPE_SUBTREE``
            sizelimit: the most entries to return; ``0`` means no limit.  When
                the server stops at this limit the entries received so far
                are returned.
            controls: server controls to send with the request

        Returns:
            The decoded entries and the controls the server sent back.

        """
        if attributes == ["*"]:
            attributes = None
        msgid = self.connection.search_ext(
            basedn,
            scope,
            searchfilter,
            attributes,
            serverctrls=controls or None,
            sizelimit=sizelimit,
        )
        entries = []
        serverctrls = None
        try:
            while True:
                rtype, rdata, _, serverctrls = self.connection.result3(msgid, all=0)
                for dn, attrs in rdata:
                    # AD appends referrals to the result, which we ignore
                    if isinstance(attrs, dict):
                        entries.append(self.decode_entry(dn, attrs))
                if rtype == ldap.RES_SEARCH_RESULT:  # type: ignore[attr-defined]
                    break
        except ldap.SIZELIMIT_EXCEEDED:  # type: ignore[attr-defined]
            if not sizelimit:
                raise
            logger.debug(
                "ldapmapper.connection.search.sizelimit dn=%s limit=%d", basedn, sizelimit
            )
        return entries, list(serverctrls or [])

    def read(
        self, basedn: str, searchfilter: str = "(objectclass=*)", **kwargs
    ) -> tuple[list[Entry], list[LDAPControl]]:
        return self.search(basedn, searchfilter, scope=ldap.SCOPE_BASE, **kwargs)  # type: ignore[attr-defined]

    def listing(
        self, basedn: str, searchfilter: str = "(objectclass=*)", **kwargs
    ) -> tuple[list[Entry], list[LDAPControl]]:
        return self.search(basedn, searchfilter, scope=ldap.SCOPE_ONELEVEL, **kwargs)  # type: ignore[attr-defined]

    @atomic(key="write")
    def add(self, dn: str, attributes: Attributes) -> bool:
        logger.info("ldapmapper.connection.add dn=%s", dn)
        self.connection.add_s(dn, Modlist().add(attributes))
        return True

    @atomic(key="write")
    def modify_batch(self, dn: str, modifications: list[ModificationDict]) -> bool:
        """
        Apply batch modifications, given in their wire shape, to ``dn``.
        """
        _modlist = Modlist().modify(modifications)
        logger.info("ldapmapper.connection.modify dn=%s changes=%d", dn, len(_modlist))
        self.connection.modify_s(dn, _modlist)
        return True

    @atomic(key="write")
    def mod_add(self, dn: str, attributes: Attributes) -> bool:
        logger.info("ldapmapper.connection.mod_add dn=%s", dn)
        self.connection.modify_s(dn, Modlist().attributes(ldap.MOD_ADD, attributes))  # type: ignore[attr-defined]
        return True

    @atomic(key="write")
    def mod_replace(self, dn: str, attributes: Attributes) -> bool:
        logger.info("ldapmapper.connection.mod_replace dn=%s", dn)
        self.connection.modify_s(dn, Modlist().attributes(ldap.MOD_REPLACE, attributes))  # type: ignore[attr-defined]
        return True

    @atomic(key="write")
    def mod_delete(self, dn: str, attributes: Attributes) -> bool:
        logger.info("ldapmapper.connection.mod_delete dn=%s", dn)
        self.connection.modify_s(dn, Modlist().attributes(ldap.MOD_DELETE, attributes))  # type: ignore[attr-defined]
        return True

    @atomic(key="write")
    def delete(self, dn: str) -> bool:
        logger.info("ldapmapper.connection.delete dn=%s", dn)
        self.connection.delete_s(dn)
        return True

    @atomic(key="write")
    def rename(
        self,
        dn: str,
        rdn: str,
        new_parent_dn: str | None = None,
        delete_old_rdn: bool = True,
    ) -> bool:
        """
        Rename ``dn`` to ``rdn``, moving it below ``new_parent_dn`` if given.
        """
        logger.info(
            "ldapmapper.connection.rename dn=%s rdn=%s parent=%s", dn, rdn, new_parent_dn
        )
        self.connection.rename_s(dn, rdn, new_parent_dn or None, int(delete_old_rdn))
        return True


class ConnectionRegistry:
    """
    A caller-owned collection of named :py:class:`Connection` objects.

    Args:
        connections: initial connections by name

    """

    def __init__(self, connections: dict[str, Connection] | None = None) -> None:
        self._connections: dict[str, Connection] = dict(connections or {})

    @classmethod
    def from_settings(cls) -> "ConnectionRegistry":
        """
        Build a registry holding a connection for every entry in
        ``settings.LDAP_SERVERS``.
        """
        try:
            names = list(settings.LDAP_SERVERS)
        except AttributeError as e:
            msg = "settings.LDAP_SERVERS does not exist!"
            raise ImproperlyConfigured(msg) from e
        return cls({name: Connection.from_settings(name) for name in names})

    def add(self, connection: Connection, name: str | None = None) -> "ConnectionRegistry":
        self._connections[name or connection.name] = connection
        return self

    def get(self, name: str = "default") -> Connection:
        try:
            return self._connections[name]
        except KeyError as e:
            msg = f"No LDAP connection named '{name}' has been registered"
            raise ImproperlyConfigured(msg) from e

    def has(self, name: str) -> bool:
        return name in self._connections

    def remove(self, name: str) -> None:
        self._connections.pop(name, None)

    def names(self) -> list[str]:
        return list(self._connections)

    def __contains__(self, name: object) -> bool:
        return name in self._connections

    def __len__(self) -> int:
        return len(self._connections)


def get_connection(name: str, registry: ConnectionRegistry | None = None) -> Connection:
    """
    Return the connection ``name`` from ``registry``, or straight from settings
    when there is no registry.
    """
    if registry is not None:
        return registry.get(name)
    return Connection.from_settings(name)
