"""
The model-facing side of the query builder.

:py:class:`LdapManager` is bound to every model as ``Model.objects`` and hands
out :py:class:`ModelQuery` objects, which are
:py:class:`~ldapmapper.query.Builder` objects that turn their results into
model instances.
"""

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, cast

from django.core.exceptions import ImproperlyConfigured

from .connection import Connection, ConnectionRegistry
from .dn import DistinguishedName, substitute_base_dn
from .escaping import ESCAPE_FILTER, escape
from .query import Builder
from .typing import Entry

if TYPE_CHECKING:
    from .models import Model
    from .options import Options

logger = logging.getLogger(__name__)


class ModelQuery(Builder):
    """
    A :py:class:`~ldapmapper.query.Builder` whose results are instances of
    ``model``.

    Args:
        model: the model class to build
        connection: the connection to run queries on

    Keyword Args:
        base_dn: the DN ``{base}`` stands for

    """

    def __init__(self, model: type["Model"], connection: Connection, **kwargs) -> None:
        super().__init__(connection, **kwargs)
        self.model = model

    def process(self, entries: list[Entry]) -> list["Model"]:
        return [self.model.from_db(entry) for entry in entries]


class LdapManager:
    """
    Manager class for finding and creating the entries of one model.

    The connection is looked up by ``Meta.ldap_server``: in ``registry`` if
    one is given, otherwise in ``settings.LDAP_SERVERS``.

    Keyword Args:
        registry: where to look up the model's connection

    """

    def __init__(self, registry: ConnectionRegistry | None = None) -> None:
        self.registry = registry
        # These get set during contribute_to_class()
        self.model: type[Model] | None = None
        self.connection: Connection | None = None
        self.basedn: str | None = None
        self.objectclasses: list[str] = []

    def contribute_to_class(self, cls: type["Model"], accessor_name: str) -> None:
        """
        Set up the manager for a model class, configuring attributes from model meta.

        Args:
            cls: The model class.
            accessor_name: The attribute name to assign the manager to.

        Raises:
            ImproperlyConfigured: the model's server is not configured, or
                there is no base DN for it

        """
        meta = cast("Options", cls._meta)
        try:
            if self.registry is not None:
                self.connection = self.registry.get(meta.ldap_server)
            else:
                self.connection = Connection.from_settings(meta.ldap_server)
        except ImproperlyConfigured as e:
            msg = f"{cls.__name__}: {e}"
            raise ImproperlyConfigured(msg) from e
        server_basedn = self.connection.basedn
        if meta.basedn:
            self.basedn = substitute_base_dn(meta.basedn, server_basedn)
        elif server_basedn:
            self.basedn = server_basedn
        else:
            msg = (
                f"{cls.__name__}: no Meta.basedn and settings.LDAP_SERVERS"
                f"['{meta.ldap_server}'] has no 'basedn' key"
            )
            raise ImproperlyConfigured(msg)
        self.objectclasses = list(meta.objectclasses)
        self.model = cls
        meta.base_manager = self
        setattr(cls, accessor_name, self)

    def new_query(self) -> ModelQuery:
        """
        Return a query searching below the model's base DN, with no
        objectclass or scope constraints.
        """
        connection = cast("Connection", self.connection)
        query = ModelQuery(
            cast("type[Model]", self.model), connection, base_dn=connection.basedn or ""
        )
        return cast("ModelQuery", query.set_dn(self.basedn))

    def query(self) -> ModelQuery:
        """
        Return a query restricted to entries having every one of the model's
        objectclasses, sorted by ``Meta.ordering`` and passed through each of
        ``Meta.scopes``.
        """
        query = self.new_query()
        meta = cast("Options", cast("type[Model]", self.model)._meta)
        for objectclass in self.objectclasses:
            query.raw_filter(f"(objectclass={escape(objectclass, flags=ESCAPE_FILTER)})")
        for attribute in meta.ordering:
            if attribute.startswith("-"):
                query.order_by_desc(attribute[1:])
            else:
                query.order_by(attribute)
        for scope in meta.scopes:
            scope(query)
        return query

    def all(self) -> list["Model"]:
        return self.query().get()

    def where(self, *args, **kwargs) -> ModelQuery:
        return cast("ModelQuery", self.query().where(*args, **kwargs))

    def or_where(self, *args, **kwargs) -> ModelQuery:
        return cast("ModelQuery", self.query().or_where(*args, **kwargs))

    def find(self, dn: str | DistinguishedName | list, *columns: str) -> Any:
        """
        Return the model at ``dn``, or ``None``.
        """
        return self.query().find(dn, *columns)

    def find_or_fail(self, dn: str | DistinguishedName) -> "Model":
        """
        Return the model at ``dn``.

        Raises:
            Model.DoesNotExist: there is no such entry

        """
        model = cast("type[Model]", self.model)
        instance = self.find(dn)
        if instance is None:
            msg = f"No {model.__name__} with dn '{dn}'"
            raise model.DoesNotExist(msg)
        return instance

    def find_by(self, attribute: str, value: Any, *columns: str) -> "Model | None":
        return self.query().find_by(attribute, value, *columns)

    def first(self, *columns: str) -> "Model | None":
        return self.query().first(*columns)

    def paginate(self, page_size: int | None = None, is_critical: bool = False) -> list["Model"]:
        return self.query().paginate(page_size, is_critical)

    def chunk(
        self,
        page_size: int | None,
        callback: Callable[[list["Model"], int], Any],
        is_critical: bool = False,
    ) -> bool:
        return self.query().chunk(page_size, callback, is_critical)

    def create(self, attributes: dict[str, Any] | None = None, **kwargs) -> "Model":
        """
        Build a new model and add it to the directory.
        """
        instance = cast("type[Model]", self.model)(attributes, **kwargs)
        return instance.create()

    def authenticate(self, username: str, password: str) -> bool:
        """
        Find the entry whose ``Meta.userid_attribute`` is ``username`` and
        check ``password`` by binding as it.

        Returns:
            ``True`` if the entry exists and the password is right.

        """
        meta = cast("Options", cast("type[Model]", self.model)._meta)
        user = self.find_by(meta.userid_attribute, username)
        if user is None:
            logger.warning("ldapmapper.auth.no_such_user user=%s", username)
            return False
        return cast("Connection", self.connection).authenticate(user.dn, password)
