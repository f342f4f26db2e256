"""
LDAP model options and metadata.

This module provides the Options class that holds the ``Meta`` configuration of
an LDAP model: which server it lives on, where its entries live in the tree,
which objectclasses they have and how new entries are named.
"""

from collections.abc import Callable
from typing import TYPE_CHECKING, Any, cast

from django.utils.text import camel_case_to_spaces, format_lazy

if TYPE_CHECKING:
    from .managers import LdapManager
    from .models import Model

#: The attributes a ``Meta`` class may set.
DEFAULT_NAMES = (
    "ldap_server",
    "manager_class",
    "basedn",
    "objectclasses",
    "naming_attribute",
    "ordering",
    "hidden",
    "userid_attribute",
    "dates",
    "scopes",
    "verbose_name",
    "verbose_name_plural",
)


class Options:
    """
    The parsed ``Meta`` of an LDAP model, available as ``Model._meta``.

    A model without its own ``Meta`` uses the nearest parent's, so subclasses
    share the parent's server, base DN and objectclasses unless they say
    otherwise.

    Args:
        meta: the model's ``Meta`` class, or ``None``

    """

    def __init__(self, meta) -> None:
        #: The key into ``settings.LDAP_SERVERS`` that this model uses.
        self.ldap_server: str = "default"
        #: The manager class to use for this model.
        self.manager_class: type[LdapManager] | None = None
        #: The DN that searches for this model start from, and below which new
        #: entries are created.  ``{base}`` is replaced with the server's basedn.
        #: Defaults to the server's basedn.
        self.basedn: str | None = None
        #: Every entry of this model has all of these objectclasses.  Queries
        #: are restricted to them and new entries get them.
        self.objectclasses: list[str] = []
        #: The attribute used to build the RDN of new entries.
        self.naming_attribute: str = "cn"
        #: Attributes to sort query results by, with the server side sort
        #: control.  Prefix with ``-`` to sort in descending order.
        self.ordering: list[str] = []
        #: Attributes left out of :py:meth:`~ldapmapper.models.Model.to_dict`
        self.hidden: list[str] = []
        #: The attribute that ``objects.authenticate()`` looks users up by.
        self.userid_attribute: str = "uid"
        #: Attributes holding times, mapped to how they are stored: ``ldap``,
        #: ``windows`` or ``windows-int``.  See :py:class:`~ldapmapper.converters.Timestamp`.
        self.dates: dict[str, str] = {}
        #: Callables that are handed every new query for this model, to add
        #: their own constraints.
        self.scopes: list[Callable[[Any], Any]] = []

        #: Human readable names, as on Django models
        self.verbose_name: str | None = None
        self.verbose_name_plural: str | None = None

        # The rest is filled in by LdapModelBase and the manager
        self.model_name: str | None = None
        self.object_name: str | None = None
        self.meta = meta
        self.concrete_model: type[Model] | None = None
        #: The manager bound to the model as ``objects``
        self.base_manager: LdapManager | None = None

    @property
    def label(self) -> str:
        return cast("str", self.object_name)

    @property
    def label_lower(self) -> str:
        return cast("str", self.model_name)

    def contribute_to_class(self, cls: type["Model"], name: str) -> None:  # noqa: ARG002
        """
        Attach these options to ``cls`` and copy the known ``Meta`` attributes
        onto them.

        Raises:
            TypeError: the ``Meta`` class has attributes we don't know about

        """
        cls._meta = self
        self.model = cls
        self.object_name = cls.__name__
        self.model_name = self.object_name.lower()
        self.verbose_name = camel_case_to_spaces(self.object_name)

        if self.meta:
            meta_attrs = {
                key: value
                for key, value in self.meta.__dict__.items()
                if not key.startswith("_")
            }
            for attr_name in DEFAULT_NAMES:
                if attr_name in meta_attrs:
                    setattr(self, attr_name, meta_attrs.pop(attr_name))
                elif hasattr(self.meta, attr_name):
                    setattr(self, attr_name, getattr(self.meta, attr_name))

            if meta_attrs != {}:
                msg = "'class Meta' got invalid attribute(s): {}".format(
                    ",".join(meta_attrs)
                )
                raise TypeError(msg)
        if self.verbose_name_plural is None:
            self.verbose_name_plural = format_lazy("{}s", self.verbose_name)  # type: ignore[assignment]
        self.objectclasses = list(self.objectclasses)
        self.hidden = [name.lower() for name in self.hidden]
        self.dates = {name.lower(): kind for name, kind in self.dates.items()}
        del self.meta

    def __repr__(self) -> str:
        return f"<Options for {self.object_name}>"
