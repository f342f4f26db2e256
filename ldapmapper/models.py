"""
LDAP model base classes and metaclass.

This module provides the base Model class and LdapModelBase metaclass for
declaring LDAP-backed, Django-like models.  A model instance wraps one directory
entry: its DN and an :py:class:`~ldapmapper.attributes.AttributeBag` with the
values as read from the directory and as they are now.

Example:
    .. code-block:: python

        class User(Model):
            class Meta:
                basedn = "ou=people,{base}"
                objectclasses = ["top", "person", "organizationalPerson", "inetOrgPerson"]
                naming_attribute = "uid"
                hidden = ["userPassword"]

        user = User.objects.find_by("uid", "jdoe")
        user.set("mail", "jdoe@example.com")
        user.save()

"""

import inspect
import logging
from collections.abc import Mapping
from datetime import datetime
from typing import TYPE_CHECKING, Any, Union, cast

from django.db.models.signals import class_prepared

from .attributes import AttributeBag
from .batch import BatchModification, normalize_values
from .converters import Timestamp
from .dn import DistinguishedName, make_rdn
from .managers import LdapManager
from .options import Options
from .query import Builder
from .relations import HasMany, HasManyIn, HasOne, Related
from .signals import (
    post_create,
    post_delete,
    post_rename,
    post_save,
    post_update,
    pre_create,
    pre_delete,
    pre_rename,
    pre_save,
    pre_update,
)
from .typing import Attributes, Entry

if TYPE_CHECKING:
    from .managers import ModelQuery

logger = logging.getLogger(__name__)


class LdapModelBase(type):
    """
    Metaclass for LDAP models.

    This metaclass parses the ``Meta`` class into an
    :py:class:`~ldapmapper.options.Options` instance and binds a manager to the
    model as ``objects``.

    """

    def __new__(cls, name, bases, attrs, **kwargs):
        super_new = super().__new__
        parents = [b for b in bases if isinstance(b, LdapModelBase)]
        if not parents:
            return super_new(cls, name, bases, attrs)

        # Create the class.
        module = attrs.pop("__module__")
        new_attrs = {"__module__": module}
        classcell = attrs.pop("__classcell__", None)
        if classcell is not None:
            new_attrs["__classcell__"] = classcell
        new_class = super_new(cls, name, bases, new_attrs, **kwargs)
        attr_meta = attrs.pop("Meta", None)
        meta = attr_meta or getattr(new_class, "Meta", None)

        new_class.add_to_class("_meta", Options(meta))
        if attr_meta is not None:
            # Keep the Meta class around so subclasses inherit it
            new_class.Meta = attr_meta

        for obj_name, obj in attrs.items():
            new_class.add_to_class(obj_name, obj)

        new_class._meta.concrete_model = new_class  # type: ignore[attr-defined]
        new_class._prepare()

        return new_class

    def add_to_class(cls, name: str, value: Any) -> None:
        """
        Add an attribute to the class, calling contribute_to_class if available.

        Args:
            name: The name of the attribute to add.
            value: The value to assign to the attribute.

        """
        # We should call the contribute_to_class method only if it's bound
        if not inspect.isclass(value) and hasattr(value, "contribute_to_class"):
            value.contribute_to_class(cls, name)
        else:
            setattr(cls, name, value)

    def _prepare(cls) -> None:
        """
        Bind the manager once ``cls._meta`` has been populated.
        """
        opts = cast("Options", cls._meta)  # type: ignore[attr-defined]
        manager_class = opts.manager_class or LdapManager
        cls.add_to_class("objects", manager_class())
        class_prepared.send(sender=cls)


class Model(metaclass=LdapModelBase):
    """
    Base class for LDAP models.

    Attribute names are case-insensitive, and every value is a list of strings.

    Args:
        attributes: initial attribute values

    Keyword Args:
        dn: the entry's distinguished name, if known
        **kwargs: more attribute values, as ``given_name="John"``

    """

    class DoesNotExist(Exception):
        """Raised when changing a model that is not in the directory."""

    #: The model's metadata and configuration options.
    _meta: Options | None = None
    #: The default manager for this model.
    objects: LdapManager | None = None

    def __init__(
        self, attributes: Mapping[str, Any] | None = None, dn: str | None = None, **kwargs
    ) -> None:
        self.attributes = AttributeBag()
        self.dn: str | None = str(dn) if dn else None
        #: ``True`` once the entry is known to be in the directory.
        self.exists = False
        self._in_dn: str | None = None
        data = dict(attributes or {})
        data.update(kwargs)
        self.fill(data)
        objectclasses = cast("Options", self._meta).objectclasses
        if objectclasses and not self.attributes.has("objectclass"):
            self.attributes.set("objectclass", objectclasses)

    @classmethod
    def from_db(cls, entry: Entry) -> "Model":
        """
        Build an existing model from a ``(dn, attributes)`` search result.
        """
        dn, attributes = entry
        instance = cls(dn=dn)
        instance.attributes.set_raw(attributes)
        instance.exists = True
        return instance

    @classmethod
    def new_query(cls) -> "ModelQuery":
        """
        Return a query for this model with no objectclass or scope constraints.
        """
        return cast("LdapManager", cls.objects).new_query()

    @classmethod
    def query(cls) -> "ModelQuery":
        return cast("LdapManager", cls.objects).query()

    # -----------------------
    # Attributes
    # -----------------------

    def get(self, name: str, default: Any = None) -> Any:
        return self.attributes.get(name, default)

    def get_first(self, name: str, default: Any = None) -> Any:
        return self.attributes.first(name, default)

    def set(self, name: str, value: Any) -> "Model":
        """
        Set the values of ``name``.  Times given for a ``Meta.dates`` attribute
        are stored in that attribute's format.
        """
        kind = cast("Options", self._meta).dates.get(name.lower())
        if kind and value is not None:
            timestamp = Timestamp(kind)
            values = value if isinstance(value, (list, tuple)) else [value]
            value = [
                timestamp.from_datetime(item) if isinstance(item, datetime) else item
                for item in values
            ]
        self.attributes.set(name, value)
        return self

    def get_date(self, name: str) -> datetime | None:
        """
        Return the first value of the ``Meta.dates`` attribute ``name`` as a
        UTC ``datetime``, or ``None`` if it has no value.

        Raises:
            KeyError: ``name`` is not in ``Meta.dates``

        """
        kind = cast("Options", self._meta).dates[name.lower()]
        value = self.get_first(name)
        if value is None:
            return None
        return Timestamp(kind).to_datetime(value)

    def has(self, name: str) -> bool:
        return self.attributes.has(name)

    def unset(self, name: str) -> "Model":
        self.attributes.unset(name)
        return self

    def fill(self, attributes: Mapping[str, Any]) -> "Model":
        for name, value in attributes.items():
            self.set(name, value)
        return self

    def get_attributes(self) -> Attributes:
        return self.attributes.all()

    def get_original(self) -> Attributes:
        return self.attributes.original()

    def get_dirty(self) -> Attributes:
        return self.attributes.dirty()

    def is_dirty(self, name: str | None = None) -> bool:
        return self.attributes.is_dirty(name)

    def sync_original(self) -> "Model":
        self.attributes.sync_original()
        return self

    def get_modifications(self) -> list[BatchModification]:
        """
        Return the batch modifications that would save the current changes.
        """
        return self.attributes.modifications()

    def __getitem__(self, name: str) -> list[str]:
        if not self.has(name):
            raise KeyError(name)
        return self.get(name)

    def __setitem__(self, name: str, value: Any) -> None:
        self.set(name, value)

    def __delitem__(self, name: str) -> None:
        self.unset(name)

    def __contains__(self, name: object) -> bool:
        return name in self.attributes

    # -----------------------
    # Distinguished names
    # -----------------------

    def get_dn(self) -> DistinguishedName:
        return DistinguishedName(self.dn)

    def get_rdn(self) -> str | None:
        """
        Return the first RDN of the DN, e.g. ``cn=John Doe``.
        """
        return self.get_dn().relative()

    def get_name(self) -> str | None:
        return self.get_dn().name()

    def get_head(self) -> str | None:
        return self.get_dn().head()

    def get_parent_dn(self) -> str | None:
        return self.get_dn().parent()

    def get_create_rdn(self, name: str | None = None) -> str:
        """
        Return the RDN a new entry will get: ``Meta.naming_attribute`` and
        either ``name`` or the first value of that attribute.

        Raises:
            Builder.InvalidOperation: there is no value to name the entry with

        """
        attribute = cast("Options", self._meta).naming_attribute
        value = name if name is not None else self.get_first(attribute)
        if not value:
            msg = (
                f"Cannot name a new {type(self).__name__}: it has no "
                f"'{attribute}' attribute"
            )
            raise Builder.InvalidOperation(msg)
        return make_rdn(attribute, str(value))

    def get_create_dn(self, name: str | None = None, parent: str | None = None) -> str:
        """
        Return the DN a new entry will get: its RDN below ``parent``, the
        container set with :py:meth:`inside`, or the model's base DN.
        """
        query = self.new_query()
        parent = parent or self._in_dn
        parent = query.substitute_base_dn(parent) if parent else query.get_search_dn()
        return ",".join(part for part in (self.get_create_rdn(name), parent) if part)

    def inside(self, dn: Union[str, DistinguishedName, "Model"]) -> "Model":
        """
        Create this entry below ``dn`` when it is saved.
        """
        self._in_dn = self._dn_of(dn)
        return self

    @staticmethod
    def _dn_of(value: Union[str, DistinguishedName, "Model", None]) -> str | None:
        if isinstance(value, Model):
            return value.dn
        return None if value is None else str(value)

    def is_descendant_of(self, model: Union[str, DistinguishedName, "Model", None]) -> bool:
        return self.get_dn().is_descendant_of(self._dn_of(model))

    def is_ancestor_of(self, model: Union[str, DistinguishedName, "Model", None]) -> bool:
        return self.get_dn().is_ancestor_of(self._dn_of(model))

    def is_child_of(self, model: Union[str, DistinguishedName, "Model", None]) -> bool:
        return self.get_dn().is_child_of(self._dn_of(model))

    def is_parent_of(self, model: Union[str, DistinguishedName, "Model", None]) -> bool:
        return self.get_dn().is_parent_of(self._dn_of(model))

    def is_sibling_of(self, model: Union[str, DistinguishedName, "Model", None]) -> bool:
        return self.get_dn().is_sibling_of(self._dn_of(model))

    # -----------------------
    # Relations
    # -----------------------

    def has_many(self, related: Related, relation_key: str, foreign_key: str = "dn") -> HasMany:
        """
        Relate this entry to the entries whose ``relation_key`` attribute
        points at it.
        """
        return HasMany(self, related, relation_key, foreign_key)

    def has_many_in(self, related: Related, relation_key: str, foreign_key: str = "dn") -> HasManyIn:
        """
        Relate this entry to the entries its ``relation_key`` values point at.
        """
        return HasManyIn(self, related, relation_key, foreign_key)

    def has_one(self, related: Related, relation_key: str, foreign_key: str = "dn") -> HasOne:
        return HasOne(self, related, relation_key, foreign_key)

    # -----------------------
    # Persistence
    # -----------------------

    def _require_existence(self, action: str) -> None:
        if not self.exists or not self.dn:
            msg = f"Cannot {action} {type(self).__name__} '{self.dn}': it does not exist in the directory."
            raise self.DoesNotExist(msg)

    def save(self, attributes: Mapping[str, Any] | None = None) -> "Model":
        """
        Create the entry, or update it if it already exists.
        """
        if attributes:
            self.fill(attributes)
        cls = type(self)
        pre_save.send(sender=cls, instance=self)
        if self.exists:
            self.update()
        else:
            self.create()
        post_save.send(sender=cls, instance=self)
        return self

    def create(self, attributes: Mapping[str, Any] | None = None) -> "Model":
        """
        Add the entry to the directory.  Without a DN one is built with
        :py:meth:`get_create_dn`.

        Raises:
            Builder.InvalidOperation: the entry has no objectclass, or cannot
                be named

        """
        if attributes:
            self.fill(attributes)
        if not self.dn:
            self.dn = self.get_create_dn()
        cls = type(self)
        pre_create.send(sender=cls, instance=self)
        self.dn = self.new_query().insert_and_get_dn(self.dn, self.get_attributes())
        self.exists = True
        self.sync_original()
        post_create.send(sender=cls, instance=self)
        return self

    def update(self, attributes: Mapping[str, Any] | None = None) -> "Model":
        """
        Send the changed attributes to the directory.  Nothing is sent if
        nothing changed.

        Raises:
            Model.DoesNotExist: the entry is not in the directory

        """
        self._require_existence("update")
        if attributes:
            self.fill(attributes)
        modifications = self.get_modifications()
        if not modifications:
            logger.debug("ldapmapper.model.update.no-changes dn=%s", self.dn)
            return self
        cls = type(self)
        pre_update.send(sender=cls, instance=self)
        self.new_query().update(cast("str", self.dn), modifications)
        self.sync_original()
        post_update.send(sender=cls, instance=self)
        return self

    def delete(self, recursive: bool = False) -> bool:
        """
        Delete the entry.

        Keyword Args:
            recursive: delete everything below the entry first

        Raises:
            Model.DoesNotExist: the entry is not in the directory

        """
        self._require_existence("delete")
        cls = type(self)
        pre_delete.send(sender=cls, instance=self)
        query = self.new_query()
        if recursive:
            self._delete_children(query, cast("str", self.dn))
        query.delete(cast("str", self.dn))
        self.exists = False
        post_delete.send(sender=cls, instance=self)
        return True

    def _delete_children(self, query: Builder, dn: str) -> None:
        children = query.new_instance(dn).listing().get("objectclass")
        for child_dn, _ in children:
            self._delete_children(query, child_dn)
            query.delete(child_dn)

    def rename(
        self,
        rdn: str,
        new_parent_dn: Union[str, DistinguishedName, "Model", None] = None,
        delete_old_rdn: bool = True,
    ) -> "Model":
        """
        Rename the entry, and move it below ``new_parent_dn`` if given.

        Args:
            rdn: the new RDN, e.g. ``cn=Jane Doe``.  A bare value is combined
                with the attribute of the current RDN.
            new_parent_dn: the new parent entry or DN
            delete_old_rdn: remove the old RDN value from the entry

        Raises:
            Model.DoesNotExist: the entry is not in the directory

        """
        self._require_existence("rename")
        old_dn = self.get_dn()
        if "=" not in rdn:
            rdn = make_rdn(cast("str", old_dn.head()), rdn)
        cls = type(self)
        pre_rename.send(sender=cls, instance=self)
        self.dn = self.new_query().rename_and_get_dn(
            cast("str", self.dn), rdn, self._dn_of(new_parent_dn), delete_old_rdn
        )
        old_rdn = old_dn.rdn_components()[0]
        new_rdn = self.get_dn().rdn_components()[0]
        if delete_old_rdn:
            for attribute, value in old_rdn:
                values = [v for v in self.get(attribute, []) if v != value]
                self.attributes.set_raw_attribute(attribute, values)
        for attribute, value in new_rdn:
            values = self.get(attribute, [])
            if value not in values:
                values.append(value)
            self.attributes.set_raw_attribute(attribute, values)
        post_rename.send(sender=cls, instance=self)
        return self

    def move(
        self,
        new_parent_dn: Union[str, DistinguishedName, "Model"],
        delete_old_rdn: bool = True,
    ) -> "Model":
        """
        Move the entry below ``new_parent_dn``, keeping its RDN.
        """
        return self.rename(cast("str", self.get_rdn()), new_parent_dn, delete_old_rdn)

    def add_attribute(self, name: str, value: Any) -> "Model":
        """
        Add values to an attribute directly in the directory.
        """
        self._require_existence("add attribute to")
        values = normalize_values(value)
        self.new_query().add(cast("str", self.dn), {name: values})
        current = self.get(name, [])
        current.extend(v for v in values if v not in current)
        self.attributes.set_raw_attribute(name, current)
        return self

    def update_attribute(self, name: str, value: Any) -> "Model":
        """
        Replace the values of an attribute directly in the directory.
        """
        self._require_existence("update attribute of")
        values = normalize_values(value)
        self.new_query().replace(cast("str", self.dn), {name: values})
        self.attributes.set_raw_attribute(name, values)
        return self

    def remove_attribute(self, name: str, value: Any = None) -> "Model":
        """
        Remove values from an attribute directly in the directory.  Without
        ``value`` the whole attribute is removed.
        """
        self._require_existence("remove attribute from")
        values = normalize_values(value)
        self.new_query().remove(cast("str", self.dn), {name: values})
        remaining = [v for v in self.get(name, []) if values and v not in values]
        self.attributes.set_raw_attribute(name, remaining)
        return self

    def refresh(self) -> bool:
        """
        Re-read the entry from the directory, dropping unsaved changes.

        Returns:
            ``False`` if the entry could not be found.

        """
        if not self.dn:
            return False
        entry = self.new_query().find(self.dn)
        if entry is None:
            return False
        self.attributes.set_raw(entry.get_attributes())
        self.exists = True
        return True

    # -----------------------
    # Serialisation
    # -----------------------

    def to_dict(self) -> dict[str, Any]:
        """
        Return the DN and the attributes, leaving out ``Meta.hidden`` ones.
        """
        hidden = {AttributeBag.normalize_key(name) for name in cast("Options", self._meta).hidden}
        data: dict[str, Any] = {"dn": self.dn}
        data.update(
            {name: values for name, values in self.get_attributes().items() if name not in hidden}
        )
        return data

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}: {self}>"

    def __str__(self) -> str:
        return f"{self.__class__.__name__} object ({self.dn})"

    def __eq__(self, other: object) -> bool:
        """
        Equal means the same concrete model and the same DN.
        """
        if not isinstance(other, Model):
            return False
        if (
            cast("Options", self._meta).concrete_model
            != cast("Options", other._meta).concrete_model
        ):
            return False
        if not self.dn:
            return self is other
        return self.get_dn() == other.get_dn()

    def __hash__(self) -> int:
        return hash(self.get_dn())
