"""
Relations between models, such as group membership.

Relations are declared as model methods that return one of the classes here:

.. code-block:: python

    class Group(Model):
        class Meta:
            objectclasses = ["top", "groupOfNames"]

        def members(self) -> HasManyIn:
            return self.has_many_in([Person, Group], "member")

    class Person(Model):
        class Meta:
            objectclasses = ["top", "person", "organizationalPerson", "inetOrgPerson"]

        def groups(self) -> HasMany:
            return self.has_many(Group, "member")

        def manager(self) -> HasOne:
            return self.has_one(Person, "manager")

Related entries are turned into whichever related model's objectclasses they
carry, so a ``member`` list holding people and groups yields both.
"""

import logging
from typing import TYPE_CHECKING, Any, Union, cast

from ldapmapper import ldap

from .connection import Connection
from .escaping import ESCAPE_FILTER, escape
from .managers import LdapManager, ModelQuery
from .typing import Entry

if TYPE_CHECKING:
    from .models import Model
    from .options import Options

logger = logging.getLogger(__name__)

Related = Union[type["Model"], list[type["Model"]], tuple[type["Model"], ...]]


class RelatedQuery(ModelQuery):
    """
    A query whose results may be any of several model classes.

    Each entry becomes the first of ``models`` whose objectclasses it has
    all of, or the first of ``models`` when none match.
    """

    def __init__(self, models: list[type["Model"]], connection: Connection, **kwargs) -> None:
        super().__init__(models[0], connection, **kwargs)
        self.models = models

    def model_for(self, entry: Entry) -> type["Model"]:
        _, attributes = entry
        objectclasses = {
            value.lower()
            for name, values in attributes.items()
            if name.lower() == "objectclass"
            for value in values
        }
        for model in self.models:
            wanted = {oc.lower() for oc in cast("Options", model._meta).objectclasses}
            if wanted and wanted <= objectclasses:
                return model
        return self.models[0]

    def process(self, entries: list[Entry]) -> list["Model"]:
        return [self.model_for(entry).from_db(entry) for entry in entries]


class Relation:
    """
    Base class for relations from ``parent`` to entries of ``related``.

    Args:
        parent: the model the relation belongs to
        related: the related model class, or a list of them
        relation_key: the attribute that links the two sides
        foreign_key: what the link holds: ``dn`` or the name of an attribute
            of the entry it points to

    """

    def __init__(
        self,
        parent: "Model",
        related: Related,
        relation_key: str,
        foreign_key: str = "dn",
    ) -> None:
        self.parent = parent
        self.related: list[type[Model]] = (
            list(related) if isinstance(related, (list, tuple)) else [related]
        )
        if not self.related:
            msg = "A relation needs at least one related model"
            raise ValueError(msg)
        self.relation_key = relation_key
        self.foreign_key = foreign_key

    def query(self) -> RelatedQuery:
        """
        Return a query for related entries anywhere below the server's base
        DN, restricted to the related models' objectclasses.
        """
        manager = cast("LdapManager", self.related[0].objects)
        connection = cast("Connection", manager.connection)
        query = RelatedQuery(self.related, connection, base_dn=connection.basedn or "")
        query.set_dn(connection.basedn or manager.basedn)
        alternatives = []
        for model in self.related:
            objectclasses = cast("Options", model._meta).objectclasses
            if not objectclasses:
                # an unconstrained model matches anything
                return query
            clauses = [f"(objectclass={escape(oc, flags=ESCAPE_FILTER)})" for oc in objectclasses]
            alternatives.append(
                clauses[0] if len(clauses) == 1 else query.grammar.compile_and("".join(clauses))
            )
        if len(alternatives) == 1:
            query.raw_filter(alternatives[0])
        else:
            query.raw_filter(query.grammar.compile_or("".join(alternatives)))
        return query

    def get_foreign_value(self, model: "Model") -> str | None:
        """
        Return what a link to ``model`` holds.
        """
        if self.foreign_key.lower() in ("dn", "distinguishedname"):
            return model.dn
        return model.get_first(self.foreign_key)

    def find_by_foreign_value(self, value: str) -> Union["Model", None]:
        if self.foreign_key.lower() in ("dn", "distinguishedname"):
            return self.query().find(value)
        return self.query().find_by(self.foreign_key, value)

    def get(self) -> Any:
        raise NotImplementedError


class HasMany(Relation):
    """
    The entries whose ``relation_key`` attribute points at the parent, as
    ``member`` on groups points at a person.

    Attaching and detaching change the related entries.
    """

    def query(self) -> RelatedQuery:
        query = super().query()
        query.where_equals(self.relation_key, self.get_foreign_value(self.parent))
        return query

    def get(self) -> list["Model"]:
        return self.query().get()

    def paginate(self, page_size: int | None = None) -> list["Model"]:
        return self.query().paginate(page_size)

    def exists(self, model: Union["Model", None] = None) -> bool:
        """
        Return ``True`` if anything is related, or if ``model`` is.
        """
        query = self.query()
        if model is not None:
            query.set_dn(model.dn).read()
        try:
            return query.exists()
        except ldap.NO_SUCH_OBJECT:  # type: ignore[attr-defined]
            return False

    def attach(self, model: "Model") -> "Model":
        """
        Point ``model`` at the parent.  Already being attached is not an error.
        """
        try:
            model.add_attribute(self.relation_key, self.get_foreign_value(self.parent))
        except ldap.TYPE_OR_VALUE_EXISTS:  # type: ignore[attr-defined]
            logger.debug(
                "ldapmapper.relations.attach.exists dn=%s attribute=%s",
                model.dn,
                self.relation_key,
            )
        return model

    def detach(self, model: "Model") -> "Model":
        """
        Stop ``model`` pointing at the parent.  Not being attached is not an
        error.
        """
        try:
            model.remove_attribute(self.relation_key, self.get_foreign_value(self.parent))
        except ldap.NO_SUCH_ATTRIBUTE:  # type: ignore[attr-defined]
            logger.debug(
                "ldapmapper.relations.detach.missing dn=%s attribute=%s",
                model.dn,
                self.relation_key,
            )
        return model

    def detach_all(self) -> list["Model"]:
        models = self.get()
        for model in models:
            self.detach(model)
        return models


class HasManyIn(Relation):
    """
    The entries that the parent's ``relation_key`` values point at, as a
    group's ``member`` values point at its members.

    Attaching and detaching change the parent.
    """

    def get(self) -> list["Model"]:
        results = []
        for value in self.parent.get(self.relation_key, []):
            model = self.find_by_foreign_value(value)
            if model is not None:
                results.append(model)
        return results

    def exists(self, model: Union["Model", None] = None) -> bool:
        values = [value.lower() for value in self.parent.get(self.relation_key, [])]
        if model is None:
            return bool(values)
        foreign = self.get_foreign_value(model)
        return foreign is not None and foreign.lower() in values

    def attach(self, model: "Model") -> "Model":
        """
        Add ``model`` to the parent's ``relation_key`` values.
        """
        foreign = self.get_foreign_value(model)
        if not self.exists(model):
            self.parent.add_attribute(self.relation_key, foreign)
        return model

    def detach(self, model: "Model") -> "Model":
        foreign = self.get_foreign_value(model)
        if self.exists(model):
            current = [
                value
                for value in self.parent.get(self.relation_key, [])
                if value.lower() == cast("str", foreign).lower()
            ]
            self.parent.remove_attribute(self.relation_key, current)
        return model


class HasOne(Relation):
    """
    The single entry the parent's ``relation_key`` points at, as ``manager``
    on a person.
    """

    def get(self) -> Union["Model", None]:
        value = self.parent.get_first(self.relation_key)
        if not value:
            return None
        return self.find_by_foreign_value(value)

    def attach(self, model: "Model") -> "Model":
        self.parent.set(self.relation_key, self.get_foreign_value(model)).save()
        return model

    def detach(self) -> None:
        self.parent.set(self.relation_key, None).save()
