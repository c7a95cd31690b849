import abc
import logging
import typing
from collections import defaultdict

import inflection
import sqlalchemy as sa

from active_record.schema import foreign_key_for


logger = logging.getLogger(__name__)

PIVOT_PARENT_KEY = "__pivot_parent_key"

RelatedType = typing.Union[str, typing.Type]


def _constrain(query: typing.Any, constraint: typing.Optional[typing.Callable]) -> typing.Any:
    if constraint is None:
        return query
    result = constraint(query)
    return query if result is None else result


def _distinct(values: typing.Iterable[typing.Any]) -> typing.List[typing.Any]:
    return list(dict.fromkeys(value for value in values if value is not None))


def _key_of(value: typing.Any) -> typing.Any:
    if hasattr(value, "__descriptor__"):
        return value.key
    return value


class Relation:
    """A relationship bound to one parent entity; every call re-evaluates against storage."""

    def __init__(self, relationship: "Relationship", parent: typing.Any) -> None:
        self.relationship = relationship
        self.parent = parent

    @property
    def name(self) -> str:
        return self.relationship.name

    @property
    def context(self) -> typing.Any:
        return self.parent.active_context()

    @property
    def loaded(self) -> bool:
        return self.parent.relation_loaded(self.name)

    @property
    def value(self) -> typing.Any:
        return self.parent.get_relation(self.name)

    def query(self) -> typing.Any:
        return self.relationship.query(self.parent, self.context)

    def where(self, *args: typing.Any, **kwargs: typing.Any) -> typing.Any:
        return self.query().where(*args, **kwargs)

    async def get(self) -> typing.Any:
        value = await self.relationship.fetch(self.parent, self.context)
        self.parent.set_relation(self.name, value)
        return value

    async def first(self) -> typing.Any:
        return await self.query().first()

    def __await__(self) -> typing.Generator[typing.Any, None, typing.Any]:
        return self.get().__await__()

    def __repr__(self) -> str:
        return f"<{type(self.relationship).__name__} {type(self.parent).__name__}.{self.name}>"


class HasManyRelation(Relation):
    async def create(self, attributes: typing.Optional[typing.Mapping] = None, **kwargs: typing.Any) -> typing.Any:
        return await self.relationship.create(self.parent, dict(attributes or {}, **kwargs))

    async def save(self, entity: typing.Any) -> typing.Any:
        return await self.relationship.save(self.parent, entity)


class BelongsToRelation(Relation):
    def associate(self, owner: typing.Any) -> typing.Any:
        return self.relationship.associate(self.parent, owner)

    def dissociate(self) -> typing.Any:
        return self.relationship.dissociate(self.parent)


class BelongsToManyRelation(Relation):
    async def attach(self, ids: typing.Any, **pivot: typing.Any) -> int:
        return await self.relationship.attach(self.parent, ids, pivot)

    async def detach(self, ids: typing.Any = None) -> int:
        return await self.relationship.detach(self.parent, ids)

    async def sync(self, ids: typing.Any) -> int:
        return await self.relationship.sync(self.parent, ids)


class Relationship(abc.ABC):
    """Declared on a model class; the related model is referenced by name or class.

    Names are resolved through the parent model's registry on first use, so
    models may reference each other regardless of declaration order.
    """

    many = False
    relation_class: typing.Type[Relation] = Relation

    def __init__(self, related: RelatedType) -> None:
        self.related = related
        self.name: typing.Optional[str] = None

    def __set_name__(self, owner: typing.Type, name: str) -> None:
        self.name = name

    def __get__(self, instance: typing.Any, owner: typing.Type) -> typing.Any:
        if instance is None:
            return self
        return self.relation_class(self, instance)

    def __set__(self, instance: typing.Any, value: typing.Any) -> None:
        instance.set_relation(self.name, value)

    def resolve_related(self, parent_model: typing.Type) -> typing.Type:
        return parent_model.registry.resolve(self.related)

    @abc.abstractmethod
    def query(self, parent: typing.Any, context: typing.Any = None) -> typing.Any:
        pass

    @abc.abstractmethod
    async def eager_load(
        self,
        parent_model: typing.Type,
        parents: typing.List[typing.Any],
        constraint: typing.Optional[typing.Callable],
        context: typing.Any,
    ) -> typing.List[typing.Tuple[typing.Any, typing.Any]]:
        """Resolve the relation for every parent with a single query, returning (parent, value) pairs."""

    async def fetch(self, parent: typing.Any, context: typing.Any = None) -> typing.Any:
        query = self.query(parent, context)
        if self.many:
            return await query.get()
        return await query.first()

    def __repr__(self) -> str:
        related = self.related if isinstance(self.related, str) else self.related.__name__
        return f"{type(self).__name__}({related!r})"


class HasMany(Relationship):
    many = True
    relation_class = HasManyRelation

    def __init__(
        self, related: RelatedType, foreign_key: typing.Optional[str] = None, local_key: typing.Optional[str] = None
    ) -> None:
        super().__init__(related)
        self.foreign_key = foreign_key
        self.local_key = local_key

    def foreign_key_for(self, parent_model: typing.Type) -> str:
        return self.foreign_key or foreign_key_for(parent_model.__descriptor__.table_name)

    def local_key_for(self, parent_model: typing.Type) -> str:
        return self.local_key or parent_model.__descriptor__.key_name

    def query(self, parent: typing.Any, context: typing.Any = None) -> typing.Any:
        parent_model = type(parent)
        related = self.resolve_related(parent_model)
        return related.query(context).where(
            self.foreign_key_for(parent_model), parent.read_attribute(self.local_key_for(parent_model))
        )

    def _match(self, entities: typing.List[typing.Any]) -> typing.Any:
        return list(entities)

    async def eager_load(self, parent_model, parents, constraint, context):
        related = self.resolve_related(parent_model)
        foreign_key = self.foreign_key_for(parent_model)
        local_key = self.local_key_for(parent_model)

        grouped: typing.Dict[typing.Any, typing.List[typing.Any]] = defaultdict(list)
        keys = _distinct(parent.read_attribute(local_key) for parent in parents)
        if keys:
            query = _constrain(related.query(context).where_in(foreign_key, keys), constraint)
            for entity in await query.get():
                grouped[entity.read_attribute(foreign_key)].append(entity)

        return [(parent, self._match(grouped.get(parent.read_attribute(local_key), []))) for parent in parents]

    async def create(self, parent: typing.Any, attributes: typing.Mapping) -> typing.Any:
        parent_model = type(parent)
        related = self.resolve_related(parent_model)
        values = dict(attributes)
        values[self.foreign_key_for(parent_model)] = parent.read_attribute(self.local_key_for(parent_model))
        return await related.create(values, context=parent.active_context())

    async def save(self, parent: typing.Any, entity: typing.Any) -> typing.Any:
        parent_model = type(parent)
        entity.set_attribute(self.foreign_key_for(parent_model), parent.read_attribute(self.local_key_for(parent_model)))
        await entity.save(context=parent.active_context())
        return entity


class HasOne(HasMany):
    """One-to-one: when several rows match, the first one in storage order wins."""

    many = False

    def _match(self, entities: typing.List[typing.Any]) -> typing.Any:
        return entities[0] if entities else None


class BelongsTo(Relationship):
    relation_class = BelongsToRelation

    def __init__(
        self, related: RelatedType, foreign_key: typing.Optional[str] = None, owner_key: typing.Optional[str] = None
    ) -> None:
        super().__init__(related)
        self.foreign_key = foreign_key
        self.owner_key = owner_key

    def foreign_key_for(self, related: typing.Type) -> str:
        return self.foreign_key or foreign_key_for(related.__descriptor__.table_name)

    def owner_key_for(self, related: typing.Type) -> str:
        return self.owner_key or related.__descriptor__.key_name

    def query(self, parent: typing.Any, context: typing.Any = None) -> typing.Any:
        related = self.resolve_related(type(parent))
        return related.query(context).where(
            self.owner_key_for(related), parent.read_attribute(self.foreign_key_for(related))
        )

    async def fetch(self, parent: typing.Any, context: typing.Any = None) -> typing.Any:
        related = self.resolve_related(type(parent))
        if parent.read_attribute(self.foreign_key_for(related)) is None:
            return None
        return await super().fetch(parent, context)

    async def eager_load(self, parent_model, parents, constraint, context):
        related = self.resolve_related(parent_model)
        foreign_key = self.foreign_key_for(related)
        owner_key = self.owner_key_for(related)

        owners: typing.Dict[typing.Any, typing.Any] = {}
        keys = _distinct(parent.read_attribute(foreign_key) for parent in parents)
        if keys:
            query = _constrain(related.query(context).where_in(owner_key, keys), constraint)
            owners = {entity.read_attribute(owner_key): entity for entity in await query.get()}

        return [(parent, owners.get(parent.read_attribute(foreign_key))) for parent in parents]

    def associate(self, parent: typing.Any, owner: typing.Any) -> typing.Any:
        related = self.resolve_related(type(parent))
        parent.set_attribute(self.foreign_key_for(related), owner.read_attribute(self.owner_key_for(related)))
        parent.set_relation(self.name, owner)
        return parent

    def dissociate(self, parent: typing.Any) -> typing.Any:
        related = self.resolve_related(type(parent))
        parent.set_attribute(self.foreign_key_for(related), None)
        parent.set_relation(self.name, None)
        return parent


class BelongsToMany(Relationship):
    """Many-to-many through a pivot table.

    The pivot defaults to both model names snake-cased, sorted and joined
    with ``_`` (``post_tag``) and is looked up in the registry's metadata; an
    undeclared pivot is addressed as a lightweight two-column table.
    """

    many = True
    relation_class = BelongsToManyRelation

    def __init__(
        self,
        related: RelatedType,
        table: typing.Optional[str] = None,
        foreign_pivot_key: typing.Optional[str] = None,
        related_pivot_key: typing.Optional[str] = None,
        parent_key: typing.Optional[str] = None,
        related_key: typing.Optional[str] = None,
    ) -> None:
        super().__init__(related)
        self.table = table
        self.foreign_pivot_key = foreign_pivot_key
        self.related_pivot_key = related_pivot_key
        self.parent_key = parent_key
        self.related_key = related_key

    def pivot_name(self, parent_model: typing.Type, related: typing.Type) -> str:
        if self.table:
            return self.table
        return "_".join(sorted([inflection.underscore(parent_model.__name__), inflection.underscore(related.__name__)]))

    def foreign_pivot_key_for(self, parent_model: typing.Type) -> str:
        return self.foreign_pivot_key or foreign_key_for(parent_model.__descriptor__.table_name)

    def related_pivot_key_for(self, related: typing.Type) -> str:
        return self.related_pivot_key or foreign_key_for(related.__descriptor__.table_name)

    def parent_key_for(self, parent_model: typing.Type) -> str:
        return self.parent_key or parent_model.__descriptor__.key_name

    def related_key_for(self, related: typing.Type) -> str:
        return self.related_key or related.__descriptor__.key_name

    def pivot_table(self, parent_model: typing.Type) -> sa.TableClause:
        related = self.resolve_related(parent_model)
        name = self.pivot_name(parent_model, related)
        declared = parent_model.registry.metadata.tables.get(name)
        if declared is not None:
            return declared
        return sa.table(
            name, sa.column(self.foreign_pivot_key_for(parent_model)), sa.column(self.related_pivot_key_for(related))
        )

    def _joined_query(self, parent_model: typing.Type, context: typing.Any) -> typing.Tuple[typing.Any, sa.TableClause]:
        related = self.resolve_related(parent_model)
        pivot = self.pivot_table(parent_model)
        related_table = related.registry.table_for(related)

        query = related.query(context)
        query.join(pivot, pivot.c[self.related_pivot_key_for(related)] == related_table.c[self.related_key_for(related)])
        query.add_columns(pivot.c[self.foreign_pivot_key_for(parent_model)].label(PIVOT_PARENT_KEY))
        return query, pivot

    def query(self, parent: typing.Any, context: typing.Any = None) -> typing.Any:
        parent_model = type(parent)
        query, pivot = self._joined_query(parent_model, context)
        parent_key = parent.read_attribute(self.parent_key_for(parent_model))
        return query.where(pivot.c[self.foreign_pivot_key_for(parent_model)] == parent_key)

    async def eager_load(self, parent_model, parents, constraint, context):
        parent_key = self.parent_key_for(parent_model)

        grouped: typing.Dict[typing.Any, typing.List[typing.Any]] = defaultdict(list)
        keys = _distinct(parent.read_attribute(parent_key) for parent in parents)
        if keys:
            query, pivot = self._joined_query(parent_model, context)
            query.where(pivot.c[self.foreign_pivot_key_for(parent_model)].in_(keys))
            query = _constrain(query, constraint)
            for row, entity in await query.get_pairs():
                grouped[row[PIVOT_PARENT_KEY]].append(entity)

        return [(parent, list(grouped.get(parent.read_attribute(parent_key), []))) for parent in parents]

    async def attach(self, parent: typing.Any, ids: typing.Any, pivot_values: typing.Optional[typing.Mapping] = None) -> int:
        parent_model = type(parent)
        related = self.resolve_related(parent_model)
        if isinstance(ids, (list, tuple, set)):
            keys = [_key_of(value) for value in ids]
        else:
            keys = [_key_of(ids)]
        if not keys:
            return 0

        pivot = self.pivot_table(parent_model)
        parent_key = parent.read_attribute(self.parent_key_for(parent_model))
        rows = [
            {
                self.foreign_pivot_key_for(parent_model): parent_key,
                self.related_pivot_key_for(related): key,
                **(pivot_values or {}),
            }
            for key in keys
        ]
        await parent.execution_context().execute(sa.insert(pivot).values(rows))
        logger.debug("Attached %d %s to %s(%r)", len(rows), related.__name__, parent_model.__name__, parent_key)
        return len(rows)

    async def detach(self, parent: typing.Any, ids: typing.Any = None) -> int:
        parent_model = type(parent)
        related = self.resolve_related(parent_model)
        pivot = self.pivot_table(parent_model)
        parent_key = parent.read_attribute(self.parent_key_for(parent_model))

        statement = sa.delete(pivot).where(pivot.c[self.foreign_pivot_key_for(parent_model)] == parent_key)
        if ids is not None:
            keys = [_key_of(value) for value in ids] if isinstance(ids, (list, tuple, set)) else [_key_of(ids)]
            statement = statement.where(pivot.c[self.related_pivot_key_for(related)].in_(keys))

        result = await parent.execution_context().execute(statement)
        logger.debug("Detached %d %s from %s(%r)", result.rowcount, related.__name__, parent_model.__name__, parent_key)
        return result.rowcount

    async def sync(self, parent: typing.Any, ids: typing.Any) -> int:
        # replaces every pivot row, wrap in a transaction for atomicity
        await self.detach(parent)
        return await self.attach(parent, ids)
